"""Подписанный JWT (client assertion) для аутентификации по сертификату.

Закрытый ключ берётся из PKCS#12 (PFX) файла, защищённого паролем.
"""

import base64
import logging
import time
import uuid
from pathlib import Path

import jwt
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from cryptography.hazmat.primitives.serialization import pkcs12

from sharepointserver.credentials import CertificateCredentials
from sharepointserver.exceptions import SharePointAuthException

logger = logging.getLogger(__name__)

DEFAULT_CERTIFICATE_NAME = "SharePoint-Server-MCP-Cert"
CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"
ASSERTION_LIFETIME = 600


def token_endpoint(tenant_id: str) -> str:
    """Адрес token-эндпоинта Azure AD v2 для тенанта."""
    return f"https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"


def thumbprint_to_x5t(thumbprint: str) -> str:
    """Преобразовать hex-отпечаток сертификата в base64url для заголовка x5t.

    Args:
        thumbprint: Отпечаток (допускаются разделители ':' и пробелы)

    Returns:
        Отпечаток в base64url без выравнивания
    """
    raw = bytes.fromhex(thumbprint.replace(":", "").replace(" ", ""))
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def candidate_certificate_paths(credentials: CertificateCredentials) -> list[Path]:
    """Места, где ищется PFX-файл, в порядке приоритета."""
    if credentials.certificate_path:
        return [Path(credentials.certificate_path).expanduser()]
    cwd = Path.cwd()
    return [
        cwd / f"{credentials.certificate_thumbprint}.pfx",
        Path.home() / "Documents" / f"{DEFAULT_CERTIFICATE_NAME}.pfx",
        cwd / f"{DEFAULT_CERTIFICATE_NAME}.pfx",
    ]


def find_certificate(credentials: CertificateCredentials) -> Path:
    """Найти PFX-файл сертификата.

    Raises:
        SharePointAuthException: Если файл не найден ни в одном из мест
    """
    candidates = candidate_certificate_paths(credentials)
    for path in candidates:
        logger.debug("Поиск сертификата: %s", path)
        if path.is_file():
            logger.debug("Сертификат найден: %s", path)
            return path
    raise SharePointAuthException(
        "Сертификат не найден: " + ", ".join(str(path) for path in candidates)
    )


def load_private_key(path: Path, password: str) -> PrivateKeyTypes:
    """Загрузить закрытый ключ из PFX-файла.

    Args:
        path: Путь к PFX-файлу
        password: Пароль от файла

    Returns:
        Закрытый ключ

    Raises:
        SharePointAuthException: Если файл не читается или ключа нет
    """
    try:
        private_key, _certificate, _chain = pkcs12.load_key_and_certificates(
            path.read_bytes(), password.encode("utf-8")
        )
    except (OSError, ValueError) as exc:
        raise SharePointAuthException(
            f"Не удалось прочитать сертификат {path}: проверьте пароль",
            original_error=exc,
        ) from exc
    if private_key is None:
        raise SharePointAuthException(f"В сертификате {path} нет закрытого ключа")
    return private_key


def build_client_assertion(
    client_id: str,
    tenant_id: str,
    thumbprint: str,
    private_key: PrivateKeyTypes,
    now: float | None = None,
) -> str:
    """Сформировать client assertion, подписанный RS256.

    Args:
        client_id: Идентификатор приложения (iss и sub)
        tenant_id: Идентификатор тенанта (для aud)
        thumbprint: Отпечаток сертификата
        private_key: Закрытый ключ сертификата
        now: Текущее время в секундах (для тестов)

    Returns:
        JWT в компактной форме
    """
    issued = int(now if now is not None else time.time())
    payload = {
        "aud": token_endpoint(tenant_id),
        "iss": client_id,
        "sub": client_id,
        "jti": str(uuid.uuid4()),
        "nbf": issued,
        "exp": issued + ASSERTION_LIFETIME,
    }
    return jwt.encode(
        payload,
        private_key,  # type: ignore[arg-type]
        algorithm="RS256",
        headers={"x5t": thumbprint_to_x5t(thumbprint)},
    )


def create_client_assertion(credentials: CertificateCredentials) -> str:
    """Найти сертификат, загрузить ключ и подписать assertion."""
    path = find_certificate(credentials)
    private_key = load_private_key(path, credentials.certificate_password)
    return build_client_assertion(
        client_id=credentials.client_id,
        tenant_id=credentials.tenant_id,
        thumbprint=credentials.certificate_thumbprint,
        private_key=private_key,
    )
