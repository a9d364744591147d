"""Учетные данные SharePoint и выбор способа аутентификации.

Два способа взаимоисключающие: секрет приложения (SharePoint App-Only)
или сертификат (Azure AD). Выбор делается один раз при старте.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar

from pydantic import SecretStr

from sharepointserver.config_reader import SharePointConfig
from sharepointserver.exceptions import SharePointConfigException

logger = logging.getLogger(__name__)


class AuthFlow(str, Enum):
    """Способ аутентификации."""

    SECRET = "secret"
    CERTIFICATE = "certificate"


@dataclass(frozen=True)
class SecretCredentials:
    """Учетные данные для аутентификации по секрету.

    Attributes:
        client_id: Идентификатор приложения
        client_secret: Секрет приложения
        tenant_id: Идентификатор тенанта (realm)
    """

    flow: ClassVar[AuthFlow] = AuthFlow.SECRET

    client_id: str
    client_secret: str = field(repr=False)
    tenant_id: str


@dataclass(frozen=True)
class CertificateCredentials:
    """Учетные данные для аутентификации по сертификату.

    Attributes:
        client_id: Идентификатор приложения Azure AD
        certificate_thumbprint: Отпечаток сертификата (hex)
        certificate_password: Пароль от PFX-файла
        tenant_id: Идентификатор тенанта
        certificate_path: Явный путь к PFX-файлу
    """

    flow: ClassVar[AuthFlow] = AuthFlow.CERTIFICATE

    client_id: str
    certificate_thumbprint: str
    certificate_password: str = field(repr=False)
    tenant_id: str
    certificate_path: str | None = None


Credentials = SecretCredentials | CertificateCredentials


def _secret(value: SecretStr | None) -> str | None:
    return value.get_secret_value() if value is not None else None


def resolve_credentials(config: SharePointConfig) -> Credentials:
    """Выбрать способ аутентификации по конфигурации.

    Сертификат имеет приоритет: если заданы все поля обоих способов,
    выбирается CertificateCredentials.

    Args:
        config: Конфигурация SharePoint

    Returns:
        CertificateCredentials или SecretCredentials

    Raises:
        SharePointConfigException: Если ни один способ не собран полностью
    """
    certificate_password = _secret(config.certificate_password)
    if (
        config.application_id
        and config.certificate_thumbprint
        and certificate_password
        and config.tenant_id
    ):
        logger.info(
            "Выбрана аутентификация по сертификату (client_id=%s...)",
            config.application_id[:5],
        )
        return CertificateCredentials(
            client_id=config.application_id,
            certificate_thumbprint=config.certificate_thumbprint,
            certificate_password=certificate_password,
            tenant_id=config.tenant_id,
            certificate_path=config.certificate_path,
        )

    client_secret = _secret(config.client_secret)
    if config.client_id and client_secret and config.tenant_id:
        logger.info(
            "Выбрана аутентификация по секрету (client_id=%s...)",
            config.client_id[:5],
        )
        return SecretCredentials(
            client_id=config.client_id,
            client_secret=client_secret,
            tenant_id=config.tenant_id,
        )

    raise SharePointConfigException(
        "Не заданы учетные данные SharePoint. Укажите clientId, clientSecret и "
        "tenantId либо applicationId, certificateThumbprint, certificatePassword "
        "и tenantId (аргументами --key=value или переменными окружения)."
    )
