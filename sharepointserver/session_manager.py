"""Менеджер сессии для SharePoint API.

Управляет получением и обновлением токена доступа.
Токен один на процесс (на тенант), запрашивается лениво и заменяется
целиком по истечении срока или после 401 от сервера.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any
from urllib.parse import urlencode, urlparse

from sharepointserver.client_assertion import (
    CLIENT_ASSERTION_TYPE,
    create_client_assertion,
    token_endpoint,
)
from sharepointserver.credentials import (
    AuthFlow,
    CertificateCredentials,
    Credentials,
    SecretCredentials,
)
from sharepointserver.endpoints import ODATA_VERBOSE
from sharepointserver.exceptions import (
    SharePointAuthException,
    SharePointBackendException,
)
from sharepointserver.request_executor import RequestExecutor


ACS_PRINCIPAL = "00000003-0000-0ff1-ce00-000000000000"
# Токен считается истёкшим немного раньше срока, указанного сервером
EXPIRY_MARGIN = timedelta(minutes=5)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def acs_token_endpoint(tenant_id: str) -> str:
    """Адрес token-эндпоинта SharePoint ACS для тенанта."""
    return f"https://accounts.accesscontrol.windows.net/{tenant_id}/tokens/OAuth/2"


def describe_auth_error(message: str) -> str:
    """Подобрать понятное описание ошибки аутентификации.

    Args:
        message: Текст исходной ошибки (включая тело ответа)

    Returns:
        Подсказка для пользователя или исходный текст
    """
    lowered = message.lower()
    if "invalid_client" in lowered:
        return "некорректные учетные данные приложения (client id, секрет или сертификат)"
    if "invalid_grant" in lowered:
        return "некорректный grant (возможно, неверный tenant id)"
    if "forbidden" in lowered or "403" in lowered:
        return "доступ запрещён, проверьте разрешения приложения"
    if "not found" in lowered or "404" in lowered:
        return "ресурс не найден, проверьте адрес сайта"
    if "timeout" in lowered or "таймаут" in lowered or "не выполнен за" in lowered:
        return "истёк таймаут запроса, проверьте сетевое соединение"
    return message


@dataclass(frozen=True)
class Session:
    """Выданная сессия: заголовки авторизации и срок действия.

    Attributes:
        auth_headers: Заголовки Authorization и Accept
        issued_at: Момент получения токена
        flow: Способ аутентификации
        expires_at: Момент, после которого токен нужно обновить
    """

    auth_headers: dict[str, str] = field(repr=False)
    issued_at: datetime
    flow: AuthFlow
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class SessionManager:
    """Менеджер токена доступа для SharePoint.

    Токен запрашивается при первом обращении и после инвалидации.
    Если получение уже идёт, другие корутины ждут на lock и затем
    получают уже выданную сессию либо ошибку той же попытки.
    """

    def __init__(
        self,
        credentials: Credentials,
        executor: RequestExecutor,
        logger: logging.Logger | None = None,
        clock: Clock = utcnow,
    ) -> None:
        """Инициализация менеджера сессии.

        Args:
            credentials: Учетные данные (секрет или сертификат)
            executor: Транспорт для запросов к identity-эндпоинту
            logger: Логгер
            clock: Источник текущего времени
        """
        self._credentials = credentials
        self._executor = executor
        self._logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._session: Session | None = None
        self._token_version: int = 0
        self._lock = asyncio.Lock()
        # Число завершённых попыток и ошибка последней из них
        self._attempts: int = 0
        self._last_error: SharePointAuthException | None = None

        # Способ получения токена выбирается один раз
        self._acquire_token: Callable[[str], Awaitable[dict[str, Any]]]
        if isinstance(credentials, CertificateCredentials):
            self._acquire_token = partial(self._acquire_certificate_token, credentials)
        else:
            self._acquire_token = partial(self._acquire_secret_token, credentials)

    @property
    def flow(self) -> AuthFlow:
        return self._credentials.flow

    @property
    def token_version(self) -> int:
        return self._token_version

    async def get_session(self, site_url: str) -> Session:
        """Получить действующую сессию, при необходимости запросив токен.

        Args:
            site_url: Адрес сайта (нужен для определения ресурса SharePoint)

        Returns:
            Действующая сессия

        Raises:
            SharePointAuthException: При ошибке получения токена
        """
        session = self._session
        if session is not None and not session.is_expired(self._clock()):
            return session

        attempts_before = self._attempts
        async with self._lock:
            # Double-check после получения lock
            session = self._session
            if session is not None and not session.is_expired(self._clock()):
                return session

            # Пока ждали lock, попытка другой корутины завершилась ошибкой:
            # повторно identity-эндпоинт не вызываем
            error = self._last_error
            if self._attempts != attempts_before and error is not None:
                raise SharePointAuthException(str(error), original_error=error) from error

            try:
                session = await self._fetch_session(site_url)
            except SharePointAuthException as exc:
                self._last_error = exc
                raise
            finally:
                self._attempts += 1

            self._last_error = None
            self._session = session
            self._token_version += 1
            self._logger.info(
                "Токен получен (способ: %s, версия: %d)",
                session.flow.value,
                self._token_version,
            )
            return session

    async def get_headers(self, site_url: str) -> dict[str, str]:
        """Получить копию заголовков авторизации для запроса."""
        session = await self.get_session(site_url)
        return dict(session.auth_headers)

    def invalidate(self, session: Session | None = None) -> bool:
        """Сбросить сессию после 401 от сервера.

        Если передана сессия, которая уже заменена другой корутиной,
        ничего не происходит.

        Args:
            session: Сессия, с которой был выполнен отклонённый запрос

        Returns:
            True если сессия была сброшена
        """
        if self._session is None:
            return False
        if session is not None and session is not self._session:
            self._logger.debug("Сессия уже обновлена другой корутиной")
            return False
        self._session = None
        self._logger.info("Сессия сброшена (версия: %d)", self._token_version)
        return True

    async def _fetch_session(self, site_url: str) -> Session:
        """Получить новый токен и собрать из него сессию.

        Raises:
            SharePointAuthException: При любой ошибке получения токена
        """
        host = urlparse(site_url).hostname
        if not host:
            raise SharePointAuthException(f"Некорректный адрес сайта: {site_url!r}")

        try:
            self._logger.debug(
                "Запрос токена (способ: %s, хост: %s)", self.flow.value, host
            )
            data = await self._acquire_token(host)
        except SharePointAuthException as exc:
            self._logger.error("Ошибка аутентификации SharePoint: %s", exc)
            raise
        except Exception as exc:
            detail = str(exc)
            if isinstance(exc, SharePointBackendException):
                detail = f"{exc} {exc.body}"
            self._logger.error("Ошибка при получении токена: %s", exc)
            raise SharePointAuthException(
                f"Ошибка аутентификации SharePoint: {describe_auth_error(detail)}",
                original_error=exc,
            ) from exc

        token = data.get("access_token")
        if not token:
            raise SharePointAuthException("В ответе identity-сервера нет access_token")

        issued_at = self._clock()
        expires_at = None
        try:
            expires_at = issued_at + timedelta(seconds=int(data["expires_in"])) - EXPIRY_MARGIN
        except (KeyError, TypeError, ValueError):
            self._logger.debug("Срок действия токена не указан")

        return Session(
            auth_headers={"Authorization": f"Bearer {token}", "Accept": ODATA_VERBOSE},
            issued_at=issued_at,
            flow=self.flow,
            expires_at=expires_at,
        )

    async def _request_token(self, url: str, form: dict[str, str]) -> dict[str, Any]:
        response = await self._executor.execute(
            "POST",
            url,
            {
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
            urlencode(form),
        )
        data = response.json()
        if not isinstance(data, dict):
            raise SharePointAuthException("Некорректный ответ identity-сервера")
        return data

    async def _acquire_secret_token(
        self, credentials: SecretCredentials, host: str
    ) -> dict[str, Any]:
        """Client credentials через SharePoint ACS."""
        realm = credentials.tenant_id
        return await self._request_token(
            acs_token_endpoint(realm),
            {
                "grant_type": "client_credentials",
                "client_id": f"{credentials.client_id}@{realm}",
                "client_secret": credentials.client_secret,
                "resource": f"{ACS_PRINCIPAL}/{host}@{realm}",
            },
        )

    async def _acquire_certificate_token(
        self, credentials: CertificateCredentials, host: str
    ) -> dict[str, Any]:
        """Client credentials с подписанным assertion через Azure AD."""
        assertion = create_client_assertion(credentials)
        return await self._request_token(
            token_endpoint(credentials.tenant_id),
            {
                "grant_type": "client_credentials",
                "client_id": credentials.client_id,
                "client_assertion_type": CLIENT_ASSERTION_TYPE,
                "client_assertion": assertion,
                "scope": f"https://{host}/.default",
            },
        )
