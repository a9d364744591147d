"""Дайджест запроса (X-RequestDigest) для изменяющих вызовов SharePoint.

Дайджест выдаётся на конкретный сайт, поэтому кэшируется по адресу
сайта. Срок действия, полученный от сервера, носит рекомендательный
характер: окончательным сигналом считается отказ сервера (403).
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sharepointserver.exceptions import (
    SharePointBackendException,
    SharePointException,
)
from sharepointserver.request_executor import RequestExecutor
from sharepointserver.session_manager import Clock, SessionManager, utcnow

DIGEST_HEADER = "X-RequestDigest"
DEFAULT_DIGEST_LIFETIME = 1800
# Дайджест обновляется заранее, чтобы не отправить почти истёкший
SAFETY_MARGIN = timedelta(seconds=60)

# Признаки отказа по дайджесту в теле ответа 403
DIGEST_REJECTION_MARKERS = (
    "-2130575251",
    "security validation",
    "x-requestdigest",
    "request digest",
)


def normalize_site_url(site_url: str) -> str:
    """Убрать завершающий слэш из адреса сайта."""
    return site_url.strip().rstrip("/")


def is_digest_rejection(error: Exception) -> bool:
    """Проверить, что сервер отклонил запрос из-за недействительного дайджеста.

    Args:
        error: Исключение, полученное при изменяющем запросе

    Returns:
        True для ответа 403 с ошибкой проверки безопасности
    """
    if not isinstance(error, SharePointBackendException) or error.status != 403:
        return False
    body = error.body.lower()
    return any(marker in body for marker in DIGEST_REJECTION_MARKERS)


@dataclass(frozen=True)
class Digest:
    """Дайджест для одного сайта.

    Attributes:
        value: Значение для заголовка X-RequestDigest
        expires_at: Момент, после которого дайджест запрашивается заново
    """

    value: str
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


class DigestProvider:
    """Кэш дайджестов по адресу сайта.

    Для каждого сайта держится отдельный lock, поэтому одновременные
    запросы одного сайта порождают не больше одного обращения к
    /_api/contextinfo.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        executor: RequestExecutor,
        logger: logging.Logger | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._session_manager = session_manager
        self._executor = executor
        self._logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._digests: dict[str, Digest] = {}
        # Lock-и живут всё время работы провайдера, по одному на сайт
        self._locks: dict[str, asyncio.Lock] = {}
        # Число завершённых запросов contextinfo и ошибка последнего, по сайтам
        self._attempts: dict[str, int] = {}
        self._errors: dict[str, SharePointException] = {}

    def _lock_for(self, site_url: str) -> asyncio.Lock:
        lock = self._locks.get(site_url)
        if lock is None:
            lock = self._locks[site_url] = asyncio.Lock()
        return lock

    def cached(self, site_url: str) -> Digest | None:
        """Дайджест из кэша без проверки срока."""
        return self._digests.get(normalize_site_url(site_url))

    async def get_digest(self, site_url: str) -> str:
        """Получить действующий дайджест для сайта.

        Args:
            site_url: Адрес сайта

        Returns:
            Значение дайджеста

        Raises:
            SharePointException: При ошибке запроса к /_api/contextinfo
        """
        site_url = normalize_site_url(site_url)
        digest = self._digests.get(site_url)
        if digest is not None and digest.is_valid(self._clock()):
            return digest.value

        attempts_before = self._attempts.get(site_url, 0)
        async with self._lock_for(site_url):
            digest = self._digests.get(site_url)
            if digest is not None and digest.is_valid(self._clock()):
                return digest.value

            # Запрос, которого ждали на lock, завершился ошибкой
            error = self._errors.get(site_url)
            if self._attempts.get(site_url, 0) != attempts_before and error is not None:
                raise error

            try:
                digest = await self._fetch_digest(site_url)
            except SharePointException as exc:
                self._errors[site_url] = exc
                raise
            finally:
                self._attempts[site_url] = self._attempts.get(site_url, 0) + 1

            self._errors.pop(site_url, None)
            self._digests[site_url] = digest
            return digest.value

    def invalidate(self, site_url: str, value: str | None = None) -> bool:
        """Сбросить дайджест сайта.

        Если передано значение и в кэше уже другой дайджест (его обновила
        другая корутина), кэш не трогается.

        Returns:
            True если дайджест был удалён из кэша
        """
        site_url = normalize_site_url(site_url)
        digest = self._digests.get(site_url)
        if digest is None or (value is not None and digest.value != value):
            return False
        del self._digests[site_url]
        self._logger.debug("Дайджест для %s сброшен", site_url)
        return True

    def clear(self) -> None:
        """Очистить кэш дайджестов.

        Lock-и сайтов сохраняются: один из них может быть сейчас захвачен.
        """
        self._digests.clear()
        self._errors.clear()

    async def _fetch_digest(self, site_url: str) -> Digest:
        headers = await self._session_manager.get_headers(site_url)
        url = f"{site_url}/_api/contextinfo"
        self._logger.debug("Запрос дайджеста: %s", url)

        response = await self._executor.execute("POST", url, headers)
        try:
            info = response.json()["d"]["GetContextWebInformation"]
            value = info["FormDigestValue"]
        except (ValueError, KeyError, TypeError) as exc:
            self._logger.error("Неожиданный формат ответа contextinfo: %s", response.text[:500])
            raise SharePointException(
                "Некорректный ответ /_api/contextinfo", original_error=exc
            ) from exc

        try:
            lifetime = int(info.get("FormDigestTimeoutSeconds", DEFAULT_DIGEST_LIFETIME))
        except (TypeError, ValueError):
            lifetime = DEFAULT_DIGEST_LIFETIME

        expires_at = self._clock() + timedelta(seconds=lifetime) - SAFETY_MARGIN
        self._logger.info("Дайджест получен для %s (действует %d с)", site_url, lifetime)
        return Digest(value=value, expires_at=expires_at)
