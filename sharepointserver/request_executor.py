"""Транспорт HTTP-запросов к SharePoint.

Выполняет одиночные запросы с заголовками, подготовленными вызывающим
кодом. Аутентификацией и дайджестами не занимается.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from sharepointserver.exceptions import (
    SharePointBackendException,
    SharePointNetworkException,
    SharePointTimeoutException,
)


DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class RawResponse:
    """Ответ сервера со статусом < 400.

    Attributes:
        status: HTTP статус
        headers: Заголовки ответа
        body: Тело ответа как есть
    """

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def text(self) -> str:
        """Тело ответа в виде строки."""
        return self.body.decode("utf-8", errors="replace")

    @property
    def content_type(self) -> str | None:
        """Значение заголовка Content-Type (без учёта регистра имени)."""
        for name, value in self.headers.items():
            if name.lower() == "content-type":
                return value
        return None

    def json(self) -> Any:
        """Разобрать тело ответа как JSON.

        Returns:
            Разобранное значение или None для пустого тела
        """
        if not self.body.strip():
            return None
        return json.loads(self.body)


class RequestExecutor:
    """Исполнитель HTTP-запросов поверх aiohttp.

    Сессия aiohttp создаётся лениво и закрывается через close().
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        session: aiohttp.ClientSession | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """Инициализация исполнителя.

        Args:
            timeout: Таймаут по умолчанию для одного запроса, секунды
            session: Готовая сессия aiohttp (для тестов и переиспользования)
            logger: Логгер для диагностических сообщений
        """
        self._timeout = timeout
        self._session = session
        self._logger = logger or logging.getLogger(__name__)

    @property
    def timeout(self) -> float:
        return self._timeout

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def execute(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: bytes | str | None = None,
        timeout: float | None = None,
    ) -> RawResponse:
        """Выполнить HTTP-запрос.

        Отмена вызывающей корутины (например, asyncio.wait_for) прерывает
        сетевой запрос.

        Args:
            method: HTTP метод
            url: Полный адрес
            headers: Заголовки запроса
            body: Тело запроса
            timeout: Таймаут запроса в секундах (по умолчанию из конструктора)

        Returns:
            Ответ сервера

        Raises:
            SharePointTimeoutException: Если запрос не уложился в таймаут
            SharePointNetworkException: При ошибке соединения
            SharePointBackendException: Если сервер вернул статус >= 400
        """
        total = timeout if timeout is not None else self._timeout
        session = self._get_session()
        self._logger.debug("%s %s (таймаут %.1f с)", method, url, total)

        try:
            async with session.request(
                method,
                url,
                headers=headers,
                data=body,
                timeout=aiohttp.ClientTimeout(total=total),
            ) as response:
                payload = await response.read()
                status = response.status
                response_headers = dict(response.headers)
        except asyncio.TimeoutError as exc:
            self._logger.error("Таймаут %.1f с: %s %s", total, method, url)
            raise SharePointTimeoutException(
                f"Запрос {method} {url} не выполнен за {total:.1f} с",
                original_error=exc,
            ) from exc
        except aiohttp.ClientError as exc:
            self._logger.error("Ошибка соединения: %s %s: %s", method, url, exc)
            raise SharePointNetworkException(
                f"Ошибка соединения при {method} {url}: {exc}",
                original_error=exc,
            ) from exc

        if status >= 400:
            text = payload.decode("utf-8", errors="replace")
            self._logger.debug("Ответ %d на %s %s: %s", status, method, url, text[:500])
            raise SharePointBackendException(status=status, body=text, url=url)

        return RawResponse(status=status, headers=response_headers, body=payload)

    async def close(self) -> None:
        """Закрыть HTTP-сессию."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
