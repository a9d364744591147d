"""Исключения для работы с SharePoint REST API.

Все ошибки ядра наследуются от SharePointException и несут исходную
ошибку в original_error. Преобразование в конверт инструмента
выполняется только в sharepointserver.tools.
"""

import json
from typing import Any


class SharePointException(Exception):
    """Базовое исключение для ошибок SharePoint API."""

    def __init__(self, message: str, original_error: Exception | None = None) -> None:
        super().__init__(message)
        self.original_error = original_error


class SharePointConfigException(SharePointException):
    """Исключение при некорректной конфигурации.

    Выбрасывается, если ни один из способов аутентификации
    не может быть собран из настроек.
    """


class SharePointAuthException(SharePointException):
    """Исключение при ошибках аутентификации.

    Выбрасывается при:
    - Некорректных учетных данных (invalid_client, invalid_grant)
    - Отсутствии или повреждении сертификата
    - Любой ошибке получения токена (без автоматического повтора)
    """


class SharePointDigestExpiredException(SharePointException):
    """Дайджест отклонён сервером повторно, после единственного обновления."""


class SharePointNetworkException(SharePointException):
    """Ошибка транспорта: соединение не установлено или оборвано."""


class SharePointTimeoutException(SharePointNetworkException):
    """Запрос не уложился в отведённый таймаут."""


class SharePointBatchProtocolException(SharePointException):
    """Ответ на $batch повреждён или содержит меньше частей, чем ожидалось."""


class SharePointBatchIncompleteException(SharePointException):
    """Пакет из нескольких частей прерван после отправки первых частей.

    Операции из уже выполненных частей применены на сервере, их
    результаты лежат в completed. Судьба операций, начиная с
    failed_offset, неизвестна.

    Attributes:
        completed: Результаты (BatchOutcome) выполненных частей
        failed_offset: Индекс первой операции прерванной части
    """

    def __init__(
        self,
        message: str,
        completed: list[Any],
        failed_offset: int,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, original_error=original_error)
        self.completed = completed
        self.failed_offset = failed_offset


class SharePointBackendException(SharePointException):
    """Сервер ответил статусом 4xx/5xx.

    Attributes:
        status: HTTP статус ответа
        body: Тело ответа в виде текста
        url: Адрес запроса
    """

    def __init__(
        self,
        status: int,
        body: str,
        url: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        self.status = status
        self.body = body
        self.url = url
        super().__init__(
            f"HTTP {status}: {extract_error_message(body) or 'пустой ответ'}",
            original_error=original_error,
        )


def extract_error_message(body: str | bytes | None) -> str:
    """Достать текст ошибки из odata-ответа.

    SharePoint возвращает ошибки в виде
    {"error": {"code": "...", "message": {"lang": "...", "value": "..."}}}
    (для odata=verbose) либо {"odata.error": {...}}. Если тело не JSON,
    возвращается как есть.

    Args:
        body: Тело ответа

    Returns:
        Текст ошибки или пустая строка
    """
    if body is None:
        return ""
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    text = body.strip()
    if not text:
        return ""

    try:
        data: Any = json.loads(text)
    except ValueError:
        return text

    if isinstance(data, dict):
        error = data.get("error") or data.get("odata.error")
        if isinstance(error, dict):
            message = error.get("message")
            if isinstance(message, dict):
                return str(message.get("value", ""))
            if message:
                return str(message)
            if error.get("code"):
                return str(error["code"])
        # OAuth-ответы identity-эндпоинтов
        if data.get("error_description"):
            return str(data["error_description"])
        if isinstance(error, str):
            return error
    return text
