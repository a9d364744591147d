"""Пакетные запросы SharePoint ($batch).

Несколько операций упаковываются в один multipart/mixed запрос:

    --batch_<uuid>
    Content-Type: multipart/mixed; boundary=changeset_<uuid>

    --changeset_<uuid>
    Content-Type: application/http
    Content-Transfer-Encoding: binary
    Content-ID: 1

    POST https://.../items HTTP/1.1
    ...
    --changeset_<uuid>--
    --batch_<uuid>--

Изменяющие операции (создание, обновление, удаление) идут внутри
changeset, чтение идёт напрямую под границей batch. Ответ содержит по одному
HTTP-ответу на каждую операцию в том же порядке. Сопоставление ответов
с операциями выполняется по позиции, а не по Content-ID.
"""

import json
import re
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sharepointserver.endpoints import ODATA_VERBOSE, items_url
from sharepointserver.exceptions import (
    SharePointBatchProtocolException,
    extract_error_message,
)

CRLF = "\r\n"
MAX_BATCH_SIZE = 100

_BOUNDARY_RE = re.compile(r'boundary\s*=\s*"?([^";\s]+)"?', re.IGNORECASE)
_STATUS_RE = re.compile(r"^HTTP/\d(?:\.\d)?\s+(\d{3})(?:\s+(.*))?$")


class OperationKind(str, Enum):
    """Вид операции в пакете."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    READ = "read"


MUTATING_KINDS = frozenset({OperationKind.CREATE, OperationKind.UPDATE, OperationKind.DELETE})


@dataclass(frozen=True)
class BatchOperation:
    """Одна операция пакета.

    Attributes:
        kind: Вид операции
        target_list: Название списка
        item_id: ID элемента (обязателен для обновления и удаления)
        payload: Данные элемента (обязательны для создания и обновления)
    """

    kind: OperationKind
    target_list: str
    item_id: int | None = None
    payload: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        if self.kind in (OperationKind.UPDATE, OperationKind.DELETE) and self.item_id is None:
            raise ValueError(f"Для операции {self.kind.value} нужен item_id")
        if self.kind in (OperationKind.CREATE, OperationKind.UPDATE) and self.payload is None:
            raise ValueError(f"Для операции {self.kind.value} нужен payload")

    @classmethod
    def create(cls, target_list: str, payload: dict[str, Any]) -> "BatchOperation":
        return cls(OperationKind.CREATE, target_list, payload=payload)

    @classmethod
    def update(cls, target_list: str, item_id: int, payload: dict[str, Any]) -> "BatchOperation":
        return cls(OperationKind.UPDATE, target_list, item_id=item_id, payload=payload)

    @classmethod
    def delete(cls, target_list: str, item_id: int) -> "BatchOperation":
        return cls(OperationKind.DELETE, target_list, item_id=item_id)

    @classmethod
    def read(cls, target_list: str, item_id: int | None = None) -> "BatchOperation":
        return cls(OperationKind.READ, target_list, item_id=item_id)

    @property
    def is_mutating(self) -> bool:
        return self.kind in MUTATING_KINDS


@dataclass(frozen=True)
class BatchOutcome:
    """Результат одной операции пакета.

    Attributes:
        index: Позиция операции во входной последовательности
        success: True для статусов 2xx
        status_code: HTTP статус вложенного ответа
        body: Тело успешного ответа (JSON или текст)
        error_message: Текст ошибки для неуспешного ответа
    """

    index: int
    success: bool
    status_code: int
    body: Any = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "index": self.index,
            "success": self.success,
            "statusCode": self.status_code,
        }
        if self.success:
            result["body"] = self.body
        else:
            result["error"] = self.error_message
        return result


@dataclass(frozen=True)
class BatchRequest:
    """Закодированный пакет.

    Attributes:
        body: Тело multipart-запроса
        boundary: Граница внешнего уровня (batch)
    """

    body: bytes
    boundary: str

    @property
    def content_type(self) -> str:
        return f"multipart/mixed; boundary={self.boundary}"


# ========== Кодирование ==========


def _sub_request(site_url: str, operation: BatchOperation, content_id: int) -> list[str]:
    """Строки одного вложенного HTTP-запроса вместе с заголовками части."""
    url = items_url(site_url, operation.target_list, operation.item_id)
    lines = [
        "Content-Type: application/http",
        "Content-Transfer-Encoding: binary",
        f"Content-ID: {content_id}",
        "",
    ]

    if operation.kind is OperationKind.READ:
        lines += [f"GET {url} HTTP/1.1", f"Accept: {ODATA_VERBOSE}"]
    else:
        lines += [f"POST {url} HTTP/1.1", f"Accept: {ODATA_VERBOSE}"]
        if operation.payload is not None:
            lines.append(f"Content-Type: {ODATA_VERBOSE}")
        if operation.kind is OperationKind.UPDATE:
            lines += ["IF-MATCH: *", "X-HTTP-Method: MERGE"]
        elif operation.kind is OperationKind.DELETE:
            lines += ["IF-MATCH: *", "X-HTTP-Method: DELETE"]

    payload = ""
    if operation.payload is not None and operation.kind is not OperationKind.READ:
        payload = json.dumps(operation.payload, ensure_ascii=False)
    # Пустая строка завершает заголовки, следом тело (возможно пустое)
    return lines + ["", payload]


def _changeset(site_url: str, run: list[tuple[int, BatchOperation]]) -> list[str]:
    boundary = f"changeset_{uuid.uuid4()}"
    lines = [f"Content-Type: multipart/mixed; boundary={boundary}", ""]
    for index, operation in run:
        lines.append(f"--{boundary}")
        lines += _sub_request(site_url, operation, index + 1)
    lines += [f"--{boundary}--", ""]
    return lines


def build_batch(site_url: str, operations: list[BatchOperation]) -> BatchRequest:
    """Закодировать операции в тело запроса $batch.

    Подряд идущие изменяющие операции попадают в общий changeset;
    чтение разрывает changeset, чтобы сохранить порядок операций.

    Args:
        site_url: Адрес сайта без завершающего слэша
        operations: Операции в порядке выполнения

    Returns:
        Тело запроса и граница batch

    Raises:
        ValueError: Если список операций пуст
    """
    if not operations:
        raise ValueError("Пакет должен содержать хотя бы одну операцию")

    boundary = f"batch_{uuid.uuid4()}"
    lines: list[str] = []
    run: list[tuple[int, BatchOperation]] = []

    for index, operation in enumerate(operations):
        if operation.is_mutating:
            run.append((index, operation))
            continue
        if run:
            lines.append(f"--{boundary}")
            lines += _changeset(site_url, run)
            run = []
        lines.append(f"--{boundary}")
        lines += _sub_request(site_url, operation, index + 1)

    if run:
        lines.append(f"--{boundary}")
        lines += _changeset(site_url, run)

    lines += [f"--{boundary}--", ""]
    return BatchRequest(body=CRLF.join(lines).encode("utf-8"), boundary=boundary)


# ========== Разбор ответа ==========


def boundary_from_content_type(content_type: str | None) -> str | None:
    """Достать границу из заголовка Content-Type."""
    if not content_type:
        return None
    match = _BOUNDARY_RE.search(content_type)
    return match.group(1) if match else None


def _sniff_boundary(text: str) -> str | None:
    for line in text.split("\n"):
        line = line.strip()
        if not line:
            continue
        return line[2:] if line.startswith("--") else None
    return None


def _split_head(block: str) -> tuple[dict[str, str], str]:
    """Разделить блок на заголовки (имена в нижнем регистре) и тело."""
    head, _, body = block.partition("\n\n")
    headers: dict[str, str] = {}
    for line in head.split("\n"):
        name, colon, value = line.partition(":")
        if colon:
            headers[name.strip().lower()] = value.strip()
    return headers, body


def _split_multipart(text: str, boundary: str) -> list[str]:
    """Разбить тело на части по границе.

    Raises:
        SharePointBatchProtocolException: Если нет закрывающей границы
    """
    # Разделитель занимает целую строку; перевод строки перед ним
    # относится к разделителю, а не к телу части
    delimiter = re.compile(rf"(?:^|\n)--{re.escape(boundary)}(--)?[ \t]*(?=\n|$)")
    parts: list[str] = []
    start: int | None = None
    for match in delimiter.finditer(text):
        if start is not None:
            parts.append(text[start:match.start()])
        if match.group(1):
            return parts
        start = match.end() + 1
    raise SharePointBatchProtocolException(
        f"Ответ $batch обрезан: нет закрывающей границы {boundary}"
    )


def _parse_http_response(content: str) -> tuple[int, str, str]:
    """Разобрать вложенный HTTP-ответ.

    Returns:
        Статус, текст статуса и тело

    Raises:
        SharePointBatchProtocolException: Если нет строки статуса
    """
    content = content.lstrip("\n")
    status_line, _, rest = content.partition("\n")
    match = _STATUS_RE.match(status_line.strip())
    if match is None:
        raise SharePointBatchProtocolException(
            f"Некорректная строка статуса во вложенном ответе: {status_line[:80]!r}"
        )
    if rest.startswith("\n"):
        body = rest[1:]
    else:
        _, body = _split_head(rest)
    return int(match.group(1)), (match.group(2) or "").strip(), body.strip()


def _collect_responses(text: str, boundary: str, responses: list[tuple[int, str, str]]) -> None:
    for part in _split_multipart(text, boundary):
        headers, content = _split_head(part)
        content_type = headers.get("content-type", "")
        if content_type.lower().startswith("multipart/"):
            nested = boundary_from_content_type(content_type)
            if nested is None:
                raise SharePointBatchProtocolException(
                    "Вложенная multipart-часть без границы"
                )
            _collect_responses(content, nested, responses)
        else:
            responses.append(_parse_http_response(content))


def _decode_body(body: str) -> Any:
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return body


def parse_batch_response(
    raw: bytes | str,
    expected_count: int,
    content_type: str | None = None,
) -> list[BatchOutcome]:
    """Разобрать ответ $batch в список результатов.

    Неуспешный статус отдельной операции считается обычным результатом, а не ошибкой.
    Ошибкой всего пакета считается повреждённый ответ или несовпадение
    числа ответов с числом операций.

    Args:
        raw: Тело ответа
        expected_count: Число отправленных операций
        content_type: Заголовок Content-Type ответа (если известен)

    Returns:
        Результаты в порядке отправленных операций

    Raises:
        SharePointBatchProtocolException: Если ответ повреждён или неполон
    """
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    text = text.replace("\r\n", "\n")

    boundary = boundary_from_content_type(content_type) or _sniff_boundary(text)
    if not boundary:
        raise SharePointBatchProtocolException("В ответе $batch не найдена граница multipart")

    responses: list[tuple[int, str, str]] = []
    _collect_responses(text, boundary, responses)

    if len(responses) != expected_count:
        raise SharePointBatchProtocolException(
            f"Ответ $batch содержит {len(responses)} частей вместо {expected_count}"
        )

    outcomes = []
    for index, (status, reason, body) in enumerate(responses):
        if 200 <= status < 300:
            outcomes.append(
                BatchOutcome(index=index, success=True, status_code=status, body=_decode_body(body))
            )
        else:
            outcomes.append(
                BatchOutcome(
                    index=index,
                    success=False,
                    status_code=status,
                    error_message=extract_error_message(body) or reason or f"HTTP {status}",
                )
            )
    return outcomes
