"""Тесты для api_client_manager модуля."""

import json
from collections.abc import Callable
from datetime import timedelta
from typing import Any
from unittest.mock import MagicMock

import pytest

from sharepointserver.api_client_manager import SharePointApiClientManager
from sharepointserver.batch import BatchOperation
from sharepointserver.config_reader import SharePointConfig
from sharepointserver.credentials import SecretCredentials
from sharepointserver.digest_provider import DIGEST_HEADER, DigestProvider
from sharepointserver.exceptions import (
    SharePointAuthException,
    SharePointBackendException,
    SharePointBatchIncompleteException,
    SharePointBatchProtocolException,
    SharePointConfigException,
    SharePointDigestExpiredException,
    SharePointException,
)
from sharepointserver.mock_data import FieldDescriptor
from sharepointserver.request_executor import RawResponse
from sharepointserver.session_manager import SessionManager

# Маркируем все тесты в этом модуле как unit-тесты
pytestmark = pytest.mark.unit

SECURITY_VALIDATION_ERROR = json.dumps(
    {
        "error": {
            "code": "-2130575251, Microsoft.SharePoint.SPException",
            "message": {"value": "The security validation for this page is invalid."},
        }
    }
)

Responder = RawResponse | Exception | Callable[[str, str, dict[str, str], Any], RawResponse]


def json_response(data: Any, status: int = 200) -> RawResponse:
    return RawResponse(status=status, headers={}, body=json.dumps(data).encode("utf-8"))


def context_info(value: str) -> RawResponse:
    return json_response(
        {"d": {"GetContextWebInformation": {"FormDigestValue": value, "FormDigestTimeoutSeconds": 1800}}}
    )


def batch_reply(statuses: list[int]) -> RawResponse:
    """Ответ $batch с одним changeset и заданными статусами."""
    parts = []
    for number, status in enumerate(statuses, start=1):
        if status < 300:
            payload = json.dumps({"d": {"ID": number}})
        else:
            payload = json.dumps({"error": {"message": {"value": f"Item {number} is invalid"}}})
        parts.append(
            "--changesetresponse_1\r\n"
            "Content-Type: application/http\r\n"
            "Content-Transfer-Encoding: binary\r\n\r\n"
            f"HTTP/1.1 {status} Status\r\n"
            "Content-Type: application/json;odata=verbose\r\n\r\n"
            f"{payload}\r\n"
        )
    body = (
        "--batchresponse_1\r\n"
        "Content-Type: multipart/mixed; boundary=changesetresponse_1\r\n\r\n"
        + "".join(parts)
        + "--changesetresponse_1--\r\n"
        "--batchresponse_1--\r\n"
    )
    return RawResponse(
        status=200,
        headers={"Content-Type": "multipart/mixed; boundary=batchresponse_1"},
        body=body.encode("utf-8"),
    )


class FakeSharePoint:
    """Маршрутизатор ответов для мока RequestExecutor.

    Маршруты проверяются по порядку добавления; очередь ответов
    расходуется, последний ответ повторяется.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict[str, str], Any]] = []
        self._routes: list[tuple[str, list[Responder]]] = []

    def route(self, marker: str, *responses: Responder) -> None:
        self._routes.append((marker, list(responses)))

    def count(self, marker: str) -> int:
        return sum(1 for _method, url, _headers, _body in self.calls if marker in url)

    def requests_to(self, marker: str) -> list[tuple[str, str, dict[str, str], Any]]:
        return [call for call in self.calls if marker in call[1]]

    async def handle(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: Any = None,
        timeout: float | None = None,
    ) -> RawResponse:
        self.calls.append((method, url, dict(headers), body))
        for marker, queue in self._routes:
            if marker not in url:
                continue
            responder = queue.pop(0) if len(queue) > 1 else queue[0]
            if isinstance(responder, Exception):
                raise responder
            if callable(responder):
                return responder(method, url, headers, body)
            return responder
        raise AssertionError(f"Неожиданный запрос: {method} {url}")


@pytest.fixture
def backend() -> FakeSharePoint:
    fake = FakeSharePoint()
    fake.route("accesscontrol.windows.net", json_response({"access_token": "t1", "expires_in": 3600}))
    fake.route("/_api/contextinfo", context_info("digest-1"))
    return fake


@pytest.fixture
def manager(
    backend: FakeSharePoint,
    executor: MagicMock,
    secret_credentials: SecretCredentials,
    clock: Any,
    site_url: str,
) -> SharePointApiClientManager:
    executor.execute.side_effect = backend.handle
    session_manager = SessionManager(secret_credentials, executor, clock=clock)
    digest_provider = DigestProvider(session_manager, executor, clock=clock)
    return SharePointApiClientManager(
        executor=executor,
        session_manager=session_manager,
        digest_provider=digest_provider,
        default_site_url=site_url + "/",
    )


class TestCreation:
    """Тесты создания фасада."""

    def test_from_config(self) -> None:
        config = SharePointConfig(
            client_id="id",
            client_secret="secret",  # type: ignore[arg-type]
            tenant_id="tenant",
            site_url="https://x/sites/a",
            request_timeout=7,
        )

        manager = SharePointApiClientManager.from_config(config)

        assert manager.resolve_site_url() == "https://x/sites/a"
        assert manager.session_manager.flow.value == "secret"

    def test_from_config_without_credentials(self) -> None:
        with pytest.raises(SharePointConfigException):
            SharePointApiClientManager.from_config(SharePointConfig())

    def test_resolve_site_url(self, manager: SharePointApiClientManager, site_url: str) -> None:
        assert manager.resolve_site_url() == site_url
        assert manager.resolve_site_url("https://y/sites/b/") == "https://y/sites/b"

    async def test_close(
        self, manager: SharePointApiClientManager, executor: MagicMock, site_url: str
    ) -> None:
        await manager.digest_provider.get_digest(site_url)

        await manager.close()

        executor.close.assert_awaited_once()
        assert manager.digest_provider.cached(site_url) is None


class TestReads:
    """Тесты чтения."""

    async def test_get_web_title(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        backend.route("/_api/web/title", json_response({"d": {"Title": "Dev Site"}}))

        assert await manager.get_web_title() == "Dev Site"
        # Чтение не требует дайджеста
        assert backend.count("/_api/contextinfo") == 0
        _method, _url, headers, _body = backend.requests_to("/_api/web/title")[0]
        assert headers["Authorization"] == "Bearer t1"

    async def test_get_lists_filters_hidden(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        backend.route(
            "/_api/web/lists",
            json_response(
                {
                    "d": {
                        "results": [
                            {"Title": "Tasks", "Hidden": False, "IsSystemList": False},
                            {"Title": "Hidden", "Hidden": True, "IsSystemList": False},
                            {"Title": "System", "Hidden": False, "IsSystemList": True},
                        ]
                    }
                }
            ),
        )

        lists = await manager.get_lists()

        assert [item["Title"] for item in lists] == ["Tasks"]

    async def test_get_list_items(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        backend.route("/items", json_response({"d": {"results": [{"ID": 1}, {"ID": 2}]}}))

        items = await manager.get_list_items("Tasks")

        assert [item["ID"] for item in items] == [1, 2]
        assert backend.calls[-1][1].endswith("/items?$top=5000")

    async def test_get_writeable_fields(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        backend.route(
            "/fields",
            json_response(
                {
                    "d": {
                        "results": [
                            {"InternalName": "Title", "TypeAsString": "Text"},
                            {"InternalName": "ContentType", "TypeAsString": "Computed"},
                            {"InternalName": "_ModerationStatus", "TypeAsString": "ModStat"},
                            {"InternalName": "Status", "TypeAsString": "Choice"},
                        ]
                    }
                }
            ),
        )

        fields = await manager.get_writeable_fields("Tasks")

        assert [field.internal_name for field in fields] == ["Title", "Status"]
        assert "ReadOnlyField eq false and Hidden eq false" in backend.calls[-1][1]

    async def test_get_lookup_values(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        backend.route("lists(guid'", json_response({"d": {"results": [{"ID": 4}, {"ID": 9}]}}))
        field = FieldDescriptor("Project", "Project", "Lookup", lookup_list="{abc}", lookup_field="Title")

        assert await manager.get_lookup_values(field) == [4, 9]
        assert "lists(guid'abc')/items?$select=ID,Title&$top=100" in backend.calls[-1][1]

    async def test_lookup_without_list(self, manager: SharePointApiClientManager) -> None:
        field = FieldDescriptor("Project", "Project", "Lookup")

        assert await manager.get_lookup_values(field) == []

    async def test_unexpected_shape(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        backend.route("/items", json_response({"value": []}))

        with pytest.raises(Exception, match="d.results"):
            await manager.get_list_items("Tasks")


class TestSingleWrites:
    """Тесты изменения одного элемента."""

    @pytest.fixture(autouse=True)
    def list_route(self, backend: FakeSharePoint) -> None:
        backend.route("/items", json_response({"d": {"ID": 10, "Title": "New"}}, status=201))
        backend.route(
            "getByTitle('Tasks')",
            json_response({"d": {"ListItemEntityTypeFullName": "SP.Data.TasksListItem"}}),
        )

    async def test_create(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        created = await manager.create_list_item("Tasks", {"Title": "New"})

        assert created["ID"] == 10
        method, _url, headers, body = backend.requests_to("/items")[0]
        assert method == "POST"
        assert headers[DIGEST_HEADER] == "digest-1"
        assert headers["Content-Type"] == "application/json;odata=verbose"
        assert json.loads(body) == {
            "__metadata": {"type": "SP.Data.TasksListItem"},
            "Title": "New",
        }

    async def test_update_uses_merge(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        await manager.update_list_item("Tasks", 5, {"Title": "B"})

        _method, url, headers, _body = backend.requests_to("/items")[0]
        assert url.endswith("/items(5)")
        assert headers["X-HTTP-Method"] == "MERGE"
        assert headers["IF-MATCH"] == "*"

    async def test_delete(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        await manager.delete_list_item("Tasks", 6)

        _method, url, headers, body = backend.requests_to("/items")[0]
        assert url.endswith("/items(6)")
        assert headers["X-HTTP-Method"] == "DELETE"
        assert body is None


def entity_or_empty(entity: dict[str, Any]) -> Responder:
    """GET отдаёт объект, MERGE и DELETE отвечают 204 без тела."""

    def respond(method: str, url: str, headers: dict[str, str], body: Any) -> RawResponse:
        if "X-HTTP-Method" in headers:
            return RawResponse(status=204, headers={}, body=b"")
        return json_response({"d": entity})

    return respond


class TestListManagement:
    """Тесты создания, изменения и удаления списков."""

    async def test_create_defaults(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint, site_url: str
    ) -> None:
        backend.route("/_api/web/lists", json_response({"d": {"Id": "abc", "Title": "Projects"}}, 201))

        created = await manager.create_list({"Title": "Projects", "TemplateType": 100})

        assert created["Title"] == "Projects"
        method, url, headers, body = backend.requests_to("/_api/web/lists")[0]
        assert (method, url) == ("POST", f"{site_url}/_api/web/lists")
        assert headers[DIGEST_HEADER] == "digest-1"
        payload = json.loads(body)
        assert payload["__metadata"] == {"type": "SP.List"}
        assert payload["BaseTemplate"] == 100
        assert payload["ContentTypesEnabled"] is False
        assert "TemplateType" not in payload

    async def test_create_document_library(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        backend.route("/_api/web/lists", json_response({"d": {"Title": "Docs"}}, 201))

        await manager.create_list(
            {"Title": "Docs", "TemplateType": 101, "Description": "Файлы", "EnableVersioning": True}
        )

        payload = json.loads(backend.requests_to("/_api/web/lists")[0][3])
        assert payload["BaseTemplate"] == 101
        assert payload["Description"] == "Файлы"
        assert payload["EnableVersioning"] is True

    async def test_update_renamed_list_reloaded(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        """После переименования список перечитывается под новым названием."""
        backend.route("getByTitle(", entity_or_empty({"Title": "Done"}))

        updated = await manager.update_list("Tasks", {"Title": "Done"})

        assert updated["Title"] == "Done"
        merge, reload = backend.requests_to("getByTitle(")
        assert merge[1].endswith("getByTitle('Tasks')")
        assert merge[2]["X-HTTP-Method"] == "MERGE"
        assert json.loads(merge[3]) == {"__metadata": {"type": "SP.List"}, "Title": "Done"}
        assert reload[0] == "GET"
        assert reload[1].endswith("getByTitle('Done')")

    async def test_delete_returns_details(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        backend.route("getByTitle('Tasks')", entity_or_empty({"Title": "Tasks", "ItemCount": 4}))

        deleted = await manager.delete_list("Tasks")

        assert deleted["ItemCount"] == 4
        read, delete = backend.requests_to("getByTitle('Tasks')")
        assert read[0] == "GET"
        assert delete[2]["X-HTTP-Method"] == "DELETE"
        assert delete[2]["IF-MATCH"] == "*"

    async def test_delete_missing_list(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        backend.route("getByTitle('Missing')", SharePointBackendException(404, "List does not exist"))

        with pytest.raises(SharePointBackendException):
            await manager.delete_list("Missing")

        assert all(call[0] == "GET" for call in backend.requests_to("getByTitle('Missing')"))


class TestFieldManagement:
    """Тесты создания, изменения и удаления полей."""

    async def test_create_renames_to_display_title(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        """Поле создаётся под именем без пробелов и получает исходное название."""
        backend.route("$filter=Title", json_response({"d": {"results": []}}))
        backend.route(
            "getByInternalNameOrTitle",
            entity_or_empty({"InternalName": "DueDate", "Title": "Due Date"}),
        )
        backend.route("/fields", json_response({"d": {"InternalName": "DueDate", "Title": "DueDate"}}, 201))

        created = await manager.create_list_field(
            "Tasks", {"Title": "Due Date", "FieldTypeKind": 4, "Required": True}
        )

        assert created["Title"] == "Due Date"
        _method, url, _headers, body = backend.requests_to("/fields")[1]
        assert url.endswith("/fields")
        assert json.loads(body) == {
            "__metadata": {"type": "SP.Field"},
            "Title": "DueDate",
            "FieldTypeKind": 4,
            "Required": True,
        }
        merge = backend.requests_to("getByInternalNameOrTitle('DueDate')")[0]
        assert json.loads(merge[3]) == {"__metadata": {"type": "SP.Field"}, "Title": "Due Date"}

    async def test_create_choice_field(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        backend.route("$filter=Title", json_response({"d": {"results": []}}))
        backend.route("/fields", json_response({"d": {"InternalName": "Status", "Title": "Status"}}, 201))

        created = await manager.create_list_field(
            "Tasks",
            {"Title": "Status", "FieldTypeKind": 15, "Choices": ["A", "B"], "DefaultValue": "A"},
        )

        assert created["InternalName"] == "Status"
        payload = json.loads(backend.requests_to("/fields")[1][3])
        assert payload["__metadata"] == {"type": "SP.FieldMultiChoice"}
        assert payload["Choices"] == {
            "__metadata": {"type": "Collection(Edm.String)"},
            "results": ["A", "B"],
        }
        assert backend.count("getByInternalNameOrTitle") == 0

    async def test_create_duplicate_rejected(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        backend.route("$filter=Title", json_response({"d": {"results": [{"Title": "Status"}]}}))

        with pytest.raises(SharePointException, match="уже существует"):
            await manager.create_list_field("Tasks", {"Title": "Status", "FieldTypeKind": 2})

        assert all(call[0] == "GET" for call in backend.requests_to("/fields"))

    async def test_update_choices(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        backend.route(
            "getByInternalNameOrTitle('Status')",
            entity_or_empty({"InternalName": "Status", "Required": True}),
        )

        updated = await manager.update_list_field(
            "Tasks", "Status", {"Required": True, "Choices": ["X", "Y"]}
        )

        assert updated["Required"] is True
        merge = backend.requests_to("getByInternalNameOrTitle('Status')")[0]
        assert merge[2]["X-HTTP-Method"] == "MERGE"
        assert json.loads(merge[3]) == {
            "__metadata": {"type": "SP.Field"},
            "Required": True,
            "Choices": {"results": ["X", "Y"]},
        }

    async def test_delete_read_only_rejected(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        backend.route(
            "getByInternalNameOrTitle('Created')",
            entity_or_empty({"InternalName": "Created", "ReadOnlyField": True}),
        )

        with pytest.raises(SharePointException, match="только для чтения"):
            await manager.delete_list_field("Tasks", "Created")

        assert backend.count("getByInternalNameOrTitle") == 1

    async def test_delete(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        backend.route(
            "getByInternalNameOrTitle('Notes')",
            entity_or_empty({"InternalName": "Notes", "ReadOnlyField": False}),
        )

        deleted = await manager.delete_list_field("Tasks", "Notes")

        assert deleted["InternalName"] == "Notes"
        _read, delete = backend.requests_to("getByInternalNameOrTitle('Notes')")
        assert delete[2]["X-HTTP-Method"] == "DELETE"


class TestDigestRetry:
    """Тесты единственного повтора при отказе по дайджесту."""

    async def test_rejected_digest_refetched_once(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        backend.route(
            "/items",
            SharePointBackendException(403, SECURITY_VALIDATION_ERROR),
            json_response({}, status=204),
        )
        backend._routes[1] = ("/_api/contextinfo", [context_info("digest-1"), context_info("digest-2")])

        await manager.delete_list_item("Tasks", 1)

        attempts = backend.requests_to("/items")
        assert len(attempts) == 2
        assert attempts[0][2][DIGEST_HEADER] == "digest-1"
        assert attempts[1][2][DIGEST_HEADER] == "digest-2"
        assert backend.count("/_api/contextinfo") == 2

    async def test_second_rejection_raises(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        backend.route("/items", SharePointBackendException(403, SECURITY_VALIDATION_ERROR))

        with pytest.raises(SharePointDigestExpiredException):
            await manager.delete_list_item("Tasks", 1)

        assert backend.count("/items") == 2
        assert backend.count("/_api/contextinfo") == 2

    async def test_plain_403_not_retried(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        backend.route(
            "/items",
            SharePointBackendException(403, '{"error": {"message": {"value": "Access denied."}}}'),
        )

        with pytest.raises(SharePointBackendException):
            await manager.delete_list_item("Tasks", 1)

        assert backend.count("/items") == 1

    async def test_expired_digest_one_extra_call(
        self,
        manager: SharePointApiClientManager,
        backend: FakeSharePoint,
        clock: Any,
    ) -> None:
        """Истёкший дайджест обновляется прозрачно, ровно одним запросом."""
        backend.route("/items", json_response({}, status=204))

        await manager.delete_list_item("Tasks", 1)
        await manager.delete_list_item("Tasks", 2)
        assert backend.count("/_api/contextinfo") == 1

        clock.now += timedelta(hours=1)
        await manager.delete_list_item("Tasks", 3)

        assert backend.count("/_api/contextinfo") == 2
        assert backend.count("/items") == 3


class TestUnauthorized:
    """Тесты ответа 401."""

    async def test_401_invalidates_session(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        backend.route(
            "/_api/web/title",
            SharePointBackendException(401, "Unauthorized"),
            json_response({"d": {"Title": "Dev"}}),
        )

        with pytest.raises(SharePointAuthException):
            await manager.get_web_title()
        # Следующий вызов получает новый токен
        assert await manager.get_web_title() == "Dev"

        assert backend.count("accesscontrol.windows.net") == 2
        assert backend.count("/_api/web/title") == 2


class TestBatch:
    """Тесты пакетных операций."""

    @pytest.fixture(autouse=True)
    def list_route(self, backend: FakeSharePoint) -> None:
        backend.route(
            "getByTitle('Tasks')",
            json_response({"d": {"ListItemEntityTypeFullName": "SP.Data.TasksListItem"}}),
        )

    async def test_partial_failure(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint, site_url: str
    ) -> None:
        """Пакет из трёх элементов с ошибкой во втором не бросает исключение."""
        backend._routes.insert(0, ("/_api/$batch", [batch_reply([201, 400, 201])]))

        outcomes = await manager.batch_create_list_items(
            "Tasks", [{"Title": "A"}, {"Bad": "B"}, {"Title": "C"}]
        )

        assert [(o.success, o.status_code) for o in outcomes] == [
            (True, 201),
            (False, 400),
            (True, 201),
        ]
        assert outcomes[1].error_message == "Item 2 is invalid"

        method, url, headers, body = backend.requests_to("/_api/$batch")[0]
        assert (method, url) == ("POST", f"{site_url}/_api/$batch")
        assert headers["Content-Type"].startswith("multipart/mixed; boundary=batch_")
        assert headers[DIGEST_HEADER] == "digest-1"
        assert b'"__metadata": {"type": "SP.Data.TasksListItem"}' in body

    async def test_chunks_keep_global_indices(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        """Больше 100 операций отправляются несколькими пакетами."""

        def reply(method: str, url: str, headers: dict[str, str], body: bytes) -> RawResponse:
            return batch_reply([204] * body.decode().count("Content-ID:"))

        backend._routes.insert(0, ("/_api/$batch", [reply]))

        outcomes = await manager.batch_delete_list_items("Tasks", list(range(1, 151)))

        assert backend.count("/_api/$batch") == 2
        assert [o.index for o in outcomes] == list(range(150))
        assert all(o.success for o in outcomes)

    async def test_update_payloads(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        backend._routes.insert(0, ("/_api/$batch", [batch_reply([204, 204])]))

        await manager.batch_update_list_items("Tasks", [(1, {"Title": "A"}), (2, {"Title": "B"})])

        body = backend.requests_to("/_api/$batch")[0][3].decode()
        assert body.count("X-HTTP-Method: MERGE") == 2
        assert "/items(1) HTTP/1.1" in body
        assert "/items(2) HTTP/1.1" in body

    async def test_short_response_is_protocol_error(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        backend._routes.insert(0, ("/_api/$batch", [batch_reply([201, 201])]))

        with pytest.raises(SharePointBatchProtocolException):
            await manager.submit_batch(
                [BatchOperation.create("Tasks", {"Title": str(i)}) for i in range(3)]
            )

    async def test_second_chunk_failure_keeps_completed(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        """Ошибка второго пакета не теряет результаты первого."""
        backend._routes.insert(
            0, ("/_api/$batch", [batch_reply([201] * 100), batch_reply([201, 201])])
        )

        with pytest.raises(SharePointBatchIncompleteException) as exc_info:
            await manager.batch_create_list_items(
                "Tasks", [{"Title": str(i)} for i in range(150)]
            )

        error = exc_info.value
        assert backend.count("/_api/$batch") == 2
        assert error.failed_offset == 100
        assert [o.index for o in error.completed] == list(range(100))
        assert all(o.success for o in error.completed)
        assert isinstance(error.original_error, SharePointBatchProtocolException)

    async def test_first_chunk_failure_unchanged(
        self, manager: SharePointApiClientManager, backend: FakeSharePoint
    ) -> None:
        backend._routes.insert(0, ("/_api/$batch", [batch_reply([201])]))

        with pytest.raises(SharePointBatchProtocolException):
            await manager.batch_create_list_items(
                "Tasks", [{"Title": str(i)} for i in range(150)]
            )

        assert backend.count("/_api/$batch") == 1

    async def test_empty(self, manager: SharePointApiClientManager, backend: FakeSharePoint) -> None:
        assert await manager.submit_batch([]) == []
        assert backend.calls == []
