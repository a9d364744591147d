"""Фасад SharePoint REST API.

Собирает транспорт, менеджер сессии и кэш дайджестов в один объект,
которым пользуются инструменты. Все изменяющие вызовы получают
дайджест; отказ сервера по дайджесту приводит ровно к одному повтору.
"""

import json
import logging
from collections.abc import Sequence
from typing import Any

from sharepointserver.batch import (
    MAX_BATCH_SIZE,
    BatchOperation,
    BatchOutcome,
    build_batch,
    parse_batch_response,
)
from sharepointserver.config_reader import SharePointConfig
from sharepointserver.credentials import resolve_credentials
from sharepointserver.digest_provider import (
    DIGEST_HEADER,
    DigestProvider,
    is_digest_rejection,
    normalize_site_url,
)
from sharepointserver.endpoints import (
    ODATA_VERBOSE,
    field_url,
    fields_url,
    items_url,
    list_by_id_url,
    list_url,
    lists_url,
    odata_string,
)
from sharepointserver.exceptions import (
    SharePointAuthException,
    SharePointBackendException,
    SharePointBatchIncompleteException,
    SharePointConfigException,
    SharePointDigestExpiredException,
    SharePointException,
)
from sharepointserver.mock_data import FieldDescriptor
from sharepointserver.request_executor import RawResponse, RequestExecutor
from sharepointserver.session_manager import Session, SessionManager

# Системные поля, которые не заполняются при создании элементов
SYSTEM_FIELDS = frozenset(
    {
        "ID",
        "Modified",
        "Created",
        "Author",
        "Editor",
        "GUID",
        "ContentType",
        "Attachments",
    }
)
ITEMS_PAGE_SIZE = 5000
LOOKUP_VALUES_LIMIT = 100
# Шаблон "Настраиваемый список"
GENERIC_LIST_TEMPLATE = 100
# FieldTypeKind полей выбора и тип __metadata для их создания
CHOICE_FIELD_TYPES = {6: "SP.FieldChoice", 15: "SP.FieldMultiChoice"}


def _results(data: Any) -> list[dict[str, Any]]:
    """Достать коллекцию из ответа odata=verbose ({"d": {"results": [...]}})."""
    try:
        results = data["d"]["results"]
    except (KeyError, TypeError) as exc:
        raise SharePointException(
            "Неожиданный формат ответа: нет d.results", original_error=exc
        ) from exc
    return list(results)


def _entity(data: Any) -> dict[str, Any]:
    """Достать объект из ответа odata=verbose ({"d": {...}})."""
    if not isinstance(data, dict) or not isinstance(data.get("d"), dict):
        raise SharePointException("Неожиданный формат ответа: нет d")
    return data["d"]


class SharePointApiClientManager:
    """Фасад для работы с SharePoint REST API.

    Владеет RequestExecutor, SessionManager и DigestProvider;
    кэши живут до вызова close().

    Использование:
        manager = SharePointApiClientManager.from_config(config)
        try:
            lists = await manager.get_lists()
        finally:
            await manager.close()
    """

    def __init__(
        self,
        executor: RequestExecutor,
        session_manager: SessionManager,
        digest_provider: DigestProvider,
        default_site_url: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """Инициализация фасада.

        Args:
            executor: Транспорт HTTP-запросов
            session_manager: Менеджер токена доступа
            digest_provider: Кэш дайджестов
            default_site_url: Сайт, используемый когда адрес не передан
            logger: Логгер
        """
        self._executor = executor
        self._session_manager = session_manager
        self._digest_provider = digest_provider
        self._default_site_url = (
            normalize_site_url(default_site_url) if default_site_url else None
        )
        self._logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(
        cls,
        config: SharePointConfig,
        logger: logging.Logger | None = None,
    ) -> "SharePointApiClientManager":
        """Создать фасад из конфигурации.

        Args:
            config: Конфигурация SharePoint
            logger: Логгер для всех компонентов

        Returns:
            Экземпляр SharePointApiClientManager

        Raises:
            SharePointConfigException: Если учетные данные не собраны
        """
        credentials = resolve_credentials(config)
        executor = RequestExecutor(timeout=config.request_timeout, logger=logger)
        session_manager = SessionManager(credentials, executor, logger=logger)
        digest_provider = DigestProvider(session_manager, executor, logger=logger)
        return cls(
            executor=executor,
            session_manager=session_manager,
            digest_provider=digest_provider,
            default_site_url=config.site_url,
            logger=logger,
        )

    @property
    def session_manager(self) -> SessionManager:
        return self._session_manager

    @property
    def digest_provider(self) -> DigestProvider:
        return self._digest_provider

    async def close(self) -> None:
        """Сбросить кэши и закрыть HTTP-сессию."""
        self._digest_provider.clear()
        self._session_manager.invalidate()
        await self._executor.close()
        self._logger.debug("Соединения SharePoint закрыты")

    async def __aenter__(self) -> "SharePointApiClientManager":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def resolve_site_url(self, url: str | None = None) -> str:
        """Адрес сайта для вызова: переданный либо из конфигурации.

        Raises:
            SharePointConfigException: Если адрес не передан и не настроен
        """
        site_url = url or self._default_site_url
        if not site_url:
            raise SharePointConfigException(
                "Не указан адрес сайта: передайте url или задайте siteUrl"
            )
        return normalize_site_url(site_url)

    # ========== Выполнение запросов ==========

    async def _execute(
        self,
        session: Session,
        method: str,
        url: str,
        headers: dict[str, str],
        body: bytes | str | None,
    ) -> RawResponse:
        try:
            return await self._executor.execute(method, url, headers, body)
        except SharePointBackendException as exc:
            if exc.status != 401:
                raise
            self._session_manager.invalidate(session)
            raise SharePointAuthException(
                "Сервер отклонил токен доступа (401), сессия сброшена",
                original_error=exc,
            ) from exc

    async def _send(
        self,
        method: str,
        site_url: str,
        url: str,
        body: bytes | str | None = None,
        headers: dict[str, str] | None = None,
        mutating: bool = False,
    ) -> RawResponse:
        """Выполнить запрос с авторизацией и, для изменений, дайджестом.

        Args:
            method: HTTP метод
            site_url: Адрес сайта (для токена и дайджеста)
            url: Полный адрес запроса
            body: Тело запроса
            headers: Дополнительные заголовки
            mutating: Требуется ли дайджест

        Returns:
            Ответ сервера

        Raises:
            SharePointAuthException: Токен не получен или отклонён (401)
            SharePointDigestExpiredException: Дайджест отклонён после обновления
            SharePointBackendException: Прочие ответы 4xx/5xx
        """
        session = await self._session_manager.get_session(site_url)
        request_headers = dict(session.auth_headers)
        if headers:
            request_headers.update(headers)

        if not mutating:
            return await self._execute(session, method, url, request_headers, body)

        digest = await self._digest_provider.get_digest(site_url)
        request_headers[DIGEST_HEADER] = digest
        try:
            return await self._execute(session, method, url, request_headers, body)
        except SharePointBackendException as exc:
            if not is_digest_rejection(exc):
                raise
            self._logger.warning("Дайджест отклонён сервером, запрашиваем новый: %s", url)
            self._digest_provider.invalidate(site_url, digest)

        request_headers[DIGEST_HEADER] = await self._digest_provider.get_digest(site_url)
        try:
            return await self._execute(session, method, url, request_headers, body)
        except SharePointBackendException as exc:
            if not is_digest_rejection(exc):
                raise
            self._digest_provider.invalidate(site_url, request_headers[DIGEST_HEADER])
            raise SharePointDigestExpiredException(
                "Дайджест отклонён повторно после обновления", original_error=exc
            ) from exc

    async def _get_json(self, site_url: str, url: str) -> Any:
        response = await self._send("GET", site_url, url)
        try:
            return response.json()
        except ValueError as exc:
            raise SharePointException(
                f"Ответ не является JSON: {url}", original_error=exc
            ) from exc

    # ========== Чтение ==========

    async def get_web_title(self, url: str | None = None) -> str:
        """Получить название сайта."""
        site_url = self.resolve_site_url(url)
        data = await self._get_json(site_url, f"{site_url}/_api/web/title")
        entity = _entity(data)
        return str(entity.get("Title", ""))

    async def get_lists(self, url: str | None = None) -> list[dict[str, Any]]:
        """Получить видимые списки сайта (без скрытых и системных).

        Args:
            url: Адрес сайта

        Returns:
            Описания списков в формате odata=verbose
        """
        site_url = self.resolve_site_url(url)
        data = await self._get_json(
            site_url,
            f"{site_url}/_api/web/lists?$select=Title,Id,ItemCount,LastItemModifiedDate,"
            "Description,BaseTemplate,Hidden,IsSystemList,RootFolder/ServerRelativeUrl"
            "&$expand=RootFolder",
        )
        lists = [
            item
            for item in _results(data)
            if not item.get("Hidden") and not item.get("IsSystemList")
        ]
        self._logger.debug("Видимых списков: %d", len(lists))
        return lists

    async def get_list_entity_type(self, list_title: str, url: str | None = None) -> str:
        """Получить ListItemEntityTypeFullName списка (нужен в __metadata)."""
        site_url = self.resolve_site_url(url)
        data = await self._get_json(site_url, list_url(site_url, list_title))
        entity_type = _entity(data).get("ListItemEntityTypeFullName")
        if not entity_type:
            raise SharePointException(
                f"Список {list_title!r} не вернул ListItemEntityTypeFullName"
            )
        return str(entity_type)

    async def get_list_items(
        self, list_title: str, url: str | None = None
    ) -> list[dict[str, Any]]:
        """Получить элементы списка (до 5000)."""
        site_url = self.resolve_site_url(url)
        data = await self._get_json(
            site_url, f"{items_url(site_url, list_title)}?$top={ITEMS_PAGE_SIZE}"
        )
        return _results(data)

    async def get_list_fields(
        self, list_title: str, url: str | None = None
    ) -> list[dict[str, Any]]:
        """Получить видимые поля списка."""
        site_url = self.resolve_site_url(url)
        data = await self._get_json(
            site_url, f"{fields_url(site_url, list_title)}?$filter=Hidden eq false"
        )
        return _results(data)

    async def get_writeable_fields(
        self, list_title: str, url: str | None = None
    ) -> list[FieldDescriptor]:
        """Получить поля, доступные для записи.

        Системные поля и поля с именами на '_' исключаются.
        """
        site_url = self.resolve_site_url(url)
        data = await self._get_json(
            site_url,
            f"{fields_url(site_url, list_title)}"
            "?$filter=ReadOnlyField eq false and Hidden eq false",
        )
        fields = [FieldDescriptor.from_sharepoint(raw) for raw in _results(data)]
        return [
            field
            for field in fields
            if field.internal_name
            and field.internal_name not in SYSTEM_FIELDS
            and not field.internal_name.startswith("_")
        ]

    async def get_lookup_values(
        self, field: FieldDescriptor, url: str | None = None
    ) -> list[int]:
        """Получить ID элементов списка-источника подстановки (до 100).

        Returns:
            Список ID; пустой, если у поля не указан список-источник
        """
        if not field.lookup_list:
            return []
        site_url = self.resolve_site_url(url)
        select = "ID" if not field.lookup_field else f"ID,{field.lookup_field}"
        data = await self._get_json(
            site_url,
            f"{list_by_id_url(site_url, field.lookup_list)}/items"
            f"?$select={select}&$top={LOOKUP_VALUES_LIMIT}",
        )
        return [int(item["ID"]) for item in _results(data) if item.get("ID") is not None]

    # ========== Изменение одного элемента ==========

    async def create_list_item(
        self,
        list_title: str,
        item: dict[str, Any],
        url: str | None = None,
    ) -> dict[str, Any]:
        """Создать элемент списка.

        Returns:
            Созданный элемент
        """
        site_url = self.resolve_site_url(url)
        entity_type = await self.get_list_entity_type(list_title, site_url)
        payload = {"__metadata": {"type": entity_type}, **item}
        response = await self._send(
            "POST",
            site_url,
            items_url(site_url, list_title),
            body=json.dumps(payload, ensure_ascii=False),
            headers={"Content-Type": ODATA_VERBOSE},
            mutating=True,
        )
        created = _entity(response.json())
        self._logger.info("Создан элемент %s в списке %r", created.get("ID"), list_title)
        return created

    async def update_list_item(
        self,
        list_title: str,
        item_id: int,
        item: dict[str, Any],
        url: str | None = None,
    ) -> None:
        """Обновить поля элемента (MERGE)."""
        site_url = self.resolve_site_url(url)
        entity_type = await self.get_list_entity_type(list_title, site_url)
        payload = {"__metadata": {"type": entity_type}, **item}
        await self._send(
            "POST",
            site_url,
            items_url(site_url, list_title, item_id),
            body=json.dumps(payload, ensure_ascii=False),
            headers={
                "Content-Type": ODATA_VERBOSE,
                "IF-MATCH": "*",
                "X-HTTP-Method": "MERGE",
            },
            mutating=True,
        )
        self._logger.info("Обновлён элемент %d в списке %r", item_id, list_title)

    async def delete_list_item(
        self,
        list_title: str,
        item_id: int,
        url: str | None = None,
    ) -> None:
        """Удалить элемент списка."""
        site_url = self.resolve_site_url(url)
        await self._send(
            "POST",
            site_url,
            items_url(site_url, list_title, item_id),
            headers={"IF-MATCH": "*", "X-HTTP-Method": "DELETE"},
            mutating=True,
        )
        self._logger.info("Удалён элемент %d из списка %r", item_id, list_title)

    # ========== Списки ==========

    async def get_list(self, list_title: str, url: str | None = None) -> dict[str, Any]:
        """Получить свойства списка."""
        site_url = self.resolve_site_url(url)
        return _entity(await self._get_json(site_url, list_url(site_url, list_title)))

    async def create_list(
        self, list_data: dict[str, Any], url: str | None = None
    ) -> dict[str, Any]:
        """Создать список.

        Args:
            list_data: Свойства SP.List; TemplateType задаёт шаблон
                (100 по умолчанию, 101 для библиотеки документов)
            url: Адрес сайта

        Returns:
            Созданный список
        """
        site_url = self.resolve_site_url(url)
        payload: dict[str, Any] = {
            "__metadata": {"type": "SP.List"},
            "BaseTemplate": list_data.get("TemplateType") or GENERIC_LIST_TEMPLATE,
            "Description": "",
            "AllowContentTypes": False,
            "ContentTypesEnabled": False,
            "EnableVersioning": False,
            "EnableMinorVersions": False,
            "EnableModeration": False,
        }
        payload.update(
            (key, value)
            for key, value in list_data.items()
            if key != "TemplateType" and value is not None
        )
        response = await self._send(
            "POST",
            site_url,
            lists_url(site_url),
            body=json.dumps(payload, ensure_ascii=False),
            headers={"Content-Type": ODATA_VERBOSE},
            mutating=True,
        )
        created = _entity(response.json())
        self._logger.info("Создан список %r (шаблон %s)", created.get("Title"), payload["BaseTemplate"])
        return created

    async def update_list(
        self,
        list_title: str,
        update_data: dict[str, Any],
        url: str | None = None,
    ) -> dict[str, Any]:
        """Изменить свойства списка (MERGE).

        Returns:
            Список после изменения
        """
        site_url = self.resolve_site_url(url)
        payload = {"__metadata": {"type": "SP.List"}, **update_data}
        await self._send(
            "POST",
            site_url,
            list_url(site_url, list_title),
            body=json.dumps(payload, ensure_ascii=False),
            headers={
                "Content-Type": ODATA_VERBOSE,
                "IF-MATCH": "*",
                "X-HTTP-Method": "MERGE",
            },
            mutating=True,
        )
        self._logger.info("Обновлён список %r", list_title)
        # После переименования список доступен только под новым названием
        return await self.get_list(update_data.get("Title") or list_title, site_url)

    async def delete_list(self, list_title: str, url: str | None = None) -> dict[str, Any]:
        """Удалить список.

        Returns:
            Свойства удалённого списка
        """
        site_url = self.resolve_site_url(url)
        details = await self.get_list(list_title, site_url)
        await self._send(
            "POST",
            site_url,
            list_url(site_url, list_title),
            headers={"IF-MATCH": "*", "X-HTTP-Method": "DELETE"},
            mutating=True,
        )
        self._logger.info("Удалён список %r", list_title)
        return details

    # ========== Поля ==========

    async def get_list_field(
        self, list_title: str, field_name: str, url: str | None = None
    ) -> dict[str, Any]:
        """Получить поле по внутреннему имени или названию."""
        site_url = self.resolve_site_url(url)
        return _entity(
            await self._get_json(site_url, field_url(site_url, list_title, field_name))
        )

    async def create_list_field(
        self,
        list_title: str,
        field_data: dict[str, Any],
        url: str | None = None,
    ) -> dict[str, Any]:
        """Создать поле списка.

        Внутреннее имя формируется из названия при создании, поэтому поле
        сначала создаётся под названием без пробелов (или CleanName),
        а затем переименовывается в исходное.

        Args:
            list_title: Название списка
            field_data: Title, FieldTypeKind и прочие свойства SP.Field;
                Choices для полей выбора
            url: Адрес сайта

        Returns:
            Созданное поле

        Raises:
            SharePointException: Если поле с таким названием уже есть
        """
        site_url = self.resolve_site_url(url)
        title = field_data["Title"]
        kind = int(field_data["FieldTypeKind"])
        creation_title = field_data.get("CleanName") or "".join(title.split())

        existing = _results(
            await self._get_json(
                site_url,
                f"{fields_url(site_url, list_title)}?$filter=Title eq '{odata_string(title)}'",
            )
        )
        if existing:
            raise SharePointException(
                f"Поле {title!r} уже существует в списке {list_title!r}"
            )

        payload: dict[str, Any] = {
            "__metadata": {"type": CHOICE_FIELD_TYPES.get(kind, "SP.Field")},
            "Title": creation_title,
            "FieldTypeKind": kind,
        }
        for key, value in field_data.items():
            if key in ("Title", "CleanName", "FieldTypeKind") or value is None:
                continue
            if key == "Choices":
                payload[key] = {"__metadata": {"type": "Collection(Edm.String)"}, "results": list(value)}
            elif key == "DefaultValue":
                payload[key] = str(value).lower() if isinstance(value, bool) else str(value)
            else:
                payload[key] = value

        response = await self._send(
            "POST",
            site_url,
            fields_url(site_url, list_title),
            body=json.dumps(payload, ensure_ascii=False),
            headers={"Content-Type": ODATA_VERBOSE},
            mutating=True,
        )
        created = _entity(response.json())
        internal_name = created.get("InternalName") or creation_title
        self._logger.info("Создано поле %r в списке %r", internal_name, list_title)

        if creation_title != title:
            created = await self.update_list_field(
                list_title, internal_name, {"Title": title}, site_url
            )
        return created

    async def update_list_field(
        self,
        list_title: str,
        field_name: str,
        update_data: dict[str, Any],
        url: str | None = None,
    ) -> dict[str, Any]:
        """Изменить свойства поля (MERGE).

        Returns:
            Поле после изменения
        """
        site_url = self.resolve_site_url(url)
        payload: dict[str, Any] = {"__metadata": {"type": "SP.Field"}}
        for key, value in update_data.items():
            if key == "Choices" and isinstance(value, list):
                payload[key] = {"results": value}
            else:
                payload[key] = value
        await self._send(
            "POST",
            site_url,
            field_url(site_url, list_title, field_name),
            body=json.dumps(payload, ensure_ascii=False),
            headers={
                "Content-Type": ODATA_VERBOSE,
                "IF-MATCH": "*",
                "X-HTTP-Method": "MERGE",
            },
            mutating=True,
        )
        self._logger.info("Обновлено поле %r в списке %r", field_name, list_title)
        return await self.get_list_field(list_title, field_name, site_url)

    async def delete_list_field(
        self, list_title: str, field_name: str, url: str | None = None
    ) -> dict[str, Any]:
        """Удалить поле списка.

        Returns:
            Свойства удалённого поля

        Raises:
            SharePointException: Если поле только для чтения
        """
        site_url = self.resolve_site_url(url)
        details = await self.get_list_field(list_title, field_name, site_url)
        if details.get("ReadOnlyField"):
            raise SharePointException(
                f"Поле {field_name!r} только для чтения и не может быть удалено"
            )
        await self._send(
            "POST",
            site_url,
            field_url(site_url, list_title, field_name),
            headers={"IF-MATCH": "*", "X-HTTP-Method": "DELETE"},
            mutating=True,
        )
        self._logger.info("Удалено поле %r из списка %r", field_name, list_title)
        return details

    # ========== Пакетные операции ==========

    async def submit_batch(
        self,
        operations: Sequence[BatchOperation],
        url: str | None = None,
    ) -> list[BatchOutcome]:
        """Выполнить операции через $batch.

        Больше MAX_BATCH_SIZE операций отправляются несколькими пакетами
        подряд; индексы результатов остаются сквозными.

        Args:
            operations: Операции в порядке выполнения
            url: Адрес сайта

        Returns:
            По одному результату на операцию, в исходном порядке

        Raises:
            SharePointBatchProtocolException: Если ответ на первый пакет повреждён
            SharePointBatchIncompleteException: Если прервался не первый пакет;
                результаты выполненных пакетов в completed
        """
        site_url = self.resolve_site_url(url)
        outcomes: list[BatchOutcome] = []

        for offset in range(0, len(operations), MAX_BATCH_SIZE):
            chunk = list(operations[offset:offset + MAX_BATCH_SIZE])
            request = build_batch(site_url, chunk)
            self._logger.debug(
                "Отправка пакета: %d операций (смещение %d)", len(chunk), offset
            )
            try:
                response = await self._send(
                    "POST",
                    site_url,
                    f"{site_url}/_api/$batch",
                    body=request.body,
                    headers={"Content-Type": request.content_type},
                    mutating=True,
                )
                chunk_outcomes = parse_batch_response(
                    response.body, len(chunk), response.content_type
                )
            except SharePointException as exc:
                if not outcomes:
                    raise
                self._logger.error(
                    "Пакет прерван на операции %d из %d: %s", offset, len(operations), exc
                )
                raise SharePointBatchIncompleteException(
                    f"Выполнено {len(outcomes)} из {len(operations)} операций, "
                    f"пакет с операции {offset} прерван: {exc}",
                    completed=outcomes,
                    failed_offset=offset,
                    original_error=exc,
                ) from exc
            outcomes.extend(
                BatchOutcome(
                    index=offset + outcome.index,
                    success=outcome.success,
                    status_code=outcome.status_code,
                    body=outcome.body,
                    error_message=outcome.error_message,
                )
                for outcome in chunk_outcomes
            )

        failed = sum(1 for outcome in outcomes if not outcome.success)
        if failed:
            self._logger.warning("Пакет выполнен с ошибками: %d из %d", failed, len(outcomes))
        return outcomes

    async def batch_create_list_items(
        self,
        list_title: str,
        items: Sequence[dict[str, Any]],
        url: str | None = None,
    ) -> list[BatchOutcome]:
        """Создать элементы пакетно."""
        site_url = self.resolve_site_url(url)
        entity_type = await self.get_list_entity_type(list_title, site_url)
        operations = [
            BatchOperation.create(list_title, {"__metadata": {"type": entity_type}, **item})
            for item in items
        ]
        return await self.submit_batch(operations, site_url)

    async def batch_update_list_items(
        self,
        list_title: str,
        items: Sequence[tuple[int, dict[str, Any]]],
        url: str | None = None,
    ) -> list[BatchOutcome]:
        """Обновить элементы пакетно.

        Args:
            list_title: Название списка
            items: Пары (ID элемента, изменяемые поля)
            url: Адрес сайта
        """
        site_url = self.resolve_site_url(url)
        entity_type = await self.get_list_entity_type(list_title, site_url)
        operations = [
            BatchOperation.update(
                list_title, item_id, {"__metadata": {"type": entity_type}, **fields}
            )
            for item_id, fields in items
        ]
        return await self.submit_batch(operations, site_url)

    async def batch_delete_list_items(
        self,
        list_title: str,
        item_ids: Sequence[int],
        url: str | None = None,
    ) -> list[BatchOutcome]:
        """Удалить элементы пакетно."""
        operations = [BatchOperation.delete(list_title, item_id) for item_id in item_ids]
        return await self.submit_batch(operations, url)
