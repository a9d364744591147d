"""Инструменты SharePoint для MCP-сервера.

Каждый инструмент описан моделью параметров (pydantic) и обработчиком.
Ответ всегда имеет вид {content: [{type: "text", text}], isError?};
исключения превращаются в ответ с isError=True только здесь.
"""

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

from mcp import types
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from sharepointserver.api_client_manager import SharePointApiClientManager
from sharepointserver.batch import BatchOutcome
from sharepointserver.exceptions import (
    SharePointBatchIncompleteException,
    SharePointException,
)
from sharepointserver.seeding import MockDataSeeder

logger = logging.getLogger(__name__)

MAX_MOCK_ITEMS = 1000

# Навигационные свойства элемента, которые не выводятся пользователю
HIDDEN_ITEM_PROPERTIES = frozenset(
    {
        "AttachmentFiles",
        "Attachments",
        "FirstUniqueAncestorSecurableObject",
        "RoleAssignments",
        "ContentType",
        "FieldValuesAsHtml",
        "FieldValuesAsText",
        "FieldValuesForEdit",
        "File",
        "Folder",
        "ParentList",
        "GetDlpPolicyTip",
        "Versions",
        "Properties",
    }
)


# ========== Ответы ==========


def text_result(text: str) -> types.CallToolResult:
    return types.CallToolResult(content=[types.TextContent(type="text", text=text)])


def json_result(data: Any) -> types.CallToolResult:
    return text_result(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def error_result(message: str) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=message)],
        isError=True,
    )


# ========== Параметры ==========


class SiteParams(BaseModel):
    """Параметры инструментов уровня сайта."""

    model_config = ConfigDict(populate_by_name=True)

    url: str | None = Field(
        default=None,
        description="Адрес сайта SharePoint (по умолчанию из конфигурации)",
    )


class ListParams(SiteParams):
    list_title: str = Field(alias="listTitle", min_length=1, description="Название списка")


class CreateItemParams(ListParams):
    item_data: dict[str, Any] = Field(
        alias="itemData", description="Значения полей нового элемента"
    )


class UpdateItemParams(ListParams):
    item_id: int = Field(alias="itemId", gt=0, description="ID элемента")
    item_data: dict[str, Any] = Field(alias="itemData", description="Изменяемые поля")


class DeleteItemParams(ListParams):
    item_id: int = Field(alias="itemId", gt=0, description="ID элемента")


class BatchCreateParams(ListParams):
    items: list[dict[str, Any]] = Field(
        min_length=1, description="Значения полей для каждого нового элемента"
    )


class BatchUpdateEntry(BaseModel):
    id: int = Field(gt=0, description="ID элемента")
    data: dict[str, Any] = Field(description="Изменяемые поля")


class BatchUpdateParams(ListParams):
    items: list[BatchUpdateEntry] = Field(min_length=1, description="Элементы и изменения")


class BatchDeleteParams(ListParams):
    item_ids: list[int] = Field(alias="itemIds", min_length=1, description="ID удаляемых элементов")


class ListData(BaseModel):
    """Свойства нового списка; прочие свойства SP.List передаются как есть."""

    model_config = ConfigDict(extra="allow")

    Title: str = Field(min_length=1, description="Название списка")
    Description: str | None = Field(default=None, description="Описание списка")
    TemplateType: int = Field(
        default=100, description="Шаблон: 100 - список, 101 - библиотека документов"
    )


class CreateListParams(SiteParams):
    list_data: ListData = Field(alias="listData", description="Свойства нового списка")


class UpdateListParams(ListParams):
    update_data: dict[str, Any] = Field(
        alias="updateData", min_length=1, description="Изменяемые свойства списка"
    )


class DeleteListParams(ListParams):
    confirmation: str = Field(description="Название списка для подтверждения удаления")

    @model_validator(mode="after")
    def check_confirmation(self) -> "DeleteListParams":
        if self.confirmation != self.list_title:
            raise ValueError("confirmation должно совпадать с listTitle")
        return self


class FieldData(BaseModel):
    """Свойства нового поля; прочие свойства SP.Field передаются как есть."""

    model_config = ConfigDict(extra="allow")

    Title: str = Field(min_length=1, description="Отображаемое название поля")
    FieldTypeKind: int = Field(ge=1, description="Тип поля (FieldTypeKind)")
    Choices: list[str] | None = Field(default=None, description="Варианты для полей выбора")
    CleanName: str | None = Field(
        default=None, description="Внутреннее имя (по умолчанию название без пробелов)"
    )

    @model_validator(mode="after")
    def check_choices(self) -> "FieldData":
        if self.FieldTypeKind in (6, 15) and not self.Choices:
            raise ValueError("Для полей выбора нужен непустой Choices")
        return self


class FieldParams(ListParams):
    field_internal_name: str = Field(
        alias="fieldInternalName", min_length=1, description="Внутреннее имя или название поля"
    )


class CreateFieldParams(ListParams):
    field_data: FieldData = Field(alias="fieldData", description="Свойства нового поля")


class UpdateFieldParams(FieldParams):
    update_data: dict[str, Any] = Field(
        alias="updateData", min_length=1, description="Изменяемые свойства поля"
    )


class DeleteFieldParams(FieldParams):
    confirmation: str = Field(description="Внутреннее имя поля для подтверждения удаления")

    @model_validator(mode="after")
    def check_confirmation(self) -> "DeleteFieldParams":
        if self.confirmation != self.field_internal_name:
            raise ValueError("confirmation должно совпадать с fieldInternalName")
        return self


class AddMockDataParams(ListParams):
    item_count: int = Field(
        alias="itemCount",
        ge=1,
        le=MAX_MOCK_ITEMS,
        description="Количество тестовых элементов",
    )


# ========== Обработчики ==========


def _site_origin(site_url: str) -> str:
    parsed = urlparse(site_url)
    return f"{parsed.scheme}://{parsed.netloc}"


def _batch_summary(action: str, list_title: str, outcomes: list[BatchOutcome]) -> dict[str, Any]:
    successful = sum(1 for outcome in outcomes if outcome.success)
    return {
        "success": successful == len(outcomes),
        "message": (
            f"{action}: успешно {successful} из {len(outcomes)} в списке \"{list_title}\""
        ),
        "total": len(outcomes),
        "successful": successful,
        "failed": len(outcomes) - successful,
        "results": [outcome.to_dict() for outcome in outcomes],
    }


async def get_title(manager: SharePointApiClientManager, params: SiteParams) -> types.CallToolResult:
    title = await manager.get_web_title(params.url)
    return text_result(f"Название сайта: {title}")


async def get_lists(manager: SharePointApiClientManager, params: SiteParams) -> types.CallToolResult:
    site_url = manager.resolve_site_url(params.url)
    origin = _site_origin(site_url)
    lists = await manager.get_lists(site_url)
    return json_result(
        [
            {
                "Title": item.get("Title"),
                "URL": f"{origin}{(item.get('RootFolder') or {}).get('ServerRelativeUrl', '')}",
                "ItemCount": item.get("ItemCount"),
                "LastModified": item.get("LastItemModifiedDate"),
                "Description": item.get("Description") or "",
                "BaseTemplateID": item.get("BaseTemplate"),
            }
            for item in lists
        ]
    )


async def get_list_items(
    manager: SharePointApiClientManager, params: ListParams
) -> types.CallToolResult:
    items = await manager.get_list_items(params.list_title, params.url)
    formatted = [
        {
            key: value
            for key, value in item.items()
            if not key.startswith("__") and key not in HIDDEN_ITEM_PROPERTIES
        }
        for item in items
    ]
    return json_result({"listTitle": params.list_title, "count": len(formatted), "items": formatted})


async def get_list_fields(
    manager: SharePointApiClientManager, params: ListParams
) -> types.CallToolResult:
    fields = await manager.get_list_fields(params.list_title, params.url)
    formatted = []
    for raw in fields:
        field = {
            "InternalName": raw.get("InternalName"),
            "Title": raw.get("Title"),
            "Type": raw.get("TypeAsString") or raw.get("TypeDisplayName") or "Unknown",
            "ReadOnly": raw.get("ReadOnlyField", False),
            "Required": raw.get("Required", False),
            "Description": raw.get("Description") or "",
            "Group": raw.get("Group") or "",
        }
        choices = (raw.get("Choices") or {}).get("results")
        if choices:
            field["Choices"] = choices
        if raw.get("LookupList"):
            field["LookupList"] = raw["LookupList"]
            field["LookupField"] = raw.get("LookupField")
        if raw.get("DefaultValue"):
            field["DefaultValue"] = raw["DefaultValue"]
        formatted.append(field)
    return json_result(formatted)


def _list_summary(origin: str, raw: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": raw.get("Id"),
        "title": raw.get("Title"),
        "description": raw.get("Description") or "",
        "url": f"{origin}{(raw.get('RootFolder') or {}).get('ServerRelativeUrl', '')}",
        "templateType": raw.get("BaseTemplate"),
        "itemCount": raw.get("ItemCount"),
        "created": raw.get("Created"),
    }


def _field_summary(raw: dict[str, Any]) -> dict[str, Any]:
    summary = {
        "id": raw.get("Id"),
        "title": raw.get("Title"),
        "internalName": raw.get("InternalName"),
        "type": raw.get("TypeAsString") or raw.get("TypeDisplayName"),
        "fieldTypeKind": raw.get("FieldTypeKind"),
        "required": raw.get("Required", False),
        "description": raw.get("Description") or "",
    }
    choices = (raw.get("Choices") or {}).get("results")
    if choices:
        summary["choices"] = choices
    return summary


async def create_list(
    manager: SharePointApiClientManager, params: CreateListParams
) -> types.CallToolResult:
    site_url = manager.resolve_site_url(params.url)
    created = await manager.create_list(
        params.list_data.model_dump(exclude_none=True), site_url
    )
    return json_result(
        {
            "success": True,
            "message": f"Список \"{created.get('Title')}\" создан",
            "newList": _list_summary(_site_origin(site_url), created),
        }
    )


async def update_list(
    manager: SharePointApiClientManager, params: UpdateListParams
) -> types.CallToolResult:
    site_url = manager.resolve_site_url(params.url)
    updated = await manager.update_list(params.list_title, params.update_data, site_url)
    return json_result(
        {
            "success": True,
            "message": f"Список \"{params.list_title}\" обновлён",
            "updatedList": _list_summary(_site_origin(site_url), updated),
        }
    )


async def delete_list(
    manager: SharePointApiClientManager, params: DeleteListParams
) -> types.CallToolResult:
    site_url = manager.resolve_site_url(params.url)
    deleted = await manager.delete_list(params.list_title, site_url)
    return json_result(
        {
            "success": True,
            "message": f"Список \"{params.list_title}\" удалён",
            "deletedList": _list_summary(_site_origin(site_url), deleted),
        }
    )


async def create_list_field(
    manager: SharePointApiClientManager, params: CreateFieldParams
) -> types.CallToolResult:
    created = await manager.create_list_field(
        params.list_title, params.field_data.model_dump(exclude_none=True), params.url
    )
    return json_result(
        {
            "success": True,
            "message": f"Поле \"{created.get('Title')}\" создано в списке \"{params.list_title}\"",
            "newField": _field_summary(created),
        }
    )


async def update_list_field(
    manager: SharePointApiClientManager, params: UpdateFieldParams
) -> types.CallToolResult:
    updated = await manager.update_list_field(
        params.list_title, params.field_internal_name, params.update_data, params.url
    )
    return json_result(
        {
            "success": True,
            "message": (
                f"Поле \"{params.field_internal_name}\" обновлено в списке \"{params.list_title}\""
            ),
            "updatedField": _field_summary(updated),
        }
    )


async def delete_list_field(
    manager: SharePointApiClientManager, params: DeleteFieldParams
) -> types.CallToolResult:
    deleted = await manager.delete_list_field(
        params.list_title, params.field_internal_name, params.url
    )
    return json_result(
        {
            "success": True,
            "message": (
                f"Поле \"{params.field_internal_name}\" удалено из списка \"{params.list_title}\""
            ),
            "deletedField": _field_summary(deleted),
        }
    )


async def create_list_item(
    manager: SharePointApiClientManager, params: CreateItemParams
) -> types.CallToolResult:
    created = await manager.create_list_item(params.list_title, params.item_data, params.url)
    return json_result(
        {
            "success": True,
            "message": f"Элемент создан в списке \"{params.list_title}\"",
            "id": created.get("ID"),
            "title": created.get("Title"),
        }
    )


async def update_list_item(
    manager: SharePointApiClientManager, params: UpdateItemParams
) -> types.CallToolResult:
    await manager.update_list_item(params.list_title, params.item_id, params.item_data, params.url)
    return json_result(
        {
            "success": True,
            "message": f"Элемент {params.item_id} обновлён в списке \"{params.list_title}\"",
        }
    )


async def delete_list_item(
    manager: SharePointApiClientManager, params: DeleteItemParams
) -> types.CallToolResult:
    await manager.delete_list_item(params.list_title, params.item_id, params.url)
    return json_result(
        {
            "success": True,
            "message": f"Элемент {params.item_id} удалён из списка \"{params.list_title}\"",
        }
    )


async def batch_create_list_items(
    manager: SharePointApiClientManager, params: BatchCreateParams
) -> types.CallToolResult:
    outcomes = await manager.batch_create_list_items(params.list_title, params.items, params.url)
    return json_result(_batch_summary("Создание", params.list_title, outcomes))


async def batch_update_list_items(
    manager: SharePointApiClientManager, params: BatchUpdateParams
) -> types.CallToolResult:
    outcomes = await manager.batch_update_list_items(
        params.list_title, [(entry.id, entry.data) for entry in params.items], params.url
    )
    return json_result(_batch_summary("Обновление", params.list_title, outcomes))


async def batch_delete_list_items(
    manager: SharePointApiClientManager, params: BatchDeleteParams
) -> types.CallToolResult:
    outcomes = await manager.batch_delete_list_items(params.list_title, params.item_ids, params.url)
    return json_result(_batch_summary("Удаление", params.list_title, outcomes))


async def add_mock_data(
    manager: SharePointApiClientManager, params: AddMockDataParams
) -> types.CallToolResult:
    result = await MockDataSeeder(manager).seed(params.list_title, params.item_count, params.url)
    return json_result(result.to_dict())


# ========== Реестр ==========

Handler = Callable[[SharePointApiClientManager, Any], Awaitable[types.CallToolResult]]


@dataclass(frozen=True)
class ToolDefinition:
    """Описание инструмента: имя, параметры и обработчик."""

    name: str
    description: str
    params: type[BaseModel]
    handler: Handler

    def to_mcp(self) -> types.Tool:
        return types.Tool(
            name=self.name,
            description=self.description,
            inputSchema=self.params.model_json_schema(by_alias=True),
        )


TOOLS: tuple[ToolDefinition, ...] = (
    ToolDefinition("getTitle", "Получить название сайта SharePoint", SiteParams, get_title),
    ToolDefinition(
        "getLists", "Получить видимые списки сайта SharePoint", SiteParams, get_lists
    ),
    ToolDefinition(
        "getListItems", "Получить элементы списка SharePoint", ListParams, get_list_items
    ),
    ToolDefinition(
        "getListFields", "Получить поля списка SharePoint", ListParams, get_list_fields
    ),
    ToolDefinition("createList", "Создать список SharePoint", CreateListParams, create_list),
    ToolDefinition("updateList", "Изменить свойства списка SharePoint", UpdateListParams, update_list),
    ToolDefinition(
        "deleteList",
        "Удалить список SharePoint (confirmation должно совпадать с названием)",
        DeleteListParams,
        delete_list,
    ),
    ToolDefinition(
        "createListField", "Создать поле списка SharePoint", CreateFieldParams, create_list_field
    ),
    ToolDefinition(
        "updateListField", "Изменить поле списка SharePoint", UpdateFieldParams, update_list_field
    ),
    ToolDefinition(
        "deleteListField",
        "Удалить поле списка SharePoint (confirmation должно совпадать с внутренним именем)",
        DeleteFieldParams,
        delete_list_field,
    ),
    ToolDefinition(
        "createListItem", "Создать элемент списка SharePoint", CreateItemParams, create_list_item
    ),
    ToolDefinition(
        "updateListItem", "Обновить элемент списка SharePoint", UpdateItemParams, update_list_item
    ),
    ToolDefinition(
        "deleteListItem", "Удалить элемент списка SharePoint", DeleteItemParams, delete_list_item
    ),
    ToolDefinition(
        "batchCreateListItems",
        "Создать несколько элементов списка одним пакетным запросом",
        BatchCreateParams,
        batch_create_list_items,
    ),
    ToolDefinition(
        "batchUpdateListItems",
        "Обновить несколько элементов списка одним пакетным запросом",
        BatchUpdateParams,
        batch_update_list_items,
    ),
    ToolDefinition(
        "batchDeleteListItems",
        "Удалить несколько элементов списка одним пакетным запросом",
        BatchDeleteParams,
        batch_delete_list_items,
    ),
    ToolDefinition(
        "addMockData",
        "Добавить в список тестовые элементы с учётом типов полей и подстановок",
        AddMockDataParams,
        add_mock_data,
    ),
)

TOOLS_BY_NAME: dict[str, ToolDefinition] = {tool.name: tool for tool in TOOLS}


async def call_tool(
    manager: SharePointApiClientManager,
    name: str,
    arguments: dict[str, Any] | None,
) -> types.CallToolResult:
    """Выполнить инструмент по имени.

    Ошибки не пробрасываются: любая неудача возвращается как ответ
    с isError=True.

    Args:
        manager: Фасад SharePoint API
        name: Имя инструмента
        arguments: Аргументы вызова

    Returns:
        Ответ инструмента
    """
    definition = TOOLS_BY_NAME.get(name)
    if definition is None:
        return error_result(f"Неизвестный инструмент: {name}")

    try:
        params = definition.params.model_validate(arguments or {})
    except ValidationError as exc:
        logger.warning("Некорректные параметры %s: %s", name, exc)
        return error_result(f"Некорректные параметры {name}: {exc}")

    logger.debug("Вызов инструмента %s", name)
    try:
        return await definition.handler(manager, params)
    except SharePointBatchIncompleteException as exc:
        logger.error("Пакет прерван в инструменте %s: %s", name, exc)
        return error_result(
            json.dumps(
                {
                    "success": False,
                    "message": f"Ошибка {name}: {exc}",
                    "completed": len(exc.completed),
                    "failedFrom": exc.failed_offset,
                    "results": [outcome.to_dict() for outcome in exc.completed],
                },
                indent=2,
                ensure_ascii=False,
                default=str,
            )
        )
    except SharePointException as exc:
        logger.error("Ошибка в инструменте %s: %s", name, exc)
        return error_result(f"Ошибка {name}: {exc}")
    except Exception as exc:
        logger.exception("Непредвиденная ошибка в инструменте %s", name)
        return error_result(f"Непредвиденная ошибка {name}: {exc}")
