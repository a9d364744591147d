"""Заполнение списка SharePoint тестовыми элементами.

Работает в два прохода:
1. Пакетно создаются элементы без полей подстановки.
2. Для каждой подстановки читаются ID элементов списка-источника,
   и созданные элементы пакетно дополняются ссылками на них.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from sharepointserver.api_client_manager import SharePointApiClientManager
from sharepointserver.batch import BatchOutcome
from sharepointserver.exceptions import SharePointBackendException
from sharepointserver.mock_data import (
    FieldDescriptor,
    LookupPlaceholder,
    generate_mock_value,
)


@dataclass
class MockDataResult:
    """Итог заполнения списка.

    Номера элементов в successful_items и failed_items начинаются с 1.
    """

    list_title: str
    writeable_fields: list[FieldDescriptor]
    lookup_values_found: dict[str, int] = field(default_factory=dict)
    requested: int = 0
    successful_items: list[int] = field(default_factory=list)
    failed_items: list[dict[str, Any]] = field(default_factory=list)
    lookup_failures: list[dict[str, Any]] = field(default_factory=list)

    @property
    def successful(self) -> int:
        return len(self.successful_items)

    @property
    def failed(self) -> int:
        return len(self.failed_items)

    def to_dict(self) -> dict[str, Any]:
        return {
            "listTitle": self.list_title,
            "writeableFields": [
                {"name": f.internal_name, "title": f.display_title, "type": f.type_name}
                for f in self.writeable_fields
            ],
            "lookupFields": [
                {"name": name, "valuesFound": count}
                for name, count in self.lookup_values_found.items()
            ],
            "requested": self.requested,
            "successful": self.successful,
            "failed": self.failed,
            "successfulItems": self.successful_items,
            "failedItems": self.failed_items,
            "lookupFailures": self.lookup_failures,
        }


def _created_id(outcome: BatchOutcome) -> int | None:
    body = outcome.body
    if isinstance(body, dict):
        entity = body.get("d", body)
        if isinstance(entity, dict) and entity.get("ID") is not None:
            return int(entity["ID"])
    return None


def lookup_value(placeholder: LookupPlaceholder, foreign_id: int) -> tuple[str, Any]:
    """Имя и значение поля подстановки для тела запроса."""
    name = f"{placeholder.field_name}Id"
    if placeholder.allows_multiple:
        return name, {"__metadata": {"type": "Collection(Edm.Int32)"}, "results": [foreign_id]}
    return name, foreign_id


class MockDataSeeder:
    """Заполнение списка тестовыми данными через пакетные запросы."""

    def __init__(
        self,
        manager: SharePointApiClientManager,
        logger: logging.Logger | None = None,
    ) -> None:
        self._manager = manager
        self._logger = logger or logging.getLogger(__name__)

    def build_items(
        self, fields: list[FieldDescriptor], count: int
    ) -> tuple[list[dict[str, Any]], dict[str, LookupPlaceholder]]:
        """Сгенерировать значения для count элементов.

        Returns:
            Данные элементов без подстановок и найденные поля подстановки
        """
        has_title = any(f.internal_name == "Title" for f in fields)
        items: list[dict[str, Any]] = []
        placeholders: dict[str, LookupPlaceholder] = {}

        for index in range(count):
            values: dict[str, Any] = {}
            for descriptor in fields:
                value = generate_mock_value(descriptor, index)
                if isinstance(value, LookupPlaceholder):
                    placeholders[descriptor.internal_name] = value
                elif value is not None:
                    values[descriptor.internal_name] = value
            if has_title and not values.get("Title"):
                values["Title"] = f"Mock Item {index + 1}"
            items.append(values)
        return items, placeholders

    async def _load_lookup_values(
        self,
        fields: list[FieldDescriptor],
        placeholders: dict[str, LookupPlaceholder],
        site_url: str,
    ) -> dict[str, list[int]]:
        by_name = {f.internal_name: f for f in fields}
        values: dict[str, list[int]] = {}
        for name in placeholders:
            try:
                values[name] = await self._manager.get_lookup_values(by_name[name], site_url)
            except SharePointBackendException as exc:
                self._logger.warning(
                    "Не удалось получить значения подстановки %s: %s", name, exc
                )
                values[name] = []
            self._logger.debug("Подстановка %s: найдено значений %d", name, len(values[name]))
        return values

    async def seed(
        self, list_title: str, item_count: int, url: str | None = None
    ) -> MockDataResult:
        """Добавить в список item_count тестовых элементов.

        Args:
            list_title: Название списка
            item_count: Количество элементов
            url: Адрес сайта

        Returns:
            Итог заполнения; ошибки отдельных элементов входят в результат
        """
        site_url = self._manager.resolve_site_url(url)
        fields = await self._manager.get_writeable_fields(list_title, site_url)
        self._logger.info(
            "Заполнение списка %r: %d элементов, полей для записи %d",
            list_title,
            item_count,
            len(fields),
        )

        items, placeholders = self.build_items(fields, item_count)
        result = MockDataResult(
            list_title=list_title, writeable_fields=fields, requested=item_count
        )
        if item_count <= 0:
            return result

        lookup_values = await self._load_lookup_values(fields, placeholders, site_url)
        result.lookup_values_found = {name: len(ids) for name, ids in lookup_values.items()}

        # Первый проход: создание без подстановок
        outcomes = await self._manager.batch_create_list_items(list_title, items, site_url)
        created: list[tuple[int, int]] = []
        for outcome in outcomes:
            if outcome.success:
                result.successful_items.append(outcome.index + 1)
                item_id = _created_id(outcome)
                if item_id is not None:
                    created.append((outcome.index, item_id))
            else:
                result.failed_items.append(
                    {"index": outcome.index + 1, "error": outcome.error_message}
                )

        # Второй проход: ссылки на элементы списков-источников
        patches: list[tuple[int, dict[str, Any]]] = []
        patched_indices: list[int] = []
        for index, item_id in created:
            patch: dict[str, Any] = {}
            for name, placeholder in placeholders.items():
                ids = lookup_values.get(name) or []
                if not ids:
                    continue
                key, value = lookup_value(placeholder, ids[index % len(ids)])
                patch[key] = value
            if patch:
                patches.append((item_id, patch))
                patched_indices.append(index)

        if patches:
            patch_outcomes = await self._manager.batch_update_list_items(
                list_title, patches, site_url
            )
            for outcome in patch_outcomes:
                if not outcome.success:
                    result.lookup_failures.append(
                        {
                            "index": patched_indices[outcome.index] + 1,
                            "itemId": patches[outcome.index][0],
                            "error": outcome.error_message,
                        }
                    )

        self._logger.info(
            "Список %r заполнен: успешно %d, с ошибками %d",
            list_title,
            result.successful,
            result.failed,
        )
        return result
