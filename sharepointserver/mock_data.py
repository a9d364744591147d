"""Генерация тестовых значений для полей списка SharePoint.

Значение зависит только от описания поля и номера элемента, поэтому
повторный вызов с теми же аргументами даёт тот же результат.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

logger = logging.getLogger(__name__)

# Точка отсчёта для дат: элемент с номером i получает дату BASE_DATE + i дней
BASE_DATE = datetime(2024, 1, 1, tzinfo=timezone.utc)

TEXT_TYPES = frozenset({"single line of text", "text"})
NOTE_TYPES = frozenset({"multiple lines of text", "note"})
NUMBER_TYPES = frozenset({"number", "integer"})
CURRENCY_TYPES = frozenset({"currency"})
DATE_TYPES = frozenset({"date and time", "datetime"})
CHOICE_TYPES = frozenset({"choice"})
MULTICHOICE_TYPES = frozenset({"multichoice", "choice (allow multiple values)"})
BOOLEAN_TYPES = frozenset({"yes/no", "boolean"})
PERSON_TYPES = frozenset({"person or group", "user", "usermulti"})
URL_TYPES = frozenset({"hyperlink", "url", "hyperlink or picture"})
LOOKUP_TYPES = frozenset(
    {"lookup", "lookupfield", "lookupmulti", "lookupfieldmulti", "lookup (allow multiple values)"}
)


@dataclass(frozen=True)
class FieldDescriptor:
    """Описание поля списка.

    Attributes:
        internal_name: Внутреннее имя поля
        display_title: Отображаемое название
        type_name: Название типа (TypeAsString, иначе TypeDisplayName)
        choices: Допустимые значения для полей выбора
        lookup_list: Идентификатор списка, на который ссылается подстановка
        lookup_field: Поле списка-источника, отображаемое в подстановке
        allows_multiple: Поле хранит несколько значений
    """

    internal_name: str
    display_title: str
    type_name: str
    choices: tuple[str, ...] | None = None
    lookup_list: str | None = None
    lookup_field: str | None = None
    allows_multiple: bool = False

    @classmethod
    def from_sharepoint(cls, raw: dict[str, Any]) -> "FieldDescriptor":
        """Собрать описание из определения поля в ответе odata=verbose.

        TypeDisplayName у множественных полей совпадает с одиночными
        ("Lookup", "Choice"), поэтому тип берётся из TypeAsString
        ("LookupMulti", "MultiChoice").
        """
        internal_name = raw.get("InternalName") or raw.get("StaticName") or ""
        type_name = raw.get("TypeAsString") or raw.get("TypeDisplayName") or ""
        choices = None
        raw_choices = raw.get("Choices")
        if isinstance(raw_choices, dict):
            raw_choices = raw_choices.get("results")
        if isinstance(raw_choices, list):
            choices = tuple(str(choice) for choice in raw_choices)
        return cls(
            internal_name=internal_name,
            display_title=raw.get("Title") or internal_name,
            type_name=type_name,
            choices=choices,
            lookup_list=raw.get("LookupList") or None,
            lookup_field=raw.get("LookupField") or None,
            allows_multiple=bool(raw.get("AllowMultipleValues")) or "multi" in type_name.lower(),
        )

    @property
    def normalized_type(self) -> str:
        return self.type_name.strip().lower()

    @property
    def is_multiple(self) -> bool:
        return self.allows_multiple or "multi" in self.normalized_type

    @property
    def is_lookup(self) -> bool:
        return self.normalized_type in LOOKUP_TYPES


@dataclass(frozen=True)
class LookupPlaceholder:
    """Отложенное значение подстановки.

    Заполняется вторым проходом, когда известны ID элементов
    списка-источника.
    """

    field_name: str
    allows_multiple: bool


def _text_value(field: FieldDescriptor, prefix: str) -> str:
    name = field.internal_name.lower()
    if "name" in name:
        return f"{prefix}: Name"
    if "title" in name:
        return f"{prefix}: Title"
    if "description" in name:
        return f"{prefix}: Description text for this mock item"
    return f"{prefix}: {field.display_title}"


def _choice_value(field: FieldDescriptor, index: int) -> str:
    if field.choices:
        return field.choices[index % len(field.choices)]
    return f"Choice {(index % 5) + 1}"


def generate_mock_value(field: FieldDescriptor, index: int) -> Any:
    """Сгенерировать значение поля для элемента с номером index.

    Args:
        field: Описание поля
        index: Номер элемента (с нуля)

    Returns:
        Значение для тела запроса; None для полей, которые нельзя заполнить
        (пользователи, неизвестные типы); LookupPlaceholder для подстановок
    """
    field_type = field.normalized_type
    prefix = f"Mock-{index + 1}"

    if field_type in TEXT_TYPES:
        return _text_value(field, prefix)

    if field_type in NOTE_TYPES:
        return (
            f'{prefix}: This is a longer text for the field "{field.display_title}".\n'
            "This is some additional text to make it multi-line.\n"
            "Generated as mock data."
        )

    if field_type in NUMBER_TYPES:
        return index * 10

    if field_type in CURRENCY_TYPES:
        return round(index * 10.25, 2)

    if field_type in DATE_TYPES:
        return (BASE_DATE + timedelta(days=index)).strftime("%Y-%m-%dT%H:%M:%SZ")

    if field_type in CHOICE_TYPES and not field.is_multiple:
        return _choice_value(field, index)

    if field_type in MULTICHOICE_TYPES or field_type in CHOICE_TYPES:
        return {
            "__metadata": {"type": "Collection(Edm.String)"},
            "results": [_choice_value(field, index)],
        }

    if field_type in BOOLEAN_TYPES:
        return index % 2 == 0

    if field_type in URL_TYPES:
        return {
            "__metadata": {"type": "SP.FieldUrlValue"},
            "Url": f"https://example.com/mock-link-{index}",
            "Description": f"{prefix}: Link",
        }

    if field_type in LOOKUP_TYPES:
        logger.debug("Поле %s является подстановкой, значение будет заполнено позже", field.internal_name)
        return LookupPlaceholder(
            field_name=field.internal_name,
            allows_multiple=field.is_multiple,
        )

    if field_type not in PERSON_TYPES:
        logger.debug(
            "Неподдерживаемый тип поля %r (%s), значение пропущено",
            field.type_name,
            field.internal_name,
        )
    return None
