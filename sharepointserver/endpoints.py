"""Адреса REST-эндпоинтов SharePoint."""

from urllib.parse import quote

ODATA_VERBOSE = "application/json;odata=verbose"


def odata_string(value: str) -> str:
    """Экранировать строку для литерала OData в адресе ('...')."""
    return quote(value.replace("'", "''"), safe="")


def list_url(site_url: str, list_title: str) -> str:
    return f"{site_url}/_api/web/lists/getByTitle('{odata_string(list_title)}')"


def items_url(site_url: str, list_title: str, item_id: int | None = None) -> str:
    url = f"{list_url(site_url, list_title)}/items"
    if item_id is not None:
        url += f"({int(item_id)})"
    return url


def fields_url(site_url: str, list_title: str) -> str:
    return f"{list_url(site_url, list_title)}/fields"


def list_by_id_url(site_url: str, list_id: str) -> str:
    list_id = list_id.strip("{}")
    return f"{site_url}/_api/web/lists(guid'{odata_string(list_id)}')"


def field_url(site_url: str, list_title: str, field_name: str) -> str:
    return f"{fields_url(site_url, list_title)}/getByInternalNameOrTitle('{odata_string(field_name)}')"


def lists_url(site_url: str) -> str:
    return f"{site_url}/_api/web/lists"
