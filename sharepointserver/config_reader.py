"""Конфигурация для SharePoint API клиента.

Источники настроек (по убыванию приоритета):
1. Аргументы командной строки вида --key=value
2. Переменные окружения (автоматически загружаются из .env файла)
3. YAML-файл, путь к которому указывается в SHAREPOINT_CONFIG (ключ sharepoint)
"""

from collections.abc import Sequence
from functools import lru_cache
from os import getenv
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, SecretStr
from yaml import SafeLoader, load

# Автоматически загружаем переменные из .env файла
load_dotenv()

DEFAULT_REQUEST_TIMEOUT = 30.0

# Поле модели -> (ключ CLI, переменная окружения)
CONFIG_SOURCES: dict[str, tuple[str, str]] = {
    "client_id": ("clientId", "SHAREPOINT_CLIENT_ID"),
    "client_secret": ("clientSecret", "SHAREPOINT_CLIENT_SECRET"),
    "tenant_id": ("tenantId", "SHAREPOINT_TENANT_ID"),
    "site_url": ("siteUrl", "SHAREPOINT_SITE_URL"),
    "application_id": ("applicationId", "AZURE_APPLICATION_ID"),
    "certificate_thumbprint": (
        "certificateThumbprint",
        "AZURE_APPLICATION_CERTIFICATE_THUMBPRINT",
    ),
    "certificate_password": (
        "certificatePassword",
        "AZURE_APPLICATION_CERTIFICATE_PASSWORD",
    ),
    "certificate_path": ("certificatePath", "AZURE_APPLICATION_CERTIFICATE_PATH"),
    "request_timeout": ("requestTimeout", "SHAREPOINT_REQUEST_TIMEOUT"),
}


class SharePointConfig(BaseModel):
    """Конфигурация для подключения к SharePoint.

    Заполненность полей не проверяется: выбор способа аутентификации
    выполняет sharepointserver.credentials.resolve_credentials.
    """

    # Аутентификация по секрету (SharePoint App-Only)
    client_id: str | None = None
    client_secret: SecretStr | None = None

    # Аутентификация по сертификату (Azure AD)
    application_id: str | None = None
    certificate_thumbprint: str | None = None
    certificate_password: SecretStr | None = None
    certificate_path: str | None = None

    # Общие настройки
    tenant_id: str | None = None
    site_url: str | None = None
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT


def parse_cli_args(argv: Sequence[str]) -> dict[str, str]:
    """Разобрать аргументы вида --key=value.

    Аргументы без '=' или с пустым значением пропускаются.

    Args:
        argv: Аргументы командной строки без имени программы

    Returns:
        Словарь ключ -> значение
    """
    result: dict[str, str] = {}
    for arg in argv:
        key, sep, value = arg.partition("=")
        key = key.lstrip("-")
        if sep and key and value:
            result[key] = value
    return result


@lru_cache
def parse_config_file() -> dict[str, Any]:
    """Прочитать и распарсить YAML-файл конфигурации.

    Путь к файлу берётся из переменной окружения SHAREPOINT_CONFIG.
    Если переменная не задана, возвращается пустой словарь.

    Returns:
        Словарь с конфигурацией

    Raises:
        ValueError: Если файл не содержит словарь
        FileNotFoundError: Если файл не найден
    """
    file_path = getenv("SHAREPOINT_CONFIG")
    if file_path is None:
        return {}

    with open(file_path, "rb") as file:
        config_data = load(file, Loader=SafeLoader)

    if config_data is None:
        return {}
    if not isinstance(config_data, dict):
        raise ValueError("Конфигурация должна быть словарём")
    return config_data


def load_config(argv: Sequence[str] | None = None) -> dict[str, Any]:
    """Собрать сырые значения настроек с учётом приоритета источников.

    Args:
        argv: Аргументы командной строки

    Returns:
        Словарь поле -> значение (только заданные поля)
    """
    file_values = parse_config_file().get("sharepoint") or {}
    if not isinstance(file_values, dict):
        raise ValueError("Ключ 'sharepoint' в конфигурации должен быть словарём")
    cli_values = parse_cli_args(argv or [])

    values: dict[str, Any] = {}
    for field_name, (cli_key, env_name) in CONFIG_SOURCES.items():
        value = cli_values.get(cli_key) or getenv(env_name) or file_values.get(field_name)
        if value not in (None, ""):
            values[field_name] = value
    return values


def get_sharepoint_config(argv: Sequence[str] | None = None) -> SharePointConfig:
    """Получить конфигурацию SharePoint.

    Args:
        argv: Аргументы командной строки (обычно sys.argv[1:])

    Returns:
        Экземпляр SharePointConfig
    """
    return SharePointConfig.model_validate(load_config(argv))
