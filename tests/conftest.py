"""Общие фикстуры для тестов sharepointserver.

Содержит фикстуры, используемые в различных тестовых модулях.
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from sharepointserver import (
    SecretCredentials,
    SharePointApiClientManager,
    get_sharepoint_config,
    resolve_credentials,
)
from sharepointserver.config_reader import parse_config_file
from sharepointserver.exceptions import SharePointConfigException
from sharepointserver.request_executor import RawResponse, RequestExecutor

SITE_URL = "https://contoso.sharepoint.com/sites/dev"


class FrozenClock:
    """Управляемые часы для проверки сроков действия."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture(autouse=True)
def clear_config_cache() -> None:
    """Сбросить кэш YAML-конфигурации между тестами."""
    parse_config_file.cache_clear()


@pytest.fixture
def site_url() -> str:
    return SITE_URL


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def secret_credentials() -> SecretCredentials:
    return SecretCredentials(
        client_id="11111111-2222-3333-4444-555555555555",
        client_secret="secret-value",
        tenant_id="tenant-guid",
    )


@pytest.fixture
def make_response() -> Callable[..., RawResponse]:
    """Фабрика ответов RequestExecutor."""

    def factory(
        data: Any = None,
        status: int = 200,
        body: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> RawResponse:
        if body is None:
            body = json.dumps(data).encode("utf-8") if data is not None else b""
        return RawResponse(status=status, headers=headers or {}, body=body)

    return factory


@pytest.fixture
def executor() -> MagicMock:
    """Мок RequestExecutor с асинхронным execute."""
    mock = MagicMock(spec=RequestExecutor)
    mock.execute = AsyncMock()
    mock.close = AsyncMock()
    return mock


# ========== Интеграционные фикстуры ==========


@pytest.fixture
async def live_manager() -> AsyncGenerator[SharePointApiClientManager, None]:
    """Создать менеджер из реальной конфигурации.

    Тест пропускается, если учетные данные или адрес сайта не заданы.
    """
    config = get_sharepoint_config()
    if not config.site_url:
        pytest.skip("SHAREPOINT_SITE_URL не задан")
    try:
        resolve_credentials(config)
    except SharePointConfigException:
        pytest.skip("Учетные данные SharePoint не заданы")

    mgr = SharePointApiClientManager.from_config(config)
    yield mgr
    await mgr.close()
