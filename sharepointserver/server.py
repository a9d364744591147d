"""MCP-сервер SharePoint поверх stdio.

stdout занят протоколом MCP, поэтому логи пишутся в stderr.

Запуск:
    sharepoint-server --siteUrl=https://contoso.sharepoint.com/sites/dev
"""

import asyncio
import logging
import sys
from collections.abc import Sequence
from os import getenv
from typing import Any

from mcp import types
from mcp.server import Server
from mcp.server.stdio import stdio_server

from sharepointserver.api_client_manager import SharePointApiClientManager
from sharepointserver.config_reader import get_sharepoint_config
from sharepointserver.exceptions import SharePointConfigException
from sharepointserver.tools import TOOLS, call_tool

logger = logging.getLogger(__name__)

SERVER_NAME = "sharepoint-server"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def create_server(manager: SharePointApiClientManager) -> Server:
    """Создать MCP-сервер с инструментами SharePoint.

    Args:
        manager: Фасад SharePoint API

    Returns:
        Сервер, готовый к запуску
    """
    server: Server = Server(SERVER_NAME)

    @server.list_tools()
    async def handle_list_tools() -> list[types.Tool]:
        return [tool.to_mcp() for tool in TOOLS]

    @server.call_tool()
    async def handle_call_tool(name: str, arguments: dict[str, Any]) -> types.CallToolResult:
        return await call_tool(manager, name, arguments)

    return server


async def serve(argv: Sequence[str] | None = None) -> None:
    """Прочитать конфигурацию и обслуживать запросы через stdio.

    Raises:
        SharePointConfigException: Если учетные данные не заданы
    """
    config = get_sharepoint_config(argv)
    manager = SharePointApiClientManager.from_config(config)
    server = create_server(manager)
    logger.info("Сервер %s запущен, инструментов: %d", SERVER_NAME, len(TOOLS))

    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream, write_stream, server.create_initialization_options()
            )
    finally:
        await manager.close()
        logger.info("Сервер %s остановлен", SERVER_NAME)


def main() -> None:
    """Точка входа sharepoint-server."""
    logging.basicConfig(
        stream=sys.stderr,
        level=getenv("SHAREPOINT_LOG_LEVEL", "INFO").upper(),
        format=LOG_FORMAT,
    )
    try:
        asyncio.run(serve(sys.argv[1:]))
    except SharePointConfigException as exc:
        logger.error("Ошибка конфигурации: %s", exc)
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        logger.info("Остановлено пользователем")


if __name__ == "__main__":
    main()
