"""Пример использования SharePoint API клиента."""

import asyncio
import logging

from sharepointserver import SharePointApiClientManager, get_sharepoint_config

# Настраиваем логирование
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


async def main() -> None:
    """Основная функция."""
    # Загружаем конфигурацию из .env / SHAREPOINT_CONFIG
    config = get_sharepoint_config()
    print(f"Подключение к сайту: {config.site_url}")

    manager = SharePointApiClientManager.from_config(config)

    try:
        title = await manager.get_web_title()
        print(f"Сайт: {title}")

        lists = await manager.get_lists()
        print(f"\nСписки ({len(lists)} шт.):")
        for item in lists[:5]:  # Показываем первые 5
            print(f"  - {item.get('Title')} (элементов: {item.get('ItemCount')})")

    finally:
        await manager.close()
        print("\nСоединения закрыты.")


if __name__ == "__main__":
    asyncio.run(main())
