"""
pagequery entry point
Fetches one page of a collection the way a paginated list view would.

    python main.py "/projects?page=2&pageSize=20" [search]
"""

import asyncio
import sys

from loguru import logger

from pagequery.navigation import MemoryLocation, NavigationSynchronizer
from pagequery.services import ProjectFilter, QueryClient, QueryError


async def main(url: str, search: str | None = None) -> int:
    logger.info("Starting pagequery...")

    async with QueryClient() as client:
        navigator = NavigationSynchronizer(
            MemoryLocation(url),
            default_page_size=client.settings.default_page_size,
        )
        query = client.projects().paginated(navigator, ProjectFilter(search=search))

        try:
            view = await query.wait()
        finally:
            query.close()

        if view.is_error:
            logger.error(f"Failed to load page {view.page_number}: {view.error}")
            return 1

        logger.info(
            f"Page {view.page_number}/{view.total_pages}: {len(view.items)} items "
            f"(next: {view.has_next_page}, previous: {view.has_previous_page})"
        )
        for item in view.items:
            logger.info(f"  - {item}")

        logger.debug(f"Health: {client.get_health_status()}")
    return 0


if __name__ == "__main__":
    args = sys.argv[1:]
    try:
        code = asyncio.run(main(args[0] if args else "/projects", *args[1:2]))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        code = 130
    except QueryError as e:
        logger.error(f"Query failed: {e}")
        code = 1
    sys.exit(code)
