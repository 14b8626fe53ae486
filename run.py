#!/usr/bin/env python3
"""
Run the rental ingestion web server locally.

Listings persist to <DATA_DIR>/ingestion.json unless INGESTION_STORE_PATH
says otherwise (an empty value keeps them in memory). Set
ENABLE_PERIODIC_CRAWLS=true to have due sources crawled in the background.
"""

import uvicorn

from utils.config import Config


def main():
    """Start the web server."""
    config = Config.load()

    print(f"Rental Ingest on http://{config.host}:{config.port}")
    print(f"  store:   {config.resolved_store_path or 'memory'}")
    print(f"  workers: {config.crawl_workers} (queue {config.crawl_queue_size})")
    print(f"  auth:    {'CRON_SECRET required' if config.cron_secret else 'open'}")
    print("Press Ctrl+C to stop")

    uvicorn.run(
        "web.app:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
