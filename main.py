"""
Production entrypoint for the rental ingestion service.

Binds to 0.0.0.0:$PORT. Workers and the periodic trigger start with the
app; a single uvicorn process is assumed since the job queue is in memory.
"""

import os

import uvicorn

from utils.config import Config
from utils.log import configure_logging


if __name__ == "__main__":
    config = Config.load()
    configure_logging(config.log_level)

    port = int(os.getenv("PORT", "8000"))
    periodic = "on" if config.enable_periodic_crawls else "off"
    print(f"Rental Ingest: port {port}, {config.crawl_workers} crawl workers, periodic crawls {periodic}")

    from web.app import create_app

    uvicorn.run(create_app(config), host="0.0.0.0", port=port, workers=1)
