#!/usr/bin/env python3
"""
Union Ledger Entry Point

Starts the FastAPI server with settings from UNION_LEDGER_* environment
variables (or .env).
"""

import sys

from union_ledger.api import run_server
from union_ledger.config import get_config
from union_ledger.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, config.log_format, config.log_file)
    logger.info(
        "Starting Union Ledger API on %s:%s (storage %s)",
        config.api_host, config.api_port, config.database_url
    )

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down Union Ledger API")
    except Exception:
        logger.exception("Error starting server")
        sys.exit(1)
