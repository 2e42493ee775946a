#!/usr/bin/env python3
"""
Gig Ledger startup
Loads .env, validates configuration, and serves the webhook app with uvicorn
"""
import logging
import os
import sys

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env'))

import uvicorn  # noqa: E402

from config import Config  # noqa: E402
from webhook_server import create_app  # noqa: E402

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logging.getLogger('aiohttp.access').setLevel(logging.WARNING)
logging.getLogger('apscheduler').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def main():
    Config.log_environment_config()
    try:
        Config.validate()
    except ValueError as e:
        logger.critical(f"❌ Configuration invalid: {e}")
        sys.exit(1)

    logger.info(f"🚀 Starting webhook server on {Config.WEBHOOK_HOST}:{Config.WEBHOOK_PORT}")
    uvicorn.run(
        create_app(),
        host=Config.WEBHOOK_HOST,
        port=Config.WEBHOOK_PORT,
        log_level=Config.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
