#!/usr/bin/env python3
"""
Startup script for the CADOK carrier webhook server
"""
import os
import sys
import logging

import uvicorn

from config import Config

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logging.getLogger('apscheduler').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def main():
    validation = Config.validate()
    if not validation["valid"]:
        for error in validation["errors"]:
            logger.error(f"❌ CONFIG: {error}")
        sys.exit(1)

    port = int(os.getenv("PORT", "5000"))
    logger.info(f"🚀 Starting carrier webhook server on port {port} ({Config.CURRENT_ENVIRONMENT})")
    uvicorn.run("webhook_server:app", host="0.0.0.0", port=port, log_level=Config.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
