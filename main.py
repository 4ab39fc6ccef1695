"""
Entry point for the checkout back-office service.
Loads .env, configures logging and serves the FastAPI app with uvicorn.
"""

import os
import sys
import logging

# .env must be loaded before config.py reads the environment
from dotenv import load_dotenv
load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env'))

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logging.getLogger('apscheduler').setLevel(logging.WARNING)
logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def main():
    import uvicorn
    from config import Config

    if not Config.validate_configuration():
        logger.error("❌ Invalid configuration, refusing to start")
        sys.exit(1)

    logger.info(f"🚀 Starting back-office API on {Config.HOST}:{Config.PORT}")
    uvicorn.run("api_server:app", host=Config.HOST, port=Config.PORT, log_level=Config.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
