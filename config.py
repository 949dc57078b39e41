"""
config.py
=========
Application configuration, read once from the environment at import time.
"""

import logging
import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./discounts.db")
DB_ECHO = os.getenv("DB_ECHO", "false").lower() == "true"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

APP_TITLE = os.getenv("APP_TITLE", "Discount Resolution API")
APP_VERSION = os.getenv("APP_VERSION", "1.0.0")


def setup_logging():
    """Configure root logging for the service."""
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler()],
    )
