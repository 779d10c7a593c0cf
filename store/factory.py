"""
store/factory.py -- Pick the PasskeyStorage implementation from Settings.

DATABASE_URL set   -> SQLPasskeyStore (any SQLAlchemy URL).
DATABASE_URL empty -> MemoryPasskeyStore, which itself refuses to start
                      unless DEBUG=true.
"""

from __future__ import annotations

import logging

from core.config import Settings
from store.base import PasskeyStorage
from store.memory import MemoryPasskeyStore
from store.sql import SQLPasskeyStore

logger = logging.getLogger("passkeykit.store")


def open_store(settings: Settings) -> PasskeyStorage:
    if settings.database_url:
        logger.info("Using SQL passkey store")
        return SQLPasskeyStore(settings.database_url)
    logger.info("Using in-memory passkey store")
    return MemoryPasskeyStore(production=not settings.debug)
