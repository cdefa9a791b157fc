"""
Persisted settings and database session setup.

Runtime settings live in the ``settings`` table as strings keyed by name.
Readers fall back to the defaults in :mod:`clio_invoice.constants` when a
key is missing or holds an unusable value.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from .constants import (
    DEFAULT_POLLING_INTERVAL_MINUTES,
    DEFAULT_SETTINGS,
    SETTING_AUTO_SEND_FIRST_ROUND,
    SETTING_POLLING_INTERVAL,
)
from .models import Base, Setting

logger = logging.getLogger(__name__)


def get_session_factory(database_url: Optional[str] = None) -> sessionmaker:
    """Create the engine for ``database_url`` (or ``DATABASE_URL``) and its tables."""
    db_url = database_url or os.environ.get("DATABASE_URL")
    if not db_url:
        raise RuntimeError("DATABASE_URL environment variable is not set")
    engine = create_engine(db_url)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


def get_setting(session: Session, key: str, default: Optional[str] = None) -> Optional[str]:
    setting = session.query(Setting).filter_by(key=key).first()
    if setting is None:
        return default
    return setting.value


def set_setting(session: Session, key: str, value: str, description: Optional[str] = None) -> Setting:
    setting = session.query(Setting).filter_by(key=key).first()
    if setting is None:
        setting = Setting(key=key, value=value, description=description)
        session.add(setting)
    else:
        setting.value = value
        if description is not None:
            setting.description = description
    session.commit()
    return setting


def ensure_default_settings(session: Session) -> int:
    """Seed the default settings when the table is empty; return rows added."""
    if session.query(Setting).count():
        return 0
    logger.info("No settings found, seeding defaults")
    for default in DEFAULT_SETTINGS:
        session.add(Setting(**default))
    session.commit()
    return len(DEFAULT_SETTINGS)


def get_polling_interval(session: Session) -> int:
    """Polling interval in minutes; non-positive or malformed values use the default."""
    raw = get_setting(session, SETTING_POLLING_INTERVAL)
    if raw:
        try:
            minutes = int(raw)
        except ValueError:
            logger.warning("Ignoring malformed %s setting: %r", SETTING_POLLING_INTERVAL, raw)
        else:
            if minutes > 0:
                return minutes
    return DEFAULT_POLLING_INTERVAL_MINUTES


def should_auto_notify(session: Session) -> bool:
    return get_setting(session, SETTING_AUTO_SEND_FIRST_ROUND, "false") == "true"
