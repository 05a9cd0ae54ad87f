from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from .config import settings

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None


def _build_engine(url: str) -> Engine:
    return create_engine(url, connect_args={"check_same_thread": False})


def configure_engine(url: str) -> Engine:
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = _build_engine(url)
    # Table classes must be registered on the metadata before create_all.
    from . import models  # noqa: F401

    SQLModel.metadata.create_all(_engine)
    logger.debug("database ready at %s", url)
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        return configure_engine(f"sqlite:///{settings.db_path}")
    return _engine


def init_db() -> None:
    get_engine()


@contextmanager
def get_session() -> Iterator[Session]:
    with Session(get_engine()) as session:
        yield session
