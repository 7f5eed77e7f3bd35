# cyclehub/db/session.py
from __future__ import annotations

from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from cyclehub.db.models import Base  # важно, чтобы модели были импортированы


def _ensure_sqlite_dir(db_url: str) -> None:
    # sqlite:///./data/data.db  → ./data
    prefix = "sqlite:///"
    if db_url.startswith(prefix):
        fs_path = db_url[len(prefix):]
        # :memory:: ничего не делаем
        if not fs_path or fs_path == ":memory:":
            return
        Path(fs_path).resolve().parent.mkdir(parents=True, exist_ok=True)


def make_engine(db_url: str) -> Engine:
    _ensure_sqlite_dir(db_url)
    kwargs = {"future": True}
    if db_url.startswith("sqlite"):
        # сессии открываются из воркера outbox, а не из потока, создавшего engine
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(db_url, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


# ленивые глобалы: создаются в init_db()
engine: Optional[Engine] = None
SessionLocal: Optional[sessionmaker] = None


def init_db(db_url: str) -> sessionmaker:
    """Создать engine, таблицы (если их ещё нет) и вернуть фабрику сессий."""
    global engine, SessionLocal
    engine = make_engine(db_url)
    Base.metadata.create_all(bind=engine)
    SessionLocal = make_session_factory(engine)
    return SessionLocal

