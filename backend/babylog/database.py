# babylog/database.py
from __future__ import annotations

import os

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

DATABASE_URL = (os.getenv("DATABASE_URL") or "sqlite:///./babylog.db").strip()

# SQLite needs this when FastAPI hands the session to a worker thread
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args, future=True)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


class Base(DeclarativeBase):
    pass


def get_db():
    """
    FastAPI dependency: one session per request, always closed.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
