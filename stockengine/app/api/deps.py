from __future__ import annotations

from typing import Generator

from fastapi import Header

from stockengine.app.db.session import SessionLocal

DEFAULT_ACTOR = "system"


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_actor(x_actor: str | None = Header(default=None, alias="X-Actor")) -> str:
    # l'authentification est gérée en amont ; on ne fait que tracer le nom
    if not x_actor or not x_actor.strip():
        return DEFAULT_ACTOR
    return x_actor.strip()
