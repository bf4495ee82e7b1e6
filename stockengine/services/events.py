"""
Événements métier (mouvements de stock, saisies, seuils...).

Les services accumulent les événements dans la session ; ils ne sont publiés
qu'après un commit réussi et sont jetés sur rollback.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import event
from sqlalchemy.orm import Session

from stockengine.app.core.logging_config import AUDIT_LOGGER_NAME

logger = logging.getLogger(__name__)

PENDING_KEY = "stockengine.events"

Handler = Callable[["AuditEvent"], None]


@dataclass(frozen=True)
class AuditEvent:
    topic: str
    actor: str
    payload: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=datetime.utcnow)


def _pattern_matches(pattern: str, topic: str) -> bool:
    """
    Supported:
      - "*" (everything)
      - exact match
      - "prefix.*" treated as prefix match
    """
    if pattern == "*" or pattern == topic:
        return True
    if pattern.endswith(".*"):
        return topic.startswith(pattern[:-1])
    return False


class EventBus:
    def __init__(self):
        self._subscribers: list[tuple[str, Handler]] = []
        self._guard = threading.Lock()

    def subscribe(self, pattern: str, handler: Handler) -> None:
        with self._guard:
            if (pattern, handler) not in self._subscribers:
                self._subscribers.append((pattern, handler))

    def unsubscribe(self, pattern: str, handler: Handler) -> None:
        with self._guard:
            if (pattern, handler) in self._subscribers:
                self._subscribers.remove((pattern, handler))

    def publish(self, evt: AuditEvent) -> None:
        with self._guard:
            handlers = [h for p, h in self._subscribers if _pattern_matches(p, evt.topic)]
        for handler in handlers:
            try:
                handler(evt)
            except Exception:
                # la transaction est déjà committée : un abonné fautif ne doit pas la faire échouer
                logger.exception("Event handler %r failed for %s", handler, evt.topic)


bus = EventBus()


def emit(db: Session, topic: str, *, actor: str, **payload) -> AuditEvent:
    evt = AuditEvent(topic=topic, actor=actor, payload=payload)
    db.info.setdefault(PENDING_KEY, []).append(evt)
    return evt


def pending(db: Session) -> list[AuditEvent]:
    return list(db.info.get(PENDING_KEY, []))


@event.listens_for(Session, "after_commit")
def _publish_after_commit(session: Session) -> None:
    events = session.info.pop(PENDING_KEY, [])
    for evt in events:
        bus.publish(evt)


@event.listens_for(Session, "after_rollback")
def _discard_after_rollback(session: Session) -> None:
    dropped = session.info.pop(PENDING_KEY, [])
    if dropped:
        logger.debug("Discarded %d pending event(s) after rollback", len(dropped))


audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)


def log_event(evt: AuditEvent) -> None:
    audit_logger.info("%s actor=%s %s", evt.topic, evt.actor, evt.payload)


def register_default_subscribers() -> None:
    bus.subscribe("*", log_event)
