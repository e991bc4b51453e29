"""Transaction boundary that flushes buffered events only on commit.

Bookkeeping functions never commit. They return a ``TransactionOutcome``
carrying the value plus every event, ledger command and post-commit hook
the work produced; ``comprehensive_transaction`` writes the events and
commands in the same database transaction, commits, and only then runs the
hooks. A rollback discards all of it.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from bookkeeper.db import SessionLocal
from bookkeeper.errors import ConcurrentModificationError
from bookkeeper.models.events import (
    Event,
    EventNoun,
    EventType,
    LedgerCommand,
    LedgerCommandType,
)
from bookkeeper.services.common import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")


@dataclass
class EventInsert:
    type: EventType
    organization_id: uuid.UUID
    object_entity: EventNoun
    object_id: uuid.UUID
    hash: str
    payload: dict = field(default_factory=dict)
    livemode: bool = False
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass
class LedgerCommandInsert:
    type: LedgerCommandType
    organization_id: uuid.UUID
    subscription_id: uuid.UUID | None = None
    payload: dict = field(default_factory=dict)
    livemode: bool = False


@dataclass
class TransactionOutcome(Generic[T]):
    value: T
    events: list[EventInsert] = field(default_factory=list)
    ledger_commands: list[LedgerCommandInsert] = field(default_factory=list)
    post_commit: list[Callable[[], Any]] = field(default_factory=list)

    def absorb(self, other: TransactionOutcome[U]) -> U:
        """Take over ``other``'s side effects and hand back its value."""
        self.events.extend(other.events)
        self.ledger_commands.extend(other.ledger_commands)
        self.post_commit.extend(other.post_commit)
        return other.value


def persist_side_effects(db: Session, outcome: TransactionOutcome[Any]) -> None:
    """Insert buffered events (deduplicated by hash) and ledger commands."""
    seen: set[str] = set()
    hashes = [e.hash for e in outcome.events]
    if hashes:
        seen.update(db.scalars(select(Event.hash).where(Event.hash.in_(hashes))))
    now = utcnow()
    for event in outcome.events:
        if event.hash in seen:
            logger.info("Skipping duplicate %s event: %s", event.type.value, event.hash)
            continue
        seen.add(event.hash)
        db.add(
            Event(
                organization_id=event.organization_id,
                type=event.type,
                hash=event.hash,
                object_entity=event.object_entity,
                object_id=event.object_id,
                payload=event.payload,
                occurred_at=event.occurred_at,
                submitted_at=now,
                livemode=event.livemode,
            )
        )
    for command in outcome.ledger_commands:
        db.add(
            LedgerCommand(
                organization_id=command.organization_id,
                type=command.type,
                subscription_id=command.subscription_id,
                payload=command.payload,
                livemode=command.livemode,
            )
        )
    db.flush()


def run_post_commit_hooks(outcome: TransactionOutcome[Any]) -> None:
    for hook in outcome.post_commit:
        try:
            hook()
        except Exception:
            logger.exception("Post-commit hook %r failed", hook)


def comprehensive_transaction(
    fn: Callable[[Session], TransactionOutcome[T]],
    db: Session | None = None,
    session_factory: sessionmaker | None = None,
) -> T:
    """Run ``fn`` in one transaction and flush its side effects on commit.

    When ``db`` is given the caller owns the session and it is left open;
    otherwise a session is opened from ``session_factory`` (``SessionLocal``
    by default) and closed afterwards, with objects kept loaded.
    """
    owns_session = db is None
    if db is None:
        factory = session_factory or SessionLocal
        db = factory(expire_on_commit=False)
    try:
        outcome = fn(db)
        persist_side_effects(db, outcome)
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise ConcurrentModificationError(str(exc)) from exc
    except Exception:
        db.rollback()
        raise
    finally:
        if owns_session:
            db.close()
    run_post_commit_hooks(outcome)
    return outcome.value
