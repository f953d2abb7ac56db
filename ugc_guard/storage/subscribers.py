"""
Subscriber and generated-script persistence.

A session opened with ``SubscriberStore.locked`` is the only way counters
are changed. It holds the per-subscriber lock for its whole lifetime and
applies staged changes in one commit when the ``with`` block exits cleanly.
An exception inside the block discards everything staged.

Counter limits staged on the session are checked again against the stored
row at commit time, so a writer outside this process that committed in the
meantime cannot push a counter past its limit.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from ugc_guard.core.errors import EntitlementExceeded, SubscriberNotFound
from ugc_guard.core.plans import PlanTier

from .db import DEFAULT_DB_PATH, get_connection
from .locks import KeyedLock
from .models import GeneratedScript, Subscriber

logger = logging.getLogger(__name__)

COUNTER_COLUMNS = (
    "trial_generations_used",
    "monthly_generation_count",
    "total_generations",
)
LIMIT_REACHED_MESSAGE = "Generation limit reached. Please upgrade your plan."


class SubscriberSession:
    """Staged counter changes and artifacts for one locked subscriber."""

    def __init__(self, subscriber: Subscriber):
        self.subscriber = subscriber
        self.increments: Dict[str, int] = {}
        self.limits: Dict[str, int] = {}
        self.limit_message = LIMIT_REACHED_MESSAGE
        self.monthly_reset: Optional[Tuple[int, datetime]] = None
        self.artifacts: List[GeneratedScript] = []
        self.after_commit: List[Callable[[], None]] = []

    def increment(self, column: str, amount: int = 1, limit: Optional[int] = None) -> None:
        """Stage ``column = column + amount`` for commit.

        Args:
            column: One of the generation counters
            amount: Value to add
            limit: Highest value the counter may reach once committed

        Raises:
            ValueError: If the column is not a generation counter
        """
        if column not in COUNTER_COLUMNS:
            raise ValueError(f"Not a counter column: {column}")
        self.increments[column] = self.increments.get(column, 0) + amount
        if limit is not None:
            self.limits[column] = limit

    def reset_monthly_count(self, value: int, reset_date: datetime, limit: Optional[int] = None) -> None:
        """Stage an overwrite of the monthly counter at a new calendar month.

        If the stored reset date moved since the session was opened, another
        writer already reset the month and ``value`` is added instead.
        """
        self.monthly_reset = (value, reset_date)
        if limit is not None:
            self.limits["monthly_generation_count"] = limit

    def apply_to(self, current: Subscriber) -> Dict[str, object]:
        """Resolve staged changes against the currently stored subscriber.

        Returns:
            New column values keyed by column name

        Raises:
            EntitlementExceeded: If a counter would pass its staged limit
        """
        changes: Dict[str, object] = {}
        added: Dict[str, int] = dict(self.increments)
        if self.monthly_reset is not None:
            value, reset_date = self.monthly_reset
            if current.monthly_reset_date == self.subscriber.monthly_reset_date:
                changes["monthly_generation_count"] = value
                changes["monthly_reset_date"] = reset_date
            else:
                changes["monthly_generation_count"] = current.monthly_generation_count + value
            added["monthly_generation_count"] = added.get("monthly_generation_count", 0) + value

        for column, amount in self.increments.items():
            base = changes.get(column, getattr(current, column))
            changes[column] = base + amount

        for column, limit in self.limits.items():
            if column in changes and changes[column] > limit:
                remaining = max(0, limit - (changes[column] - added.get(column, 0)))
                logger.warning(
                    "Commit for %s would raise %s to %s (limit %d); discarding",
                    current.id, column, changes[column], limit,
                )
                raise EntitlementExceeded(self.limit_message, remaining)
        return changes

    def save_artifact(self, artifact: GeneratedScript) -> None:
        self.artifacts.append(artifact)

    def on_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` after a successful commit, still under the lock."""
        self.after_commit.append(callback)


class SubscriberStore(ABC):
    """Storage for subscribers and their generated scripts."""

    def __init__(self):
        self._locks = KeyedLock()

    @abstractmethod
    def add(self, subscriber: Subscriber) -> None:
        """Insert or replace a subscriber record."""

    @abstractmethod
    def get(self, subscriber_id: str) -> Subscriber:
        """Read a subscriber snapshot.

        Raises:
            SubscriberNotFound: If the id is unknown
        """

    @abstractmethod
    def artifacts_for(self, subscriber_id: str) -> List[GeneratedScript]:
        """All generated scripts of a subscriber, oldest first."""

    @abstractmethod
    def _commit(self, session: SubscriberSession) -> None:
        """Apply a session's staged changes atomically."""

    @contextmanager
    def locked(self, subscriber_id: str) -> Iterator[SubscriberSession]:
        """Hold the subscriber's exclusive lock and yield a session.

        The subscriber is re-read after the lock is acquired, so the snapshot
        on the session reflects every commit made before it.
        """
        with self._locks.hold(subscriber_id):
            session = SubscriberSession(self.get(subscriber_id))
            yield session
            if session.increments or session.monthly_reset or session.artifacts:
                self._commit(session)
                logger.debug(
                    "Committed %s for subscriber %s (%d artifacts)",
                    session.increments, subscriber_id, len(session.artifacts),
                )
            for callback in session.after_commit:
                callback()


class InMemorySubscriberStore(SubscriberStore):
    """Process-local subscriber store."""

    def __init__(self):
        super().__init__()
        self._data_lock = threading.Lock()
        self._subscribers: Dict[str, Subscriber] = {}
        self._artifacts: Dict[str, List[GeneratedScript]] = {}

    def add(self, subscriber: Subscriber) -> None:
        with self._data_lock:
            self._subscribers[subscriber.id] = subscriber

    def get(self, subscriber_id: str) -> Subscriber:
        with self._data_lock:
            if subscriber_id not in self._subscribers:
                raise SubscriberNotFound(subscriber_id)
            return self._subscribers[subscriber_id]

    def artifacts_for(self, subscriber_id: str) -> List[GeneratedScript]:
        with self._data_lock:
            return list(self._artifacts.get(subscriber_id, []))

    def _commit(self, session: SubscriberSession) -> None:
        with self._data_lock:
            current = self._subscribers[session.subscriber.id]
            changes = session.apply_to(current)
            self._subscribers[current.id] = replace(current, **changes)
            self._artifacts.setdefault(current.id, []).extend(session.artifacts)


class SqliteSubscriberStore(SubscriberStore):
    """SQLite-backed subscriber store.

    The per-subscriber lock is process-local. The commit runs under
    ``BEGIN IMMEDIATE``, re-reads the row inside that transaction and writes
    counter updates and artifact inserts together.
    """

    SELECT_SUBSCRIBER = """
        SELECT id, plan, trial_generations_used, monthly_generation_count,
               total_generations, trial_started_at, trial_ends_at,
               monthly_reset_date, has_batch_generation, team_size,
               is_email_verified
        FROM subscriber WHERE id = ?
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        super().__init__()
        self.db_path = db_path

    def add(self, subscriber: Subscriber) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT OR REPLACE INTO subscriber
                (id, plan, trial_generations_used, monthly_generation_count,
                 total_generations, trial_started_at, trial_ends_at,
                 monthly_reset_date, has_batch_generation, team_size,
                 is_email_verified)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                subscriber.id,
                subscriber.plan.value,
                subscriber.trial_generations_used,
                subscriber.monthly_generation_count,
                subscriber.total_generations,
                _to_text(subscriber.trial_started_at),
                _to_text(subscriber.trial_ends_at),
                _to_text(subscriber.monthly_reset_date),
                int(subscriber.has_batch_generation),
                subscriber.team_size,
                int(subscriber.is_email_verified),
            ))
            conn.commit()
        finally:
            conn.close()

    def get(self, subscriber_id: str) -> Subscriber:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(self.SELECT_SUBSCRIBER, (subscriber_id,)).fetchone()
        finally:
            conn.close()

        if row is None:
            raise SubscriberNotFound(subscriber_id)
        return _subscriber_from_row(row)

    def artifacts_for(self, subscriber_id: str) -> List[GeneratedScript]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT id, subscriber_id, provider_id, model, hook, script, visuals,
                       input_tokens, output_tokens, estimated_cost, created_at,
                       watermarked, variation
                FROM generated_script
                WHERE subscriber_id = ?
                ORDER BY created_at ASC
            """, (subscriber_id,))
            return [
                GeneratedScript(
                    id=row[0],
                    subscriber_id=row[1],
                    provider_id=row[2],
                    model=row[3],
                    hook=row[4],
                    script=row[5],
                    visuals=tuple(json.loads(row[6])),
                    input_tokens=row[7],
                    output_tokens=row[8],
                    estimated_cost=row[9],
                    created_at=datetime.fromisoformat(row[10]),
                    watermarked=bool(row[11]),
                    variation=row[12],
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def _commit(self, session: SubscriberSession) -> None:
        subscriber_id = session.subscriber.id
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(self.SELECT_SUBSCRIBER, (subscriber_id,)).fetchone()
            if row is None:
                raise SubscriberNotFound(subscriber_id)
            changes = session.apply_to(_subscriber_from_row(row))
            for column, value in changes.items():
                # column names come from COUNTER_COLUMNS or the reset date
                if isinstance(value, datetime):
                    value = _to_text(value)
                conn.execute(
                    f"UPDATE subscriber SET {column} = ? WHERE id = ?",
                    (value, subscriber_id),
                )
            for artifact in session.artifacts:
                conn.execute("""
                    INSERT INTO generated_script
                    (id, subscriber_id, provider_id, model, hook, script, visuals,
                     input_tokens, output_tokens, estimated_cost, created_at,
                     watermarked, variation)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    artifact.id,
                    artifact.subscriber_id,
                    artifact.provider_id,
                    artifact.model,
                    artifact.hook,
                    artifact.script,
                    json.dumps(list(artifact.visuals)),
                    artifact.input_tokens,
                    artifact.output_tokens,
                    artifact.estimated_cost,
                    artifact.created_at.isoformat(),
                    int(artifact.watermarked),
                    artifact.variation,
                ))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


def _subscriber_from_row(row) -> Subscriber:
    return Subscriber(
        id=row[0],
        plan=PlanTier(row[1]),
        trial_generations_used=row[2],
        monthly_generation_count=row[3],
        total_generations=row[4],
        trial_started_at=_from_text(row[5]),
        trial_ends_at=_from_text(row[6]),
        monthly_reset_date=_from_text(row[7]),
        has_batch_generation=bool(row[8]),
        team_size=row[9],
        is_email_verified=bool(row[10]),
    )


def _to_text(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_text(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
