"""
Unit tests for storage layer.

Tests schema creation, usage windows, subscriber sessions and locking.
"""

import os
import shutil
import tempfile
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from ugc_guard.core.errors import EntitlementExceeded, SubscriberNotFound
from ugc_guard.core.plans import PlanTier
from ugc_guard.storage.db import get_connection
from ugc_guard.storage.locks import KeyedLock
from ugc_guard.storage.models import GeneratedScript, Subscriber, UsageRecord
from ugc_guard.storage.repository import (
    InMemoryUsageStore,
    SqliteUsageStore,
    day_key,
    initialize_schema,
    month_key,
)
from ugc_guard.storage.subscribers import InMemorySubscriberStore, SqliteSubscriberStore

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _record(when=NOW, subscriber_id="sub-1", success=True):
    return UsageRecord(
        subscriber_id=subscriber_id,
        provider_id="groq",
        input_tokens=100,
        output_tokens=200,
        total_tokens=300,
        estimated_cost=0.0001,
        timestamp=when,
        success=success,
    )


def _artifact(artifact_id="a1", subscriber_id="sub-1"):
    return GeneratedScript(
        id=artifact_id,
        subscriber_id=subscriber_id,
        provider_id="groq",
        model="llama",
        hook="Hook",
        script="Script",
        visuals=("shot 1", "shot 2"),
        input_tokens=100,
        output_tokens=200,
        estimated_cost=0.0001,
        created_at=NOW,
    )


class TestKeys:
    """Test UTC window keys."""

    def test_keys_are_utc(self):
        """Offsets are normalized to UTC before keying."""
        local = datetime(2026, 3, 31, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
        assert day_key(local) == "2026-04-01"
        assert month_key(local) == "2026-04"


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """All tables are created, and creation is idempotent."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
                tables = {row[0] for row in cursor.fetchall()}
            finally:
                conn.close()
            assert {"usage_daily", "usage_monthly", "subscriber", "generated_script"} <= tables


class UsageStoreContract:
    """Behavior every usage store must share."""

    def make_store(self):
        raise NotImplementedError

    def test_append_to_both_windows(self):
        """A record lands in its day and its month."""
        store = self.make_store()
        store.append(_record())
        assert len(store.records_for_day("sub-1", "2026-03-15")) == 1
        assert len(store.records_for_month("sub-1", "2026-03")) == 1
        assert store.records_for_day("sub-1", "2026-03-14") == []

    def test_round_trip_fields(self):
        """Stored fields come back intact."""
        store = self.make_store()
        store.append(_record(success=False))
        record = store.records_for_day("sub-1", "2026-03-15")[0]
        assert record == _record(success=False)

    def test_prune(self):
        """Only keys starting before the cutoff are removed."""
        store = self.make_store()
        store.append(_record(when=NOW - timedelta(days=8)))
        store.append(_record(when=NOW))
        deleted = store.prune(NOW - timedelta(days=7), NOW - timedelta(days=90))
        assert deleted == (1, 0)
        assert store.records_for_day("sub-1", "2026-03-07") == []
        assert len(store.records_for_month("sub-1", "2026-03")) == 2


class TestInMemoryUsageStore(UsageStoreContract):
    """In-memory usage store."""

    def make_store(self):
        return InMemoryUsageStore()


class TestSqliteUsageStore(UsageStoreContract):
    """SQLite usage store."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def make_store(self):
        return SqliteUsageStore(self.db_path)


class SubscriberStoreContract:
    """Behavior every subscriber store must share."""

    def make_store(self):
        raise NotImplementedError

    def test_missing_subscriber(self):
        """Unknown ids raise SubscriberNotFound."""
        store = self.make_store()
        with pytest.raises(SubscriberNotFound):
            store.get("ghost")

    def test_add_and_get(self):
        """Subscribers round-trip."""
        store = self.make_store()
        subscriber = Subscriber(
            id="sub-1",
            plan=PlanTier.PRO,
            monthly_generation_count=3,
            trial_ends_at=NOW,
            has_batch_generation=True,
            is_email_verified=False,
        )
        store.add(subscriber)
        assert store.get("sub-1") == subscriber

    def test_session_commits_increments_and_artifacts(self):
        """Staged changes are applied together on clean exit."""
        store = self.make_store()
        store.add(Subscriber(id="sub-1", plan=PlanTier.TRIAL))
        with store.locked("sub-1") as session:
            session.increment("trial_generations_used")
            session.increment("total_generations")
            session.save_artifact(_artifact())

        subscriber = store.get("sub-1")
        assert subscriber.trial_generations_used == 1
        assert subscriber.total_generations == 1
        assert [a.id for a in store.artifacts_for("sub-1")] == ["a1"]
        assert store.artifacts_for("sub-1")[0].visuals == ("shot 1", "shot 2")

    def test_exception_discards_session(self):
        """Nothing is written when the block raises."""
        store = self.make_store()
        store.add(Subscriber(id="sub-1", plan=PlanTier.TRIAL))
        with pytest.raises(RuntimeError):
            with store.locked("sub-1") as session:
                session.increment("trial_generations_used")
                session.save_artifact(_artifact())
                raise RuntimeError("generation failed")

        assert store.get("sub-1").trial_generations_used == 0
        assert store.artifacts_for("sub-1") == []

    def test_monthly_reset(self):
        """A reset overwrites the monthly counter and stamps the date."""
        store = self.make_store()
        store.add(Subscriber(id="sub-1", plan=PlanTier.STARTER, monthly_generation_count=40))
        with store.locked("sub-1") as session:
            session.reset_monthly_count(1, NOW)
        subscriber = store.get("sub-1")
        assert subscriber.monthly_generation_count == 1
        assert subscriber.monthly_reset_date == NOW

    def test_limit_checked_at_commit(self):
        """A staged increment past its limit discards the whole session."""
        store = self.make_store()
        store.add(Subscriber(id="sub-1", plan=PlanTier.TRIAL, trial_generations_used=15))
        calls = []
        with pytest.raises(EntitlementExceeded) as exc_info:
            with store.locked("sub-1") as session:
                session.limit_message = "Upgrade now"
                session.increment("trial_generations_used", limit=15)
                session.increment("total_generations")
                session.save_artifact(_artifact())
                session.on_commit(lambda: calls.append("ok"))

        assert exc_info.value.upgrade_message == "Upgrade now"
        assert exc_info.value.remaining_generations == 0
        assert store.get("sub-1").trial_generations_used == 15
        assert store.get("sub-1").total_generations == 0
        assert store.artifacts_for("sub-1") == []
        assert calls == []

    def test_rejects_non_counter_column(self):
        """Only generation counters can be incremented."""
        store = self.make_store()
        store.add(Subscriber(id="sub-1", plan=PlanTier.TRIAL))
        with store.locked("sub-1") as session:
            with pytest.raises(ValueError, match="Not a counter column"):
                session.increment("plan")

    def test_after_commit_runs_on_success_only(self):
        """Commit callbacks are skipped when the block raises."""
        store = self.make_store()
        store.add(Subscriber(id="sub-1", plan=PlanTier.TRIAL))
        calls = []
        with store.locked("sub-1") as session:
            session.increment("total_generations")
            session.on_commit(lambda: calls.append("ok"))
        with pytest.raises(RuntimeError):
            with store.locked("sub-1") as session:
                session.on_commit(lambda: calls.append("bad"))
                raise RuntimeError("boom")
        assert calls == ["ok"]

    def test_session_sees_previous_commit(self):
        """A session opened after another commits reads the new counters."""
        store = self.make_store()
        store.add(Subscriber(id="sub-1", plan=PlanTier.TRIAL))
        seen = []
        first_holding = threading.Event()

        def first():
            with store.locked("sub-1") as session:
                first_holding.set()
                time.sleep(0.05)
                session.increment("trial_generations_used")

        def second():
            first_holding.wait()
            with store.locked("sub-1") as session:
                seen.append(session.subscriber.trial_generations_used)

        threads = [threading.Thread(target=first), threading.Thread(target=second)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert seen == [1]


class TestInMemorySubscriberStore(SubscriberStoreContract):
    """In-memory subscriber store."""

    def make_store(self):
        return InMemorySubscriberStore()


class TestSqliteSubscriberStore(SubscriberStoreContract):
    """SQLite subscriber store."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def make_store(self):
        return SqliteSubscriberStore(self.db_path)

    def test_limit_rechecked_against_other_writer(self):
        """A commit from another store on the same file counts toward the limit."""
        store, other = self.make_store(), self.make_store()
        store.add(Subscriber(id="sub-1", plan=PlanTier.TRIAL, trial_generations_used=14))

        with pytest.raises(EntitlementExceeded):
            with store.locked("sub-1") as first:
                assert first.subscriber.trial_generations_used == 14
                first.increment("trial_generations_used", limit=15)
                first.save_artifact(_artifact("a1"))
                with other.locked("sub-1") as second:
                    second.increment("trial_generations_used", limit=15)
                    second.save_artifact(_artifact("a2"))

        assert store.get("sub-1").trial_generations_used == 15
        assert [a.id for a in store.artifacts_for("sub-1")] == ["a2"]

    def test_monthly_reset_by_other_writer_is_added_to(self):
        """A reset already applied elsewhere turns the staged reset into an increment."""
        store, other = self.make_store(), self.make_store()
        store.add(Subscriber(
            id="sub-1",
            plan=PlanTier.STARTER,
            monthly_generation_count=40,
            monthly_reset_date=NOW - timedelta(days=40),
        ))

        with store.locked("sub-1") as first:
            first.reset_monthly_count(1, NOW, limit=50)
            with other.locked("sub-1") as second:
                second.reset_monthly_count(1, NOW, limit=50)

        subscriber = store.get("sub-1")
        assert subscriber.monthly_generation_count == 2
        assert subscriber.monthly_reset_date == NOW


class TestKeyedLock:
    """Test per-key locks."""

    def test_entries_released(self):
        """The lock map shrinks back when no one holds a key."""
        locks = KeyedLock()
        with locks.hold("a"):
            with locks.hold("b"):
                assert len(locks) == 2
        assert len(locks) == 0

    def test_different_keys_do_not_block(self):
        """Holding one key does not block another."""
        locks = KeyedLock()
        acquired = threading.Event()

        def other():
            with locks.hold("b"):
                acquired.set()

        with locks.hold("a"):
            thread = threading.Thread(target=other)
            thread.start()
            assert acquired.wait(timeout=1.0)
            thread.join()
