"""Tests for the last-write-wins merge engine."""

import pytest
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from eventsync.models import UNSET, Event
from eventsync.sanitize import sanitize_incoming_event
from eventsync.store import EventStore, StoreError
from eventsync.sync import MergeEngine
from eventsync.sync import merge as merge_module

TENANT = "tenant-a"
T0 = datetime(2023, 12, 31, tzinfo=timezone.utc)
T1 = datetime(2024, 1, 1, tzinfo=timezone.utc)
T2 = datetime(2024, 1, 2, tzinfo=timezone.utc)
MARK = datetime(2024, 3, 1, tzinfo=timezone.utc)


@pytest.fixture
def store():
    """Create an in-memory EventStore."""
    store = EventStore(":memory:")
    store.connect()
    yield store
    store.close()


@pytest.fixture
def merge(store):
    return MergeEngine(store)


def _snapshot(store, event_id="e1"):
    row = store.query(
        "SELECT * FROM app_events WHERE tenant_id = ? AND id = ?", (TENANT, event_id)
    )[0]
    return dict(row)


class TestMergeInsert:
    """Tests for the insert path."""

    def test_insert_new_row(self, merge, store):
        count = merge.apply(TENANT, [Event(id="e1", updated_at=T1, title="A")])

        assert count == 1
        event = store.get(TENANT, "e1")
        assert event.title == "A"
        assert event.updated_at == T1
        assert event.integration_date is None

    def test_insert_with_integration_date(self, merge, store):
        merge.apply(TENANT, [Event(id="e1", updated_at=T1, integration_date=MARK)])

        assert store.get(TENANT, "e1").integration_date == MARK

    def test_empty_batch(self, merge, store):
        assert merge.apply(TENANT, []) == 0
        assert store.count(TENANT) == 0

    def test_rows_without_id_skipped(self, merge, store):
        count = merge.apply(
            TENANT, [Event(id="", updated_at=T1), Event(id="e2", updated_at=T1)]
        )

        assert count == 1
        assert store.count(TENANT) == 1


class TestMergeUpdate:
    """Tests for the timestamp-gated update path."""

    def test_newer_push_replaces_row(self, merge, store):
        merge.apply(TENANT, [Event(id="e1", updated_at=T1, title="A", notes="n")])
        merge.apply(TENANT, [Event(id="e1", updated_at=T2, title="B")])

        event = store.get(TENANT, "e1")
        assert event.title == "B"
        assert event.notes is None  # whole row replaced, not per-field
        assert event.updated_at == T2

    def test_older_push_is_ignored(self, merge, store):
        payloads = [
            {"id": "e1", "title": "A", "updatedAt": "2024-01-01T00:00:00Z"},
            {"id": "e1", "title": "B", "updatedAt": "2023-12-31T00:00:00Z"},
        ]
        for payload in payloads:
            merge.apply(TENANT, [sanitize_incoming_event(payload)])

        event = store.get(TENANT, "e1")
        assert event.title == "A"
        assert event.updated_at == T1

    def test_equal_timestamp_is_ignored(self, merge, store):
        merge.apply(TENANT, [Event(id="e1", updated_at=T1, title="A")])
        merge.apply(TENANT, [Event(id="e1", updated_at=T1, title="B")])

        assert store.get(TENANT, "e1").title == "A"

    def test_stale_push_never_partially_clobbers(self, merge, store):
        merge.apply(
            TENANT,
            [Event(id="e1", updated_at=T2, title="new", color="#000", duration=60)],
        )
        before = _snapshot(store)

        merge.apply(
            TENANT,
            [
                Event(
                    id="e1",
                    updated_at=T1,
                    title="old",
                    color="#fff",
                    duration=5,
                    created_at=T0,
                )
            ],
        )

        assert _snapshot(store) == before

    def test_created_at_follows_winning_row(self, merge, store):
        merge.apply(TENANT, [Event(id="e1", updated_at=T1, created_at=T1)])
        merge.apply(TENANT, [Event(id="e1", updated_at=T2, created_at=T0)])

        assert store.get(TENANT, "e1").created_at == T0


class TestMergeIntegrationMarker:
    """Tests for the three-way integration marker rule."""

    def test_routine_edit_preserves_marker(self, merge, store):
        merge.apply(TENANT, [Event(id="e1", updated_at=T1, integration_date=MARK)])
        merge.apply(TENANT, [Event(id="e1", updated_at=T2, title="edited")])

        event = store.get(TENANT, "e1")
        assert event.title == "edited"
        assert event.integration_date == MARK

    def test_explicit_null_clears_marker(self, merge, store):
        merge.apply(TENANT, [Event(id="e1", updated_at=T1, integration_date=MARK)])
        merge.apply(TENANT, [Event(id="e1", updated_at=T2, integration_date=None)])

        assert store.get(TENANT, "e1").integration_date is None

    def test_provided_marker_wins_even_when_older(self, merge, store):
        merge.apply(TENANT, [Event(id="e1", updated_at=T2, title="keep")])
        merge.apply(
            TENANT,
            [Event(id="e1", updated_at=T1, title="stale", integration_date=MARK)],
        )

        event = store.get(TENANT, "e1")
        assert event.title == "keep"
        assert event.updated_at == T2
        assert event.integration_date == MARK

    def test_provided_null_wins_even_when_equal(self, merge, store):
        merge.apply(TENANT, [Event(id="e1", updated_at=T1, integration_date=MARK)])
        merge.apply(TENANT, [Event(id="e1", updated_at=T1, integration_date=None)])

        assert store.get(TENANT, "e1").integration_date is None

    def test_stale_push_without_marker_leaves_it(self, merge, store):
        merge.apply(TENANT, [Event(id="e1", updated_at=T2, integration_date=MARK)])
        merge.apply(TENANT, [Event(id="e1", updated_at=T1, integration_date=UNSET)])

        assert store.get(TENANT, "e1").integration_date == MARK


class TestMergeProperties:
    """Idempotence, convergence and no-regression."""

    def test_idempotent(self, merge, store):
        batch = [
            Event(id="e1", updated_at=T1, title="A"),
            Event(id="e2", updated_at=T2, title="B", integration_date=MARK),
        ]

        merge.apply(TENANT, batch)
        once = [_snapshot(store, "e1"), _snapshot(store, "e2")]
        merge.apply(TENANT, batch)
        twice = [_snapshot(store, "e1"), _snapshot(store, "e2")]

        assert once == twice

    def test_convergence_is_order_independent(self):
        older = Event(id="e1", updated_at=T1, title="older", notes="x", duration=10)
        newer = Event(id="e1", updated_at=T2, title="newer", color="#123")

        snapshots = []
        for order in ([older, newer], [newer, older]):
            store = EventStore(":memory:")
            store.connect()
            engine = MergeEngine(store)
            for event in order:
                engine.apply(TENANT, [event])
            snapshots.append(_snapshot(store))
            store.close()

        assert snapshots[0] == snapshots[1]
        assert snapshots[0]["title"] == "newer"

    def test_updated_at_never_moves_backward(self, merge, store):
        for ts in (T1, T2, T0, T1):
            merge.apply(TENANT, [Event(id="e1", updated_at=ts)])

        assert store.get(TENANT, "e1").updated_at == T2

    def test_duplicate_ids_in_one_batch(self, merge, store):
        merge.apply(
            TENANT,
            [
                Event(id="e1", updated_at=T2, title="newest"),
                Event(id="e1", updated_at=T1, title="older"),
            ],
        )

        assert store.get(TENANT, "e1").title == "newest"


class TestMergeAtomicity:
    """A failing batch leaves nothing behind."""

    def test_failure_rolls_back_whole_batch(self, merge, store):
        merge.apply(TENANT, [Event(id="e0", updated_at=T1, title="before")])

        real_params = merge_module._row_params
        calls = {"n": 0}

        def failing_params(tenant_id, event):
            calls["n"] += 1
            params = real_params(tenant_id, event)
            if event.id == "e2":
                params["title"] = None  # violates NOT NULL
            return params

        with patch("eventsync.sync.merge._row_params", side_effect=failing_params):
            with pytest.raises(StoreError):
                merge.apply(
                    TENANT,
                    [
                        Event(id="e0", updated_at=T2, title="after"),
                        Event(id="e1", updated_at=T1),
                        Event(id="e2", updated_at=T1),
                    ],
                )

        assert calls["n"] == 3
        assert store.get(TENANT, "e0").title == "before"
        assert store.get(TENANT, "e1") is None

    def test_retry_after_failure_is_safe(self, merge, store):
        batch = [Event(id="e1", updated_at=T1, title="A")]

        with patch.object(store, "transaction", side_effect=StoreError("locked")):
            with pytest.raises(StoreError):
                merge.apply(TENANT, batch)

        merge.apply(TENANT, batch)
        merge.apply(TENANT, batch)

        assert store.count(TENANT) == 1
        assert store.get(TENANT, "e1").title == "A"


class TestMergeConcurrency:
    """Concurrent batches on one database file are serialized."""

    def test_interleaved_writers_converge_on_newest(self, tmp_path):
        db_path = tmp_path / "events.db"
        rounds = 200
        errors = []
        setup = EventStore(db_path)
        setup.connect()
        setup.close()

        def writer(worker):
            store = EventStore(db_path)
            store.connect()
            engine = MergeEngine(store)
            try:
                for i in range(rounds):
                    updated_at = T1 + timedelta(milliseconds=2 * i + worker)
                    engine.apply(
                        TENANT,
                        [Event(id="e1", updated_at=updated_at, title=f"{worker}-{i}")],
                    )
            except StoreError as e:
                errors.append(e)
            finally:
                store.close()

        threads = [threading.Thread(target=writer, args=(w,)) for w in (0, 1)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []

        store = EventStore(db_path)
        store.connect()
        event = store.get(TENANT, "e1")
        store.close()

        assert event.title == f"1-{rounds - 1}"
        assert event.updated_at == T1 + timedelta(milliseconds=2 * (rounds - 1) + 1)
