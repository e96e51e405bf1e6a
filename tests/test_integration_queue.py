"""Tests for the pending-integration export queue."""

import pytest
from datetime import datetime, timezone

from eventsync.integration import IntegrationQueue, PendingPage, clamp_param
from eventsync.models import Event
from eventsync.store import EventStore
from eventsync.sync import ChangeFeed, MergeEngine, SyncService

TENANT = "tenant-a"
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
def queue(store):
    return IntegrationQueue(store)


@pytest.fixture
def strict_queue(store):
    """Queue that leaves updated_at alone when marking."""
    return IntegrationQueue(store, touch_updated_at=False)


def _seed(store, *events):
    MergeEngine(store).apply(TENANT, list(events))


class TestClampParam:
    """Tests for paging parameter parsing."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (None, 10),
            ("abc", 10),
            ("", 10),
            (True, 10),
            ("5", 5),
            (" 7 ", 7),
            (3.9, 3),
            (0, 1),
            (-4, 1),
            (1000, 50),
        ],
    )
    def test_clamp(self, value, expected):
        assert clamp_param(value, 10, 1, 50) == expected


class TestPendingPage:
    """Tests for pagination metadata."""

    def test_empty(self):
        page = PendingPage(events=[], page=1, page_size=10, total_items=0)

        assert page.total_pages == 0
        assert page.has_more is False

    def test_partial_last_page(self):
        events = [Event(id="e1", updated_at=T1)]
        page = PendingPage(events=events, page=3, page_size=2, total_items=5)

        assert page.total_pages == 3
        assert page.has_more is False

    def test_to_dict(self):
        events = [Event(id="e1", updated_at=T1), Event(id="e2", updated_at=T1)]
        data = PendingPage(
            events=events, page=1, page_size=2, total_items=3
        ).to_dict()

        assert [e["id"] for e in data["events"]] == ["e1", "e2"]
        assert data["pagination"] == {
            "page": 1,
            "pageSize": 2,
            "totalItems": 3,
            "totalPages": 2,
            "hasMore": True,
        }


class TestListPending:
    """Tests for reading the queue."""

    def test_only_unmarked_rows(self, store, queue):
        _seed(
            store,
            Event(id="e1", updated_at=T1),
            Event(id="e2", updated_at=T1, integration_date=MARK),
        )

        assert [e.id for e in queue.list_pending(TENANT, 10)] == ["e1"]
        assert queue.count_pending(TENANT) == 1

    def test_ordered_by_updated_at_then_id(self, store, queue):
        _seed(
            store,
            Event(id="b", updated_at=T1),
            Event(id="c", updated_at=T2),
            Event(id="a", updated_at=T1),
        )

        assert [e.id for e in queue.list_pending(TENANT, 10)] == ["a", "b", "c"]

    def test_other_tenants_excluded(self, store, queue):
        _seed(store, Event(id="e1", updated_at=T1))
        MergeEngine(store).apply("other", [Event(id="e2", updated_at=T1)])

        assert queue.count_pending(TENANT) == 1
        assert queue.count_pending("other") == 1

    def test_pages_cover_queue_without_overlap(self, store, queue):
        _seed(store, *[Event(id=f"e{i}", updated_at=T1) for i in range(5)])

        seen = []
        for number in (1, 2, 3):
            result = queue.page(TENANT, page=number, page_size=2)
            seen.extend(e.id for e in result.events)

        assert seen == ["e0", "e1", "e2", "e3", "e4"]
        assert result.total_pages == 3
        assert result.has_more is False

    def test_page_past_end_is_empty(self, store, queue):
        _seed(store, Event(id="e1", updated_at=T1))

        result = queue.page(TENANT, page=5, page_size=10)

        assert result.events == []
        assert result.total_items == 1
        assert result.has_more is False

    def test_page_params_clamped(self, store):
        queue = IntegrationQueue(store, max_page_size=3)

        result = queue.page(TENANT, page="0", page_size="900")

        assert result.page == 1
        assert result.page_size == 3

    def test_invalid_page_size_uses_default(self, store, queue):
        result = queue.page(TENANT, page_size="lots", default_page_size=25)

        assert result.page_size == 25


class TestMarkConsumed:
    """Tests for marking rows as exported."""

    def test_marked_rows_leave_queue(self, store, queue):
        _seed(store, Event(id="e1", updated_at=T1), Event(id="e2", updated_at=T1))

        count = queue.mark_consumed(TENANT, ["e1"], MARK)

        assert count == 1
        assert [e.id for e in queue.list_pending(TENANT, 10)] == ["e2"]
        assert store.get(TENANT, "e1").integration_date == MARK

    def test_default_marker_is_now(self, store, queue):
        _seed(store, Event(id="e1", updated_at=T1))
        before = datetime.now(timezone.utc).replace(microsecond=0)

        queue.mark_consumed(TENANT, ["e1"])

        marker = store.get(TENANT, "e1").integration_date
        assert marker is not None
        assert marker >= before

    def test_null_marker_requeues(self, store, queue):
        _seed(store, Event(id="e1", updated_at=T1, integration_date=MARK))

        queue.mark_consumed(TENANT, ["e1"], None)

        assert store.get(TENANT, "e1").integration_date is None
        assert queue.count_pending(TENANT) == 1

    def test_unknown_ids_ignored(self, store, queue):
        _seed(store, Event(id="e1", updated_at=T1))

        assert queue.mark_consumed(TENANT, ["e1", "missing", "e1", "  "], MARK) == 1

    def test_empty_ids(self, queue):
        assert queue.mark_consumed(TENANT, []) == 0

    def test_other_tenant_untouched(self, store, queue):
        MergeEngine(store).apply("other", [Event(id="e1", updated_at=T1)])

        assert queue.mark_consumed(TENANT, ["e1"], MARK) == 0
        assert store.get("other", "e1").integration_date is None


class TestMarkTouchesUpdatedAt:
    """Marking re-stamps updated_at so the change propagates."""

    def test_updated_at_restamped(self, store, queue):
        _seed(store, Event(id="e1", updated_at=T1))

        queue.mark_consumed(TENANT, ["e1"], MARK)

        assert store.get(TENANT, "e1").updated_at > T1
        changes = ChangeFeed(store).changes_since(TENANT, T1)
        assert [e.id for e in changes] == ["e1"]

    def test_repeat_mark_counts_again(self, store, queue):
        _seed(store, Event(id="e1", updated_at=T1))

        assert queue.mark_consumed(TENANT, ["e1"], MARK) == 1
        assert queue.mark_consumed(TENANT, ["e1"], MARK) == 1
        assert store.get(TENANT, "e1").integration_date == MARK

    def test_future_updated_at_not_moved_backward(self, store, queue):
        future = datetime(2999, 1, 1, tzinfo=timezone.utc)
        _seed(store, Event(id="e1", updated_at=future))

        queue.mark_consumed(TENANT, ["e1"], MARK)

        assert store.get(TENANT, "e1").updated_at == future


class TestMarkLeavesUpdatedAt:
    """Marking without touching updated_at."""

    def test_updated_at_unchanged(self, store, strict_queue):
        _seed(store, Event(id="e1", updated_at=T1))

        strict_queue.mark_consumed(TENANT, ["e1"], MARK)

        event = store.get(TENANT, "e1")
        assert event.updated_at == T1
        assert event.integration_date == MARK

    def test_repeat_mark_is_noop(self, store, strict_queue):
        _seed(store, Event(id="e1", updated_at=T1))

        assert strict_queue.mark_consumed(TENANT, ["e1"], MARK) == 1
        assert strict_queue.mark_consumed(TENANT, ["e1"], MARK) == 0

    def test_clearing_already_clear_is_noop(self, store, strict_queue):
        _seed(store, Event(id="e1", updated_at=T1))

        assert strict_queue.mark_consumed(TENANT, ["e1"], None) == 0


class TestExportScenario:
    """A pushed row is listed once, then leaves the queue when marked."""

    def test_push_list_mark(self, store, queue):
        SyncService(store).sync(
            TENANT,
            events=[{"id": "e1", "title": "Gym", "updatedAt": "2024-01-01T00:00:00Z"}],
        )

        listed = queue.page(TENANT)
        assert [e.id for e in listed.events] == ["e1"]

        assert queue.mark_consumed(TENANT, ["e1"]) == 1
        assert queue.page(TENANT).events == []

    def test_routine_edit_does_not_requeue(self, store, queue):
        service = SyncService(store)
        service.sync(
            TENANT, events=[{"id": "e1", "updatedAt": "2024-01-01T00:00:00Z"}]
        )
        queue.mark_consumed(TENANT, ["e1"], MARK)

        service.sync(
            TENANT,
            events=[{"id": "e1", "title": "edited", "updatedAt": "2999-01-01T00:00:00Z"}],
        )

        assert store.get(TENANT, "e1").title == "edited"
        assert queue.count_pending(TENANT) == 0
