from __future__ import annotations

import asyncio
import logging
from urllib.parse import unquote

import pytest

from storix_sync.engine import SyncEngine, remote_error
from storix_sync.errors import RemoteLogicError, TransportError, UnknownTableError
from storix_sync.joins import select_joined_products
from storix_sync.pending import PendingStore

SNAPSHOT = {
    "Products": [{"id": "1", "name": "Widget", "updatedAt": "2024-01-01T00:00:00Z"}],
    "Variants": [{"id": "v1", "productId": "1", "name": "Blue"}],
    "Stock": [{"id": "s1", "variantId": "v1", "quantity": 4}],
    "Settings": [{"key": "currency", "value": "EUR"}],
    "__meta__": {"Products": "2024-01-01T00:00:00Z", "Stock": "2024-01-02T00:00:00Z", "Settings": "x"},
    "now": "2024-01-05T00:00:00Z",
}


@pytest.fixture
def engine(store, fake_transport):
    transport = fake_transport({"syncAll": SNAPSHOT})
    return SyncEngine(store, transport)


@pytest.mark.asyncio
async def test_full_sync_replaces_tables_and_records_watermarks(engine, store) -> None:
    store.set_table("Customers", [{"id": "c-old"}])

    result = await engine.sync_all()

    assert result is not None
    assert result.kind == "full"
    assert result.tables == {"Products": 1, "Variants": 1, "Stock": 1}
    assert store.get("Products", "1")["name"] == "Widget"
    assert store.get("Customers", "c-old") == {"id": "c-old"}
    assert not store.has_table("Settings")
    assert engine.watermarks == {"Products": "2024-01-01T00:00:00Z", "Stock": "2024-01-02T00:00:00Z"}
    assert engine.last_sync == "2024-01-05T00:00:00Z"
    assert engine.syncing is False
    assert engine.last_error is None


@pytest.mark.asyncio
async def test_unknown_table_is_warned_once(engine, caplog) -> None:
    with caplog.at_level(logging.WARNING):
        await engine.sync_all()
        await engine.sync_all()
    warnings = [r for r in caplog.records if "unknown table Settings" in r.getMessage()]
    assert len(warnings) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reply, exc",
    [
        (TransportError("offline", reason="network"), TransportError),
        ({"error": "Sheet not found"}, RemoteLogicError),
        ({"Products": []}, RemoteLogicError),
        ({"Products": [{"id": "9"}], "Stock": "nope", "now": "2024-02-01T00:00:00Z"}, RemoteLogicError),
    ],
)
async def test_failed_full_sync_leaves_store_untouched(store, fake_transport, reply, exc) -> None:
    store.set_table("Products", [{"id": "1", "name": "Widget"}])
    before = store.table("Products")
    engine = SyncEngine(store, fake_transport({"syncAll": reply}))

    with pytest.raises(exc):
        await engine.sync_all()

    assert store.table("Products") is before
    assert engine.last_sync is None
    assert engine.syncing is False
    assert engine.last_error


@pytest.mark.asyncio
async def test_delta_sync_requires_a_previous_full_sync(store, fake_transport) -> None:
    transport = fake_transport()
    engine = SyncEngine(store, transport)
    assert await engine.sync_changes() is None
    assert transport.calls == []


@pytest.mark.asyncio
async def test_delta_sync_merges_newer_rows_and_advances_watermark(store, fake_transport) -> None:
    transport = fake_transport(
        {
            "syncAll": {
                "Products": [
                    {"id": "1", "name": "Widget", "updatedAt": "2024-01-01T00:00:00Z"},
                    {"id": "2", "name": "Gadget", "updatedAt": "2024-01-01T00:00:00Z"},
                ],
                "now": "2024-01-05T00:00:00Z",
            },
            "syncChanges": {
                "changes": {
                    "Products": {
                        "fullRefresh": False,
                        "rows": [{"id": "1", "name": "Widget", "updatedAt": "2024-02-01T00:00:00Z"}],
                    }
                },
                "now": "2024-02-02T00:00:00Z",
            },
        }
    )
    engine = SyncEngine(store, transport)
    await engine.sync_all()
    stock_before = store.table("Stock")

    result = await engine.sync_changes()

    assert transport.calls[-1] == {"action": "syncChanges", "since": "2024-01-05T00:00:00Z"}
    assert store.get("Products", "1")["updatedAt"] == "2024-02-01T00:00:00Z"
    assert store.get("Products", "2") is not None
    assert store.table("Stock") is stock_before
    assert engine.last_sync == "2024-02-02T00:00:00Z"
    assert engine.watermarks["Products"] == "2024-02-02T00:00:00Z"
    assert result.tables == {"Products": 1}
    assert result.full_refresh == []


@pytest.mark.asyncio
async def test_delta_full_refresh_drops_missing_rows(store, fake_transport) -> None:
    transport = fake_transport(
        {
            "syncAll": {"Stock": [{"id": "s1"}, {"id": "s2"}], "now": "t1"},
            "syncChanges": {
                "changes": {"Stock": {"fullRefresh": True, "rows": [{"id": "s2", "quantity": 0}]}},
                "now": "t2",
            },
        }
    )
    engine = SyncEngine(store, transport)
    await engine.sync_all()

    result = await engine.sync_changes()

    assert dict(store.table("Stock")) == {"s2": {"id": "s2", "quantity": 0}}
    assert result.full_refresh == ["Stock"]


@pytest.mark.asyncio
async def test_malformed_delta_applies_nothing(store, fake_transport) -> None:
    transport = fake_transport(
        {
            "syncAll": {"Products": [{"id": "1", "name": "Widget"}], "now": "t1"},
            "syncChanges": {
                "changes": {
                    "Products": {"fullRefresh": False, "rows": [{"id": "1", "name": "Changed"}]},
                    "Stock": {"fullRefresh": False, "rows": "broken"},
                },
                "now": "t2",
            },
        }
    )
    engine = SyncEngine(store, transport)
    await engine.sync_all()

    with pytest.raises(RemoteLogicError):
        await engine.sync_changes()

    assert store.get("Products", "1")["name"] == "Widget"
    assert engine.last_sync == "t1"


@pytest.mark.asyncio
async def test_overlapping_sync_is_skipped(store, fake_transport) -> None:
    release = asyncio.Event()

    async def slow_snapshot(params):
        await release.wait()
        return {"Products": [], "now": "t1"}

    transport = fake_transport({"syncAll": slow_snapshot})
    engine = SyncEngine(store, transport)
    first = asyncio.create_task(engine.sync_all())
    await asyncio.sleep(0.01)
    assert engine.syncing is True

    assert await engine.sync_all() is None

    release.set()
    assert (await first).now == "t1"
    assert transport.actions() == ["syncAll"]


@pytest.mark.asyncio
async def test_create_is_visible_before_remote_reply(store, fake_transport) -> None:
    release = asyncio.Event()

    async def slow_create(params):
        await release.wait()
        return {"status": "created"}

    engine = SyncEngine(store, fake_transport({"create": slow_create}))

    mutation = engine.create_item("Products", {"name": "Lamp"})

    record_id = mutation.record_id
    assert record_id
    assert store.get("Products", record_id) == {"id": record_id, "name": "Lamp"}
    assert [view["name"] for view in select_joined_products(store)] == ["Lamp"]
    assert engine.pending.size() == 1

    release.set()
    await engine.wait_for_flush()
    assert engine.pending.size() == 0


@pytest.mark.asyncio
async def test_update_sends_merged_record(store, fake_transport) -> None:
    transport = fake_transport({"update": {"status": "updated"}})
    engine = SyncEngine(store, transport)
    store.set_table("Customers", [{"id": "c1", "name": "Ada", "phone": "123"}])

    engine.update_item("Customers", {"id": "c1", "phone": "456"})
    await engine.wait_for_flush()

    assert store.get("Customers", "c1") == {"id": "c1", "name": "Ada", "phone": "456"}
    [call] = transport.calls
    assert call["sheet"] == "Customers"
    assert call["id"] == "c1"
    assert unquote(call["data"]) == '{"id":"c1","name":"Ada","phone":"456"}'

    with pytest.raises(ValueError):
        engine.update_item("Customers", {"phone": "789"})


@pytest.mark.asyncio
async def test_rejected_delete_stays_queued(store, fake_transport) -> None:
    transport = fake_transport({"delete": {"error": "ID not found"}})
    engine = SyncEngine(store, transport)
    store.set_table("Stock", [{"id": "s1", "quantity": 2}])

    mutation = engine.delete_item("Stock", "s1")
    await engine.wait_for_flush()

    assert store.get("Stock", "s1") is None
    [queued] = engine.pending_mutations()
    assert queued.mutation_id == mutation.mutation_id
    assert queued.attempts == 1
    assert queued.last_error == "ID not found"

    result = await engine.process_pending()
    assert (result.sent, result.failed, result.remaining) == (0, 1, 1)
    assert engine.pending_mutations()[0].attempts == 2

    assert engine.discard_pending(mutation.mutation_id) is True
    assert engine.pending.size() == 0


@pytest.mark.asyncio
async def test_write_triggered_flush_leaves_rejected_mutations_for_the_tick(store, fake_transport) -> None:
    transport = fake_transport(
        {
            "delete": {"error": "ID not found"},
            "create": {"status": "created"},
            "update": {"status": "updated"},
        }
    )
    engine = SyncEngine(store, transport)
    store.set_table("Stock", [{"id": "s1", "quantity": 2}])

    engine.delete_item("Stock", "s1")
    await engine.wait_for_flush()
    assert transport.actions() == ["delete"]

    engine.create_item("Stock", {"id": "s1", "quantity": 9})
    engine.create_item("Orders", {"id": "o1"})
    await engine.wait_for_flush()

    assert transport.actions() == ["delete", "create"]
    assert transport.calls[-1]["sheet"] == "Orders"
    assert [(m.action, m.record_id) for m in engine.pending_mutations()] == [("delete", "s1"), ("create", "s1")]

    result = await engine.process_pending()
    assert (result.sent, result.failed, result.remaining) == (1, 1, 1)
    assert transport.actions()[-2:] == ["delete", "create"]


@pytest.mark.asyncio
async def test_flush_continues_past_remote_errors_and_stops_on_transport_errors(store, fake_transport) -> None:
    engine = SyncEngine(store, None)
    engine.create_item("Orders", {"id": "o1"})
    engine.delete_item("Orders", "o0")
    engine.create_item("Orders", {"id": "o2"})
    assert engine.pending.size() == 3

    engine.transport = fake_transport(
        {"create": [TransportError("offline", reason="network"), {"status": "created"}], "delete": {"error": "ID not found"}}
    )
    interrupted = await engine.process_pending()
    assert (interrupted.sent, interrupted.failed, interrupted.remaining) == (0, 1, 3)
    assert engine.transport.actions() == ["create"]

    retried = await engine.process_pending()
    assert (retried.sent, retried.failed, retried.remaining) == (2, 1, 1)
    assert engine.transport.actions() == ["create", "create", "delete", "create"]
    assert [m.record_id for m in engine.pending_mutations()] == ["o0"]


@pytest.mark.asyncio
async def test_unconfigured_engine_applies_locally_and_queues(store) -> None:
    engine = SyncEngine(store, None, PendingStore())

    assert await engine.sync_all() is None
    assert await engine.sync_settings() is None
    engine.create_item("Suppliers", {"id": "sp1", "name": "Acme"})

    assert store.get("Suppliers", "sp1") == {"id": "sp1", "name": "Acme"}
    assert (await engine.process_pending()).remaining == 1
    assert engine._background == set()


def test_writes_without_running_loop_only_queue(store, fake_transport) -> None:
    engine = SyncEngine(store, fake_transport())
    engine.create_item("Sales", {"id": "sa1"})
    assert engine.pending.size() == 1
    assert engine._background == set()


def test_unknown_table_is_rejected(store, fake_transport) -> None:
    engine = SyncEngine(store, fake_transport())
    with pytest.raises(UnknownTableError):
        engine.create_item("Invoices", {"id": "i1"})
    assert engine.pending.size() == 0


@pytest.mark.asyncio
async def test_sync_settings(store, fake_transport) -> None:
    transport = fake_transport(
        {"getSettings": {"now": "t", "settings": {"currency": {"value": "EUR", "updatedAt": "t0"}, "tax": 21}}}
    )
    engine = SyncEngine(store, transport)

    settings = await engine.sync_settings()

    assert settings == {"currency": {"value": "EUR", "updatedAt": "t0"}, "tax": {"value": 21}}
    transport.routes["getSettings"] = {"now": "t"}
    with pytest.raises(RemoteLogicError):
        await engine.sync_settings()


@pytest.mark.asyncio
async def test_fetch_upserts_rows(store, fake_transport) -> None:
    transport = fake_transport({"get": [[{"id": "v2", "productId": "1"}], {"id": "v3"}, {"error": "Sheet not found"}]})
    engine = SyncEngine(store, transport)
    store.set_table("Variants", [{"id": "v1"}])

    rows = await engine.fetch("Variants", productId="1")
    assert rows == [{"id": "v2", "productId": "1"}]
    assert transport.calls[0] == {"sheet": "Variants", "action": "get", "productId": "1"}
    assert set(store.table("Variants")) == {"v1", "v2"}

    await engine.fetch("Variants", "v3")
    assert transport.calls[1]["id"] == "v3"
    assert store.get("Variants", "v3") == {"id": "v3"}

    with pytest.raises(RemoteLogicError):
        await engine.fetch("Variants")


def test_remote_error_helper() -> None:
    assert remote_error({"error": "boom"}) == "boom"
    assert remote_error({"error": ""}) is None
    assert remote_error([{"error": "x"}]) is None
    assert remote_error(None) is None
