"""Alert lifecycle engine: creation, dedup, tick evaluation and the completed transition."""

import asyncio

import httpx
import pytest

from polyalert.alerts.engine import AlertEngine
from polyalert.errors import DuplicateAlert, InvalidAlert, PriceFetchFailure, StoreFailure, UnknownMarket
from polyalert.models import Alert
from polyalert.storage.alerts import InMemoryAlertStore


async def _create(engine, market_id="M1", outcome_index=0, threshold=0.30, direction="below", recipient=None):
    return await engine.create_alert(market_id, outcome_index, threshold, direction, recipient=recipient)


# --- creation ---


@pytest.mark.asyncio
async def test_create_persists_and_adds_to_working_set(engine, store):
    alert = await _create(engine, recipient="alice")
    assert alert.status == "active"
    assert alert.recipient == "alice"
    assert [a.id for a in engine.active_alerts()] == [alert.id]
    assert [a.id for a in store.list("active")] == [alert.id]


@pytest.mark.asyncio
async def test_create_rejects_invalid_payload(engine, store):
    with pytest.raises(InvalidAlert):
        await _create(engine, threshold=1.0)
    with pytest.raises(InvalidAlert):
        await _create(engine, direction="sideways")
    with pytest.raises(InvalidAlert):
        await _create(engine, outcome_index=-1)
    assert store.list("active") == []


@pytest.mark.asyncio
async def test_create_rejects_unknown_market(engine):
    with pytest.raises(UnknownMarket):
        await _create(engine, market_id="NOPE")


@pytest.mark.asyncio
async def test_create_twice_is_duplicate(engine):
    first = await _create(engine)
    with pytest.raises(DuplicateAlert) as exc:
        await _create(engine)
    assert exc.value.existing_id == first.id


@pytest.mark.asyncio
async def test_different_direction_is_not_duplicate(engine):
    await _create(engine, direction="below")
    await _create(engine, direction="above")
    assert len(engine.active_alerts()) == 2


@pytest.mark.asyncio
async def test_concurrent_creation_yields_exactly_one(engine, store):
    results = await asyncio.gather(*(_create(engine) for _ in range(10)), return_exceptions=True)
    created = [r for r in results if isinstance(r, Alert)]
    duplicates = [r for r in results if isinstance(r, DuplicateAlert)]
    assert len(created) == 1
    assert len(duplicates) == 9
    assert len(store.list("active")) == 1


@pytest.mark.asyncio
async def test_duplicate_suppression_ignores_completed_history(engine, source):
    source.prices[("M1", 0)] = 0.10
    await _create(engine)
    await engine.tick()
    assert engine.active_alerts() == []
    again = await _create(engine)
    assert again.status == "active"


@pytest.mark.asyncio
async def test_create_from_payload_accepts_wire_names(engine):
    alert = await engine.create_from_payload(
        {"marketId": "M2", "outcomeIndex": 1, "threshold": 0.75, "direction": "above", "recipient": "tg:42"}
    )
    assert (alert.market_id, alert.outcome_index, alert.threshold, alert.direction) == ("M2", 1, 0.75, "above")


@pytest.mark.asyncio
async def test_store_failure_on_create_is_surfaced(engine, store):
    store.fail_upsert_status = "active"
    with pytest.raises(StoreFailure):
        await _create(engine)
    assert engine.active_alerts() == []


# --- hit evaluation ---


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "direction,price,expected",
    [
        ("below", 0.30, True),
        ("below", 0.31, False),
        ("below", 0.05, True),
        ("above", 0.30, True),
        ("above", 0.29, False),
        ("above", 0.95, True),
    ],
)
async def test_tick_hit_is_inclusive_at_threshold(engine, source, direction, price, expected):
    source.prices[("M1", 0)] = price
    alert = await _create(engine, direction=direction)
    result = await engine.tick()
    assert result.checked == 1
    assert (alert.id in result.triggered_ids) is expected
    assert (engine.get_active(alert.id) is None) is expected


@pytest.mark.asyncio
async def test_trigger_moves_alert_to_completed_only(engine, store, source, dispatcher):
    source.prices[("M1", 0)] = 0.25
    alert = await _create(engine, recipient="alice")
    await engine.tick()

    assert store.list("active") == []
    completed = store.list("completed")
    assert [a.id for a in completed] == [alert.id]
    assert completed[0].completed_price == 0.25
    assert completed[0].completed_at is not None
    assert engine.active_alerts() == []

    assert len(dispatcher.events) == 1
    event = dispatcher.events[0]
    assert (event.alert_id, event.market_id, event.outcome_index, event.price) == (alert.id, "M1", 0, 0.25)
    assert event.recipient == "alice"
    assert event.question == "Will X happen?"


@pytest.mark.asyncio
async def test_completed_is_written_before_active_is_deleted(engine, store, source):
    source.prices[("M1", 0)] = 0.1
    alert = await _create(engine)
    store.calls.clear()
    await engine.tick()
    assert store.calls == [("upsert", "completed", alert.id), ("delete", "active", alert.id)]


@pytest.mark.asyncio
async def test_triggered_alert_does_not_fire_twice(engine, source, dispatcher):
    source.prices[("M1", 0)] = 0.1
    await _create(engine)
    await engine.tick()
    second = await engine.tick()
    assert second.checked == 0
    assert len(dispatcher.events) == 1


# --- failure isolation ---


@pytest.mark.asyncio
async def test_price_failure_does_not_block_other_alerts(engine, source):
    source.prices[("M1", 0)] = PriceFetchFailure("gamma 500")
    source.prices[("M2", 0)] = 0.9
    broken = await _create(engine, market_id="M1")
    healthy = await _create(engine, market_id="M2", threshold=0.8, direction="above")
    result = await engine.tick()
    assert result.failed == 1
    assert result.triggered_ids == [healthy.id]
    assert engine.get_active(broken.id) is not None


@pytest.mark.asyncio
async def test_unexpected_error_is_isolated(engine, source):
    source.prices[("M1", 0)] = httpx.ReadError("reset")
    source.prices[("M2", 0)] = 0.2
    await _create(engine, market_id="M1")
    ok = await _create(engine, market_id="M2")
    result = await engine.tick()
    assert result.failed == 1
    assert result.triggered_ids == [ok.id]


@pytest.mark.asyncio
async def test_out_of_range_outcome_is_skipped_for_the_tick(engine, source):
    source.prices[("M1", 0)] = 0.1
    alert = await _create(engine, outcome_index=5)
    result = await engine.tick()
    assert result.failed == 1
    assert engine.get_active(alert.id) is not None


@pytest.mark.asyncio
async def test_fetch_timeout_counts_as_failure(store, cache, source, dispatcher):
    engine = AlertEngine(store, cache, source, dispatcher=dispatcher, fetch_timeout_sec=0.05)
    engine.load()
    source.prices[("M1", 0)] = 0.1
    source.delays["M1"] = 1.0
    alert = await _create(engine)
    result = await engine.tick()
    assert result.failed == 1
    assert engine.get_active(alert.id) is not None
    assert dispatcher.events == []


@pytest.mark.asyncio
async def test_delisted_market_is_skipped_not_failed(engine, cache, source):
    source.prices[("M1", 0)] = 0.1
    alert = await _create(engine)
    cache.seed([])
    result = await engine.tick()
    assert result.skipped == 1
    assert result.failed == 0
    assert source.price_calls == []
    assert engine.get_active(alert.id) is not None
    assert engine.valid_active_alerts() == []


@pytest.mark.asyncio
async def test_completed_write_failure_leaves_alert_active(engine, store, source, dispatcher):
    source.prices[("M1", 0)] = 0.1
    alert = await _create(engine)
    store.fail_upsert_status = "completed"
    result = await engine.tick()
    assert result.failed == 1
    assert engine.get_active(alert.id) is not None
    assert store.list("completed") == []
    assert dispatcher.events == []

    store.fail_upsert_status = None
    result = await engine.tick()
    assert result.triggered_ids == [alert.id]


@pytest.mark.asyncio
async def test_active_delete_failure_still_completes_once(engine, store, source, dispatcher):
    source.prices[("M1", 0)] = 0.1
    alert = await _create(engine)
    store.fail_delete = True
    result = await engine.tick()
    assert result.triggered_ids == [alert.id]
    assert result.failed == 0
    # completed is durable, active copy still present: duplicated, not lost
    assert [a.id for a in store.list("completed")] == [alert.id]
    assert [a.id for a in store.list("active")] == [alert.id]
    assert len(dispatcher.events) == 1
    # already completed, so no longer reported as active
    assert engine.active_alerts() == []
    assert engine.valid_active_alerts() == []
    assert engine.get_active(alert.id) is None

    store.fail_delete = False
    source.price_calls.clear()
    result = await engine.tick()
    assert source.price_calls == []
    assert result.triggered == 0
    assert store.list("active") == []
    assert len(dispatcher.events) == 1


@pytest.mark.asyncio
async def test_pending_delete_does_not_block_recreation(engine, store, source):
    source.prices[("M1", 0)] = 0.1
    await _create(engine)
    store.fail_delete = True
    await engine.tick()
    source.prices[("M1", 0)] = 0.5
    again = await _create(engine)
    assert [a.id for a in engine.active_alerts()] == [again.id]


@pytest.mark.asyncio
async def test_dispatch_failure_keeps_transition(store, cache, source, failing_dispatcher):
    engine = AlertEngine(store, cache, source, dispatcher=failing_dispatcher)
    engine.load()
    source.prices[("M1", 0)] = 0.1
    alert = await _create(engine)
    result = await engine.tick()
    assert result.triggered_ids == [alert.id]
    assert [a.id for a in store.list("completed")] == [alert.id]
    assert store.list("active") == []


# --- single flight ---


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(engine, source, dispatcher):
    source.prices[("M1", 0)] = 0.1
    source.delays["M1"] = 0.1
    await _create(engine)
    first, second = await asyncio.gather(engine.tick(), engine.tick())
    results = [r for r in (first, second) if r is not None]
    assert len(results) == 1
    assert results[0].triggered == 1
    assert len(dispatcher.events) == 1


# --- recovery ---


@pytest.mark.asyncio
async def test_load_converges_half_applied_transition(store, cache, source, dispatcher):
    alert = Alert(id="a1", market_id="M1", outcome_index=0, threshold=0.3, direction="below")
    other = Alert(id="a2", market_id="M2", outcome_index=1, threshold=0.6, direction="above")
    store.upsert(alert)
    store.upsert(other)
    store.upsert(alert.complete(0.29))

    engine = AlertEngine(store, cache, source, dispatcher=dispatcher)
    assert engine.load() == 1
    assert [a.id for a in engine.active_alerts()] == ["a2"]
    assert [a.id for a in store.list("active")] == ["a2"]
    assert [a.id for a in store.list("completed")] == ["a1"]


@pytest.mark.asyncio
async def test_tick_loads_lazily_and_survives_store_outage(store, cache, source, dispatcher):
    store.upsert(Alert(id="a1", market_id="M1", outcome_index=0, threshold=0.3, direction="below"))
    source.prices[("M1", 0)] = 0.2
    engine = AlertEngine(store, cache, source, dispatcher=dispatcher)

    store.fail_list = True
    result = await engine.tick()
    assert result.checked == 0
    assert not engine.loaded

    store.fail_list = False
    result = await engine.tick()
    assert result.triggered_ids == ["a1"]


@pytest.mark.asyncio
async def test_run_stops_after_current_tick(engine, source):
    source.prices[("M1", 0)] = 0.9
    await _create(engine)
    engine.poll_interval_sec = 0.01
    stop = asyncio.Event()
    task = asyncio.create_task(engine.run(stop_event=stop))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(task, timeout=1.0)
    assert len(source.price_calls) >= 1


@pytest.mark.asyncio
async def test_run_survives_unexpected_tick_error(store, cache, source, dispatcher):
    store.upsert(Alert(id="a1", market_id="M1", outcome_index=0, threshold=0.3, direction="below"))
    source.prices[("M1", 0)] = 0.2
    engine = AlertEngine(store, cache, source, dispatcher=dispatcher, poll_interval_sec=0.01)
    original_list = store.list
    calls = {"n": 0}

    def list_once_broken(status):
        calls["n"] += 1
        if calls["n"] == 1:
            raise PermissionError("mkdir data/: permission denied")
        return original_list(status)

    store.list = list_once_broken
    stop = asyncio.Event()
    task = asyncio.create_task(engine.run(stop_event=stop))
    for _ in range(100):
        if dispatcher.events:
            break
        await asyncio.sleep(0.01)
    stop.set()
    await asyncio.wait_for(task, timeout=1.0)
    assert [e.alert_id for e in dispatcher.events] == ["a1"]


# --- lock bookkeeping ---


@pytest.mark.asyncio
async def test_creation_and_transition_locks_are_released(engine, source):
    for i in range(20):
        await _create(engine, threshold=0.5 + i / 100, direction="below")
    with pytest.raises(DuplicateAlert):
        await _create(engine, threshold=0.5, direction="below")
    assert engine._key_locks == {}

    source.prices[("M1", 0)] = 0.1
    result = await engine.tick()
    assert result.triggered == 20
    assert engine._id_locks == {}


@pytest.mark.asyncio
async def test_concurrent_creators_share_one_lock_until_done(engine):
    await asyncio.gather(*(_create(engine) for _ in range(5)), return_exceptions=True)
    assert engine._key_locks == {}
    assert len(engine.active_alerts()) == 1


@pytest.mark.asyncio
async def test_generated_id_is_validated(store, cache, source):
    engine = AlertEngine(store, cache, source, id_factory=lambda: "")
    engine.load()
    with pytest.raises(InvalidAlert):
        await _create(engine)
    assert store.list("active") == []


@pytest.mark.asyncio
async def test_engine_runs_on_in_memory_store(cache, source, dispatcher):
    store = InMemoryAlertStore()
    engine = AlertEngine(store, cache, source, dispatcher=dispatcher)
    engine.load()
    source.prices[("M2", 1)] = 0.8
    alert = await _create(engine, market_id="M2", outcome_index=1, threshold=0.75, direction="above")
    result = await engine.tick()
    assert result.triggered_ids == [alert.id]
    assert store.list("active") == []
    assert [a.completed_price for a in store.list("completed")] == [0.8]
