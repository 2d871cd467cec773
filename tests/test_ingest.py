import asyncio
import contextlib

import pytest

from calibration_store import CalibrationStore
from conftest import T0, FakeActuator, MemoryPersistence, point
from ingest import IngestionPipeline, SessionState

pytestmark = pytest.mark.asyncio


def make_pipeline(store=None, actuator=None, collect=None, debounce_s=0.3):
    return IngestionPipeline(
        store if store is not None else CalibrationStore(),
        actuator or FakeActuator(),
        broadcast_fn=collect,
        debounce_s=debounce_s,
        clock=lambda: T0,
    )


async def lines_from(items, fail_with=None):
    for item in items:
        yield item
    if fail_with is not None:
        raise fail_with


def of_type(events, kind):
    return [e for e in events if e["type"] == kind]


# ─── sensor flow ──────────────────────────────────────────────────────────────

async def test_reading_drives_analytic_forward_curve(actuator, collect, events):
    pipeline = make_pipeline(actuator=actuator, collect=collect)
    assert await pipeline.handle_line("LUX:1000") == 35
    assert actuator.calls == [35]
    assert pipeline.current_lux == 1000
    assert pipeline.manual_brightness == 35
    decision = of_type(events, "decision")[0]
    assert decision["source"] == "sensor"
    assert decision["applied"] is True


async def test_reading_uses_calibration(actuator):
    store = CalibrationStore()
    store.insert_many([point(100, 20), point(500, 60)])
    pipeline = make_pipeline(store=store, actuator=actuator)
    assert await pipeline.handle_line("LUX:300") == 40


async def test_malformed_line_is_dropped(actuator, collect, events):
    pipeline = make_pipeline(actuator=actuator, collect=collect)
    await pipeline.handle_line("LUX:200")
    assert await pipeline.handle_line("garbage") is None
    assert actuator.calls == [brightness_at(200)]
    assert pipeline.current_lux == 200
    assert of_type(events, "diagnostic")[0]["kind"] == "malformed_reading"


def brightness_at(lux):
    from brightness_curves import forward_curve
    return forward_curve(lux)


async def test_actuation_failure_is_reported_and_not_learned(collect, events):
    store = CalibrationStore()
    pipeline = make_pipeline(store=store, actuator=FakeActuator(fail=True), collect=collect)
    await pipeline.handle_line("LUX:400")
    assert of_type(events, "decision")[0]["applied"] is False
    assert "actuation_failure" in [e["kind"] for e in of_type(events, "diagnostic")]
    assert len(store) == 0
    assert pipeline.current_brightness is None


async def test_actuator_exception_counts_as_failure(collect, events):
    class Exploding(FakeActuator):
        def set(self, percentage):
            raise RuntimeError("no backlight")

    pipeline = make_pipeline(actuator=Exploding(), collect=collect)
    await pipeline.handle_line("LUX:400")
    assert of_type(events, "decision")[0]["applied"] is False


async def test_session_survives_bad_lines(actuator, collect, events):
    pipeline = make_pipeline(actuator=actuator, collect=collect)
    await pipeline.run(lines_from(["LUX:100", "???", "LUX:200"]))
    assert len(actuator.calls) == 2
    assert pipeline.state is SessionState.DISCONNECTED
    sessions = of_type(events, "session")
    assert [s["state"] for s in sessions] == ["connected", "disconnected"]
    assert sessions[-1]["reason"] == "source_closed"


async def test_stream_failure_becomes_disconnect(actuator, collect, events):
    pipeline = make_pipeline(actuator=actuator, collect=collect)
    await pipeline.run(lines_from(["LUX:100"], fail_with=OSError("device unplugged")))
    assert pipeline.state is SessionState.DISCONNECTED
    assert of_type(events, "diagnostic")[0]["kind"] == "sensor_failure"
    assert of_type(events, "session")[-1]["reason"] == "sensor_failure"


# ─── manual flow ──────────────────────────────────────────────────────────────

async def test_manual_adjustments_are_debounced_and_learned(actuator):
    backend = MemoryPersistence()
    store = CalibrationStore(backend)
    pipeline = make_pipeline(store=store, actuator=actuator)
    await pipeline.handle_line("LUX:300")
    actuator.calls.clear()

    pipeline.set_manual_brightness(40)
    await asyncio.sleep(0.03)
    pipeline.set_manual_brightness(55)
    await asyncio.sleep(0.03)
    pipeline.set_manual_brightness(60)
    await asyncio.sleep(0.45)

    assert actuator.calls == [60]
    assert backend.saves == 1
    assert [(p.lux, p.brightness, p.recorded_at) for p in store.all()] == [(300, 60, T0)]


async def test_manual_without_reading_applies_but_does_not_learn(actuator, collect, events):
    store = CalibrationStore()
    pipeline = make_pipeline(store=store, actuator=actuator, collect=collect, debounce_s=0.01)
    pipeline.set_manual_brightness(70)
    await asyncio.sleep(0.1)
    assert actuator.calls == [70]
    assert len(store) == 0
    assert of_type(events, "diagnostic")[0]["kind"] == "no_light_sample"


async def test_manual_learns_even_when_actuation_fails():
    store = CalibrationStore()
    actuator = FakeActuator()
    pipeline = make_pipeline(store=store, actuator=actuator, debounce_s=0.01)
    await pipeline.handle_line("LUX:250")
    actuator.fail = True
    pipeline.set_manual_brightness(33)
    await asyncio.sleep(0.1)
    assert [(p.lux, p.brightness) for p in store.all()] == [(250, 33)]


async def test_manual_value_is_clamped(actuator):
    pipeline = make_pipeline(actuator=actuator, debounce_s=0.01)
    pipeline.set_manual_brightness(140.4)
    await asyncio.sleep(0.1)
    assert actuator.calls == [100]


async def test_disconnect_cancels_pending_adjustment(actuator):
    store = CalibrationStore()
    pipeline = make_pipeline(store=store, actuator=actuator)
    hold = asyncio.Event()

    async def source():
        yield "LUX:300"
        await hold.wait()

    task = asyncio.create_task(pipeline.run(source()))
    await asyncio.sleep(0.02)
    assert pipeline.state is SessionState.RECEIVING

    pipeline.set_manual_brightness(80)
    await pipeline.disconnect()
    await asyncio.sleep(0.45)

    assert actuator.calls == [brightness_at(300)]
    assert len(store) == 0
    assert pipeline.state is SessionState.DISCONNECTED

    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


async def test_fired_adjustment_is_learned_even_if_disconnected_mid_broadcast(actuator):
    store = CalibrationStore()
    release = asyncio.Event()

    async def slow_broadcast(payload):
        if payload["type"] == "decision" and payload["source"] == "manual":
            await release.wait()

    pipeline = make_pipeline(store=store, actuator=actuator, collect=slow_broadcast, debounce_s=0.01)
    await pipeline.handle_line("LUX:300")
    actuator.calls.clear()

    pipeline.set_manual_brightness(60)
    await asyncio.sleep(0.05)
    await pipeline.disconnect()
    release.set()
    await asyncio.sleep(0.02)

    assert actuator.calls == [60]
    assert [(p.lux, p.brightness) for p in store.all()] == [(300, 60)]


async def test_new_move_does_not_cancel_a_fired_adjustment(actuator):
    store = CalibrationStore()
    release = asyncio.Event()

    async def slow_broadcast(payload):
        if payload["type"] == "decision" and payload["source"] == "manual" and payload["brightness"] == 40:
            await release.wait()

    pipeline = make_pipeline(store=store, actuator=actuator, collect=slow_broadcast, debounce_s=0.01)
    await pipeline.handle_line("LUX:300")
    actuator.calls.clear()

    pipeline.set_manual_brightness(40)
    await asyncio.sleep(0.05)
    pipeline.set_manual_brightness(45)
    release.set()
    await asyncio.sleep(0.1)

    assert actuator.calls == [40, 45]
    assert [(p.lux, p.brightness) for p in store.all()] == [(300, 45)]


# ─── calibration requests ─────────────────────────────────────────────────────

async def test_optimize_calibration_adaptive(collect, events):
    store = CalibrationStore()
    store.insert_many([point(0, 10), point(20, 25), point(40, 12), point(60, 14)])
    pipeline = make_pipeline(store=store, collect=collect)
    assert await pipeline.optimize_calibration() == 4
    assert [p.brightness for p in store.all()] == [10, 16, 17, 14]
    assert of_type(events, "calibration")[0]["action"] == "optimized"


async def test_optimize_calibration_prune():
    store = CalibrationStore()
    store.insert_many([point(0, 10), point(100, 20), point(200, 30), point(300, 40), point(400, 50)])
    pipeline = make_pipeline(store=store)
    assert await pipeline.optimize_calibration("prune") == 2


async def test_optimize_needs_more_than_three_points():
    backend = MemoryPersistence()
    store = CalibrationStore(backend)
    store.insert_many([point(0, 10), point(20, 40), point(40, 12)])
    pipeline = make_pipeline(store=store)
    assert await pipeline.optimize_calibration() == 3
    assert backend.saves == 1


async def test_optimize_unknown_method():
    store = CalibrationStore()
    store.insert_many([point(i * 50, 10 + i) for i in range(5)])
    with pytest.raises(ValueError):
        await make_pipeline(store=store).optimize_calibration("magic")


async def test_clear_calibration(collect, events):
    store = CalibrationStore()
    store.insert(point(100, 20))
    pipeline = make_pipeline(store=store, collect=collect)
    await pipeline.clear_calibration()
    assert len(store) == 0
    assert events[-1] == {"type": "calibration", "action": "cleared", "count": 0}


async def test_seed_from_actuator():
    pipeline = make_pipeline(actuator=FakeActuator(current=72))
    assert pipeline.seed_from_actuator() == 72
    assert pipeline.status()["manual_brightness"] == 72
    assert pipeline.status()["state"] == "idle"
