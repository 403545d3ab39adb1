import math
import threading
from datetime import timedelta

import pytest

from food_radar.geo import EARTH_RADIUS_M
from food_radar.geofence import GeofenceEngine, ProximityMonitor, listing_region_id
from food_radar.schema import EventType, Listing, LocationSample, Provider, Region

from conftest import NOW


def _sample(lat: float, lon: float, north_m: float = 0.0) -> LocationSample:
    return LocationSample(
        latitude=lat + math.degrees(north_m / EARTH_RADIUS_M),
        longitude=lon,
        timestamp=NOW,
    )


def _region(**overrides) -> Region:
    defaults = dict(
        id="r1",
        center=(37.0, -122.0),
        radius_m=200,
        title="Bakery pickup",
        notify_on_entry=True,
        notify_on_exit=True,
    )
    defaults.update(overrides)
    return Region(**defaults)


def _make_listing(**overrides) -> Listing:
    defaults = dict(
        id="l1",
        title="Bread",
        category="bakery",
        availability="high",
        coordinates={"latitude": 37.0, "longitude": -122.0},
        provider=Provider(id="p", name="Bakery"),
        created_at=NOW,
        expires_at=NOW + timedelta(hours=5),
        seconds_left=5 * 3600,
        distance_label="650m",
    )
    defaults.update(overrides)
    return Listing(**defaults)


def _engine(**kwargs) -> GeofenceEngine:
    return GeofenceEngine(clock=lambda: NOW, **kwargs)


def test_enter_then_exit_without_duplicates():
    engine = _engine()
    engine.add_region(_region())

    samples = [
        _sample(37.0, -122.0, 500),
        _sample(37.0, -122.0, 50),
        _sample(37.0, -122.0, 10),
        _sample(37.0, -122.0, 600),
    ]
    results = [engine.check_proximity(s) for s in samples]

    assert [len(r) for r in results] == [0, 1, 0, 1]
    assert results[1][0].type is EventType.ENTER
    assert results[3][0].type is EventType.EXIT
    assert [e.type for e in engine.events] == [EventType.ENTER, EventType.EXIT]
    assert engine.last_event == results[3][0]


def test_entry_only_region_sequence():
    engine = _engine()
    engine.add_region(_region(notify_on_exit=False))

    events = [engine.check_proximity(_sample(37.0, -122.0, d)) for d in (500, 150, 80)]

    assert events[0] == []
    assert [e.type for e in events[1]] == [EventType.ENTER]
    assert events[2] == []


def test_exit_suppressed_when_not_requested():
    engine = _engine()
    engine.add_region(_region(notify_on_exit=False))
    engine.check_proximity(_sample(37.0, -122.0, 0))
    assert engine.check_proximity(_sample(37.0, -122.0, 1000)) == []
    assert engine.active_regions == []


def test_silent_region_still_tracked():
    engine = _engine()
    engine.add_region(_region(notify_on_entry=False, notify_on_exit=False))

    assert engine.check_proximity(_sample(37.0, -122.0, 0)) == []
    assert engine.active_region_ids == frozenset({"r1"})
    assert engine.check_proximity(_sample(37.0, -122.0, 900)) == []
    assert engine.active_region_ids == frozenset()


def test_registration_alone_emits_nothing():
    engine = _engine()
    engine.check_proximity(_sample(37.0, -122.0, 0))
    engine.add_region(_region())
    assert engine.events == []
    assert engine.active_regions == []

    events = engine.check_proximity(_sample(37.0, -122.0, 0))
    assert [e.type for e in events] == [EventType.ENTER]


def test_remove_region_clears_active_state():
    engine = _engine()
    engine.add_region(_region())
    engine.check_proximity(_sample(37.0, -122.0, 0))
    assert engine.remove_region("r1") is True
    assert engine.active_region_ids == frozenset()
    assert engine.remove_region("r1") is False

    engine.add_region(_region())
    events = engine.check_proximity(_sample(37.0, -122.0, 0))
    assert [e.type for e in events] == [EventType.ENTER]


def test_replacing_region_keeps_active_state():
    engine = _engine()
    engine.add_region(_region())
    engine.check_proximity(_sample(37.0, -122.0, 0))
    engine.add_region(_region(radius_m=300, title="Bigger"))
    assert engine.check_proximity(_sample(37.0, -122.0, 0)) == []
    assert [r.title for r in engine.regions] == ["Bigger"]


def test_clear_regions():
    engine = _engine()
    engine.add_region(_region())
    engine.add_region(_region(id="r2"))
    engine.check_proximity(_sample(37.0, -122.0, 0))
    engine.clear_regions()
    assert engine.regions == []
    assert engine.active_regions == []
    assert engine.check_proximity(_sample(37.0, -122.0, 900)) == []


def test_history_is_bounded_fifo():
    engine = _engine(history_size=3)
    engine.add_region(_region())
    for _ in range(3):
        engine.check_proximity(_sample(37.0, -122.0, 0))
        engine.check_proximity(_sample(37.0, -122.0, 900))

    events = engine.events
    assert len(events) == 3
    assert [e.type for e in events] == [EventType.EXIT, EventType.ENTER, EventType.EXIT]
    assert engine.last_event == events[-1]


def test_event_carries_snapshot_and_id():
    engine = _engine()
    region = _region()
    engine.add_region(region)
    sample = _sample(37.0, -122.0, 0)
    (event,) = engine.check_proximity(sample)

    assert event.region == region
    assert event.region_id == "r1"
    assert event.location == sample
    assert event.timestamp == NOW
    assert event.id == f"r1-{int(NOW.timestamp() * 1000)}-1"


def test_event_ids_unique_within_same_instant():
    engine = _engine()
    engine.add_region(_region())
    (enter,) = engine.check_proximity(_sample(37.0, -122.0, 0))
    (exit_,) = engine.check_proximity(_sample(37.0, -122.0, 900))

    assert enter.timestamp == exit_.timestamp
    assert enter.id != exit_.id


def test_nearby_regions_sorted_by_distance():
    engine = _engine(proximity_threshold_m=1000)
    engine.add_region(_region(id="far", center=(37.0 + math.degrees(800 / EARTH_RADIUS_M), -122.0)))
    engine.add_region(_region(id="near", center=(37.0 + math.degrees(100 / EARTH_RADIUS_M), -122.0)))
    engine.add_region(_region(id="out", center=(37.1, -122.0)))
    engine.add_region(_region(id="twin-a", center=(37.0 + math.degrees(400 / EARTH_RADIUS_M), -122.0)))
    engine.add_region(_region(id="twin-b", center=(37.0 + math.degrees(400 / EARTH_RADIUS_M), -122.0)))

    here = _sample(37.0, -122.0)
    assert [r.id for r in engine.get_nearby_regions(here)] == ["near", "twin-a", "twin-b", "far"]
    assert [r.id for r in engine.get_nearby_regions(here, max_distance_m=200)] == ["near"]


def test_listing_regions_follow_listing_set():
    engine = _engine()
    engine.add_region(_region(id="home"))
    a = _make_listing(id="a")
    b = _make_listing(id="b", coordinates={"latitude": 37.01, "longitude": -122.0})

    assert engine.sync_listing_regions([a, b], radius_m=150) == (2, 0)
    region = next(r for r in engine.regions if r.id == listing_region_id("a"))
    assert region.id == "food-a"
    assert region.listing_id == "a"
    assert region.radius_m == 150
    assert region.notify_on_entry and not region.notify_on_exit

    assert engine.sync_listing_regions([b], radius_m=150) == (0, 1)
    assert sorted(r.id for r in engine.regions) == ["food-b", "home"]


def test_add_and_remove_listing_region():
    engine = _engine()
    engine.add_listing_region(_make_listing(id="x"))
    assert [r.id for r in engine.regions] == ["food-x"]
    assert engine.remove_listing_region("x") is True
    assert engine.regions == []


def test_monitor_checks_on_update_and_reports():
    engine = _engine()
    engine.add_region(_region())
    seen = []
    monitor = ProximityMonitor(engine, interval_s=0, on_events=seen.append)

    monitor.update_location(_sample(37.0, -122.0, 900))
    events = monitor.update_location(_sample(37.0, -122.0, 0))

    assert [e.type for e in events] == [EventType.ENTER]
    assert seen == [events]
    monitor.stop()
    assert not monitor.running


def test_monitor_timer_rechecks_last_sample():
    engine = _engine()
    fired = threading.Event()
    monitor = ProximityMonitor(engine, interval_s=0.05, on_events=lambda events: fired.set())

    monitor.update_location(_sample(37.0, -122.0, 0))
    # region registered after the sample; only the timer can notice it
    engine.add_region(_region())
    try:
        assert fired.wait(timeout=5)
    finally:
        monitor.stop()
    assert [e.type for e in engine.events] == [EventType.ENTER]


class _FakeTimer:
    created = []

    def __init__(self, interval, fn):
        self.interval = interval
        self.fn = fn
        self.cancelled = False
        self.daemon = False
        _FakeTimer.created.append(self)

    def start(self):
        pass

    def cancel(self):
        self.cancelled = True


def test_monitor_keeps_a_single_live_timer(monkeypatch):
    monkeypatch.setattr(_FakeTimer, "created", [])
    monkeypatch.setattr(threading, "Timer", _FakeTimer)
    monitor = ProximityMonitor(_engine(), interval_s=10)

    monitor.update_location(_sample(37.0, -122.0))
    monitor.update_location(_sample(37.0, -122.0, 50))
    monitor._tick()

    timers = _FakeTimer.created
    assert len(timers) == 3
    assert [t.cancelled for t in timers] == [True, True, False]

    monitor.stop()
    assert all(t.cancelled for t in timers)
    # a tick racing stop() must not re-arm
    monitor._arm()
    assert len(_FakeTimer.created) == 3


def test_monitor_forwards_errors():
    class BrokenEngine(GeofenceEngine):
        def check_proximity(self, location):
            raise RuntimeError("boom")

    errors = []
    monitor = ProximityMonitor(BrokenEngine(), interval_s=0, on_error=errors.append)
    assert monitor.update_location(_sample(37.0, -122.0)) == []
    assert len(errors) == 1 and str(errors[0]) == "boom"


def test_history_size_must_be_positive():
    with pytest.raises(ValueError):
        GeofenceEngine(history_size=0)
