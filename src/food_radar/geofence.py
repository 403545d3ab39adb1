"""Circular geofences with enter/exit transition detection.

``GeofenceEngine`` holds the registered regions and the *active set*: the ids
of regions whose last containment test was true. An ``enter`` fires only when
a region moves from inactive to active between two consecutive
``check_proximity`` calls, ``exit`` symmetrically. Registration alone never
produces an event.

``ProximityMonitor`` drives the engine from a location stream plus a fixed
interval timer that re-checks the last known sample.
"""
from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Dict, FrozenSet, Iterable, List, Optional

from .geo import distance_meters, is_inside
from .schema import EventType, GeofenceEvent, Listing, LocationSample, Region, utcnow

log = logging.getLogger(__name__)

MAX_EVENTS_HISTORY = 100
DEFAULT_PROXIMITY_M = 100.0
DEFAULT_LISTING_RADIUS_M = 100.0
LISTING_REGION_PREFIX = "food-"


def listing_region_id(listing_id: str) -> str:
    return f"{LISTING_REGION_PREFIX}{listing_id}"


def region_for_listing(listing: Listing, radius_m: float = DEFAULT_LISTING_RADIUS_M) -> Region:
    where = f" • {listing.distance_label} away" if listing.distance_label else ""
    return Region(
        id=listing_region_id(listing.id),
        center=listing.coordinates,
        radius_m=radius_m,
        title=listing.title,
        description=f"{listing.category.value}{where}",
        notify_on_entry=True,
        notify_on_exit=False,
        listing_id=listing.id,
    )


class GeofenceEngine:
    """Region registry plus active-set transition tracking.

    All public methods are serialized on one lock, so a timer thread and a
    location callback can both call ``check_proximity``.
    """

    def __init__(
        self,
        history_size: int = MAX_EVENTS_HISTORY,
        proximity_threshold_m: float = DEFAULT_PROXIMITY_M,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if history_size <= 0:
            raise ValueError(f"history_size must be positive, got {history_size}")
        self.proximity_threshold_m = proximity_threshold_m
        self.clock = clock
        self._lock = threading.RLock()
        self._regions: Dict[str, Region] = {}
        self._active: FrozenSet[str] = frozenset()
        self._events: Deque[GeofenceEvent] = deque(maxlen=history_size)
        self._last_event: Optional[GeofenceEvent] = None
        self._seq = itertools.count(1)

    # --- registry ---

    def add_region(self, region: Region) -> None:
        """Register a region, replacing one with the same id.

        A replaced region keeps its active state until the next check.
        """
        with self._lock:
            replaced = region.id in self._regions
            self._regions[region.id] = region
        log.debug("%s region %s (r=%.0fm)", "Updated" if replaced else "Added", region.id, region.radius_m)

    def remove_region(self, region_id: str) -> bool:
        with self._lock:
            removed = self._regions.pop(region_id, None) is not None
            self._active = self._active - {region_id}
        if removed:
            log.debug("Removed region %s", region_id)
        return removed

    def clear_regions(self) -> None:
        with self._lock:
            self._regions.clear()
            self._active = frozenset()
        log.debug("Cleared all regions")

    def add_listing_region(self, listing: Listing, radius_m: float = DEFAULT_LISTING_RADIUS_M) -> Region:
        region = region_for_listing(listing, radius_m)
        self.add_region(region)
        return region

    def remove_listing_region(self, listing_id: str) -> bool:
        return self.remove_region(listing_region_id(listing_id))

    def sync_listing_regions(
        self,
        listings: Iterable[Listing],
        radius_m: float = DEFAULT_LISTING_RADIUS_M,
    ) -> tuple[int, int]:
        """Make the listing-derived regions match ``listings`` exactly.

        Regions not derived from a listing are left alone. Returns
        ``(added, removed)`` counts.
        """
        wanted = {listing_region_id(l.id): l for l in listings}
        with self._lock:
            stale = [
                rid for rid, r in self._regions.items()
                if r.listing_id is not None and rid not in wanted
            ]
            for rid in stale:
                self.remove_region(rid)
            added = 0
            for rid, listing in wanted.items():
                if rid not in self._regions:
                    added += 1
                self.add_region(region_for_listing(listing, radius_m))
        if added or stale:
            log.info("Listing regions synced: %d added, %d removed", added, len(stale))
        return added, len(stale)

    # --- state ---

    @property
    def regions(self) -> List[Region]:
        with self._lock:
            return list(self._regions.values())

    @property
    def active_regions(self) -> List[Region]:
        with self._lock:
            return [r for rid, r in self._regions.items() if rid in self._active]

    @property
    def active_region_ids(self) -> FrozenSet[str]:
        return self._active

    @property
    def events(self) -> List[GeofenceEvent]:
        """Event history, oldest first."""
        with self._lock:
            return list(self._events)

    @property
    def last_event(self) -> Optional[GeofenceEvent]:
        return self._last_event

    # --- queries ---

    def distance_to_region(self, location: LocationSample, region: Region) -> float:
        return distance_meters(location, region.center)

    def is_inside_region(self, location: LocationSample, region: Region) -> bool:
        return is_inside(location, region)

    def get_nearby_regions(
        self,
        location: LocationSample,
        max_distance_m: Optional[float] = None,
    ) -> List[Region]:
        """Regions whose center is within ``max_distance_m``, nearest first."""
        limit = self.proximity_threshold_m if max_distance_m is None else max_distance_m
        with self._lock:
            regions = list(self._regions.values())
        measured = [(distance_meters(location, r.center), r) for r in regions]
        nearby = [(d, r) for d, r in measured if d <= limit]
        nearby.sort(key=lambda pair: pair[0])
        return [r for _, r in nearby]

    # --- evaluation ---

    def _event(self, region: Region, kind: EventType, location: LocationSample, at: datetime) -> GeofenceEvent:
        return GeofenceEvent(
            id=f"{region.id}-{int(at.timestamp() * 1000)}-{next(self._seq)}",
            region_id=region.id,
            type=kind,
            timestamp=at,
            location=location,
            region=region,
        )

    def check_proximity(self, location: LocationSample) -> List[GeofenceEvent]:
        """Evaluate ``location`` against every region and return new transitions."""
        with self._lock:
            now = self.clock()
            previous = self._active
            inside_now = set()
            new_events: List[GeofenceEvent] = []

            for region in self._regions.values():
                inside = is_inside(location, region)
                was_inside = region.id in previous
                if inside:
                    inside_now.add(region.id)
                    if not was_inside and region.notify_on_entry:
                        new_events.append(self._event(region, EventType.ENTER, location, now))
                elif was_inside and region.notify_on_exit:
                    new_events.append(self._event(region, EventType.EXIT, location, now))

            self._active = frozenset(inside_now)

            if new_events:
                self._events.extend(new_events)
                self._last_event = new_events[-1]

        for event in new_events:
            log.info("Geofence %s: %s (%s)", event.type.value, event.region.title or event.region_id, event.region_id)
        return new_events


class ProximityMonitor:
    """Runs ``check_proximity`` on every location update and on a fixed interval.

    The interval re-checks the most recent sample so that region changes are
    picked up even when the location provider goes quiet. A stale timer tick
    may still run once after ``stop()``.
    """

    def __init__(
        self,
        engine: GeofenceEngine,
        interval_s: float = 10.0,
        on_events: Optional[Callable[[List[GeofenceEvent]], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> None:
        self.engine = engine
        self.interval_s = interval_s
        self.on_events = on_events
        self.on_error = on_error
        self._location: Optional[LocationSample] = None
        self._timer: Optional[threading.Timer] = None
        self._timer_lock = threading.Lock()
        self._running = False

    @property
    def location(self) -> Optional[LocationSample]:
        return self._location

    @property
    def running(self) -> bool:
        return self._running

    def update_location(self, sample: LocationSample) -> List[GeofenceEvent]:
        """Check immediately, then restart the interval timer from now."""
        self._location = sample
        self._running = True
        events = self._check()
        self._arm()
        return events

    def stop(self) -> None:
        with self._timer_lock:
            self._running = False
            self._cancel_locked()

    def _cancel_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _arm(self) -> None:
        with self._timer_lock:
            self._cancel_locked()
            if not self._running or self.interval_s <= 0:
                return
            self._timer = threading.Timer(self.interval_s, self._tick)
            self._timer.daemon = True
            self._timer.start()

    def _tick(self) -> None:
        if not self._running:
            return
        self._check()
        self._arm()

    def _check(self) -> List[GeofenceEvent]:
        if self._location is None:
            return []
        try:
            events = self.engine.check_proximity(self._location)
        except Exception as exc:
            log.exception("Proximity check failed")
            if self.on_error is not None:
                self.on_error(exc)
            return []
        if events and self.on_events is not None:
            self.on_events(events)
        return events
