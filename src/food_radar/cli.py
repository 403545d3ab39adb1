from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .changes import ChangeTracker
from .config import Config
from .errors import FoodRadarError
from .feeds import InMemoryFeed, ListingFeed, PollingFeed, get_feed
from .filters import apply
from .geofence import GeofenceEngine, ProximityMonitor
from .notify import (
    AlertDispatcher,
    LogSink,
    TelegramSink,
    notification_for_expiring_listing,
    notification_for_geofence_event,
    notification_for_new_listing,
)
from .report import render_md, write_report
from .schema import (
    ActiveFilter,
    AdvancedFilters,
    FilterState,
    LocationSample,
    SortBy,
    SortOrder,
)
from .sync import ListingSync, SyncResult

log = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_feed(cfg: Config) -> ListingFeed:
    feed_cls = get_feed(cfg.feed.kind)
    if feed_cls is InMemoryFeed:
        return InMemoryFeed()
    if cfg.feed.kind == "http":
        return feed_cls(url=cfg.feed.url, user_agent=cfg.app.user_agent, timeout=cfg.feed.timeout_seconds)
    return feed_cls(cfg.feed.path)


def load_track(path: str | Path) -> List[LocationSample]:
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("samples", [])
    return [LocationSample.model_validate(s) for s in raw]


def _pump(feed: ListingFeed) -> None:
    if isinstance(feed, PollingFeed):
        feed.poll()


def run(config_path: str = "config.yaml", track_path: str = "data/track.json") -> int:
    load_dotenv()

    cfg = Config.from_yaml(config_path)
    track = load_track(track_path)
    if not track:
        log.warning("Track %s has no samples, nothing to do", track_path)
        return 0

    prefs = cfg.notifications.preferences
    sinks = [LogSink()]
    tg = cfg.notifications.telegram
    if tg.enabled and tg.chat_id:
        sinks.append(TelegramSink(tg.chat_id))
    dispatcher = AlertDispatcher(prefs, sinks)

    engine = GeofenceEngine(
        history_size=cfg.geofence.history_size,
        proximity_threshold_m=cfg.geofence.proximity_threshold_m,
    )
    tracker = ChangeTracker()

    def on_sync(result: SyncResult) -> None:
        if not result.ok:
            log.error("Listing sync failed, will resubscribe on next sample: %s", result.error)
            return
        changes = tracker.diff(result.listings)
        engine.sync_listing_regions(result.listings, cfg.geofence.listing_radius_m)
        dispatcher.dispatch_all(notification_for_new_listing(l) for l in changes.new)
        dispatcher.dispatch_all(notification_for_expiring_listing(l) for l in changes.became_urgent)

    def on_events(events) -> None:
        dispatcher.dispatch_all(notification_for_geofence_event(e) for e in events)

    def on_error(exc: Exception) -> None:
        log.error("Geofence check failed: %s", exc)

    feed = build_feed(cfg)
    first = track[0]
    sync = ListingSync(
        feed,
        cfg.feed.to_query(user_location=(first.latitude, first.longitude)),
        observer=on_sync,
    )
    monitor = ProximityMonitor(
        engine,
        interval_s=cfg.geofence.check_interval_seconds,
        on_events=on_events,
        on_error=on_error,
    )

    try:
        for i, sample in enumerate(track):
            if i > 0 and cfg.app.poll_interval_seconds:
                time.sleep(cfg.app.poll_interval_seconds)
            # a new user location is a new descriptor: resubscribe, which also
            # recovers from a failed stream
            sync.update_query(user_location=(sample.latitude, sample.longitude))
            _pump(feed)
            monitor.update_location(sample)
    finally:
        monitor.stop()
        sync.stop()

    md = render_md(sync.listings, engine.events, dispatcher.delivered, dispatcher.badge_count)
    write_report(cfg.app.report_path, md)

    log.info(
        "Run complete: %d samples, %d listings, %d geofence events, %d alerts. "
        "Report written to %s",
        len(track),
        len(sync.listings),
        len(engine.events),
        len(dispatcher.delivered),
        cfg.app.report_path,
    )
    return 0


def _parse_filter(text: str) -> ActiveFilter:
    kind, sep, ident = text.partition(":")
    if not sep or not ident:
        raise argparse.ArgumentTypeError(f"expected TYPE:ID, got {text!r}")
    return ActiveFilter(id=ident, type=kind, label=ident)


def _parse_point(text: str) -> tuple[float, float]:
    try:
        lat, lon = (float(part) for part in text.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected LAT,LON, got {text!r}")
    return lat, lon


def search(
    config_path: str = "config.yaml",
    query: str = "",
    filters: Optional[List[ActiveFilter]] = None,
    near: Optional[tuple[float, float]] = None,
    advanced: Optional[AdvancedFilters] = None,
) -> int:
    load_dotenv()

    cfg = Config.from_yaml(config_path)
    state = FilterState(query=query, active_filters=filters or [], advanced=advanced or AdvancedFilters())

    feed = build_feed(cfg)
    results: list[SyncResult] = []
    sync = ListingSync(feed, cfg.feed.to_query(user_location=near), observer=results.append)
    sync.start()
    _pump(feed)
    sync.stop()

    if sync.error is not None:
        log.error("%s", sync.error)
        return 1

    listings = apply(sync.listings, state)
    for l in listings:
        urgent = " [urgent]" if l.is_urgent else ""
        print(f"{l.id:<12} {l.title[:40]:<40} {l.category.value:<10} "
              f"{l.distance_label or '-':>8} {l.time_left:>10}{urgent}")
    log.info("%d of %d listings match", len(listings), len(sync.listings))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="food_radar",
        description="Discover surplus food listings near you",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="cmd")

    run_parser = sub.add_parser("run", help="Replay a location track against the listing feed")
    run_parser.add_argument("--config", default="config.yaml", help="Config file path")
    run_parser.add_argument("--track", default="data/track.json", help="Location track (JSON)")

    search_parser = sub.add_parser("search", help="Filter and sort the current listings")
    search_parser.add_argument("--config", default="config.yaml", help="Config file path")
    search_parser.add_argument("query", nargs="?", default="", help="Free-text query")
    search_parser.add_argument("--filter", dest="filters", action="append", type=_parse_filter,
                               default=[], help="Facet chip as TYPE:ID, e.g. special:urgent")
    search_parser.add_argument("--near", type=_parse_point, help="User location as LAT,LON")
    search_parser.add_argument("--max-distance", type=float, default=5.0, help="Max distance (km)")
    search_parser.add_argument("--max-age", type=float, default=24.0, help="Max hours left")
    search_parser.add_argument("--urgent-only", action="store_true")
    search_parser.add_argument("--sort", choices=[s.value for s in SortBy], default="distance")
    search_parser.add_argument("--order", choices=[o.value for o in SortOrder], default="asc")

    args = parser.parse_args()
    _setup_logging(args.verbose)

    try:
        if args.cmd == "run":
            code = run(config_path=args.config, track_path=args.track)
        elif args.cmd == "search":
            advanced = AdvancedFilters(
                max_distance_km=args.max_distance,
                max_age_hours=args.max_age,
                urgent_only=args.urgent_only,
                sort_by=args.sort,
                sort_order=args.order,
            )
            code = search(
                config_path=args.config,
                query=args.query,
                filters=args.filters,
                near=args.near,
                advanced=advanced,
            )
        else:
            parser.print_help()
            sys.exit(1)
    except FoodRadarError as e:
        log.error("%s", e)
        code = 2
    sys.exit(code)


if __name__ == "__main__":
    main()
