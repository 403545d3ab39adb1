from datetime import datetime, time, timedelta

import pytest
import requests

from food_radar import notify
from food_radar.notify import (
    AlertDispatcher,
    Delivery,
    LogSink,
    TelegramSink,
    decide,
    in_quiet_hours,
    notification_for_expiring_listing,
    notification_for_geofence_event,
    notification_for_message,
    notification_for_new_listing,
    notification_for_reserved_listing,
    should_deliver,
    within_distance,
)
from food_radar.schema import (
    GeofenceEvent,
    Listing,
    LocationSample,
    Notification,
    NotificationPreferences,
    NotificationType,
    Provider,
    QuietHours,
    Region,
)

from conftest import NOW

NEW = NotificationType.NEW_NEARBY_LISTING


def _at(hh: int, mm: int = 0) -> datetime:
    return datetime(2030, 6, 1, hh, mm)


def _prefs(**overrides) -> NotificationPreferences:
    return NotificationPreferences(**overrides)


def _quiet(start="22:00", end="08:00") -> NotificationPreferences:
    return _prefs(quiet_hours=QuietHours(enabled=True, start=start, end=end))


def _make_listing(**overrides) -> Listing:
    defaults = dict(
        id="l1",
        title="Veggie curry",
        category="prepared",
        availability="high",
        coordinates={"latitude": 37.0, "longitude": -122.0},
        provider=Provider(id="p", name="Cafe"),
        created_at=NOW,
        expires_at=NOW + timedelta(hours=1),
        seconds_left=3600,
        time_left="1 hour",
        expires_label="today",
        is_urgent=True,
        distance_m=650,
        distance_label="650m",
    )
    defaults.update(overrides)
    return Listing(**defaults)


def test_overnight_quiet_hours():
    prefs = _quiet()
    assert not should_deliver(NEW, prefs, _at(23, 30))
    assert not should_deliver(NEW, prefs, _at(3, 0))
    assert should_deliver(NEW, prefs, _at(12, 0))


def test_quiet_window_includes_both_ends():
    prefs = _quiet()
    assert decide(NEW, prefs, _at(22, 0)) is Delivery.BADGE_ONLY
    assert decide(NEW, prefs, _at(8, 0)) is Delivery.BADGE_ONLY
    assert decide(NEW, prefs, _at(8, 1)) is Delivery.ALERT
    assert decide(NEW, prefs, _at(21, 59)) is Delivery.ALERT


def test_same_day_quiet_hours():
    quiet = QuietHours(enabled=True, start="14:00", end="18:00")
    assert in_quiet_hours(quiet, time(15, 30))
    assert in_quiet_hours(quiet, time(18, 0))
    assert not in_quiet_hours(quiet, time(18, 1))
    assert not in_quiet_hours(quiet, time(9, 0))


def test_disabled_quiet_hours_never_match():
    assert not in_quiet_hours(QuietHours(enabled=False), time(23, 0))


def test_master_switch_suppresses_everything():
    prefs = _prefs(enabled=False)
    for kind in NotificationType:
        assert decide(kind, prefs, _at(12)) is Delivery.SUPPRESS


@pytest.mark.parametrize(
    "kind, toggle",
    [
        (NotificationType.NEW_NEARBY_LISTING, "new_nearby_listings"),
        (NotificationType.LISTING_EXPIRING, "expiring_listings"),
        (NotificationType.LISTING_RESERVED, "reserved_listings"),
        (NotificationType.MESSAGE_RECEIVED, "messages"),
        (NotificationType.SYSTEM_ANNOUNCEMENT, "system_announcements"),
    ],
)
def test_per_type_toggles(kind, toggle):
    assert should_deliver(kind, _prefs(), _at(12))
    off = _prefs(**{toggle: False})
    assert decide(kind, off, _at(12)) is Delivery.BADGE_ONLY
    assert not should_deliver(kind.value, off, _at(12))


def test_fails_closed_on_bad_input():
    assert not should_deliver(NEW, None, _at(12))
    assert not should_deliver(NEW, {"enabled": "sometimes"}, _at(12))
    assert not should_deliver(NEW, {"quiet_hours": {"start": "25:99"}}, _at(12))
    assert not should_deliver("carrier_pigeon", _prefs(), _at(12))
    assert should_deliver("new_nearby_listing", {"enabled": True}, _at(12))


def test_within_distance():
    prefs = _prefs(max_distance_km=2)
    assert within_distance(1999, prefs)
    assert within_distance(2000, prefs)
    assert not within_distance(2001, prefs)
    assert within_distance(None, prefs)


def test_listing_notifications():
    listing = _make_listing()
    new = notification_for_new_listing(listing)
    assert new.type is NotificationType.NEW_NEARBY_LISTING
    assert new.body == "Veggie curry is available 650m away"
    assert new.distance_m == 650

    expiring = notification_for_expiring_listing(listing)
    assert expiring.type is NotificationType.LISTING_EXPIRING
    assert "expires today" in expiring.body


def test_reserved_and_message_notifications():
    reserved = notification_for_reserved_listing(_make_listing())
    assert reserved.type is NotificationType.LISTING_RESERVED
    assert reserved.body == "Your request for Veggie curry has been accepted"
    assert reserved.listing_id == "l1"

    short = notification_for_message("Ana", "See you at 6", listing_id="l1")
    assert short.type is NotificationType.MESSAGE_RECEIVED
    assert short.title == "Message from Ana"
    assert short.body == "See you at 6"
    assert short.listing_id == "l1"

    long_text = "x" * 51
    assert notification_for_message("Ana", long_text).body == "x" * 50 + "..."
    assert notification_for_message("Ana", "y" * 50).body == "y" * 50


def test_message_gate_uses_messages_toggle():
    note = notification_for_message("Ana", "hi")
    dispatcher = AlertDispatcher(_prefs(messages=False), [LogSink()], clock=lambda: _at(12))
    assert dispatcher.dispatch(note) is Delivery.BADGE_ONLY


def test_geofence_notification_uses_sample_distance():
    region = Region(id="food-l1", center=(37.0, -122.0), radius_m=200, title="Veggie curry", listing_id="l1")
    event = GeofenceEvent(
        id="food-l1-1",
        region_id="food-l1",
        type="enter",
        timestamp=NOW,
        location=LocationSample(latitude=37.0, longitude=-122.0, timestamp=NOW),
        region=region,
    )
    n = notification_for_geofence_event(event)
    assert n.listing_id == "l1"
    assert n.distance_m == 0
    assert "Veggie curry" in n.body


def test_dispatcher_gates_and_counts():
    sink = LogSink()
    dispatcher = AlertDispatcher(_quiet(), [sink], clock=lambda: _at(12))

    near = notification_for_new_listing(_make_listing(id="near", distance_m=300))
    far = notification_for_new_listing(_make_listing(id="far", distance_m=9000))

    assert dispatcher.dispatch(near) is Delivery.ALERT
    assert dispatcher.dispatch(far) is Delivery.SUPPRESS
    assert [n.listing_id for n in sink.sent] == ["near"]

    dispatcher.clock = lambda: _at(23, 30)
    assert dispatcher.dispatch(near) is Delivery.BADGE_ONLY
    assert len(sink.sent) == 1
    assert dispatcher.badge_count == 2
    assert dispatcher.delivered == sink.sent


def test_telegram_sink_posts(monkeypatch):
    posted = {}

    class Resp:
        def raise_for_status(self):
            pass

    def fake_post(url, json, timeout):
        posted.update(url=url, json=json)
        return Resp()

    monkeypatch.setattr(notify.requests, "post", fake_post)
    sink = TelegramSink("42", token="T")
    sink.send(Notification(type=NEW, title="Hi", body="Bread nearby", distance_m=650))

    assert posted["url"] == "https://api.telegram.org/botT/sendMessage"
    assert posted["json"]["chat_id"] == "42"
    assert "Distance: 650m" in posted["json"]["text"]


def test_telegram_sink_without_token_skips(monkeypatch):
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)

    def fail_post(*args, **kwargs):
        raise AssertionError("should not post")

    monkeypatch.setattr(notify.requests, "post", fail_post)
    TelegramSink("42").send(Notification(type=NEW, title="Hi", body="x"))


def test_telegram_sink_swallows_http_errors(monkeypatch):
    def broken_post(*args, **kwargs):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(notify.requests, "post", broken_post)
    TelegramSink("42", token="T").send(Notification(type=NEW, title="Hi", body="x"))
