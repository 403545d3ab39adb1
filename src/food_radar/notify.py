from __future__ import annotations

import logging
import os
from datetime import datetime, time
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional, Protocol

import requests
from pydantic import ValidationError as PydanticValidationError

from .formatting import format_distance
from .geo import distance_meters
from .schema import (
    EventType,
    GeofenceEvent,
    Listing,
    Notification,
    NotificationPreferences,
    NotificationType,
    QuietHours,
)

log = logging.getLogger(__name__)


class Delivery(str, Enum):
    ALERT = "alert"
    BADGE_ONLY = "badge_only"
    SUPPRESS = "suppress"


_TYPE_TOGGLES: dict[NotificationType, str] = {
    NotificationType.NEW_NEARBY_LISTING: "new_nearby_listings",
    NotificationType.LISTING_EXPIRING: "expiring_listings",
    NotificationType.LISTING_RESERVED: "reserved_listings",
    NotificationType.MESSAGE_RECEIVED: "messages",
    NotificationType.SYSTEM_ANNOUNCEMENT: "system_announcements",
}


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def in_quiet_hours(quiet: QuietHours, at: time) -> bool:
    """True when ``at`` falls in ``[start, end]``; a window with start > end wraps midnight."""
    if not quiet.enabled:
        return False
    current = at.hour * 60 + at.minute
    start = _minutes(quiet.start)
    end = _minutes(quiet.end)
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def _coerce_prefs(prefs: Any) -> Optional[NotificationPreferences]:
    if isinstance(prefs, NotificationPreferences):
        return prefs
    if isinstance(prefs, Mapping):
        try:
            return NotificationPreferences.model_validate(prefs)
        except PydanticValidationError:
            log.warning("Malformed notification preferences, delivering nothing")
            return None
    return None


def _coerce_type(event_type: Any) -> Optional[NotificationType]:
    try:
        return NotificationType(event_type)
    except ValueError:
        return None


def decide(event_type: Any, prefs: Any, now: Optional[datetime] = None) -> Delivery:
    """Decide how a notification of ``event_type`` may be delivered.

    Never raises. Missing or malformed preferences and unknown types are
    suppressed. During quiet hours, or when the type is switched off, the
    notification may still update badge counts.
    """
    p = _coerce_prefs(prefs)
    if p is None or not p.enabled:
        return Delivery.SUPPRESS

    kind = _coerce_type(event_type)
    if kind is None:
        return Delivery.SUPPRESS

    now = now or datetime.now()
    if in_quiet_hours(p.quiet_hours, now.time()):
        return Delivery.BADGE_ONLY

    if not getattr(p, _TYPE_TOGGLES[kind]):
        return Delivery.BADGE_ONLY
    return Delivery.ALERT


def should_deliver(event_type: Any, prefs: Any, now: Optional[datetime] = None) -> bool:
    return decide(event_type, prefs, now) is Delivery.ALERT


def within_distance(distance_m: Optional[float], prefs: NotificationPreferences) -> bool:
    """Caller-side distance gate. Unknown distances pass."""
    if distance_m is None:
        return True
    return distance_m / 1000 <= prefs.max_distance_km


# --- notification builders ---


def notification_for_new_listing(listing: Listing) -> Notification:
    where = f" {listing.distance_label} away" if listing.distance_label else " nearby"
    return Notification(
        type=NotificationType.NEW_NEARBY_LISTING,
        title="New food nearby!",
        body=f"{listing.title} is available{where}",
        listing_id=listing.id,
        distance_m=listing.distance_m,
        data={"category": listing.category.value},
    )


def notification_for_expiring_listing(listing: Listing) -> Notification:
    return Notification(
        type=NotificationType.LISTING_EXPIRING,
        title="Food expiring soon!",
        body=f"{listing.title} expires {listing.expires_label} ({listing.time_left} left)",
        listing_id=listing.id,
        distance_m=listing.distance_m,
    )


def notification_for_reserved_listing(listing: Listing) -> Notification:
    return Notification(
        type=NotificationType.LISTING_RESERVED,
        title="Listing reserved!",
        body=f"Your request for {listing.title} has been accepted",
        listing_id=listing.id,
        distance_m=listing.distance_m,
    )


MESSAGE_PREVIEW_CHARS = 50


def notification_for_message(
    sender_name: str,
    message: str,
    listing_id: Optional[str] = None,
) -> Notification:
    body = message
    if len(message) > MESSAGE_PREVIEW_CHARS:
        body = message[:MESSAGE_PREVIEW_CHARS] + "..."
    return Notification(
        type=NotificationType.MESSAGE_RECEIVED,
        title=f"Message from {sender_name}",
        body=body,
        listing_id=listing_id,
        data={"sender_name": sender_name},
    )


def notification_for_geofence_event(event: GeofenceEvent) -> Notification:
    region = event.region
    distance_m = distance_meters(event.location, region.center)
    name = region.title or region.id
    if event.type is EventType.ENTER:
        title = "You're close to free food!"
        body = f"{name} is within {format_distance(region.radius_m)}"
    else:
        title = "Leaving pickup area"
        body = f"You left the area around {name}"
    return Notification(
        type=NotificationType.NEW_NEARBY_LISTING,
        title=title,
        body=body,
        listing_id=region.listing_id,
        distance_m=distance_m,
        data={"region_id": region.id, "event": event.type.value},
    )


# --- sinks ---


class NotificationSink(Protocol):
    def send(self, notification: Notification) -> None:
        ...


def _build_message(notification: Notification) -> str:
    lines = [notification.title, "", notification.body]
    if notification.distance_m is not None:
        lines.append(f"Distance: {format_distance(notification.distance_m)}")
    if notification.listing_id:
        lines.append(f"Listing: {notification.listing_id}")
    return "\n".join(lines)


class LogSink:
    def __init__(self) -> None:
        self.sent: List[Notification] = []

    def send(self, notification: Notification) -> None:
        self.sent.append(notification)
        log.info("ALERT [%s] %s: %s", notification.type.value, notification.title, notification.body)


class TelegramSink:
    def __init__(self, chat_id: str, token: Optional[str] = None) -> None:
        self.chat_id = chat_id
        self.token = token

    def send(self, notification: Notification) -> None:
        token = self.token or os.getenv("TELEGRAM_BOT_TOKEN")
        if not token:
            log.warning("TELEGRAM_BOT_TOKEN not set, skipping notification")
            return

        try:
            resp = requests.post(
                f"https://api.telegram.org/bot{token}/sendMessage",
                json={
                    "chat_id": self.chat_id,
                    "text": _build_message(notification),
                    "disable_web_page_preview": True,
                },
                timeout=20,
            )
            resp.raise_for_status()
            log.info("Telegram notification sent: %s", notification.title)
        except requests.RequestException:
            log.exception("Failed to send Telegram notification: %s", notification.title)


class AlertDispatcher:
    """Applies distance gating and the preference gate, then fans out to sinks."""

    def __init__(
        self,
        prefs: NotificationPreferences,
        sinks: Iterable[NotificationSink] = (),
        clock=datetime.now,
    ) -> None:
        self.prefs = prefs
        self.sinks = list(sinks)
        self.clock = clock
        self.delivered: List[Notification] = []
        self.badge_count = 0

    def dispatch(self, notification: Notification) -> Delivery:
        if not within_distance(notification.distance_m, self.prefs):
            log.debug("Dropping %s for %s: beyond %.1f km",
                      notification.type.value, notification.listing_id, self.prefs.max_distance_km)
            return Delivery.SUPPRESS

        decision = decide(notification.type, self.prefs, self.clock())
        if decision is Delivery.BADGE_ONLY:
            self.badge_count += 1
        elif decision is Delivery.ALERT:
            self.badge_count += 1
            self.delivered.append(notification)
            for sink in self.sinks:
                sink.send(notification)
        return decision

    def dispatch_all(self, notifications: Iterable[Notification]) -> List[Delivery]:
        return [self.dispatch(n) for n in notifications]
