from __future__ import annotations

import yaml
from pathlib import Path
from pydantic import BaseModel, Field
from typing import Optional, List

from .schema import Availability, Category, ListingQuery, NotificationPreferences


class FeedConfig(BaseModel):
    kind: str = "file"
    path: str = "data/listings.json"
    url: str = ""
    timeout_seconds: float = 15.0
    categories: List[Category] = Field(default_factory=list)
    availability: List[Availability] = Field(default_factory=list)
    limit: int = 100
    max_distance_km: Optional[float] = None

    def to_query(self, user_location: Optional[tuple[float, float]] = None) -> ListingQuery:
        return ListingQuery(
            categories=self.categories,
            availability=self.availability,
            limit=self.limit,
            max_distance_km=self.max_distance_km,
            user_location=user_location,
        )


class GeofenceConfig(BaseModel):
    listing_radius_m: float = 100.0
    proximity_threshold_m: float = 100.0
    check_interval_seconds: float = 10.0
    history_size: int = 100


class TelegramConfig(BaseModel):
    enabled: bool = False
    chat_id: str = ""


class NotificationsConfig(BaseModel):
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    preferences: NotificationPreferences = Field(default_factory=NotificationPreferences)


class AppConfig(BaseModel):
    report_path: str = "reports/latest.md"
    user_agent: str = "food-radar/0.1 (+contact: you@example.com)"
    poll_interval_seconds: float = 0.0


class Config(BaseModel):
    app: AppConfig = Field(default_factory=AppConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    geofence: GeofenceConfig = Field(default_factory=GeofenceConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)

    @classmethod
    def from_yaml(cls, path: str | Path = "config.yaml") -> Config:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        return cls(
            app=AppConfig(**(raw.get("app") or {})),
            feed=FeedConfig(**(raw.get("feed") or {})),
            geofence=GeofenceConfig(**(raw.get("geofence") or {})),
            notifications=NotificationsConfig(**(raw.get("notifications") or {})),
        )
