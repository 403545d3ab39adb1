from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import GeometryError
from .geo import validate_coordinates


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- enums ---


class Category(str, Enum):
    VEGETABLES = "vegetables"
    FRUITS = "fruits"
    BAKERY = "bakery"
    DAIRY = "dairy"
    PREPARED = "prepared"
    OTHER = "other"


class Availability(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ListingStatus(str, Enum):
    ACTIVE = "active"
    RESERVED = "reserved"
    COMPLETED = "completed"
    EXPIRED = "expired"
    REMOVED = "removed"


class EventType(str, Enum):
    ENTER = "enter"
    EXIT = "exit"


class FilterType(str, Enum):
    CATEGORY = "category"
    AVAILABILITY = "availability"
    DISTANCE = "distance"
    FRESHNESS = "freshness"
    SPECIAL = "special"


class SortBy(str, Enum):
    DISTANCE = "distance"
    NEWEST = "newest"
    POPULARITY = "popularity"
    FRESHNESS = "freshness"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class NotificationType(str, Enum):
    NEW_NEARBY_LISTING = "new_nearby_listing"
    LISTING_EXPIRING = "listing_expiring"
    LISTING_RESERVED = "listing_reserved"
    MESSAGE_RECEIVED = "message_received"
    SYSTEM_ANNOUNCEMENT = "system_announcement"


# --- geometry ---


def _pair_to_mapping(value: Any) -> Any:
    if isinstance(value, (tuple, list)) and len(value) == 2:
        return {"latitude": value[0], "longitude": value[1]}
    return value


class Coordinates(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float

    @model_validator(mode="after")
    def _check_range(self) -> Coordinates:
        validate_coordinates(self.latitude, self.longitude)
        return self


class LocationSample(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_range(self) -> LocationSample:
        validate_coordinates(self.latitude, self.longitude)
        return self

    @field_validator("timestamp")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        return _utc(v)


class ViewportBounds(BaseModel):
    model_config = ConfigDict(frozen=True)

    north: float
    south: float
    east: float
    west: float

    @model_validator(mode="after")
    def _check_bounds(self) -> ViewportBounds:
        validate_coordinates(self.north, self.east)
        validate_coordinates(self.south, self.west)
        if self.south > self.north:
            raise GeometryError(f"viewport south {self.south} is above north {self.north}")
        return self


class Region(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    center: Coordinates
    radius_m: float
    title: str = ""
    description: str = ""
    notify_on_entry: bool = True
    notify_on_exit: bool = False
    listing_id: Optional[str] = None

    @field_validator("center", mode="before")
    @classmethod
    def _center_from_pair(cls, v: Any) -> Any:
        return _pair_to_mapping(v)

    @model_validator(mode="after")
    def _check_radius(self) -> Region:
        if not self.radius_m > 0:
            raise GeometryError(f"region {self.id!r} radius must be > 0, got {self.radius_m}")
        return self


# --- listings ---


class Provider(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    avatar: Optional[str] = None
    verified: bool = False


class RecordLocation(BaseModel):
    latitude: float = Field(validation_alias=AliasChoices("lat", "latitude"))
    longitude: float = Field(validation_alias=AliasChoices("lon", "lng", "longitude"))


class ListingRecord(BaseModel):
    """Raw listing document as delivered by the backend feed."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    description: str = ""
    category: Category
    availability: Availability
    location: RecordLocation
    address: str = ""
    images: List[str] = Field(default_factory=list)
    quantity: str = ""
    expires_at: datetime = Field(alias="expiresAt")
    status: ListingStatus = ListingStatus.ACTIVE
    created_at: datetime = Field(alias="createdAt")
    provider: Provider
    rating: Optional[float] = None
    review_count: Optional[int] = Field(default=None, alias="reviewCount")
    pickup_instructions: Optional[str] = Field(default=None, alias="pickupInstructions")

    @field_validator("expires_at", "created_at")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        return _utc(v)


class Listing(BaseModel):
    """A listing as seen by one sync tick, with derived fields filled in."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str = ""
    category: Category
    availability: Availability
    coordinates: Coordinates
    address: str = ""
    provider: Provider
    images: List[str] = Field(default_factory=list)
    quantity: str = ""
    created_at: datetime
    expires_at: datetime
    rating: Optional[float] = None
    review_count: Optional[int] = None
    pickup_instructions: Optional[str] = None

    distance_m: Optional[float] = None
    distance_label: Optional[str] = None
    seconds_left: float = 0.0
    time_left: str = ""
    expires_label: str = ""
    is_urgent: bool = False

    @property
    def distance_km(self) -> Optional[float]:
        if self.distance_m is None:
            return None
        return self.distance_m / 1000

    @property
    def hours_left(self) -> float:
        return self.seconds_left / 3600

    @property
    def image(self) -> str:
        return self.images[0] if self.images else ""


class ListingQuery(BaseModel):
    """Filter descriptor handed to the backend feed."""

    model_config = ConfigDict(frozen=True)

    status: ListingStatus = ListingStatus.ACTIVE
    categories: List[Category] = Field(default_factory=list)
    availability: List[Availability] = Field(default_factory=list)
    order_by: str = "created_at"
    limit: int = Field(default=100, gt=0)
    max_distance_km: Optional[float] = Field(default=None, ge=0)
    user_location: Optional[Coordinates] = None
    search_query: Optional[str] = None
    # set for a single-listing subscription; other filters are then ignored
    listing_id: Optional[str] = None

    @field_validator("user_location", mode="before")
    @classmethod
    def _location_from_pair(cls, v: Any) -> Any:
        return _pair_to_mapping(v)


# --- geofence events ---


class GeofenceEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    region_id: str
    type: EventType
    timestamp: datetime
    location: LocationSample
    region: Region


# --- filter state ---


class ActiveFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: FilterType
    label: str = ""


class AdvancedFilters(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_distance_km: float = Field(default=5.0, ge=0)
    availability_status: List[Availability] = Field(
        default_factory=lambda: [Availability.HIGH, Availability.MEDIUM, Availability.LOW]
    )
    urgent_only: bool = False
    max_age_hours: float = Field(default=24.0, ge=0)
    sort_by: SortBy = SortBy.DISTANCE
    sort_order: SortOrder = SortOrder.ASC


class FilterState(BaseModel):
    model_config = ConfigDict(frozen=True)

    query: str = ""
    active_filters: List[ActiveFilter] = Field(default_factory=list)
    advanced: AdvancedFilters = Field(default_factory=AdvancedFilters)


# --- notifications ---

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class QuietHours(BaseModel):
    enabled: bool = False
    start: str = "22:00"
    end: str = "08:00"

    @field_validator("start", "end")
    @classmethod
    def _hhmm(cls, v: str) -> str:
        if not _HHMM.match(v):
            raise ValueError(f"expected HH:MM, got {v!r}")
        return v


class NotificationPreferences(BaseModel):
    enabled: bool = True
    new_nearby_listings: bool = True
    expiring_listings: bool = True
    reserved_listings: bool = True
    messages: bool = True
    system_announcements: bool = True
    quiet_hours: QuietHours = Field(default_factory=QuietHours)
    max_distance_km: float = Field(default=5.0, ge=0)


class Notification(BaseModel):
    type: NotificationType
    title: str
    body: str
    listing_id: Optional[str] = None
    distance_m: Optional[float] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class ChangeSet(BaseModel):
    new: List[Listing] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    became_urgent: List[Listing] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.new or self.removed or self.became_urgent)
