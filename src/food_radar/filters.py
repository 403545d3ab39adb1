from __future__ import annotations

from typing import Callable, Iterable, List, Optional

from .schema import (
    ActiveFilter,
    AdvancedFilters,
    Availability,
    Category,
    FilterState,
    FilterType,
    Listing,
    SortBy,
    SortOrder,
)
from .sync import validate_search_query

Predicate = Callable[[Listing], bool]

# --- derived numeric views ---

AVAILABILITY_TIER: dict[Availability, int] = {
    Availability.HIGH: 3,
    Availability.MEDIUM: 2,
    Availability.LOW: 1,
}
URGENT_BONUS = 2
FRESHNESS_HORIZON_H = 24


def _km(listing: Listing) -> float:
    # unknown distance (no user location) counts as "here"
    km = listing.distance_km
    return 0.0 if km is None else km


def _hours(listing: Listing) -> float:
    return max(listing.hours_left, 0.0)


def popularity(listing: Listing) -> int:
    return AVAILABILITY_TIER[listing.availability] + (URGENT_BONUS if listing.is_urgent else 0)


def freshness(listing: Listing) -> float:
    return FRESHNESS_HORIZON_H - _hours(listing)


# --- facet filters ---

ORGANIC_CATEGORIES = {Category.VEGETABLES, Category.FRUITS}


def _is_organic(listing: Listing) -> bool:
    return "organic" in listing.title.lower() or listing.category in ORGANIC_CATEGORIES


def _expires_within(listing: Listing, hours: float) -> bool:
    # expired listings never count as fresh
    return 0 < listing.seconds_left <= hours * 3600


def _pickup_today(listing: Listing) -> bool:
    return 0 < listing.seconds_left < 24 * 3600


FACETS: dict[FilterType, dict[str, Predicate]] = {
    FilterType.AVAILABILITY: {
        "available-now": lambda l: l.availability is Availability.HIGH,
        "pickup-today": _pickup_today,
    },
    FilterType.SPECIAL: {
        "urgent": lambda l: l.is_urgent,
        "organic": _is_organic,
    },
    FilterType.DISTANCE: {
        "nearby": lambda l: _km(l) < 1,
        "walking": lambda l: _km(l) < 2,
    },
    FilterType.FRESHNESS: {
        "fresh-today": lambda l: _expires_within(l, 12),
    },
}


def facet_predicate(active: ActiveFilter) -> Optional[Predicate]:
    """Predicate for one facet chip, or None when the chip narrows nothing."""
    if active.type is FilterType.CATEGORY:
        return lambda l: l.category.value == active.id
    return FACETS.get(active.type, {}).get(active.id)


# --- sorting ---

SORT_KEYS: dict[SortBy, Callable[[Listing], float]] = {
    SortBy.DISTANCE: _km,
    SortBy.NEWEST: _hours,
    SortBy.POPULARITY: lambda l: -popularity(l),
    SortBy.FRESHNESS: lambda l: -freshness(l),
}


def _advanced(listings: List[Listing], adv: AdvancedFilters) -> List[Listing]:
    allowed = set(adv.availability_status)
    out = [l for l in listings if _km(l) <= adv.max_distance_km]
    out = [l for l in out if l.availability in allowed]
    if adv.urgent_only:
        out = [l for l in out if l.is_urgent]
    return [l for l in out if _expires_within(l, adv.max_age_hours)]


def apply(listings: Iterable[Listing], state: FilterState) -> List[Listing]:
    """Filter and sort ``listings`` by ``state``.

    Steps run in a fixed order: text search, facet chips, advanced filters,
    then a stable sort. Equal inputs always give the same order; ties keep
    their input order.
    """
    query = validate_search_query(state.query).lower()
    out = list(listings)

    if query:
        out = [l for l in out if query in l.title.lower() or query in l.category.value]

    for active in state.active_filters:
        pred = facet_predicate(active)
        if pred is not None:
            out = [l for l in out if pred(l)]

    out = _advanced(out, state.advanced)

    adv = state.advanced
    return sorted(out, key=SORT_KEYS[adv.sort_by], reverse=adv.sort_order is SortOrder.DESC)


# --- FilterState helpers ---


def toggle_filter(state: FilterState, active: ActiveFilter) -> FilterState:
    """Add the chip if absent, remove it if present (matched by id)."""
    if any(f.id == active.id for f in state.active_filters):
        return remove_filter(state, active.id)
    return state.model_copy(update={"active_filters": [*state.active_filters, active]})


def remove_filter(state: FilterState, filter_id: str) -> FilterState:
    kept = [f for f in state.active_filters if f.id != filter_id]
    return state.model_copy(update={"active_filters": kept})


def clear_filters(state: FilterState) -> FilterState:
    """Drop every chip and reset the advanced filters; the text query is kept."""
    return state.model_copy(update={"active_filters": [], "advanced": AdvancedFilters()})
