from __future__ import annotations

import logging
from typing import Dict, Iterable

from .schema import ChangeSet, Listing

log = logging.getLogger(__name__)


class ChangeTracker:
    """Diffs consecutive listing snapshots.

    Only the previous snapshot is kept, so a listing that disappears and later
    comes back is reported as new again.
    """

    def __init__(self) -> None:
        self._previous: Dict[str, Listing] = {}

    def diff(self, listings: Iterable[Listing]) -> ChangeSet:
        current = {l.id: l for l in listings}
        changes = ChangeSet()

        for listing_id, listing in current.items():
            before = self._previous.get(listing_id)
            if before is None:
                changes.new.append(listing)
            elif listing.is_urgent and not before.is_urgent:
                changes.became_urgent.append(listing)

        changes.removed = [i for i in self._previous if i not in current]
        self._previous = current

        if not changes.is_empty:
            log.info(
                "Listing changes: %d new, %d removed, %d became urgent",
                len(changes.new),
                len(changes.removed),
                len(changes.became_urgent),
            )
        return changes

    def reset(self) -> None:
        self._previous.clear()

    def __len__(self) -> int:
        return len(self._previous)
