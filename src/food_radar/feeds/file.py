from __future__ import annotations

import json
from pathlib import Path
from typing import List

from .base import PollingFeed, Record


def _unwrap(payload) -> List[Record]:
    if isinstance(payload, dict):
        payload = payload.get("listings", [])
    if not isinstance(payload, list):
        raise ValueError(f"expected a list of listing records, got {type(payload).__name__}")
    return [r for r in payload if isinstance(r, dict)]


class FileFeed(PollingFeed):
    """Replays a JSON file of listing records; the file is re-read on each poll."""

    name = "file"

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)

    def _load(self) -> List[Record]:
        return _unwrap(json.loads(self.path.read_text(encoding="utf-8")))
