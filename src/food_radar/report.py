from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Sequence

from .schema import GeofenceEvent, Listing, Notification


def render_md(
    listings: Sequence[Listing],
    events: Sequence[GeofenceEvent] = (),
    notifications: Sequence[Notification] = (),
    badge_count: int = 0,
) -> str:
    now = datetime.now().isoformat(timespec="seconds")
    urgent = [l for l in listings if l.is_urgent]

    lines: list[str] = [
        "# Food Radar Report",
        "",
        f"Generated: {now}",
        "",
        f"**Listings in view:** {len(listings)}  ",
        f"**Urgent:** {len(urgent)}  ",
        f"**Geofence events:** {len(events)}  ",
        f"**Alerts delivered:** {len(notifications)} (badge updates: {badge_count})",
        "",
    ]

    if listings:
        lines.append("## Listings")
        lines.append("")
        lines.append("| Title | Category | Availability | Distance | Time left | Provider |")
        lines.append("|---|---|---|---:|---|---|")
        for l in listings:
            flag = " **URGENT**" if l.is_urgent else ""
            lines.append(
                f"| {l.title}{flag} | {l.category.value} | {l.availability.value} | "
                f"{l.distance_label or 'N/A'} | {l.time_left} | {l.provider.name} |"
            )
        lines.append("")

    if events:
        lines.append("## Geofence Events")
        lines.append("")
        lines.append("| Time | Type | Region | Location |")
        lines.append("|---|---|---|---|")
        for e in events:
            where = f"{e.location.latitude:.5f}, {e.location.longitude:.5f}"
            lines.append(
                f"| {e.timestamp.isoformat(timespec='seconds')} | {e.type.value} | "
                f"{e.region.title or e.region_id} | {where} |"
            )
        lines.append("")

    if notifications:
        lines.append("## Alerts")
        lines.append("")
        for n in notifications:
            lines.append(f"- **{n.title}** {n.body}")
        lines.append("")

    return "\n".join(lines)


def write_report(path: str, content: str) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(content, encoding="utf-8")
