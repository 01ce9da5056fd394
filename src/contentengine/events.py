from __future__ import annotations

from datetime import date, datetime
from typing import Any, Iterable

from .models import Event
from .utils import slugify

SIGNIFICANT_ROUNDS = (
    "final",
    "semi-final",
    "semifinal",
    "quarter-final",
    "quarterfinal",
    "ceremony",
    "opening",
    "closing",
)


def parse_events(raw_events: Iterable[Any]) -> list[Event]:
    """Turn operator-supplied event dicts into Events, dropping incomplete ones.

    An event needs at least a ``date`` (ISO date or datetime) and a ``sport``.
    Teams come from ``teams`` (names or ``{"name": ...}`` dicts) or from the
    ``home_team`` / ``away_team`` pair.
    """
    events: list[Event] = []
    for raw in raw_events:
        if not isinstance(raw, dict):
            continue
        event_date = str(raw.get("date") or "").strip()
        sport = str(raw.get("sport") or "").strip()
        if not event_date or not sport:
            continue
        try:
            date.fromisoformat(event_date[:10])
        except ValueError:
            continue
        if len(event_date) > 10:
            try:
                datetime.fromisoformat(event_date.replace("Z", "+00:00"))
            except ValueError:
                # unparseable time of day, keep the day
                event_date = event_date[:10]
        events.append(
            Event(
                date=event_date,
                sport=sport,
                round=str(raw.get("round") or raw.get("stage") or "").strip(),
                venue=str(raw.get("venue") or "").strip(),
                teams=_extract_teams(raw),
                raw=dict(raw),
            )
        )
    events.sort(key=lambda event: event.date)
    return events


def _extract_teams(raw: dict[str, Any]) -> list[str]:
    teams: list[str] = []
    listed = raw.get("teams")
    if isinstance(listed, list):
        for team in listed:
            if isinstance(team, dict):
                name = str(team.get("name") or "").strip()
            else:
                name = str(team or "").strip()
            if name:
                teams.append(name)
    if not teams:
        for key in ("home_team", "away_team"):
            name = str(raw.get(key) or "").strip()
            if name:
                teams.append(name)
    return teams


def filter_by_date_range(events: Iterable[Event], start: date, end: date) -> list[Event]:
    return [event for event in events if start <= event.day <= end]


def is_significant(event: Event) -> bool:
    round_name = event.round.lower()
    if any(marker in round_name for marker in SIGNIFICANT_ROUNDS):
        return True
    return len(event.teams) >= 2


def unique_sports(events: Iterable[Event]) -> list[str]:
    seen: list[str] = []
    for event in events:
        if event.sport not in seen:
            seen.append(event.sport)
    return seen


def event_ref(event: Event) -> str:
    ref = f"{event.day.isoformat()}_{slugify(event.sport, separator='_')}"
    if event.teams:
        ref += "_" + slugify("_vs_".join(event.teams), separator="_")
    return ref


def venue_slug(venue: dict[str, Any]) -> str:
    explicit = str(venue.get("slug") or "").strip()
    if explicit:
        return slugify(explicit, separator="_")
    return slugify(str(venue.get("name") or ""), separator="_")
