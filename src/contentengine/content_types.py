from __future__ import annotations

from dataclasses import dataclass

RECURRING = "recurring"
EVENT_TRIGGERED = "event_triggered"
ON_DEMAND = "on_demand"
FALLBACK = "fallback"
PLANNING_MODES = (RECURRING, EVENT_TRIGGERED, ON_DEMAND, FALLBACK)


@dataclass(frozen=True)
class ContentTypePolicy:
    name: str
    planning_mode: str
    lead_days: int
    priority: int
    label: str
    legacy_names: tuple[str, ...] = ()


CONTENT_TYPES: dict[str, ContentTypePolicy] = {
    policy.name: policy
    for policy in (
        ContentTypePolicy("weekly_guide", RECURRING, 7, 8, "What's on this week"),
        ContentTypePolicy("match_preview", EVENT_TRIGGERED, 3, 9, "Match preview"),
        ContentTypePolicy("sport_guide", ON_DEMAND, 14, 6, "Sport guide"),
        ContentTypePolicy("venue_guide", ON_DEMAND, 30, 5, "Venue guide"),
        ContentTypePolicy("transport_guide", ON_DEMAND, 30, 5, "Getting there"),
        ContentTypePolicy("nationality_guide", ON_DEMAND, 60, 4, "Guide for visitors"),
        ContentTypePolicy(
            "destination_guide",
            FALLBACK,
            0,
            5,
            "Destination guide",
            legacy_names=("evergreen_guide",),
        ),
    )
}

FALLBACK_CONTENT_TYPE = "destination_guide"
DEFAULT_ENABLED_TYPES = ("weekly_guide", "match_preview", "sport_guide", "transport_guide")


def get_policy(content_type: str) -> ContentTypePolicy | None:
    return CONTENT_TYPES.get(content_type)