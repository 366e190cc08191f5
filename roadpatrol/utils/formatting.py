from datetime import datetime, timezone
from typing import Optional, Union

from ..core.config import settings

CATEGORY_LABELS = {
    "pothole": "Pothole",
    "trash": "Trash/Garbage",
    "streetlight": "Streetlight",
    "hazard": "Safety Hazard",
    "graffiti": "Graffiti",
    "road_damage": "Road Damage",
    "other": "Other",
}

CATEGORY_ICONS = {
    "pothole": "🕳️",
    "trash": "🗑️",
    "streetlight": "💡",
    "hazard": "⚠️",
    "graffiti": "🎨",
    "road_damage": "🚧",
    "other": "📍",
}

STATUS_LABELS = {
    "open": "Open",
    "in_progress": "In Progress",
    "resolved": "Resolved",
}

_INTERVALS = [
    ("year", 31536000),
    ("month", 2592000),
    ("week", 604800),
    ("day", 86400),
    ("hour", 3600),
    ("minute", 60),
]


def _key(value) -> str:
    return getattr(value, "value", value) or ""


def get_category_label(category) -> str:
    return CATEGORY_LABELS.get(_key(category), "Other")


def get_category_icon(category) -> str:
    return CATEGORY_ICONS.get(_key(category), CATEGORY_ICONS["other"])


def get_status_label(status) -> str:
    return STATUS_LABELS.get(_key(status), STATUS_LABELS["open"])


def format_time_ago(value: Union[str, datetime], now: Optional[datetime] = None) -> str:
    """'3 hours ago', '1 day ago', or 'Just now' under a minute."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    seconds = int((now - value).total_seconds())

    for label, length in _INTERVALS:
        count = seconds // length
        if count >= 1:
            return f"{count} {label}{'s' if count != 1 else ''} ago"
    return "Just now"


def truncate_text(text: Optional[str], max_length: int = 100) -> str:
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return text[:max_length].strip() + "..."


def get_share_url(report_id: str, base_url: Optional[str] = None) -> str:
    return f"{(base_url or settings.APP_URL).rstrip('/')}/report/{report_id}"


def share_text(title: str) -> str:
    return f"Check out this civic issue: {title}"
