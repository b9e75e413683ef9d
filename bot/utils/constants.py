from __future__ import annotations

TICKET_STATUS_PENDING = "pending"
TICKET_STATUS_IN_PROGRESS = "in_progress"
TICKET_STATUS_CLOSED = "closed"

TICKET_STATUSES = (TICKET_STATUS_PENDING, TICKET_STATUS_IN_PROGRESS, TICKET_STATUS_CLOSED)
OPEN_STATUSES = frozenset({TICKET_STATUS_PENDING, TICKET_STATUS_IN_PROGRESS})

DEFAULT_PRIORITY = "medium"
PRIORITY_LEVELS = ("low", "medium", "high", "urgent")
PRIORITY_EMOJIS = {
    "low": "🟢",
    "medium": "🟡",
    "high": "🟠",
    "urgent": "🔴",
}

TICKET_CATEGORIES = {
    "general": "General Help",
    "tech": "Technical Support",
    "report": "Report User",
    "appeal": "Appeal",
    "feedback": "Feedback",
}
CATEGORY_EMOJIS = {
    "general": "❓",
    "tech": "🔧",
    "report": "🚨",
    "appeal": "⚖️",
    "feedback": "💬",
}

CLAIM_EMOJI = "✅"
STAFF_NOTE_PREFIX = "#"
IGNORED_STAFF_PREFIXES = ("!", "/")

DEFAULT_TAG_COLOR = "#cccccc"
RATING_CUSTOM_ID_PREFIX = "modmail:rating:"

ACTION_COMMANDS = "commands"
ACTION_TICKETS = "tickets"
ACTION_MESSAGES = "messages"

EVENT_TAG_ADDED = "tag_added"
EVENT_TAG_REMOVED = "tag_removed"
EVENT_CATEGORY_CHANGED = "category_changed"
EVENT_PRIORITY_CHANGED = "priority_changed"
EVENT_CLAIMED = "claimed"
EVENT_CLOSED = "closed"

REPORT_METRICS = ("tickets", "response", "resolution", "satisfaction")


def format_priority(priority: str | None) -> str:
    level = priority if priority in PRIORITY_EMOJIS else "medium"
    return f"{PRIORITY_EMOJIS[level]} {level.capitalize()}"


def format_category(category: str | None) -> str:
    if not category:
        return "Not set"
    emoji = CATEGORY_EMOJIS.get(category, "📝")
    return f"{emoji} {TICKET_CATEGORIES.get(category, 'Unknown')}"

