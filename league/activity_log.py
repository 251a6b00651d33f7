"""Activity log: who changed what, with before/after snapshots."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from . import docstore

logger = logging.getLogger(__name__)

COLLECTION = "activity_logs"

# Player actions
PLAYER_ADDED = "player_added"
PLAYER_EDITED = "player_edited"
PLAYER_DELETED = "player_deleted"
PLAYER_REASSIGNED = "player_reassigned"
PLAYERS_BULK_DELETE = "players_bulk_delete"

# Team actions
TEAM_ADDED = "team_added"
TEAM_EDITED = "team_edited"
TEAM_DELETED = "team_deleted"
TEAM_PLAYER_ADDED = "team_player_added"
TEAM_PLAYER_REMOVED = "team_player_removed"

# Match actions
MATCH_CREATED = "match_created"
MATCH_EDITED = "match_edited"
MATCH_DELETED = "match_deleted"

# Challenge actions
CHALLENGE_CREATED = "challenge_created"
CHALLENGE_EDITED = "challenge_edited"
CHALLENGE_ACCEPTED = "challenge_accepted"
CHALLENGE_DELETED = "challenge_deleted"
PENDING_MATCH_EDITED = "pending_match_edited"
PENDING_MATCH_DELETED = "pending_match_deleted"

# Captain actions
CAPTAIN_CREATED = "captain_created"
CAPTAIN_EDITED = "captain_edited"
CAPTAIN_DELETED = "captain_deleted"

# Bonus actions
BONUS_ADDED = "bonus_added"
BONUS_EDITED = "bonus_edited"
BONUS_DELETED = "bonus_deleted"

# Auth actions
USER_LOGIN = "user_login"
USER_LOGOUT = "user_logout"

# System actions
DATA_RESET = "data_reset"
TEAMS_MIGRATED = "teams_migrated"
PLAYERS_MIGRATED = "players_migrated"

PLAYER_ACTIONS = frozenset({PLAYER_ADDED, PLAYER_EDITED, PLAYER_DELETED, PLAYER_REASSIGNED, PLAYERS_BULK_DELETE})
TEAM_ACTIONS = frozenset({TEAM_ADDED, TEAM_EDITED, TEAM_DELETED, TEAM_PLAYER_ADDED, TEAM_PLAYER_REMOVED})
MATCH_ACTIONS = frozenset({
    MATCH_CREATED, MATCH_EDITED, MATCH_DELETED,
    CHALLENGE_CREATED, CHALLENGE_EDITED, CHALLENGE_ACCEPTED, CHALLENGE_DELETED,
    PENDING_MATCH_EDITED, PENDING_MATCH_DELETED,
})
CAPTAIN_ACTIONS = frozenset({CAPTAIN_CREATED, CAPTAIN_EDITED, CAPTAIN_DELETED})
DELETION_ACTIONS = frozenset({
    PLAYER_DELETED, PLAYERS_BULK_DELETE, TEAM_DELETED, MATCH_DELETED,
    CHALLENGE_DELETED, PENDING_MATCH_DELETED, CAPTAIN_DELETED, BONUS_DELETED, DATA_RESET,
})

FILTERS = {
    "players": PLAYER_ACTIONS,
    "teams": TEAM_ACTIONS,
    "matches": MATCH_ACTIONS,
    "captains": CAPTAIN_ACTIONS,
    "deletions": DELETION_ACTIONS,
}

_DESCRIPTIONS = {
    PLAYER_ADDED: "Added player: {player_name}",
    PLAYER_EDITED: "Edited player: {player_name}",
    PLAYER_DELETED: "Deleted player: {player_name}",
    PLAYER_REASSIGNED: "Reassigned {player_name} from {from_team} to {to_team}",
    PLAYERS_BULK_DELETE: "Deleted all players ({count} players)",
    TEAM_ADDED: "Added team: {team_name}",
    TEAM_EDITED: "Edited team: {team_name}",
    TEAM_DELETED: "Deleted team: {team_name}",
    TEAM_PLAYER_ADDED: "Added {player_name} to {team_name}",
    TEAM_PLAYER_REMOVED: "Removed {player_name} from {team_name}",
    MATCH_CREATED: "Created match: {team1_name} vs {team2_name}",
    MATCH_EDITED: "Edited match: {team1_name} vs {team2_name}",
    MATCH_DELETED: "Deleted match: {team1_name} vs {team2_name}",
    CHALLENGE_CREATED: "Created challenge: {challenger_team} (Level {level})",
    CHALLENGE_EDITED: "Edited challenge: {challenger_team} ({changes_summary})",
    CHALLENGE_ACCEPTED: "Accepted challenge: {challenger_team} vs {challenged_team}",
    CHALLENGE_DELETED: "Deleted challenge: {challenger_team}",
    PENDING_MATCH_EDITED: "Edited pending match: {team1_name} vs {team2_name} ({changes_summary})",
    PENDING_MATCH_DELETED: "Deleted pending match: {team1_name} vs {team2_name}",
    CAPTAIN_CREATED: "Created captain: {captain_name}",
    CAPTAIN_EDITED: "Edited captain: {captain_name}",
    CAPTAIN_DELETED: "Deleted captain: {captain_name}",
    BONUS_ADDED: "Added bonus for {team_name}: {bonus_type}",
    BONUS_EDITED: "Edited bonus for {team_name}",
    BONUS_DELETED: "Deleted bonus for {team_name}",
    USER_LOGIN: "{role} logged in",
    USER_LOGOUT: "{role} logged out",
    DATA_RESET: "Reset all tournament data",
    TEAMS_MIGRATED: "Migrated {count} teams to granular storage",
    PLAYERS_MIGRATED: "Migrated {count} players to granular storage",
}

_PLACEHOLDER_DEFAULTS = {
    "player_name": "Unknown",
    "team_name": "Unknown",
    "captain_name": "Unknown",
    "changes_summary": "Updated",
    "role": "User",
    "count": 0,
}


class _Details(dict):
    def __missing__(self, key):
        return _PLACEHOLDER_DEFAULTS.get(key, "Unknown")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def create_log_entry(
    action: str,
    user: str,
    details: Optional[Dict[str, Any]] = None,
    entity_id: Any = None,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    entry = {
        "id": uuid.uuid4().hex,
        "timestamp": _now().isoformat(),
        "action": action,
        "user": user,
        "details": details or {},
        "entity_id": entity_id,
        "before": before,
        "after": after,
    }
    logger.info(
        "activity %s performed %s%s",
        user,
        action,
        f" (ID: {entity_id})" if entity_id is not None else "",
    )
    return entry


def describe(entry: Dict[str, Any]) -> str:
    """Human-readable one-liner for a log entry."""
    action = entry.get("action")
    template = _DESCRIPTIONS.get(action)
    if template is None:
        return f"Performed action: {action}"
    return template.format_map(_Details(entry.get("details") or {}))


def format_log_entry(entry: Dict[str, Any]) -> Dict[str, Any]:
    try:
        ts = datetime.fromisoformat(entry["timestamp"])
        formatted = ts.strftime("%m/%d/%Y, %H:%M:%S")
    except (KeyError, TypeError, ValueError):
        formatted = entry.get("timestamp") or ""
    return {**entry, "formatted_timestamp": formatted, "description": describe(entry)}


def filter_logs(logs: Iterable[Dict[str, Any]], category: str = "all") -> List[Dict[str, Any]]:
    """Keep entries whose action falls in ``category``; unknown categories keep everything."""
    logs = list(logs)
    actions = FILTERS.get(category)
    if actions is None:
        return logs
    return [log for log in logs if log.get("action") in actions]


def cleanup_old_logs(
    logs: Iterable[Dict[str, Any]],
    days_to_keep: int = 90,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    cutoff = (now or _now()) - timedelta(days=days_to_keep)
    kept = []
    for log in logs:
        try:
            ts = datetime.fromisoformat(log["timestamp"])
        except (KeyError, TypeError, ValueError):
            continue
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        if ts >= cutoff:
            kept.append(log)
    return kept


def record_activity(
    action: str,
    user: str,
    details: Optional[Dict[str, Any]] = None,
    entity_id: Any = None,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """Create and persist a log entry. Store failures are logged, not raised."""
    entry = create_log_entry(action, user, details, entity_id, before, after)
    try:
        docstore.set_document(COLLECTION, entry["id"], entry)
    except Exception:  # pylint: disable=broad-except
        logger.exception("Failed to persist activity log entry %s", action)
        return None
    return entry


def get_activity_logs(limit: int = 100, category: str = "all") -> List[Dict[str, Any]]:
    """Newest ``limit`` entries in ``category``; the category is applied before the limit."""
    logs = filter_logs(docstore.list_documents(COLLECTION), category)
    logs.sort(key=lambda e: e.get("timestamp") or "", reverse=True)
    return logs[: max(0, int(limit))]
