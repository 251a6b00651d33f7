"""Guarded per-entity storage for teams, players and captains.

Every entity is its own document (``teams/team-{id}``, ``players/player-{id}``,
``captains/captain-{id}``), so a write can only ever touch the one record it
names. Each write is validated against :mod:`league.validation` first, checks
that the target exists (or, for creates, that it does not), and stamps
``updated_at``/``updated_by``. ``updated_at`` doubles as the document version
for optimistic conflict detection.

Creates are insert-if-absent in a single store call, so two racing creates
with the same id cannot both succeed. Updates are a single merge on a single
document; concurrent updates to the same record leave it equal to exactly one
of them.
"""

from __future__ import annotations

import logging
from collections import namedtuple
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from werkzeug.security import check_password_hash, generate_password_hash

from . import activity_log
from . import docstore
from .validation import (
    ValidationError,
    require_identifier,
    validate_new,
    validate_updates,
)

logger = logging.getLogger(__name__)

MAX_ROSTER_SIZE = 14
MIGRATION_BATCH_SIZE = 500
SYSTEM_USER = "System"


class EntityNotFoundError(LookupError):
    """The referenced team/player/captain does not exist."""


class DuplicateEntityError(ValueError):
    """An entity with the same id (or unique field) already exists."""


class ConflictError(RuntimeError):
    """The stored document changed since the caller read it."""


_Kind = namedtuple("_Kind", "kind collection label added edited deleted")

TEAMS = _Kind("team", "teams", "Team", activity_log.TEAM_ADDED, activity_log.TEAM_EDITED, activity_log.TEAM_DELETED)
PLAYERS = _Kind("player", "players", "Player", activity_log.PLAYER_ADDED, activity_log.PLAYER_EDITED, activity_log.PLAYER_DELETED)
CAPTAINS = _Kind("captain", "captains", "Captain", activity_log.CAPTAIN_CREATED, activity_log.CAPTAIN_EDITED, activity_log.CAPTAIN_DELETED)

_KINDS = {k.collection: k for k in (TEAMS, PLAYERS, CAPTAINS)}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def doc_id_for(kind: _Kind, entity_id: int) -> str:
    return f"{kind.kind}-{entity_id}"


def _display_name(kind: _Kind, doc: Optional[Dict[str, Any]]) -> str:
    doc = doc or {}
    if kind is PLAYERS:
        return f"{doc.get('first_name', '')} {doc.get('last_name', '')}".strip() or "Unknown"
    return doc.get("name") or "Unknown"


def _details(kind: _Kind, doc: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {f"{kind.kind}_name": _display_name(kind, doc)}


def _scrub(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None or "password_hash" not in doc:
        return doc
    return {k: v for k, v in doc.items() if k != "password_hash"}


def _require_reference(kind: _Kind, entity_id: Optional[int]) -> Optional[Dict[str, Any]]:
    if entity_id is None:
        return None
    doc = docstore.get_document(kind.collection, doc_id_for(kind, entity_id))
    if doc is None:
        raise ValidationError(f"{kind.label} {entity_id} does not exist")
    return doc


# ---------------------------------------------------------------------------
# Generic guarded operations
# ---------------------------------------------------------------------------

def _get_all(kind: _Kind) -> List[Dict[str, Any]]:
    out = []
    for doc in docstore.list_documents(kind.collection):
        try:
            entity_id = int(doc.get("id"))
        except (TypeError, ValueError):
            # Legacy blob documents share some collections
            continue
        out.append({**doc, "id": entity_id})
    out.sort(key=lambda d: d["id"])
    logger.debug("Loaded %d %s documents", len(out), kind.collection)
    return out


def _get(kind: _Kind, entity_id: Any) -> Optional[Dict[str, Any]]:
    entity_id = require_identifier(entity_id, kind.label)
    doc = docstore.get_document(kind.collection, doc_id_for(kind, entity_id))
    if doc is None:
        logger.warning("%s %s not found", kind.label, entity_id)
        return None
    return {**doc, "id": int(doc.get("id", entity_id))}


def _create(
    kind: _Kind,
    data: Any,
    created_by: str,
    prepare: Optional[Callable[[Dict[str, Any], Optional[Dict[str, Any]]], Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    cleaned = validate_new(kind.kind, data)
    if prepare is not None:
        cleaned = prepare(cleaned, None)
    now = _now_iso()
    doc = {**cleaned, "created_at": now, "updated_at": now, "updated_by": created_by}
    entity_id = cleaned["id"]
    if not docstore.create_document(kind.collection, doc_id_for(kind, entity_id), doc):
        raise DuplicateEntityError(f"{kind.label} {entity_id} already exists")
    logger.info("%s %s created by %s", kind.label, entity_id, created_by)
    increment_metadata(kind.collection)
    activity_log.record_activity(kind.added, created_by, _details(kind, doc), entity_id, None, _scrub(doc))
    return doc


def _update(
    kind: _Kind,
    entity_id: Any,
    updates: Any,
    updated_by: str,
    expected_version: Optional[str] = None,
    prepare: Optional[Callable[[Dict[str, Any], Optional[Dict[str, Any]]], Dict[str, Any]]] = None,
    stamp: Optional[str] = None,
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Merge ``updates`` into one document; returns ``(before, after)``.

    ``stamp`` becomes the new ``updated_at`` when given, so a caller can
    recognise its own write later.
    """
    cleaned = validate_updates(kind.kind, entity_id, updates)
    doc_id = doc_id_for(kind, entity_id)
    before = docstore.get_document(kind.collection, doc_id)
    if before is None:
        raise EntityNotFoundError(f"{kind.label} {entity_id} does not exist")
    if expected_version is not None and before.get("updated_at") != expected_version:
        raise ConflictError(
            f"{kind.label} {entity_id} was updated by another user. Please refresh to see latest changes."
        )
    if prepare is not None:
        cleaned = prepare(cleaned, before)
    fields = {**cleaned, "id": entity_id, "updated_at": stamp or _now_iso(), "updated_by": updated_by}
    after = docstore.update_document(kind.collection, doc_id, fields, expected_version=expected_version)
    if after is None:
        if expected_version is not None and docstore.get_document(kind.collection, doc_id) is not None:
            raise ConflictError(
                f"{kind.label} {entity_id} was updated by another user. Please refresh to see latest changes."
            )
        raise EntityNotFoundError(f"{kind.label} {entity_id} does not exist")
    logger.info("%s %s updated by %s (%s)", kind.label, entity_id, updated_by, ", ".join(sorted(cleaned)))
    activity_log.record_activity(kind.edited, updated_by, _details(kind, after), entity_id, _scrub(before), _scrub(after))
    return before, after


def _delete(kind: _Kind, entity_id: Any, deleted_by: str) -> Dict[str, Any]:
    entity_id = require_identifier(entity_id, kind.label)
    doc_id = doc_id_for(kind, entity_id)
    before = docstore.get_document(kind.collection, doc_id)
    if before is None or not docstore.delete_document(kind.collection, doc_id):
        raise EntityNotFoundError(f"{kind.label} {entity_id} does not exist")
    logger.info("%s %s deleted by %s", kind.label, entity_id, deleted_by)
    decrement_metadata(kind.collection)
    activity_log.record_activity(kind.deleted, deleted_by, _details(kind, before), entity_id, _scrub(before), None)
    return before


# ---------------------------------------------------------------------------
# Teams
# ---------------------------------------------------------------------------

def _prepare_team(fields: Dict[str, Any], before: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if fields.get("captain_id") is not None:
        _require_reference(CAPTAINS, fields["captain_id"])
    return fields


def get_all_teams() -> List[Dict[str, Any]]:
    return _get_all(TEAMS)


def get_team(team_id: Any) -> Optional[Dict[str, Any]]:
    return _get(TEAMS, team_id)


def create_team(team: Any, created_by: str = SYSTEM_USER) -> Dict[str, Any]:
    return _create(TEAMS, team, created_by, prepare=_prepare_team)


def update_team(
    team_id: Any,
    updates: Any,
    updated_by: str = SYSTEM_USER,
    expected_version: Optional[str] = None,
    stamp: Optional[str] = None,
) -> Dict[str, Any]:
    _, after = _update(TEAMS, team_id, updates, updated_by, expected_version, prepare=_prepare_team, stamp=stamp)
    return after


def delete_team(team_id: Any, deleted_by: str = SYSTEM_USER) -> Dict[str, Any]:
    """Delete a team and detach the players and captains that pointed to it."""
    before = _delete(TEAMS, team_id, deleted_by)
    detached = {"team_id": None, "updated_at": _now_iso(), "updated_by": deleted_by}
    players = docstore.update_where(PLAYERS.collection, "team_id", team_id, detached)
    captains = docstore.update_where(CAPTAINS.collection, "team_id", team_id, detached)
    logger.info("Team %s detached from %d players and %d captains", team_id, players, captains)
    return before


# ---------------------------------------------------------------------------
# Players
# ---------------------------------------------------------------------------

def _prepare_player(fields: Dict[str, Any], before: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    team_id = fields.get("team_id")
    moving = "team_id" in fields and team_id is not None and (before is None or before.get("team_id") != team_id)
    if moving:
        _require_reference(TEAMS, team_id)
        player_id = fields.get("id") or (before or {}).get("id")
        roster = [
            p for p in docstore.list_documents(PLAYERS.collection, "team_id", team_id)
            if p.get("status", "active") == "active" and p.get("id") != player_id
        ]
        if len(roster) >= MAX_ROSTER_SIZE:
            raise ValidationError(f"Team already has {MAX_ROSTER_SIZE} players (maximum roster size)")
    return fields


def get_all_players() -> List[Dict[str, Any]]:
    return _get_all(PLAYERS)


def get_player(player_id: Any) -> Optional[Dict[str, Any]]:
    return _get(PLAYERS, player_id)


def create_player(player: Any, created_by: str = SYSTEM_USER) -> Dict[str, Any]:
    return _create(PLAYERS, player, created_by, prepare=_prepare_player)


def update_player(
    player_id: Any,
    updates: Any,
    updated_by: str = SYSTEM_USER,
    expected_version: Optional[str] = None,
    stamp: Optional[str] = None,
) -> Dict[str, Any]:
    before, after = _update(
        PLAYERS, player_id, updates, updated_by, expected_version, prepare=_prepare_player, stamp=stamp
    )
    if before.get("team_id") != after.get("team_id"):
        activity_log.record_activity(
            activity_log.PLAYER_REASSIGNED,
            updated_by,
            {
                "player_name": _display_name(PLAYERS, after),
                "from_team": _team_label(before.get("team_id")),
                "to_team": _team_label(after.get("team_id")),
            },
            player_id,
        )
    return after


def _team_label(team_id: Optional[int]) -> str:
    if team_id is None:
        return "No team"
    return _display_name(TEAMS, docstore.get_document(TEAMS.collection, doc_id_for(TEAMS, team_id)))


def delete_player(player_id: Any, deleted_by: str = SYSTEM_USER) -> Dict[str, Any]:
    return _delete(PLAYERS, player_id, deleted_by)


# ---------------------------------------------------------------------------
# Captains
# ---------------------------------------------------------------------------

def public_captain(captain: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Captain document without its credential hash."""
    return _scrub(captain)


def _prepare_captain(fields: Dict[str, Any], before: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    captain_id = fields.get("id") or (before or {}).get("id")
    username = fields.get("username")
    if username is not None:
        taken = [
            c for c in docstore.list_documents(CAPTAINS.collection, "username", username)
            if c.get("id") != captain_id
        ]
        if taken:
            raise DuplicateEntityError("Username already exists. Please choose a different username.")
    if fields.get("team_id") is not None:
        _require_reference(TEAMS, fields["team_id"])
    if "password" in fields:
        fields = dict(fields)
        fields["password_hash"] = generate_password_hash(fields.pop("password"))
    return fields


def _clear_team_captain(team_id: int, captain_id: int, now: str, actor: str) -> None:
    team = docstore.get_document(TEAMS.collection, doc_id_for(TEAMS, team_id))
    if team is not None and team.get("captain_id") == captain_id:
        logger.info("Team %s no longer captained by %s", team_id, captain_id)
        docstore.update_document(
            TEAMS.collection,
            doc_id_for(TEAMS, team_id),
            {"captain_id": None, "updated_at": now, "updated_by": actor},
        )


def _sync_captain_team(captain: Dict[str, Any], previous_team_id: Optional[int], actor: str) -> None:
    """Point the captain's team at it; unassign whoever captained that team before.

    An inactive captain captains nothing, so its team pointer is cleared.
    """
    captain_id = captain["id"]
    team_id = captain.get("team_id")
    now = _now_iso()
    if previous_team_id is not None and previous_team_id != team_id:
        _clear_team_captain(previous_team_id, captain_id, now, actor)
    if team_id is None:
        return
    if captain.get("status", "active") != "active":
        _clear_team_captain(team_id, captain_id, now, actor)
        return
    for other in docstore.list_documents(CAPTAINS.collection, "team_id", team_id):
        if other.get("id") != captain_id and other.get("status", "active") == "active":
            logger.info("Captain %s unassigned from team %s", other.get("id"), team_id)
            docstore.update_document(
                CAPTAINS.collection,
                doc_id_for(CAPTAINS, other["id"]),
                {"team_id": None, "updated_at": now, "updated_by": actor},
            )
    docstore.update_document(
        TEAMS.collection,
        doc_id_for(TEAMS, team_id),
        {"captain_id": captain_id, "updated_at": now, "updated_by": actor},
    )


def get_all_captains() -> List[Dict[str, Any]]:
    return _get_all(CAPTAINS)


def get_captain(captain_id: Any) -> Optional[Dict[str, Any]]:
    return _get(CAPTAINS, captain_id)


def create_captain(captain: Any, created_by: str = SYSTEM_USER) -> Dict[str, Any]:
    doc = _create(CAPTAINS, captain, created_by, prepare=_prepare_captain)
    _sync_captain_team(doc, None, created_by)
    return doc


def update_captain(
    captain_id: Any,
    updates: Any,
    updated_by: str = SYSTEM_USER,
    expected_version: Optional[str] = None,
) -> Dict[str, Any]:
    before, after = _update(CAPTAINS, captain_id, updates, updated_by, expected_version, prepare=_prepare_captain)
    _sync_captain_team(after, before.get("team_id"), updated_by)
    return after


def delete_captain(captain_id: Any, deleted_by: str = SYSTEM_USER) -> Dict[str, Any]:
    before = _delete(CAPTAINS, captain_id, deleted_by)
    docstore.update_where(
        TEAMS.collection,
        "captain_id",
        captain_id,
        {"captain_id": None, "updated_at": _now_iso(), "updated_by": deleted_by},
    )
    return before


def authenticate_captain(username: str, password: str) -> Optional[Dict[str, Any]]:
    if not username or not password:
        return None
    for captain in docstore.list_documents(CAPTAINS.collection, "username", username):
        if captain.get("status", "active") != "active":
            continue
        if check_password_hash(captain.get("password_hash") or "", password):
            activity_log.record_activity(
                activity_log.USER_LOGIN, username, {"role": "Captain"}, captain.get("id")
            )
            return public_captain(captain)
    return None


# ---------------------------------------------------------------------------
# Metadata counts
# ---------------------------------------------------------------------------

def get_entity_count(entity_type: str) -> int:
    try:
        doc = docstore.get_document(docstore.METADATA_COLLECTION, f"{entity_type}-count")
    except Exception:  # pylint: disable=broad-except
        logger.exception("Error getting %s count", entity_type)
        return 0
    return int((doc or {}).get("count") or 0)


def _adjust_metadata(entity_type: str, delta: int) -> None:
    try:
        docstore.adjust_counter(f"{entity_type}-count", delta, SYSTEM_USER, _now_iso())
    except Exception:  # pylint: disable=broad-except
        logger.exception("Error adjusting %s count by %d", entity_type, delta)


def increment_metadata(entity_type: str) -> None:
    _adjust_metadata(entity_type, 1)


def decrement_metadata(entity_type: str) -> None:
    _adjust_metadata(entity_type, -1)


# ---------------------------------------------------------------------------
# Migration from single-blob storage
# ---------------------------------------------------------------------------

def _migrate(kind: _Kind, items: Any, migrated_by: str) -> Dict[str, Any]:
    if not isinstance(items, list):
        raise ValidationError(f"{kind.label}s must be an array")
    logger.info("Starting migration of %d %s to granular storage", len(items), kind.collection)
    migrated = 0
    errors: List[Dict[str, Any]] = []
    for start in range(0, len(items), MIGRATION_BATCH_SIZE):
        batch: Dict[str, Dict[str, Any]] = {}
        for item in items[start:start + MIGRATION_BATCH_SIZE]:
            try:
                cleaned = validate_new(kind.kind, item)
            except ValidationError as exc:
                item_id = item.get("id") if isinstance(item, dict) else None
                logger.warning("Skipping %s %s during migration: %s", kind.kind, item_id, exc)
                errors.append({f"{kind.kind}_id": item_id, "error": str(exc)})
                continue
            now = _now_iso()
            batch[doc_id_for(kind, cleaned["id"])] = {
                **cleaned,
                "created_at": (item.get("created_at") or now),
                "updated_at": now,
                "updated_by": migrated_by,
            }
        docstore.write_batch(kind.collection, batch)
        migrated += len(batch)
        logger.info(
            "Batch %d committed (%d %s)", start // MIGRATION_BATCH_SIZE + 1, len(batch), kind.collection
        )

    docstore.set_document(
        docstore.METADATA_COLLECTION,
        f"{kind.collection}-count",
        {"count": migrated, "last_updated": _now_iso(), "last_updated_by": migrated_by},
    )
    action = activity_log.TEAMS_MIGRATED if kind is TEAMS else activity_log.PLAYERS_MIGRATED
    activity_log.record_activity(action, migrated_by, {"count": migrated, "errors": len(errors)})

    message = f"Successfully migrated {migrated} {kind.collection}"
    if errors:
        message += f" ({len(errors)} errors)"
    return {
        "success": not errors,
        "migrated": migrated,
        "errors": len(errors),
        "error_details": errors,
        "message": message,
    }


def migrate_teams_to_granular(teams: Any, migrated_by: str = "Migration") -> Dict[str, Any]:
    return _migrate(TEAMS, teams, migrated_by)


def migrate_players_to_granular(players: Any, migrated_by: str = "Migration") -> Dict[str, Any]:
    return _migrate(PLAYERS, players, migrated_by)


def verify_migration(entity_type: str, expected_count: int) -> Dict[str, Any]:
    """Compare the tracked entity count against the count expected from blob storage."""
    actual = get_entity_count(entity_type)
    if actual != expected_count:
        logger.error("Count mismatch for %s: expected %s, got %s", entity_type, expected_count, actual)
        return {
            "success": False,
            "entity_type": entity_type,
            "expected_count": expected_count,
            "actual_count": actual,
            "message": f"Count mismatch: expected {expected_count}, got {actual}",
        }
    return {
        "success": True,
        "entity_type": entity_type,
        "count": actual,
        "message": "Migration verified successfully",
    }


def kind_for(collection: str) -> _Kind:
    try:
        return _KINDS[collection]
    except KeyError:
        raise ValidationError(f"Unknown entity type: {collection}") from None
