"""Auto-save with rollback for team and player edits.

Each save snapshots the current document, runs the guarded update and, if
the store write fails part-way, writes the snapshot back in full. The restore
only happens while the stored version is still the snapshot's or the failed
write's own; a save that landed in between is kept and the result says
``rollback_skipped``. Callers get a result dict instead of an exception:

    {"success": bool, "rolled_back": bool, "rollback_skipped": bool, "entity_id": int,
     "message": str, "error": str | None, "rollback_error": str | None,
     "reason": "invalid" | "not_found" | "conflict" | "store_error" | None}

Rule breaches are rejected before anything is written, so they come back
with ``rolled_back`` False. A successful save also carries ``entity``.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from . import docstore
from . import granular_storage
from .granular_storage import ConflictError, DuplicateEntityError, EntityNotFoundError
from .validation import ValidationError, is_identifier

logger = logging.getLogger(__name__)

# Failure reasons
INVALID = "invalid"
NOT_FOUND = "not_found"
CONFLICT = "conflict"
STORE_ERROR = "store_error"

_REASONS = {
    ValidationError: INVALID,
    DuplicateEntityError: CONFLICT,
    ConflictError: CONFLICT,
    EntityNotFoundError: NOT_FOUND,
}


def default_user() -> str:
    return os.environ.get("AUTO_SAVE_USER") or granular_storage.SYSTEM_USER


def _result(entity_id: Any, success: bool, message: str, error: Optional[str] = None,
            rolled_back: bool = False, rollback_error: Optional[str] = None,
            entity: Optional[Dict[str, Any]] = None, reason: Optional[str] = None,
            rollback_skipped: bool = False) -> Dict[str, Any]:
    result = {
        "success": success,
        "reason": reason,
        "rolled_back": rolled_back,
        "rollback_skipped": rollback_skipped,
        "entity_id": entity_id,
        "message": message,
        "error": error,
        "rollback_error": rollback_error,
    }
    if entity is not None:
        result["entity"] = entity
    return result


def _safe_update(
    kind: "granular_storage._Kind",
    update: Callable[..., Dict[str, Any]],
    entity_id: Any,
    updates: Any,
    updated_by: Optional[str],
    expected_version: Optional[str],
) -> Dict[str, Any]:
    updated_by = updated_by or default_user()
    label = kind.label
    if not is_identifier(entity_id):
        msg = f"{label} ID is required and must be a number"
        return _result(entity_id, False, f"Failed to update {kind.kind}: {msg}", msg, reason=INVALID)

    doc_id = granular_storage.doc_id_for(kind, entity_id)
    snapshot = docstore.get_document(kind.collection, doc_id)
    if snapshot is None:
        msg = f"{label} {entity_id} does not exist"
        return _result(entity_id, False, f"Failed to update {kind.kind}: {msg}", msg, reason=NOT_FOUND)

    # The failed write, if it landed, carries this stamp as its updated_at
    stamp = datetime.now(timezone.utc).isoformat()
    try:
        entity = update(entity_id, updates, updated_by, expected_version=expected_version, stamp=stamp)
    except (ValidationError, DuplicateEntityError, ConflictError, EntityNotFoundError) as exc:
        logger.warning("Rejected %s %s update: %s", kind.kind, entity_id, exc)
        return _result(
            entity_id, False, f"Failed to update {kind.kind}: {exc}", str(exc), reason=_REASONS[type(exc)]
        )
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception("Update of %s %s failed; restoring snapshot", kind.kind, entity_id)
        try:
            restored = docstore.replace_document(
                kind.collection, doc_id, snapshot, (snapshot.get("updated_at"), stamp)
            )
        except Exception as rollback_exc:  # pylint: disable=broad-except
            logger.exception("Rollback of %s %s failed", kind.kind, entity_id)
            return _result(
                entity_id,
                False,
                f"Update failed and rollback failed for {kind.kind} {entity_id}",
                str(exc),
                rolled_back=False,
                rollback_error=str(rollback_exc),
                reason=STORE_ERROR,
            )
        if not restored:
            logger.warning("Skipped restoring %s %s: it was changed by another save", kind.kind, entity_id)
            return _result(
                entity_id,
                False,
                f"Update failed; {kind.kind} {entity_id} was changed by another save and was not rolled back",
                str(exc),
                rollback_skipped=True,
                reason=STORE_ERROR,
            )
        logger.info("Rolled back %s %s to its previous state", kind.kind, entity_id)
        return _result(
            entity_id,
            False,
            f"Update failed, {kind.kind} {entity_id} rolled back to previous state",
            str(exc),
            rolled_back=True,
            reason=STORE_ERROR,
        )

    return _result(entity_id, True, f"{label} {entity_id} saved", entity=entity)


def update_team(team_id: Any, updates: Any, updated_by: Optional[str] = None,
                expected_version: Optional[str] = None) -> Dict[str, Any]:
    return _safe_update(
        granular_storage.TEAMS, granular_storage.update_team, team_id, updates, updated_by, expected_version
    )


def update_player(player_id: Any, updates: Any, updated_by: Optional[str] = None,
                  expected_version: Optional[str] = None) -> Dict[str, Any]:
    return _safe_update(
        granular_storage.PLAYERS, granular_storage.update_player, player_id, updates, updated_by, expected_version
    )
