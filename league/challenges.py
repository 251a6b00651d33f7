"""Challenge workflow: open -> accepted (pending match created) -> completed."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from . import activity_log
from . import docstore
from . import ids
from . import matches
from .granular_storage import ConflictError, DuplicateEntityError, EntityNotFoundError
from .validation import SERVER_FIELDS, ValidationError

logger = logging.getLogger(__name__)

COLLECTION = "challenges"

OPEN = "open"
ACCEPTED = "accepted"
COMPLETED = "completed"

_ID_ATTEMPTS = 5


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _check_side(team_id: Any, players: Any, match_type: str, label: str) -> None:
    matches.require_team(team_id, label)
    if players is not None and not matches.validate_player_selection(players, match_type):
        count = matches.get_required_player_count(match_type)
        raise ValidationError(f"Please select exactly {count} player{'s' if count > 1 else ''}.")


def create_challenge(data: Any, created_by: str = "Unknown") -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValidationError("Challenge data must be an object")
    challenge = {k: v for k, v in data.items() if k not in SERVER_FIELDS and k != "challenge_id"}
    match_type = challenge.setdefault("match_type", matches.DOUBLES)
    if match_type not in matches.MATCH_TYPES:
        raise ValidationError(f"Invalid match type: {match_type}")
    _check_side(challenge.get("challenger_team_id"), challenge.get("challenger_players"), match_type, "Challenger team")
    challenge.setdefault("proposed_level", matches.get_default_level(match_type))
    now = _now_iso()
    challenge.update({
        "status": OPEN,
        "created_at": now,
        "updated_at": now,
        "created_by": created_by,
        "updated_by": created_by,
    })
    for _ in range(_ID_ATTEMPTS):
        challenge["challenge_id"] = ids.generate_challenge_id(docstore.list_documents(COLLECTION))
        if docstore.create_document(COLLECTION, challenge["challenge_id"], challenge):
            break
        logger.warning("Challenge id %s taken concurrently; retrying", challenge["challenge_id"])
    else:
        raise DuplicateEntityError("Could not allocate a unique challenge id")
    logger.info("Challenge %s created by %s", challenge["challenge_id"], created_by)
    activity_log.record_activity(
        activity_log.CHALLENGE_CREATED,
        created_by,
        {
            "challenger_team": matches.team_name(challenge.get("challenger_team_id")),
            "level": challenge.get("proposed_level"),
        },
        challenge["challenge_id"],
        None,
        challenge,
    )
    return challenge


def get_challenge(challenge_id: str) -> Optional[Dict[str, Any]]:
    challenge = docstore.get_document(COLLECTION, challenge_id)
    if challenge is None:
        logger.warning("Challenge %s not found", challenge_id)
    return challenge


def list_challenges(status: Optional[str] = None, team_id: Optional[int] = None) -> List[Dict[str, Any]]:
    if status is None:
        items = docstore.list_documents(COLLECTION)
    else:
        items = docstore.list_documents(COLLECTION, "status", status)
    items = [c for c in items if c.get("challenge_id")]
    if team_id is not None:
        items = [c for c in items if team_id in (c.get("challenger_team_id"), c.get("challenged_team_id"))]
    items.sort(key=lambda c: c.get("created_at") or "", reverse=True)
    return items


def _require_challenge(challenge_id: str) -> Dict[str, Any]:
    challenge = docstore.get_document(COLLECTION, challenge_id)
    if challenge is None:
        raise EntityNotFoundError(f"Challenge {challenge_id} not found")
    return challenge


def update_challenge(challenge_id: str, updates: Any, updated_by: str = "Unknown") -> Dict[str, Any]:
    if not isinstance(updates, dict) or not updates:
        raise ValidationError("Updates object is required and cannot be empty")
    if "challenge_id" in updates and updates["challenge_id"] != challenge_id:
        raise ValidationError(f"Cannot change challenge ID from {challenge_id} to {updates['challenge_id']}")
    if "status" in updates:
        raise ValidationError("Challenge status changes through accept and complete only")
    before = _require_challenge(challenge_id)
    fields = {k: v for k, v in updates.items() if k not in SERVER_FIELDS and v is not None}
    match_type = fields.get("match_type", before.get("match_type") or matches.DOUBLES)
    if match_type not in matches.MATCH_TYPES:
        raise ValidationError(f"Invalid match type: {match_type}")
    if "challenger_team_id" in fields or "challenger_players" in fields or "match_type" in fields:
        _check_side(
            fields.get("challenger_team_id", before.get("challenger_team_id")),
            fields.get("challenger_players", before.get("challenger_players")),
            match_type,
            "Challenger team",
        )
    fields.update({"updated_at": _now_iso(), "updated_by": updated_by})
    after = docstore.update_document(COLLECTION, challenge_id, fields)
    if after is None:
        raise EntityNotFoundError(f"Challenge {challenge_id} not found")
    logger.info("Challenge %s updated by %s", challenge_id, updated_by)
    activity_log.record_activity(
        activity_log.CHALLENGE_EDITED,
        updated_by,
        {
            "challenger_team": matches.team_name(after.get("challenger_team_id")),
            "changes_summary": ", ".join(sorted(k for k in fields if k not in SERVER_FIELDS)),
        },
        challenge_id,
        before,
        after,
    )
    return after


def accept_challenge(challenge_id: str, acceptance: Any) -> Dict[str, Any]:
    """Accept an open challenge and create its pending match.

    The status check and the status change happen in one store transaction,
    so of two captains accepting at once exactly one succeeds; the other gets
    a :class:`ConflictError` naming who got there first. If the pending match
    cannot be created the challenge stays accepted and the result carries a
    ``warning``.
    """
    if not isinstance(acceptance, dict):
        raise ValidationError("Acceptance data must be an object")
    accepted_by = acceptance.get("accepted_by") or "Unknown"

    def mutate(current: Dict[str, Any]) -> Dict[str, Any]:
        status = current.get("status")
        if status == ACCEPTED:
            who = current.get("accepted_by") or "another team"
            raise ConflictError(f"This challenge has already been accepted by {who}")
        if status == COMPLETED:
            raise ConflictError("This challenge has already been completed")
        if status != OPEN:
            raise ValidationError(f"Cannot accept challenge with status: {status}")
        match_type = current.get("match_type") or matches.DOUBLES
        challenged_team_id = acceptance.get("challenged_team_id")
        _check_side(challenged_team_id, acceptance.get("challenged_players"), match_type, "Challenged team")
        if challenged_team_id == current.get("challenger_team_id"):
            raise ValidationError("A team cannot accept its own challenge")
        now = _now_iso()
        return {
            "status": ACCEPTED,
            "challenged_team_id": challenged_team_id,
            "challenged_players": acceptance.get("challenged_players") or [],
            "accepted_date": acceptance.get("accepted_date"),
            "accepted_level": acceptance.get("accepted_level"),
            "challenged_combined_ntrp": acceptance.get("challenged_combined_ntrp"),
            "accepted_by": accepted_by,
            "accepted_at": now,
            "accept_notes": acceptance.get("notes") or "",
            "match_id": acceptance.get("match_id"),
            "updated_at": now,
            "updated_by": accepted_by,
        }

    challenge = docstore.run_transaction(COLLECTION, challenge_id, mutate)
    if challenge is None:
        raise EntityNotFoundError(f"Challenge {challenge_id} not found")
    logger.info("Challenge %s accepted by %s", challenge_id, accepted_by)
    activity_log.record_activity(
        activity_log.CHALLENGE_ACCEPTED,
        accepted_by,
        {
            "challenger_team": matches.team_name(challenge.get("challenger_team_id")),
            "challenged_team": matches.team_name(challenge.get("challenged_team_id")),
        },
        challenge_id,
    )

    result: Dict[str, Any] = {"challenge": challenge}
    try:
        match = matches.create_pending_match_from_challenge(challenge, accepted_by)
    except (ValueError, LookupError) as exc:
        logger.exception("Challenge %s accepted but pending match creation failed", challenge_id)
        result["warning"] = f"Challenge accepted but pending match creation failed: {exc}"
        return result
    result["match"] = match
    if challenge.get("match_id") != match["match_id"]:
        updated = docstore.update_document(COLLECTION, challenge_id, {"match_id": match["match_id"]})
        result["challenge"] = updated or challenge
    return result


def complete_challenge(challenge_id: str, match_id: Optional[str] = None, completed_by: str = "Unknown") -> Dict[str, Any]:
    before = _require_challenge(challenge_id)
    if before.get("status") != ACCEPTED:
        raise ValidationError(
            f"Challenge must be in 'accepted' status to complete (current: {before.get('status')})"
        )
    now = _now_iso()
    fields = {"status": COMPLETED, "completed_at": now, "completed_by": completed_by,
              "updated_at": now, "updated_by": completed_by}
    if match_id:
        fields["match_id"] = match_id
    after = docstore.update_document(COLLECTION, challenge_id, fields)
    if after is None:
        raise EntityNotFoundError(f"Challenge {challenge_id} not found")
    logger.info("Challenge %s completed", challenge_id)
    return after


def delete_challenge(challenge_id: str, deleted_by: str = "Unknown") -> Dict[str, Any]:
    before = _require_challenge(challenge_id)
    if not docstore.delete_document(COLLECTION, challenge_id):
        raise EntityNotFoundError(f"Challenge {challenge_id} not found")
    logger.info("Challenge %s deleted by %s", challenge_id, deleted_by)
    activity_log.record_activity(
        activity_log.CHALLENGE_DELETED,
        deleted_by,
        {"challenger_team": matches.team_name(before.get("challenger_team_id"))},
        challenge_id,
        before,
        None,
    )
    return before
