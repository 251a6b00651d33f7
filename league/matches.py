"""Match-type rules, score arithmetic and match documents.

Set scores are kept flat on the match as ``set1_team1``/``set1_team2``
through ``set3_team1``/``set3_team2`` plus ``set3_is_tiebreaker``. A third
set played as a 10-point match tiebreaker counts as one game for its winner.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from . import activity_log
from . import docstore
from . import ids
from .granular_storage import (
    DuplicateEntityError,
    EntityNotFoundError,
    TEAMS,
    doc_id_for,
)
from .validation import SERVER_FIELDS, ValidationError, is_identifier

logger = logging.getLogger(__name__)

COLLECTION = "matches"

SINGLES = "singles"
DOUBLES = "doubles"
MIXED_DOUBLES = "mixed_doubles"
MATCH_TYPES = (SINGLES, DOUBLES, MIXED_DOUBLES)

PENDING = "pending"
COMPLETED = "completed"

SCORE_FIELDS = (
    "set1_team1", "set1_team2",
    "set2_team1", "set2_team2",
    "set3_team1", "set3_team2",
)

# Derived by complete_match; never patched directly
RESULT_FIELDS = frozenset({
    "status", "winner",
    "team1_sets", "team2_sets",
    "team1_games", "team2_games",
    "completed_at", "completed_by",
})

_ID_ATTEMPTS = 5


# ---------------------------------------------------------------------------
# Match-type helpers
# ---------------------------------------------------------------------------

def get_required_player_count(match_type: Optional[str]) -> int:
    return 1 if match_type == SINGLES else 2


def validate_player_selection(player_ids: Iterable[Any], match_type: str = DOUBLES) -> bool:
    return len(list(player_ids or ())) == get_required_player_count(match_type)


def _index(players: Iterable[Dict[str, Any]]) -> Dict[Any, Dict[str, Any]]:
    return {p.get("id"): p for p in players or () if isinstance(p, dict)}


def validate_mixed_doubles_genders(player_ids: Any, players: Iterable[Dict[str, Any]]) -> bool:
    """True when the pair is exactly one man and one woman."""
    if not isinstance(player_ids, (list, tuple)) or len(player_ids) != 2:
        return False
    by_id = _index(players)
    pair = [by_id.get(pid) for pid in player_ids]
    if None in pair:
        return False
    genders = {p.get("gender") for p in pair}
    return genders == {"M", "F"}


def calculate_combined_ntrp(
    player_ids: Any,
    players: Iterable[Dict[str, Any]],
    match_type: str = DOUBLES,
) -> float:
    if not isinstance(player_ids, (list, tuple)):
        return 0.0
    if len(player_ids) != get_required_player_count(match_type):
        return 0.0
    by_id = _index(players)
    selected = [by_id.get(pid) for pid in player_ids]
    if None in selected:
        return 0.0
    try:
        return sum(float(p.get("ntrp_rating")) for p in selected)
    except (TypeError, ValueError):
        return 0.0


def validate_combined_ntrp(
    player_ids: Any,
    players: Iterable[Dict[str, Any]],
    level: Any,
    match_type: str = DOUBLES,
) -> bool:
    """Combined rating of the selection must not exceed the match level."""
    if not isinstance(player_ids, (list, tuple)) or not level:
        return False
    if len(player_ids) != get_required_player_count(match_type):
        return False
    return calculate_combined_ntrp(player_ids, players, match_type) <= float(level)


def format_match_type(match_type: Optional[str]) -> str:
    return {SINGLES: "Singles", DOUBLES: "Doubles", MIXED_DOUBLES: "Mixed Doubles"}.get(match_type, "Doubles")


def get_match_type(match: Optional[Dict[str, Any]]) -> str:
    return (match or {}).get("match_type") or DOUBLES


def get_effective_match_type(
    match: Optional[Dict[str, Any]],
    players: Iterable[Dict[str, Any]],
    team_id: Optional[int] = None,
) -> str:
    """Explicit match type, except untagged doubles with a man and a woman on one side count as mixed."""
    if not match:
        return DOUBLES
    explicit = get_match_type(match)
    if explicit in (SINGLES, MIXED_DOUBLES):
        return explicit
    if team_id is not None:
        side = match.get("team1_players") if match.get("team1_id") == team_id else match.get("team2_players")
    else:
        side = (
            match.get("team1_players") or match.get("challenger_players")
            or match.get("team2_players") or match.get("challenged_players")
        )
    by_id = _index(players)
    genders = {by_id[pid].get("gender") for pid in side or () if pid in by_id}
    if {"M", "F"} <= genders:
        return MIXED_DOUBLES
    return DOUBLES


def get_level_options(match_type: Optional[str]) -> List[str]:
    if match_type == SINGLES:
        return ["2.5", "3.0", "3.5", "4.0", "4.5", "5.0", "5.5", "6.0"]
    return ["6.0", "6.5", "7.0", "7.5", "8.0", "8.5", "9.0", "9.5", "10.0"]


def get_default_level(match_type: Optional[str]) -> str:
    return "4.0" if match_type == SINGLES else "7.0"


def _round_half(value: float) -> str:
    # halves round up, not to even
    return f"{int(value * 2 + 0.5) / 2:.1f}"


def suggest_level(player_ids: Any, players: Iterable[Dict[str, Any]], match_type: str) -> Optional[str]:
    if not player_ids or len(player_ids) != get_required_player_count(match_type):
        return None
    if match_type == SINGLES:
        player = _index(players).get(player_ids[0])
        if player is None:
            return None
        return _round_half(float(player.get("ntrp_rating")))
    return _round_half(calculate_combined_ntrp(player_ids, players, match_type))


def validate_level(level: Any, player_ids: Any, players: Iterable[Dict[str, Any]], match_type: str) -> bool:
    """Singles levels sit within 1.0 of the player's rating; doubles levels cover the combined rating."""
    if not level or not player_ids:
        return True
    if len(player_ids) != get_required_player_count(match_type):
        return True
    level_value = float(level)
    if match_type == SINGLES:
        player = _index(players).get(player_ids[0])
        if player is None:
            return True
        return abs(level_value - float(player.get("ntrp_rating"))) <= 1.0
    return level_value >= calculate_combined_ntrp(player_ids, players, match_type)


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------

def _games(value: Any) -> int:
    if value is None or value == "" or isinstance(value, bool):
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _set_winner(team1: int, team2: int) -> int:
    if team1 > team2:
        return 1
    if team2 > team1:
        return 2
    return 0


def calculate_match_results(scores: Dict[str, Any]) -> Dict[str, Any]:
    """Derive set winners, set and game totals and the match winner from set scores."""
    s = {key: _games(scores.get(key)) for key in SCORE_FIELDS}
    winners = [
        _set_winner(s["set1_team1"], s["set1_team2"]),
        _set_winner(s["set2_team1"], s["set2_team2"]),
        _set_winner(s["set3_team1"], s["set3_team2"]),
    ]
    team1_sets = winners.count(1)
    team2_sets = winners.count(2)
    team1_games = s["set1_team1"] + s["set2_team1"]
    team2_games = s["set1_team2"] + s["set2_team2"]

    third_played = scores.get("set3_team1") not in (None, "") and scores.get("set3_team2") not in (None, "")
    if third_played:
        if scores.get("set3_is_tiebreaker"):
            if winners[2] == 1:
                team1_games += 1
            elif winners[2] == 2:
                team2_games += 1
        else:
            team1_games += s["set3_team1"]
            team2_games += s["set3_team2"]

    winner = ""
    if team1_sets > team2_sets:
        winner = "team1"
    elif team2_sets > team1_sets:
        winner = "team2"

    return {
        "winner": winner,
        "team1_sets": team1_sets,
        "team2_sets": team2_sets,
        "team1_games": team1_games,
        "team2_games": team2_games,
        "is_valid": winners[0] != 0 and winners[1] != 0 and winner != "",
    }


# ---------------------------------------------------------------------------
# Match documents
# ---------------------------------------------------------------------------

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def team_name(team_id: Any) -> str:
    if not is_identifier(team_id):
        return "Unknown"
    team = docstore.get_document(TEAMS.collection, doc_id_for(TEAMS, team_id))
    return (team or {}).get("name") or "Unknown"


def require_team(team_id: Any, label: str) -> int:
    if not is_identifier(team_id):
        raise ValidationError(f"{label} ID is required and must be a number")
    if docstore.get_document(TEAMS.collection, doc_id_for(TEAMS, team_id)) is None:
        raise ValidationError(f"{label} {team_id} does not exist")
    return team_id


def _match_details(match: Dict[str, Any], **extra: Any) -> Dict[str, Any]:
    return {
        "team1_name": team_name(match.get("team1_id")),
        "team2_name": team_name(match.get("team2_id")),
        **extra,
    }


def _check_match_fields(match: Dict[str, Any]) -> None:
    require_team(match.get("team1_id"), "Team 1")
    require_team(match.get("team2_id"), "Team 2")
    if match["team1_id"] == match["team2_id"]:
        raise ValidationError("A team cannot play itself")
    match_type = match.get("match_type") or DOUBLES
    if match_type not in MATCH_TYPES:
        raise ValidationError(f"Invalid match type: {match_type}")
    for side in ("team1_players", "team2_players"):
        selected = match.get(side)
        if selected and not validate_player_selection(selected, match_type):
            count = get_required_player_count(match_type)
            raise ValidationError(f"Please select exactly {count} player{'s' if count > 1 else ''} for {side}")


def _completion_fields(scores: Dict[str, Any], completed_by: str) -> Dict[str, Any]:
    results = calculate_match_results(scores)
    if not results["is_valid"]:
        raise ValidationError("Set scores must decide the first two sets and produce a winner")
    now = _now_iso()
    fields = {key: scores.get(key) for key in SCORE_FIELDS if key in scores}
    fields["set3_is_tiebreaker"] = bool(scores.get("set3_is_tiebreaker"))
    fields.update({k: v for k, v in results.items() if k != "is_valid"})
    fields.update({"status": COMPLETED, "completed_at": now, "completed_by": completed_by})
    return fields


def _insert(match: Dict[str, Any]) -> Dict[str, Any]:
    """Store a new match, allocating the next readable id unless one was given."""
    if match.get("match_id"):
        if not docstore.create_document(COLLECTION, match["match_id"], match):
            raise DuplicateEntityError(f"Match {match['match_id']} already exists")
        return match
    for _ in range(_ID_ATTEMPTS):
        match["match_id"] = ids.generate_match_id(docstore.list_documents(COLLECTION))
        if docstore.create_document(COLLECTION, match["match_id"], match):
            return match
        logger.warning("Match id %s taken concurrently; retrying", match["match_id"])
    raise DuplicateEntityError("Could not allocate a unique match id")


def create_match(data: Any, created_by: str = "Unknown") -> Dict[str, Any]:
    """Create a pending match, or a completed one when set scores are included."""
    if not isinstance(data, dict):
        raise ValidationError("Match data must be an object")
    match = {k: v for k, v in data.items() if k not in SERVER_FIELDS}
    match.setdefault("match_type", DOUBLES)
    _check_match_fields(match)
    now = _now_iso()
    if match.get("status") == COMPLETED or any(match.get(key) not in (None, "") for key in SCORE_FIELDS):
        match.update(_completion_fields(match, created_by))
        match.setdefault("date", date.today().isoformat())
    else:
        match["status"] = PENDING
    match.update({"created_at": now, "updated_at": now, "created_by": created_by, "updated_by": created_by})
    match = _insert(match)
    logger.info("Match %s created by %s", match["match_id"], created_by)
    activity_log.record_activity(
        activity_log.MATCH_CREATED, created_by, _match_details(match), match["match_id"], None, match
    )
    return match


def create_pending_match_from_challenge(challenge: Dict[str, Any], created_by: str = "Unknown") -> Dict[str, Any]:
    """Pending match for an accepted challenge; challenger is team 1, challenged is team 2."""
    now = _now_iso()
    match = {
        "match_id": challenge.get("match_id"),
        "challenge_id": challenge.get("challenge_id"),
        "status": PENDING,
        "team1_id": challenge.get("challenger_team_id"),
        "team2_id": challenge.get("challenged_team_id"),
        "team1_players": challenge.get("challenger_players") or [],
        "team2_players": challenge.get("challenged_players") or [],
        "team1_combined_ntrp": challenge.get("challenger_combined_ntrp"),
        "team2_combined_ntrp": challenge.get("challenged_combined_ntrp"),
        "match_type": challenge.get("match_type") or DOUBLES,
        "level": challenge.get("accepted_level") or challenge.get("proposed_level"),
        "scheduled_date": challenge.get("accepted_date") or challenge.get("proposed_date"),
        "notes": challenge.get("notes") or "",
        "accept_notes": challenge.get("accept_notes") or "",
        "from_challenge": True,
        "created_at": now,
        "updated_at": now,
        "created_by": created_by,
        "updated_by": created_by,
    }
    match = _insert(match)
    logger.info("Pending match %s created from challenge %s", match["match_id"], match["challenge_id"])
    return match


def get_match(match_id: str) -> Optional[Dict[str, Any]]:
    match = docstore.get_document(COLLECTION, match_id)
    if match is None:
        logger.warning("Match %s not found", match_id)
    return match


def list_matches(status: Optional[str] = None, team_id: Optional[int] = None) -> List[Dict[str, Any]]:
    """Matches newest first, optionally narrowed to one status and/or one team."""
    if status is None:
        matches = docstore.list_documents(COLLECTION)
    else:
        matches = docstore.list_documents(COLLECTION, "status", status)
    matches = [m for m in matches if m.get("match_id")]
    if team_id is not None:
        matches = [m for m in matches if team_id in (m.get("team1_id"), m.get("team2_id"))]
    matches.sort(key=lambda m: m.get("created_at") or "", reverse=True)
    return matches


def _require_match(match_id: str) -> Dict[str, Any]:
    match = docstore.get_document(COLLECTION, match_id)
    if match is None:
        raise EntityNotFoundError(f"Match {match_id} not found")
    return match


def update_match(match_id: str, updates: Any, updated_by: str = "Unknown") -> Dict[str, Any]:
    """Edit a match's details.

    Status and derived results only change through :func:`complete_match`.
    Score edits on a completed match recompute its winner and totals; a
    pending match has no scores to edit.
    """
    if not isinstance(updates, dict) or not updates:
        raise ValidationError("Updates object is required and cannot be empty")
    if "match_id" in updates and updates["match_id"] != match_id:
        raise ValidationError(f"Cannot change match ID from {match_id} to {updates['match_id']}")
    locked = sorted(k for k in updates if k in RESULT_FIELDS)
    if locked:
        raise ValidationError(f"Cannot set {', '.join(locked)} directly; record scores by completing the match")
    before = _require_match(match_id)
    fields = {k: v for k, v in updates.items() if k not in SERVER_FIELDS and v is not None}
    if any(k in fields for k in ("team1_id", "team2_id", "match_type", "team1_players", "team2_players")):
        _check_match_fields({**before, **fields})
    rescored = any(k in updates for k in SCORE_FIELDS + ("set3_is_tiebreaker",))
    if rescored:
        if before.get("status") != COMPLETED:
            raise ValidationError("Scores for a pending match are recorded by completing it")
        merged = {**before, **{k: v for k, v in updates.items() if k in SCORE_FIELDS or k == "set3_is_tiebreaker"}}
        results = _completion_fields(merged, before.get("completed_by") or updated_by)
        results["completed_at"] = before.get("completed_at") or results["completed_at"]
        fields.update(results)
    fields.update({"updated_at": _now_iso(), "updated_by": updated_by})
    after = docstore.update_document(COLLECTION, match_id, fields)
    if after is None:
        raise EntityNotFoundError(f"Match {match_id} not found")
    logger.info("Match %s updated by %s", match_id, updated_by)
    action = activity_log.PENDING_MATCH_EDITED if before.get("status") == PENDING else activity_log.MATCH_EDITED
    changes = ", ".join(sorted(k for k in fields if k not in SERVER_FIELDS))
    activity_log.record_activity(
        action, updated_by, _match_details(after, changes_summary=changes), match_id, before, after
    )
    return after


def complete_match(match_id: str, scores: Any, completed_by: str = "Unknown") -> Dict[str, Any]:
    """Record results on a pending match and close the challenge it came from."""
    if not isinstance(scores, dict):
        raise ValidationError("Match scores must be an object")
    before = _require_match(match_id)
    if before.get("status") == COMPLETED:
        raise ValidationError(f"Match {match_id} has already been completed")
    fields = _completion_fields(scores, completed_by)
    fields["date"] = scores.get("date") or before.get("scheduled_date") or date.today().isoformat()
    fields.update({"updated_at": fields["completed_at"], "updated_by": completed_by})
    after = docstore.update_document(COLLECTION, match_id, fields)
    if after is None:
        raise EntityNotFoundError(f"Match {match_id} not found")
    logger.info("Match %s completed by %s (winner %s)", match_id, completed_by, after.get("winner"))
    activity_log.record_activity(
        activity_log.MATCH_EDITED,
        completed_by,
        _match_details(after, changes_summary="completed"),
        match_id,
        before,
        after,
    )
    if after.get("challenge_id"):
        from . import challenges

        try:
            challenges.complete_challenge(after["challenge_id"], match_id, completed_by)
        except (EntityNotFoundError, ValidationError):
            logger.warning("Challenge %s not closed for match %s", after["challenge_id"], match_id)
    return after


def delete_match(match_id: str, deleted_by: str = "Unknown") -> Dict[str, Any]:
    before = _require_match(match_id)
    if not docstore.delete_document(COLLECTION, match_id):
        raise EntityNotFoundError(f"Match {match_id} not found")
    logger.info("Match %s deleted by %s", match_id, deleted_by)
    action = activity_log.PENDING_MATCH_DELETED if before.get("status") == PENDING else activity_log.MATCH_DELETED
    activity_log.record_activity(action, deleted_by, _match_details(before), match_id, before, None)
    return before
