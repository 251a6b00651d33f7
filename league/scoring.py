"""Leaderboard scoring: match-win points plus capped monthly and team bonuses."""

from __future__ import annotations

import calendar
import json
import logging
import uuid
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from . import activity_log
from . import docstore
from . import granular_storage
from . import matches as match_service
from .validation import ValidationError, is_identifier

logger = logging.getLogger(__name__)

BONUS_COLLECTION = "bonus_entries"
SETTINGS_COLLECTION = "settings"
SETTINGS_DOC_ID = "league"

# Default league settings ship with the package under ``data``.
DATA_DIR = Path(__file__).resolve().parent / "data"

with (DATA_DIR / "settings.json").open() as f:
    DEFAULT_SETTINGS: Dict[str, Any] = json.load(f)


def _build_lookup(entries: List[Dict], key_field: str, value_field: str) -> Tuple[Dict[Any, float], float]:
    """Build lookup dict and default value from settings entries."""
    lookup: Dict[Any, float] = {}
    default = 0.0
    for item in entries:
        key = item[key_field]
        value = item[value_field]
        if key == "default_or_higher":
            default = value
        else:
            lookup[key] = value
    return lookup, default


def load_settings() -> Dict[str, Any]:
    """Packaged defaults overlaid with the stored ``settings/league`` document."""
    settings = dict(DEFAULT_SETTINGS)
    stored = docstore.get_document(SETTINGS_COLLECTION, SETTINGS_DOC_ID)
    if stored:
        settings.update({k: v for k, v in stored.items() if k in DEFAULT_SETTINGS})
    return settings


def match_date(match: Dict[str, Any]) -> Optional[date]:
    raw = match.get("date") or match.get("scheduled_date") or match.get("completed_at")
    if not raw:
        return None
    try:
        return date.fromisoformat(str(raw)[:10])
    except ValueError:
        return None


def month_key(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def month_end(key: str) -> date:
    year, month = (int(part) for part in key.split("-"))
    return date(year, month, calendar.monthrange(year, month)[1])


def win_points(day: Optional[date], settings: Optional[Dict[str, Any]] = None) -> float:
    """Points for one match win; January wins count double by default."""
    settings = settings or DEFAULT_SETTINGS
    lookup, default = _build_lookup(settings["win_points_by_month"], "month", "points")
    if day is None:
        return float(default)
    return float(lookup.get(day.month, default))


def match_count_bonus(count: int, month_over: bool, settings: Optional[Dict[str, Any]] = None) -> float:
    settings = settings or DEFAULT_SETTINGS
    bonus = 0.0
    for tier in sorted(settings["match_count_bonus"], key=lambda t: t["min_matches"], reverse=True):
        if count >= tier["min_matches"]:
            bonus = float(tier["points"])
            break
    penalty = settings["low_match_penalty"]
    # Penalty only once the month is over
    if count < penalty["below"] and month_over:
        bonus += float(penalty["points"])
    return bonus


def uniform_bonus(uniform_type: Optional[str], photo_submitted: bool, settings: Optional[Dict[str, Any]] = None) -> float:
    if not photo_submitted:
        return 0.0
    settings = settings or DEFAULT_SETTINGS
    lookup, default = _build_lookup(settings["uniform_bonus"], "uniform_type", "points")
    return float(lookup.get(uniform_type, default))


def practice_bonus(practices: Optional[Dict[str, int]], settings: Optional[Dict[str, Any]] = None) -> float:
    rules = (settings or DEFAULT_SETTINGS)["practice_bonus"]
    total = sum(min(count * rules["per_practice"], rules["monthly_cap"]) for count in (practices or {}).values())
    return float(min(total, rules["total_cap"]))


def _side(match: Dict[str, Any], team_id: int) -> str:
    return "team1" if match.get("team1_id") == team_id else "team2"


def _other(side: str) -> str:
    return "team2" if side == "team1" else "team1"


def bonus_points(
    team: Dict[str, Any],
    team_matches: List[Dict[str, Any]],
    players: Iterable[Dict[str, Any]],
    bonus_entries: Iterable[Dict[str, Any]],
    settings: Optional[Dict[str, Any]] = None,
    today: Optional[date] = None,
) -> float:
    """Uncapped bonus total for one team, floored at zero."""
    settings = settings or DEFAULT_SETTINGS
    today = today or date.today()
    players = list(players)
    team_id = team["id"]
    variety = settings["variety_bonus"]

    by_month: Dict[str, List[Dict[str, Any]]] = {}
    for match in team_matches:
        day = match_date(match)
        if day is not None:
            by_month.setdefault(month_key(day), []).append(match)

    roster = [p for p in players if p.get("team_id") == team_id and p.get("status", "active") == "active"]
    total = 0.0
    for month in settings["tournament_months"]:
        key = month["key"]
        played = by_month.get(key, [])
        total += match_count_bonus(len(played), today > month_end(key), settings)
        if not played:
            continue

        side_players = set()
        opponents = set()
        levels = set()
        mixed = 0
        for match in played:
            side = _side(match, team_id)
            side_players.update(match.get(f"{side}_players") or [])
            opponents.add(match.get(f"{_other(side)}_id"))
            if match.get("level"):
                levels.add(str(match["level"]))
            if match_service.get_effective_match_type(match, players, team_id) == match_service.MIXED_DOUBLES:
                mixed += 1

        if roster and len(roster) <= settings["max_roster_size"] and len(side_players) == len(roster):
            total += variety["points"]
        if len(opponents) >= variety["min_opponents"]:
            total += variety["points"]
        if len(levels) >= variety["min_levels"]:
            total += variety["points"]
        if mixed >= variety["min_mixed_doubles"]:
            total += variety["points"]

    total += sum(float(b.get("points") or 0) for b in bonus_entries if b.get("team_id") == team_id)

    bonuses = team.get("bonuses") or {}
    total += uniform_bonus(bonuses.get("uniform_type"), bool(bonuses.get("uniform_photo_submitted")), settings)
    total += practice_bonus(bonuses.get("practices"), settings)
    return max(0.0, total)


def team_points(
    team: Dict[str, Any],
    completed: Iterable[Dict[str, Any]],
    players: Iterable[Dict[str, Any]],
    bonus_entries: Iterable[Dict[str, Any]],
    settings: Optional[Dict[str, Any]] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    settings = settings or DEFAULT_SETTINGS
    team_id = team["id"]
    team_matches = [m for m in completed if team_id in (m.get("team1_id"), m.get("team2_id"))]

    wins = losses = sets_won = games_won = 0
    match_win_points = 0.0
    for match in team_matches:
        side = _side(match, team_id)
        results = match_service.calculate_match_results(match)
        if match.get("winner") == side:
            wins += 1
            match_win_points += win_points(match_date(match), settings)
        else:
            losses += 1
        sets_won += results[f"{side}_sets"]
        games_won += results[f"{side}_games"]

    bonus = bonus_points(team, team_matches, players, bonus_entries, settings, today)
    capped = min(bonus, match_win_points * settings["bonus_cap_ratio"])
    logger.debug(
        "Team %s: %s win points, %s bonus (%s capped), %d sets, %d games",
        team_id, match_win_points, bonus, capped, sets_won, games_won,
    )
    return {
        "match_win_points": match_win_points,
        "match_wins": wins,
        "match_losses": losses,
        "bonus_points": bonus,
        "capped_bonus": capped,
        "total_points": match_win_points + capped,
        "sets_won": sets_won,
        "games_won": games_won,
        "matches_played": len(team_matches),
    }


def calculate_leaderboard(
    teams: Iterable[Dict[str, Any]],
    completed: Iterable[Dict[str, Any]],
    players: Iterable[Dict[str, Any]],
    bonus_entries: Iterable[Dict[str, Any]],
    settings: Optional[Dict[str, Any]] = None,
    today: Optional[date] = None,
) -> List[Dict[str, Any]]:
    """Rank teams by total points, then sets won, then games won."""
    completed = list(completed)
    players = list(players)
    bonus_entries = list(bonus_entries)
    rows = [
        {**team, **team_points(team, completed, players, bonus_entries, settings, today)}
        for team in teams
    ]
    rows.sort(key=lambda r: (r["total_points"], r["sets_won"], r["games_won"]), reverse=True)
    for rank, row in enumerate(rows, start=1):
        row["rank"] = rank
    return rows


def get_leaderboard(today: Optional[date] = None) -> List[Dict[str, Any]]:
    return calculate_leaderboard(
        granular_storage.get_all_teams(),
        match_service.list_matches(status=match_service.COMPLETED),
        granular_storage.get_all_players(),
        list_bonus_entries(),
        load_settings(),
        today,
    )


# ---------------------------------------------------------------------------
# Manual bonus entries
# ---------------------------------------------------------------------------

def list_bonus_entries(team_id: Optional[int] = None) -> List[Dict[str, Any]]:
    if team_id is None:
        entries = docstore.list_documents(BONUS_COLLECTION)
    else:
        entries = docstore.list_documents(BONUS_COLLECTION, "team_id", team_id)
    entries.sort(key=lambda e: e.get("created_at") or "")
    return entries


def add_bonus_entry(data: Any, added_by: str = "Unknown") -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValidationError("Bonus data must be an object")
    team_id = data.get("team_id")
    match_service.require_team(team_id, "Team")
    team = granular_storage.get_team(team_id) or {}
    points = data.get("points")
    if isinstance(points, bool) or not isinstance(points, (int, float)):
        raise ValidationError("Bonus points must be a number")
    now = datetime.now(timezone.utc).isoformat()
    entry = {
        "id": uuid.uuid4().hex,
        "team_id": team_id,
        "points": points,
        "reason": str(data.get("reason") or ""),
        "created_at": now,
        "updated_at": now,
        "updated_by": added_by,
    }
    docstore.set_document(BONUS_COLLECTION, entry["id"], entry)
    logger.info("Bonus of %s added for team %s by %s", points, team_id, added_by)
    activity_log.record_activity(
        activity_log.BONUS_ADDED,
        added_by,
        {"team_name": team.get("name") or "Unknown", "bonus_type": entry["reason"] or "manual"},
        entry["id"],
        None,
        entry,
    )
    return entry


def delete_bonus_entry(entry_id: str, deleted_by: str = "Unknown") -> Dict[str, Any]:
    before = docstore.get_document(BONUS_COLLECTION, entry_id)
    if before is None or not docstore.delete_document(BONUS_COLLECTION, entry_id):
        raise granular_storage.EntityNotFoundError(f"Bonus entry {entry_id} not found")
    team_id = before.get("team_id")
    team = granular_storage.get_team(team_id) if is_identifier(team_id) else None
    activity_log.record_activity(
        activity_log.BONUS_DELETED,
        deleted_by,
        {"team_name": (team or {}).get("name") or "Unknown"},
        entry_id,
        before,
        None,
    )
    return before
