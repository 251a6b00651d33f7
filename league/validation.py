"""Field-level rules applied before any team, player or captain write.

Each entity type has a flat table mapping field name to a checker. A checker
receives the proposed value and returns the normalized value to store, or
raises :class:`ValidationError` with a message suitable for the API caller.
Free text is stored verbatim; markup, SQL fragments and paths are only data
here and are escaped wherever they are rendered.
"""

from __future__ import annotations

import math
import re
from typing import Any, Callable, Dict, Iterable, Optional

MAX_NAME_LENGTH = 100
MAX_CONTACT_LENGTH = 254
MIN_NTRP = 2.5
MAX_NTRP = 5.5
MIN_PASSWORD_LENGTH = 4

# Written by the storage layer itself; ignored when present in an update
SERVER_FIELDS = frozenset({"created_at", "updated_at", "updated_by"})

UNIFORM_TYPES = (None, "none", "colors", "tops-bottoms", "custom")
GENDERS = ("M", "F")
STATUSES = ("active", "inactive")

_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class ValidationError(ValueError):
    """A proposed write breaks a field rule."""


def is_identifier(value: Any) -> bool:
    """True for a positive ``int`` (``bool`` excluded)."""
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def require_identifier(value: Any, label: str) -> int:
    if not is_identifier(value):
        raise ValidationError(f"{label} ID is required and must be a number")
    return int(value)


def _text(label: str, max_length: int = MAX_NAME_LENGTH) -> Callable[[Any], str]:
    def check(value: Any) -> str:
        if value is None:
            raise ValidationError(f"{label} cannot be empty")
        if not isinstance(value, str):
            raise ValidationError(f"{label} must be text")
        if not value.strip():
            raise ValidationError(f"{label} cannot be empty")
        if len(value) > max_length:
            raise ValidationError(f"{label} cannot exceed {max_length} characters")
        return value
    return check


def _optional_text(label: str, max_length: Optional[int] = MAX_CONTACT_LENGTH) -> Callable[[Any], Optional[str]]:
    def check(value: Any) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValidationError(f"{label} must be text")
        if max_length is not None and len(value) > max_length:
            raise ValidationError(f"{label} cannot exceed {max_length} characters")
        return value
    return check


def _reference(label: str) -> Callable[[Any], Optional[int]]:
    def check(value: Any) -> Optional[int]:
        if value is None:
            return None
        if not is_identifier(value):
            raise ValidationError(f"{label} must be a positive integer or null")
        return int(value)
    return check


def _choice(label: str, options: Iterable[Any]) -> Callable[[Any], Any]:
    allowed = tuple(options)

    def check(value: Any) -> Any:
        if value not in allowed:
            shown = ", ".join(str(o) for o in allowed if o is not None)
            raise ValidationError(f"Invalid {label}: {value}. Expected one of {shown}")
        return value
    return check


def _flag(label: str) -> Callable[[Any], bool]:
    def check(value: Any) -> bool:
        if not isinstance(value, bool):
            raise ValidationError(f"{label} must be true or false")
        return value
    return check


def _color(value: Any) -> str:
    if not isinstance(value, str) or not _COLOR_RE.match(value):
        raise ValidationError(f"Invalid team color: {value}. Expected #RRGGBB")
    return value


def _email(value: Any) -> Optional[str]:
    if value is None or value == "":
        return value
    if not isinstance(value, str) or len(value) > MAX_CONTACT_LENGTH or not _EMAIL_RE.match(value):
        raise ValidationError(f"Invalid email address: {value}")
    return value


def _ntrp(value: Any) -> float:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid NTRP rating: {value}. Must be between {MIN_NTRP} and {MAX_NTRP}")
    try:
        rating = float(value)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError(f"Invalid NTRP rating: {value}. Must be between {MIN_NTRP} and {MAX_NTRP}") from None
    if math.isnan(rating) or rating < MIN_NTRP or rating > MAX_NTRP:
        raise ValidationError(f"Invalid NTRP rating: {value}. Must be between {MIN_NTRP} and {MAX_NTRP}")
    return rating


def _password(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Password cannot be empty")
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    return value


def _bonuses(value: Any) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ValidationError("Team bonuses must be an object")
    out: Dict[str, Any] = {}
    for key, item in value.items():
        if key == "uniform_type":
            out[key] = _choice("uniform type", UNIFORM_TYPES)(item)
        elif key == "uniform_photo_submitted":
            out[key] = _flag("Uniform photo submitted")(item)
        elif key == "practices":
            if not isinstance(item, dict):
                raise ValidationError("Practices must map month to count")
            practices: Dict[str, int] = {}
            for month, count in item.items():
                if not isinstance(count, int) or isinstance(count, bool) or count < 0:
                    raise ValidationError(f"Invalid practice count for {month}: {count}")
                practices[str(month)] = count
            out[key] = practices
        else:
            raise ValidationError(f"Unknown bonus field: {key}")
    return out


TEAM_RULES: Dict[str, Callable[[Any], Any]] = {
    "name": _text("Team name"),
    "captain_id": _reference("Captain ID"),
    "color": _color,
    "logo": _optional_text("Logo", max_length=None),
    "bonuses": _bonuses,
}

PLAYER_RULES: Dict[str, Callable[[Any], Any]] = {
    "first_name": _text("First name"),
    "last_name": _text("Last name"),
    "ntrp_rating": _ntrp,
    "gender": _choice("gender", GENDERS),
    "team_id": _reference("Team ID"),
    "status": _choice("status", STATUSES),
    "email": _email,
    "phone": _optional_text("Phone"),
    "is_captain": _flag("Is captain"),
}

CAPTAIN_RULES: Dict[str, Callable[[Any], Any]] = {
    "username": _text("Username"),
    "password": _password,
    "name": _text("Captain name"),
    "email": _email,
    "phone": _optional_text("Phone"),
    "team_id": _reference("Team ID"),
    "status": _choice("status", STATUSES),
}

REQUIRED_FIELDS = {
    "team": ("name",),
    "player": ("first_name", "last_name"),
    "captain": ("username", "password", "name"),
}

_RULES = {
    "team": TEAM_RULES,
    "player": PLAYER_RULES,
    "captain": CAPTAIN_RULES,
}


def _apply_rules(kind: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    rules = _RULES[kind]
    cleaned: Dict[str, Any] = {}
    for key, value in fields.items():
        if key == "id" or key in SERVER_FIELDS:
            continue
        check = rules.get(key)
        if check is None:
            raise ValidationError(f"Unknown {kind} field: {key}")
        cleaned[key] = check(value)
    return cleaned


def validate_updates(kind: str, entity_id: Any, updates: Any) -> Dict[str, Any]:
    """Validate a partial update for one entity and return the cleaned fields.

    Rejects a missing/invalid id, an empty update, an attempt to change the
    id, unknown fields and any field that breaks its rule.
    """
    label = kind.capitalize()
    entity_id = require_identifier(entity_id, label)
    if not isinstance(updates, dict) or not updates:
        raise ValidationError("Updates object is required and cannot be empty")
    if "id" in updates and updates["id"] != entity_id:
        raise ValidationError(f"Cannot change {kind} ID from {entity_id} to {updates['id']}")
    cleaned = _apply_rules(kind, updates)
    if not cleaned:
        raise ValidationError("Updates object is required and cannot be empty")
    return cleaned


def validate_new(kind: str, data: Any) -> Dict[str, Any]:
    """Validate a complete entity about to be created; returns cleaned fields incl. ``id``."""
    label = kind.capitalize()
    if not isinstance(data, dict):
        raise ValidationError(f"{label} data must be an object")
    missing = [f for f in ("id",) + REQUIRED_FIELDS[kind] if data.get(f) in (None, "")]
    if missing:
        names = ["ID"] + list(REQUIRED_FIELDS[kind])
        names = " and ".join(names) if len(names) == 2 else ", ".join(names[:-1]) + ", and " + names[-1]
        raise ValidationError(f"{label} {names} are required")
    entity_id = require_identifier(data.get("id"), label)
    cleaned = _apply_rules(kind, data)
    cleaned["id"] = entity_id
    return cleaned
