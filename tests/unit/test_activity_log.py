import logging
from datetime import datetime, timedelta, timezone

from league import activity_log


def test_create_log_entry_shape(caplog):
    caplog.set_level(logging.INFO, logger="league.activity_log")
    entry = activity_log.create_log_entry(
        activity_log.TEAM_EDITED, "Director", {"team_name": "Aces"}, 3, {"name": "A"}, {"name": "Aces"}
    )
    assert entry["action"] == "team_edited"
    assert entry["user"] == "Director"
    assert entry["entity_id"] == 3
    assert entry["before"] == {"name": "A"}
    assert entry["after"] == {"name": "Aces"}
    assert datetime.fromisoformat(entry["timestamp"]).tzinfo is not None
    assert any("Director performed team_edited (ID: 3)" in r.getMessage() for r in caplog.records)


def test_format_log_entry_describes_action():
    entry = activity_log.create_log_entry(activity_log.PLAYER_ADDED, "Cap", {"player_name": "Ann Lee"})
    formatted = activity_log.format_log_entry(entry)
    assert formatted["description"] == "Added player: Ann Lee"
    assert len(formatted["formatted_timestamp"].split(", ")) == 2


def test_missing_details_fall_back_to_placeholders():
    entry = activity_log.create_log_entry(activity_log.TEAM_DELETED, "Cap")
    assert activity_log.describe(entry) == "Deleted team: Unknown"
    assert activity_log.describe({"action": "mystery"}) == "Performed action: mystery"


def test_filter_logs_by_category():
    logs = [
        {"action": activity_log.PLAYER_ADDED},
        {"action": activity_log.TEAM_DELETED},
        {"action": activity_log.CHALLENGE_ACCEPTED},
        {"action": activity_log.CAPTAIN_CREATED},
    ]
    assert activity_log.filter_logs(logs, "all") == logs
    assert activity_log.filter_logs(logs, "players") == [logs[0]]
    assert activity_log.filter_logs(logs, "teams") == [logs[1]]
    assert activity_log.filter_logs(logs, "matches") == [logs[2]]
    assert activity_log.filter_logs(logs, "captains") == [logs[3]]
    assert activity_log.filter_logs(logs, "deletions") == [logs[1]]


def test_cleanup_old_logs_keeps_recent():
    now = datetime(2025, 12, 1, tzinfo=timezone.utc)
    logs = [
        {"timestamp": (now - timedelta(days=10)).isoformat()},
        {"timestamp": (now - timedelta(days=91)).isoformat()},
        {"timestamp": "garbage"},
    ]
    assert activity_log.cleanup_old_logs(logs, days_to_keep=90, now=now) == [logs[0]]


def test_record_and_read_back_newest_first(docs):
    first = activity_log.record_activity(activity_log.TEAM_ADDED, "a", {"team_name": "One"})
    second = activity_log.record_activity(activity_log.TEAM_ADDED, "b", {"team_name": "Two"})
    assert first["id"] in docs("activity_logs")
    logs = activity_log.get_activity_logs(limit=10)
    assert [e["id"] for e in logs][:2] in ([second["id"], first["id"]], [first["id"], second["id"]])
    assert len(activity_log.get_activity_logs(limit=1)) == 1


def test_record_activity_logs_store_failure(monkeypatch, caplog):
    import league.docstore_pg as pg

    def boom(*a, **k):
        raise RuntimeError("store down")

    monkeypatch.setattr(pg, "set_document", boom)
    caplog.set_level(logging.ERROR, logger="league.activity_log")
    assert activity_log.record_activity(activity_log.DATA_RESET, "admin") is None
    assert any("Failed to persist activity log entry" in r.getMessage() for r in caplog.records)


def test_category_applies_before_limit(docs):
    from league import docstore

    base = datetime(2025, 11, 1, tzinfo=timezone.utc)
    actions = [activity_log.TEAM_DELETED] + [activity_log.TEAM_EDITED] * 5
    for minute, action in enumerate(actions):
        entry = activity_log.create_log_entry(action, "admin", {"team_name": f"T{minute}"})
        entry["timestamp"] = (base + timedelta(minutes=minute)).isoformat()
        docstore.set_document("activity_logs", entry["id"], entry)

    newest = activity_log.get_activity_logs(limit=1)
    assert [e["action"] for e in newest] == [activity_log.TEAM_EDITED]

    deletions = activity_log.get_activity_logs(limit=1, category="deletions")
    assert [e["action"] for e in deletions] == [activity_log.TEAM_DELETED]
    assert deletions[0]["details"]["team_name"] == "T0"
    assert len(activity_log.get_activity_logs(limit=3, category="unknown")) == 3
