import importlib

import pytest


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.rowcount = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.conn.executed.append((" ".join(sql.split()), params))
        self.rowcount = self.conn.rowcount

    def fetchone(self):
        return self.conn.rows.pop(0) if self.conn.rows else None

    def fetchall(self):
        rows, self.conn.rows = self.conn.rows, []
        return rows


class FakeConn:
    autocommit = False
    closed = 0
    status = 0

    def __init__(self, rows=None, rowcount=0):
        self.rows = list(rows or [])
        self.rowcount = rowcount
        self.executed = []
        self.commits = 0

    def cursor(self, cursor_factory=None):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        pass


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def getconn(self):
        return self.conn

    def putconn(self, conn, close=False):
        pass


@pytest.fixture()
def pg(monkeypatch):
    import league.docstore_pg as module
    module = importlib.reload(module)
    return module


def _use(monkeypatch, pg, conn):
    monkeypatch.setattr(pg, "_POOL", FakePool(conn))
    return conn


def _statements(conn):
    return [sql for sql, _ in conn.executed if sql != "SELECT 1"]


def test_create_document_is_insert_if_absent(monkeypatch, pg):
    conn = _use(monkeypatch, pg, FakeConn(rows=[]))
    assert pg.create_document("teams", "team-1", {"id": 1}) is False
    (sql,) = _statements(conn)
    assert "ON CONFLICT (collection, doc_id) DO NOTHING" in sql
    assert "RETURNING doc_id" in sql
    assert conn.commits == 1


def test_update_document_checks_version_when_given(monkeypatch, pg):
    conn = _use(monkeypatch, pg, FakeConn(rows=[{"data": {"id": 1, "name": "New"}}]))
    out = pg.update_document("teams", "team-1", {"name": "New"}, expected_version="2025-01-01T00:00:00+00:00")
    assert out == {"id": 1, "name": "New"}
    (sql,) = _statements(conn)
    assert "SET data = data || %s" in sql
    assert "AND data->>'updated_at' = %s" in sql
    params = [p for s, p in conn.executed if s == sql][0]
    assert params[-1] == "2025-01-01T00:00:00+00:00"


def test_update_document_without_version(monkeypatch, pg):
    conn = _use(monkeypatch, pg, FakeConn(rows=[]))
    assert pg.update_document("players", "player-9", {"first_name": "Ann"}) is None
    (sql,) = _statements(conn)
    assert "updated_at" not in sql


def test_list_documents_filters_on_json_text(monkeypatch, pg):
    conn = _use(monkeypatch, pg, FakeConn(rows=[{"data": {"id": 2, "team_id": 1}}]))
    assert pg.list_documents("players", "team_id", 1) == [{"id": 2, "team_id": 1}]
    sql, params = [e for e in conn.executed if e[0] != "SELECT 1"][0]
    assert "data->>%s = %s" in sql
    assert params == ("players", "team_id", "1")


def test_adjust_counter_floors_at_zero(monkeypatch, pg):
    conn = _use(monkeypatch, pg, FakeConn(rows=[{"data": {"count": 0}}]))
    assert pg.adjust_counter("teams-count", -1, "System", "2025-01-01T00:00:00+00:00") == 0
    (sql,) = _statements(conn)
    assert "GREATEST(0" in sql
    params = [p for s, p in conn.executed if s == sql][0]
    assert params[0] == pg.METADATA_COLLECTION
    assert params[1] == "teams-count"


def test_run_transaction_locks_row_and_merges(monkeypatch, pg):
    conn = _use(monkeypatch, pg, FakeConn(rows=[
        {"data": {"status": "open"}},
        {"data": {"status": "accepted"}},
    ]))
    seen = {}

    def mutate(current):
        seen.update(current)
        return {"status": "accepted"}

    assert pg.run_transaction("challenges", "CHALL-2025-001", mutate) == {"status": "accepted"}
    assert seen == {"status": "open"}
    select_sql, update_sql = _statements(conn)
    assert select_sql.endswith("FOR UPDATE")
    assert update_sql.startswith("UPDATE documents")


def test_run_transaction_missing_document(monkeypatch, pg):
    _use(monkeypatch, pg, FakeConn(rows=[]))
    assert pg.run_transaction("challenges", "nope", lambda c: {}) is None


def test_update_where_returns_rowcount(monkeypatch, pg):
    conn = _use(monkeypatch, pg, FakeConn(rowcount=3))
    assert pg.update_where("players", "team_id", 4, {"team_id": None}) == 3
    params = [p for s, p in conn.executed if s != "SELECT 1"][0]
    assert params[1:] == ("players", "team_id", "4")


def test_replace_document_only_over_listed_versions(monkeypatch, pg):
    conn = _use(monkeypatch, pg, FakeConn(rows=[{"doc_id": "team-1"}]))
    assert pg.replace_document("teams", "team-1", {"id": 1}, ("v1", None)) is True
    (sql,) = _statements(conn)
    assert sql.startswith("UPDATE documents SET data = %s")
    assert "COALESCE(data->>'updated_at', '') = ANY(%s)" in sql
    params = [p for s, p in conn.executed if s == sql][0]
    assert params[-1] == ["v1", ""]
    assert conn.commits == 1


def test_replace_document_reports_version_mismatch(monkeypatch, pg):
    conn = _use(monkeypatch, pg, FakeConn(rows=[]))
    assert pg.replace_document("teams", "team-1", {"id": 1}, ("v1",)) is False
    assert len(_statements(conn)) == 1
