import os
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Sequence

import psycopg2
from psycopg2 import pool as pg_pool
from psycopg2.extras import Json, RealDictCursor, execute_values
from psycopg2 import errors as pg_errors


_POOL: Optional[pg_pool.AbstractConnectionPool] = None

METADATA_COLLECTION = "_metadata"

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    doc_id TEXT NOT NULL,
    data JSONB NOT NULL,
    written_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (collection, doc_id)
)
"""

_INDEX_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_documents_status ON documents (collection, (data->>'status'))",
    "CREATE INDEX IF NOT EXISTS idx_documents_team ON documents (collection, (data->>'team_id'))",
]


def _env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except Exception:
        return default


def _connect_kwargs() -> Dict[str, Any]:
    """Common connection kwargs: connect_timeout + TCP keepalives.

    Defaults:
      - connect_timeout: 10 seconds (overridable via DB_CONNECT_TIMEOUT)
      - keepalives: enabled by default; can be disabled by DB_KEEPALIVES=0
      - keepalive tunables applied if provided (IDLE/INTERVAL/COUNT)
    """
    kwargs: Dict[str, Any] = {}
    ct_env = _env_int("DB_CONNECT_TIMEOUT")
    kwargs["connect_timeout"] = ct_env if ct_env is not None else 10

    ka_env = os.environ.get("DB_KEEPALIVES")
    if ka_env is None:
        kwargs["keepalives"] = 1
    else:
        kwargs["keepalives"] = 0 if str(ka_env).lower() in ("0", "false") else 1

    idle = _env_int("DB_KEEPALIVES_IDLE")
    if idle is not None:
        kwargs["keepalives_idle"] = idle
    interval = _env_int("DB_KEEPALIVES_INTERVAL")
    if interval is not None:
        kwargs["keepalives_interval"] = interval
    count = _env_int("DB_KEEPALIVES_COUNT")
    if count is not None:
        kwargs["keepalives_count"] = count
    return kwargs


def init_pool(minconn: int = 1, maxconn: int = 10) -> None:
    """Initialize a global connection pool using DATABASE_URL.

    Safe to call multiple times; subsequent calls are ignored once a pool exists.
    """
    global _POOL
    if _POOL is not None:
        return
    url = os.environ.get("DATABASE_URL")
    if not url:
        return
    _POOL = pg_pool.ThreadedConnectionPool(minconn, maxconn, dsn=url, **_connect_kwargs())


def _release(conn) -> None:
    # Ensure connection not left in a transaction
    try:
        if getattr(conn, "closed", 0) == 0 and not getattr(conn, "autocommit", False):
            # status 0 = idle, 1 = active, 2 = intrans, 3 = inerror
            if getattr(conn, "status", 0) in (1, 2, 3):
                try:
                    conn.rollback()
                except Exception:
                    pass
    finally:
        _POOL.putconn(conn)


@contextmanager
def _get_conn():
    """Yield a database connection from the pool if available, else direct.

    A pooled connection is pinged before use; a stale one is discarded and
    the checkout retried once. Any exception raised inside the block rolls
    the transaction back before propagating.
    """
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set; configure a PostgreSQL connection string")
    if _POOL is not None:
        retried = False
        while True:
            conn = _POOL.getconn()
            healthy = True
            try:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                try:
                    if not getattr(conn, "autocommit", False):
                        conn.rollback()
                except Exception:
                    pass
            except (psycopg2.OperationalError, psycopg2.InterfaceError):
                healthy = False
            except Exception:
                healthy = False

            if not healthy:
                try:
                    _POOL.putconn(conn, close=True)
                except Exception:
                    pass
                if retried:
                    raise psycopg2.OperationalError("Failed to acquire healthy DB connection after retry")
                retried = True
                continue

            try:
                try:
                    yield conn
                except Exception:
                    try:
                        conn.rollback()
                    except Exception:
                        pass
                    raise
            finally:
                _release(conn)
            break
    else:
        conn = psycopg2.connect(url, **_connect_kwargs())
        try:
            try:
                yield conn
            except Exception:
                try:
                    conn.rollback()
                except Exception:
                    pass
                raise
        finally:
            try:
                conn.close()
            except Exception:
                pass


def ensure_schema() -> None:
    """Create the documents table and its expression indexes if missing."""
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(_SCHEMA_SQL)
        for stmt in _INDEX_SQL:
            cur.execute(stmt)
        conn.commit()


def get_document(collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            "SELECT data FROM documents WHERE collection = %s AND doc_id = %s",
            (collection, doc_id),
        )
        row = cur.fetchone()
        if not row:
            return None
        return row["data"]


def list_documents(
    collection: str,
    field: Optional[str] = None,
    value: Any = None,
) -> List[Dict[str, Any]]:
    """Return every document in ``collection``, optionally where ``field`` equals ``value``.

    Comparison happens on the JSON text form, so integer ids match the
    ``str()`` of the value.
    """
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        try:
            if field is None:
                cur.execute(
                    "SELECT data FROM documents WHERE collection = %s ORDER BY doc_id",
                    (collection,),
                )
            else:
                cur.execute(
                    "SELECT data FROM documents WHERE collection = %s AND data->>%s = %s ORDER BY doc_id",
                    (collection, field, None if value is None else str(value)),
                )
        except Exception as e:
            if isinstance(e, getattr(pg_errors, "UndefinedTable", tuple())):
                return []
            raise
        return [row["data"] for row in cur.fetchall() or []]


def create_document(collection: str, doc_id: str, data: Dict[str, Any]) -> bool:
    """Insert ``data`` only if no document with ``doc_id`` exists.

    Returns False when the id is already taken; the existing document is
    left untouched.
    """
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO documents (collection, doc_id, data)
            VALUES (%s, %s, %s)
            ON CONFLICT (collection, doc_id) DO NOTHING
            RETURNING doc_id
            """,
            (collection, doc_id, Json(data)),
        )
        created = cur.fetchone() is not None
        conn.commit()
    return created


def set_document(collection: str, doc_id: str, data: Dict[str, Any]) -> None:
    """Create or fully replace a document."""
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO documents (collection, doc_id, data)
            VALUES (%s, %s, %s)
            ON CONFLICT (collection, doc_id) DO UPDATE SET
                data = EXCLUDED.data,
                written_at = now()
            """,
            (collection, doc_id, Json(data)),
        )
        conn.commit()


def replace_document(
    collection: str,
    doc_id: str,
    data: Dict[str, Any],
    versions: Sequence[Optional[str]],
) -> bool:
    """Fully replace a document only while its ``updated_at`` is one of ``versions``.

    Returns False when the document is gone or carries another version.
    A missing ``updated_at`` matches a ``None`` entry.
    """
    allowed = [v or "" for v in versions]
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            """
            UPDATE documents
            SET data = %s, written_at = now()
            WHERE collection = %s AND doc_id = %s
              AND COALESCE(data->>'updated_at', '') = ANY(%s)
            RETURNING doc_id
            """,
            (Json(data), collection, doc_id, allowed),
        )
        replaced = cur.fetchone() is not None
        conn.commit()
    return replaced


def update_document(
    collection: str,
    doc_id: str,
    fields: Dict[str, Any],
    expected_version: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """Merge ``fields`` into one document in a single statement.

    When ``expected_version`` is given the merge only applies if the stored
    ``updated_at`` still equals it. Returns the merged document, or None when
    nothing matched (missing document or version mismatch).
    """
    sql = """
        UPDATE documents
        SET data = data || %s, written_at = now()
        WHERE collection = %s AND doc_id = %s
    """
    params: List[Any] = [Json(fields), collection, doc_id]
    if expected_version is not None:
        sql += " AND data->>'updated_at' = %s"
        params.append(expected_version)
    sql += " RETURNING data"
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(sql, tuple(params))
        row = cur.fetchone()
        conn.commit()
    if not row:
        return None
    return row["data"]


def update_where(collection: str, field: str, value: Any, fields: Dict[str, Any]) -> int:
    """Merge ``fields`` into every document whose ``field`` equals ``value``."""
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            """
            UPDATE documents
            SET data = data || %s, written_at = now()
            WHERE collection = %s AND data->>%s = %s
            """,
            (Json(fields), collection, field, str(value)),
        )
        count = cur.rowcount or 0
        conn.commit()
    return int(count)


def delete_document(collection: str, doc_id: str) -> bool:
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            "DELETE FROM documents WHERE collection = %s AND doc_id = %s RETURNING doc_id",
            (collection, doc_id),
        )
        deleted = cur.fetchone() is not None
        conn.commit()
    return deleted


def write_batch(collection: str, documents: Dict[str, Dict[str, Any]]) -> int:
    """Upsert several documents of one collection in a single transaction."""
    if not documents:
        return 0
    rows = [(collection, doc_id, Json(data)) for doc_id, data in documents.items()]
    with _get_conn() as conn, conn.cursor() as cur:
        execute_values(
            cur,
            """
            INSERT INTO documents (collection, doc_id, data)
            VALUES %s
            ON CONFLICT (collection, doc_id) DO UPDATE SET
                data = EXCLUDED.data,
                written_at = now()
            """,
            rows,
        )
        conn.commit()
    return len(rows)


def run_transaction(
    collection: str,
    doc_id: str,
    mutate: Callable[[Dict[str, Any]], Dict[str, Any]],
) -> Optional[Dict[str, Any]]:
    """Read one document under a row lock, merge what ``mutate`` returns, commit.

    ``mutate`` receives the current document and returns the fields to merge;
    raising from it aborts the transaction. Returns None when the document
    does not exist.
    """
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            "SELECT data FROM documents WHERE collection = %s AND doc_id = %s FOR UPDATE",
            (collection, doc_id),
        )
        row = cur.fetchone()
        if not row:
            conn.rollback()
            return None
        current = row["data"]
        fields = mutate(dict(current))
        cur.execute(
            """
            UPDATE documents
            SET data = data || %s, written_at = now()
            WHERE collection = %s AND doc_id = %s
            RETURNING data
            """,
            (Json(fields), collection, doc_id),
        )
        updated = cur.fetchone()
        conn.commit()
    return updated["data"] if updated else None


def adjust_counter(name: str, delta: int, actor: str, timestamp: str) -> int:
    """Atomically add ``delta`` to ``_metadata/{name}`` (floored at zero)."""
    initial = {"count": max(0, int(delta)), "last_updated": timestamp, "last_updated_by": actor}
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            INSERT INTO documents (collection, doc_id, data)
            VALUES (%s, %s, %s)
            ON CONFLICT (collection, doc_id) DO UPDATE SET
                data = documents.data || jsonb_build_object(
                    'count', GREATEST(0, COALESCE((documents.data->>'count')::int, 0) + %s),
                    'last_updated', %s::text,
                    'last_updated_by', %s::text
                ),
                written_at = now()
            RETURNING data
            """,
            (METADATA_COLLECTION, name, Json(initial), int(delta), timestamp, actor),
        )
        row = cur.fetchone()
        conn.commit()
    if not row:
        return 0
    return int((row["data"] or {}).get("count") or 0)
