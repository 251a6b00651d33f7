from typing import Any, Callable, Dict, List, Optional, Sequence

# Document store proxy
# Services import this module rather than docstore_pg directly so the
# PostgreSQL client can be swapped (tests patch docstore_pg in place).

from . import docstore_pg as _pg

METADATA_COLLECTION = _pg.METADATA_COLLECTION


def ensure_schema() -> None:
    _pg.ensure_schema()


def get_document(collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
    return _pg.get_document(collection, doc_id)


def list_documents(collection: str, field: Optional[str] = None, value: Any = None) -> List[Dict[str, Any]]:
    return _pg.list_documents(collection, field=field, value=value)


def create_document(collection: str, doc_id: str, data: Dict[str, Any]) -> bool:
    return _pg.create_document(collection, doc_id, data)


def set_document(collection: str, doc_id: str, data: Dict[str, Any]) -> None:
    _pg.set_document(collection, doc_id, data)


def replace_document(
    collection: str,
    doc_id: str,
    data: Dict[str, Any],
    versions: Sequence[Optional[str]],
) -> bool:
    return _pg.replace_document(collection, doc_id, data, versions)


def update_document(
    collection: str,
    doc_id: str,
    fields: Dict[str, Any],
    expected_version: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    return _pg.update_document(collection, doc_id, fields, expected_version=expected_version)


def update_where(collection: str, field: str, value: Any, fields: Dict[str, Any]) -> int:
    return _pg.update_where(collection, field, value, fields)


def delete_document(collection: str, doc_id: str) -> bool:
    return _pg.delete_document(collection, doc_id)


def write_batch(collection: str, documents: Dict[str, Dict[str, Any]]) -> int:
    return _pg.write_batch(collection, documents)


def run_transaction(
    collection: str,
    doc_id: str,
    mutate: Callable[[Dict[str, Any]], Dict[str, Any]],
) -> Optional[Dict[str, Any]]:
    return _pg.run_transaction(collection, doc_id, mutate)


def adjust_counter(name: str, delta: int, actor: str, timestamp: str) -> int:
    return _pg.adjust_counter(name, delta, actor, timestamp)
