# relaybot/document_store.py

import copy
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from sqlalchemy.orm import sessionmaker

from relaybot.entities import Document


class DocumentNotFoundError(LookupError):
    pass


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


class Increment:
    def __init__(self, amount: Union[int, float] = 1):
        self.amount = amount


class ArrayUnion:
    def __init__(self, *items: Any):
        self.items = list(items)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _get_path(doc: Mapping[str, Any], path: str) -> Any:
    node: Any = doc
    for part in path.split("."):
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]
    return node


def _resolve(value: Any, current: Any, now: str) -> Any:
    if value is SERVER_TIMESTAMP:
        return now
    if isinstance(value, Increment):
        base = current if isinstance(current, (int, float)) and not isinstance(current, bool) else 0
        return base + value.amount
    if isinstance(value, ArrayUnion):
        merged = list(current) if isinstance(current, list) else []
        for item in value.items:
            if item not in merged:
                merged.append(item)
        return merged
    if isinstance(value, Mapping):
        return {k: _resolve(v, None, now) for k, v in value.items()}
    return value


def _set_path(doc: Dict[str, Any], path: str, value: Any, now: str) -> None:
    parts = path.split(".")
    node = doc
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    leaf = parts[-1]
    node[leaf] = _resolve(value, node.get(leaf), now)


def _deep_merge(target: Dict[str, Any], fields: Mapping[str, Any], now: str) -> None:
    for key, value in fields.items():
        if isinstance(value, Mapping) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value, now)
        else:
            target[key] = _resolve(value, target.get(key), now)


def apply_update(doc: Dict[str, Any], fields: Mapping[str, Any], now: Optional[str] = None) -> Dict[str, Any]:
    """
    Apply an update mapping to a copy of `doc`.

    Keys may be dotted paths ("resources.memoryUsedMB"); values may be
    SERVER_TIMESTAMP, Increment(n) or ArrayUnion(...).
    """
    now = now or utc_now_iso()
    updated = copy.deepcopy(doc)
    for path, value in fields.items():
        _set_path(updated, path, value, now)
    return updated


Fields = Union[Mapping[str, Any], Callable[[Dict[str, Any]], Mapping[str, Any]]]


class DocumentStore:
    """
    Collection/document storage in a single SQLAlchemy table.

    Every call opens and closes its own session. Methods are blocking; async
    callers go through asyncio.to_thread.
    """

    def __init__(self, session_factory: sessionmaker):
        self.SessionFactory = session_factory

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        session = self.SessionFactory()
        try:
            row = session.get(Document, (collection, str(doc_id)))
            return copy.deepcopy(row.data) if row is not None else None
        finally:
            session.close()

    def set(self, collection: str, doc_id: str, fields: Mapping[str, Any], merge: bool = False) -> None:
        now = utc_now_iso()
        session = self.SessionFactory()
        try:
            row = (
                session.query(Document)
                .filter(Document.collection == collection, Document.doc_id == str(doc_id))
                .with_for_update()
                .one_or_none()
            )
            if row is None:
                data: Dict[str, Any] = {}
                _deep_merge(data, fields, now)
                session.add(Document(collection=collection, doc_id=str(doc_id), data=data))
            else:
                data = copy.deepcopy(row.data) if merge else {}
                _deep_merge(data, fields, now)
                row.data = data
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def update(
        self,
        collection: str,
        doc_id: str,
        fields: Fields,
        only_if: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ) -> bool:
        """
        Update an existing document inside one transaction.

        `fields` may be a callable receiving the current document and returning
        the update mapping. When `only_if` rejects the current document nothing
        is written and False is returned. Raises DocumentNotFoundError.
        """
        session = self.SessionFactory()
        try:
            row = (
                session.query(Document)
                .filter(Document.collection == collection, Document.doc_id == str(doc_id))
                .with_for_update()
                .one_or_none()
            )
            if row is None:
                raise DocumentNotFoundError(f"{collection}/{doc_id} not found")

            current = copy.deepcopy(row.data)
            if only_if is not None and not only_if(current):
                session.rollback()
                return False

            changes = fields(current) if callable(fields) else fields
            row.data = apply_update(current, changes)
            session.commit()
            return True
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def delete(self, collection: str, doc_id: str) -> bool:
        session = self.SessionFactory()
        try:
            deleted = (
                session.query(Document)
                .filter(Document.collection == collection, Document.doc_id == str(doc_id))
                .delete()
            )
            session.commit()
            return bool(deleted)
        finally:
            session.close()

    def query(self, collection: str, **criteria: Any) -> List[Dict[str, Any]]:
        """
        Documents of a collection whose top-level fields match. A list or
        tuple criterion means "any of".
        """
        session = self.SessionFactory()
        try:
            rows = (
                session.query(Document)
                .filter(Document.collection == collection)
                .order_by(Document.created_at.asc())
                .all()
            )
            docs = [copy.deepcopy(r.data) for r in rows]
        finally:
            session.close()

        result = []
        for doc in docs:
            matched = True
            for key, expected in criteria.items():
                value = _get_path(doc, key)
                if isinstance(expected, (list, tuple, set)):
                    matched = value in expected
                else:
                    matched = value == expected
                if not matched:
                    break
            if matched:
                result.append(doc)
        return result
