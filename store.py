"""Document store over the ``documents`` table.

Documents are JSON objects addressed by slash-separated paths. Document paths
have an even number of segments (``users/u1``), collection paths an odd number
(``users/u1/transactions``). Every write commits on its own, so a write is
atomic per document and concurrent writers to the same document are
last-write-wins per field.
"""

from __future__ import annotations

import copy
import logging
import operator
import threading
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from models import Document


logger = logging.getLogger(__name__)


class DocumentPathError(ValueError):
    pass


def _split(path: str) -> list[str]:
    parts = path.strip("/").split("/") if path else []
    if not parts or any(not p.strip() for p in parts):
        raise DocumentPathError(f"Invalid path: {path!r}")
    return parts


def document_path(path: str) -> str:
    parts = _split(path)
    if len(parts) % 2:
        raise DocumentPathError(f"Not a document path: {path!r}")
    return "/".join(parts)


def collection_path(path: str) -> str:
    parts = _split(path)
    if not len(parts) % 2:
        raise DocumentPathError(f"Not a collection path: {path!r}")
    return "/".join(parts)


def parent_collection(path: str) -> str:
    return document_path(path).rsplit("/", 1)[0]


@dataclass(frozen=True)
class DocumentSnapshot:
    path: str
    _data: Optional[dict] = field(default=None, repr=False)

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> Optional[dict]:
        return copy.deepcopy(self._data)


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any


Listener = Callable[[DocumentSnapshot], None]


class ChangeFeed:
    """Fan-out of committed document changes to subscribers.

    Listeners registered on a document path see that document; listeners on a
    collection path see every document directly inside it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: dict[str, dict[int, Listener]] = {}
        self._next_id = 0

    def add(self, path: str, listener: Listener) -> Callable[[], None]:
        with self._lock:
            token = self._next_id
            self._next_id += 1
            self._listeners.setdefault(path, {})[token] = listener

        def unsubscribe() -> None:
            with self._lock:
                bucket = self._listeners.get(path)
                if bucket is None:
                    return
                bucket.pop(token, None)
                if not bucket:
                    del self._listeners[path]

        return unsubscribe

    def listener_count(self, path: str) -> int:
        with self._lock:
            return len(self._listeners.get(path, {}))

    def publish(self, snapshot: DocumentSnapshot) -> None:
        with self._lock:
            targets = list(self._listeners.get(snapshot.path, {}).values())
            targets += list(
                self._listeners.get(parent_collection(snapshot.path), {}).values()
            )
        for listener in targets:
            try:
                listener(snapshot)
            except Exception:
                logger.exception(f"change_feed: listener failed path={snapshot.path}")


def deep_merge(base: Mapping[str, Any], patch: Mapping[str, Any]) -> dict:
    merged = copy.deepcopy(dict(base))
    for key, value in patch.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _set_field(data: dict, dotted: str, value: Any) -> None:
    keys = [k for k in dotted.split(".")]
    if any(not k for k in keys):
        raise DocumentPathError(f"Invalid field path: {dotted!r}")
    node = data
    for key in keys[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[keys[-1]] = copy.deepcopy(value)


_OPERATORS: dict[str, Callable[[Any, Any], Any]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def _json_element(field_name: str, sample: Any):
    key = tuple(field_name.split(".")) if "." in field_name else field_name
    element = Document.data[key]
    if isinstance(sample, bool):
        return element.as_boolean()
    if isinstance(sample, int):
        return element.as_integer()
    if isinstance(sample, float):
        return element.as_float()
    return element.as_string()


def _lookup(data: Optional[dict], dotted: str) -> Any:
    node: Any = data
    for key in dotted.split("."):
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def _sort_key(value: Any) -> tuple:
    if value is None:
        return (1, 0)
    return (0, value)


class DocumentStore:
    def __init__(self, session: Session, feed: Optional[ChangeFeed] = None) -> None:
        self.session = session
        self.feed = feed

    def _row(self, path: str) -> Optional[Document]:
        return self.session.scalar(select(Document).where(Document.path == path))

    def snapshot(self, path: str) -> DocumentSnapshot:
        path = document_path(path)
        row = self._row(path)
        return DocumentSnapshot(path, copy.deepcopy(row.data) if row else None)

    def get_document(self, path: str) -> Optional[dict]:
        return self.snapshot(path).to_dict()

    def set_document(
        self, path: str, data: Mapping[str, Any], merge: bool = False
    ) -> None:
        path = document_path(path)
        row = self._row(path)
        if merge and row is not None:
            new_data = deep_merge(row.data or {}, data)
        else:
            new_data = copy.deepcopy(dict(data))
        self._write(path, row, new_data)

    def update_document(self, path: str, fields: Mapping[str, Any]) -> None:
        path = document_path(path)
        row = self._row(path)
        new_data = copy.deepcopy(row.data) if row else {}
        for dotted, value in fields.items():
            _set_field(new_data, dotted, value)
        self._write(path, row, new_data)

    def delete_document(self, path: str) -> bool:
        path = document_path(path)
        result = self.session.execute(delete(Document).where(Document.path == path))
        self.session.commit()
        removed = bool(result.rowcount)
        if removed:
            logger.info(f"store_delete: path={path}")
            self._publish(DocumentSnapshot(path, None))
        return removed

    def query_collection(
        self,
        path: str,
        filters: Iterable[Filter | Sequence[Any]] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[DocumentSnapshot]:
        path = collection_path(path)
        stmt = select(Document).where(Document.collection == path)
        for item in filters:
            flt = item if isinstance(item, Filter) else Filter(*item)
            compare = _OPERATORS.get(flt.op)
            if compare is None:
                raise ValueError(f"Unsupported filter operator: {flt.op}")
            value = flt.value.isoformat() if isinstance(flt.value, date) else flt.value
            stmt = stmt.where(compare(_json_element(flt.field, value), value))
        stmt = stmt.order_by(Document.path.desc() if descending else Document.path)
        if limit is not None and not order_by:
            stmt = stmt.limit(limit)
        snaps = [
            DocumentSnapshot(row.path, copy.deepcopy(row.data))
            for row in self.session.scalars(stmt).all()
        ]
        if order_by:
            # JSON values keep their own type here, so numbers sort numerically
            snaps.sort(
                key=lambda snap: _sort_key(_lookup(snap._data, order_by)),
                reverse=descending,
            )
            if limit is not None:
                snaps = snaps[:limit]
        return snaps

    def subscribe(self, path: str, on_change: Listener) -> Callable[[], None]:
        if self.feed is None:
            raise RuntimeError("Store was created without a change feed")
        parts = _split(path)
        path = "/".join(parts)
        unsubscribe = self.feed.add(path, on_change)
        if len(parts) % 2:
            for snap in self.query_collection(path):
                on_change(snap)
        else:
            on_change(self.snapshot(path))
        return unsubscribe

    def _write(self, path: str, row: Optional[Document], data: dict) -> None:
        if row is None:
            row = Document(path=path, collection=parent_collection(path), data=data)
            self.session.add(row)
        else:
            row.data = data
        self.session.commit()
        logger.info(f"store_write: path={path}")
        self._publish(DocumentSnapshot(path, copy.deepcopy(data)))

    def _publish(self, snapshot: DocumentSnapshot) -> None:
        if self.feed is not None:
            self.feed.publish(snapshot)
