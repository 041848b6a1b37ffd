from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Tuple


def _now_ms() -> int:
    return int(time.time() * 1000)


class ServerTimestamp:
    """Placeholder replaced by the store clock when a record is written."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = ServerTimestamp()


@dataclass(frozen=True)
class AppendToSet:
    """Patch value that unions ``values`` into an existing list field."""

    values: Tuple[Any, ...]

    @classmethod
    def of(cls, *values: Any) -> "AppendToSet":
        return cls(values=tuple(values))


def encode_value(value: Any) -> Any:
    """Encode write sentinels into their JSON wire form."""

    if isinstance(value, ServerTimestamp):
        return {"$server_timestamp": True}
    if isinstance(value, AppendToSet):
        return {"$append_to_set": list(value.values)}
    return value


def decode_value(value: Any) -> Any:
    if isinstance(value, dict) and len(value) == 1:
        if value.get("$server_timestamp") is True:
            return SERVER_TIMESTAMP
        values = value.get("$append_to_set")
        if isinstance(values, list):
            return AppendToSet(values=tuple(values))
    return value


def encode_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: encode_value(value) for key, value in fields.items()}


def decode_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: decode_value(value) for key, value in fields.items()}


class DocumentStore:
    """In-memory collections of records with ordered queries.

    Records keep insertion order inside a collection; ``query`` relies on
    that for a stable tie-break between equal ``order_by`` values.
    """

    def __init__(self, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._now = now_func
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def get(self, collection: str, doc_id: str) -> Dict[str, Any] | None:
        record = self._collections.get(collection, {}).get(doc_id)
        if record is None:
            return None
        return {"id": doc_id, **_copy_fields(record)}

    def put(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        _require_name(collection, "collection")
        _require_name(doc_id, "doc_id")
        now_ms = self._now()
        record: Dict[str, Any] = {}
        for key, value in fields.items():
            if isinstance(value, AppendToSet):
                record[key] = _union([], value.values)
            else:
                record[key] = self._resolve(value, now_ms)
        self._collections.setdefault(collection, {})[doc_id] = record

    def patch(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Merge ``fields`` into an existing record.

        ``AppendToSet`` values are unioned into the current list, so applying
        the same patch twice leaves the record unchanged.
        """

        record = self._collections.get(collection, {}).get(doc_id)
        if record is None:
            raise KeyError(f"{collection}/{doc_id}")
        now_ms = self._now()
        for key, value in fields.items():
            if isinstance(value, AppendToSet):
                current = record.get(key)
                record[key] = _union(current if isinstance(current, list) else [], value.values)
            else:
                record[key] = self._resolve(value, now_ms)

    def create(self, collection: str, fields: Dict[str, Any]) -> str:
        doc_id = secrets.token_hex(10)
        while doc_id in self._collections.get(collection, {}):
            doc_id = secrets.token_hex(10)
        self.put(collection, doc_id, fields)
        return doc_id

    def query(self, collection: str, order_by: str) -> List[Dict[str, Any]]:
        """Return records holding ``order_by`` sorted ascending by it."""

        records = [
            {"id": doc_id, **_copy_fields(record)}
            for doc_id, record in self._collections.get(collection, {}).items()
            if record.get(order_by) is not None
        ]
        records.sort(key=lambda record: record[order_by])
        return records

    def _resolve(self, value: Any, now_ms: int) -> Any:
        if isinstance(value, ServerTimestamp):
            return now_ms
        return value


def _union(current: List[Any], values: Tuple[Any, ...]) -> List[Any]:
    merged = list(current)
    for value in values:
        if value not in merged:
            merged.append(value)
    return merged


def _copy_fields(record: Dict[str, Any]) -> Dict[str, Any]:
    return {key: list(value) if isinstance(value, list) else value for key, value in record.items()}


def _require_name(value: str, label: str) -> None:
    if not isinstance(value, str) or not value or "/" in value:
        raise ValueError(f"{label} must be a non-empty name without '/'")
