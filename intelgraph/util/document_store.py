"""
MODULE: Document Store
DESCRIPTION: Collection-scoped document access on top of Neo4j.

Every collection is a node label and every document a node keyed by one
property (usually "id"). The pipeline only needs five primitives:

    upsert(collection, docs, key_field)   merge-by-key, partial updates allowed
    get(collection, key, key_field)       single document or None
    query(collection, filters, order_by, limit)
    delete(collection, keys, key_field)   batched delete-by-key
    ensure_indexes(collections)           uniqueness constraints on the key

Neo4j properties cannot hold maps, so dict values (and lists of dicts) are stored
as JSON strings under "<field>__json" and decoded on read. A None value removes
the property, which is what "IS NULL" filters expect.
"""

import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from intelgraph.util.neo4j_client import Neo4jClient

logger = logging.getLogger(__name__)

JSON_SUFFIX = "__json"
WRITE_BATCH_SIZE = 250

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class Op(str, Enum):
    EQ = "=="
    GTE = ">="
    LTE = "<="
    IS_NULL = "is_null"
    ARRAY_CONTAINS_ANY = "array_contains_any"


@dataclass(frozen=True)
class Filter:
    field: str
    op: Op
    value: Any = None


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


class DocumentStore(Protocol):
    """Datastore contract used by every pipeline stage."""

    def upsert(self, collection: str, docs: Sequence[Dict[str, Any]], key_field: str = "id") -> int: ...

    def get(self, collection: str, key: str, key_field: str = "id") -> Optional[Dict[str, Any]]: ...

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]: ...

    def delete(self, collection: str, keys: Sequence[str], key_field: str = "id") -> int: ...


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name or ""):
        raise ValueError(f"Invalid collection or field name: {name!r}")
    return name


def _is_nested(value: Any) -> bool:
    if isinstance(value, dict):
        return True
    if isinstance(value, (list, tuple)):
        return any(isinstance(v, (dict, list, tuple)) for v in value)
    return False


def _json_default(value: Any):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def encode_document(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a document into Neo4j-storable properties."""
    props = {}
    for key, value in doc.items():
        _check_identifier(key)
        if isinstance(value, Enum):
            value = value.value
        if _is_nested(value):
            props[f"{key}{JSON_SUFFIX}"] = json.dumps(value, default=_json_default)
        else:
            props[key] = list(value) if isinstance(value, tuple) else value
    return props


def _to_native(value: Any) -> Any:
    # neo4j.time.DateTime / Date expose to_native()
    if hasattr(value, "to_native"):
        return value.to_native()
    return value


def chunked(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def decode_document(props: Dict[str, Any]) -> Dict[str, Any]:
    doc = {}
    for key, value in props.items():
        if key.endswith(JSON_SUFFIX):
            doc[key[: -len(JSON_SUFFIX)]] = json.loads(value) if value else None
        elif isinstance(value, list):
            doc[key] = [_to_native(v) for v in value]
        else:
            doc[key] = _to_native(value)
    return doc


class Neo4jDocumentStore:
    """DocumentStore backed by Neo4j nodes."""

    def __init__(self, neo4j: Optional[Neo4jClient] = None, batch_size: int = WRITE_BATCH_SIZE):
        if neo4j is None:
            from intelgraph.util.services import get_services
            neo4j = get_services().neo4j
        self.neo4j = neo4j
        self.batch_size = batch_size

    def ensure_indexes(self, key_fields: Dict[str, str]) -> None:
        """Create a uniqueness constraint per collection key (idempotent)."""
        for collection, key_field in key_fields.items():
            label = _check_identifier(collection)
            key = _check_identifier(key_field)
            self.neo4j.query(
                f"CREATE CONSTRAINT {label.lower()}_{key}_unique IF NOT EXISTS "
                f"FOR (n:`{label}`) REQUIRE n.`{key}` IS UNIQUE"
            )

    def upsert(self, collection: str, docs: Sequence[Dict[str, Any]], key_field: str = "id") -> int:
        label = _check_identifier(collection)
        key = _check_identifier(key_field)
        rows = []
        for doc in docs:
            if not doc.get(key_field):
                logger.warning(f"Skipping {collection} document without '{key_field}'")
                continue
            props = encode_document(doc)
            rows.append({"key": props.pop(key), "props": props})

        for batch in chunked(rows, self.batch_size):
            self.neo4j.query(f"""
                UNWIND $rows AS row
                MERGE (n:`{label}` {{`{key}`: row.key}})
                SET n += row.props
            """, {"rows": batch})
        if rows:
            logger.debug(f"Upserted {len(rows)} documents into {collection}")
        return len(rows)

    def get(self, collection: str, key: str, key_field: str = "id") -> Optional[Dict[str, Any]]:
        label = _check_identifier(collection)
        field = _check_identifier(key_field)
        result = self.neo4j.query(
            f"MATCH (n:`{label}` {{`{field}`: $key}}) RETURN properties(n) AS doc LIMIT 1",
            {"key": key},
        )
        return decode_document(result[0]["doc"]) if result else None

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        label = _check_identifier(collection)
        clauses = []
        params: Dict[str, Any] = {}

        for i, flt in enumerate(filters):
            field = _check_identifier(flt.field)
            param = f"p{i}"
            value = flt.value.value if isinstance(flt.value, Enum) else flt.value
            if flt.op == Op.EQ:
                clauses.append(f"n.`{field}` = ${param}")
                params[param] = value
            elif flt.op == Op.GTE:
                clauses.append(f"n.`{field}` >= ${param}")
                params[param] = value
            elif flt.op == Op.LTE:
                clauses.append(f"n.`{field}` <= ${param}")
                params[param] = value
            elif flt.op == Op.IS_NULL:
                clauses.append(f"n.`{field}` IS NULL")
            elif flt.op == Op.ARRAY_CONTAINS_ANY:
                clauses.append(f"any(x IN coalesce(n.`{field}`, []) WHERE x IN ${param})")
                params[param] = list(value or [])
            else:
                raise ValueError(f"Unsupported filter operator: {flt.op}")

        cypher = f"MATCH (n:`{label}`)"
        if clauses:
            cypher += " WHERE " + " AND ".join(clauses)
        cypher += " RETURN properties(n) AS doc"
        if order_by:
            direction = "DESC" if order_by.descending else "ASC"
            cypher += f" ORDER BY n.`{_check_identifier(order_by.field)}` {direction}"
        if limit is not None:
            cypher += " LIMIT $limit"
            params["limit"] = int(limit)

        return [decode_document(row["doc"]) for row in self.neo4j.query(cypher, params)]

    def delete(self, collection: str, keys: Sequence[str], key_field: str = "id") -> int:
        label = _check_identifier(collection)
        field = _check_identifier(key_field)
        keys = [k for k in keys if k]
        for batch in chunked(keys, self.batch_size):
            self.neo4j.query(f"""
                UNWIND $keys AS k
                MATCH (n:`{label}` {{`{field}`: k}})
                DETACH DELETE n
            """, {"keys": batch})
        return len(keys)

