# HybridSQL - Schema Registry
# ===========================
"""
Schema Registry
===============
Deduplicates full schema descriptions by content hash so that pipeline
stages pass a small SchemaReference around instead of the schema itself.

Schema text is JSON of the form::

    {
        "companies": {
            "columns": {
                "id": {"type": "INTEGER", "primaryKey": true},
                "name": {"type": "VARCHAR", "indexed": true},
                "description": {"type": "VARCHAR", "vectorized": true},
                "founded": "DATE"
            },
            "vectorizedFields": ["description"]
        }
    }
"""

import json
import time
import hashlib
import logging
from collections import OrderedDict
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional

from .errors import SchemaParseError
from .models import SchemaEntry, SchemaMetadata, SchemaReference

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0"


def schema_hash(schema_text: str) -> str:
    """Content hash used as schema_id."""
    return hashlib.md5(schema_text.encode()).hexdigest()


def extract_metadata(schema: Dict[str, Any]) -> SchemaMetadata:
    """
    Build the metadata summary for a parsed schema.

    Args:
        schema: Parsed schema dict (table name -> table definition)

    Returns:
        SchemaMetadata with tables, field counts, indexed and vectorized fields
    """
    metadata = SchemaMetadata(tables=list(schema.keys()))

    for table_name, table_def in schema.items():
        if not isinstance(table_def, dict):
            continue

        columns = table_def.get('columns', {})
        if isinstance(columns, list):
            # ["id", "name"] shorthand
            columns = {c: {} for c in columns}
        elif not isinstance(columns, dict):
            raise SchemaParseError(
                f"columns of table '{table_name}' must be an object or a list, "
                f"got {type(columns).__name__}"
            )

        metadata.total_fields += len(columns)

        vectorized: List[str] = []
        for col_name, col_def in columns.items():
            if not isinstance(col_def, dict):
                continue
            if col_def.get('indexed') or col_def.get('primaryKey'):
                metadata.indexed_fields.append(f"{table_name}.{col_name}")
            if col_def.get('vectorized'):
                vectorized.append(col_name)

        for col_name in table_def.get('vectorizedFields', []):
            if col_name not in vectorized:
                vectorized.append(col_name)

        if vectorized:
            metadata.vectorized_fields[table_name] = vectorized

    return metadata


class SchemaRegistry:
    """
    Content-addressed store of parsed schemas.

    Registering the same text twice returns the same reference and parses
    only once. With max_entries set, the least recently used schema is
    evicted when the registry is full; by default it only shrinks on clear().
    """

    def __init__(self, max_entries: Optional[int] = None):
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, SchemaEntry]" = OrderedDict()
        self._refs: Dict[str, SchemaReference] = {}
        self._lock = Lock()

    def register(self, schema_text: str) -> SchemaReference:
        """
        Register a schema description.

        Args:
            schema_text: JSON schema text

        Returns:
            SchemaReference (identical for identical text)

        Raises:
            SchemaParseError: If the text is not a JSON object
        """
        schema_id = schema_hash(schema_text)

        with self._lock:
            ref = self._refs.get(schema_id)
            if ref is not None:
                self._entries.move_to_end(schema_id)
                logger.debug(f"Schema {schema_id[:8]} already registered")
                return ref

        try:
            parsed = json.loads(schema_text)
        except (TypeError, ValueError) as e:
            raise SchemaParseError(str(e)) from e
        if not isinstance(parsed, dict):
            raise SchemaParseError("top level must be an object of tables")

        entry = SchemaEntry(
            full_schema=parsed,
            metadata=extract_metadata(parsed),
            parsed_at=time.time()
        )

        with self._lock:
            # Another thread may have registered the same text meanwhile
            ref = self._refs.get(schema_id)
            if ref is not None:
                return ref

            ref = SchemaReference(
                schema_id=schema_id,
                version=SCHEMA_VERSION,
                timestamp=entry.parsed_at
            )
            self._entries[schema_id] = entry
            self._refs[schema_id] = ref
            self._evict_locked()

        logger.info(
            f"Registered schema {schema_id[:8]}: {len(entry.metadata.tables)} tables, "
            f"{entry.metadata.total_fields} fields"
        )
        return ref

    def _evict_locked(self):
        if not self.max_entries:
            return
        while len(self._entries) > self.max_entries:
            evicted_id, _ = self._entries.popitem(last=False)
            self._refs.pop(evicted_id, None)
            logger.info(f"Evicted schema {evicted_id[:8]} (registry full)")

    def _get_entry(self, schema_id: str) -> Optional[SchemaEntry]:
        with self._lock:
            entry = self._entries.get(schema_id)
            if entry is not None:
                self._entries.move_to_end(schema_id)
            return entry

    def get_reference(self, schema_id: str) -> Optional[SchemaReference]:
        with self._lock:
            return self._refs.get(schema_id)

    def get_schema(self, schema_id: str) -> Optional[Dict[str, Any]]:
        """Full parsed schema, or None if unknown."""
        entry = self._get_entry(schema_id)
        return entry.full_schema if entry else None

    def get_filtered_schema(self, schema_id: str,
                            table_names: Iterable[str]) -> Optional[Dict[str, Any]]:
        """
        Project a schema onto the requested tables.

        Unknown tables are omitted. Returns None only for an unknown schema_id.
        """
        entry = self._get_entry(schema_id)
        if entry is None:
            return None
        return {
            name: entry.full_schema[name]
            for name in table_names
            if name in entry.full_schema
        }

    def get_metadata(self, schema_id: str) -> Optional[SchemaMetadata]:
        entry = self._get_entry(schema_id)
        return entry.metadata if entry else None

    def clear(self):
        """Remove all registered schemas."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._refs.clear()
        logger.info(f"Schema registry cleared ({count} schemas)")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, schema_id: str) -> bool:
        with self._lock:
            return schema_id in self._entries
