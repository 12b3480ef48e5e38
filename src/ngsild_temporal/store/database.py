"""
SQLite database handler for entities and their attribute instances.
"""

import json
import math
import re
import sqlite3
import threading
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Any, NamedTuple, Optional
from uuid import UUID, uuid4

import numpy as np
from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ngsild_temporal.config import get_logger
from ngsild_temporal.jsonld import NGSILD_PREFIX
from ngsild_temporal.temporal.models import (
    Aggregate,
    AggregatedAttributeInstanceResult,
    AggregatedScopeInstanceResult,
    AggregateResult,
    Attribute,
    AttributeInstanceResult,
    AttributeType,
    AttributeValueType,
    EntitiesQuery,
    EntityPayload,
    FullAttributeInstanceResult,
    FullScopeInstanceResult,
    ScopeInstanceResult,
    SimplifiedAttributeInstanceResult,
    SimplifiedScopeInstanceResult,
    TemporalEntitiesQuery,
    TemporalProperty,
    TemporalQuery,
    Timerel,
)
from ngsild_temporal.temporal.query_utils import parse_aggr_period_duration
from .base import TemporalStore

logger = get_logger(__name__)

# Fixed width UTC format, so that stored times sort lexicographically
DB_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

NGSILD_SCOPE_PROPERTY = NGSILD_PREFIX + "scope"
DATASET_ID_NONE = "@none"

write_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_exception_type(sqlite3.OperationalError),
    reraise=True
)


def to_db_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(DB_TIME_FORMAT)


def from_db_time(value: str) -> datetime:
    return datetime.strptime(value, DB_TIME_FORMAT).replace(tzinfo=UTC)


def _regexp(pattern: str, value: Optional[str]) -> bool:
    return value is not None and re.search(pattern, value) is not None


class _Sample(NamedTuple):
    """One stored value, as seen by the aggregation."""
    time: datetime
    value: Any
    measured_value: Optional[float]


class TemporalDB(TemporalStore):
    """SQLite database handler storing entities, attributes and attribute instances."""

    def __init__(self, db_path: Path):
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # requests are served from a thread pool, access is serialized by the lock
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.create_function("REGEXP", 2, _regexp)
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.RLock()
        self._initialize_schema()

    def _initialize_schema(self):
        """Create the database schema if it doesn't exist."""
        cursor = self.conn.cursor()

        # Entities table (core data only, attributes live in their own tables)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS entity_payload (
                entity_id TEXT PRIMARY KEY,
                types TEXT NOT NULL,
                scopes TEXT,
                created_at TEXT NOT NULL,
                modified_at TEXT,
                payload TEXT NOT NULL DEFAULT '{}'
            )
        """)

        # Attributes table (one row per attribute name and dataset id)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS temporal_entity_attribute (
                id TEXT PRIMARY KEY,
                entity_id TEXT NOT NULL,
                attribute_name TEXT NOT NULL,
                attribute_type TEXT NOT NULL,
                attribute_value_type TEXT NOT NULL,
                dataset_id TEXT,
                created_at TEXT NOT NULL,
                modified_at TEXT,
                FOREIGN KEY (entity_id) REFERENCES entity_payload(entity_id) ON DELETE CASCADE
            )
        """)

        # Attribute instances table (one row per instance and temporal property)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS attribute_instance (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                temporal_entity_attribute TEXT NOT NULL,
                instance_id TEXT NOT NULL,
                time TEXT NOT NULL,
                time_property TEXT NOT NULL,
                value TEXT,
                measured_value REAL,
                payload TEXT NOT NULL,
                sub TEXT,
                FOREIGN KEY (temporal_entity_attribute)
                    REFERENCES temporal_entity_attribute(id) ON DELETE CASCADE
            )
        """)

        # Scope history table
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS scope_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                entity_id TEXT NOT NULL,
                value TEXT NOT NULL,
                time TEXT NOT NULL,
                time_property TEXT NOT NULL,
                sub TEXT,
                FOREIGN KEY (entity_id) REFERENCES entity_payload(entity_id) ON DELETE CASCADE
            )
        """)

        # Create indexes for faster queries
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_tea_entity_name_dataset
            ON temporal_entity_attribute(entity_id, attribute_name, IFNULL(dataset_id, ''))
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_attribute_instance_tea_time
            ON attribute_instance(temporal_entity_attribute, time_property, time)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_scope_history_entity_time
            ON scope_history(entity_id, time_property, time)
        """)

        self.conn.commit()

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def entity_exists(self, entity_id: str) -> bool:
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT 1 FROM entity_payload WHERE entity_id = ?", (entity_id,))
            return cursor.fetchone() is not None

    def retrieve_entity(self, entity_id: str) -> Optional[EntityPayload]:
        """Get the core data of an entity."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM entity_payload WHERE entity_id = ?", (entity_id,))
            row = cursor.fetchone()

        if row:
            return EntityPayload(
                entity_id=row["entity_id"],
                types=json.loads(row["types"]),
                scopes=json.loads(row["scopes"]) if row["scopes"] else None,
                created_at=from_db_time(row["created_at"]),
                modified_at=from_db_time(row["modified_at"]) if row["modified_at"] else None,
                payload=json.loads(row["payload"]),
            )
        return None

    def _entities_conditions(
        self, entities_query: EntitiesQuery, access_right_filter: Optional[str]
    ) -> tuple[str, list[Any]]:
        conditions: list[str] = []
        params: list[Any] = []

        if entities_query.ids:
            ids = sorted(entities_query.ids)
            conditions.append(f"entity_id IN ({', '.join('?' * len(ids))})")
            params.extend(ids)

        if entities_query.types:
            types = sorted(entities_query.types)
            conditions.append(
                "EXISTS (SELECT 1 FROM json_each(entity_payload.types) "
                f"WHERE json_each.value IN ({', '.join('?' * len(types))}))"
            )
            params.extend(types)

        if entities_query.id_pattern:
            conditions.append("entity_id REGEXP ?")
            params.append(entities_query.id_pattern)

        if entities_query.attrs:
            attrs = sorted(entities_query.attrs)
            attrs_condition = (
                "EXISTS (SELECT 1 FROM temporal_entity_attribute tea "
                "WHERE tea.entity_id = entity_payload.entity_id "
                f"AND tea.attribute_name IN ({', '.join('?' * len(attrs))}))"
            )
            if NGSILD_SCOPE_PROPERTY in entities_query.attrs:
                attrs_condition = f"({attrs_condition} OR entity_payload.scopes IS NOT NULL)"
            conditions.append(attrs_condition)
            params.extend(attrs)

        if access_right_filter:
            conditions.append(f"({access_right_filter})")

        return " AND ".join(conditions) or "1 = 1", params

    def query_entities(
        self, entities_query: EntitiesQuery, access_right_filter: Optional[str] = None
    ) -> list[str]:
        """Get the ids of the entities matching a query, for the requested page."""
        where, params = self._entities_conditions(entities_query, access_right_filter)
        pagination = entities_query.pagination
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(
                f"""
                SELECT entity_id FROM entity_payload
                WHERE {where}
                ORDER BY entity_id
                LIMIT ? OFFSET ?
            """,
                (*params, pagination.limit, pagination.offset),
            )
            return [row["entity_id"] for row in cursor.fetchall()]

    def count_entities(
        self, entities_query: EntitiesQuery, access_right_filter: Optional[str] = None
    ) -> int:
        where, params = self._entities_conditions(entities_query, access_right_filter)
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(f"SELECT COUNT(*) AS count FROM entity_payload WHERE {where}", params)
            return cursor.fetchone()["count"]

    # ------------------------------------------------------------------
    # Attributes
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_attribute(row: sqlite3.Row) -> Attribute:
        return Attribute(
            id=UUID(row["id"]),
            entity_id=row["entity_id"],
            attribute_name=row["attribute_name"],
            attribute_type=AttributeType(row["attribute_type"]),
            attribute_value_type=AttributeValueType(row["attribute_value_type"]),
            dataset_id=row["dataset_id"],
            created_at=from_db_time(row["created_at"]),
        )

    def _select_attributes(
        self,
        entity_ids: list[str],
        attrs: frozenset[str],
        dataset_ids: frozenset[str],
    ) -> list[Attribute]:
        if not entity_ids:
            return []

        conditions = [f"entity_id IN ({', '.join('?' * len(entity_ids))})"]
        params: list[Any] = list(entity_ids)

        if attrs:
            conditions.append(f"attribute_name IN ({', '.join('?' * len(attrs))})")
            params.extend(sorted(attrs))

        if dataset_ids:
            dataset_conditions = []
            named_dataset_ids = sorted(d for d in dataset_ids if d != DATASET_ID_NONE)
            if named_dataset_ids:
                dataset_conditions.append(
                    f"dataset_id IN ({', '.join('?' * len(named_dataset_ids))})"
                )
                params.extend(named_dataset_ids)
            if DATASET_ID_NONE in dataset_ids:
                dataset_conditions.append("dataset_id IS NULL")
            conditions.append(f"({' OR '.join(dataset_conditions)})")

        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(
                f"""
                SELECT * FROM temporal_entity_attribute
                WHERE {' AND '.join(conditions)}
                ORDER BY entity_id, attribute_name, IFNULL(dataset_id, '')
            """,
                params,
            )
            return [self._row_to_attribute(row) for row in cursor.fetchall()]

    def get_attributes_for_entity(
        self,
        entity_id: str,
        attrs: frozenset[str] = frozenset(),
        dataset_ids: frozenset[str] = frozenset(),
    ) -> list[Attribute]:
        return self._select_attributes([entity_id], attrs, dataset_ids)

    def get_attributes_for_entities(
        self, entity_ids: list[str], entities_query: EntitiesQuery
    ) -> list[Attribute]:
        return self._select_attributes(entity_ids, entities_query.attrs, entities_query.dataset_ids)

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    @staticmethod
    def _timerel_condition(temporal_query: TemporalQuery) -> tuple[list[str], list[Any]]:
        match temporal_query.timerel:
            case Timerel.BEFORE:
                return ["time < ?"], [to_db_time(temporal_query.time_at)]
            case Timerel.AFTER:
                return ["time >= ?"], [to_db_time(temporal_query.time_at)]
            case Timerel.BETWEEN:
                return (
                    ["time >= ?", "time < ?"],
                    [to_db_time(temporal_query.time_at), to_db_time(temporal_query.end_time_at)],
                )
            case _:
                return [], []

    def _select_rows(
        self,
        table: str,
        key_column: str,
        key: str,
        columns: str,
        temporal_query: TemporalQuery,
        limit: Optional[int],
    ) -> list[sqlite3.Row]:
        """
        Select the rows of one attribute (or one entity scope) within the query window.

        Rows are returned in ascending time order. With a limit and lastN the
        most recent rows are selected.
        """
        conditions = [f"{key_column} = ?", "time_property = ?"]
        params: list[Any] = [key, temporal_query.timeproperty.value]
        timerel_conditions, timerel_params = self._timerel_condition(temporal_query)
        conditions.extend(timerel_conditions)
        params.extend(timerel_params)

        most_recent_first = limit is not None and temporal_query.has_last_n()
        sql = (
            f"SELECT {columns} FROM {table} WHERE {' AND '.join(conditions)} "
            f"ORDER BY time {'DESC' if most_recent_first else 'ASC'}, id"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(sql, params)
            rows = cursor.fetchall()

        if most_recent_first:
            rows.reverse()
        return rows

    def search_instances(
        self,
        query: TemporalEntitiesQuery,
        attributes: list[Attribute],
        origin: Optional[datetime] = None,
    ) -> list[AttributeInstanceResult]:
        """Get the instances of attributes matching a temporal query."""
        temporal_query = query.temporal_query
        results: list[AttributeInstanceResult] = []

        for attribute in attributes:
            if query.with_aggregated_values:
                rows = self._select_rows(
                    "attribute_instance", "temporal_entity_attribute", str(attribute.id),
                    "time, value, measured_value", temporal_query, None,
                )
                samples = [
                    _Sample(from_db_time(row["time"]), json.loads(row["value"]), row["measured_value"])
                    for row in rows
                ]
                buckets = aggregate_samples(samples, temporal_query, origin)
                results.extend(
                    AggregatedAttributeInstanceResult(attribute_uuid=attribute.id, values=values)
                    for values in buckets
                )
                continue

            rows = self._select_rows(
                "attribute_instance", "temporal_entity_attribute", str(attribute.id),
                "time, value, payload, sub", temporal_query, temporal_query.instance_limit,
            )
            for row in rows:
                if query.with_temporal_values:
                    results.append(
                        SimplifiedAttributeInstanceResult(
                            attribute_uuid=attribute.id,
                            value=json.loads(row["value"]),
                            time=from_db_time(row["time"]),
                        )
                    )
                else:
                    results.append(
                        FullAttributeInstanceResult(
                            attribute_uuid=attribute.id,
                            payload=json.loads(row["payload"]),
                            time=from_db_time(row["time"]),
                            timeproperty=temporal_query.timeproperty,
                            sub=row["sub"],
                        )
                    )

        logger.debug(f"Found {len(results)} instances for {len(attributes)} attributes")
        return results

    def select_oldest_date(
        self, temporal_query: TemporalQuery, attributes: list[Attribute]
    ) -> Optional[datetime]:
        if not attributes:
            return None
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(
                f"""
                SELECT MIN(time) AS oldest FROM attribute_instance
                WHERE temporal_entity_attribute IN ({', '.join('?' * len(attributes))})
                AND time_property = ?
            """,
                (*[str(attribute.id) for attribute in attributes], temporal_query.timeproperty.value),
            )
            row = cursor.fetchone()
        return from_db_time(row["oldest"]) if row and row["oldest"] else None

    # ------------------------------------------------------------------
    # Scope history
    # ------------------------------------------------------------------

    def retrieve_scope_history(
        self,
        entity_ids: list[str],
        query: TemporalEntitiesQuery,
        origin: Optional[datetime] = None,
    ) -> dict[str, list[ScopeInstanceResult]]:
        temporal_query = query.temporal_query
        history: dict[str, list[ScopeInstanceResult]] = {}

        for entity_id in entity_ids:
            if query.with_aggregated_values:
                rows = self._select_rows(
                    "scope_history", "entity_id", entity_id, "id, time, value",
                    temporal_query, None,
                )
                samples = [_Sample(from_db_time(row["time"]), json.loads(row["value"]), None) for row in rows]
                instances: list[ScopeInstanceResult] = [
                    AggregatedScopeInstanceResult(entity_id=entity_id, values=values)
                    for values in aggregate_samples(samples, temporal_query, origin)
                ]
            else:
                rows = self._select_rows(
                    "scope_history", "entity_id", entity_id, "id, time, value",
                    temporal_query, temporal_query.instance_limit,
                )
                if query.with_temporal_values:
                    instances = [
                        SimplifiedScopeInstanceResult(
                            entity_id=entity_id,
                            scopes=json.loads(row["value"]),
                            time=from_db_time(row["time"]),
                        )
                        for row in rows
                    ]
                else:
                    instances = [
                        FullScopeInstanceResult(
                            entity_id=entity_id,
                            scopes=json.loads(row["value"]),
                            time=from_db_time(row["time"]),
                            timeproperty=temporal_query.timeproperty,
                        )
                        for row in rows
                    ]
            if instances:
                history[entity_id] = instances

        return history

    def select_oldest_scope_date(
        self, entity_id: str, timeproperty: TemporalProperty
    ) -> Optional[datetime]:
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                SELECT MIN(time) AS oldest FROM scope_history
                WHERE entity_id = ? AND time_property = ?
            """,
                (entity_id, timeproperty.value),
            )
            row = cursor.fetchone()
        return from_db_time(row["oldest"]) if row and row["oldest"] else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _insert_scope_history(
        self,
        entity_id: str,
        scopes: list[str],
        time: datetime,
        timeproperty: TemporalProperty,
        sub: Optional[str],
    ):
        self.conn.execute(
            """
            INSERT INTO scope_history (entity_id, value, time, time_property, sub)
            VALUES (?, ?, ?, ?, ?)
        """,
            (entity_id, json.dumps(scopes), to_db_time(time), timeproperty.value, sub),
        )

    @write_retry
    def create_entity(
        self,
        entity_id: str,
        types: list[str],
        scopes: Optional[list[str]] = None,
        sub: Optional[str] = None,
    ) -> None:
        now = datetime.now(UTC)
        with self._lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO entity_payload (entity_id, types, scopes, created_at)
                VALUES (?, ?, ?, ?)
            """,
                (entity_id, json.dumps(types), json.dumps(scopes) if scopes else None, to_db_time(now)),
            )
            if scopes:
                self._insert_scope_history(entity_id, scopes, now, TemporalProperty.CREATED_AT, sub)
        logger.info(f"Created temporal entity {entity_id}")

    @write_retry
    def update_entity(
        self,
        entity_id: str,
        types: list[str],
        scopes: Optional[list[str]] = None,
        sub: Optional[str] = None,
    ) -> None:
        now = datetime.now(UTC)
        with self._lock, self.conn:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT types, scopes FROM entity_payload WHERE entity_id = ?", (entity_id,)
            )
            row = cursor.fetchone()
            if row is None:
                return

            current_types = json.loads(row["types"])
            merged_types = current_types + [t for t in types if t not in current_types]
            current_scopes = json.loads(row["scopes"]) if row["scopes"] else None
            new_scopes = current_scopes
            if scopes and scopes != current_scopes:
                new_scopes = scopes
                self._insert_scope_history(entity_id, scopes, now, TemporalProperty.MODIFIED_AT, sub)

            cursor.execute(
                """
                UPDATE entity_payload SET types = ?, scopes = ?, modified_at = ?
                WHERE entity_id = ?
            """,
                (
                    json.dumps(merged_types),
                    json.dumps(new_scopes) if new_scopes else None,
                    to_db_time(now),
                    entity_id,
                ),
            )

    def _get_or_create_attribute(
        self,
        entity_id: str,
        attribute_name: str,
        attribute_type: AttributeType,
        value: Any,
        dataset_id: Optional[str],
        now: datetime,
    ) -> tuple[str, bool]:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT id FROM temporal_entity_attribute
            WHERE entity_id = ? AND attribute_name = ? AND IFNULL(dataset_id, '') = IFNULL(?, '')
        """,
            (entity_id, attribute_name, dataset_id),
        )
        row = cursor.fetchone()
        if row:
            cursor.execute(
                "UPDATE temporal_entity_attribute SET modified_at = ? WHERE id = ?",
                (to_db_time(now), row["id"]),
            )
            return row["id"], False

        attribute_id = str(uuid4())
        cursor.execute(
            """
            INSERT INTO temporal_entity_attribute
            (id, entity_id, attribute_name, attribute_type, attribute_value_type, dataset_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
            (
                attribute_id,
                entity_id,
                attribute_name,
                attribute_type.value,
                infer_value_type(attribute_type, value).value,
                dataset_id,
                to_db_time(now),
            ),
        )
        return attribute_id, True

    @write_retry
    def append_instances(
        self,
        entity_id: str,
        attributes: dict[str, list[dict[str, Any]]],
        sub: Optional[str] = None,
    ) -> int:
        """Append attribute instances to an entity."""
        now = datetime.now(UTC)
        appended = 0
        with self._lock, self.conn:
            cursor = self.conn.cursor()
            for attribute_name, instances in attributes.items():
                for instance in instances:
                    attribute_type = AttributeType(instance.get("type", AttributeType.PROPERTY.value))
                    value = instance.get(attribute_type.value_member())
                    attribute_id, created = self._get_or_create_attribute(
                        entity_id, attribute_name, attribute_type, value, instance.get("datasetId"), now
                    )

                    payload = dict(instance)
                    payload.setdefault("instanceId", f"urn:ngsi-ld:Instance:{uuid4()}")
                    measured_value = (
                        float(value)
                        if isinstance(value, (int, float)) and not isinstance(value, bool)
                        else None
                    )

                    times = [
                        (TemporalProperty.CREATED_AT if created else TemporalProperty.MODIFIED_AT, now)
                    ]
                    if instance.get("observedAt"):
                        times.insert(
                            0, (TemporalProperty.OBSERVED_AT, date_parser.isoparse(instance["observedAt"]))
                        )

                    for timeproperty, time in times:
                        cursor.execute(
                            """
                            INSERT INTO attribute_instance
                            (temporal_entity_attribute, instance_id, time, time_property,
                             value, measured_value, payload, sub)
                            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                            (
                                attribute_id,
                                payload["instanceId"],
                                to_db_time(time),
                                timeproperty.value,
                                json.dumps(value),
                                measured_value,
                                json.dumps(payload),
                                sub,
                            ),
                        )
                    appended += 1

            cursor.execute(
                "UPDATE entity_payload SET modified_at = ? WHERE entity_id = ?",
                (to_db_time(now), entity_id),
            )

        logger.debug(f"Appended {appended} instances to entity {entity_id}")
        return appended

    @write_retry
    def delete_entity(self, entity_id: str) -> bool:
        with self._lock, self.conn:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM entity_payload WHERE entity_id = ?", (entity_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Deleted temporal entity {entity_id}")
        return deleted

    @write_retry
    def delete_attribute(
        self,
        entity_id: str,
        attribute_name: str,
        dataset_id: Optional[str] = None,
        delete_all: bool = False,
    ) -> bool:
        """Delete an attribute and its whole history."""
        with self._lock, self.conn:
            cursor = self.conn.cursor()
            if delete_all:
                cursor.execute(
                    "DELETE FROM temporal_entity_attribute WHERE entity_id = ? AND attribute_name = ?",
                    (entity_id, attribute_name),
                )
            else:
                cursor.execute(
                    """
                    DELETE FROM temporal_entity_attribute
                    WHERE entity_id = ? AND attribute_name = ? AND IFNULL(dataset_id, '') = IFNULL(?, '')
                """,
                    (entity_id, attribute_name, dataset_id),
                )
            deleted = cursor.rowcount > 0
            if deleted:
                cursor.execute(
                    "UPDATE entity_payload SET modified_at = ? WHERE entity_id = ?",
                    (to_db_time(datetime.now(UTC)), entity_id),
                )
        return deleted

    def close(self):
        """Close the database connection."""
        self.conn.close()


def infer_value_type(attribute_type: AttributeType, value: Any) -> AttributeValueType:
    """Deduce how the values of a new attribute are stored."""
    match attribute_type:
        case AttributeType.GEO_PROPERTY:
            return AttributeValueType.GEOMETRY
        case AttributeType.JSON_PROPERTY:
            return AttributeValueType.JSON
        case AttributeType.RELATIONSHIP:
            return AttributeValueType.URI
    if isinstance(value, bool):
        return AttributeValueType.BOOLEAN
    if isinstance(value, (int, float)):
        return AttributeValueType.NUMBER
    if isinstance(value, dict):
        return AttributeValueType.OBJECT
    if isinstance(value, list):
        return AttributeValueType.ARRAY
    return AttributeValueType.STRING


# ============================================================================
# Aggregation
# ============================================================================


def _as_timedelta(delta: relativedelta) -> Optional[timedelta]:
    """Convert a duration without calendar units to a timedelta."""
    if delta.years or delta.months:
        return None
    return timedelta(
        days=delta.days,
        hours=delta.hours,
        minutes=delta.minutes,
        seconds=delta.seconds,
        microseconds=delta.microseconds,
    )


def _bucket_index(origin: datetime, delta: relativedelta, time: datetime) -> int:
    """Index k of the bucket [origin + k * delta, origin + (k + 1) * delta) holding time."""
    fixed = _as_timedelta(delta)
    if fixed is not None:
        return math.floor((time - origin) / fixed)

    # calendar durations (months, years) have no fixed length, walk them
    k = 0
    if time >= origin:
        while origin + delta * (k + 1) <= time:
            k += 1
    else:
        k = -1
        while origin + delta * k > time:
            k -= 1
    return k


def compute_aggregate(aggregate: Aggregate, samples: list[_Sample]) -> Any:
    """Compute one aggregation method over the samples of a bucket."""
    match aggregate:
        case Aggregate.TOTAL_COUNT:
            return len(samples)
        case Aggregate.DISTINCT_COUNT:
            return len({json.dumps(sample.value, sort_keys=True) for sample in samples})

    measured = np.array(
        [sample.measured_value for sample in samples if sample.measured_value is not None],
        dtype=float,
    )
    if measured.size == 0:
        # non numeric values only support ordering based methods
        texts = [sample.value for sample in samples if isinstance(sample.value, str)]
        if texts and aggregate == Aggregate.MIN:
            return min(texts)
        if texts and aggregate == Aggregate.MAX:
            return max(texts)
        return None

    match aggregate:
        case Aggregate.SUM:
            return float(np.sum(measured))
        case Aggregate.AVG:
            return float(np.mean(measured))
        case Aggregate.MIN:
            return float(np.min(measured))
        case Aggregate.MAX:
            return float(np.max(measured))
        case Aggregate.STDDEV:
            return float(np.std(measured, ddof=1)) if measured.size > 1 else 0.0
        case Aggregate.SUMSQ:
            return float(np.sum(np.square(measured)))
    return None


def aggregate_samples(
    samples: list[_Sample],
    temporal_query: TemporalQuery,
    origin: Optional[datetime] = None,
) -> list[list[AggregateResult]]:
    """
    Group time-ordered samples into buckets and aggregate each of them.

    Buckets start at origin (the oldest sample when None) and last
    aggrPeriodDuration; a whole-range duration gives a single bucket spanning
    the oldest to the most recent sample. Empty buckets are skipped. At most
    instance_limit buckets are kept, the most recent ones with lastN.

    Returns:
        One list of AggregateResult per bucket, in ascending time order
    """
    if not samples:
        return []

    delta = parse_aggr_period_duration(temporal_query.aggr_period_duration)
    buckets: list[tuple[datetime, datetime, list[_Sample]]] = []
    if delta is None:
        buckets.append((samples[0].time, samples[-1].time, samples))
    else:
        origin = origin or samples[0].time
        current_index = None
        for sample in samples:
            index = _bucket_index(origin, delta, sample.time)
            if index != current_index:
                buckets.append((origin + delta * index, origin + delta * (index + 1), []))
                current_index = index
            buckets[-1][2].append(sample)

    limit = temporal_query.instance_limit
    buckets = buckets[-limit:] if temporal_query.has_last_n() else buckets[:limit]

    return [
        [
            AggregateResult(
                aggregate=aggregate,
                value=compute_aggregate(aggregate, bucket_samples),
                start_date_time=start,
                end_date_time=end,
            )
            for aggregate in temporal_query.aggr_methods
        ]
        for start, end, bucket_samples in buckets
    ]
