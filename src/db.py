"""
Database Manager - PostgreSQL-backed object store.

Stores reconciled objects with a monotonically increasing resource version
drawn from a sequence, and applies merge patches under optimistic
concurrency inside a row-locking transaction.
"""

import asyncpg
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from errors import ConflictError, NotFoundError, StoreError
from migrate import run_migrations
from resources import GenericResource, ObjectMeta, ResourceRef
from store import Store, apply_resource_patch, check_precondition

logger = logging.getLogger(__name__)


def _load_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    return json.loads(value) if isinstance(value, str) else value


class DatabaseManager(Store):
    """Manages PostgreSQL storage of reconciled objects."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== Store Methods ====================

    async def get(self, ref: ResourceRef) -> GenericResource:
        self._ensure_connected()
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT * FROM objects
                    WHERE kind = $1 AND namespace = $2 AND name = $3
                    """,
                    ref.kind,
                    ref.namespace,
                    ref.name,
                )
        except asyncpg.PostgresError as e:
            raise StoreError(f"failed to get {ref}: {e}") from e

        if not row:
            raise NotFoundError(f"{ref} not found")
        return self._parse_object_row(row)

    async def patch(
        self,
        ref: ResourceRef,
        delta: Dict[str, Any],
        precondition: Optional[str] = None,
    ) -> GenericResource:
        self._ensure_connected()
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        """
                        SELECT * FROM objects
                        WHERE kind = $1 AND namespace = $2 AND name = $3
                        FOR UPDATE
                        """,
                        ref.kind,
                        ref.namespace,
                        ref.name,
                    )
                    if not row:
                        raise NotFoundError(f"{ref} not found")

                    current = self._parse_object_row(row)
                    if not delta:
                        return current

                    check_precondition(ref, current, precondition)

                    new_version = await conn.fetchval(
                        "SELECT nextval('object_resource_version_seq')"
                    )
                    updated = apply_resource_patch(current, delta, str(new_version))
                    await conn.execute(
                        """
                        UPDATE objects
                        SET api_version = $1,
                            generation = $2,
                            resource_version = $3,
                            labels = $4,
                            annotations = $5,
                            spec = $6,
                            status = $7,
                            data = $8,
                            updated_at = NOW()
                        WHERE id = $9
                        """,
                        updated.api_version,
                        updated.metadata.generation,
                        new_version,
                        json.dumps(updated.metadata.labels),
                        (
                            json.dumps(updated.metadata.annotations)
                            if updated.metadata.annotations is not None
                            else None
                        ),
                        json.dumps(updated.spec),
                        json.dumps(updated.status),
                        json.dumps(updated.data),
                        row["id"],
                    )
        except asyncpg.PostgresError as e:
            raise StoreError(f"failed to patch {ref}: {e}") from e

        logger.debug(f"Patched {ref} to resourceVersion {new_version}")
        return updated

    async def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[GenericResource]:
        self._ensure_connected()
        query = "SELECT * FROM objects WHERE kind = $1"
        params: List[Any] = [kind]
        param_count = 1

        if namespace:
            param_count += 1
            query += f" AND namespace = ${param_count}"
            params.append(namespace)

        if labels:
            param_count += 1
            query += f" AND labels @> ${param_count}::jsonb"
            params.append(json.dumps(labels))

        query += " ORDER BY namespace, name"

        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(query, *params)
        except asyncpg.PostgresError as e:
            raise StoreError(f"failed to list {kind}: {e}") from e
        return [self._parse_object_row(row) for row in rows]

    async def create(self, resource: GenericResource) -> GenericResource:
        """
        Insert a new object.

        Raises:
            ConflictError: If an object with the same identity exists
        """
        self._ensure_connected()
        meta = resource.metadata
        annotations = (
            json.dumps(meta.annotations) if meta.annotations is not None else None
        )
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO objects
                        (kind, namespace, name, api_version, uid, labels,
                         annotations, spec, status, data)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    RETURNING *
                    """,
                    resource.kind,
                    meta.namespace,
                    meta.name,
                    resource.api_version,
                    meta.uid or str(uuid.uuid4()),
                    json.dumps(meta.labels),
                    annotations,
                    json.dumps(resource.spec),
                    json.dumps(resource.status),
                    json.dumps(resource.data),
                )
        except asyncpg.UniqueViolationError as e:
            raise ConflictError(f"{resource.ref} already exists") from e
        except asyncpg.PostgresError as e:
            raise StoreError(f"failed to create {resource.ref}: {e}") from e

        logger.info(f"Created {resource.ref}")
        return self._parse_object_row(row)

    async def delete(self, ref: ResourceRef) -> GenericResource:
        """
        Mark an object as deleting by setting its deletion timestamp.

        The timestamp is set once; deleting again leaves the row unchanged.

        Raises:
            NotFoundError: If the object does not exist
        """
        self._ensure_connected()
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    UPDATE objects
                    SET resource_version = CASE
                            WHEN deletion_timestamp IS NULL
                            THEN nextval('object_resource_version_seq')
                            ELSE resource_version
                        END,
                        deletion_timestamp = COALESCE(deletion_timestamp, NOW()),
                        updated_at = NOW()
                    WHERE kind = $1 AND namespace = $2 AND name = $3
                    RETURNING *
                    """,
                    ref.kind,
                    ref.namespace,
                    ref.name,
                )
        except asyncpg.PostgresError as e:
            raise StoreError(f"failed to delete {ref}: {e}") from e

        if not row:
            raise NotFoundError(f"{ref} not found")
        logger.info(f"Marked {ref} for deletion")
        return self._parse_object_row(row)

    def _parse_object_row(self, row: asyncpg.Record) -> GenericResource:
        """
        Parse an object row from the database into a GenericResource.

        JSON columns may arrive as text (no type codec registered) or
        already decoded.
        """
        result = dict(row)
        deletion_timestamp = result.get("deletion_timestamp")
        if isinstance(deletion_timestamp, datetime):
            deletion_timestamp = deletion_timestamp.strftime("%Y-%m-%dT%H:%M:%SZ")

        metadata = ObjectMeta(
            name=result["name"],
            namespace=result["namespace"],
            uid=result.get("uid") or "",
            generation=result.get("generation", 1),
            resource_version=str(result["resource_version"]),
            deletion_timestamp=deletion_timestamp,
            annotations=_load_json(result.get("annotations"), None),
            labels=_load_json(result.get("labels"), {}),
        )
        return GenericResource(
            api_version=result.get("api_version") or "",
            kind=result["kind"],
            metadata=metadata,
            spec=_load_json(result.get("spec"), {}),
            status=_load_json(result.get("status"), {}),
            data=_load_json(result.get("data"), {}),
        )
