"""
Database Manager - PostgreSQL schema and operations.

Stores managed resources, provider configs and their usages, and
reconciliation history.
"""

import asyncpg
import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from managedresource import FINALIZER, DeletionPolicy

logger = logging.getLogger(__name__)


class ResourceStatus(Enum):
    """Scheduling status of a managed resource."""

    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"
    DELETING = "deleting"


SCHEMA = """
CREATE TABLE IF NOT EXISTS provider_configs (
    name VARCHAR(255) PRIMARY KEY,
    endpoint TEXT NOT NULL,
    credentials_source VARCHAR(32) NOT NULL DEFAULT 'None',
    credentials_ref TEXT,
    created_at TIMESTAMP NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMP NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS managed_resources (
    id SERIAL PRIMARY KEY,
    name VARCHAR(255) NOT NULL,
    kind VARCHAR(255) NOT NULL,
    spec JSONB NOT NULL DEFAULT '{}'::jsonb,
    provider_config_name VARCHAR(255) NOT NULL DEFAULT 'default',
    deletion_policy VARCHAR(32) NOT NULL DEFAULT 'Delete',
    external_name VARCHAR(255),
    conditions JSONB NOT NULL DEFAULT '[]'::jsonb,
    status VARCHAR(32) NOT NULL DEFAULT 'pending',
    status_message TEXT,
    generation INTEGER NOT NULL DEFAULT 1,
    observed_generation INTEGER NOT NULL DEFAULT 0,
    retry_count INTEGER NOT NULL DEFAULT 0,
    finalizers JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at TIMESTAMP NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMP NOT NULL DEFAULT NOW(),
    deleted_at TIMESTAMP,
    last_reconcile_time TIMESTAMP,
    next_reconcile_time TIMESTAMP,
    UNIQUE (kind, name)
);

CREATE INDEX IF NOT EXISTS idx_managed_resources_next_reconcile
    ON managed_resources (kind, next_reconcile_time);

CREATE TABLE IF NOT EXISTS provider_config_usages (
    resource_id INTEGER PRIMARY KEY
        REFERENCES managed_resources(id) ON DELETE CASCADE,
    provider_config_name VARCHAR(255) NOT NULL,
    created_at TIMESTAMP NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS reconciliation_history (
    id SERIAL PRIMARY KEY,
    resource_id INTEGER NOT NULL
        REFERENCES managed_resources(id) ON DELETE CASCADE,
    generation INTEGER,
    operation VARCHAR(32) NOT NULL,
    success BOOLEAN NOT NULL,
    error_message TEXT,
    duration_seconds DOUBLE PRECISION,
    reconcile_time TIMESTAMP NOT NULL DEFAULT NOW()
);
"""


class DatabaseManager:
    """Manages PostgreSQL database operations for the operator."""

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
        """Create tables and indexes if they do not exist."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("Database schema initialized")

    # ==================== Provider Config Methods ====================

    async def upsert_provider_config(
        self,
        name: str,
        endpoint: str,
        credentials_source: str = "None",
        credentials_ref: Optional[str] = None,
    ) -> None:
        """
        Create or replace a provider config.

        Args:
            name: Provider config name
            endpoint: API endpoint (e.g., 'https://api.upbound.io')
            credentials_source: 'None', 'Environment' or 'Filesystem'
            credentials_ref: Environment variable name or file path
        """
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO provider_configs
                    (name, endpoint, credentials_source, credentials_ref)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (name) DO UPDATE
                SET endpoint = EXCLUDED.endpoint,
                    credentials_source = EXCLUDED.credentials_source,
                    credentials_ref = EXCLUDED.credentials_ref,
                    updated_at = NOW()
                """,
                name,
                endpoint,
                credentials_source,
                credentials_ref,
            )
            logger.info(f"Applied provider config {name}")

    async def get_provider_config(self, name: str) -> Optional[Dict[str, Any]]:
        """Get a provider config by name."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM provider_configs WHERE name = $1",
                name,
            )
            if not row:
                return None
            return dict(row)

    async def list_provider_configs(self) -> List[Dict[str, Any]]:
        """List provider configs with their usage counts."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT pc.*, COUNT(u.resource_id) AS usages
                FROM provider_configs pc
                LEFT JOIN provider_config_usages u
                    ON u.provider_config_name = pc.name
                GROUP BY pc.name
                ORDER BY pc.name
                """
            )
            return [dict(row) for row in rows]

    async def delete_provider_config(self, name: str) -> bool:
        """
        Delete a provider config that no managed resource uses.

        Raises:
            ValueError: If managed resources still use the provider config

        Returns:
            True if deleted, False if not found
        """
        async with self.pool.acquire() as conn:
            usage_count = await conn.fetchval(
                """
                SELECT COUNT(*) FROM provider_config_usages
                WHERE provider_config_name = $1
                """,
                name,
            )

            if usage_count > 0:
                raise ValueError(
                    f"Cannot delete provider config {name}: "
                    f"{usage_count} managed resource(s) are using it"
                )

            result = await conn.execute(
                "DELETE FROM provider_configs WHERE name = $1",
                name,
            )
            deleted = result.split()[-1] != "0"
            if deleted:
                logger.info(f"Deleted provider config {name}")
            return deleted

    async def track_provider_config_usage(
        self, resource_id: int, provider_config_name: str
    ) -> None:
        """Record that a managed resource uses a provider config."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO provider_config_usages
                    (resource_id, provider_config_name)
                VALUES ($1, $2)
                ON CONFLICT (resource_id) DO UPDATE
                SET provider_config_name = EXCLUDED.provider_config_name
                """,
                resource_id,
                provider_config_name,
            )

    # ==================== Managed Resource Methods ====================

    async def create_managed_resource(
        self,
        name: str,
        kind: str,
        spec: Optional[Dict[str, Any]] = None,
        provider_config_name: str = "default",
        deletion_policy: DeletionPolicy = DeletionPolicy.DELETE,
        finalizers: Optional[List[str]] = None,
    ) -> int:
        """
        Create a new managed resource.

        Args:
            name: Resource name, unique per kind
            kind: Managed kind (e.g., 'RepositoryPermission')
            spec: Kind-specific parameters
            provider_config_name: Provider config to reconcile with
            deletion_policy: Whether deleting the record deletes the
                external object
            finalizers: Initial finalizers list (defaults to [FINALIZER])
        """
        if spec is None:
            spec = {}

        if finalizers is None:
            finalizers = [FINALIZER]

        async with self.pool.acquire() as conn:
            resource_id = await conn.fetchval(
                """
                INSERT INTO managed_resources (
                    name, kind, spec, provider_config_name, deletion_policy,
                    status, next_reconcile_time, finalizers
                )
                VALUES ($1, $2, $3, $4, $5, $6, NOW(), $7)
                RETURNING id
                """,
                name,
                kind,
                json.dumps(spec),
                provider_config_name,
                deletion_policy.value,
                ResourceStatus.PENDING.value,
                json.dumps(finalizers),
            )

            logger.info(f"Created {kind} {name} with ID {resource_id}")
            return resource_id

    async def update_managed_resource(
        self,
        resource_id: int,
        spec: Optional[Dict[str, Any]] = None,
        provider_config_name: Optional[str] = None,
        deletion_policy: Optional[DeletionPolicy] = None,
    ):
        """Update a managed resource's desired state, bumping its generation."""
        async with self.pool.acquire() as conn:
            resource = await conn.fetchrow(
                """
                SELECT spec, provider_config_name, deletion_policy, generation
                FROM managed_resources WHERE id = $1
                """,
                resource_id,
            )

            if not resource:
                raise ValueError(f"Managed resource {resource_id} not found")

            current_spec = json.loads(resource["spec"]) if resource["spec"] else {}
            new_spec = spec if spec is not None else current_spec
            new_provider_config = (
                provider_config_name or resource["provider_config_name"]
            )
            new_deletion_policy = (
                deletion_policy.value
                if deletion_policy is not None
                else resource["deletion_policy"]
            )
            new_generation = resource["generation"] + 1

            await conn.execute(
                """
                UPDATE managed_resources
                SET spec = $1,
                    provider_config_name = $2,
                    deletion_policy = $3,
                    generation = $4,
                    next_reconcile_time = NOW(),
                    updated_at = NOW()
                WHERE id = $5
                """,
                json.dumps(new_spec),
                new_provider_config,
                new_deletion_policy,
                new_generation,
                resource_id,
            )

            logger.info(
                f"Updated managed resource {resource_id} to generation {new_generation}"
            )

    async def delete_managed_resource(self, resource_id: int):
        """Mark a managed resource for deletion (soft delete)."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE managed_resources
                SET status = $1,
                    deleted_at = COALESCE(deleted_at, NOW()),
                    next_reconcile_time = NOW()
                WHERE id = $2
                """,
                ResourceStatus.DELETING.value,
                resource_id,
            )

            logger.info(f"Marked managed resource {resource_id} for deletion")

    async def get_managed_resource_by_name(
        self, kind: str, name: str
    ) -> Optional[Dict[str, Any]]:
        """Get a managed resource by kind and name."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM managed_resources WHERE kind = $1 AND name = $2",
                kind,
                name,
            )
            if not row:
                return None

            return self._parse_resource_row(row)

    async def list_managed_resources(
        self,
        kind: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """List managed resources with an optional kind filter."""
        async with self.pool.acquire() as conn:
            query = "SELECT * FROM managed_resources WHERE 1=1"
            params = []
            param_count = 0

            if kind:
                param_count += 1
                query += f" AND kind = ${param_count}"
                params.append(kind)

            param_count += 1
            query += f" ORDER BY kind, name LIMIT ${param_count}"
            params.append(limit)

            rows = await conn.fetch(query, *params)
            return [self._parse_resource_row(row) for row in rows]

    async def get_resources_needing_reconciliation_by_kind(
        self, kinds: List[str], limit: int = 10
    ) -> List[Dict[str, Any]]:
        """
        Get managed resources of the given kinds that are due for reconciliation.

        Deleting resources come first, then never-reconciled ones, then
        failed retries, then scheduled drift checks.
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM managed_resources
                WHERE kind = ANY($1::text[])
                  AND (
                    -- Never reconciled
                    last_reconcile_time IS NULL
                    -- Generation changed
                    OR generation > observed_generation
                    -- Scheduled for reconciliation or retry
                    OR next_reconcile_time <= NOW()
                  )
                  AND (next_reconcile_time IS NULL OR next_reconcile_time <= NOW()
                       OR generation > observed_generation)
                ORDER BY
                    CASE status
                        WHEN 'deleting' THEN 0
                        WHEN 'pending' THEN 1
                        WHEN 'failed' THEN 2
                        ELSE 3
                    END,
                    next_reconcile_time ASC NULLS FIRST
                LIMIT $2
                """,
                kinds,
                limit,
            )

            return [self._parse_resource_row(row) for row in rows]

    async def update_resource_status(
        self,
        resource_id: int,
        status: ResourceStatus,
        message: Optional[str] = None,
        conditions: Optional[List[Dict[str, Any]]] = None,
        external_name: Optional[str] = None,
        observed_generation: Optional[int] = None,
        requeue_after: int = 60,
    ):
        """
        Persist the outcome of a successful reconciliation.

        Args:
            resource_id: The resource ID
            status: New scheduling status
            message: Human-readable status message
            conditions: Conditions to store, replacing the current ones
            external_name: External name to store, if bound
            observed_generation: Set the observed generation
            requeue_after: Seconds until the next scheduled reconcile
        """
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE managed_resources
                SET status = $1,
                    status_message = $2,
                    conditions = COALESCE($3::jsonb, conditions),
                    external_name = COALESCE($4, external_name),
                    observed_generation = COALESCE($5, observed_generation),
                    last_reconcile_time = NOW(),
                    next_reconcile_time = NOW() + INTERVAL '1 second' * $6,
                    retry_count = 0,
                    updated_at = NOW()
                WHERE id = $7
                """,
                status.value,
                message,
                json.dumps(conditions) if conditions is not None else None,
                external_name,
                observed_generation,
                requeue_after,
                resource_id,
            )

    async def update_resource_conditions(
        self, resource_id: int, conditions: List[Dict[str, Any]]
    ):
        """Replace a resource's conditions without touching its schedule."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE managed_resources
                SET conditions = $1::jsonb,
                    updated_at = NOW()
                WHERE id = $2
                """,
                json.dumps(conditions),
                resource_id,
            )

    async def record_failure(
        self,
        resource_id: int,
        message: str,
        conditions: Optional[List[Dict[str, Any]]] = None,
        external_name: Optional[str] = None,
        base_delay: int = 60,
        max_delay: int = 3600,
        jitter_factor: float = 0.1,
    ):
        """
        Persist a failed reconciliation and schedule a retry with exponential
        backoff and jitter.

        Resources being deleted keep their 'deleting' status.

        Args:
            resource_id: The resource ID
            message: Error message
            conditions: Conditions to store, replacing the current ones
            external_name: External name to store, if bound
            base_delay: Base delay in seconds (default 60)
            max_delay: Maximum delay in seconds (default 3600 = 1 hour)
            jitter_factor: Jitter factor ±X (default 0.1 = ±10%)
        """
        async with self.pool.acquire() as conn:
            # Delay grows with retry_count, capped at max_delay, with
            # ±jitter_factor to prevent thundering herd
            await conn.execute(
                """
                UPDATE managed_resources
                SET status = CASE WHEN deleted_at IS NOT NULL
                                  THEN 'deleting' ELSE 'failed' END,
                    status_message = $1,
                    conditions = COALESCE($2::jsonb, conditions),
                    external_name = COALESCE($3, external_name),
                    last_reconcile_time = NOW(),
                    next_reconcile_time = NOW() + (
                        INTERVAL '1 second' * LEAST(
                            $4 * POWER(2, LEAST(retry_count, 10)),
                            $5
                        ) * (1 + (random() * 2 - 1) * $6)
                    ),
                    retry_count = retry_count + 1,
                    updated_at = NOW()
                WHERE id = $7
                """,
                message,
                json.dumps(conditions) if conditions is not None else None,
                external_name,
                base_delay,
                max_delay,
                jitter_factor,
                resource_id,
            )

    async def record_reconciliation(
        self,
        resource_id: int,
        operation: str,
        success: bool,
        error_message: Optional[str] = None,
        duration_seconds: Optional[float] = None,
    ):
        """Record a reconciliation attempt in history."""
        async with self.pool.acquire() as conn:
            generation = await conn.fetchval(
                "SELECT generation FROM managed_resources WHERE id = $1", resource_id
            )

            await conn.execute(
                """
                INSERT INTO reconciliation_history (
                    resource_id, generation, operation, success,
                    error_message, duration_seconds
                )
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                resource_id,
                generation,
                operation,
                success,
                error_message,
                duration_seconds,
            )

    async def get_reconciliation_history(
        self, resource_id: int, limit: int = 10
    ) -> List[Dict[str, Any]]:
        """Get reconciliation history for a resource."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM reconciliation_history
                WHERE resource_id = $1
                ORDER BY reconcile_time DESC
                LIMIT $2
                """,
                resource_id,
                limit,
            )

            return [dict(row) for row in rows]

    async def hard_delete_resource(self, resource_id: int) -> bool:
        """
        Permanently delete a managed resource from the database.

        Only succeeds if the resource has been soft-deleted (deleted_at set)
        and all finalizers have been removed. Its provider config usage and
        history go with it.

        Args:
            resource_id: The resource ID to permanently delete

        Returns:
            True if the resource was deleted, False if not found,
            not soft-deleted, or finalizers remain
        """
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(
                """
                DELETE FROM managed_resources
                WHERE id = $1
                  AND deleted_at IS NOT NULL
                  AND finalizers = '[]'::jsonb
                RETURNING id
                """,
                resource_id,
            )
            if result:
                logger.info(f"Hard-deleted managed resource {resource_id}")
                return True
            return False

    async def remove_finalizer(self, resource_id: int, finalizer: str) -> None:
        """
        Remove a finalizer from a resource.

        Args:
            resource_id: The resource ID
            finalizer: Finalizer name to remove
        """
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE managed_resources
                SET finalizers = COALESCE(
                        (SELECT jsonb_agg(elem)
                         FROM jsonb_array_elements(finalizers) AS elem
                         WHERE elem #>> '{}' != $2),
                        '[]'::jsonb
                    ),
                    updated_at = NOW()
                WHERE id = $1
                """,
                resource_id,
                finalizer,
            )

    async def get_finalizers(self, resource_id: int) -> List[str]:
        """
        Get the finalizers list for a resource.

        Args:
            resource_id: The resource ID

        Returns:
            List of finalizer names, or empty list if resource not found
        """
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(
                "SELECT finalizers FROM managed_resources WHERE id = $1",
                resource_id,
            )
            if result is None:
                return []
            return json.loads(result) if isinstance(result, str) else result

    async def mark_resource_for_reconciliation(self, resource_id: int):
        """Manually trigger reconciliation for a resource."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE managed_resources
                SET next_reconcile_time = NOW()
                WHERE id = $1
                """,
                resource_id,
            )

    def _parse_resource_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """
        Parse a managed resource row, converting JSON fields.

        Args:
            row: An asyncpg.Record from a database query

        Returns:
            A dictionary with the resource data, with JSON fields parsed
        """
        result = dict(row)
        result["spec"] = (
            json.loads(result["spec"])
            if isinstance(result.get("spec"), str)
            else result.get("spec") or {}
        )
        for key in ("conditions", "finalizers"):
            value = result.get(key)
            result[key] = json.loads(value) if isinstance(value, str) else value or []
        return result
