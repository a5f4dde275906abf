"""
PostgreSQL state backend.

Stores state records and the single-writer lease for each stack in the
``state_records`` and ``state_leases`` tables (see ``migrations/``).
"""

import asyncpg
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from errors import LockContentionError, StateError
from migrate import run_migrations
from models import RecordStatus, StateRecord
from state import LAYOUT_VERSION, Lease, StateStore

logger = logging.getLogger(__name__)


class PostgresStateStore(StateStore):
    """State store backed by an asyncpg connection pool."""

    def __init__(
        self,
        stack: str,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 1,
        max_pool_size: int = 5,
    ):
        super().__init__(stack)
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
            command_timeout=60,
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("State schema initialized")

    # Records

    def _parse_record_row(self, row: asyncpg.Record) -> StateRecord:
        """Parse a state_records row into a StateRecord."""
        version = row.get("layout_version") or LAYOUT_VERSION
        if version > LAYOUT_VERSION:
            raise StateError(
                f"State row for '{row['resource_id']}' has layout version "
                f"{version}, newer than supported version {LAYOUT_VERSION}"
            )
        updated_at = row.get("updated_at")
        if isinstance(updated_at, datetime):
            updated_at = updated_at.isoformat()
        return StateRecord(
            resource_id=row["resource_id"],
            resource_type=row["resource_type"],
            status=RecordStatus(row["status"]),
            provider_id=row.get("provider_id"),
            properties=json.loads(row["properties"]) if row.get("properties") else {},
            outputs=json.loads(row["outputs"]) if row.get("outputs") else {},
            dependencies=(
                json.loads(row["dependencies"]) if row.get("dependencies") else []
            ),
            updated_at=updated_at,
        )

    async def load(self) -> Dict[str, StateRecord]:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT resource_id, resource_type, status, provider_id,
                       properties, outputs, dependencies, layout_version, updated_at
                FROM state_records
                WHERE stack = $1
                ORDER BY resource_id
                """,
                self.stack,
            )
        return {row["resource_id"]: self._parse_record_row(row) for row in rows}

    async def _upsert(self, conn: asyncpg.Connection, record: StateRecord) -> None:
        await conn.execute(
            """
            INSERT INTO state_records (
                stack, resource_id, resource_type, status, provider_id,
                properties, outputs, dependencies, layout_version, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, NOW())
            ON CONFLICT (stack, resource_id) DO UPDATE
            SET resource_type = EXCLUDED.resource_type,
                status = EXCLUDED.status,
                provider_id = EXCLUDED.provider_id,
                properties = EXCLUDED.properties,
                outputs = EXCLUDED.outputs,
                dependencies = EXCLUDED.dependencies,
                layout_version = EXCLUDED.layout_version,
                updated_at = NOW()
            """,
            self.stack,
            record.resource_id,
            record.resource_type,
            record.status.value,
            record.provider_id,
            json.dumps(record.properties),
            json.dumps(record.outputs),
            json.dumps(sorted(record.dependencies)),
            LAYOUT_VERSION,
        )

    async def _verify_lease(self, conn: asyncpg.Connection, lease: Lease) -> None:
        """Lock the lease row and check it is still ours and unexpired."""
        row = await conn.fetchrow(
            """
            SELECT holder, token, expires_at, expires_at > NOW() AS live
            FROM state_leases
            WHERE stack = $1
            FOR UPDATE
            """,
            self.stack,
        )
        if row is None or row["token"] != lease.token or not row["live"]:
            raise LockContentionError(
                self.stack,
                holder=row["holder"] if row else None,
                expires_at=row["expires_at"] if row else None,
                message=f"State lease for stack '{self.stack}' is no longer held",
            )

    async def put(self, lease: Lease, record: StateRecord) -> None:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await self._verify_lease(conn, lease)
                await self._upsert(conn, record)

    async def remove(self, lease: Lease, resource_id: str) -> None:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await self._verify_lease(conn, lease)
                await conn.execute(
                    "DELETE FROM state_records WHERE stack = $1 AND resource_id = $2",
                    self.stack,
                    resource_id,
                )

    async def save(self, lease: Lease, records: Mapping[str, StateRecord]) -> None:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await self._verify_lease(conn, lease)
                await conn.execute(
                    "DELETE FROM state_records WHERE stack = $1", self.stack
                )
                for rid in sorted(records):
                    await self._upsert(conn, records[rid])
        logger.info(f"Saved {len(records)} state records for stack '{self.stack}'")

    # Lease

    async def acquire_lease(self, holder: str, ttl: float) -> Lease:
        self._ensure_connected()
        token = uuid.uuid4().hex
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO state_leases (stack, holder, token, acquired_at, expires_at)
                VALUES ($1, $2, $3, NOW(), NOW() + make_interval(secs => $4::double precision))
                ON CONFLICT (stack) DO UPDATE
                SET holder = EXCLUDED.holder,
                    token = EXCLUDED.token,
                    acquired_at = EXCLUDED.acquired_at,
                    expires_at = EXCLUDED.expires_at
                WHERE state_leases.expires_at <= NOW()
                RETURNING expires_at
                """,
                self.stack,
                holder,
                token,
                float(ttl),
            )
            if row is None:
                current = await conn.fetchrow(
                    "SELECT holder, expires_at FROM state_leases WHERE stack = $1",
                    self.stack,
                )
                raise LockContentionError(
                    self.stack,
                    holder=current["holder"] if current else None,
                    expires_at=current["expires_at"] if current else None,
                )

        return Lease(
            stack=self.stack,
            holder=holder,
            token=token,
            expires_at=_aware(row["expires_at"]),
        )

    async def renew_lease(self, lease: Lease, ttl: float) -> Lease:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE state_leases
                SET expires_at = NOW() + make_interval(secs => $3::double precision)
                WHERE stack = $1 AND token = $2 AND expires_at > NOW()
                RETURNING expires_at
                """,
                self.stack,
                lease.token,
                float(ttl),
            )
        if row is None:
            raise LockContentionError(
                self.stack,
                holder=lease.holder,
                message=f"State lease for stack '{self.stack}' was lost",
            )
        logger.debug(f"Renewed state lease for stack '{self.stack}'")
        return Lease(
            stack=lease.stack,
            holder=lease.holder,
            token=lease.token,
            expires_at=_aware(row["expires_at"]),
        )

    async def release_lease(self, lease: Lease) -> None:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            await conn.execute(
                "DELETE FROM state_leases WHERE stack = $1 AND token = $2",
                self.stack,
                lease.token,
            )


def _aware(value: Any) -> datetime:
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
