"""
State Store - persisted last-applied state for one stack.

The store is the engine's only source of truth for drift detection and the
only shared mutable resource. Writers serialise through a single-writer
lease with a TTL; every mutating call takes the lease handle explicitly so
several stacks can be managed from one process.
"""

import asyncio
import json
import logging
import os
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Mapping, Optional

from errors import LockContentionError, StateError
from models import RecordStatus, StateRecord

logger = logging.getLogger(__name__)

# Version of the persisted state layout written by this code.
LAYOUT_VERSION = 2


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Lease:
    """Proof of holding the single-writer lock on a stack's state."""

    stack: str
    holder: str
    token: str
    expires_at: datetime

    def expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stack": self.stack,
            "holder": self.holder,
            "token": self.token,
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Lease":
        return cls(
            stack=data["stack"],
            holder=data["holder"],
            token=data["token"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )


def upgrade_blob(blob: Dict[str, Any]) -> Dict[str, Any]:
    """
    Bring a persisted state blob up to the current layout.

    Version 1 stored records as a list without a status tag; every record
    it contains was applied.

    Raises:
        StateError: If the blob was written by a newer layout version.
    """
    version = blob.get("version", 1)
    if version > LAYOUT_VERSION:
        raise StateError(
            f"State layout version {version} is newer than supported "
            f"version {LAYOUT_VERSION}"
        )

    if version == 1:
        records = {}
        for item in blob.get("resources", []):
            records[item["id"]] = {
                "resource_id": item["id"],
                "resource_type": item["type"],
                "status": RecordStatus.APPLIED.value,
                "provider_id": item.get("provider_id"),
                "properties": item.get("properties", {}),
                "outputs": item.get("outputs", {}),
                "dependencies": item.get("dependencies", []),
                "updated_at": item.get("updated_at"),
            }
        blob = {
            "version": LAYOUT_VERSION,
            "stack": blob.get("stack"),
            "serial": blob.get("serial", 0),
            "records": records,
        }
        logger.info("Upgraded state blob from layout version 1")

    return blob


class StateStore(ABC):
    """Abstract state store scoped to one stack."""

    def __init__(self, stack: str):
        self.stack = stack

    @abstractmethod
    async def load(self) -> Dict[str, StateRecord]:
        """Return all state records keyed by logical resource ID."""
        pass

    @abstractmethod
    async def save(self, lease: Lease, records: Mapping[str, StateRecord]) -> None:
        """Replace the stack's state with the given records."""
        pass

    @abstractmethod
    async def put(self, lease: Lease, record: StateRecord) -> None:
        """Insert or replace a single record."""
        pass

    @abstractmethod
    async def remove(self, lease: Lease, resource_id: str) -> None:
        """Remove a single record. No-op if absent."""
        pass

    @abstractmethod
    async def acquire_lease(self, holder: str, ttl: float) -> Lease:
        """
        Take the single-writer lease.

        Raises:
            LockContentionError: If another holder's lease has not expired.
        """
        pass

    @abstractmethod
    async def renew_lease(self, lease: Lease, ttl: float) -> Lease:
        """
        Extend a held lease.

        Raises:
            LockContentionError: If the lease was lost or expired.
        """
        pass

    @abstractmethod
    async def release_lease(self, lease: Lease) -> None:
        """Release a held lease. No-op if it was already taken over."""
        pass

    async def close(self) -> None:
        """Release any connections held by the store."""
        return None

    @asynccontextmanager
    async def lease(self, holder: str, ttl: float) -> AsyncIterator[Lease]:
        """Hold the lease for the duration of the block."""
        lease = await self.acquire_lease(holder, ttl)
        logger.info(f"Acquired state lease for stack '{self.stack}' as '{holder}'")
        try:
            yield lease
        finally:
            await self.release_lease(lease)
            logger.info(f"Released state lease for stack '{self.stack}'")


class LocalStateStore(StateStore):
    """
    State kept in a versioned JSON file per stack.

    Layout: ``<directory>/<stack>.state.json`` holding the records and
    ``<directory>/<stack>.lock.json`` holding the current lease. Writes go
    to a temporary file that atomically replaces the state file.
    """

    def __init__(self, directory: str, stack: str):
        super().__init__(stack)
        self.directory = Path(directory)
        self.state_path = self.directory / f"{stack}.state.json"
        self.lock_path = self.directory / f"{stack}.lock.json"
        self._lock = asyncio.Lock()

    # Blob I/O

    def _read_blob(self) -> Dict[str, Any]:
        if not self.state_path.exists():
            return {
                "version": LAYOUT_VERSION,
                "stack": self.stack,
                "serial": 0,
                "records": {},
            }
        try:
            blob = json.loads(self.state_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StateError(f"Cannot read state file {self.state_path}: {e}") from e
        return upgrade_blob(blob)

    def _write_blob(self, records: Mapping[str, StateRecord], serial: int) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        blob = {
            "version": LAYOUT_VERSION,
            "stack": self.stack,
            "serial": serial,
            "records": {rid: records[rid].to_dict() for rid in sorted(records)},
        }
        tmp_path = self.state_path.with_suffix(".json.tmp")
        tmp_path.write_text(
            json.dumps(blob, indent=2, sort_keys=True) + "\n", encoding="utf-8"
        )
        os.replace(tmp_path, self.state_path)

    def _records(self, blob: Dict[str, Any]) -> Dict[str, StateRecord]:
        try:
            return {
                rid: StateRecord.from_dict(data)
                for rid, data in blob.get("records", {}).items()
            }
        except (KeyError, ValueError) as e:
            raise StateError(f"Corrupt state record in {self.state_path}: {e}") from e

    async def load(self) -> Dict[str, StateRecord]:
        async with self._lock:
            return self._records(self._read_blob())

    async def save(self, lease: Lease, records: Mapping[str, StateRecord]) -> None:
        async with self._lock:
            self._check_lease(lease)
            blob = self._read_blob()
            self._write_blob(dict(records), blob.get("serial", 0) + 1)

    async def put(self, lease: Lease, record: StateRecord) -> None:
        async with self._lock:
            self._check_lease(lease)
            blob = self._read_blob()
            records = self._records(blob)
            records[record.resource_id] = record
            self._write_blob(records, blob.get("serial", 0) + 1)

    async def remove(self, lease: Lease, resource_id: str) -> None:
        async with self._lock:
            self._check_lease(lease)
            blob = self._read_blob()
            records = self._records(blob)
            if records.pop(resource_id, None) is not None:
                self._write_blob(records, blob.get("serial", 0) + 1)

    # Lease

    def _read_lease(self) -> Optional[Lease]:
        try:
            return Lease.from_dict(json.loads(self.lock_path.read_text(encoding="utf-8")))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Ignoring unreadable lock file {self.lock_path}: {e}")
            return None

    def _write_lease(self, lease: Lease) -> None:
        tmp_path = self.lock_path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(lease.to_dict()), encoding="utf-8")
        os.replace(tmp_path, self.lock_path)

    def _check_lease(self, lease: Lease) -> None:
        current = self._read_lease()
        if current is None or current.token != lease.token:
            raise LockContentionError(
                self.stack,
                holder=current.holder if current else None,
                expires_at=current.expires_at if current else None,
                message=f"State lease for stack '{self.stack}' is no longer held",
            )
        if current.expired():
            raise LockContentionError(
                self.stack,
                holder=current.holder,
                expires_at=current.expires_at,
                message=f"State lease for stack '{self.stack}' has expired",
            )

    async def acquire_lease(self, holder: str, ttl: float) -> Lease:
        lease = Lease(
            stack=self.stack,
            holder=holder,
            token=uuid.uuid4().hex,
            expires_at=_utcnow() + timedelta(seconds=ttl),
        )
        async with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                current = self._read_lease()
                if current is not None and not current.expired():
                    raise LockContentionError(
                        self.stack, holder=current.holder, expires_at=current.expires_at
                    )
                if current is not None:
                    logger.warning(
                        f"Taking over expired lease of '{current.holder}' "
                        f"on stack '{self.stack}'"
                    )
                self._write_lease(lease)
            else:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(lease.to_dict(), f)

            # Two takers of an expired lease race on the replace; only the
            # one whose token is on disk holds it.
            current = self._read_lease()
            if current is None or current.token != lease.token:
                raise LockContentionError(
                    self.stack,
                    holder=current.holder if current else None,
                    expires_at=current.expires_at if current else None,
                )
        return lease

    async def renew_lease(self, lease: Lease, ttl: float) -> Lease:
        async with self._lock:
            self._check_lease(lease)
            renewed = Lease(
                stack=lease.stack,
                holder=lease.holder,
                token=lease.token,
                expires_at=_utcnow() + timedelta(seconds=ttl),
            )
            self._write_lease(renewed)
        logger.debug(f"Renewed state lease for stack '{self.stack}'")
        return renewed

    async def release_lease(self, lease: Lease) -> None:
        async with self._lock:
            current = self._read_lease()
            if current is not None and current.token == lease.token:
                self.lock_path.unlink(missing_ok=True)
