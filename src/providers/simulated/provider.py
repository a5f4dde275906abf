"""
Simulated Provider - in-process stand-in for a cloud control plane.

Keeps resources in memory (optionally persisted to a JSON file so state
survives between CLI runs), generates identifiers and outputs for the
resource kinds in ``types.py``, and can inject transient or permanent
failures for testing partial applies.
"""

import asyncio
import json
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from errors import (
    PermanentProviderError,
    ResourceNotFoundError,
    TransientProviderError,
)
from models import PropertyChange, Resource
from providers.base import ProviderCapability, ProviderResult, ResourceTypeSpec
from providers.simulated.types import ID_PREFIXES, OUTPUTS, RESOURCE_TYPES

logger = logging.getLogger(__name__)


@dataclass
class FailureRule:
    """Fail calls for one logical resource a number of times."""

    resource: str
    operation: str = "*"  # create, update, delete or *
    mode: str = "permanent"  # transient or permanent
    times: int = 0  # 0 = every call

    def matches(self, resource_id: str, operation: str) -> bool:
        return self.resource == resource_id and self.operation in ("*", operation)


class SimulatedProvider(ProviderCapability):
    """Provider that simulates the built-in resource kinds in memory."""

    def __init__(self):
        self.state_file: Optional[Path] = None
        self.latency: float = 0.0
        self.failures: List[FailureRule] = []
        self._resources: Dict[str, Dict[str, Any]] = {}
        self._idempotency: Dict[str, str] = {}
        self._calls: List[str] = []
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return "simulated"

    @property
    def version(self) -> str:
        return "1.0.0"

    @property
    def resource_types(self) -> Dict[str, ResourceTypeSpec]:
        return dict(RESOURCE_TYPES)

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load simulated provider configuration from environment variables."""
        config: Dict[str, Any] = {
            "state_file": os.getenv("SIMULATED_STATE_FILE", ""),
            "latency": float(os.getenv("SIMULATED_LATENCY", "0")),
        }
        raw = os.getenv("SIMULATED_FAILURES")
        if raw:
            try:
                config["failures"] = json.loads(raw)
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring SIMULATED_FAILURES: invalid JSON ({e})")
        return config

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the provider with configuration."""
        state_file = config.get("state_file")
        self.state_file = Path(state_file) if state_file else None
        self.latency = float(config.get("latency", 0.0))
        self.failures = [FailureRule(**rule) for rule in config.get("failures", [])]

        if self.state_file and self.state_file.exists():
            data = json.loads(self.state_file.read_text(encoding="utf-8"))
            self._resources = data.get("resources", {})
            self._idempotency = data.get("idempotency", {})
            logger.info(
                f"Loaded {len(self._resources)} simulated resources from "
                f"{self.state_file}"
            )

        logger.debug(
            f"Simulated provider initialized: latency={self.latency}s, "
            f"failure rules={len(self.failures)}"
        )

    # Test helpers

    @property
    def calls(self) -> List[str]:
        """Operations performed, as ``"<operation>:<resource id>"``."""
        return list(self._calls)

    def inject_failure(
        self, resource: str, operation: str = "*", mode: str = "permanent", times: int = 0
    ) -> None:
        self.failures.append(FailureRule(resource, operation, mode, times))

    def modify_out_of_band(self, provider_id: str, changes: Dict[str, Any]) -> None:
        """Change a live resource behind the engine's back (drift)."""
        self._resources[provider_id]["properties"].update(changes)

    def remove_out_of_band(self, provider_id: str) -> None:
        self._resources.pop(provider_id, None)

    def find(self, resource_id: str) -> Optional[Dict[str, Any]]:
        """The live entry for a logical resource ID, if any."""
        for provider_id, entry in self._resources.items():
            if entry["name"] == resource_id:
                return dict(entry, provider_id=provider_id)
        return None

    # Internals

    def _check_failure(self, resource_id: str, operation: str) -> None:
        for rule in self.failures:
            if not rule.matches(resource_id, operation):
                continue
            if rule.times > 0:
                rule.times -= 1
                if rule.times == 0:
                    self.failures.remove(rule)
            message = f"injected {rule.mode} failure on {operation} of {resource_id}"
            if rule.mode == "transient":
                raise TransientProviderError(message)
            raise PermanentProviderError(message)

    def _check_type(self, resource_type: str) -> None:
        if resource_type not in RESOURCE_TYPES:
            raise PermanentProviderError(
                f"Simulated provider does not support resource type '{resource_type}'"
            )

    def _new_id(self, resource_type: str) -> str:
        return f"{ID_PREFIXES[resource_type]}-{uuid.uuid4().hex[:12]}"

    def _persist(self) -> None:
        if not self.state_file:
            return
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.state_file.with_suffix(".tmp")
        tmp_path.write_text(
            json.dumps(
                {"resources": self._resources, "idempotency": self._idempotency},
                indent=2,
                sort_keys=True,
            ),
            encoding="utf-8",
        )
        os.replace(tmp_path, self.state_file)

    async def _simulate_latency(self) -> None:
        if self.latency > 0:
            await asyncio.sleep(self.latency)

    # Provider operations

    async def create(self, resource: Resource, idempotency_key: str) -> ProviderResult:
        self._check_type(resource.type)
        await self._simulate_latency()
        async with self._lock:
            self._calls.append(f"create:{resource.id}")
            existing = self._idempotency.get(idempotency_key)
            if existing in self._resources:
                logger.info(
                    f"Create of {resource.id} already done for key {idempotency_key}"
                )
                return ProviderResult(existing, dict(self._resources[existing]["outputs"]))

            self._check_failure(resource.id, "create")

            provider_id = self._new_id(resource.type)
            outputs = OUTPUTS[resource.type](provider_id, resource.properties)
            self._resources[provider_id] = {
                "name": resource.id,
                "type": resource.type,
                "properties": json.loads(json.dumps(resource.properties)),
                "outputs": outputs,
            }
            self._idempotency[idempotency_key] = provider_id
            self._persist()

        logger.info(f"Created {resource.type} {resource.id} as {provider_id}")
        return ProviderResult(provider_id, dict(outputs))

    async def update(
        self,
        resource: Resource,
        diff: Dict[str, PropertyChange],
        provider_id: str,
        idempotency_key: str,
    ) -> Dict[str, Any]:
        self._check_type(resource.type)
        await self._simulate_latency()
        async with self._lock:
            self._calls.append(f"update:{resource.id}")
            entry = self._resources.get(provider_id)
            if entry is None:
                raise ResourceNotFoundError(provider_id, resource.type)

            self._check_failure(resource.id, "update")

            immutable = RESOURCE_TYPES[resource.type].immutable
            rejected = sorted(name for name in diff if name in immutable)
            if rejected:
                raise PermanentProviderError(
                    f"Cannot update immutable properties of {resource.id}: "
                    f"{', '.join(rejected)}"
                )

            entry["properties"] = json.loads(json.dumps(resource.properties))
            entry["outputs"] = OUTPUTS[resource.type](provider_id, resource.properties)
            self._persist()

        logger.info(f"Updated {resource.type} {resource.id} ({', '.join(diff) or 'no changes'})")
        return dict(entry["outputs"])

    async def delete(
        self, provider_id: str, resource_type: str, idempotency_key: str
    ) -> None:
        self._check_type(resource_type)
        await self._simulate_latency()
        async with self._lock:
            entry = self._resources.get(provider_id)
            if entry is None:
                raise ResourceNotFoundError(provider_id, resource_type)
            self._calls.append(f"delete:{entry['name']}")

            self._check_failure(entry["name"], "delete")

            del self._resources[provider_id]
            for key in [k for k, v in self._idempotency.items() if v == provider_id]:
                del self._idempotency[key]
            self._persist()

        logger.info(f"Deleted {resource_type} {provider_id}")

    async def describe(self, provider_id: str, resource_type: str) -> Dict[str, Any]:
        entry = self._resources.get(provider_id)
        if entry is None or entry["type"] != resource_type:
            raise ResourceNotFoundError(provider_id, resource_type)
        return json.loads(json.dumps(entry["properties"]))
