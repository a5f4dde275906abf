"""
HTTP Provider - drives a generic REST control plane with aiohttp.

Each configured resource type maps to a collection path on the API:

    POST   {base_url}/{path}        create   -> {"id": ..., "outputs": {...}}
    PATCH  {base_url}/{path}/{id}   update   -> {"outputs": {...}}
    DELETE {base_url}/{path}/{id}   delete
    GET    {base_url}/{path}/{id}   describe -> {"properties": {...}}

Mutating requests carry the step's idempotency key in the
``Idempotency-Key`` header.
"""

import asyncio
import json
import logging
import os
from typing import Any, Dict, Optional

import aiohttp

from errors import (
    PermanentProviderError,
    ProviderError,
    ResourceNotFoundError,
    TransientProviderError,
)
from models import PropertyChange, Resource
from providers.base import ProviderCapability, ProviderResult, ResourceTypeSpec

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = {408, 425, 429}


class HTTPProvider(ProviderCapability):
    """Provider whose resource types and endpoints come from configuration."""

    def __init__(self):
        self.base_url: str = ""
        self.token: Optional[str] = None
        self.timeout: float = 30.0
        self._types: Dict[str, ResourceTypeSpec] = {}
        self._paths: Dict[str, str] = {}

    @property
    def name(self) -> str:
        return "http"

    @property
    def version(self) -> str:
        return "1.0.0"

    @property
    def resource_types(self) -> Dict[str, ResourceTypeSpec]:
        return dict(self._types)

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP provider configuration from environment variables."""
        config: Dict[str, Any] = {
            "base_url": os.getenv("HTTP_PROVIDER_URL", ""),
            "token": os.getenv("HTTP_PROVIDER_TOKEN", ""),
            "timeout": float(os.getenv("HTTP_PROVIDER_TIMEOUT", "30")),
        }
        raw = os.getenv("HTTP_PROVIDER_TYPES")
        if raw:
            try:
                config["resource_types"] = json.loads(raw)
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring HTTP_PROVIDER_TYPES: invalid JSON ({e})")
        return config

    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the provider with configuration.

        Args:
            config: ``base_url``, optional ``token`` and ``timeout``, and
                ``resource_types``: type tag -> {"path", "immutable",
                "schema", "description"}.
        """
        self.base_url = (config.get("base_url") or "").rstrip("/")
        self.token = config.get("token") or None
        self.timeout = float(config.get("timeout", self.timeout))

        for rtype, definition in (config.get("resource_types") or {}).items():
            self._paths[rtype] = definition.get("path", rtype).strip("/")
            self._types[rtype] = ResourceTypeSpec(
                schema=definition.get("schema"),
                immutable=frozenset(definition.get("immutable", [])),
                description=definition.get("description", ""),
            )

        if self._types and not self.base_url:
            raise ValueError(
                "HTTP provider has resource types but no base_url. "
                "Set HTTP_PROVIDER_URL."
            )

        logger.debug(
            f"HTTP provider initialized: base_url={self.base_url or '(unset)'}, "
            f"resource types={', '.join(sorted(self._types)) or 'none'}"
        )

    def _get_headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _url(self, resource_type: str, provider_id: Optional[str] = None) -> str:
        path = self._paths.get(resource_type)
        if path is None:
            raise PermanentProviderError(
                f"HTTP provider has no endpoint for resource type '{resource_type}'"
            )
        url = f"{self.base_url}/{path}"
        if provider_id is not None:
            url += f"/{provider_id}"
        return url

    async def _raise_for_status(
        self,
        response: aiohttp.ClientResponse,
        method: str,
        resource_type: str,
        provider_id: str,
    ) -> None:
        """Map an error response to the provider error taxonomy."""
        if response.status < 400:
            return
        text = await response.text()
        message = f"{method} {response.url} returned {response.status}: {text[:200]}"
        if response.status == 404:
            raise ResourceNotFoundError(provider_id, resource_type)
        if response.status in TRANSIENT_STATUSES or response.status >= 500:
            raise TransientProviderError(message)
        raise PermanentProviderError(message)

    async def _request(
        self,
        method: str,
        url: str,
        resource_type: str,
        provider_id: str = "",
        payload: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method,
                    url,
                    headers=self._get_headers(idempotency_key),
                    json=payload,
                ) as response:
                    await self._raise_for_status(
                        response, method, resource_type, provider_id
                    )
                    if response.status == 204:
                        return {}
                    return await response.json() or {}
        except ProviderError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientProviderError(f"{method} {url} failed: {e}") from e
        except ValueError as e:
            raise PermanentProviderError(f"{method} {url} returned invalid JSON: {e}") from e

    async def create(self, resource: Resource, idempotency_key: str) -> ProviderResult:
        body = await self._request(
            "POST",
            self._url(resource.type),
            resource.type,
            payload={"name": resource.id, "properties": resource.properties},
            idempotency_key=idempotency_key,
        )
        if "id" not in body:
            raise PermanentProviderError(
                f"Create of {resource.id} returned no identifier"
            )
        logger.info(f"Created {resource.type} {resource.id} as {body['id']}")
        return ProviderResult(str(body["id"]), body.get("outputs") or {})

    async def update(
        self,
        resource: Resource,
        diff: Dict[str, PropertyChange],
        provider_id: str,
        idempotency_key: str,
    ) -> Dict[str, Any]:
        body = await self._request(
            "PATCH",
            self._url(resource.type, provider_id),
            resource.type,
            provider_id=provider_id,
            payload={"properties": {name: resource.properties.get(name) for name in diff}},
            idempotency_key=idempotency_key,
        )
        logger.info(f"Updated {resource.type} {resource.id} ({provider_id})")
        return body.get("outputs") or {}

    async def delete(
        self, provider_id: str, resource_type: str, idempotency_key: str
    ) -> None:
        await self._request(
            "DELETE",
            self._url(resource_type, provider_id),
            resource_type,
            provider_id=provider_id,
            idempotency_key=idempotency_key,
        )
        logger.info(f"Deleted {resource_type} {provider_id}")

    async def describe(self, provider_id: str, resource_type: str) -> Dict[str, Any]:
        body = await self._request(
            "GET",
            self._url(resource_type, provider_id),
            resource_type,
            provider_id=provider_id,
        )
        return body.get("properties") or {}
