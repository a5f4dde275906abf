"""
Error taxonomy for the reconciliation engine.

Planning errors (declaration, cycle, reference) are raised before any
side effect. Provider errors are scoped to a single step of a plan.
"""

from datetime import datetime
from typing import List, Optional


class CairnError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class DeclarationError(CairnError):
    """Raised when a stack declaration is malformed or fails validation."""


class CycleError(CairnError):
    """Raised when resource dependencies form a cycle."""

    def __init__(self, resource_ids: List[str]):
        self.resource_ids = list(resource_ids)
        path = " -> ".join(self.resource_ids + self.resource_ids[:1])
        super().__init__(f"Dependency cycle detected: {path}")


class UnresolvedReferenceError(CairnError):
    """Raised when a resource references something that does not exist."""

    def __init__(self, resource_id: str, reference: str, reason: str = ""):
        self.resource_id = resource_id
        self.reference = reference
        detail = reason or "referenced resource is not declared"
        super().__init__(
            f"Resource '{resource_id}' has unresolved reference "
            f"'{reference}': {detail}"
        )


class ProviderError(CairnError):
    """
    Raised by providers when a call fails.

    Transient errors (timeouts, rate limits, unavailable endpoints) are
    retried by the executor; permanent ones fail the step immediately.
    """

    def __init__(self, message: str, transient: bool = False):
        self.transient = transient
        super().__init__(message)


class TransientProviderError(ProviderError):
    """A provider failure that may succeed on retry."""

    def __init__(self, message: str):
        super().__init__(message, transient=True)


class PermanentProviderError(ProviderError):
    """A provider failure that will not succeed on retry."""

    def __init__(self, message: str):
        super().__init__(message, transient=False)


class ResourceNotFoundError(ProviderError):
    """Raised by describe() when the provider no longer knows the resource."""

    def __init__(self, provider_id: str, resource_type: str):
        self.provider_id = provider_id
        self.resource_type = resource_type
        super().__init__(
            f"{resource_type} '{provider_id}' not found", transient=False
        )


class LockContentionError(CairnError):
    """Raised when another writer holds the state lease for a stack."""

    def __init__(
        self,
        stack: str,
        holder: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        message: Optional[str] = None,
    ):
        self.stack = stack
        self.holder = holder
        self.expires_at = expires_at
        if message is None:
            message = f"State for stack '{stack}' is locked"
            if holder:
                message += f" by '{holder}'"
            if expires_at:
                message += f" until {expires_at.isoformat()}"
        super().__init__(message)


class StateError(CairnError):
    """Raised when persisted state cannot be read or written."""
