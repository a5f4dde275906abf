"""Generic REST provider."""

from providers.http.provider import HTTPProvider

__all__ = ["HTTPProvider"]
