"""Simulated provider - in-process resources for local runs and tests."""

from providers.simulated.provider import SimulatedProvider

__all__ = ["SimulatedProvider"]
