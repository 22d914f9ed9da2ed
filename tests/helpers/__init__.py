"""Test helpers for PaceCore."""

from .fakes import FakeClock, FakeFetch, make_response

__all__ = ["FakeClock", "FakeFetch", "make_response"]
