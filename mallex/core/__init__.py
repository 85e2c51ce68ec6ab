"""Lifecycle engine and input validation."""

from .engine import SuggestionEngine

__all__ = ["SuggestionEngine"]
