"""Utility helpers for the betting application."""

from .time_utils import format_remaining, now_utc

__all__ = ["format_remaining", "now_utc"]
