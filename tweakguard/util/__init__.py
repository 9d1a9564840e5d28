"""Utility modules for tweakguard."""

from .logging import StructuredLogger, get_logger, audit_event, sanitize_payload, SUCCESS

__all__ = [
    "StructuredLogger",
    "get_logger",
    "audit_event",
    "sanitize_payload",
    "SUCCESS",
]
