"""Shared utility functions and models for the FinSync core.

This package provides convenience re-exports so that consumers can import
directly from ``finsync.utils`` (e.g. ``from finsync.utils import
normalize_keys``) while full absolute imports remain supported.
"""

from finsync.utils.audit import AuditAction, AuditEvent, log_audit_event
from finsync.utils.general import convert_to_json_safe
from finsync.utils.string_helpers import JsonValue, normalize_keys, to_snake_case

__all__ = [
    "AuditAction",
    "AuditEvent",
    "JsonValue",
    "convert_to_json_safe",
    "log_audit_event",
    "normalize_keys",
    "to_snake_case",
]
