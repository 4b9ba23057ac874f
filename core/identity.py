"""
core/identity.py -- Serial sanitization and device hash derivation.

These are domain rules shared by the registry (which stores serial and hash),
the provisioning orchestrator (which validates incoming hashes), and the CLI
(which prints the hash for a serial so a bench-test device can be simulated).

The device never sends its raw serial after registration. It asks for its
script by SHA-256(serial), so an intercepted provisioning URL does not reveal
the serial itself.
"""

import hashlib
import re

# C0 controls, DEL, and C1 controls. Devices frequently send serials read from
# /sys or dmidecode output with a trailing \r\n or embedded NULs.
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")

# 64 hex chars. Accepted case-insensitively, normalized to lowercase.
DEVICE_HASH_PATTERN = r"^[0-9a-fA-F]{64}$"
_DEVICE_HASH_RE = re.compile(DEVICE_HASH_PATTERN)

# Characters allowed in a value used as a hostname or filename component.
IDENTIFIER_PATTERN = r"^[A-Za-z0-9_-]+$"
_IDENTIFIER_RE = re.compile(IDENTIFIER_PATTERN)


def sanitize_serial(raw: str) -> str:
    """Strip control characters, then surrounding whitespace.

    Returns "" when nothing printable is left; callers treat that as invalid.
    """
    return _CONTROL_CHARS_RE.sub("", raw).strip()


def hash_serial(serial: str) -> str:
    """Return the lowercase hex SHA-256 of the UTF-8 encoded serial."""
    return hashlib.sha256(serial.encode("utf-8")).hexdigest()


def normalize_device_hash(value: str) -> str | None:
    """Return the lowercase hash, or None if value is not 64 hex characters."""
    if not value or not _DEVICE_HASH_RE.fullmatch(value):
        return None
    return value.lower()


def is_safe_identifier(value: str) -> bool:
    """True if value only contains ASCII letters, digits, dash and underscore."""
    return bool(value) and _IDENTIFIER_RE.fullmatch(value) is not None
