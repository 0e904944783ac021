"""Deterministic resource naming and port allocation.

Same thread id always yields the same names and base port. Different thread
ids may collide on a port; the local backend scans forward with next_port().
"""

from __future__ import annotations

import re

PORT_MIN = 10000
PORT_MAX = 65535
PORT_RANGE = PORT_MAX - PORT_MIN + 1

CONTAINER_PREFIX = "threadbox-sandbox"
VOLUME_PREFIX = "threadbox-workspace"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize_name(thread_id: str) -> str:
    return _UNSAFE_CHARS.sub("-", thread_id).lower()


def short_digest(thread_id: str) -> str:
    """8 hex chars of the raw id's hash."""
    return f"{hash_code(thread_id) & 0xFFFFFFFF:08x}"


def thread_slug(thread_id: str) -> str:
    """Name-safe form of a thread id.

    Ids that sanitizing had to rewrite carry a digest of the raw id, so
    "a.b", "a-b" and "A-B" never share a container or volume.
    """
    safe = sanitize_name(thread_id)
    if safe == thread_id:
        return safe
    return f"{safe}-{short_digest(thread_id)}"


def container_name(thread_id: str) -> str:
    return f"{CONTAINER_PREFIX}-{thread_slug(thread_id)}"


def volume_name(thread_id: str) -> str:
    return f"{VOLUME_PREFIX}-{thread_slug(thread_id)}"


def hash_code(value: str) -> int:
    """32-bit signed string hash (h = 31*h + c), stable across processes."""
    h = 0
    for ch in value:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def port_for_thread(thread_id: str) -> int:
    return PORT_MIN + (abs(hash_code(thread_id)) % PORT_RANGE)


def next_port(port: int) -> int:
    candidate = port + 1
    return PORT_MIN if candidate > PORT_MAX else candidate
