"""Stable identities for operations and lineage artifacts.

An operation is identified by its tool name plus the SHA-256 of its input
serialized as canonical JSON (keys sorted at every depth, compact separators).
Two structurally equal inputs therefore always collide, regardless of key
order or incidental whitespace in the transcript they came from.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from autopromote.models import OperationKey


def canonical_json(value: Any) -> str:
    """Serialize a JSON-compatible value with sorted keys and no padding."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_input(tool_input: dict[str, Any]) -> str:
    """SHA-256 of the canonicalized tool input."""
    return sha256_hex(canonical_json(tool_input))


def hash_output(output: str) -> str:
    """SHA-256 of tool or script output text."""
    return sha256_hex(output)


def operation_key(tool_name: str, tool_input: dict[str, Any]) -> OperationKey:
    return OperationKey(tool_name=tool_name, input_hash=hash_input(tool_input))


# ── Lineage artifact ids ───────────────────────────────────────────────────────
def observation_id(session_id: str, key: OperationKey) -> str:
    return f"obs:{session_id}:{key.tool_name}:{key.input_hash}"


def pattern_id(key: OperationKey) -> str:
    return f"pat:{key.tool_name}:{key.input_hash}"


def candidate_id(key: OperationKey) -> str:
    return f"cand:{key.tool_name}:{key.input_hash}"


def decision_id(operation_id: str, timestamp: str) -> str:
    return f"gate:{operation_id}:{timestamp}"


def script_id(operation_id: str, timestamp: str) -> str:
    """One id per promotion, keyed by the approving decision's timestamp."""
    return f"script:{operation_id}:{timestamp}"


def execution_id(operation_id: str, timestamp: str) -> str:
    return f"exec:{operation_id}:{timestamp}"


def demotion_id(operation_id: str, timestamp: str) -> str:
    return f"demote:{operation_id}:{timestamp}"
