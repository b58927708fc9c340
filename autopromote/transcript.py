"""
Transcript parsing — turn raw agent session JSONL into paired tool executions.

Each transcript line is one JSON object. Lines that fail to parse, are not
objects, or lack a uuid/type are skipped with a warning; sidechain entries
are dropped. Nothing here is fatal to a batch.

Pairing:
  Each ``tool_use`` is matched with the next ``tool_result`` whose
  ``tool_use_id`` names it. Any number of other entries may sit between the
  two. A ``tool_use`` that never gets a result becomes a ``partial`` pair
  with no output. Defaults for missing fields (tool name, input) are
  resolved here, once, so later stages never see a half-formed pair.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog

from autopromote.identity import canonical_json, hash_output
from autopromote.models import (
    ExecutionContext,
    PairStatus,
    ToolExecutionPair,
    TranscriptEntry,
)

logger = structlog.get_logger(__name__)

UNKNOWN_TOOL_NAME = "unknown"


# ── Parsing ────────────────────────────────────────────────────────────────────
def _entry_from_dict(data: dict[str, Any]) -> TranscriptEntry:
    tool_input = data.get("tool_input")
    return TranscriptEntry(
        uuid=str(data["uuid"]),
        type=str(data["type"]),
        session_id=str(data.get("sessionId", "")),
        timestamp=str(data.get("timestamp", "")),
        parent_uuid=data.get("parentUuid"),
        is_sidechain=bool(data.get("isSidechain", False)),
        tool_name=data.get("tool_name") or None,
        tool_input=tool_input if isinstance(tool_input, dict) else None,
        tool_use_id=data.get("tool_use_id"),
        tool_output=data.get("tool_output"),
    )


def parse_transcript(content: str) -> list[TranscriptEntry]:
    """Parse JSONL transcript content into entries.

    Blank lines are ignored. Corrupt lines and entries missing ``uuid`` or
    ``type`` are skipped with a warning. Sidechain entries are dropped.
    """
    entries: list[TranscriptEntry] = []
    for line_num, raw_line in enumerate(content.splitlines(), start=1):
        stripped = raw_line.strip()
        if not stripped:
            continue
        try:
            data = json.loads(stripped)
        except json.JSONDecodeError:
            logger.warning("transcript.malformed_line", line=line_num)
            continue
        if not isinstance(data, dict):
            logger.warning("transcript.non_object_line", line=line_num)
            continue

        try:
            entry = _entry_from_dict(data)
        except KeyError as exc:
            logger.warning("transcript.entry_missing_field", line=line_num, field=str(exc))
            continue

        if entry.is_sidechain:
            continue
        entries.append(entry)
    return entries


def load_transcript(path: str | Path) -> list[TranscriptEntry]:
    """Read and parse a transcript file. Returns [] if the file does not exist."""
    transcript_path = Path(path)
    if not transcript_path.exists():
        logger.warning("transcript.not_found", path=str(transcript_path))
        return []
    entries = parse_transcript(transcript_path.read_text(encoding="utf-8"))
    logger.info("transcript.loaded", path=str(transcript_path), count=len(entries))
    return entries


# ── Pairing ────────────────────────────────────────────────────────────────────
def _output_text(raw: Any) -> str:
    """Normalize tool output to text; structured output is canonicalized."""
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    return canonical_json(raw)


def pair_tool_executions(
    entries: list[TranscriptEntry],
    context: ExecutionContext,
) -> list[ToolExecutionPair]:
    """Pair each tool_use with its matching tool_result.

    Pairs come back in tool_use order. Each tool_result is consumed at most
    once, by the first earlier tool_use it references.
    """
    pairs: list[ToolExecutionPair] = []
    consumed: set[int] = set()

    for index, entry in enumerate(entries):
        if entry.type != "tool_use":
            continue

        result: TranscriptEntry | None = None
        for later_index in range(index + 1, len(entries)):
            candidate = entries[later_index]
            if later_index in consumed or candidate.type != "tool_result":
                continue
            if candidate.tool_use_id == entry.uuid:
                result = candidate
                consumed.add(later_index)
                break

        tool_name = entry.tool_name or UNKNOWN_TOOL_NAME
        tool_input = dict(entry.tool_input or {})

        if result is None:
            pairs.append(
                ToolExecutionPair(
                    id=entry.uuid,
                    tool_name=tool_name,
                    input=tool_input,
                    output=None,
                    output_hash=None,
                    status=PairStatus.PARTIAL,
                    timestamp=entry.timestamp,
                    context=context,
                )
            )
            continue

        output = _output_text(result.tool_output)
        pairs.append(
            ToolExecutionPair(
                id=entry.uuid,
                tool_name=tool_name,
                input=tool_input,
                output=output,
                output_hash=hash_output(output),
                status=PairStatus.COMPLETE,
                timestamp=entry.timestamp,
                context=context,
            )
        )

    return pairs
