"""
Backend Reply Parsing
=====================
Turns free-form backend replies into tagged outcomes.

Every reply goes through the same multi-strategy JSON extraction:
1. Direct parse (reply is pure JSON)
2. Greedy object regex
3. Fenced ```json code block
4. First standalone flat object

The result is either ``Parsed`` (a dict that also validated against the
expected schema) or ``Unparseable``. Callers decide how lenient to be:
execution treats Unparseable as a plain-text success, durability
classification treats it as "not durable".
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from loguru import logger

from taskforge.utils.schema_validation import Schema, SchemaRef, SchemaViolation, validate_against_schema

from .models import Artifact, ArtifactKind


EXECUTION_SCHEMA = Schema.EXECUTION_RESULT
REVIEW_SCHEMA = Schema.REVIEW

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


@dataclass(frozen=True)
class Parsed:
    payload: Dict[str, Any]
    method: str


@dataclass(frozen=True)
class Unparseable:
    raw: str
    reason: str


ParseOutcome = Union[Parsed, Unparseable]


def extract_json_object(text: str) -> Tuple[Optional[Dict[str, Any]], str]:
    """Extract the first JSON object from ``text``.

    Returns:
        (object or None, name of the strategy that succeeded or "none")
    """
    if not text or not text.strip():
        return None, "none"

    # Strategy 1: Direct JSON parse
    try:
        parsed = json.loads(text.strip())
        if isinstance(parsed, dict):
            return parsed, "direct"
    except json.JSONDecodeError:
        pass

    # Strategy 2: Greedy object regex
    match = re.search(r"\{[\s\S]*\}", text)
    if match:
        try:
            parsed = json.loads(match.group())
            if isinstance(parsed, dict):
                return parsed, "regex_greedy"
        except json.JSONDecodeError:
            pass

    # Strategy 3: Fenced code block
    for block in _FENCE_RE.findall(text):
        try:
            parsed = json.loads(block.strip())
            if isinstance(parsed, dict):
                return parsed, "code_block"
        except json.JSONDecodeError:
            continue

    # Strategy 4: First flat object
    for obj_match in re.finditer(r"\{[^{}]+\}", text):
        try:
            parsed = json.loads(obj_match.group())
            if isinstance(parsed, dict):
                return parsed, "object_extraction"
        except json.JSONDecodeError:
            continue

    return None, "none"


def parse_reply(text: str, schema: Optional[SchemaRef] = None) -> ParseOutcome:
    """Parse a backend reply into a tagged outcome."""
    payload, method = extract_json_object(text)
    if payload is None:
        return Unparseable(raw=text or "", reason="no JSON object found")
    if schema:
        try:
            validate_against_schema(payload, schema)
        except SchemaViolation as e:
            return Unparseable(raw=text, reason=str(e))
    return Parsed(payload=payload, method=method)


@dataclass
class ExecutionOutcome:
    """Interpretation of an execution reply."""
    success: bool
    output: str
    artifacts: List[Artifact] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    quality: Optional[float] = None
    error: Optional[str] = None
    lenient: bool = False  # True when the reply was unstructured and accepted as text


def _artifact_kind(value: Any) -> ArtifactKind:
    try:
        return ArtifactKind(str(value))
    except ValueError:
        return ArtifactKind.TEXT


def interpret_execution_reply(raw: str, *, task_id: str, worker_id: str) -> ExecutionOutcome:
    """Map an execution reply onto an ExecutionOutcome.

    A reply with no structured content is treated as a successful text
    result carrying the raw reply as its only artifact.
    """
    outcome = parse_reply(raw, EXECUTION_SCHEMA)
    if isinstance(outcome, Unparseable):
        logger.debug(f"Task {task_id}: unstructured execution reply ({outcome.reason}); accepting as text")
        return ExecutionOutcome(
            success=True,
            output=raw,
            artifacts=[Artifact(kind=ArtifactKind.TEXT, name=f"{task_id}-output", content=raw, created_by=worker_id)],
            lenient=True,
        )

    payload = outcome.payload
    artifacts = []
    for i, item in enumerate(payload.get("artifacts") or [], start=1):
        artifacts.append(Artifact(
            kind=_artifact_kind(item.get("kind", "text")),
            name=str(item.get("name") or f"{task_id}-artifact-{i}"),
            content=str(item.get("content", "")),
            created_by=worker_id,
        ))
    output = str(payload.get("output") or "")
    if not artifacts and output and payload["success"]:
        artifacts.append(Artifact(kind=ArtifactKind.TEXT, name=f"{task_id}-output", content=output, created_by=worker_id))

    return ExecutionOutcome(
        success=bool(payload["success"]),
        output=output,
        artifacts=artifacts,
        notes=[str(n) for n in payload.get("notes") or []],
        quality=payload.get("quality"),
        error=payload.get("error") or None,
    )


@dataclass
class ReviewVerdict:
    approved: bool
    feedback: str = ""
    quality: Optional[float] = None


def interpret_review_reply(raw: str) -> ReviewVerdict:
    """Lenient review parsing: anything but an explicit rejection approves."""
    outcome = parse_reply(raw, REVIEW_SCHEMA)
    if isinstance(outcome, Parsed):
        return ReviewVerdict(
            approved=bool(outcome.payload["approved"]),
            feedback=str(outcome.payload.get("feedback") or ""),
            quality=outcome.payload.get("quality"),
        )
    return ReviewVerdict(approved=True, feedback=(raw or "").strip()[:500])
