"""Parser for delta blocks embedded in free-text agent messages.

Agents propose artifact changes by embedding fenced JSON blocks tagged
``delta`` in an otherwise free-form message:

    ```delta
    {"operation": "ADD", "section": "hypothesis_slate", "target_id": null,
     "payload": {"name": "...", "claim": "...", "mechanism": "..."},
     "rationale": "..."}
    ```

or the colon-fenced form ``:::delta ... :::``. The closing fence must have
the same length as the opening fence, so a shorter fence (e.g. a nested
```json example) can live inside a longer one.

Parsing never raises: every block yields either a ValidDelta or an
InvalidDelta carrying a human-readable error and the raw block text.
Validation here is shape-only; whether a delta can be applied to a given
artifact is decided by the merge engine.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from research_artifact.schemas import (
    RESEARCH_THREAD_ID,
    SECTION_ID_PREFIXES,
    SINGLETON_SECTION,
    Section,
    to_section,
)
from research_artifact.utils import next_id

logger = logging.getLogger(__name__)


class DeltaOperation(str, Enum):
    """Change operations a delta may request."""

    ADD = "ADD"
    EDIT = "EDIT"
    KILL = "KILL"


VALID_OPERATIONS = tuple(op.value for op in DeltaOperation)
VALID_SECTIONS = tuple(s.value for s in Section)


@dataclass
class ValidDelta:
    """A delta that passed shape validation.

    Attributes:
        operation: ADD, EDIT, or KILL
        section: Target section
        target_id: Item id for EDIT/KILL (None for ADD and optional for the
            research thread)
        payload: Proposed field values (for KILL, holds ``reason``)
        rationale: Free-text justification
        raw: Source text of the block, for debugging
        timestamp: Per-delta ISO-8601 time (multi-actor merges)
        agent: Acting agent (multi-actor merges)
    """

    operation: DeltaOperation
    section: Section
    target_id: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)
    rationale: str = ""
    raw: str = ""
    timestamp: Optional[str] = None
    agent: Optional[str] = None

    @property
    def valid(self) -> bool:
        return True

    def to_dict(self) -> dict:
        """Serialize to the delta wire shape."""
        data = {
            "operation": self.operation.value,
            "section": self.section.value,
            "target_id": self.target_id,
            "payload": self.payload,
            "rationale": self.rationale,
        }
        if self.timestamp is not None:
            data["timestamp"] = self.timestamp
        if self.agent is not None:
            data["agent"] = self.agent
        return data


@dataclass
class InvalidDelta:
    """A delta block that could not be parsed or failed validation."""

    error: str
    raw: str = ""

    @property
    def valid(self) -> bool:
        return False

    def to_dict(self) -> dict:
        return {"valid": False, "error": self.error, "raw": self.raw}


ParsedDelta = Union[ValidDelta, InvalidDelta]


@dataclass
class ParseResult:
    """Outcome of parsing one message body.

    Attributes:
        deltas: One entry per delta block, in document order
        total_blocks: Number of non-empty delta blocks found
        valid_count: Blocks that produced a ValidDelta
        invalid_count: Blocks that produced an InvalidDelta
    """

    deltas: list[ParsedDelta] = field(default_factory=list)
    total_blocks: int = 0
    valid_count: int = 0
    invalid_count: int = 0

    @property
    def valid_deltas(self) -> list[ValidDelta]:
        return [d for d in self.deltas if isinstance(d, ValidDelta)]

    @property
    def invalid_deltas(self) -> list[InvalidDelta]:
        return [d for d in self.deltas if isinstance(d, InvalidDelta)]


class DeltaParser:
    """Extracts and validates delta blocks from message bodies."""

    # Backtick or colon fences, 3+ markers, closing fence of matching length.
    # Anything after the tag on the opening line is ignored.
    DELTA_BLOCK_RE = re.compile(
        r"(`{3,})delta(?:[ \t][^\n]*)?\r?\n(.*?)\1"
        r"|(:{3,})delta(?:[ \t][^\n]*)?\r?\n(.*?)\3",
        re.DOTALL,
    )

    # Quoted strings are matched first so comments inside them survive
    COMMENT_RE = re.compile(
        r'("(?:[^"\\]|\\.)*")|(//[^\n]*)|(/\*.*?\*/)',
        re.DOTALL,
    )
    TRAILING_COMMA_RE = re.compile(r'("(?:[^"\\]|\\.)*")|,(\s*[}\]])', re.DOTALL)

    def parse(self, body: str) -> ParseResult:
        """Parse every delta block in a message body.

        Args:
            body: Markdown/free-text message

        Returns:
            ParseResult with one parsed delta per block
        """
        blocks = self.extract_blocks(body)
        deltas = [self.parse_block(block) for block in blocks]
        valid_count = sum(1 for d in deltas if d.valid)

        result = ParseResult(
            deltas=deltas,
            total_blocks=len(blocks),
            valid_count=valid_count,
            invalid_count=len(deltas) - valid_count,
        )
        logger.debug(
            f"Parsed delta message: blocks={result.total_blocks}, "
            f"valid={result.valid_count}, invalid={result.invalid_count}"
        )
        return result

    def extract_blocks(self, body: str) -> list[str]:
        """Return the stripped contents of every non-empty delta block."""
        if not isinstance(body, str) or not body:
            return []
        blocks = []
        for match in self.DELTA_BLOCK_RE.finditer(body):
            content = match.group(2) if match.group(1) is not None else match.group(4)
            content = (content or "").strip()
            if content:
                blocks.append(content)
        return blocks

    def parse_block(self, block: str) -> ParsedDelta:
        """Parse and validate a single block's JSON text."""
        try:
            parsed = json.loads(block)
        except json.JSONDecodeError as e:
            try:
                parsed = json.loads(self.sanitize_json(block))
            except json.JSONDecodeError:
                logger.warning(f"Delta block is not valid JSON: {e}")
                return InvalidDelta(error=f"Invalid JSON: {e}", raw=block)
        delta = self.validate(parsed, block)
        if not delta.valid:
            logger.warning(f"Rejected delta block: {delta.error}")
        return delta

    def sanitize_json(self, text: str) -> str:
        """Best-effort repair of common JSON mistakes.

        Removes ``//`` and ``/* */`` comments and trailing commas before a
        closing brace or bracket, leaving quoted strings untouched.
        """
        cleaned = self.COMMENT_RE.sub(lambda m: m.group(1) or "", text)
        return self.TRAILING_COMMA_RE.sub(
            lambda m: m.group(1) if m.group(1) is not None else m.group(2),
            cleaned,
        )

    def validate(self, raw: Any, raw_text: str) -> ParsedDelta:
        """Check operation/section/target/payload rules for a decoded block."""
        if not isinstance(raw, dict):
            return InvalidDelta(error="Delta is not an object", raw=raw_text)

        operation = raw.get("operation")
        section = raw.get("section")
        target_id = raw.get("target_id")
        payload = raw.get("payload")
        rationale = raw.get("rationale")

        if not isinstance(operation, str) or operation not in VALID_OPERATIONS:
            return InvalidDelta(
                error=(
                    f'Invalid operation: "{operation}". '
                    f"Must be one of: {', '.join(VALID_OPERATIONS)}"
                ),
                raw=raw_text,
            )
        if not isinstance(section, str) or section not in VALID_SECTIONS:
            return InvalidDelta(
                error=(
                    f'Invalid section: "{section}". '
                    f"Must be one of: {', '.join(VALID_SECTIONS)}"
                ),
                raw=raw_text,
            )

        op = DeltaOperation(operation)
        sec = Section(section)
        is_singleton = sec is SINGLETON_SECTION

        if op is DeltaOperation.ADD and target_id is not None:
            return InvalidDelta(
                error="ADD operation must have target_id as null", raw=raw_text
            )
        if op is DeltaOperation.KILL and not isinstance(target_id, str):
            return InvalidDelta(
                error="KILL operation requires target_id as a string", raw=raw_text
            )
        if op is DeltaOperation.EDIT and not isinstance(target_id, str) and not is_singleton:
            return InvalidDelta(
                error="EDIT operation requires target_id as a string", raw=raw_text
            )

        if op in (DeltaOperation.ADD, DeltaOperation.EDIT) and not isinstance(payload, dict):
            return InvalidDelta(
                error=f"{op.value} operation requires a payload object", raw=raw_text
            )
        if op is DeltaOperation.KILL:
            if not isinstance(payload, dict) or not isinstance(payload.get("reason"), str):
                return InvalidDelta(
                    error="KILL operation requires payload with 'reason' string",
                    raw=raw_text,
                )

        if is_singleton:
            if op is not DeltaOperation.EDIT:
                return InvalidDelta(
                    error=f"{sec.value} section only supports EDIT operation",
                    raw=raw_text,
                )
            if target_id is not None and not isinstance(target_id, str):
                return InvalidDelta(
                    error=f'{sec.value} target_id must be a string ("{RESEARCH_THREAD_ID}") or null',
                    raw=raw_text,
                )
            if isinstance(target_id, str) and target_id != RESEARCH_THREAD_ID:
                return InvalidDelta(
                    error=f'{sec.value} target_id must be "{RESEARCH_THREAD_ID}" (got "{target_id}")',
                    raw=raw_text,
                )

        timestamp = raw.get("timestamp")
        agent = raw.get("agent")
        return ValidDelta(
            operation=op,
            section=sec,
            target_id=target_id if isinstance(target_id, str) else None,
            payload=dict(payload) if isinstance(payload, dict) else {},
            rationale=rationale if isinstance(rationale, str) else "",
            raw=raw_text,
            timestamp=timestamp if isinstance(timestamp, str) else None,
            agent=agent if isinstance(agent, str) else None,
        )


_DEFAULT_PARSER = DeltaParser()


def parse_delta_message(body: str) -> ParseResult:
    """Parse all delta blocks from a message body."""
    return _DEFAULT_PARSER.parse(body)


def extract_valid_deltas(body: str) -> list[ValidDelta]:
    """Only the deltas that passed validation."""
    return parse_delta_message(body).valid_deltas


def get_section_id_prefix(section: Section | str) -> str:
    """Fixed id prefix for a section (``hypothesis_slate`` -> ``H``)."""
    return SECTION_ID_PREFIXES[to_section(section)]


def validate_target_id_prefix(target_id: str, section: Section | str) -> bool:
    """True when ``target_id`` carries the section's prefix followed by digits.

    The research thread's fixed id ``RT`` is accepted for the singleton.
    """
    sec = to_section(section)
    prefix = SECTION_ID_PREFIXES[sec]
    if sec is SINGLETON_SECTION:
        return target_id == RESEARCH_THREAD_ID
    return re.fullmatch(rf"{re.escape(prefix)}\d+", target_id or "") is not None


def generate_next_id(section: Section | str, existing_ids: list[str]) -> str:
    """Next sequential id for a section (``H4`` when H1-H3 exist)."""
    return next_id(get_section_id_prefix(section), existing_ids)
