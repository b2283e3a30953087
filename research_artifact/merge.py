"""Deterministic merge of validated deltas into a research artifact.

The merge engine reduces a base artifact plus an unordered bag of deltas to
a new artifact:

1. Stamp every delta with its acting agent and timestamp
2. Stable-sort by timestamp string (the sole source of determinism)
3. Apply each delta to a private deep copy of the base
4. Bump ``version`` by 1, advance ``updated_at``, upsert contributors

The base artifact is never mutated. Any hard error turns the result into a
MergeFailure that the caller must not adopt; the remaining deltas are still
applied so the report lists every outcome. Warnings never block adoption.

Conflict rules:
- Two EDITs of the same field: the later timestamp wins outright
- String-list fields (anchors, conflicts_with, ...) are unioned unless the
  payload carries ``replace: true``
- KILL is terminal: EDITs reaching a killed item are skipped with a
  TARGET_KILLED warning, whatever their timestamp
- KILL of a killed item is a no-op that keeps the original kill metadata
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Sequence, Union

from pydantic import ValidationError

from research_artifact.config import DEFAULT_CONFIG, ArtifactConfig
from research_artifact.delta_parser import DeltaOperation, ValidDelta
from research_artifact.schemas import (
    ITEM_MODELS,
    RESEARCH_THREAD_ID,
    SECTION_ID_PREFIXES,
    SINGLETON_SECTION,
    SYSTEM_ITEM_FIELDS,
    Artifact,
    ArtifactStatus,
    BaseItem,
    Contributor,
    Section,
    to_section,
)
from research_artifact.utils import is_string_list, next_id, total_score, union_string_lists

logger = logging.getLogger(__name__)

# Keys that alias an object's root, constructor, or shared prototype in
# dynamically merged records. Any dunder or underscore-prefixed key is
# treated the same way since it would reach model internals.
FORBIDDEN_PAYLOAD_KEYS = frozenset({"__proto__", "constructor", "prototype"})

# List fields unioned on EDIT even when the current value is missing
MERGEABLE_LIST_FIELDS = frozenset({"anchors", "conflicts_with"})

REPLACE_FLAG = "replace"


class MergeErrorCode(str, Enum):
    """Hard errors: the merged artifact must not be adopted."""

    INVALID_TARGET = "INVALID_TARGET"
    SECTION_LIMIT_EXCEEDED = "SECTION_LIMIT_EXCEEDED"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    INVALID_SECTION = "INVALID_SECTION"
    RT_ADD_NOT_ALLOWED = "RT_ADD_NOT_ALLOWED"


class MergeWarningCode(str, Enum):
    """Advisory signals that never block adoption."""

    FORBIDDEN_PAYLOAD_KEY = "FORBIDDEN_PAYLOAD_KEY"
    TARGET_KILLED = "TARGET_KILLED"
    NO_THIRD_ALTERNATIVE = "NO_THIRD_ALTERNATIVE"
    NO_SCALE_CHECK = "NO_SCALE_CHECK"


class OutcomeStatus(str, Enum):
    """What happened to a single delta."""

    APPLIED = "applied"
    SKIPPED = "skipped"  # Warning only (e.g. killed target)
    ERROR = "error"


@dataclass
class MergeIssue:
    """An error or warning raised while merging (or validating).

    Attributes:
        code: Machine-readable code (MergeErrorCode / MergeWarningCode value)
        message: Human-readable explanation
        delta_raw: Source text of the offending delta, when known
    """

    code: str
    message: str
    delta_raw: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"code": self.code, "message": self.message}
        if self.delta_raw is not None:
            data["delta_raw"] = self.delta_raw
        return data


@dataclass
class DeltaOutcome:
    """Per-delta report entry.

    Attributes:
        position: Index in application (timestamp) order
        input_index: Index in the caller's delta list
        operation: Delta operation
        section: Delta section
        item_id: Target id, or the id minted by an ADD
        agent: Acting agent
        timestamp: Delta timestamp
        status: applied, skipped, or error
        code: Error/warning code explaining a skip or error
    """

    position: int
    input_index: int
    operation: str
    section: str
    item_id: Optional[str]
    agent: str
    timestamp: str
    status: OutcomeStatus
    code: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "position": self.position,
            "input_index": self.input_index,
            "operation": self.operation,
            "section": self.section,
            "item_id": self.item_id,
            "agent": self.agent,
            "timestamp": self.timestamp,
            "status": self.status.value,
            "code": self.code,
        }


@dataclass
class MergeSuccess:
    """Merge with no hard errors; ``artifact`` may be adopted."""

    artifact: Artifact
    warnings: list[MergeIssue] = field(default_factory=list)
    applied_count: int = 0
    skipped_count: int = 0
    outcomes: list[DeltaOutcome] = field(default_factory=list)
    ok: bool = field(default=True, init=False)

    @property
    def errors(self) -> list[MergeIssue]:
        return []

    def to_dict(self) -> dict:
        return {
            "ok": True,
            "artifact": self.artifact.to_dict(),
            "warnings": [w.to_dict() for w in self.warnings],
            "applied_count": self.applied_count,
            "skipped_count": self.skipped_count,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


@dataclass
class MergeFailure:
    """Merge that hit at least one hard error; nothing may be adopted."""

    errors: list[MergeIssue]
    warnings: list[MergeIssue] = field(default_factory=list)
    applied_count: int = 0
    skipped_count: int = 0
    outcomes: list[DeltaOutcome] = field(default_factory=list)
    ok: bool = field(default=False, init=False)

    @property
    def artifact(self) -> None:
        return None

    def to_dict(self) -> dict:
        return {
            "ok": False,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "applied_count": self.applied_count,
            "skipped_count": self.skipped_count,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


MergeResult = Union[MergeSuccess, MergeFailure]


def is_forbidden_payload_key(key: str) -> bool:
    """True for keys that must never be assigned onto a stored item."""
    return key in FORBIDDEN_PAYLOAD_KEYS or key.startswith("_")


def _describe_validation_error(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "payload"
        parts.append(f"{loc}: {err.get('msg', 'invalid value')}")
    return "; ".join(parts)


class _ApplyOutcome:
    """Result of applying one delta to the working copy."""

    __slots__ = ("status", "code", "item_id")

    def __init__(self, status: OutcomeStatus, code: Optional[str] = None, item_id: Optional[str] = None):
        self.status = status
        self.code = code
        self.item_id = item_id


class MergeEngine:
    """Applies validated deltas to artifacts.

    Attributes:
        config: Section limits used for capacity checks
    """

    def __init__(self, config: Optional[ArtifactConfig] = None):
        self.config = config or DEFAULT_CONFIG

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def merge(
        self,
        base: Artifact,
        deltas: Sequence[ValidDelta],
        agent: str,
        timestamp: str,
    ) -> MergeResult:
        """Single-actor merge: every delta shares ``agent`` and ``timestamp``.

        Raises:
            ValueError: If agent/timestamp are empty or a delta is not a ValidDelta
        """
        if not isinstance(agent, str) or not agent.strip():
            raise ValueError("agent must be a non-empty string")
        if not isinstance(timestamp, str) or not timestamp.strip():
            raise ValueError("timestamp must be a non-empty string")
        deltas = self._check_deltas(deltas)
        stamped = [dataclasses.replace(d, agent=agent, timestamp=timestamp) for d in deltas]
        return self._merge(base, stamped)

    def merge_with_timestamps(
        self,
        base: Artifact,
        deltas: Sequence[ValidDelta],
    ) -> MergeResult:
        """Multi-actor merge: each delta carries its own agent and timestamp.

        Raises:
            ValueError: If any delta lacks a timestamp or agent
        """
        deltas = self._check_deltas(deltas)
        for index, delta in enumerate(deltas):
            if not delta.timestamp or not delta.agent:
                raise ValueError(
                    f"Delta {index} is missing timestamp or agent; "
                    "use merge() for single-actor merges"
                )
        return self._merge(base, list(deltas))

    def update_status(
        self,
        base: Artifact,
        status: ArtifactStatus | str,
        agent: str,
        timestamp: str,
    ) -> Artifact:
        """Return a copy of ``base`` with a new lifecycle status.

        The version is bumped like a merge. Closed is terminal: reopening
        raises, re-closing returns an unchanged copy.

        Raises:
            ValueError: On an unknown status or a transition out of closed
        """
        new_status = ArtifactStatus(status)
        artifact = base.model_copy(deep=True)
        current = artifact.metadata.status
        if current == ArtifactStatus.CLOSED.value:
            if new_status is ArtifactStatus.CLOSED:
                return artifact
            raise ValueError("Closed artifacts cannot be reopened")
        artifact.metadata.status = new_status.value
        artifact.metadata.version += 1
        if timestamp > artifact.metadata.updated_at:
            artifact.metadata.updated_at = timestamp
        self._upsert_contributor(artifact, agent, timestamp)
        logger.info(
            f"Artifact {artifact.metadata.session_id} status {current} -> "
            f"{new_status.value} (v{artifact.metadata.version})"
        )
        return artifact

    # ------------------------------------------------------------------
    # Core loop
    # ------------------------------------------------------------------

    def _check_deltas(self, deltas: Sequence[Any]) -> list[ValidDelta]:
        """Reject non-deltas and coerce string operation/section values to enums."""
        checked = []
        for index, delta in enumerate(deltas):
            if not isinstance(delta, ValidDelta):
                raise ValueError(f"Delta {index} is not a ValidDelta: {type(delta).__name__}")
            try:
                operation = DeltaOperation(delta.operation)
                section = to_section(delta.section)
            except ValueError as e:
                raise ValueError(f"Delta {index}: {e}") from None
            checked.append(dataclasses.replace(delta, operation=operation, section=section))
        return checked

    def _merge(self, base: Artifact, deltas: list[ValidDelta]) -> MergeResult:
        artifact = base.model_copy(deep=True)

        indexed = list(enumerate(deltas))
        # Stable: equal timestamps keep their relative input order
        indexed.sort(key=lambda pair: pair[1].timestamp)

        errors: list[MergeIssue] = []
        warnings: list[MergeIssue] = []
        outcomes: list[DeltaOutcome] = []
        applied_count = 0
        skipped_count = 0
        latest = artifact.metadata.updated_at

        for position, (input_index, delta) in enumerate(indexed):
            result = self._apply(artifact, delta, errors, warnings)
            outcomes.append(
                DeltaOutcome(
                    position=position,
                    input_index=input_index,
                    operation=delta.operation.value,
                    section=delta.section.value,
                    item_id=result.item_id,
                    agent=delta.agent,
                    timestamp=delta.timestamp,
                    status=result.status,
                    code=result.code,
                )
            )
            if result.status is OutcomeStatus.APPLIED:
                applied_count += 1
                if delta.timestamp > latest:
                    latest = delta.timestamp
                self._upsert_contributor(artifact, delta.agent, delta.timestamp)
                logger.debug(
                    f"Applied {delta.operation.value} {delta.section.value} "
                    f"{result.item_id or ''} by {delta.agent}"
                )
            else:
                skipped_count += 1

        artifact.metadata.version += 1
        artifact.metadata.updated_at = latest

        logger.info(
            f"Merged {len(deltas)} deltas into {artifact.metadata.session_id} "
            f"v{artifact.metadata.version}: applied={applied_count}, "
            f"skipped={skipped_count}, errors={len(errors)}, warnings={len(warnings)}"
        )

        if errors:
            return MergeFailure(
                errors=errors,
                warnings=warnings,
                applied_count=applied_count,
                skipped_count=skipped_count,
                outcomes=outcomes,
            )
        return MergeSuccess(
            artifact=artifact,
            warnings=warnings,
            applied_count=applied_count,
            skipped_count=skipped_count,
            outcomes=outcomes,
        )

    def _apply(
        self,
        artifact: Artifact,
        delta: ValidDelta,
        errors: list[MergeIssue],
        warnings: list[MergeIssue],
    ) -> _ApplyOutcome:
        if delta.operation is DeltaOperation.ADD:
            outcome = self._apply_add(artifact, delta, errors, warnings)
        elif delta.operation is DeltaOperation.EDIT:
            outcome = self._apply_edit(artifact, delta, errors, warnings)
        elif delta.operation is DeltaOperation.KILL:
            outcome = self._apply_kill(artifact, delta, errors, warnings)
        else:
            outcome = self._error(
                errors, delta, MergeErrorCode.INVALID_SECTION,
                f"Unsupported operation {delta.operation}",
            )
        return outcome

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _apply_add(self, artifact, delta, errors, warnings) -> _ApplyOutcome:
        section = delta.section
        if section is SINGLETON_SECTION:
            return self._error(
                errors, delta, MergeErrorCode.RT_ADD_NOT_ALLOWED,
                "Research thread only supports EDIT operation, not ADD",
            )

        limit = self.config.limit_for(section.value)
        active_count = len(artifact.active_items(section))
        if limit is not None and active_count >= limit:
            return self._error(
                errors, delta, MergeErrorCode.SECTION_LIMIT_EXCEEDED,
                f"Section {section.value} is at its limit of {limit} active items",
            )

        if not isinstance(delta.payload, dict):
            return self._error(
                errors, delta, MergeErrorCode.MISSING_REQUIRED_FIELD,
                "ADD operation requires a payload object",
            )

        data = self._sanitize_payload(delta, warnings)
        new_id = next_id(SECTION_ID_PREFIXES[section], artifact.item_ids(section))
        data["id"] = new_id

        try:
            item = ITEM_MODELS[section].model_validate(data)
        except ValidationError as e:
            return self._error(
                errors, delta, MergeErrorCode.INVALID_PAYLOAD,
                f"Invalid {section.value} payload: {_describe_validation_error(e)}",
            )

        artifact.items(section).append(item)
        if section is Section.DISCRIMINATIVE_TESTS:
            _sort_tests_by_score(artifact)
        return _ApplyOutcome(OutcomeStatus.APPLIED, item_id=new_id)

    def _apply_edit(self, artifact, delta, errors, warnings) -> _ApplyOutcome:
        if not isinstance(delta.payload, dict):
            return self._error(
                errors, delta, MergeErrorCode.MISSING_REQUIRED_FIELD,
                "EDIT operation requires a payload object",
            )
        if delta.section is SINGLETON_SECTION:
            return self._apply_research_thread_edit(artifact, delta, errors, warnings)

        section = delta.section
        if not delta.target_id:
            return self._error(
                errors, delta, MergeErrorCode.INVALID_TARGET,
                "EDIT operation requires target_id",
            )

        items = artifact.items(section)
        index = _index_of(items, delta.target_id)
        if index is None:
            return self._error(
                errors, delta, MergeErrorCode.INVALID_TARGET,
                f"Target {delta.target_id} not found in {section.value}",
            )

        item = items[index]
        if item.killed:
            self._warn(
                warnings, delta, MergeWarningCode.TARGET_KILLED,
                f"Skipping EDIT of killed item {delta.target_id}",
            )
            return _ApplyOutcome(
                OutcomeStatus.SKIPPED, MergeWarningCode.TARGET_KILLED.value, delta.target_id
            )

        replace = delta.payload.get(REPLACE_FLAG) is True
        current = item.model_dump(exclude_none=True)
        for key, value in self._sanitize_payload(delta, warnings).items():
            mergeable = key in MERGEABLE_LIST_FIELDS or is_string_list(current.get(key))
            if not replace and mergeable and is_string_list(value):
                current[key] = union_string_lists(current.get(key), value)
            else:
                current[key] = value

        try:
            items[index] = ITEM_MODELS[section].model_validate(current)
        except ValidationError as e:
            return self._error(
                errors, delta, MergeErrorCode.INVALID_PAYLOAD,
                f"Invalid {section.value} edit for {delta.target_id}: "
                f"{_describe_validation_error(e)}",
            )

        if section is Section.DISCRIMINATIVE_TESTS:
            _sort_tests_by_score(artifact)
        return _ApplyOutcome(OutcomeStatus.APPLIED, item_id=delta.target_id)

    def _apply_research_thread_edit(self, artifact, delta, errors, warnings) -> _ApplyOutcome:
        data = self._sanitize_payload(delta, warnings)
        existing = artifact.sections.research_thread

        if existing is None:
            current: dict[str, Any] = {
                "statement": "",
                "context": "",
                "why_it_matters": "",
            }
            current.update(data)
        else:
            replace = delta.payload.get(REPLACE_FLAG) is True
            current = existing.model_dump(exclude_none=True)
            for key, value in data.items():
                if key == "anchors" and not replace and is_string_list(value):
                    current[key] = union_string_lists(current.get(key), value)
                else:
                    current[key] = value
        current["id"] = RESEARCH_THREAD_ID

        try:
            artifact.sections.research_thread = ITEM_MODELS[SINGLETON_SECTION].model_validate(current)
        except ValidationError as e:
            return self._error(
                errors, delta, MergeErrorCode.INVALID_PAYLOAD,
                f"Invalid research_thread payload: {_describe_validation_error(e)}",
            )
        return _ApplyOutcome(OutcomeStatus.APPLIED, item_id=RESEARCH_THREAD_ID)

    def _apply_kill(self, artifact, delta, errors, warnings) -> _ApplyOutcome:
        section = delta.section
        if section is SINGLETON_SECTION:
            return self._error(
                errors, delta, MergeErrorCode.INVALID_TARGET,
                "Research thread cannot be killed",
            )
        if not delta.target_id:
            return self._error(
                errors, delta, MergeErrorCode.INVALID_TARGET,
                "KILL operation requires target_id",
            )

        item = artifact.get_item(section, delta.target_id)
        if item is None:
            return self._error(
                errors, delta, MergeErrorCode.INVALID_TARGET,
                f"Target {delta.target_id} not found in {section.value}",
            )

        # Idempotent: the first kill's metadata is permanent
        if item.killed:
            return _ApplyOutcome(OutcomeStatus.APPLIED, item_id=delta.target_id)

        reason = delta.payload.get("reason") if isinstance(delta.payload, dict) else None
        item.killed = True
        item.killed_by = delta.agent
        item.killed_at = delta.timestamp
        item.kill_reason = reason if isinstance(reason, str) else ""

        if section is Section.HYPOTHESIS_SLATE:
            if not any(h.third_alternative for h in artifact.active_items(section)):
                self._warn(
                    warnings, delta, MergeWarningCode.NO_THIRD_ALTERNATIVE,
                    "No active third alternative hypothesis remains after KILL",
                )
        elif section is Section.ASSUMPTION_LEDGER:
            if not any(a.scale_check for a in artifact.active_items(section)):
                self._warn(
                    warnings, delta, MergeWarningCode.NO_SCALE_CHECK,
                    "No active scale/physics check assumption remains after KILL",
                )
        return _ApplyOutcome(OutcomeStatus.APPLIED, item_id=delta.target_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _sanitize_payload(self, delta: ValidDelta, warnings: list[MergeIssue]) -> dict[str, Any]:
        """Drop system fields silently and forbidden keys with a warning."""
        clean: dict[str, Any] = {}
        for key, value in delta.payload.items():
            if key in SYSTEM_ITEM_FIELDS or key == REPLACE_FLAG:
                continue
            if not isinstance(key, str) or is_forbidden_payload_key(key):
                self._warn(
                    warnings, delta, MergeWarningCode.FORBIDDEN_PAYLOAD_KEY,
                    f'Ignoring forbidden payload key "{key}" (namespace pollution risk)',
                )
                continue
            clean[key] = value
        return clean

    def _upsert_contributor(self, artifact: Artifact, agent: str, timestamp: str) -> None:
        for contributor in artifact.metadata.contributors:
            if contributor.agent == agent:
                if not contributor.contributed_at or timestamp > contributor.contributed_at:
                    contributor.contributed_at = timestamp
                return
        artifact.metadata.contributors.append(
            Contributor(agent=agent, contributed_at=timestamp)
        )

    def _error(self, errors, delta, code: MergeErrorCode, message: str) -> _ApplyOutcome:
        errors.append(MergeIssue(code=code.value, message=message, delta_raw=delta.raw or None))
        logger.warning(f"Merge error {code.value}: {message}")
        return _ApplyOutcome(OutcomeStatus.ERROR, code.value, delta.target_id)

    def _warn(self, warnings, delta, code: MergeWarningCode, message: str) -> None:
        warnings.append(MergeIssue(code=code.value, message=message, delta_raw=delta.raw or None))


def _index_of(items: list[BaseItem], item_id: str) -> Optional[int]:
    for index, item in enumerate(items):
        if item.id == item_id:
            return index
    return None


def _sort_tests_by_score(artifact: Artifact) -> None:
    """Order tests by descending total score; ties keep their order."""
    artifact.sections.discriminative_tests.sort(key=lambda t: -total_score(t.score))


def merge_artifact(
    base: Artifact,
    deltas: Sequence[ValidDelta],
    agent: str,
    timestamp: str,
    config: Optional[ArtifactConfig] = None,
) -> MergeResult:
    """Merge deltas from one agent, all sharing one timestamp."""
    return MergeEngine(config).merge(base, deltas, agent, timestamp)


def merge_artifact_with_timestamps(
    base: Artifact,
    deltas: Sequence[ValidDelta],
    config: Optional[ArtifactConfig] = None,
) -> MergeResult:
    """Merge deltas that each carry their own agent and timestamp."""
    return MergeEngine(config).merge_with_timestamps(base, deltas)


def close_artifact(base: Artifact, agent: str, timestamp: str) -> Artifact:
    """Mark an artifact closed (artifacts are never deleted)."""
    return MergeEngine().update_status(base, ArtifactStatus.CLOSED, agent, timestamp)
