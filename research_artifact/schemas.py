"""Schemas for the collaborative research artifact.

The artifact is a fixed set of seven sections: one singleton
(``research_thread``) and six ordered collections. Every item shares the
base lifecycle fields (id and kill metadata); each section adds its own
fields through a dedicated model variant registered in ``ITEM_MODELS``.

Killed items are soft-deleted: they stay in their section for audit and
diffing but are excluded from counts, minimums, and further edits.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from research_artifact.utils import id_sort_key, total_score, utc_now_iso


class Section(str, Enum):
    """Artifact section names (part of the delta wire contract)."""

    RESEARCH_THREAD = "research_thread"
    HYPOTHESIS_SLATE = "hypothesis_slate"
    PREDICTIONS_TABLE = "predictions_table"
    DISCRIMINATIVE_TESTS = "discriminative_tests"
    ASSUMPTION_LEDGER = "assumption_ledger"
    ANOMALY_REGISTER = "anomaly_register"
    ADVERSARIAL_CRITIQUE = "adversarial_critique"


class ArtifactStatus(str, Enum):
    """Lifecycle status of an artifact."""

    DRAFT = "draft"
    ACTIVE = "active"
    CLOSED = "closed"


SINGLETON_SECTION = Section.RESEARCH_THREAD
RESEARCH_THREAD_ID = "RT"

SECTION_ID_PREFIXES: dict[Section, str] = {
    Section.RESEARCH_THREAD: "RT",
    Section.HYPOTHESIS_SLATE: "H",
    Section.PREDICTIONS_TABLE: "P",
    Section.DISCRIMINATIVE_TESTS: "T",
    Section.ASSUMPTION_LEDGER: "A",
    Section.ANOMALY_REGISTER: "X",
    Section.ADVERSARIAL_CRITIQUE: "C",
}

COLLECTION_SECTIONS: tuple[Section, ...] = tuple(
    s for s in Section if s is not SINGLETON_SECTION
)

# Fields owned by the system; payloads can never set them
SYSTEM_ITEM_FIELDS = frozenset({"id", "killed", "killed_by", "killed_at", "kill_reason"})

# Closed set of relations a cross-session reference may declare
REFERENCE_RELATIONS = frozenset({
    "supports",
    "refutes",
    "extends",
    "depends_on",
    "duplicates",
    "contradicts",
})


class Contributor(BaseModel):
    """An agent that has contributed deltas to the artifact."""

    agent: str
    program: Optional[str] = None
    model: Optional[str] = None
    contributed_at: Optional[str] = None


class ArtifactMetadata(BaseModel):
    """Artifact header.

    Attributes:
        session_id: Session/thread the artifact belongs to
        created_at: ISO-8601 creation time
        updated_at: ISO-8601 time of the latest applied delta
        version: Incremented by exactly 1 per merge
        contributors: Agents in first-contribution order
        status: draft, active, or closed
    """

    session_id: str
    created_at: str
    updated_at: str
    version: int = 0
    contributors: list[Contributor] = Field(default_factory=list)
    # Kept as a plain string so malformed persisted values reach the linter
    status: str = ArtifactStatus.DRAFT.value

    @field_validator("status", mode="before")
    @classmethod
    def convert_status(cls, v):
        """Store ArtifactStatus members by value."""
        if isinstance(v, ArtifactStatus):
            return v.value
        return v


class BaseItem(BaseModel):
    """Lifecycle fields shared by every artifact item.

    Unknown payload fields are retained (``extra="allow"``) so agents can
    attach forward-compatible annotations without a schema change.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    killed: bool = False
    killed_by: Optional[str] = None
    killed_at: Optional[str] = None
    kill_reason: Optional[str] = None
    # Cross-session links; validated structurally by validate_artifact
    references: Any = None

    @property
    def is_active(self) -> bool:
        return not self.killed

    def content_fields(self) -> dict[str, Any]:
        """Non-system fields, as stored (None values omitted)."""
        data = self.model_dump(mode="json", exclude_none=True)
        return {k: v for k, v in data.items() if k not in SYSTEM_ITEM_FIELDS}


class ResearchThread(BaseItem):
    """The singleton research question."""

    id: str = RESEARCH_THREAD_ID
    statement: str = ""
    context: str = ""
    why_it_matters: str = ""
    anchors: Optional[list[str]] = None


class Hypothesis(BaseItem):
    """A candidate explanation on the hypothesis slate."""

    name: str = ""
    claim: str = ""
    mechanism: str = ""
    anchors: Optional[list[str]] = None
    third_alternative: bool = False


class Prediction(BaseItem):
    """A row of the predictions table: one condition, one outcome per hypothesis."""

    condition: str = ""
    predictions: dict[str, str] = Field(default_factory=dict)


class ScoreBreakdown(BaseModel):
    """Evidence-per-week score breakdown, each sub-score 0-3."""

    likelihood_ratio: Optional[Union[int, float]] = None
    cost: Optional[Union[int, float]] = None
    speed: Optional[Union[int, float]] = None
    ambiguity: Optional[Union[int, float]] = None

    @field_validator("likelihood_ratio", "cost", "speed", "ambiguity")
    @classmethod
    def check_range(cls, v):
        """Sub-scores live on a 0-3 scale."""
        if v is not None and not 0 <= v <= 3:
            raise ValueError(f"score must be between 0 and 3 (got {v})")
        return v

    @property
    def total(self) -> float:
        return total_score(self)


class DiscriminativeTest(BaseItem):
    """A test designed to separate hypotheses."""

    name: str = ""
    procedure: str = ""
    discriminates: str = ""
    expected_outcomes: dict[str, str] = Field(default_factory=dict)
    potency_check: str = ""
    feasibility: Optional[str] = None
    score: Optional[ScoreBreakdown] = None

    @property
    def total_score(self) -> float:
        return total_score(self.score)


class Assumption(BaseItem):
    """An assumption the research relies on."""

    name: str = ""
    statement: str = ""
    load: str = ""
    test: str = ""
    status: Optional[Literal["unchecked", "verified", "falsified"]] = None
    scale_check: bool = False
    calculation: Optional[str] = None
    implication: Optional[str] = None


class Anomaly(BaseItem):
    """An observation that conflicts with the current hypotheses."""

    name: str = ""
    observation: str = ""
    conflicts_with: list[str] = Field(default_factory=list)
    status: Optional[Literal["active", "resolved", "deferred"]] = None
    resolution_plan: Optional[str] = None


class Critique(BaseItem):
    """An adversarial attack on the current framing."""

    name: str = ""
    attack: str = ""
    evidence: str = ""
    current_status: str = ""
    real_third_alternative: bool = False


ITEM_MODELS: dict[Section, type[BaseItem]] = {
    Section.RESEARCH_THREAD: ResearchThread,
    Section.HYPOTHESIS_SLATE: Hypothesis,
    Section.PREDICTIONS_TABLE: Prediction,
    Section.DISCRIMINATIVE_TESTS: DiscriminativeTest,
    Section.ASSUMPTION_LEDGER: Assumption,
    Section.ANOMALY_REGISTER: Anomaly,
    Section.ADVERSARIAL_CRITIQUE: Critique,
}


class ArtifactSections(BaseModel):
    """The seven artifact sections."""

    research_thread: Optional[ResearchThread] = None
    hypothesis_slate: list[Hypothesis] = Field(default_factory=list)
    predictions_table: list[Prediction] = Field(default_factory=list)
    discriminative_tests: list[DiscriminativeTest] = Field(default_factory=list)
    assumption_ledger: list[Assumption] = Field(default_factory=list)
    anomaly_register: list[Anomaly] = Field(default_factory=list)
    adversarial_critique: list[Critique] = Field(default_factory=list)


class Artifact(BaseModel):
    """The canonical research artifact."""

    metadata: ArtifactMetadata
    sections: ArtifactSections = Field(default_factory=ArtifactSections)

    def items(self, section: Section | str) -> list[BaseItem]:
        """Items of a section; the singleton yields a 0- or 1-element list.

        For collections the returned list is the live section list.
        """
        section = to_section(section)
        if section is SINGLETON_SECTION:
            rt = self.sections.research_thread
            return [rt] if rt is not None else []
        return getattr(self.sections, section.value)

    def active_items(self, section: Section | str) -> list[BaseItem]:
        return [item for item in self.items(section) if item.is_active]

    def get_item(self, section: Section | str, item_id: str) -> Optional[BaseItem]:
        for item in self.items(section):
            if item.id == item_id:
                return item
        return None

    def item_ids(self, section: Section | str) -> list[str]:
        return [item.id for item in self.items(section)]

    def sorted_hypothesis_ids(self, active_only: bool = False) -> list[str]:
        """Hypothesis ids in numeric order."""
        items = self.active_items(Section.HYPOTHESIS_SLATE) if active_only else self.sections.hypothesis_slate
        return sorted((h.id for h in items), key=id_sort_key)

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dict (None fields omitted)."""
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def from_dict(cls, data: dict) -> "Artifact":
        """Deserialize from a dict produced by ``to_dict`` (or wire JSON)."""
        return cls.model_validate(data)


def to_section(value: Section | str) -> Section:
    """Coerce a section name to ``Section``.

    Raises:
        ValueError: If the name is not one of the seven sections
    """
    if isinstance(value, Section):
        return value
    try:
        return Section(value)
    except ValueError:
        raise ValueError(f"Unknown artifact section: {value!r}") from None


def create_empty_artifact(session_id: str, now: Optional[str] = None) -> Artifact:
    """Create a new empty artifact at version 0 with status draft."""
    timestamp = now or utc_now_iso()
    return Artifact(
        metadata=ArtifactMetadata(
            session_id=session_id,
            created_at=timestamp,
            updated_at=timestamp,
            version=0,
            contributors=[],
            status=ArtifactStatus.DRAFT.value,
        ),
        sections=ArtifactSections(),
    )
