"""Semantic diff between two versions of a research artifact.

The two artifacts are assumed to be the same session at two points in time
("before" and "after"). For every collection section the diff lists:

- added: present in v2, absent from v1, and not killed
- killed: active in v1 and either killed in v2 or missing from v2
- edited: present in both with at least one differing non-system field

Section-specific extras layer research meaning on top: hypothesis net
change and kill succession, test targets, resolved critiques, and
promoted/dismissed anomalies. A coarse progress score summarizes the diff;
it is advisory and drives no other decision.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from research_artifact.config import DEFAULT_DIFF_CONFIG, DiffConfig
from research_artifact.schemas import COLLECTION_SECTIONS, Artifact, BaseItem, Section
from research_artifact.utils import truncate

logger = logging.getLogger(__name__)

REMOVED_RATIONALE = "Removed from artifact"

TARGET_SPLIT_RE = re.compile(r"\s*(?:,|/|\bvs\.?(?=\s|$)|\band\b)\s*", re.IGNORECASE)
RESOLVED_STATUS_RE = re.compile(r"resolved|addressed|fixed", re.IGNORECASE)
HYPOTHESIS_ID_RE = re.compile(r"\bH\d+\b")
PROMOTED_RE = re.compile(r"promoted", re.IGNORECASE)


class ProgressScore(str, Enum):
    """Coarse classification of how much a diff moved the research."""

    NONE = "NONE"
    MINIMAL = "MINIMAL"
    GOOD = "GOOD"
    EXCELLENT = "EXCELLENT"


@dataclass
class FieldChange:
    """One differing field of an edited item (long strings truncated)."""

    field: str
    old_value: Any
    new_value: Any

    def to_dict(self) -> dict:
        return {"field": self.field, "old_value": self.old_value, "new_value": self.new_value}


@dataclass
class ItemChange:
    """An added, killed, or removed item.

    Attributes:
        id: Item id
        name: Item name, when the section has one
        rationale: Kill reason (killed/removed only)
        killed_by: Killing agent (killed only)
        has_successor: Hypothesis kills only; another hypothesis was added
        targets: Added tests only; hypotheses the test discriminates
    """

    id: str
    name: Optional[str] = None
    rationale: Optional[str] = None
    killed_by: Optional[str] = None
    has_successor: Optional[bool] = None
    targets: Optional[list[str]] = None

    def to_dict(self) -> dict:
        data = {"id": self.id}
        for key in ("name", "rationale", "killed_by", "has_successor", "targets"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


@dataclass
class EditedItem:
    id: str
    changes: list[FieldChange] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"id": self.id, "changes": [c.to_dict() for c in self.changes]}


@dataclass
class AnomalyPromotion:
    """An anomaly resolved into a hypothesis (``promoted_to`` is an id or "hypothesis")."""

    id: str
    promoted_to: str

    def to_dict(self) -> dict:
        return {"id": self.id, "promoted_to": self.promoted_to}


@dataclass
class SectionDiff:
    """Changes within one collection section."""

    section: Section
    added: list[ItemChange] = field(default_factory=list)
    killed: list[ItemChange] = field(default_factory=list)
    edited: list[EditedItem] = field(default_factory=list)
    removed: list[ItemChange] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.killed or self.edited or self.removed)

    def to_dict(self) -> dict:
        data = {
            "added": [a.to_dict() for a in self.added],
            "killed": [k.to_dict() for k in self.killed],
            "edited": [e.to_dict() for e in self.edited],
        }
        if self.removed:
            data["removed"] = [r.to_dict() for r in self.removed]
        return data


@dataclass
class HypothesisDiff(SectionDiff):
    @property
    def net_change(self) -> int:
        return len(self.added) - len(self.killed) - len(self.removed)

    @property
    def kills_with_successor(self) -> int:
        return sum(1 for k in self.killed if k.has_successor)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["net_change"] = self.net_change
        return data


@dataclass
class CritiqueDiff(SectionDiff):
    resolved: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["resolved"] = list(self.resolved)
        return data


@dataclass
class AnomalyDiff(SectionDiff):
    promoted: list[AnomalyPromotion] = field(default_factory=list)
    dismissed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["promoted"] = [p.to_dict() for p in self.promoted]
        data["dismissed"] = list(self.dismissed)
        return data


@dataclass
class ResearchThreadDiff:
    changed: bool = False
    changes: list[FieldChange] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"changed": self.changed, "changes": [c.to_dict() for c in self.changes]}


@dataclass
class DiffSummary:
    """Totals across sections plus the progress classification."""

    total_added: int = 0
    total_killed: int = 0
    total_edited: int = 0
    total_removed: int = 0
    hypotheses_net_change: int = 0
    tests_added: int = 0
    critiques_resolved: int = 0
    anomalies_promoted: int = 0
    progress_score: ProgressScore = ProgressScore.NONE

    def to_dict(self) -> dict:
        return {
            "total_added": self.total_added,
            "total_killed": self.total_killed,
            "total_edited": self.total_edited,
            "total_removed": self.total_removed,
            "hypotheses_net_change": self.hypotheses_net_change,
            "tests_added": self.tests_added,
            "critiques_resolved": self.critiques_resolved,
            "anomalies_promoted": self.anomalies_promoted,
            "progress_score": self.progress_score.value,
        }


@dataclass
class ArtifactDiff:
    """Structured diff between two artifact versions."""

    from_version: int
    to_version: int
    research_thread: ResearchThreadDiff
    sections: dict[Section, SectionDiff]
    summary: DiffSummary

    def section(self, section: Section | str) -> SectionDiff:
        return self.sections[Section(section)]

    @property
    def hypotheses(self) -> HypothesisDiff:
        return self.sections[Section.HYPOTHESIS_SLATE]

    @property
    def tests(self) -> SectionDiff:
        return self.sections[Section.DISCRIMINATIVE_TESTS]

    @property
    def critiques(self) -> CritiqueDiff:
        return self.sections[Section.ADVERSARIAL_CRITIQUE]

    @property
    def anomalies(self) -> AnomalyDiff:
        return self.sections[Section.ANOMALY_REGISTER]

    def to_dict(self) -> dict:
        changes = {Section.RESEARCH_THREAD.value: self.research_thread.to_dict()}
        for section, diff in self.sections.items():
            changes[section.value] = diff.to_dict()
        return {
            "from_version": self.from_version,
            "to_version": self.to_version,
            "changes": changes,
            "summary": self.summary.to_dict(),
        }


_SECTION_DIFF_TYPES: dict[Section, type[SectionDiff]] = {
    Section.HYPOTHESIS_SLATE: HypothesisDiff,
    Section.ANOMALY_REGISTER: AnomalyDiff,
    Section.ADVERSARIAL_CRITIQUE: CritiqueDiff,
}


def split_targets(discriminates: Any) -> list[str]:
    """Hypotheses named by a test's ``discriminates`` text ("H1 vs H2, H3")."""
    if not isinstance(discriminates, str):
        return []
    return [part.strip() for part in TARGET_SPLIT_RE.split(discriminates) if part and part.strip()]


def _item_name(item: BaseItem) -> Optional[str]:
    name = getattr(item, "name", None)
    return name if isinstance(name, str) and name else None


def _field_changes(old: Optional[BaseItem], new: Optional[BaseItem], max_length: int) -> list[FieldChange]:
    old_fields = old.content_fields() if old is not None else {}
    new_fields = new.content_fields() if new is not None else {}
    keys = list(old_fields)
    keys.extend(k for k in new_fields if k not in old_fields)

    changes = []
    for key in keys:
        old_value = old_fields.get(key)
        new_value = new_fields.get(key)
        if old_value != new_value:
            changes.append(
                FieldChange(
                    field=key,
                    old_value=truncate(old_value, max_length),
                    new_value=truncate(new_value, max_length),
                )
            )
    return changes


class ArtifactDiffer:
    """Computes ArtifactDiff objects under a DiffConfig."""

    def __init__(self, config: Optional[DiffConfig] = None):
        self.config = config or DEFAULT_DIFF_CONFIG

    def diff(self, v1: Artifact, v2: Artifact) -> ArtifactDiff:
        research_thread = self._diff_research_thread(v1, v2)
        sections = {section: self._diff_section(v1, v2, section) for section in COLLECTION_SECTIONS}
        summary = self._summarize(research_thread, sections)
        logger.debug(
            f"Diffed {v1.metadata.session_id} v{v1.metadata.version} -> "
            f"v{v2.metadata.version}: {summary.progress_score.value}"
        )
        return ArtifactDiff(
            from_version=v1.metadata.version,
            to_version=v2.metadata.version,
            research_thread=research_thread,
            sections=sections,
            summary=summary,
        )

    def _diff_research_thread(self, v1: Artifact, v2: Artifact) -> ResearchThreadDiff:
        changes = _field_changes(
            v1.sections.research_thread,
            v2.sections.research_thread,
            self.config.value_max_length,
        )
        return ResearchThreadDiff(changed=bool(changes), changes=changes)

    def _diff_section(self, v1: Artifact, v2: Artifact, section: Section) -> SectionDiff:
        diff = _SECTION_DIFF_TYPES.get(section, SectionDiff)(section=section)
        old_items = {item.id: item for item in v1.items(section)}
        new_items = {item.id: item for item in v2.items(section)}

        for item_id, item in new_items.items():
            if item_id not in old_items and not item.killed:
                change = ItemChange(id=item_id, name=_item_name(item))
                if section is Section.DISCRIMINATIVE_TESTS:
                    change.targets = split_targets(item.discriminates)
                diff.added.append(change)

        for item_id, old in old_items.items():
            if old.killed:
                continue
            new = new_items.get(item_id)
            if new is None:
                change = ItemChange(id=item_id, name=_item_name(old), rationale=REMOVED_RATIONALE)
                if self.config.treat_removal_as_kill:
                    diff.killed.append(change)
                else:
                    diff.removed.append(change)
                continue
            if new.killed:
                diff.killed.append(
                    ItemChange(
                        id=item_id,
                        name=_item_name(old),
                        rationale=new.kill_reason or "",
                        killed_by=new.killed_by,
                    )
                )
                continue
            changes = _field_changes(old, new, self.config.value_max_length)
            if changes:
                diff.edited.append(EditedItem(id=item_id, changes=changes))
                self._classify_edit(diff, old, new, changes)

        if isinstance(diff, HypothesisDiff):
            has_successor = bool(diff.added)
            for change in diff.killed:
                change.has_successor = has_successor
        return diff

    def _classify_edit(self, diff: SectionDiff, old: BaseItem, new: BaseItem, changes: list[FieldChange]) -> None:
        changed_fields = {c.field for c in changes}
        if isinstance(diff, CritiqueDiff):
            status = new.current_status
            if "current_status" in changed_fields and isinstance(status, str) and RESOLVED_STATUS_RE.search(status):
                diff.resolved.append(new.id)
        elif isinstance(diff, AnomalyDiff):
            if new.status == "resolved" and old.status != "resolved":
                plan = new.resolution_plan or ""
                match = HYPOTHESIS_ID_RE.search(plan)
                if match:
                    diff.promoted.append(AnomalyPromotion(id=new.id, promoted_to=match.group(0)))
                elif PROMOTED_RE.search(plan):
                    diff.promoted.append(AnomalyPromotion(id=new.id, promoted_to="hypothesis"))
                else:
                    diff.dismissed.append(new.id)

    def _summarize(self, research_thread: ResearchThreadDiff, sections: dict[Section, SectionDiff]) -> DiffSummary:
        hypotheses = sections[Section.HYPOTHESIS_SLATE]
        critiques = sections[Section.ADVERSARIAL_CRITIQUE]
        anomalies = sections[Section.ANOMALY_REGISTER]

        summary = DiffSummary(
            total_added=sum(len(d.added) for d in sections.values()),
            total_killed=sum(len(d.killed) for d in sections.values()),
            total_edited=sum(len(d.edited) for d in sections.values()),
            total_removed=sum(len(d.removed) for d in sections.values()),
            hypotheses_net_change=hypotheses.net_change,
            tests_added=len(sections[Section.DISCRIMINATIVE_TESTS].added),
            critiques_resolved=len(critiques.resolved),
            anomalies_promoted=len(anomalies.promoted),
        )

        any_change = research_thread.changed or any(d.has_changes for d in sections.values())
        if hypotheses.kills_with_successor >= 1 and (summary.tests_added >= 1 or summary.critiques_resolved >= 1):
            summary.progress_score = ProgressScore.EXCELLENT
        elif summary.total_added >= 2 or summary.tests_added >= 1 or summary.critiques_resolved >= 1:
            summary.progress_score = ProgressScore.GOOD
        elif any_change:
            summary.progress_score = ProgressScore.MINIMAL
        else:
            summary.progress_score = ProgressScore.NONE
        return summary


def diff_artifacts(v1: Artifact, v2: Artifact, config: Optional[DiffConfig] = None) -> ArtifactDiff:
    """Diff two versions of the same artifact."""
    return ArtifactDiffer(config).diff(v1, v2)


def format_diff_json(diff: ArtifactDiff) -> str:
    return json.dumps(diff.to_dict(), indent=2, ensure_ascii=False)


def format_diff_human(diff: ArtifactDiff) -> str:
    """Plain-text rendering: ``+`` added, ``-`` killed, ``x`` removed, ``~`` edited."""
    lines = [
        f"Artifact Diff: v{diff.from_version} -> v{diff.to_version}",
        f"Progress: {diff.summary.progress_score.value}",
        "",
    ]

    if diff.research_thread.changed:
        fields = ", ".join(c.field for c in diff.research_thread.changes)
        lines.append(f"research_thread: changed ({fields})")
        lines.append("")

    for section, section_diff in diff.sections.items():
        if not section_diff.has_changes:
            continue
        lines.append(f"{section.value}:")
        for item in section_diff.added:
            label = f"  + {item.id}" + (f": {item.name}" if item.name else "")
            if item.targets:
                label += f" [targets: {', '.join(item.targets)}]"
            lines.append(label)
        for item in section_diff.killed:
            label = f"  - {item.id}" + (f": {item.rationale}" if item.rationale else "")
            if item.has_successor:
                label += " (successor added)"
            lines.append(label)
        for item in section_diff.removed:
            lines.append(f"  x {item.id}: {item.rationale}")
        for item in section_diff.edited:
            lines.append(f"  ~ {item.id}: {', '.join(c.field for c in item.changes)}")
        if isinstance(section_diff, HypothesisDiff):
            lines.append(f"  net change: {section_diff.net_change:+d}")
        elif isinstance(section_diff, CritiqueDiff) and section_diff.resolved:
            lines.append(f"  resolved: {', '.join(section_diff.resolved)}")
        elif isinstance(section_diff, AnomalyDiff):
            for promotion in section_diff.promoted:
                lines.append(f"  promoted: {promotion.id} -> {promotion.promoted_to}")
            if section_diff.dismissed:
                lines.append(f"  dismissed: {', '.join(section_diff.dismissed)}")
        lines.append("")

    s = diff.summary
    lines.append(
        f"Summary: {s.total_added} added, {s.total_killed} killed, {s.total_edited} edited"
        + (f", {s.total_removed} removed" if s.total_removed else "")
    )
    lines.append(
        f"Hypotheses net {s.hypotheses_net_change:+d}, tests added {s.tests_added}, "
        f"critiques resolved {s.critiques_resolved}, anomalies promoted {s.anomalies_promoted}"
    )
    return "\n".join(lines)
