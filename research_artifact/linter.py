"""Validator and linter for research artifacts.

Two levels of checking:

- ``validate_artifact``: a quick, unranked list of named warnings (section
  floors, required markers, malformed cross-session references). Used after
  a merge to tell agents what the artifact still lacks.
- ``lint_artifact``: the full guardrail pass producing a LintReport of rule
  violations with severities (error > warning > info). The artifact is valid
  iff it has zero error-severity violations.

Rule ids follow ``<severity letter><section letter>-<number>``:
E/W/I for error/warning/info and M, R, H, P, T, A, C for metadata,
research thread, hypotheses, predictions, tests, assumptions, critiques.
Provenance rules use the ``P-P`` infix (EP-P01, WP-P02, IP-P02).

Linting works on the structured artifact, so no line numbers are reported.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from research_artifact.config import DEFAULT_CONFIG, ArtifactConfig
from research_artifact.merge import MergeIssue
from research_artifact.schemas import (
    REFERENCE_RELATIONS,
    Artifact,
    ArtifactStatus,
    Section,
)
from research_artifact.utils import parse_iso_timestamp, total_score

logger = logging.getLogger(__name__)

# §42, §42-45, and "§ 42" (space after the section sign)
ANCHOR_REF_RE = re.compile(r"§\s?(\d+)(?:-(\d+))?")

THIRD_ALTERNATIVE_NAME_RE = re.compile(r"third\s+alternative", re.IGNORECASE)

SECTION_LABELS = {
    Section.HYPOTHESIS_SLATE: "Hypothesis slate",
    Section.PREDICTIONS_TABLE: "Predictions table",
    Section.DISCRIMINATIVE_TESTS: "Discriminative tests",
    Section.ASSUMPTION_LEDGER: "Assumption ledger",
    Section.ANOMALY_REGISTER: "Anomaly register",
    Section.ADVERSARIAL_CRITIQUE: "Adversarial critique",
}


class LintSeverity(str, Enum):
    """Severity of a lint violation."""

    ERROR = "error"  # Must fix; makes the artifact invalid
    WARNING = "warning"  # Should fix
    INFO = "info"  # Advisory


SEVERITY_RANK = {
    LintSeverity.ERROR: 0,
    LintSeverity.WARNING: 1,
    LintSeverity.INFO: 2,
}


@dataclass
class LintViolation:
    """A single rule violation.

    Attributes:
        id: Rule id (e.g. "EH-003")
        severity: error, warning, or info
        message: What is wrong
        fix: Suggested remedy
    """

    id: str
    severity: LintSeverity
    message: str
    fix: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"id": self.id, "severity": self.severity.value, "message": self.message}
        if self.fix is not None:
            data["fix"] = self.fix
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "LintViolation":
        return cls(
            id=data["id"],
            severity=LintSeverity(data["severity"]),
            message=data["message"],
            fix=data.get("fix"),
        )


@dataclass
class LintSummary:
    """Violation counts per severity."""

    errors: int = 0
    warnings: int = 0
    info: int = 0

    def to_dict(self) -> dict:
        return {"errors": self.errors, "warnings": self.warnings, "info": self.info}


@dataclass
class LintReport:
    """Sorted lint violations plus summary counts."""

    violations: list[LintViolation] = field(default_factory=list)

    @property
    def summary(self) -> LintSummary:
        return LintSummary(
            errors=sum(1 for v in self.violations if v.severity is LintSeverity.ERROR),
            warnings=sum(1 for v in self.violations if v.severity is LintSeverity.WARNING),
            info=sum(1 for v in self.violations if v.severity is LintSeverity.INFO),
        )

    @property
    def valid(self) -> bool:
        return self.summary.errors == 0

    def by_severity(self, severity: LintSeverity) -> list[LintViolation]:
        return [v for v in self.violations if v.severity is severity]

    def rule_ids(self) -> list[str]:
        return [v.id for v in self.violations]

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "summary": self.summary.to_dict(),
            "violations": [v.to_dict() for v in self.violations],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LintReport":
        """Rebuild a report from ``to_dict`` or ``format_lint_report_json`` output."""
        return cls(violations=[LintViolation.from_dict(v) for v in data.get("violations", [])])


def _blank(value: Any) -> bool:
    return not isinstance(value, str) or not value.strip()


def extract_anchor_refs(anchors: Any) -> list[tuple[int, int]]:
    """Transcript spans cited by a list of anchors as (first, last) pairs.

    A single citation yields a one-section span. Reversed ranges such as
    §9-3 are normalized so first <= last.
    """
    if not isinstance(anchors, list):
        return []
    refs: list[tuple[int, int]] = []
    for anchor in anchors:
        if not isinstance(anchor, str):
            continue
        for match in ANCHOR_REF_RE.finditer(anchor):
            start = int(match.group(1))
            end = int(match.group(2)) if match.group(2) else start
            refs.append((min(start, end), max(start, end)))
    return refs


def out_of_range_citation(anchor: Any, low: int, high: int) -> Optional[str]:
    """First citation in ``anchor`` with an endpoint outside ``low``..``high``, as written."""
    if not isinstance(anchor, str):
        return None
    for match in ANCHOR_REF_RE.finditer(anchor):
        ends = [int(g) for g in match.groups() if g]
        if any(n < low or n > high for n in ends):
            return "§" + "-".join(str(n) for n in ends)
    return None


def is_pure_inference(anchors: Any) -> bool:
    """True when anchors mark an inference but cite no transcript source."""
    if not isinstance(anchors, list) or extract_anchor_refs(anchors):
        return False
    for anchor in anchors:
        if not isinstance(anchor, str):
            continue
        lower = anchor.strip().lower()
        if lower in ("inference", "[inference]"):
            return True
        if "[inference]" in lower and "from" not in lower:
            return True
    return False


def has_third_alternative(artifact: Artifact) -> bool:
    """Active hypothesis flagged, or named, as the third alternative."""
    for h in artifact.active_items(Section.HYPOTHESIS_SLATE):
        if h.third_alternative:
            return True
        if isinstance(h.name, str) and THIRD_ALTERNATIVE_NAME_RE.search(h.name):
            return True
    return False


def has_scale_check(artifact: Artifact) -> bool:
    return any(a.scale_check for a in artifact.active_items(Section.ASSUMPTION_LEDGER))


# ============================================================================
# Validator
# ============================================================================


def _reference_problem(ref: Any) -> Optional[str]:
    if not isinstance(ref, dict):
        return "must be an object"
    if _blank(ref.get("session")):
        return "missing session"
    if _blank(ref.get("item")):
        return "missing item"
    relation = ref.get("relation")
    if not isinstance(relation, str) or not relation:
        return "missing relation"
    if relation not in REFERENCE_RELATIONS:
        return (
            f'invalid relation "{relation}" '
            f"(expected one of: {', '.join(sorted(REFERENCE_RELATIONS))})"
        )
    return None


def _validate_references(artifact: Artifact) -> list[MergeIssue]:
    issues = []
    for section in Section:
        for item in artifact.items(section):
            refs = item.references
            if refs is None:
                continue
            entries = refs if isinstance(refs, list) else [refs]
            for index, ref in enumerate(entries):
                problem = _reference_problem(ref)
                if problem:
                    issues.append(
                        MergeIssue(
                            code="INVALID_REFERENCE",
                            message=f"{item.id} reference {index + 1}: {problem}",
                        )
                    )
    return issues


def validate_artifact(
    artifact: Artifact,
    config: Optional[ArtifactConfig] = None,
) -> list[MergeIssue]:
    """Check section floors, required markers, and cross-session references.

    Returns:
        Unranked list of MergeIssue warnings (empty when nothing is missing)
    """
    config = config or DEFAULT_CONFIG
    issues: list[MergeIssue] = []

    def below_minimum(section: Section) -> None:
        minimum = config.minimum_for(section.value)
        count = len(artifact.active_items(section))
        if count < minimum:
            issues.append(
                MergeIssue(
                    code="BELOW_MINIMUM",
                    message=f"{SECTION_LABELS[section]} has {count} active items (minimum {minimum})",
                )
            )

    below_minimum(Section.HYPOTHESIS_SLATE)
    if not any(h.third_alternative for h in artifact.active_items(Section.HYPOTHESIS_SLATE)):
        issues.append(
            MergeIssue(code="NO_THIRD_ALTERNATIVE", message="No third alternative hypothesis found")
        )
    below_minimum(Section.PREDICTIONS_TABLE)
    below_minimum(Section.DISCRIMINATIVE_TESTS)
    below_minimum(Section.ASSUMPTION_LEDGER)
    if not has_scale_check(artifact):
        issues.append(
            MergeIssue(code="NO_SCALE_CHECK", message="No scale/physics check assumption found")
        )
    below_minimum(Section.ADVERSARIAL_CRITIQUE)
    if not any(c.real_third_alternative for c in artifact.active_items(Section.ADVERSARIAL_CRITIQUE)):
        issues.append(
            MergeIssue(
                code="NO_REAL_THIRD_ALTERNATIVE",
                message="No real third alternative critique found",
            )
        )

    issues.extend(_validate_references(artifact))
    return issues


# ============================================================================
# Linter
# ============================================================================


class ArtifactLinter:
    """Runs every guardrail rule against an artifact."""

    def __init__(self, config: Optional[ArtifactConfig] = None):
        self.config = config or DEFAULT_CONFIG
        self._violations: list[LintViolation] = []

    def lint(self, artifact: Artifact) -> LintReport:
        self._violations = []
        self._lint_metadata(artifact)
        self._lint_research_thread(artifact)
        self._lint_hypotheses(artifact)
        self._lint_predictions(artifact)
        self._lint_tests(artifact)
        self._lint_assumptions(artifact)
        self._lint_critiques(artifact)
        self._lint_provenance(artifact)

        violations = sorted(
            self._violations,
            key=lambda v: (SEVERITY_RANK[v.severity], v.id),
        )
        report = LintReport(violations=violations)
        summary = report.summary
        logger.debug(
            f"Linted {artifact.metadata.session_id}: errors={summary.errors}, "
            f"warnings={summary.warnings}, info={summary.info}"
        )
        return report

    def _add(self, rule_id: str, severity: LintSeverity, message: str, fix: Optional[str] = None) -> None:
        self._violations.append(LintViolation(id=rule_id, severity=severity, message=message, fix=fix))

    def _error(self, rule_id, message, fix=None):
        self._add(rule_id, LintSeverity.ERROR, message, fix)

    def _warning(self, rule_id, message, fix=None):
        self._add(rule_id, LintSeverity.WARNING, message, fix)

    def _info(self, rule_id, message, fix=None):
        self._add(rule_id, LintSeverity.INFO, message, fix)

    def _minimum(self, rule_id: str, artifact: Artifact, section: Section, fix: str) -> int:
        count = len(artifact.active_items(section))
        minimum = self.config.minimum_for(section.value)
        if count < minimum:
            self._error(
                rule_id,
                f"{SECTION_LABELS[section]} has {count} active items (minimum {minimum})",
                fix,
            )
        return count

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    def _lint_metadata(self, artifact: Artifact) -> None:
        meta = artifact.metadata
        if _blank(meta.session_id):
            self._error(
                "EM-002", "Metadata.session_id is required",
                "Set metadata.session_id to a non-empty thread/session identifier",
            )

        created = parse_iso_timestamp(meta.created_at)
        updated = parse_iso_timestamp(meta.updated_at)
        if created is None:
            self._error(
                "EM-003", "Metadata.created_at must be an ISO-8601 timestamp",
                "Set metadata.created_at to the current UTC time in ISO-8601",
            )
        if updated is None:
            self._error(
                "EM-003b", "Metadata.updated_at must be an ISO-8601 timestamp",
                "Set metadata.updated_at to the current UTC time in ISO-8601",
            )

        allowed = {s.value for s in ArtifactStatus}
        if meta.status not in allowed:
            self._error(
                "EM-004", "Metadata.status must be one of: draft | active | closed",
                "Set metadata.status to 'draft', 'active', or 'closed'",
            )

        if not meta.contributors:
            self._warning(
                "WM-001", "No contributors recorded",
                "Ensure the merge pipeline stamps metadata.contributors",
            )

        if created is not None and updated is not None and updated < created:
            self._warning(
                "WM-002", "updated_at is earlier than created_at",
                "Ensure updated_at is >= created_at",
            )

        if isinstance(meta.version, bool) or not isinstance(meta.version, int) or meta.version < 0:
            self._info(
                "IM-002", "Metadata.version should be a non-negative integer",
                "Set metadata.version to a non-negative integer",
            )

    def _lint_research_thread(self, artifact: Artifact) -> None:
        rt = artifact.sections.research_thread
        if rt is None or _blank(rt.statement):
            self._error(
                "ER-001", "Research thread statement is missing",
                "Add an EDIT delta to section 'research_thread' with a non-empty statement",
            )
        if rt is None or _blank(rt.context):
            self._error(
                "ER-002", "Research thread context is missing",
                "Add an EDIT delta to section 'research_thread' with a non-empty context",
            )
        if rt is None or not rt.anchors:
            self._warning(
                "WR-001", "Research thread anchors are missing",
                "Add at least one transcript anchor (e.g., §42) or 'inference'",
            )

    def _lint_hypotheses(self, artifact: Artifact) -> None:
        count = self._minimum(
            "EH-001", artifact, Section.HYPOTHESIS_SLATE,
            "Add hypotheses (including a third alternative) via ADD deltas",
        )
        if count > self.config.hypothesis_max:
            self._error(
                "EH-002",
                f"Hypothesis slate has {count} active items (maximum {self.config.hypothesis_max})",
                f"KILL or consolidate hypotheses to <= {self.config.hypothesis_max} items",
            )
        if not has_third_alternative(artifact):
            self._error(
                "EH-003", "No third alternative hypothesis is present",
                "Ensure at least one hypothesis is explicitly labeled as the third alternative",
            )
        for h in artifact.active_items(Section.HYPOTHESIS_SLATE):
            if _blank(h.claim):
                self._error("EH-004", f"{h.id} is missing claim", "Add a non-empty claim field")
            if not h.anchors:
                self._warning(
                    "WH-001", f"{h.id} is missing anchors",
                    "Add transcript anchors (e.g., §42) or 'inference'",
                )

    def _lint_predictions(self, artifact: Artifact) -> None:
        self._minimum(
            "EP-001", artifact, Section.PREDICTIONS_TABLE, "Add predictions via ADD deltas"
        )
        hypothesis_ids = artifact.sorted_hypothesis_ids(active_only=True)
        if len(hypothesis_ids) < 2:
            return
        for p in artifact.active_items(Section.PREDICTIONS_TABLE):
            outcomes = p.predictions or {}
            values = {
                outcomes[hid].strip()
                for hid in hypothesis_ids
                if isinstance(outcomes.get(hid), str) and outcomes[hid].strip()
            }
            if len(values) <= 1:
                self._warning(
                    "WP-001",
                    f"{p.id} does not discriminate (all hypothesis outcomes identical or missing)",
                    "Adjust prediction so at least two hypotheses differ in expected outcome",
                )

    def _lint_tests(self, artifact: Artifact) -> None:
        self._minimum(
            "ET-001", artifact, Section.DISCRIMINATIVE_TESTS,
            "Add discriminative tests via ADD deltas",
        )
        tests = artifact.active_items(Section.DISCRIMINATIVE_TESTS)
        for t in tests:
            if _blank(t.procedure):
                self._error("ET-002", f"{t.id} is missing procedure", "Add a non-empty procedure field")
            if not t.expected_outcomes:
                self._error(
                    "ET-003", f"{t.id} is missing expected outcomes",
                    "Add expected_outcomes mapping (e.g., {'H1': '...', 'H2': '...'})",
                )
            if _blank(t.potency_check):
                self._warning(
                    "WT-001", f"{t.id} is missing potency check",
                    "Add a potency_check that distinguishes chastity vs impotence",
                )
            if t.score is None:
                self._warning(
                    "WT-003", f"{t.id} is missing score breakdown",
                    "Add score: {likelihood_ratio, cost, speed, ambiguity} with 0-3 values",
                )

        for prev, cur in zip(tests, tests[1:]):
            if total_score(cur.score) > total_score(prev.score):
                self._warning(
                    "WT-002", "Tests are not ranked by score (non-increasing order violated)",
                    "Sort tests by descending total score (LR+cost+speed+ambiguity)",
                )
                break

    def _lint_assumptions(self, artifact: Artifact) -> None:
        self._minimum(
            "EA-001", artifact, Section.ASSUMPTION_LEDGER, "Add assumptions via ADD deltas"
        )
        if not has_scale_check(artifact):
            self._error(
                "EA-002", "No scale/physics check assumption found",
                "Add an assumption with scale_check: true and a calculation",
            )
        for a in artifact.active_items(Section.ASSUMPTION_LEDGER):
            if _blank(a.statement):
                self._error("EA-003", f"{a.id} is missing statement", "Add a non-empty statement field")
            if a.scale_check and _blank(a.calculation):
                self._warning(
                    "WA-003", f"{a.id} is a scale check but missing calculation",
                    "Add a calculation field with explicit numbers and units",
                )

    def _lint_critiques(self, artifact: Artifact) -> None:
        self._minimum(
            "EC-001", artifact, Section.ADVERSARIAL_CRITIQUE, "Add critiques via ADD deltas"
        )
        critiques = artifact.active_items(Section.ADVERSARIAL_CRITIQUE)
        for c in critiques:
            if _blank(c.attack):
                self._error(
                    "EC-002", f"{c.id} is missing attack",
                    "Add an attack field describing how the framing could be wrong",
                )
            if _blank(c.evidence):
                self._warning(
                    "WC-002", f"{c.id} is missing evidence",
                    "Add evidence describing what would confirm the critique",
                )
            if _blank(c.current_status):
                self._info(
                    "IC-001", f"{c.id} is missing current status",
                    "Add current_status describing how seriously to take this critique",
                )
        if not any(c.real_third_alternative for c in critiques):
            self._warning(
                "WC-001", "No critique marked as a real third alternative",
                "Mark at least one critique with real_third_alternative: true",
            )

    def _lint_provenance(self, artifact: Artifact) -> None:
        low = self.config.min_transcript_section
        high = self.config.max_transcript_section

        anchored: list[tuple[str, Any]] = []
        rt = artifact.sections.research_thread
        if rt is not None:
            anchored.append((rt.id, rt.anchors))
        for h in artifact.active_items(Section.HYPOTHESIS_SLATE):
            anchored.append((h.id, h.anchors))
            if is_pure_inference(h.anchors):
                self._warning(
                    "WP-P02", f"{h.id} uses [inference] without source context",
                    "Use [inference] from §n to cite the evidence the inference is based on",
                )

        for item_id, anchors in anchored:
            if not isinstance(anchors, list):
                continue
            for anchor in anchors:
                citation = out_of_range_citation(anchor, low, high)
                if citation is not None:
                    self._error(
                        "EP-P01",
                        f"{item_id} references {citation} which is out of range (valid: {low}-{high})",
                        f"Update anchor to reference a valid transcript section ({low}-{high})",
                    )

        chastity = self.config.chastity_section
        citations = (f"§{chastity}", f"§ {chastity}")
        for t in artifact.active_items(Section.DISCRIMINATIVE_TESTS):
            if _blank(t.potency_check):
                continue
            if not any(c in t.potency_check for c in citations):
                self._info(
                    "IP-P02",
                    f"{t.id} potency check doesn't cite §{chastity} (the chastity principle)",
                    f"Consider referencing §{chastity} for the canonical statement of the chastity principle",
                )


def lint_artifact(artifact: Artifact, config: Optional[ArtifactConfig] = None) -> LintReport:
    """Lint an artifact against every guardrail rule."""
    return ArtifactLinter(config).lint(artifact)


# ============================================================================
# Formatters
# ============================================================================


def format_lint_report_json(report: LintReport, artifact_name: Optional[str] = None) -> str:
    """Deterministic pretty-printed JSON rendering of a report."""
    output = {"artifact": artifact_name or "artifact", **report.to_dict()}
    return json.dumps(output, indent=2, ensure_ascii=False)


def format_lint_report_human(report: LintReport, artifact_name: Optional[str] = None) -> str:
    """Plain-text rendering grouped by severity.

    Example::

        Artifact Linter Report
        ======================
        Artifact: RS-20251230-cell-fate
        Status: INVALID (3 errors, 5 warnings, 2 info)

        Errors (must fix):
          EH-003: No third alternative hypothesis is present
            -> Ensure at least one hypothesis is explicitly labeled ...
    """
    summary = report.summary
    lines = [
        "Artifact Linter Report",
        "======================",
        f"Artifact: {artifact_name or 'artifact'}",
        f"Status: {'VALID' if report.valid else 'INVALID'} "
        f"({summary.errors} errors, {summary.warnings} warnings, {summary.info} info)",
        "",
    ]

    groups = (
        (LintSeverity.ERROR, "Errors (must fix):", True),
        (LintSeverity.WARNING, "Warnings (should fix):", True),
        (LintSeverity.INFO, "Info:", False),
    )
    for severity, heading, show_fix in groups:
        violations = report.by_severity(severity)
        if not violations:
            continue
        lines.append(heading)
        for v in violations:
            lines.append(f"  {v.id}: {v.message}")
            if show_fix and v.fix:
                lines.append(f"    -> {v.fix}")
        lines.append("")

    return "\n".join(lines)
