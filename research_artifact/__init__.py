"""Collaborative research artifact core.

Agents propose changes as fenced ``delta`` blocks in free text. This package
parses those blocks, merges them deterministically into a versioned
artifact, lints the result against named guardrails, and diffs versions to
score research progress.
"""

from research_artifact.config import ArtifactConfig, DiffConfig
from research_artifact.delta_parser import (
    DeltaOperation,
    DeltaParser,
    InvalidDelta,
    ParseResult,
    ValidDelta,
    extract_valid_deltas,
    generate_next_id,
    get_section_id_prefix,
    parse_delta_message,
    validate_target_id_prefix,
)
from research_artifact.differ import (
    ArtifactDiff,
    ProgressScore,
    diff_artifacts,
    format_diff_human,
    format_diff_json,
)
from research_artifact.linter import (
    LintReport,
    LintSeverity,
    LintViolation,
    format_lint_report_human,
    format_lint_report_json,
    lint_artifact,
    validate_artifact,
)
from research_artifact.merge import (
    MergeErrorCode,
    MergeFailure,
    MergeIssue,
    MergeSuccess,
    MergeWarningCode,
    close_artifact,
    merge_artifact,
    merge_artifact_with_timestamps,
)
from research_artifact.schemas import (
    Artifact,
    ArtifactStatus,
    Section,
    create_empty_artifact,
)

__all__ = [
    "Artifact",
    "ArtifactConfig",
    "ArtifactDiff",
    "ArtifactStatus",
    "DeltaOperation",
    "DeltaParser",
    "DiffConfig",
    "InvalidDelta",
    "LintReport",
    "LintSeverity",
    "LintViolation",
    "MergeErrorCode",
    "MergeFailure",
    "MergeIssue",
    "MergeSuccess",
    "MergeWarningCode",
    "ParseResult",
    "ProgressScore",
    "Section",
    "ValidDelta",
    "close_artifact",
    "create_empty_artifact",
    "diff_artifacts",
    "extract_valid_deltas",
    "format_diff_human",
    "format_diff_json",
    "format_lint_report_human",
    "format_lint_report_json",
    "generate_next_id",
    "get_section_id_prefix",
    "lint_artifact",
    "merge_artifact",
    "merge_artifact_with_timestamps",
    "parse_delta_message",
    "validate_artifact",
    "validate_target_id_prefix",
]
