"""Configuration for artifact merging, linting, and diffing.

Defaults mirror the research protocol the artifact encodes:
- hypothesis slate capped at 6 active items (the only hard capacity limit)
- section floors used by the validator and linter
- transcript anchors range over sections 1-236
- potency checks are expected to cite the chastity principle (section 50)
"""

from dataclasses import dataclass, field

# Hard capacity limits enforced by the merge engine (active items only)
DEFAULT_SECTION_LIMITS: dict[str, int] = {
    "hypothesis_slate": 6,
}

# Soft floors reported by validate_artifact / lint_artifact
DEFAULT_SECTION_MINIMUMS: dict[str, int] = {
    "hypothesis_slate": 3,
    "predictions_table": 3,
    "discriminative_tests": 2,
    "assumption_ledger": 3,
    "adversarial_critique": 2,
}

MAX_TRANSCRIPT_SECTION = 236
CHASTITY_PRINCIPLE_SECTION = 50

# Diff rendering
DIFF_VALUE_MAX_LENGTH = 100


@dataclass
class ArtifactConfig:
    """Tunable limits shared by the merge engine and the linter.

    Attributes:
        section_limits: Max active items per section (missing = unlimited)
        section_minimums: Min active items per section before a floor warning
        hypothesis_max: Upper bound reported by the linter (EH-002)
        min_transcript_section: Lowest valid §N anchor
        max_transcript_section: Highest valid §N anchor
        chastity_section: Citation expected in every potency check
    """

    section_limits: dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_SECTION_LIMITS)
    )
    section_minimums: dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_SECTION_MINIMUMS)
    )
    hypothesis_max: int = 6
    min_transcript_section: int = 1
    max_transcript_section: int = MAX_TRANSCRIPT_SECTION
    chastity_section: int = CHASTITY_PRINCIPLE_SECTION

    def __post_init__(self):
        if self.min_transcript_section > self.max_transcript_section:
            raise ValueError(
                "min_transcript_section must be <= max_transcript_section"
            )
        for section, limit in self.section_limits.items():
            if limit < 1:
                raise ValueError(f"Section limit for {section} must be >= 1")

    def limit_for(self, section: str) -> int | None:
        """Capacity limit for a section, or None when unlimited."""
        return self.section_limits.get(section)

    def minimum_for(self, section: str) -> int:
        """Floor for a section (0 when the section has none)."""
        return self.section_minimums.get(section, 0)


@dataclass
class DiffConfig:
    """Options for diff_artifacts.

    Attributes:
        value_max_length: Strings longer than this are truncated in edits
        treat_removal_as_kill: Report items missing from the newer version as
            kills ("Removed from artifact"). When False they are listed under
            ``removed`` so silent deletions stay visible as their own category.
    """

    value_max_length: int = DIFF_VALUE_MAX_LENGTH
    treat_removal_as_kill: bool = True

    def __post_init__(self):
        if self.value_max_length < 1:
            raise ValueError("value_max_length must be >= 1")


DEFAULT_CONFIG = ArtifactConfig()
DEFAULT_DIFF_CONFIG = DiffConfig()
