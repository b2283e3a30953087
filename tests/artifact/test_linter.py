"""Tests for the artifact validator and linter."""

import json

import pytest

from research_artifact.config import ArtifactConfig
from research_artifact.linter import (
    LintReport,
    LintSeverity,
    extract_anchor_refs,
    format_lint_report_human,
    format_lint_report_json,
    is_pure_inference,
    lint_artifact,
    out_of_range_citation,
    validate_artifact,
)
from research_artifact.schemas import Artifact


def lint_data(data, config=None):
    return lint_artifact(Artifact.from_dict(data), config)


# =============================================================================
# validate_artifact
# =============================================================================


class TestValidateArtifact:
    """Tests for the quick post-merge validator."""

    def test_complete_artifact_clean(self, complete_artifact):
        """Should report nothing for a complete artifact."""
        assert validate_artifact(complete_artifact) == []

    def test_empty_artifact_floors(self, empty_artifact):
        """Should report every floor and marker on an empty artifact."""
        issues = validate_artifact(empty_artifact)

        codes = [i.code for i in issues]
        assert codes.count("BELOW_MINIMUM") == 5
        assert "NO_THIRD_ALTERNATIVE" in codes
        assert "NO_SCALE_CHECK" in codes
        assert "NO_REAL_THIRD_ALTERNATIVE" in codes
        assert "Hypothesis slate has 0 active items (minimum 3)" in [i.message for i in issues]

    def test_killed_items_not_counted(self, complete_artifact_data):
        """Should ignore killed items in floors."""
        complete_artifact_data["sections"]["hypothesis_slate"][0]["killed"] = True

        issues = validate_artifact(Artifact.from_dict(complete_artifact_data))

        assert [i.code for i in issues] == ["BELOW_MINIMUM"]

    def test_valid_references(self, complete_artifact_data):
        """Should accept well-formed cross-session references."""
        complete_artifact_data["sections"]["hypothesis_slate"][0]["references"] = [
            {"session": "RS-other", "item": "H2", "relation": "extends"}
        ]

        assert validate_artifact(Artifact.from_dict(complete_artifact_data)) == []

    @pytest.mark.parametrize(
        "reference, problem",
        [
            ("RS-other:H2", "must be an object"),
            ({"item": "H2", "relation": "supports"}, "missing session"),
            ({"session": "RS-other", "item": "", "relation": "supports"}, "missing item"),
            ({"session": "RS-other", "item": "H2"}, "missing relation"),
            ({"session": "RS-other", "item": "H2", "relation": "likes"}, 'invalid relation "likes"'),
        ],
    )
    def test_invalid_references(self, complete_artifact_data, reference, problem):
        """Should report each malformed reference."""
        complete_artifact_data["sections"]["adversarial_critique"][0]["references"] = [reference]

        issues = validate_artifact(Artifact.from_dict(complete_artifact_data))

        assert [i.code for i in issues] == ["INVALID_REFERENCE"]
        assert issues[0].message.startswith("C1 reference 1:")
        assert problem in issues[0].message

    def test_single_reference_object(self, complete_artifact_data):
        """Should accept a bare reference object as well as a list."""
        complete_artifact_data["sections"]["research_thread"]["references"] = {
            "session": "RS-other",
            "item": "RT",
            "relation": "bogus",
        }

        issues = validate_artifact(Artifact.from_dict(complete_artifact_data))

        assert [i.message.split(":")[0] for i in issues] == ["RT reference 1"]


# =============================================================================
# lint_artifact
# =============================================================================


class TestLintArtifact:
    """Tests for the guardrail rules."""

    def test_complete_artifact_valid(self, complete_artifact):
        """Should pass a complete artifact with no violations."""
        report = lint_artifact(complete_artifact)

        assert report.valid
        assert report.violations == []

    def test_empty_artifact(self, empty_artifact):
        """Should fail an empty artifact on every floor."""
        report = lint_artifact(empty_artifact)

        ids = report.rule_ids()
        assert not report.valid
        for rule in ("ER-001", "ER-002", "EH-001", "EH-003", "EP-001", "ET-001", "EA-001", "EA-002", "EC-001"):
            assert rule in ids
        assert "WM-001" in ids
        assert "WR-001" in ids
        assert "WC-001" in ids

    def test_sorted_by_severity_then_id(self, empty_artifact):
        """Should order errors, warnings, then info, each by rule id."""
        report = lint_artifact(empty_artifact)

        ranks = {"error": 0, "warning": 1, "info": 2}
        keys = [(ranks[v.severity.value], v.id) for v in report.violations]
        assert keys == sorted(keys)

    def test_metadata_rules(self, complete_artifact_data):
        """Should check session id, timestamps, status, and version."""
        meta = complete_artifact_data["metadata"]
        meta.update(
            session_id=" ",
            created_at="yesterday",
            status="archived",
            version=-1,
            contributors=[],
        )

        ids = lint_data(complete_artifact_data).rule_ids()

        for rule in ("EM-002", "EM-003", "EM-004", "WM-001", "IM-002"):
            assert rule in ids
        assert "EM-003b" not in ids
        assert "WM-002" not in ids

    def test_updated_before_created(self, complete_artifact_data):
        """Should warn when updated_at precedes created_at."""
        complete_artifact_data["metadata"]["updated_at"] = "2025-12-31T00:00:00Z"

        assert lint_data(complete_artifact_data).rule_ids() == ["WM-002"]

    def test_hypothesis_maximum(self, complete_artifact_data):
        """Should flag more than six active hypotheses."""
        slate = complete_artifact_data["sections"]["hypothesis_slate"]
        for n in range(4, 8):
            slate.append({"id": f"H{n}", "name": f"n{n}", "claim": "c", "anchors": ["§1"]})

        report = lint_data(complete_artifact_data)

        assert "EH-002" in report.rule_ids()
        assert not report.valid

    def test_third_alternative_by_name(self, complete_artifact_data):
        """Should accept a hypothesis named as the third alternative."""
        h3 = complete_artifact_data["sections"]["hypothesis_slate"][2]
        h3["third_alternative"] = False
        h3["name"] = "Third Alternative: both wrong"

        assert "EH-003" not in lint_data(complete_artifact_data).rule_ids()

    def test_hypothesis_content(self, complete_artifact_data):
        """Should flag missing claims and anchors."""
        h1 = complete_artifact_data["sections"]["hypothesis_slate"][0]
        h1["claim"] = ""
        del h1["anchors"]

        report = lint_data(complete_artifact_data)

        assert report.rule_ids() == ["EH-004", "WH-001"]
        assert report.violations[0].message == "H1 is missing claim"

    def test_non_discriminating_prediction(self, complete_artifact_data):
        """Should warn on rows where every hypothesis predicts the same."""
        p1 = complete_artifact_data["sections"]["predictions_table"][0]
        p1["predictions"] = {"H1": "same", "H2": "same ", "H3": "same"}

        report = lint_data(complete_artifact_data)

        assert report.rule_ids() == ["WP-001"]
        assert report.violations[0].message.startswith("P1 does not discriminate")

    def test_prediction_with_missing_outcomes(self, complete_artifact_data):
        """Should warn when all but one outcome is missing."""
        complete_artifact_data["sections"]["predictions_table"][1]["predictions"] = {"H1": "only"}

        assert lint_data(complete_artifact_data).rule_ids() == ["WP-001"]

    def test_test_rules(self, complete_artifact_data):
        """Should check procedure, outcomes, potency, and score."""
        t2 = complete_artifact_data["sections"]["discriminative_tests"][1]
        t2["procedure"] = ""
        t2["expected_outcomes"] = {}
        t2["potency_check"] = ""
        del t2["score"]

        ids = lint_data(complete_artifact_data).rule_ids()

        assert ids == ["ET-002", "ET-003", "WT-001", "WT-003"]

    def test_test_ranking(self, complete_artifact_data):
        """Should warn once when tests are not in descending score order."""
        tests = complete_artifact_data["sections"]["discriminative_tests"]
        tests.reverse()

        assert lint_data(complete_artifact_data).rule_ids() == ["WT-002"]

    def test_assumption_rules(self, complete_artifact_data):
        """Should check statements and scale-check calculations."""
        ledger = complete_artifact_data["sections"]["assumption_ledger"]
        ledger[0]["statement"] = ""
        del ledger[2]["calculation"]

        assert lint_data(complete_artifact_data).rule_ids() == ["EA-003", "WA-003"]

    def test_killed_scale_check(self, complete_artifact_data):
        """Should require an active scale check."""
        complete_artifact_data["sections"]["assumption_ledger"][2]["killed"] = True

        ids = lint_data(complete_artifact_data).rule_ids()

        assert "EA-002" in ids
        assert "EA-001" in ids

    def test_critique_rules(self, complete_artifact_data):
        """Should check attack, evidence, status, and real third alternative."""
        critiques = complete_artifact_data["sections"]["adversarial_critique"]
        critiques[0].update(attack="", evidence="", current_status="")
        critiques[1]["real_third_alternative"] = False

        report = lint_data(complete_artifact_data)

        assert report.rule_ids() == ["EC-002", "WC-001", "WC-002", "IC-001"]
        assert report.by_severity(LintSeverity.INFO)[0].message == "C1 is missing current status"

    def test_anchor_out_of_range(self, complete_artifact_data):
        """Should flag transcript anchors outside 1-236."""
        complete_artifact_data["sections"]["research_thread"]["anchors"] = ["§0", "§236"]
        complete_artifact_data["sections"]["hypothesis_slate"][1]["anchors"] = ["§235-237"]

        report = lint_data(complete_artifact_data)

        messages = [v.message for v in report.violations if v.id == "EP-P01"]
        assert messages == [
            "RT references §0 which is out of range (valid: 1-236)",
            "H2 references §235-237 which is out of range (valid: 1-236)",
        ]

    def test_reversed_anchor_range(self, complete_artifact_data):
        """Should check both endpoints of a range written high-to-low."""
        complete_artifact_data["sections"]["hypothesis_slate"][0]["anchors"] = ["§400-2"]

        report = lint_data(complete_artifact_data)

        messages = [v.message for v in report.violations if v.id == "EP-P01"]
        assert messages == ["H1 references §400-2 which is out of range (valid: 1-236)"]

    def test_huge_anchor_range_reported_once(self, complete_artifact_data):
        """Should report a very wide range as a single violation."""
        complete_artifact_data["sections"]["hypothesis_slate"][0]["anchors"] = ["§1-3000000000"]

        report = lint_data(complete_artifact_data)

        assert report.rule_ids() == ["EP-P01"]
        assert "§1-3000000000" in report.violations[0].message

    def test_one_violation_per_anchor(self, complete_artifact_data):
        """Should report an anchor with several bad citations once."""
        complete_artifact_data["sections"]["hypothesis_slate"][0]["anchors"] = ["§0 and §999", "§500"]

        report = lint_data(complete_artifact_data)

        messages = [v.message for v in report.violations if v.id == "EP-P01"]
        assert messages == [
            "H1 references §0 which is out of range (valid: 1-236)",
            "H1 references §500 which is out of range (valid: 1-236)",
        ]

    def test_anchor_range_from_config(self, complete_artifact_data):
        """Should use the configured transcript range."""
        config = ArtifactConfig(max_transcript_section=100)

        report = lint_data(complete_artifact_data, config)

        assert report.rule_ids() == ["EP-P01"]

    def test_pure_inference_warning(self, complete_artifact_data):
        """Should warn on inference anchors with no cited source."""
        complete_artifact_data["sections"]["hypothesis_slate"][0]["anchors"] = ["[inference]"]

        assert lint_data(complete_artifact_data).rule_ids() == ["WP-P02"]

    def test_inference_with_spaced_anchor(self, complete_artifact_data):
        """Should treat "§ 42" as a cited source."""
        complete_artifact_data["sections"]["hypothesis_slate"][0]["anchors"] = ["§ 42", "[inference]"]

        assert lint_data(complete_artifact_data).rule_ids() == []

    def test_potency_without_chastity_citation(self, complete_artifact_data):
        """Should note potency checks that do not cite §50."""
        complete_artifact_data["sections"]["discriminative_tests"][0]["potency_check"] = "positive control"

        report = lint_data(complete_artifact_data)

        assert report.rule_ids() == ["IP-P02"]
        assert report.valid


class TestAnchorHelpers:
    """Tests for anchor parsing helpers."""

    def test_extract_refs(self):
        """Should return spans and accept a space after the section sign."""
        assert extract_anchor_refs(["§42", "§ 7", "§10-12", "inference"]) == [(42, 42), (7, 7), (10, 12)]
        assert extract_anchor_refs(None) == []

    def test_extract_refs_reversed_range(self):
        """Should normalize reversed ranges without expanding them."""
        assert extract_anchor_refs(["§400-2", "§1-3000000000"]) == [(2, 400), (1, 3000000000)]

    @pytest.mark.parametrize(
        "anchor, expected",
        [
            ("§42", None),
            ("§ 236", None),
            ("§0", "§0"),
            ("§235-237", "§235-237"),
            ("§400-2", "§400-2"),
            ("see §3 then §900", "§900"),
            (None, None),
        ],
    )
    def test_out_of_range_citation(self, anchor, expected):
        """Should return the first citation with an endpoint outside 1-236."""
        assert out_of_range_citation(anchor, 1, 236) == expected

    @pytest.mark.parametrize(
        "anchors, expected",
        [
            (["inference"], True),
            (["[Inference]"], True),
            (["see [inference] here"], True),
            (["[inference] from lineage data"], False),
            (["§3", "inference"], False),
            (["§3"], False),
            (None, False),
        ],
    )
    def test_pure_inference(self, anchors, expected):
        """Should detect inference markers lacking a source."""
        assert is_pure_inference(anchors) is expected


# =============================================================================
# Formatting
# =============================================================================


class TestFormatting:
    """Tests for report rendering."""

    def test_json_round_trip(self, empty_artifact):
        """Should rebuild an identical report from its JSON rendering."""
        report = lint_artifact(empty_artifact)

        text = format_lint_report_json(report, "RS-test")
        data = json.loads(text)

        assert data["artifact"] == "RS-test"
        assert data["valid"] is False
        assert LintReport.from_dict(data) == report
        assert text == format_lint_report_json(report, "RS-test")
        assert text.startswith('{\n  "artifact"')

    def test_human_report(self, empty_artifact):
        """Should group violations under severity headings."""
        report = lint_artifact(empty_artifact)

        text = format_lint_report_human(report, "RS-test")

        assert text.startswith("Artifact Linter Report\n======================\nArtifact: RS-test\n")
        summary = report.summary
        assert (
            f"Status: INVALID ({summary.errors} errors, {summary.warnings} warnings, {summary.info} info)"
        ) in text
        assert "Errors (must fix):" in text
        assert "  EH-003: No third alternative hypothesis is present" in text

    def test_human_report_valid(self, complete_artifact):
        """Should report VALID with no sections for a clean artifact."""
        text = format_lint_report_human(lint_artifact(complete_artifact))

        assert "Status: VALID (0 errors, 0 warnings, 0 info)" in text
        assert "Errors" not in text
