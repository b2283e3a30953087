"""Pytest configuration and fixtures."""

import pytest

from research_artifact.delta_parser import DeltaOperation, ValidDelta
from research_artifact.schemas import Artifact, Section, create_empty_artifact

CREATED_AT = "2026-01-01T00:00:00.000Z"


@pytest.fixture
def empty_artifact():
    """Fresh artifact at version 0."""
    return create_empty_artifact("RS-test", now=CREATED_AT)


@pytest.fixture
def complete_artifact_data():
    """Wire-shaped artifact that satisfies every lint rule."""
    return {
        "metadata": {
            "session_id": "RS-test",
            "created_at": CREATED_AT,
            "updated_at": CREATED_AT,
            "version": 1,
            "contributors": [{"agent": "BlueLake", "contributed_at": CREATED_AT}],
            "status": "active",
        },
        "sections": {
            "research_thread": {
                "id": "RT",
                "statement": "How do cells decide their fate?",
                "context": "Lineage tracing shows early commitment",
                "why_it_matters": "Separates instruction from selection",
                "anchors": ["§42"],
            },
            "hypothesis_slate": [
                {"id": "H1", "name": "Instruction", "claim": "Signals instruct", "mechanism": "Morphogen", "anchors": ["§42"]},
                {"id": "H2", "name": "Selection", "claim": "Cells are selected", "mechanism": "Competition", "anchors": ["§57"]},
                {"id": "H3", "name": "Both wrong", "claim": "Stochastic drift", "mechanism": "Noise", "anchors": ["§103"], "third_alternative": True},
            ],
            "predictions_table": [
                {"id": "P1", "condition": "Block signal", "predictions": {"H1": "fate lost", "H2": "fate kept", "H3": "random"}},
                {"id": "P2", "condition": "Remove competitors", "predictions": {"H1": "normal", "H2": "expanded", "H3": "random"}},
                {"id": "P3", "condition": "Clonal analysis", "predictions": {"H1": "uniform", "H2": "skewed", "H3": "broad"}},
            ],
            "discriminative_tests": [
                {
                    "id": "T1",
                    "name": "Signal knockout",
                    "procedure": "Knock out the receptor",
                    "discriminates": "H1 vs H2",
                    "expected_outcomes": {"H1": "fate lost", "H2": "fate kept"},
                    "potency_check": "Confirm knockout by staining (§50)",
                    "score": {"likelihood_ratio": 3, "cost": 2, "speed": 3, "ambiguity": 2},
                },
                {
                    "id": "T2",
                    "name": "Clone tracing",
                    "procedure": "Sparse labeling",
                    "discriminates": "H2, H3",
                    "expected_outcomes": {"H2": "skewed", "H3": "broad"},
                    "potency_check": "Label visible in controls, § 50",
                    "score": {"likelihood_ratio": 2, "cost": 2, "speed": 2, "ambiguity": 2},
                },
            ],
            "assumption_ledger": [
                {"id": "A1", "name": "Receptor", "statement": "Receptor is required", "load": "H1", "test": "T1"},
                {"id": "A2", "name": "Labeling", "statement": "Label is heritable", "load": "T2", "test": "control"},
                {
                    "id": "A3",
                    "name": "Diffusion scale",
                    "statement": "Morphogen reaches 10 cell diameters",
                    "load": "H1",
                    "test": "calculation",
                    "scale_check": True,
                    "calculation": "sqrt(D*t) = sqrt(1e-7 cm2/s * 3600 s) ~ 190 um",
                },
            ],
            "anomaly_register": [
                {"id": "X1", "name": "Odd clone", "observation": "One giant clone", "conflicts_with": ["H1"], "status": "active"},
            ],
            "adversarial_critique": [
                {"id": "C1", "name": "Fixation", "attack": "Fixation artifacts", "evidence": "Live imaging", "current_status": "open"},
                {
                    "id": "C2",
                    "name": "Wrong level",
                    "attack": "Fate is not cell-intrinsic",
                    "evidence": "Transplant experiments",
                    "current_status": "serious",
                    "real_third_alternative": True,
                },
            ],
        },
    }


@pytest.fixture
def complete_artifact(complete_artifact_data):
    return Artifact.from_dict(complete_artifact_data)


@pytest.fixture
def make_delta():
    """Factory for ValidDelta objects."""

    def _make(operation, section, target_id=None, payload=None, timestamp=None, agent=None):
        return ValidDelta(
            operation=DeltaOperation(operation),
            section=Section(section),
            target_id=target_id,
            payload=payload if payload is not None else {},
            rationale="",
            raw="",
            timestamp=timestamp,
            agent=agent,
        )

    return _make
