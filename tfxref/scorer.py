"""Confidence scoring for Terraform to Helm flows."""
import dataclasses
from dataclasses import dataclass, field

from .models import (
    FlowEvidence,
    TerraformToHelmFlow,
    clamp,
    get_confidence_level,
)

PATTERN_BASE_SCORES = {
    "direct_output": 90,
    "output_to_secret": 85,
    "output_to_env": 80,
    "output_to_file": 75,
    "job_chain": 70,
    "artifact_transfer": 65,
    "matrix_propagation": 60,
    "inferred": 40,
}
UNKNOWN_PATTERN_BASE = 40

EVIDENCE_TYPE_WEIGHTS = {
    "explicit_reference": 1.0,
    "expression_match": 0.9,
    "env_variable": 0.8,
    "job_dependency": 0.8,
    "artifact_path": 0.7,
    "file_path_match": 0.6,
    "semantic_match": 0.6,
    "naming_convention": 0.5,
    "step_proximity": 0.4,
}

STRONG_EVIDENCE_TYPES = {"explicit_reference", "expression_match", "job_dependency"}
WEAK_EVIDENCE_TYPES = {"semantic_match", "step_proximity", "naming_convention"}

# Text that means the value was reshaped on its way to Helm
TRANSFORM_INDICATORS = ["jq ", "yq ", "envsubst", "sed ", "awk "]


@dataclass
class ScoringWeights:
    """Tunable knobs for ConfidenceScorer."""
    evidence_weight: float = 0.3
    max_explicit_bonus: float = 20
    max_weakness_penalty: float = 25
    pattern_base_scores: dict[str, float] = field(default_factory=lambda: dict(PATTERN_BASE_SCORES))
    evidence_type_weights: dict[str, float] = field(default_factory=lambda: dict(EVIDENCE_TYPE_WEIGHTS))


@dataclass(frozen=True)
class ConfidenceBreakdown:
    """How a confidence score was assembled."""
    pattern_base: float
    evidence_score: float
    explicit_bonus: float
    weakness_penalty: float
    total: int
    level: str

    def to_dict(self) -> dict:
        return {
            "patternBase": self.pattern_base,
            "evidenceScore": round(self.evidence_score, 2),
            "explicitBonus": self.explicit_bonus,
            "weaknessPenalty": self.weakness_penalty,
            "total": self.total,
            "level": self.level,
        }


class ConfidenceScorer:
    """Turns a pattern and its evidence into a bounded confidence score."""

    def __init__(self, weights: ScoringWeights | None = None):
        self.weights = weights or ScoringWeights()

    def score_flow(self, pattern: str, evidence: list[FlowEvidence]) -> int:
        return self.get_breakdown(pattern, evidence).total

    def get_breakdown(self, pattern: str, evidence: list[FlowEvidence]) -> ConfidenceBreakdown:
        base = self.weights.pattern_base_scores.get(pattern, UNKNOWN_PATTERN_BASE)
        evidence_score = self._evidence_score(evidence)
        bonus = self._explicit_bonus(evidence)
        penalty = self._weakness_penalty(pattern, evidence)
        total = round(clamp(base + evidence_score + bonus - penalty))
        return ConfidenceBreakdown(
            pattern_base=base,
            evidence_score=evidence_score,
            explicit_bonus=bonus,
            weakness_penalty=penalty,
            total=total,
            level=get_confidence_level(total),
        )

    def _evidence_score(self, evidence: list[FlowEvidence]) -> float:
        """Weighted mean of evidence strengths, scaled by evidence_weight."""
        if not evidence:
            return 0
        weights = [self.weights.evidence_type_weights.get(e.type, 0.5) for e in evidence]
        total_weight = sum(weights)
        if total_weight == 0:
            return 0
        weighted = sum(e.strength * w for e, w in zip(evidence, weights))
        return weighted / total_weight * self.weights.evidence_weight

    def _explicit_bonus(self, evidence: list[FlowEvidence]) -> float:
        types = {e.type for e in evidence}
        bonus = 0
        if "explicit_reference" in types:
            bonus += 10
        if "job_dependency" in types:
            bonus += 5
        if "naming_convention" in types:
            bonus += 3
        if "explicit_reference" not in types and any(
            "needs." in (e.snippet or "") or "needs:" in (e.snippet or "") for e in evidence
        ):
            bonus += 5
        return min(bonus, self.weights.max_explicit_bonus)

    def _weakness_penalty(self, pattern: str, evidence: list[FlowEvidence]) -> float:
        types = {e.type for e in evidence}
        penalty = 0

        # Check for weak-only evidence
        if evidence and types <= WEAK_EVIDENCE_TYPES and not types & STRONG_EVIDENCE_TYPES:
            penalty += 5

        # Check for transformations along the way
        snippets = " ".join(e.snippet for e in evidence if e.snippet)
        penalty += 3 * sum(1 for indicator in TRANSFORM_INDICATORS if indicator in snippets)

        if pattern == "inferred":
            penalty += 5

        weak_items = sum(1 for e in evidence if e.strength < 50)
        if evidence and weak_items > len(evidence) / 2:
            penalty += 5

        return min(penalty, self.weights.max_weakness_penalty)


def calculate_flow_confidence(flow: TerraformToHelmFlow, scorer: ConfidenceScorer | None = None) -> int:
    """Canonical score for a flow built outside a detector."""
    scorer = scorer or ConfidenceScorer()
    return scorer.score_flow(flow.pattern, list(flow.evidence))


def score_flows(
    flows: list[TerraformToHelmFlow], scorer: ConfidenceScorer | None = None
) -> list[TerraformToHelmFlow]:
    """Copies of the flows rescored with the canonical scorer."""
    scorer = scorer or ConfidenceScorer()
    rescored = []
    for flow in flows:
        confidence = calculate_flow_confidence(flow, scorer)
        rescored.append(dataclasses.replace(
            flow, confidence=confidence, confidence_level=get_confidence_level(confidence)
        ))
    return rescored


def filter_by_confidence(flows: list[TerraformToHelmFlow], min_confidence: float) -> list[TerraformToHelmFlow]:
    return [f for f in flows if f.confidence >= min_confidence]


def sort_by_confidence(flows: list[TerraformToHelmFlow]) -> list[TerraformToHelmFlow]:
    return sorted(flows, key=lambda f: f.confidence, reverse=True)


def group_by_confidence_level(flows: list[TerraformToHelmFlow]) -> dict[str, list[TerraformToHelmFlow]]:
    groups: dict[str, list[TerraformToHelmFlow]] = {"high": [], "medium": [], "low": []}
    for flow in flows:
        groups[get_confidence_level(flow.confidence)].append(flow)
    return groups


def calculate_average_confidence(flows: list[TerraformToHelmFlow]) -> int:
    if not flows:
        return 0
    return round(sum(f.confidence for f in flows) / len(flows))
