"""Weighted funding decision model: criterion ratings -> composite -> outcome.

Pipeline
--------
Every evaluation is a pure, synchronous function pipeline:

- **Criterion scores**: six fixed dimensions, each an integer 1-5
  (1 = very low / negative impact, 5 = very high / strong positive impact).
  Supplied by a ``ScoreProvider`` (an LLM, a rules engine, a human, a fixture).
- **Composite**: ``sum(score_d * weight_d)`` over the six dimensions with a
  weight vector that sums to 1.0, so the composite always lies in [1.0, 5.0].
- **Outcome**: threshold bands, lower bound closed, upper bound open:

  ============================  ==========================
  composite                     outcome
  ============================  ==========================
  >= 4.0                        Approve
  [3.2, 4.0)                    Approve with conditions
  [2.5, 3.2)                    Defer
  < 2.5                         Reject
  ============================  ==========================

Bad input raises ``ValidationError``. A composite outside [1.0, 5.0] means the
aggregation itself is broken and raises ``ContractViolation`` instead.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Protocol


class ValidationError(ValueError):
    """Evaluation input rejected (missing/out-of-range score, bad weights)."""
    def __init__(self, message: str, dimension: str | None = None):
        super().__init__(message)
        self.dimension = dimension


class ContractViolation(RuntimeError):
    """The aggregator produced a composite outside [1.0, 5.0]."""


# ---------------------------------------------------------------------------
# Criteria & weights
# ---------------------------------------------------------------------------


class Criterion(str, Enum):
    STRATEGIC_ALIGNMENT = "strategic_alignment"
    BENEFIT_VALUE = "benefit_value"
    DELIVERY_RISK = "delivery_risk"
    DEPENDENCY_COMPLEXITY = "dependency_complexity"
    CAPACITY_AVAILABILITY = "capacity_availability"
    REGULATORY_IMPACT = "regulatory_impact"


CRITERIA: tuple[str, ...] = tuple(c.value for c in Criterion)

SCORE_MIN = 1
SCORE_MAX = 5
WEIGHT_SUM_TOLERANCE = 1e-6

# Float sums of exact band edges (e.g. 3.2000000000000006) must land on the edge.
_EDGE_EPSILON = 1e-9

SCALE_DESCRIPTION = "1 = Very Low / Negative Impact, 5 = Very High / Strong Positive Impact"


def _check_dimensions(values: Mapping[str, Any], what: str) -> None:
    if not isinstance(values, Mapping):
        raise ValidationError(f"{what} must be a mapping of criterion -> value")
    unknown = sorted(set(values) - set(CRITERIA))
    if unknown:
        raise ValidationError(f"Unknown criterion in {what}: {unknown[0]}", dimension=unknown[0])
    for name in CRITERIA:
        if name not in values:
            raise ValidationError(f"Missing criterion in {what}: {name}", dimension=name)


@dataclass(frozen=True)
class WeightVector:
    """Immutable criterion weights. Must sum to 1.0 (within 1e-6)."""
    weights: Mapping[str, float]

    def __post_init__(self) -> None:
        _check_dimensions(self.weights, "weights")
        clean: dict[str, float] = {}
        for name in CRITERIA:
            w = self.weights[name]
            if isinstance(w, bool) or not isinstance(w, (int, float)):
                raise ValidationError(f"Weight for {name} must be a number, got {w!r}", dimension=name)
            w = float(w)
            if not math.isfinite(w) or w < 0:
                raise ValidationError(f"Weight for {name} must be a non-negative finite number, got {w!r}",
                                      dimension=name)
            clean[name] = w
        total = math.fsum(clean.values())
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ValidationError(f"Weights must sum to 1.0, got {total:.6f}")
        object.__setattr__(self, "weights", MappingProxyType(clean))

    def __getitem__(self, name: str) -> float:
        return self.weights[name]

    def as_dict(self) -> dict[str, float]:
        return {name: self.weights[name] for name in CRITERIA}


DEFAULT_WEIGHTS = WeightVector({
    "strategic_alignment": 0.30,
    "benefit_value": 0.25,
    "delivery_risk": 0.15,
    "dependency_complexity": 0.10,
    "capacity_availability": 0.10,
    "regulatory_impact": 0.10,
})


@dataclass(frozen=True)
class CriterionScores:
    """Exactly six criterion ratings, each an integer in [1, 5]."""
    scores: Mapping[str, int]

    def __post_init__(self) -> None:
        _check_dimensions(self.scores, "scores")
        clean: dict[str, int] = {}
        for name in CRITERIA:
            v = self.scores[name]
            if isinstance(v, float) and v.is_integer():
                v = int(v)
            if isinstance(v, bool) or not isinstance(v, int):
                raise ValidationError(f"Score for {name} must be an integer, got {v!r}", dimension=name)
            if not SCORE_MIN <= v <= SCORE_MAX:
                raise ValidationError(
                    f"Score for {name} must be between {SCORE_MIN} and {SCORE_MAX}, got {v}",
                    dimension=name,
                )
            clean[name] = v
        object.__setattr__(self, "scores", MappingProxyType(clean))

    def __getitem__(self, name: str) -> int:
        return self.scores[name]

    def as_dict(self) -> dict[str, int]:
        return {name: self.scores[name] for name in CRITERIA}


def validate_scores(raw: Mapping[str, Any] | CriterionScores) -> CriterionScores:
    """Check a raw rating mapping against the criterion contract."""
    if isinstance(raw, CriterionScores):
        return raw
    return CriterionScores(raw)


def validate_weights(raw: Mapping[str, Any] | WeightVector | None) -> WeightVector:
    if raw is None:
        return DEFAULT_WEIGHTS
    if isinstance(raw, WeightVector):
        return raw
    return WeightVector(raw)


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def compute_composite(scores: CriterionScores, weights: WeightVector = DEFAULT_WEIGHTS) -> float:
    """Weighted sum of the six ratings."""
    return math.fsum(scores[name] * weights[name] for name in CRITERIA)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class Outcome(str, Enum):
    APPROVE = "Approve"
    APPROVE_WITH_CONDITIONS = "Approve with conditions"
    DEFER = "Defer"
    REJECT = "Reject"


OUTCOME_LABELS: tuple[str, ...] = tuple(o.value for o in Outcome)

# Ordered (lower_bound, outcome); first band whose lower bound is met wins.
THRESHOLDS: tuple[tuple[float, Outcome], ...] = (
    (4.0, Outcome.APPROVE),
    (3.2, Outcome.APPROVE_WITH_CONDITIONS),
    (2.5, Outcome.DEFER),
)

COMPOSITE_MIN = float(SCORE_MIN)
COMPOSITE_MAX = float(SCORE_MAX)

# Accepted weight vectors may sum to 1.0 +/- WEIGHT_SUM_TOLERANCE, which moves
# the reachable composite range by up to COMPOSITE_MAX times that amount.
_RANGE_TOLERANCE = COMPOSITE_MAX * WEIGHT_SUM_TOLERANCE + _EDGE_EPSILON


def classify(composite: float) -> Outcome:
    """Map a composite score to its outcome band."""
    if isinstance(composite, bool) or not isinstance(composite, (int, float)) or math.isnan(composite):
        raise ContractViolation(f"Composite score is not a number: {composite!r}")
    if composite < COMPOSITE_MIN - _RANGE_TOLERANCE or composite > COMPOSITE_MAX + _RANGE_TOLERANCE:
        raise ContractViolation(
            f"Composite score {composite!r} outside [{COMPOSITE_MIN}, {COMPOSITE_MAX}]"
        )
    for lower, outcome in THRESHOLDS:
        if composite >= lower - _EDGE_EPSILON:
            return outcome
    return Outcome.REJECT


def threshold_table() -> dict[str, str]:
    """Human-readable bands, keyed by outcome."""
    return {
        Outcome.APPROVE.value: ">= 4.0",
        Outcome.APPROVE_WITH_CONDITIONS.value: "3.2 - <4.0",
        Outcome.DEFER.value: "2.5 - <3.2",
        Outcome.REJECT.value: "< 2.5",
    }


# ---------------------------------------------------------------------------
# Evaluation entry point
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EvaluationResult:
    composite_score: float
    outcome: Outcome
    scores: CriterionScores
    weights: WeightVector

    @property
    def display_score(self) -> float:
        """Composite rounded to 2 decimals, for display only."""
        return round(self.composite_score, 2)

    def as_dict(self) -> dict[str, Any]:
        return {
            "composite_score": self.display_score,
            "composite_score_exact": self.composite_score,
            "outcome": self.outcome.value,
            "scores": self.scores.as_dict(),
            "weights": self.weights.as_dict(),
        }


def evaluate(
    initiative: Any,
    criterion_scores: Mapping[str, Any] | CriterionScores,
    weights: Mapping[str, Any] | WeightVector | None = None,
) -> EvaluationResult:
    """Validate the ratings, aggregate them and classify the composite.

    ``initiative`` is carried for the caller's benefit only; its free-text
    fields are never interpreted here.
    """
    scores = validate_scores(criterion_scores)
    vector = validate_weights(weights)
    composite = compute_composite(scores, vector)
    outcome = classify(composite)
    return EvaluationResult(composite_score=composite, outcome=outcome, scores=scores, weights=vector)


# ---------------------------------------------------------------------------
# Score providers
# ---------------------------------------------------------------------------


@dataclass
class ScoredAssessment:
    """Ratings from a score provider plus the opaque text that came with them."""
    scores: CriterionScores
    rationale: str = ""
    conditions: list[str] = field(default_factory=list)
    recommendation: str = ""
    source: str = ""


class ScoreProvider(Protocol):
    async def score(self, initiative: Any) -> ScoredAssessment: ...


class FixedScoreProvider:
    """Returns the same ratings for every initiative (tests, manual scoring)."""

    def __init__(self, scores: Mapping[str, Any], rationale: str = ""):
        self._assessment = ScoredAssessment(
            scores=validate_scores(scores), rationale=rationale, source="fixed",
        )

    async def score(self, initiative: Any) -> ScoredAssessment:
        return self._assessment
