"""
Composite accountability score and the preference-weighted hybrid score.

The composite blends effective participation, rationale rate and
reliability under a weight set that must sum to 1.0.
"""
import math
from dataclasses import dataclass
from typing import Optional

WEIGHT_TOLERANCE = 1e-9

HYBRID_BASE_WEIGHT = 0.6
HYBRID_ALIGNMENT_WEIGHT = 0.4


@dataclass(frozen=True)
class ScoreWeights:
    """Weights of the composite accountability score. Must sum to 1.0."""
    effective_participation: float = 0.45
    rationale: float = 0.35
    reliability: float = 0.20
    name: str = "default"

    def __post_init__(self):
        total = self.effective_participation + self.rationale + self.reliability
        if abs(total - 1.0) > WEIGHT_TOLERANCE:
            raise ValueError(f"Score weights '{self.name}' sum to {total}, expected 1.0")


DEFAULT_WEIGHTS = ScoreWeights()


def _as_number(value: Optional[float]) -> float:
    if value is None:
        return 0.0
    value = float(value)
    return 0.0 if math.isnan(value) else value


def calculate_composite_score(
    effective_participation: Optional[float],
    rationale_rate: Optional[float],
    reliability: Optional[float],
    weights: ScoreWeights = DEFAULT_WEIGHTS,
) -> int:
    """Weighted 0-100 accountability score; missing or NaN inputs count as 0."""
    weighted = (
        _as_number(effective_participation) / 100 * weights.effective_participation
        + _as_number(rationale_rate) / 100 * weights.rationale
        + _as_number(reliability) / 100 * weights.reliability
    )
    return max(0, min(100, round(weighted * 100)))


def calculate_hybrid_score(base_score: int, alignment_overall: int) -> int:
    """Display score for a voter with preferences: base score blended with alignment."""
    return round(base_score * HYBRID_BASE_WEIGHT + alignment_overall * HYBRID_ALIGNMENT_WEIGHT)
