"""A/B test statistics — allocation hashing, confidence intervals, significance, recommendations.

All functions are pure. The error function uses the Abramowitz & Stegun
7.1.26 polynomial so p-values match previously reported results exactly at
the 0.05 boundary.
"""

import math
from dataclasses import dataclass, field
from typing import Optional, Sequence

# z-scores by confidence level (percent); anything else falls back to 90%
Z_SCORES = {95: 1.96, 99: 2.58}
DEFAULT_Z = 1.64

MIN_VIEWS_FOR_SIGNIFICANCE = 30
SIGNIFICANCE_ALPHA = 0.05
EXTEND_TEST_CONFIDENCE = 80.0

CONTINUE = "continue"
STOP_WINNER = "stop_winner"
STOP_INCONCLUSIVE = "stop_inconclusive"
EXTEND_TEST = "extend_test"


# ── Result types ───────────────────────────────────────
@dataclass
class VariantResult:
    """Metrics for one variant of a test."""
    variant_id: str
    name: str
    is_control: bool
    views: int = 0
    conversions: int = 0
    conversion_rate: float = 0.0  # % of views
    bounce_rate: float = 0.0      # % of views without a conversion
    ci_lower: float = 0.0
    ci_upper: float = 0.0
    is_winner: bool = False

    def to_dict(self) -> dict:
        return {
            "variant_id": self.variant_id,
            "name": self.name,
            "is_control": self.is_control,
            "metrics": {
                "views": self.views,
                "completions": self.conversions,
                "conversion_rate": round(self.conversion_rate, 2),
                "bounce_rate": round(self.bounce_rate, 2),
            },
            "confidence_interval": {
                "lower": round(self.ci_lower, 2),
                "upper": round(self.ci_upper, 2),
            },
            "is_winner": self.is_winner,
        }


@dataclass
class Significance:
    reached: bool
    p_value: float
    confidence: float

    def to_dict(self) -> dict:
        return {
            "reached": self.reached,
            "p_value": round(self.p_value, 6),
            "confidence": round(self.confidence, 2),
        }


@dataclass
class Winner:
    variant_id: str
    confidence: float
    improvement_percent: Optional[float]  # None when the control never converted
    significance_reached: bool = True

    def to_dict(self) -> dict:
        return {
            "variant_id": self.variant_id,
            "confidence": round(self.confidence, 2),
            "improvement_percent": (
                round(self.improvement_percent, 2) if self.improvement_percent is not None else None
            ),
            "significance_reached": self.significance_reached,
        }


@dataclass
class ABTestResults:
    test_id: str
    statistical_significance: Significance
    recommendation: str
    last_calculated: str
    variants: list[VariantResult] = field(default_factory=list)
    winner: Optional[Winner] = None

    def to_dict(self) -> dict:
        return {
            "test_id": self.test_id,
            "variants": [v.to_dict() for v in self.variants],
            "winner": self.winner.to_dict() if self.winner else None,
            "statistical_significance": self.statistical_significance.to_dict(),
            "recommendation": self.recommendation,
            "last_calculated": self.last_calculated,
        }


# ── Allocation ────────────────────────────────────────
def hash_string(value: str) -> int:
    """31-multiplier rolling hash over UTF-16 code units, wrapped to signed 32-bit, made non-negative."""
    h = 0
    data = value.encode("utf-16-le")
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = (h * 31 + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def allocation_bucket(visitor_id: str, test_id: str) -> int:
    """Stable 1–100 bucket for a (visitor, test) pair."""
    return hash_string(visitor_id + test_id) % 100 + 1


def select_variant_index(allocations: Sequence[float], percentage: int) -> Optional[int]:
    """Index of the first variant whose cumulative allocation covers ``percentage``."""
    cumulative = 0.0
    for index, allocation in enumerate(allocations):
        cumulative += allocation or 0
        if percentage <= cumulative:
            return index
    return None


# ── Normal distribution ───────────────────────────────
def erf(x: float) -> float:
    a1 = 0.254829592
    a2 = -0.284496736
    a3 = 1.421413741
    a4 = -1.453152027
    a5 = 1.061405429
    p = 0.3275911

    sign = 1 if x >= 0 else -1
    x = abs(x)

    t = 1.0 / (1.0 + p * x)
    y = 1.0 - (((((a5 * t + a4) * t) + a3) * t + a2) * t + a1) * t * math.exp(-x * x)
    return sign * y


def normal_cdf(x: float) -> float:
    return 0.5 * (1 + erf(x / math.sqrt(2)))


# ── Intervals & tests ─────────────────────────────────
def z_for_confidence(confidence_level: float) -> float:
    return Z_SCORES.get(int(confidence_level), DEFAULT_Z)


def calculate_confidence_interval(successes: int, trials: int, confidence_level: float = 95) -> tuple[float, float]:
    """Normal-approximation interval for a conversion rate, in percent, clamped to [0, 100]."""
    if trials <= 0:
        return 0.0, 0.0

    p = successes / trials
    # More successes than trials (e.g. repeat conversions) gives p > 1; no spread then
    margin = z_for_confidence(confidence_level) * math.sqrt(max(0.0, p * (1 - p)) / trials)
    lower = min(1.0, max(0.0, p - margin))
    upper = min(1.0, max(0.0, p + margin))
    return lower * 100, upper * 100


def build_variant_result(
    variant_id: str,
    name: str,
    is_control: bool,
    views: int,
    conversions: int,
    confidence_level: float = 95,
) -> VariantResult:
    conversion_rate = conversions / views * 100 if views > 0 else 0.0
    bounce_rate = (views - conversions) / views * 100 if views > 0 else 0.0
    lower, upper = calculate_confidence_interval(conversions, views, confidence_level)
    return VariantResult(
        variant_id=variant_id,
        name=name,
        is_control=is_control,
        views=views,
        conversions=conversions,
        conversion_rate=conversion_rate,
        bounce_rate=bounce_rate,
        ci_lower=lower,
        ci_upper=upper,
    )


def _control_and_challenger(variants: Sequence[VariantResult]):
    control = next((v for v in variants if v.is_control), None)
    challenger = next((v for v in variants if not v.is_control), None)
    return control, challenger


def calculate_statistical_significance(
    variants: Sequence[VariantResult],
    min_views: int = MIN_VIEWS_FOR_SIGNIFICANCE,
    alpha: float = SIGNIFICANCE_ALPHA,
) -> Significance:
    """Two-tailed two-proportion z-test between the control and the first other variant."""
    not_significant = Significance(reached=False, p_value=1.0, confidence=0.0)
    if len(variants) < 2:
        return not_significant

    control, challenger = _control_and_challenger(variants)
    if control is None or challenger is None:
        return not_significant

    n1, n2 = control.views, challenger.views
    if n1 < min_views or n2 < min_views:
        return not_significant

    p1 = control.conversion_rate / 100
    p2 = challenger.conversion_rate / 100
    pooled = (n1 * p1 + n2 * p2) / (n1 + n2)
    variance = pooled * (1 - pooled)
    if variance <= 0:
        # Both at 0%, both at 100%, or more conversions than views
        return not_significant
    se = math.sqrt(variance * (1 / n1 + 1 / n2))
    if se == 0:
        return not_significant

    z = abs(p2 - p1) / se
    p_value = 2 * (1 - normal_cdf(z))
    return Significance(reached=p_value < alpha, p_value=p_value, confidence=(1 - p_value) * 100)


def all_reached_sample(variants: Sequence[VariantResult], min_sample_size: int) -> bool:
    return all(v.views >= min_sample_size for v in variants)


def determine_winner(
    variants: Sequence[VariantResult], significance: Significance, min_sample_size: int
) -> Optional[Winner]:
    """Best non-control variant, if significant, fully sampled, and strictly better than control."""
    if not significance.reached or len(variants) < 2:
        return None
    if not all_reached_sample(variants, min_sample_size):
        return None

    control = next((v for v in variants if v.is_control), None)
    challengers = [v for v in variants if not v.is_control]
    if control is None or not challengers:
        return None

    best = challengers[0]
    for candidate in challengers[1:]:
        if candidate.conversion_rate > best.conversion_rate:
            best = candidate

    if best.conversion_rate <= control.conversion_rate:
        return None

    improvement = None
    if control.conversion_rate > 0:
        improvement = (best.conversion_rate - control.conversion_rate) / control.conversion_rate * 100
    return Winner(variant_id=best.variant_id, confidence=significance.confidence, improvement_percent=improvement)


def generate_recommendation(
    variants: Sequence[VariantResult],
    significance: Significance,
    min_sample_size: int,
    extend_threshold: float = EXTEND_TEST_CONFIDENCE,
) -> str:
    if len(variants) < 2:
        return STOP_INCONCLUSIVE
    if not all_reached_sample(variants, min_sample_size):
        return CONTINUE
    if significance.reached:
        return STOP_WINNER
    if significance.confidence >= extend_threshold:
        return EXTEND_TEST
    return STOP_INCONCLUSIVE
