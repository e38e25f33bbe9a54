"""
Gatekeeper Experiment Analysis

Approximate significance testing and winner selection for threshold
experiments. Stateless; operates on an Experiment snapshot.

The p-value comes from a one-degree-of-freedom chi-squared test whose CDF
is evaluated through the standard normal (chi2_1 = Z^2), with the normal CDF
from Abramowitz & Stegun 26.2.17 (absolute error below 7.5e-8).
"""

import math
from typing import Tuple

from core.schemas.inputs import Arm, SignificanceMetric
from core.schemas.outputs import (
    Experiment,
    SignificanceResult,
    VariantStats,
    Winner,
    WinnerRecommendation,
)


# =============================================================================
# Constants
# =============================================================================

SIGNIFICANCE_LEVEL = 0.05
MAX_REPORTED_CONFIDENCE = 95.0

# Minimum share of control's block rate the variant must keep to win
BLOCK_RATE_RETENTION = 0.8

# A&S 26.2.17 coefficients
_P = 0.2316419
_B = (0.319381530, -0.356563782, 1.781477937, -1.821255978, 1.330274429)
_INV_SQRT_2PI = 0.3989422804014327


# =============================================================================
# Distribution Helpers
# =============================================================================

def normal_cdf(x: float) -> float:
    """Standard normal CDF, rational approximation."""
    t = 1.0 / (1.0 + _P * abs(x))
    density = _INV_SQRT_2PI * math.exp(-x * x / 2.0)
    poly = t * (_B[0] + t * (_B[1] + t * (_B[2] + t * (_B[3] + t * _B[4]))))
    tail = density * poly
    return 1.0 - tail if x > 0 else tail


def chi_squared_cdf_1dof(x: float) -> float:
    """CDF of chi-squared with one degree of freedom."""
    if x <= 0:
        return 0.0
    if x > 100:
        return 1.0
    z = math.sqrt(x)
    return normal_cdf(z) - normal_cdf(-z)


def chi_squared_2x2(
    control_count: int,
    control_n: int,
    variant_count: int,
    variant_n: int
) -> Tuple[float, float]:
    """
    Pooled-rate chi-squared statistic for two proportions.

    Returns:
        (chi_squared, p_value). Cells with zero expected count contribute
        nothing, so identical all-zero or all-one arms give (0.0, 1.0).
    """
    total_n = control_n + variant_n
    if total_n <= 0:
        return 0.0, 1.0

    pooled_rate = (control_count + variant_count) / total_n
    chi_squared = 0.0
    for observed, n in ((control_count, control_n), (variant_count, variant_n)):
        expected = n * pooled_rate
        if expected > 0:
            chi_squared += (observed - expected) ** 2 / expected

    p_value = 1.0 - chi_squared_cdf_1dof(chi_squared)
    return chi_squared, min(1.0, max(0.0, p_value))


def significance_stars(p_value: float) -> str:
    if p_value < 0.01:
        return "***"
    if p_value < 0.05:
        return "**"
    if p_value < 0.10:
        return "*"
    return ""


def _metric_count(stats: VariantStats, metric: SignificanceMetric) -> int:
    return getattr(stats, metric.value)


def _rate(count: int, attempts: int) -> float:
    return count / attempts if attempts else 0.0


# =============================================================================
# Analyzer
# =============================================================================

class ExperimentAnalyzer:
    """
    Stateless significance and winner analysis.

    Winner Logic:
        VARIANT: lower FP rate, significant, and blocked rate >= 0.8x control
        CONTROL: higher FP rate, significant
        INCONCLUSIVE: otherwise, or either arm below min_sample_size
    """

    def has_enough_data(self, experiment: Experiment) -> bool:
        results = experiment.results
        return (
            results.control.attempts >= experiment.min_sample_size and
            results.variant.attempts >= experiment.min_sample_size
        )

    def significance(
        self,
        experiment: Experiment,
        metric: SignificanceMetric
    ) -> SignificanceResult:
        """
        Compare one counter between arms.

        Args:
            experiment: Experiment whose results are compared.
            metric: Counter to compare (allowed, challenged, blocked, false_positives).

        Returns:
            SignificanceResult; p_value=1 and not significant while either
            arm is below the minimum sample size.
        """
        if not self.has_enough_data(experiment):
            return SignificanceResult(p_value=1.0, significant=False, stars="")

        control = experiment.results.control
        variant = experiment.results.variant
        _, p_value = chi_squared_2x2(
            _metric_count(control, metric), control.attempts,
            _metric_count(variant, metric), variant.attempts
        )

        return SignificanceResult(
            p_value=p_value,
            significant=p_value < SIGNIFICANCE_LEVEL,
            stars=significance_stars(p_value)
        )

    def winner(self, experiment: Experiment) -> WinnerRecommendation:
        """Recommend the arm to promote, guarding against winning by blocking less."""
        if not self.has_enough_data(experiment):
            return WinnerRecommendation(
                winner=Winner.INCONCLUSIVE,
                reason="Not enough data collected",
                confidence=0.0
            )

        control = experiment.results.control
        variant = experiment.results.variant

        control_fp_rate = _rate(control.false_positives, control.attempts)
        variant_fp_rate = _rate(variant.false_positives, variant.attempts)
        fp_significance = self.significance(experiment, SignificanceMetric.FALSE_POSITIVES)

        control_blocked_rate = _rate(control.blocked, control.attempts)
        variant_blocked_rate = _rate(variant.blocked, variant.attempts)

        confidence = min(MAX_REPORTED_CONFIDENCE, (1.0 - fp_significance.p_value) * 100.0)

        if variant_fp_rate < control_fp_rate and fp_significance.significant:
            if variant_blocked_rate >= control_blocked_rate * BLOCK_RATE_RETENTION:
                reduction = (control_fp_rate - variant_fp_rate) * 100.0
                return WinnerRecommendation(
                    winner=Winner.VARIANT,
                    reason=f"{reduction:.1f}% reduction in false positives with maintained security",
                    confidence=confidence
                )

        if variant_fp_rate > control_fp_rate and fp_significance.significant:
            return WinnerRecommendation(
                winner=Winner.CONTROL,
                reason="Variant increased false positives",
                confidence=confidence
            )

        return WinnerRecommendation(
            winner=Winner.INCONCLUSIVE,
            reason="No statistically significant difference detected",
            confidence=0.0
        )


def winner_arm(recommendation: WinnerRecommendation) -> Arm:
    """Arm for a decisive recommendation; raises ValueError when inconclusive."""
    if recommendation.winner == Winner.CONTROL:
        return Arm.CONTROL
    if recommendation.winner == Winner.VARIANT:
        return Arm.VARIANT
    raise ValueError("Inconclusive recommendation has no winning arm")
