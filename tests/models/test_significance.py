"""
Experiment Analysis Tests

Chi-squared approximation, significance gating on sample size and winner
selection.
"""

import math

import pytest

from core.models.significance import (
    ExperimentAnalyzer,
    chi_squared_2x2,
    chi_squared_cdf_1dof,
    normal_cdf,
    significance_stars,
    winner_arm,
)
from core.schemas.inputs import Arm, SignificanceMetric, ThresholdConfig
from core.schemas.outputs import (
    Experiment,
    ExperimentResults,
    ExperimentVariants,
    VariantStats,
    Winner,
    WinnerRecommendation,
)


def make_experiment(control: VariantStats, variant: VariantStats, min_sample_size: int = 50) -> Experiment:
    return Experiment(
        id="exp-1",
        name="Looser thresholds",
        start_date=0.0,
        variants=ExperimentVariants(
            control=ThresholdConfig(challenge=35, block=60),
            variant=ThresholdConfig(challenge=45, block=65),
        ),
        traffic_split=50,
        min_sample_size=min_sample_size,
        results=ExperimentResults(control=control, variant=variant),
    )


@pytest.fixture
def analyzer():
    return ExperimentAnalyzer()


# =============================================================================
# Distribution Helpers
# =============================================================================

class TestDistribution:
    """Approximate normal and chi-squared CDFs."""

    def test_normal_cdf_reference_points(self):
        assert normal_cdf(0.0) == pytest.approx(0.5, abs=1e-7)
        assert normal_cdf(1.959964) == pytest.approx(0.975, abs=1e-6)
        assert normal_cdf(-1.959964) == pytest.approx(0.025, abs=1e-6)

    def test_normal_cdf_is_symmetric(self):
        for x in (0.3, 1.0, 2.5):
            assert normal_cdf(x) + normal_cdf(-x) == pytest.approx(1.0, abs=1e-7)

    def test_chi_squared_cdf_edges(self):
        assert chi_squared_cdf_1dof(0.0) == 0.0
        assert chi_squared_cdf_1dof(-1.0) == 0.0
        assert chi_squared_cdf_1dof(101.0) == 1.0

    def test_chi_squared_critical_value(self):
        # 3.841 is the 95th percentile of chi-squared with 1 dof
        assert chi_squared_cdf_1dof(3.841459) == pytest.approx(0.95, abs=1e-6)


class TestChiSquared2x2:
    """Pooled-rate statistic for two proportions."""

    def test_two_versus_zero_is_chi_squared_two(self):
        chi2, p = chi_squared_2x2(2, 60, 0, 60)
        assert chi2 == pytest.approx(2.0)
        assert p == pytest.approx(0.1573, abs=1e-3)

    def test_twelve_versus_zero(self):
        chi2, p = chi_squared_2x2(12, 60, 0, 60)
        assert chi2 == pytest.approx(12.0)
        assert p < 0.001

    def test_identical_rates(self):
        chi2, p = chi_squared_2x2(10, 100, 10, 100)
        assert chi2 == pytest.approx(0.0)
        assert p == 1.0

    def test_all_zero_counts(self):
        assert chi_squared_2x2(0, 60, 0, 60) == (0.0, 1.0)

    def test_empty_arms(self):
        assert chi_squared_2x2(0, 0, 0, 0) == (0.0, 1.0)

    def test_p_value_in_unit_interval(self):
        _, p = chi_squared_2x2(60, 60, 0, 60)
        assert 0.0 <= p <= 1.0
        assert math.isclose(p, 0.0, abs_tol=1e-12)

    @pytest.mark.parametrize("p,stars", [
        (0.001, "***"),
        (0.03, "**"),
        (0.07, "*"),
        (0.5, ""),
    ])
    def test_stars(self, p, stars):
        assert significance_stars(p) == stars


# =============================================================================
# Analyzer
# =============================================================================

class TestSignificance:
    """Significance is withheld until both arms reach the minimum sample."""

    def test_insufficient_sample_is_never_significant(self, analyzer):
        experiment = make_experiment(
            VariantStats(attempts=49, false_positives=49),
            VariantStats(attempts=100, false_positives=0),
        )
        result = analyzer.significance(experiment, SignificanceMetric.FALSE_POSITIVES)

        assert result.significant is False
        assert result.p_value == 1.0

    def test_significant_difference(self, analyzer):
        experiment = make_experiment(
            VariantStats(attempts=60, false_positives=12),
            VariantStats(attempts=60, false_positives=0),
        )
        result = analyzer.significance(experiment, SignificanceMetric.FALSE_POSITIVES)

        assert result.significant is True
        assert result.stars == "***"

    def test_metric_selects_counter(self, analyzer):
        experiment = make_experiment(
            VariantStats(attempts=60, blocked=20, false_positives=12),
            VariantStats(attempts=60, blocked=20, false_positives=0),
        )
        result = analyzer.significance(experiment, SignificanceMetric.BLOCKED)
        assert result.significant is False


class TestWinner:
    """Winner selection guards against winning by blocking less."""

    def test_not_enough_data(self, analyzer):
        experiment = make_experiment(VariantStats(attempts=10), VariantStats(attempts=10))
        rec = analyzer.winner(experiment)

        assert rec.winner == Winner.INCONCLUSIVE
        assert rec.reason == "Not enough data collected"
        assert rec.confidence == 0

    def test_variant_wins_with_maintained_blocking(self, analyzer):
        experiment = make_experiment(
            VariantStats(attempts=60, blocked=20, false_positives=12),
            VariantStats(attempts=60, blocked=20, false_positives=0),
        )
        rec = analyzer.winner(experiment)

        assert rec.winner == Winner.VARIANT
        assert rec.reason == "20.0% reduction in false positives with maintained security"
        assert rec.confidence == 95

    def test_variant_that_blocks_too_little_does_not_win(self, analyzer):
        experiment = make_experiment(
            VariantStats(attempts=60, blocked=20, false_positives=12),
            VariantStats(attempts=60, blocked=10, false_positives=0),
        )
        assert analyzer.winner(experiment).winner == Winner.INCONCLUSIVE

    def test_control_wins_when_variant_adds_false_positives(self, analyzer):
        experiment = make_experiment(
            VariantStats(attempts=60, blocked=20, false_positives=0),
            VariantStats(attempts=60, blocked=20, false_positives=12),
        )
        rec = analyzer.winner(experiment)

        assert rec.winner == Winner.CONTROL
        assert rec.reason == "Variant increased false positives"

    def test_small_difference_is_inconclusive(self, analyzer):
        experiment = make_experiment(
            VariantStats(attempts=60, blocked=20, false_positives=2),
            VariantStats(attempts=60, blocked=20, false_positives=0),
        )
        rec = analyzer.winner(experiment)

        assert rec.winner == Winner.INCONCLUSIVE
        assert rec.reason == "No statistically significant difference detected"


class TestWinnerArm:

    def test_decisive(self):
        rec = WinnerRecommendation(winner=Winner.VARIANT, reason="", confidence=95)
        assert winner_arm(rec) == Arm.VARIANT

    def test_inconclusive_raises(self):
        rec = WinnerRecommendation(winner=Winner.INCONCLUSIVE, reason="", confidence=0)
        with pytest.raises(ValueError):
            winner_arm(rec)
