"""
Monte Carlo score simulation.

Draws n independent home/away scores from normals centred on the predicted
score, with standard deviations taken from the variance model, clips them
to the sport's simulation bounds and summarises the resulting home, away,
spread and total distributions.

A seed makes the run bit-identical for the same inputs.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Dict, Optional, Tuple

import numpy as np

from model_config import get_league_baseline
from model_schemas import MatchupPrediction
from model_variance import VarianceModel, std_dev_for_prediction

log = logging.getLogger(__name__)

DEFAULT_SIMULATIONS = 10_000


@dataclass
class DistributionStats:
    mean:   float
    median: float
    std:    float
    min:    float
    max:    float
    p10:    float
    p25:    float
    p75:    float
    p90:    float

    @property
    def ci80(self) -> Tuple[float, float]:
        return self.p10, self.p90


@dataclass
class SimulationResult:
    home_score:       DistributionStats
    away_score:       DistributionStats
    spread:           DistributionStats
    total:            DistributionStats
    home_win_prob:    float
    away_win_prob:    float
    n_simulations:    int
    home_sd:          float
    away_sd:          float
    seed:             Optional[int] = None

    @property
    def confidence_intervals(self) -> Dict[str, Tuple[float, float]]:
        """80% intervals (p10–p90) per metric."""
        return {
            "home_score": self.home_score.ci80,
            "away_score": self.away_score.ci80,
            "spread":     self.spread.ci80,
            "total":      self.total.ci80,
        }

    def to_dict(self) -> Dict:
        return {**asdict(self), "confidence_intervals": self.confidence_intervals}


def _describe(values: np.ndarray) -> DistributionStats:
    v = np.sort(values)
    n = len(v)
    return DistributionStats(
        mean   = float(v.mean()),
        median = float(v[n // 2]),
        std    = float(v.std()),
        min    = float(v[0]),
        max    = float(v[-1]),
        p10    = float(v[int(n * 0.10)]),
        p25    = float(v[int(n * 0.25)]),
        p75    = float(v[int(n * 0.75)]),
        p90    = float(v[int(n * 0.90)]),
    )


def simulate(
    prediction: MatchupPrediction,
    variance_model: VarianceModel,
    n: int = DEFAULT_SIMULATIONS,
    seed: Optional[int] = None,
    score_floor: Optional[float] = None,
    score_ceiling: Optional[float] = None,
) -> SimulationResult:
    """
    Simulate ``n`` games around ``prediction``.

    Bounds default to the sport's simulation floor/ceiling.
    """
    if n < 1:
        raise ValueError(f"Simulation count must be at least 1, got {n}")

    league  = get_league_baseline(prediction.sport)
    floor   = league.sim_floor if score_floor is None else score_floor
    ceiling = league.sim_ceiling if score_ceiling is None else score_ceiling

    home_mean, away_mean = prediction.home_score, prediction.away_score
    spread = prediction.predicted_spread
    home_sd = std_dev_for_prediction(variance_model, home_mean, away_mean, spread)
    away_sd = std_dev_for_prediction(variance_model, home_mean, away_mean, -spread)

    rng  = np.random.default_rng(seed)
    home = np.clip(rng.normal(home_mean, home_sd, size=n), floor, ceiling)
    away = np.clip(rng.normal(away_mean, away_sd, size=n), floor, ceiling)

    home_win = float(np.mean(home > away))

    result = SimulationResult(
        home_score    = _describe(home),
        away_score    = _describe(away),
        spread        = _describe(home - away),
        total         = _describe(home + away),
        home_win_prob = home_win,
        away_win_prob = 1.0 - home_win,
        n_simulations = n,
        home_sd       = home_sd,
        away_sd       = away_sd,
        seed          = seed,
    )
    log.debug(
        f"Simulated {n} × {prediction.away_team} @ {prediction.home_team}: "
        f"home win {home_win:.3f}, spread 80% CI {result.spread.p10:.1f}..{result.spread.p90:.1f}"
    )
    return result


# ============================================================================
# FORMATTING
# ============================================================================

def format_score_range(result: SimulationResult, side: str) -> str:
    """Interquartile score range, e.g. '68-82 points'."""
    stats = result.home_score if side == "home" else result.away_score
    return f"{stats.p25:.0f}-{stats.p75:.0f} points"


def format_confidence_interval(result: SimulationResult, metric: str) -> str:
    lower, upper = result.confidence_intervals[metric]
    if metric == "spread":
        return f"{lower:+.0f} to {upper:+.0f}"
    return f"{lower:.0f} to {upper:.0f}"
