"""
Variance Estimator

Score-prediction error variance, split into tiers so the Monte Carlo
simulator can widen or tighten its distributions per game:

  quality  by |predicted spread|   > 10 elite, > 5 good, > 2 average, else poor
  matchup  by |predicted spread|   > 15 blowout, > 5 competitive, else close
  score    by mean predicted score against the sport's low/high bands

Per-game error is the mean of the absolute home and away score errors. A
tier variance is the population variance of the errors that land in it;
an empty tier inherits the base (all-game) variance.

With fewer than MIN_VARIANCE_SAMPLES records the default model is returned,
scaled for the sport's scoring level.
"""

import logging
import math
from dataclasses import dataclass, field, asdict
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np

from model_config import (
    MIN_VARIANCE_SAMPLES,
    VARIANCE_KEY,
    VARIANCE_SAMPLE_CAP,
    get_league_baseline,
    normalize_sport,
)
from model_matchup import predict_matchup
from model_schemas import ActualOutcome, GameResult, TeamStats, TrackedPrediction, utc_now_iso
from model_team_analytics import calculate_team_analytics
from model_validation import ValidationRecord, records_from_tracked, validate_game_prediction

log = logging.getLogger(__name__)

# Blend of tier variances for a single prediction
QUALITY_WEIGHT = 0.4
MATCHUP_WEIGHT = 0.3
SCORE_WEIGHT   = 0.3

DEFAULT_BASE_VARIANCE = 64.0
DEFAULT_QUALITY  = {"elite": 49.0, "good": 64.0, "average": 81.0, "poor": 100.0}
DEFAULT_MATCHUP  = {"blowout": 64.0, "competitive": 81.0, "close": 100.0}
DEFAULT_SCORE    = {"low": 81.0, "medium": 64.0, "high": 49.0}
CBB_REFERENCE_PPG = 72.0


@dataclass
class VarianceModel:
    base_variance:       float
    variance_by_quality: Dict[str, float] = field(default_factory=dict)
    variance_by_matchup: Dict[str, float] = field(default_factory=dict)
    variance_by_score:   Dict[str, float] = field(default_factory=dict)
    home_team_variance:  float = 1.0
    sport:               str = "cbb"
    version:             str = "default"
    n_samples:           int = 0
    estimated_at:        str = ""

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict) -> "VarianceModel":
        return cls(**d)


def default_variance_model(sport: Optional[str] = None) -> VarianceModel:
    """CBB-calibrated defaults, scaled by (league ppg / 72)² for other sports."""
    league = get_league_baseline(sport)
    scale  = (league.avg_ppg / CBB_REFERENCE_PPG) ** 2
    return VarianceModel(
        base_variance       = DEFAULT_BASE_VARIANCE * scale,
        variance_by_quality = {k: v * scale for k, v in DEFAULT_QUALITY.items()},
        variance_by_matchup = {k: v * scale for k, v in DEFAULT_MATCHUP.items()},
        variance_by_score   = {k: v * scale for k, v in DEFAULT_SCORE.items()},
        sport               = league.sport,
        version             = "default",
        estimated_at        = utc_now_iso(),
    )


# ============================================================================
# TIERS
# ============================================================================

def quality_tier(abs_spread: float) -> str:
    if abs_spread > 10:
        return "elite"
    if abs_spread > 5:
        return "good"
    if abs_spread > 2:
        return "average"
    return "poor"


def matchup_tier(abs_spread: float) -> str:
    if abs_spread > 15:
        return "blowout"
    if abs_spread > 5:
        return "competitive"
    return "close"


def score_tier(avg_score: float, sport: Optional[str] = None) -> str:
    league = get_league_baseline(sport)
    if avg_score < league.score_band_low:
        return "low"
    if avg_score <= league.score_band_high:
        return "medium"
    return "high"


# ============================================================================
# ESTIMATION
# ============================================================================

def _population_variance(values: List[float], default: float) -> float:
    if not values:
        return default
    return float(np.var(np.asarray(values, dtype=float)))


def estimate_variance_model(
    records: Sequence[ValidationRecord],
    sport: Optional[str] = None,
    version: str = "validated",
) -> VarianceModel:
    """Tiered variance from ValidationRecords (the 500 most recent are used)."""
    sport = normalize_sport(sport)
    recent = sorted(records, key=lambda r: r.game_date, reverse=True)[:VARIANCE_SAMPLE_CAP]

    if len(recent) < MIN_VARIANCE_SAMPLES:
        log.info(f"Variance: {len(recent)} records < {MIN_VARIANCE_SAMPLES} — using default model")
        return default_variance_model(sport)

    quality: Dict[str, List[float]] = {k: [] for k in DEFAULT_QUALITY}
    matchup: Dict[str, List[float]] = {k: [] for k in DEFAULT_MATCHUP}
    score:   Dict[str, List[float]] = {k: [] for k in DEFAULT_SCORE}
    errors:  List[float] = []

    for r in recent:
        err = r.mean_score_error
        abs_spread = abs(r.predicted_spread)
        errors.append(err)
        quality[quality_tier(abs_spread)].append(err)
        matchup[matchup_tier(abs_spread)].append(err)
        score[score_tier((r.predicted_home + r.predicted_away) / 2.0, sport)].append(err)

    base = _population_variance(errors, 0.0)
    model = VarianceModel(
        base_variance       = base,
        variance_by_quality = {k: _population_variance(v, base) for k, v in quality.items()},
        variance_by_matchup = {k: _population_variance(v, base) for k, v in matchup.items()},
        variance_by_score   = {k: _population_variance(v, base) for k, v in score.items()},
        sport               = sport,
        version             = version,
        n_samples           = len(recent),
        estimated_at        = utc_now_iso(),
    )
    log.info(
        f"Variance model ({version}) from {len(recent)} games: "
        f"base {base:.2f} (sd {math.sqrt(base):.2f})"
    )
    return model


def estimate_from_tracked(
    predictions: Sequence[TrackedPrediction],
    sport: Optional[str] = None,
) -> VarianceModel:
    """Estimate from validated predictions; unvalidated ones are ignored."""
    records = records_from_tracked(predictions)
    if sport is None and records:
        sport = records[0].sport
    return estimate_variance_model(records, sport, version="validated")


# ============================================================================
# PERSISTENCE
# ============================================================================

def estimate_by_sport(predictions: Sequence[TrackedPrediction]) -> Dict[str, VarianceModel]:
    """
    One model per sport from validated predictions. Sports below
    MIN_VARIANCE_SAMPLES are left out so they keep the default model.
    """
    grouped: Dict[str, List[TrackedPrediction]] = {}
    for p in predictions:
        if p.validated:
            grouped.setdefault(normalize_sport(p.sport), []).append(p)
    models = {}
    for sport, group in sorted(grouped.items()):
        model = estimate_from_tracked(group, sport)
        if model.version != "default":
            models[sport] = model
    return models


def save_variance_models(kv_store, models: Mapping[str, VarianceModel]) -> None:
    """Merge ``models`` into the stored per-sport table."""
    if not models:
        return
    stored = kv_store.get(VARIANCE_KEY) or {}
    if not isinstance(stored, dict):
        stored = {}
    stored.update({sport: model.to_dict() for sport, model in models.items()})
    kv_store.set(VARIANCE_KEY, stored)
    log.info(f"Saved {VARIANCE_KEY}: {', '.join(sorted(models))}")


def load_variance_model(kv_store, sport: Optional[str] = None) -> VarianceModel:
    """Stored model for ``sport``, or the default when absent or malformed."""
    sport = normalize_sport(sport)
    stored = kv_store.get(VARIANCE_KEY) if kv_store is not None else None
    value = stored.get(sport) if isinstance(stored, dict) else None
    if value is None:
        return default_variance_model(sport)
    try:
        return VarianceModel.from_dict(value)
    except TypeError as exc:
        log.warning(f"Malformed {VARIANCE_KEY}[{sport}]: {exc} — using default model")
        return default_variance_model(sport)


StatsLookup = Union[Mapping[str, TeamStats], Callable[[str], Optional[TeamStats]]]


def estimate_from_history(
    games: Sequence[GameResult],
    stats_lookup: StatsLookup,
    sport: Optional[str] = None,
) -> VarianceModel:
    """
    Backtest-style estimate: re-predict each completed game from season stats
    (no recent form) and score it against the final.
    """
    lookup = stats_lookup.get if isinstance(stats_lookup, Mapping) else stats_lookup
    recent = sorted(games, key=lambda g: g.game_date, reverse=True)[:VARIANCE_SAMPLE_CAP]

    records: List[ValidationRecord] = []
    skipped = 0
    for game in recent:
        home_stats = lookup(game.home_team)
        away_stats = lookup(game.away_team)
        if home_stats is None or away_stats is None:
            skipped += 1
            continue
        home_analytics = calculate_team_analytics(home_stats, [], is_home=True)
        away_analytics = calculate_team_analytics(away_stats, [], is_home=False)
        prediction = predict_matchup(away_analytics, home_analytics, away_stats, home_stats,
                                     sport=sport)
        records.append(validate_game_prediction(
            prediction, ActualOutcome(game.home_score, game.away_score),
            game_id=game.game_id, game_date=game.game_date,
        ))

    if skipped:
        log.info(f"Variance history: skipped {skipped} games without stats for both teams")
    return estimate_variance_model(records, sport, version="historical")


# ============================================================================
# LOOKUP
# ============================================================================

def variance_for_prediction(
    model: VarianceModel,
    home_score: float,
    away_score: float,
    spread: float,
) -> float:
    abs_spread = abs(spread)
    avg_score  = (home_score + away_score) / 2.0
    base       = model.base_variance
    q = model.variance_by_quality.get(quality_tier(abs_spread), base)
    m = model.variance_by_matchup.get(matchup_tier(abs_spread), base)
    s = model.variance_by_score.get(score_tier(avg_score, model.sport), base)
    return QUALITY_WEIGHT * q + MATCHUP_WEIGHT * m + SCORE_WEIGHT * s


def std_dev_for_prediction(
    model: VarianceModel,
    home_score: float,
    away_score: float,
    spread: float,
) -> float:
    return math.sqrt(max(0.0, variance_for_prediction(model, home_score, away_score, spread)))
