"""
Per-game validation records and aggregate accuracy metrics.

A ValidationRecord is one prediction scored against the final: absolute
score errors, spread/total error, winner hit and the ATS / over-under grade
when a market line exists. ``compute_validation_metrics`` rolls a list of
records up into MAE/RMSE, winner and within-N accuracy, ATS record and
probability scores (Brier, log loss).

Spread convention everywhere: predicted/actual spread is home − away;
market spread is the bookmaker home line (negative = home favored).
"""

import dataclasses
import logging
import math
from dataclasses import dataclass, asdict
from datetime import date
from typing import Dict, List, Optional, Sequence, Tuple, TypeVar, Union

import numpy as np

from model_config import MIN_TRAINING_SAMPLES, PUSH_THRESHOLD
from model_recalibration import RecalibrationParams, apply_platt, fit_platt
from model_schemas import ActualOutcome, MatchupPrediction, TrackedPrediction

log = logging.getLogger(__name__)

PROB_EPS = 1e-7

T = TypeVar("T")


# ============================================================================
# ATS / OU GRADING
# ============================================================================

def ats_cover(
    predicted_spread: float,
    market_spread: float,
    actual_margin: float,
) -> Tuple[str, float]:
    """
    (side bet, cover margin) for one game.

    The model bets home when it predicts home to win (predicted spread > 0),
    otherwise away. line = −market_spread is the home margin the market
    expects; cover > 0 means the bet side covered.
    """
    line = -market_spread
    if predicted_spread > 0:
        return "home", actual_margin - line
    return "away", line - actual_margin


def grade_cover(cover: float) -> str:
    if abs(cover) < PUSH_THRESHOLD:
        return "push"
    return "win" if cover > 0 else "loss"


def grade_total(predicted_total: float, market_total: float, actual_total: float) -> Optional[str]:
    """'win' / 'loss' for the over/under side the model leans, 'push' on the number."""
    if actual_total == market_total:
        return "push"
    if predicted_total == market_total:
        return None
    model_over  = predicted_total > market_total
    actual_over = actual_total > market_total
    return "win" if model_over == actual_over else "loss"


# ============================================================================
# RECORD
# ============================================================================

@dataclass
class ValidationRecord:
    game_id:          str
    game_date:        str
    home_team:        str
    away_team:        str
    sport:            str
    predicted_home:   float
    predicted_away:   float
    actual_home:      float
    actual_away:      float
    predicted_spread: float
    actual_spread:    float
    predicted_total:  float
    actual_total:     float
    home_win_prob:    float           # calibrated, 0..1
    actual_winner:    str             # "home" | "away"
    confidence:       float
    home_error:       float
    away_error:       float
    spread_error:     float
    total_error:      float
    winner_correct:   bool
    market_spread:    Optional[float] = None
    market_total:     Optional[float] = None
    ats_result:       Optional[str] = None    # win | loss | push
    ou_result:        Optional[str] = None

    @property
    def mean_score_error(self) -> float:
        return (self.home_error + self.away_error) / 2.0

    def to_dict(self) -> Dict:
        return asdict(self)


def validate_game_prediction(
    prediction: MatchupPrediction,
    actual: ActualOutcome,
    game_id: str = "",
    game_date: str = "",
    market_spread: Optional[float] = None,
    market_total: Optional[float] = None,
) -> ValidationRecord:
    actual_spread   = actual.margin
    predicted_total = prediction.predicted_total or (prediction.home_score + prediction.away_score)
    predicted_winner = "home" if prediction.predicted_spread > 0 else "away"

    ats = None
    if market_spread is not None:
        _, cover = ats_cover(prediction.predicted_spread, market_spread, actual_spread)
        ats = grade_cover(cover)

    ou = None
    if market_total is not None:
        ou = grade_total(predicted_total, market_total, actual.total)

    return ValidationRecord(
        game_id          = str(game_id),
        game_date        = str(game_date),
        home_team        = prediction.home_team,
        away_team        = prediction.away_team,
        sport            = prediction.sport,
        predicted_home   = prediction.home_score,
        predicted_away   = prediction.away_score,
        actual_home      = actual.home_score,
        actual_away      = actual.away_score,
        predicted_spread = prediction.predicted_spread,
        actual_spread    = actual_spread,
        predicted_total  = predicted_total,
        actual_total     = actual.total,
        home_win_prob    = prediction.home_win_prob,
        actual_winner    = actual.winner,
        confidence       = prediction.confidence,
        home_error       = abs(prediction.home_score - actual.home_score),
        away_error       = abs(prediction.away_score - actual.away_score),
        spread_error     = abs(prediction.predicted_spread - actual_spread),
        total_error      = abs(predicted_total - actual.total),
        winner_correct   = predicted_winner == actual.winner,
        market_spread    = market_spread,
        market_total     = market_total,
        ats_result       = ats,
        ou_result        = ou,
    )


def validate_tracked(tracked: TrackedPrediction) -> Optional[ValidationRecord]:
    """ValidationRecord for a validated TrackedPrediction, None otherwise."""
    if not tracked.validated or tracked.actual is None:
        return None
    return validate_game_prediction(
        tracked.prediction, tracked.actual,
        game_id=tracked.game_id, game_date=tracked.game_date,
        market_spread=tracked.market_spread, market_total=tracked.market_total,
    )


# ============================================================================
# AGGREGATE METRICS
# ============================================================================

@dataclass
class ValidationMetrics:
    game_count:        int
    mae_home:          float
    mae_away:          float
    mae_spread:        float
    mae_total:         float
    rmse_home:         float
    rmse_away:         float
    rmse_spread:       float
    winner_accuracy:   float      # %
    spread_within_3:   float      # %
    spread_within_5:   float      # %
    brier_score:       float
    log_loss:          float
    ats_wins:          int = 0
    ats_losses:        int = 0
    ats_pushes:        int = 0
    ats_win_rate:      float = 0.0
    ou_wins:           int = 0
    ou_losses:         int = 0
    ou_pushes:         int = 0

    @property
    def ats_record(self) -> str:
        return f"{self.ats_wins}-{self.ats_losses}-{self.ats_pushes}"

    def to_dict(self) -> Dict:
        return {**asdict(self), "ats_record": self.ats_record}


def _mae(values: np.ndarray) -> float:
    return float(np.mean(np.abs(values))) if len(values) else 0.0


def _rmse(values: np.ndarray) -> float:
    return float(math.sqrt(np.mean(values ** 2))) if len(values) else 0.0


def compute_validation_metrics(records: Sequence[ValidationRecord]) -> ValidationMetrics:
    n = len(records)
    if n == 0:
        return ValidationMetrics(
            game_count=0, mae_home=0.0, mae_away=0.0, mae_spread=0.0, mae_total=0.0,
            rmse_home=0.0, rmse_away=0.0, rmse_spread=0.0, winner_accuracy=0.0,
            spread_within_3=0.0, spread_within_5=0.0, brier_score=0.0, log_loss=0.0,
        )

    home_err   = np.array([r.predicted_home - r.actual_home for r in records], dtype=float)
    away_err   = np.array([r.predicted_away - r.actual_away for r in records], dtype=float)
    spread_err = np.array([r.predicted_spread - r.actual_spread for r in records], dtype=float)
    total_err  = np.array([r.predicted_total - r.actual_total for r in records], dtype=float)

    probs  = np.clip([r.home_win_prob for r in records], PROB_EPS, 1.0 - PROB_EPS)
    labels = np.array([1.0 if r.actual_winner == "home" else 0.0 for r in records])
    brier  = float(np.mean((probs - labels) ** 2))
    logl   = float(-np.mean(labels * np.log(probs) + (1.0 - labels) * np.log(1.0 - probs)))

    ats = [r.ats_result for r in records if r.ats_result]
    ou  = [r.ou_result for r in records if r.ou_result]
    ats_w, ats_l = ats.count("win"), ats.count("loss")

    metrics = ValidationMetrics(
        game_count      = n,
        mae_home        = _mae(home_err),
        mae_away        = _mae(away_err),
        mae_spread      = _mae(spread_err),
        mae_total       = _mae(total_err),
        rmse_home       = _rmse(home_err),
        rmse_away       = _rmse(away_err),
        rmse_spread     = _rmse(spread_err),
        winner_accuracy = sum(r.winner_correct for r in records) / n * 100.0,
        spread_within_3 = float(np.mean(np.abs(spread_err) <= 3.0) * 100.0),
        spread_within_5 = float(np.mean(np.abs(spread_err) <= 5.0) * 100.0),
        brier_score     = brier,
        log_loss        = logl,
        ats_wins        = ats_w,
        ats_losses      = ats_l,
        ats_pushes      = ats.count("push"),
        ats_win_rate    = ats_w / (ats_w + ats_l) * 100.0 if (ats_w + ats_l) else 0.0,
        ou_wins         = ou.count("win"),
        ou_losses       = ou.count("loss"),
        ou_pushes       = ou.count("push"),
    )
    log.info(
        f"Validation: {n} games | winner {metrics.winner_accuracy:.1f}% | "
        f"spread MAE {metrics.mae_spread:.2f} | ATS {metrics.ats_record} | "
        f"Brier {metrics.brier_score:.4f}"
    )
    return metrics


def records_from_tracked(predictions: Sequence[TrackedPrediction]) -> List[ValidationRecord]:
    out = []
    for tracked in predictions:
        record = validate_tracked(tracked)
        if record is not None:
            out.append(record)
    return out


# ============================================================================
# TIME-ORDERED SPLITS
# ============================================================================

def _day_key(item) -> str:
    return str(getattr(item, "game_date", "") or "")[:10]


def split_by_date(items: Sequence[T], cutoff: Union[str, date]) -> Tuple[List[T], List[T]]:
    """
    (train, test): games before ``cutoff`` train, games on or after it test.

    Works on anything with a ``game_date`` (TrackedPrediction,
    ValidationRecord, TrainingExample).
    """
    cut = cutoff.isoformat() if isinstance(cutoff, date) else str(cutoff)[:10]
    train = [x for x in items if _day_key(x) < cut]
    test  = [x for x in items if _day_key(x) >= cut]
    return train, test


def split_by_time_fraction(items: Sequence[T], test_fraction: float = 0.2) -> Tuple[List[T], List[T]]:
    """(train, test) with the latest ``test_fraction`` of games held out."""
    if not 0.0 <= test_fraction < 1.0:
        raise ValueError(f"test_fraction must be in [0, 1), got {test_fraction}")
    ordered = sorted(items, key=_day_key)
    n_test  = int(len(ordered) * test_fraction)
    cut     = len(ordered) - n_test
    return ordered[:cut], ordered[cut:]


# ============================================================================
# BEFORE / AFTER COMPARISON
# ============================================================================

@dataclass
class MetricsComparison:
    """``candidate − baseline`` per metric. Negative Brier/log-loss/MAE is better."""
    game_count:          int
    brier_diff:          float
    log_loss_diff:       float
    mae_spread_diff:     float
    winner_accuracy_diff: float
    baseline:            ValidationMetrics
    candidate:           ValidationMetrics

    @property
    def improved(self) -> bool:
        return self.brier_diff < 0 and self.log_loss_diff <= 0

    def to_dict(self) -> Dict:
        return {
            "game_count":           self.game_count,
            "brier_diff":           self.brier_diff,
            "log_loss_diff":        self.log_loss_diff,
            "mae_spread_diff":      self.mae_spread_diff,
            "winner_accuracy_diff": self.winner_accuracy_diff,
            "improved":             self.improved,
        }


def compare_metrics(baseline: ValidationMetrics, candidate: ValidationMetrics) -> MetricsComparison:
    return MetricsComparison(
        game_count           = candidate.game_count,
        brier_diff           = candidate.brier_score - baseline.brier_score,
        log_loss_diff        = candidate.log_loss - baseline.log_loss,
        mae_spread_diff      = candidate.mae_spread - baseline.mae_spread,
        winner_accuracy_diff = candidate.winner_accuracy - baseline.winner_accuracy,
        baseline             = baseline,
        candidate            = candidate,
    )


def holdout_recalibration_check(
    predictions: Sequence[TrackedPrediction],
    test_fraction: float = 0.2,
) -> Optional[Tuple[RecalibrationParams, MetricsComparison]]:
    """
    Fit Platt on the earlier validated games and score the later ones with
    raw vs recalibrated probabilities.

    None when the training side is below MIN_TRAINING_SAMPLES, the test side
    is empty or the fit does not converge.
    """
    validated = [p for p in predictions if p.validated and p.actual is not None]
    train, test = split_by_time_fraction(validated, test_fraction)
    if len(train) < MIN_TRAINING_SAMPLES or not test:
        log.info(f"Holdout check skipped: {len(train)} train / {len(test)} test games")
        return None

    fit = fit_platt([(p.prediction.home_win_prob_raw, p.actual.winner == "home") for p in train])
    if not fit.converged:
        log.info(f"Holdout check skipped: fit did not converge ({fit.message})")
        return None

    raw_records, cal_records = [], []
    for p in test:
        record = validate_tracked(p)
        if record is None:
            continue
        raw = p.prediction.home_win_prob_raw
        raw_records.append(dataclasses.replace(record, home_win_prob=raw))
        cal_records.append(dataclasses.replace(record, home_win_prob=apply_platt(raw, fit.params)))

    comparison = compare_metrics(compute_validation_metrics(raw_records),
                                 compute_validation_metrics(cal_records))
    log.info(
        f"Holdout ({len(train)} train / {len(test)} test): "
        f"Brier {comparison.brier_diff:+.4f}, log loss {comparison.log_loss_diff:+.4f}"
    )
    return fit.params, comparison
