"""
Training examples from validated predictions.

One TrainingExample per validated TrackedPrediction: the model inputs
(calibrated and raw probability, factor terms, confidence), the market
context, the labels and errors, and the per-team analytics snapshot taken
when the prediction was made. Examples are rebuilt on demand; nothing here
is persisted.
"""

import logging
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Sequence

import pandas as pd

from model_schemas import TeamAnalytics, TrackedPrediction

log = logging.getLogger(__name__)

SPORT_CODES = {"cbb": 0, "nba": 1, "nhl": 2, "mlb": 3}

# TeamAnalytics fields exported per side as home_<name> / away_<name>
ANALYTICS_FEATURES = (
    "offensive_rating",
    "defensive_rating",
    "net_rating",
    "momentum",
    "win_streak",
    "last5_wins",
    "shooting_efficiency",
    "three_point_threat",
    "free_throw_reliability",
    "rebounding_advantage",
    "assist_to_turnover",
    "consistency",
)
# home − away
DIFF_FEATURES = ("net_rating", "momentum", "shooting_efficiency")


@dataclass
class TrainingExample:
    id:                str
    game_id:           str
    game_date:         str
    sport:             str
    sport_code:        int

    # ─── Model inputs ───
    home_win_prob:     float
    home_win_prob_raw: float
    total_score:       float
    net_rating_term:   float
    matchup_term:      float
    momentum_term:     float
    home_court_term:   float
    confidence:        float
    predicted_spread:  float
    predicted_total:   float

    # ─── Market ───
    market_spread:     Optional[float]
    market_total:      Optional[float]

    # ─── Labels ───
    actual_home_win:   int
    actual_spread:     float
    actual_total:      float
    actual_home_score: float
    actual_away_score: float
    spread_error:      float
    total_error:       float

    # ─── Derived ───
    home_favorite:     int
    spread_magnitude:  float
    spread_diff:       Optional[float]

    team_features:     Dict[str, Optional[float]] = field(default_factory=dict)

    def feature(self, name: str) -> Optional[float]:
        """Value of a top-level or team feature by name, None when absent."""
        if name in self.team_features:
            return self.team_features[name]
        value = getattr(self, name, None)
        return value if isinstance(value, (int, float)) and not isinstance(value, bool) else None

    def to_dict(self) -> Dict:
        d = asdict(self)
        d.update(d.pop("team_features"))
        return d


def _team_features(home: Optional[TeamAnalytics],
                   away: Optional[TeamAnalytics]) -> Dict[str, Optional[float]]:
    out: Dict[str, Optional[float]] = {}
    for name in ANALYTICS_FEATURES:
        out[f"home_{name}"] = float(getattr(home, name)) if home is not None else None
        out[f"away_{name}"] = float(getattr(away, name)) if away is not None else None
    for name in DIFF_FEATURES:
        h, a = out[f"home_{name}"], out[f"away_{name}"]
        out[f"{name}_diff"] = h - a if h is not None and a is not None else None
    return out


def extract_features(tracked: TrackedPrediction) -> Optional[TrainingExample]:
    """TrainingExample for a validated prediction, None when unvalidated."""
    if not tracked.validated or tracked.actual is None:
        return None

    pred   = tracked.prediction
    actual = tracked.actual
    market_spread = tracked.market_spread
    predicted_total = pred.predicted_total or (pred.home_score + pred.away_score)

    return TrainingExample(
        id                = tracked.id,
        game_id           = tracked.game_id,
        game_date         = tracked.game_date,
        sport             = tracked.sport or "unknown",
        sport_code        = SPORT_CODES.get(tracked.sport, -1),
        home_win_prob     = pred.home_win_prob,
        home_win_prob_raw = pred.home_win_prob_raw,
        total_score       = pred.factors.total_score,
        net_rating_term   = pred.factors.net_rating,
        matchup_term      = pred.factors.matchup,
        momentum_term     = pred.factors.momentum,
        home_court_term   = pred.factors.home_court,
        confidence        = pred.confidence,
        predicted_spread  = pred.predicted_spread,
        predicted_total   = predicted_total,
        market_spread     = market_spread,
        market_total      = tracked.market_total,
        actual_home_win   = 1 if actual.winner == "home" else 0,
        actual_spread     = actual.margin,
        actual_total      = actual.total,
        actual_home_score = actual.home_score,
        actual_away_score = actual.away_score,
        spread_error      = abs(pred.predicted_spread - actual.margin),
        total_error       = abs(predicted_total - actual.total),
        home_favorite     = 1 if pred.predicted_spread > 0 else 0,
        spread_magnitude  = abs(pred.predicted_spread),
        spread_diff       = (pred.predicted_spread - (-market_spread)
                             if market_spread is not None else None),
        team_features     = _team_features(tracked.home_analytics, tracked.away_analytics),
    )


def build_training_examples(predictions: Sequence[TrackedPrediction]) -> List[TrainingExample]:
    examples = [ex for ex in (extract_features(p) for p in predictions) if ex is not None]
    log.info(f"Training examples: {len(examples)} of {len(predictions)} predictions validated")
    return examples


def examples_to_frame(examples: Sequence[TrainingExample]) -> pd.DataFrame:
    """One row per example, team features flattened into columns."""
    if not examples:
        return pd.DataFrame()
    return pd.DataFrame([ex.to_dict() for ex in examples])
