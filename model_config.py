"""
Matchup model configuration shared across model_* and feed_* modules.

League baselines are per sport so the analytics and predictor never assume
college basketball scoring. Model weights are defaults, not truths: the
feedback report and recalibration are what tell us whether they hold up,
and data/model_weights.json can override any of them without a code change.
"""

import json
import logging
import os
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Dict, Optional, Tuple

log = logging.getLogger(__name__)

# Shooting-efficiency blend (FG / 3P / FT)
SHOOTING_WEIGHTS = (50.0, 30.0, 20.0)

# ── Recent-form windows ──────────────────────────────────────────────────────
MOMENTUM_WINDOW      = 5
CONSISTENCY_WINDOW   = 10
MIN_CONSISTENCY_GAMES = 3
NEUTRAL_CONSISTENCY  = 50.0

# ── Feedback loop ────────────────────────────────────────────────────────────
MIN_TRAINING_SAMPLES = 20
MIN_VARIANCE_SAMPLES = 20
VARIANCE_SAMPLE_CAP  = 500
RECALIBRATION_KEY    = "recalibration_platt"
VARIANCE_KEY         = "variance_models"

# ── ATS / juice ──────────────────────────────────────────────────────────────
WIN_PAYOUT_UNITS     = 0.91
PUSH_THRESHOLD       = 0.5
VIG_BREAK_EVEN       = 52.38


@dataclass(frozen=True)
class LeagueBaseline:
    """
    Scoring environment for one sport.

    The shooting/rebounding baselines are whole percentages and per-game
    counts for the team stats feed of that sport. Hockey and baseball feeds
    carry their nearest equivalents in the same columns (shooting %, power
    play %, penalty kill % / batting avg, on-base %, slugging %).
    """
    sport:            str
    avg_ppg:          float
    avg_pace:         float
    score_min:        float
    score_max:        float
    home_advantage:   float
    sim_floor:        float
    sim_ceiling:      float
    score_band_low:   float     # mean predicted score below this → "low"
    score_band_high:  float     # above this → "high"
    total_edge:       float     # points off the market total to flag a value bet
    avg_fg_pct:       float
    avg_three_pct:    float
    avg_ft_pct:       float
    avg_rebounds:     float
    avg_assists:      float
    avg_turnovers:    float
    points_per_logit: float     # predicted margin per unit of log-odds
    key_numbers:      Tuple[float, ...] = (3, 4, 5, 7, 10)
    alt_step:         float = 1.5
    alt_aggressive:   float = 3.0
    alt_safer:        float = 2.0


LEAGUE_BASELINES: Dict[str, LeagueBaseline] = {
    "cbb": LeagueBaseline(
        sport="cbb", avg_ppg=72.0, avg_pace=70.0,
        score_min=50.0, score_max=105.0, home_advantage=3.5,
        sim_floor=40.0, sim_ceiling=120.0,
        score_band_low=65.0, score_band_high=80.0, total_edge=5.0,
        avg_fg_pct=45.0, avg_three_pct=35.0, avg_ft_pct=72.0,
        avg_rebounds=36.0, avg_assists=12.0, avg_turnovers=12.0,
        points_per_logit=5.0,
    ),
    "nba": LeagueBaseline(
        sport="nba", avg_ppg=112.0, avg_pace=99.0,
        score_min=85.0, score_max=135.0, home_advantage=2.5,
        sim_floor=70.0, sim_ceiling=160.0,
        score_band_low=105.0, score_band_high=120.0, total_edge=6.0,
        avg_fg_pct=47.0, avg_three_pct=36.5, avg_ft_pct=78.0,
        avg_rebounds=44.0, avg_assists=26.0, avg_turnovers=14.0,
        points_per_logit=6.0,
    ),
    "nhl": LeagueBaseline(
        sport="nhl", avg_ppg=3.0, avg_pace=60.0,
        score_min=1.0, score_max=8.0, home_advantage=0.15,
        sim_floor=0.0, sim_ceiling=12.0,
        score_band_low=2.5, score_band_high=3.5, total_edge=0.75,
        avg_fg_pct=10.0, avg_three_pct=20.0, avg_ft_pct=80.0,
        avg_rebounds=30.0, avg_assists=5.0, avg_turnovers=8.0,
        points_per_logit=1.0,
        key_numbers=(1, 1.5, 2), alt_step=0.5, alt_aggressive=1.0, alt_safer=0.5,
    ),
    "mlb": LeagueBaseline(
        sport="mlb", avg_ppg=4.5, avg_pace=9.0,
        score_min=0.0, score_max=15.0, home_advantage=0.25,
        sim_floor=0.0, sim_ceiling=25.0,
        score_band_low=3.5, score_band_high=5.5, total_edge=1.0,
        avg_fg_pct=24.5, avg_three_pct=31.5, avg_ft_pct=40.0,
        avg_rebounds=8.5, avg_assists=3.0, avg_turnovers=0.6,
        points_per_logit=1.5,
        key_numbers=(1, 1.5, 2), alt_step=0.5, alt_aggressive=1.0, alt_safer=0.5,
    ),
}

DEFAULT_SPORT = "cbb"

# Provider sport keys → internal sport codes
SPORT_ALIASES: Dict[str, str] = {
    "basketball_ncaab": "cbb",
    "ncaab":            "cbb",
    "basketball_nba":   "nba",
    "icehockey_nhl":    "nhl",
    "baseball_mlb":     "mlb",
}


def normalize_sport(sport: Optional[str]) -> str:
    """Map a provider key or short code to an internal sport code."""
    if not sport:
        return DEFAULT_SPORT
    key = str(sport).strip().lower()
    key = SPORT_ALIASES.get(key, key)
    return key if key in LEAGUE_BASELINES else DEFAULT_SPORT


def get_league_baseline(sport: Optional[str] = None) -> LeagueBaseline:
    return LEAGUE_BASELINES[normalize_sport(sport)]


# ============================================================================
# MODEL WEIGHTS
# ============================================================================

@dataclass
class ModelWeights:
    """
    Tunable predictor weights.

    The four factor weights combine into total_score (rating units); the raw
    home probability is logistic(total_score / logistic_scale).
    """

    # ─── Factor weights ───
    net_rating: float = 0.40
    matchup:    float = 0.30
    momentum:   float = 0.15
    home_court: float = 0.15

    logistic_scale: float = 10.0

    # ─── Confidence bounds ───
    confidence_floor:   float = 60.0
    confidence_ceiling: float = 95.0

    # ─── Key-factor significance thresholds ───
    net_factor_threshold:      float = 5.0
    momentum_factor_threshold: float = 3.0
    shooting_gap_threshold:    float = 10.0

    # ─── Value-bet thresholds ───
    moneyline_edge_pct: float = 5.0
    spread_edge_points: float = 3.0
    # Per-sport total edge lives on LeagueBaseline; this overrides it when set
    total_edge_points:  Optional[float] = None

    def to_dict(self) -> Dict:
        return asdict(self)


MODEL_WEIGHTS_PATH = Path(os.getenv("MODEL_WEIGHTS_PATH", str(Path("data") / "model_weights.json")))


def load_model_weights(path: Optional[Path] = None) -> ModelWeights:
    """
    Defaults overlaid with data/model_weights.json when present.

    Accepts either a flat mapping or {"weights": {...}}. Unknown keys are
    ignored; a malformed file leaves the defaults in place.
    """
    path = Path(path) if path is not None else MODEL_WEIGHTS_PATH
    weights = ModelWeights()
    if not path.exists() or path.stat().st_size <= 10:
        return weights

    try:
        payload = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        log.warning(f"Ignoring unreadable weights file {path}: {exc}")
        return weights

    if isinstance(payload, dict) and isinstance(payload.get("weights"), dict):
        payload = payload["weights"]
    if not isinstance(payload, dict):
        log.warning(f"Ignoring weights file {path}: expected a JSON object")
        return weights

    known = {f.name for f in fields(ModelWeights)}
    for key, value in payload.items():
        if key not in known:
            continue
        try:
            setattr(weights, key, None if value is None else float(value))
        except (TypeError, ValueError):
            log.warning(f"Ignoring non-numeric weight {key}={value!r}")
    log.info(f"Model weights loaded from {path}")
    return weights
