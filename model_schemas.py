"""
Matchup Engine — Data Model

Single source of truth for the records that move between the analytics,
the predictor, the prediction store and the feedback loop.

  TeamStats / GameResult       inputs from the stats provider
  TeamAnalytics                derived per prediction, snapshotted for feedback
  MatchupPrediction            predictor output (raw + calibrated probability)
  MoneylineBet / SpreadBet /   value-bet tagged union (``kind`` tag)
  TotalBet
  TrackedPrediction            stored prediction + optional ActualOutcome

Percentages cross this boundary exactly once: ``Percentage.of`` accepts
fractions (0–1) or whole percentages (0–100) and always stores 0–100.

Usage:
    from model_schemas import TeamStats, MatchupPrediction

    stats = TeamStats(name="Duke", points_per_game=80.1, field_goal_pct=0.48)
    stats.field_goal_pct.value   # 48.0
"""

import dataclasses
import logging
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Union

import numpy as np

log = logging.getLogger(__name__)


def _safe_float(val, default=None) -> Optional[float]:
    try:
        v = float(val)
        return v if not np.isnan(v) else default
    except (TypeError, ValueError):
        return default


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def parse_game_date(value) -> Optional[date]:
    """YYYY-MM-DD, YYYYMMDD or any ISO datetime → date. None if unparseable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    if len(text) == 8 and text.isdigit():
        text = f"{text[:4]}-{text[4:6]}-{text[6:]}"
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        return None


# ═══════════════════════════════════════════════════════════════════════════════
# VALUE OBJECTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Percentage:
    """A shooting-style percentage, stored on the 0–100 scale."""
    value: Optional[float] = None

    @classmethod
    def of(cls, raw) -> "Percentage":
        if isinstance(raw, Percentage):
            return raw
        v = _safe_float(raw)
        if v is None or v < 0:
            return cls(None)
        return cls(v * 100.0 if v <= 1.0 else v)

    @property
    def fraction(self) -> Optional[float]:
        return None if self.value is None else self.value / 100.0

    def or_default(self, default: float) -> float:
        """Value, or ``default`` when missing or zero."""
        return self.value if self.value else default


# ═══════════════════════════════════════════════════════════════════════════════
# PROVIDER INPUTS
# ═══════════════════════════════════════════════════════════════════════════════

_PCT_FIELDS = ("field_goal_pct", "three_point_pct", "free_throw_pct")
_NUM_FIELDS = ("points_per_game", "points_allowed_per_game", "rebounds_per_game",
               "assists_per_game", "turnovers_per_game", "pace")


@dataclass(frozen=True)
class TeamStats:
    """Season aggregate for one team. Read-only snapshot from the stats provider."""
    name:                    str
    team_id:                 str = ""
    sport:                   str = "cbb"
    season:                  str = ""
    points_per_game:         Optional[float] = None
    points_allowed_per_game: Optional[float] = None
    field_goal_pct:          Percentage = field(default_factory=Percentage)
    three_point_pct:         Percentage = field(default_factory=Percentage)
    free_throw_pct:          Percentage = field(default_factory=Percentage)
    rebounds_per_game:       Optional[float] = None
    assists_per_game:        Optional[float] = None
    turnovers_per_game:      Optional[float] = None
    pace:                    Optional[float] = None

    def __post_init__(self):
        for name in _PCT_FIELDS:
            object.__setattr__(self, name, Percentage.of(getattr(self, name)))
        for name in _NUM_FIELDS:
            object.__setattr__(self, name, _safe_float(getattr(self, name)))

    @classmethod
    def build(cls, name: str, **kwargs) -> "TeamStats":
        """Keyword constructor; raw percentages (fraction or whole) are normalized."""
        return cls(name=name, **kwargs)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TeamStats":
        """Build from a CSV/dict row; unknown keys are ignored."""
        known = {f.name for f in dataclasses.fields(cls)}
        kwargs = {k: v for k, v in row.items() if k in known}
        for key in ("name", "team_id", "sport", "season"):
            if key in kwargs:
                kwargs[key] = "" if kwargs[key] is None else str(kwargs[key])
        return cls(**kwargs)


@dataclass(frozen=True)
class GameResult:
    """One completed game from a team's recent schedule."""
    home_team:  str
    away_team:  str
    home_score: float
    away_score: float
    game_date:  str = ""
    game_id:    str = ""

    @property
    def winner(self) -> str:
        """Name of the winning side (away on a tie)."""
        return self.home_team if self.home_score > self.away_score else self.away_team

    @property
    def margin(self) -> float:
        return abs(self.home_score - self.away_score)


# ═══════════════════════════════════════════════════════════════════════════════
# DERIVED ANALYTICS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class TeamAnalytics:
    """Normalized ratings and form for one side of a matchup."""
    offensive_rating:        float = 100.0    # league avg = 100
    defensive_rating:        float = 100.0
    net_rating:              float = 0.0
    momentum:                float = 0.0      # −100..100
    win_streak:              int = 0          # negative = losing streak
    recent_form:             str = ""         # oldest → newest, e.g. "W-W-L"
    last5_wins:              int = 0
    last5_losses:            int = 0
    shooting_efficiency:     float = 100.0
    three_point_threat:      float = 100.0
    free_throw_reliability:  float = 100.0
    rebounding_advantage:    float = 100.0
    assist_to_turnover:      float = 1.0
    consistency:             float = 50.0     # 0..100
    home_advantage:          float = 0.0      # points, 0 when not home

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> Optional["TeamAnalytics"]:
        if not d:
            return None
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in known})


@dataclass
class MarketOdds:
    """Market snapshot at prediction time. Spread is the home line (negative = home favored)."""
    home_moneyline: Optional[float] = None
    away_moneyline: Optional[float] = None
    spread:         Optional[float] = None
    total:          Optional[float] = None

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> Optional["MarketOdds"]:
        if not d:
            return None
        return cls(**{k: _safe_float(d.get(k)) for k in
                      ("home_moneyline", "away_moneyline", "spread", "total")})


# ═══════════════════════════════════════════════════════════════════════════════
# VALUE BETS (tagged union on ``kind``)
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class MoneylineBet:
    side:         str       # "home" | "away"
    model_prob:   float     # %
    implied_prob: float     # %
    edge:         float     # percentage points
    confidence:   float
    reason:       str
    kind:         str = field(default="moneyline", init=False)


@dataclass(frozen=True)
class SpreadBet:
    side:         str       # "home" | "away"
    line:         float     # market home line
    model_spread: float     # home − away
    edge_points:  float
    confidence:   float
    reason:       str
    kind:         str = field(default="spread", init=False)


@dataclass(frozen=True)
class TotalBet:
    direction:   str        # "over" | "under"
    line:        float
    model_total: float
    edge_points: float
    confidence:  float
    reason:      str
    kind:        str = field(default="total", init=False)


ValueBet = Union[MoneylineBet, SpreadBet, TotalBet]

VALUE_BET_TYPES = {
    "moneyline": MoneylineBet,
    "spread":    SpreadBet,
    "total":     TotalBet,
}


def value_bet_from_dict(d: Dict[str, Any]) -> ValueBet:
    kind = d.get("kind")
    bet_cls = VALUE_BET_TYPES.get(kind)
    if bet_cls is None:
        raise ValueError(f"Unknown value bet kind: {kind!r}")
    init_fields = [f.name for f in dataclasses.fields(bet_cls) if f.init]
    return bet_cls(**{k: d[k] for k in init_fields})


def describe_value_bet(bet: ValueBet) -> str:
    """Short recommendation string, e.g. 'Home -4.5' or 'Under 141.5'."""
    if isinstance(bet, MoneylineBet):
        return f"{bet.side.title()} moneyline"
    if isinstance(bet, SpreadBet):
        side_line = bet.line if bet.side == "home" else -bet.line
        return f"{bet.side.title()} {side_line:+.1f}"
    if isinstance(bet, TotalBet):
        return f"{bet.direction.title()} {bet.line:.1f}"
    raise TypeError(f"Unknown value bet type: {type(bet).__name__}")


# ═══════════════════════════════════════════════════════════════════════════════
# PREDICTION
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class AlternateSpread:
    spread:     float
    direction:  str      # "buy" | "sell"
    team:       str      # "home" | "away"
    reason:     str
    confidence: float
    risk_level: str      # "safer" | "standard" | "aggressive"


@dataclass
class FactorBreakdown:
    """Weighted terms behind total_score (rating units)."""
    net_rating:  float = 0.0
    matchup:     float = 0.0
    momentum:    float = 0.0
    home_court:  float = 0.0
    total_score: float = 0.0


@dataclass
class MatchupPrediction:
    home_team:             str
    away_team:             str
    sport:                 str
    home_win_prob:         float          # calibrated, 0..1
    away_win_prob:         float
    home_win_prob_raw:     float          # pre-calibration, used for retraining
    recalibration_applied: bool
    home_score:            float
    away_score:            float
    predicted_spread:      float          # home − away, positive = home favored
    predicted_total:       float
    confidence:            float          # 0..100
    key_factors:           List[str] = field(default_factory=list)
    value_bets:            List[ValueBet] = field(default_factory=list)
    alternate_spread:      Optional[AlternateSpread] = None
    factors:               FactorBreakdown = field(default_factory=FactorBreakdown)

    @property
    def win_probability(self) -> Dict[str, float]:
        return {"home": self.home_win_prob, "away": self.away_win_prob}

    @property
    def predicted_score(self) -> Dict[str, float]:
        return {"home": self.home_score, "away": self.away_score}

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MatchupPrediction":
        d = dict(d)
        d["value_bets"] = [value_bet_from_dict(b) for b in d.get("value_bets") or []]
        alt = d.get("alternate_spread")
        d["alternate_spread"] = AlternateSpread(**alt) if alt else None
        d["factors"] = FactorBreakdown(**(d.get("factors") or {}))
        d["key_factors"] = list(d.get("key_factors") or [])
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in known})


# ═══════════════════════════════════════════════════════════════════════════════
# TRACKING
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ActualOutcome:
    home_score:  float
    away_score:  float
    recorded_at: str = ""

    @property
    def winner(self) -> str:
        return "home" if self.home_score > self.away_score else "away"

    @property
    def margin(self) -> float:
        return self.home_score - self.away_score

    @property
    def total(self) -> float:
        return self.home_score + self.away_score

    def to_dict(self) -> Dict:
        return {**asdict(self), "winner": self.winner}

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> Optional["ActualOutcome"]:
        if not d:
            return None
        return cls(
            home_score  = float(d["home_score"]),
            away_score  = float(d["away_score"]),
            recorded_at = str(d.get("recorded_at") or ""),
        )


@dataclass
class TrackedPrediction:
    """
    A stored prediction. Identity is (game_id, predicted_at); ``id`` is the
    store key. Moves from unvalidated to validated exactly once.
    """
    id:             str
    game_id:        str
    game_date:      str          # YYYY-MM-DD
    home_team:      str
    away_team:      str
    sport:          str
    predicted_at:   str
    prediction:     MatchupPrediction
    odds:           Optional[MarketOdds] = None
    home_analytics: Optional[TeamAnalytics] = None
    away_analytics: Optional[TeamAnalytics] = None
    closing_spread: Optional[float] = None
    closing_total:  Optional[float] = None
    actual:         Optional[ActualOutcome] = None
    validated:      bool = False

    def __post_init__(self):
        if self.validated != (self.actual is not None):
            raise ValueError(
                f"Prediction {self.id}: validated={self.validated} but "
                f"actual outcome is {'missing' if self.actual is None else 'present'}"
            )

    @property
    def game_day(self) -> Optional[date]:
        return parse_game_date(self.game_date)

    @property
    def market_spread(self) -> Optional[float]:
        """Closing home line when known, else the line at prediction time."""
        if self.closing_spread is not None:
            return self.closing_spread
        return self.odds.spread if self.odds else None

    @property
    def market_total(self) -> Optional[float]:
        if self.closing_total is not None:
            return self.closing_total
        return self.odds.total if self.odds else None

    def with_outcome(self, home_score: float, away_score: float,
                     recorded_at: Optional[str] = None) -> "TrackedPrediction":
        if self.validated:
            raise ValueError(f"Prediction {self.id} is already validated")
        outcome = ActualOutcome(float(home_score), float(away_score), recorded_at or utc_now_iso())
        return dataclasses.replace(self, actual=outcome, validated=True)

    def to_dict(self) -> Dict:
        return {
            "id":             self.id,
            "game_id":        self.game_id,
            "game_date":      self.game_date,
            "home_team":      self.home_team,
            "away_team":      self.away_team,
            "sport":          self.sport,
            "predicted_at":   self.predicted_at,
            "prediction":     self.prediction.to_dict(),
            "odds":           self.odds.to_dict() if self.odds else None,
            "home_analytics": self.home_analytics.to_dict() if self.home_analytics else None,
            "away_analytics": self.away_analytics.to_dict() if self.away_analytics else None,
            "closing_spread": self.closing_spread,
            "closing_total":  self.closing_total,
            "actual":         self.actual.to_dict() if self.actual else None,
            "validated":      self.validated,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TrackedPrediction":
        actual = ActualOutcome.from_dict(d.get("actual"))
        return cls(
            id             = str(d["id"]),
            game_id        = str(d["game_id"]),
            game_date      = str(d.get("game_date") or ""),
            home_team      = str(d.get("home_team") or ""),
            away_team      = str(d.get("away_team") or ""),
            sport          = str(d.get("sport") or ""),
            predicted_at   = str(d.get("predicted_at") or ""),
            prediction     = MatchupPrediction.from_dict(d["prediction"]),
            odds           = MarketOdds.from_dict(d.get("odds")),
            home_analytics = TeamAnalytics.from_dict(d.get("home_analytics")),
            away_analytics = TeamAnalytics.from_dict(d.get("away_analytics")),
            closing_spread = _safe_float(d.get("closing_spread")),
            closing_total  = _safe_float(d.get("closing_total")),
            actual         = actual,
            validated      = actual is not None,
        )
