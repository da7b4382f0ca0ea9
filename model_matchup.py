"""
Matchup Predictor

Two TeamAnalytics (+ season TeamStats) → MatchupPrediction.

Model
-----
Four weighted factors, all in rating units (league avg = 100):

  net_rating  w_net     · (home.net − away.net)
  matchup     w_matchup · ((home.off − away.def) − (away.off − home.def))
  momentum    w_mom     · (home.mom − away.mom) / 200 · 100
  home_court  w_home    · (home.home_adv − away.home_adv) / league_ppg · 100

total_score = sum of the four. Raw home win probability is the logistic of
total_score / logistic_scale; the calibrated probability applies the active
Platt snapshot on top. Both are kept on the prediction so retraining always
fits against raw model output.

Scores start from each side's ppg averaged with the opponent's ppg allowed,
with the home-court points added to the home side; their sum is the
predicted total. The margin is read off the published probability,
points_per_logit · logit(p) with p clipped to [0.01, 0.99], and the total is
split around it. Spread and win probability therefore always name the same
favorite, and a 50/50 game has a 0 spread.
"""

import logging
import math
from typing import Dict, List, Optional, Tuple

from model_config import LeagueBaseline, ModelWeights, get_league_baseline, normalize_sport
from model_recalibration import RecalibrationParams, apply_platt
from model_schemas import (
    AlternateSpread,
    FactorBreakdown,
    MarketOdds,
    MatchupPrediction,
    MoneylineBet,
    SpreadBet,
    TeamAnalytics,
    TeamStats,
    TotalBet,
    ValueBet,
)

log = logging.getLogger(__name__)

IMPLIED_PROB_FLOOR = 0.01


def _clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def logistic(x: float) -> float:
    # Split on sign so large |x| never overflows exp
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


# ============================================================================
# FACTORS
# ============================================================================

def compute_factors(
    home: TeamAnalytics,
    away: TeamAnalytics,
    league: LeagueBaseline,
    weights: ModelWeights,
) -> FactorBreakdown:
    net      = weights.net_rating * (home.net_rating - away.net_rating)
    matchup  = weights.matchup * (
        (home.offensive_rating - away.defensive_rating)
        - (away.offensive_rating - home.defensive_rating)
    )
    momentum = weights.momentum * ((home.momentum - away.momentum) / 200.0) * 100.0
    home_ct  = weights.home_court * (
        (home.home_advantage - away.home_advantage) / league.avg_ppg * 100.0
    )
    return FactorBreakdown(
        net_rating  = net,
        matchup     = matchup,
        momentum    = momentum,
        home_court  = home_ct,
        total_score = net + matchup + momentum + home_ct,
    )


def _key_factors(
    factors: FactorBreakdown,
    home: TeamAnalytics,
    away: TeamAnalytics,
    home_name: str,
    away_name: str,
    weights: ModelWeights,
) -> List[str]:
    """Significant factors as text, largest magnitude first."""
    ranked: List[Tuple[float, str]] = []

    if abs(factors.net_rating) > weights.net_factor_threshold:
        better = home_name if factors.net_rating > 0 else away_name
        ranked.append((abs(factors.net_rating),
                       f"{better} holds the net rating edge ({abs(factors.net_rating):.1f})"))

    if abs(factors.momentum) > weights.momentum_factor_threshold:
        hotter = home_name if factors.momentum > 0 else away_name
        ranked.append((abs(factors.momentum),
                       f"{hotter} carries stronger recent momentum"))

    shooting_gap = home.shooting_efficiency - away.shooting_efficiency
    if abs(shooting_gap) > weights.shooting_gap_threshold:
        shooter = home_name if shooting_gap > 0 else away_name
        ranked.append((abs(shooting_gap),
                       f"{shooter} shoots more efficiently ({abs(shooting_gap):.1f} pts)"))

    if factors.home_court > 0:
        ranked.append((factors.home_court, f"Home court advantage for {home_name}"))

    ranked.sort(key=lambda item: item[0], reverse=True)
    return [text for _, text in ranked]


# ============================================================================
# PREDICT
# ============================================================================

def _base_score(own_ppg: Optional[float], opp_allowed: Optional[float], league_ppg: float) -> float:
    return ((own_ppg or league_ppg) + (opp_allowed or league_ppg)) / 2.0


def implied_margin(home_win_prob: float, league: LeagueBaseline) -> float:
    """Home margin in points implied by a home win probability."""
    p = _clamp(home_win_prob, IMPLIED_PROB_FLOOR, 1.0 - IMPLIED_PROB_FLOOR)
    return league.points_per_logit * math.log(p / (1.0 - p))


def predict_matchup(
    away_analytics: TeamAnalytics,
    home_analytics: TeamAnalytics,
    away_stats: TeamStats,
    home_stats: TeamStats,
    sport: Optional[str] = None,
    weights: Optional[ModelWeights] = None,
    params: Optional[RecalibrationParams] = None,
) -> MatchupPrediction:
    """
    Predict a single game.

    ``params`` is the calibration snapshot to apply; identity or None leaves
    the raw probability untouched and ``recalibration_applied`` False.
    """
    sport   = normalize_sport(sport or home_stats.sport)
    league  = get_league_baseline(sport)
    weights = weights or ModelWeights()

    factors = compute_factors(home_analytics, away_analytics, league, weights)
    raw     = logistic(factors.total_score / weights.logistic_scale)

    applied = params is not None and not params.is_identity
    home_p  = apply_platt(raw, params) if applied else raw

    total = (_base_score(home_stats.points_per_game, away_stats.points_allowed_per_game, league.avg_ppg)
             + home_analytics.home_advantage
             + _base_score(away_stats.points_per_game, home_stats.points_allowed_per_game, league.avg_ppg))
    margin = implied_margin(home_p, league)
    home_score = round(_clamp((total + margin) / 2.0, league.score_min, league.score_max), 1)
    away_score = round(_clamp((total - margin) / 2.0, league.score_min, league.score_max), 1)

    confidence = _clamp(
        (home_analytics.consistency + away_analytics.consistency) / 2.0,
        weights.confidence_floor, weights.confidence_ceiling,
    )

    prediction = MatchupPrediction(
        home_team             = home_stats.name,
        away_team             = away_stats.name,
        sport                 = sport,
        home_win_prob         = home_p,
        away_win_prob         = 1.0 - home_p,
        home_win_prob_raw     = raw,
        recalibration_applied = applied,
        home_score            = home_score,
        away_score            = away_score,
        predicted_spread      = round(home_score - away_score, 1),
        predicted_total       = round(home_score + away_score, 1),
        confidence            = confidence,
        key_factors           = _key_factors(factors, home_analytics, away_analytics,
                                             home_stats.name, away_stats.name, weights),
        factors               = factors,
    )
    prediction.alternate_spread = calculate_alternate_spread(
        prediction.predicted_spread, home_p, confidence,
        home_stats.name, away_stats.name, league,
    )
    log.debug(
        f"{away_stats.name} @ {home_stats.name}: score={factors.total_score:+.2f} "
        f"p_raw={raw:.3f} p={home_p:.3f} {away_score}-{home_score}"
    )
    return prediction


# ============================================================================
# ALTERNATE SPREAD
# ============================================================================

def calculate_alternate_spread(
    spread: float,
    home_win_prob: float,
    confidence: float,
    home_name: str,
    away_name: str,
    league: Optional[LeagueBaseline] = None,
) -> AlternateSpread:
    """
    Suggest an alternate line around the model spread (home − away).

    Near a key number with confidence ≥ 70 the suggestion moves past it:
    buy for the favorite at ≥ 80, otherwise sell to the underdog. Away from
    key numbers, ≥ 85 buys aggressively, ≤ 65 sells safer, and the middle
    band buys or sells depending on how far the win probability is from 50%.
    """
    league    = league or get_league_baseline()
    abs_sp    = abs(spread)
    home_fav  = spread > 0
    favored   = "home" if home_fav else "away"
    underdog  = "away" if home_fav else "home"
    fav_name  = home_name if home_fav else away_name
    dog_name  = away_name if home_fav else home_name
    sign      = 1.0 if home_fav else -1.0

    near_key = next((k for k in league.key_numbers if abs(abs_sp - k) <= 0.5), None)

    if near_key is not None and confidence >= 70:
        if confidence >= 80:
            alt, direction, team = spread + sign * league.alt_step, "buy", favored
            reason   = f"High confidence pick - buy {fav_name} past key number {near_key:g}"
            alt_conf = confidence - 5
            risk     = "aggressive"
        else:
            alt, direction, team = spread - sign * league.alt_step, "sell", underdog
            reason   = f"Sell past key number {near_key:g} - take {dog_name} +{abs(alt):.1f}"
            alt_conf = confidence + 5
            risk     = "safer"
    elif confidence >= 85:
        alt, direction, team = spread + sign * league.alt_aggressive, "buy", favored
        reason   = f"Strong edge detected - consider {fav_name} -{abs(alt):.1f}"
        alt_conf = confidence - 10
        risk     = "aggressive"
    elif confidence <= 65:
        alt, direction, team = spread - sign * league.alt_safer, "sell", underdog
        reason   = f"Lower confidence game - safer to take {dog_name} +{abs(alt):.1f}"
        alt_conf = min(85.0, confidence + 10)
        risk     = "safer"
    elif abs(home_win_prob - 0.5) > 0.15:
        alt, direction, team = spread + sign * league.alt_step, "buy", favored
        reason   = f"Consider buying {fav_name} to -{abs(alt):.1f}"
        alt_conf = confidence - 3
        risk     = "standard"
    else:
        alt, direction, team = spread - sign * league.alt_step, "sell", underdog
        reason   = f"Close matchup - consider {dog_name} +{abs(alt):.1f} for safety"
        alt_conf = confidence + 3
        risk     = "safer"

    return AlternateSpread(
        spread     = round(alt * 2) / 2,
        direction  = direction,
        team       = team,
        reason     = reason,
        confidence = _clamp(alt_conf, 50.0, 95.0),
        risk_level = risk,
    )


# ============================================================================
# VALUE BETS
# ============================================================================

def implied_probability(moneyline: float) -> float:
    """American odds → implied probability in percent."""
    if moneyline < 0:
        return abs(moneyline) / (abs(moneyline) + 100.0) * 100.0
    return 100.0 / (moneyline + 100.0) * 100.0


def identify_value_bets(
    prediction: MatchupPrediction,
    odds: Optional[MarketOdds],
    weights: Optional[ModelWeights] = None,
) -> List[ValueBet]:
    """
    Compare the prediction to a market snapshot. Also stores the result on
    ``prediction.value_bets``.
    """
    weights = weights or ModelWeights()
    league  = get_league_baseline(prediction.sport)
    conf    = prediction.confidence
    bets: List[ValueBet] = []

    if odds is None:
        prediction.value_bets = bets
        return bets

    # ── Moneyline ────────────────────────────────────────────────────────────
    sides: Dict[str, Tuple[Optional[float], float]] = {
        "away": (odds.away_moneyline, prediction.away_win_prob),
        "home": (odds.home_moneyline, prediction.home_win_prob),
    }
    for side, (ml, prob) in sides.items():
        if ml is None:
            continue
        model_pct = prob * 100.0
        implied   = implied_probability(ml)
        edge      = model_pct - implied
        if edge > weights.moneyline_edge_pct:
            bets.append(MoneylineBet(
                side=side, model_prob=round(model_pct, 1), implied_prob=round(implied, 1),
                edge=round(edge, 1), confidence=min(95.0, conf + edge),
                reason=(f"Model gives {model_pct:.1f}% chance, odds imply "
                        f"{implied:.1f}% ({edge:.1f}% edge)"),
            ))

    # ── Spread (home line → market margin) ───────────────────────────────────
    if odds.spread is not None:
        market_margin = -odds.spread
        diff = abs(prediction.predicted_spread - market_margin)
        if diff > weights.spread_edge_points:
            side = "home" if prediction.predicted_spread > market_margin else "away"
            bets.append(SpreadBet(
                side=side, line=odds.spread, model_spread=prediction.predicted_spread,
                edge_points=round(diff, 1), confidence=min(90.0, conf + diff * 2),
                reason=(f"Model predicts {prediction.predicted_spread:+.1f} margin, "
                        f"line is {odds.spread:+.1f}"),
            ))

    # ── Total ────────────────────────────────────────────────────────────────
    if odds.total is not None:
        threshold = (weights.total_edge_points if weights.total_edge_points is not None
                     else league.total_edge)
        diff = prediction.predicted_total - odds.total
        if abs(diff) > threshold:
            bets.append(TotalBet(
                direction="over" if diff > 0 else "under", line=odds.total,
                model_total=prediction.predicted_total, edge_points=round(abs(diff), 1),
                confidence=min(90.0, conf + abs(diff)),
                reason=f"Model total {prediction.predicted_total:.1f} vs line {odds.total:.1f}",
            ))

    prediction.value_bets = bets
    return bets
