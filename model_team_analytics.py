"""
Team Analytics Calculator

TeamStats + recent GameResults → TeamAnalytics.

Ratings are relative to the sport's league average (= 100) so the same
predictor works for college hoops, the NBA, hockey and baseball. Recent form
only looks at the first few games of the list (most recent first): 5 for
momentum, streak and form, 10 for consistency.

Missing data never raises. No recent games means momentum 0, an empty form
string and neutral consistency; missing shooting numbers fall back to the
league baseline.
"""

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from feed_team_matcher import side_of
from model_config import (
    CONSISTENCY_WINDOW,
    MIN_CONSISTENCY_GAMES,
    MOMENTUM_WINDOW,
    NEUTRAL_CONSISTENCY,
    SHOOTING_WEIGHTS,
    LeagueBaseline,
    get_league_baseline,
)
from model_schemas import GameResult, TeamAnalytics, TeamStats

log = logging.getLogger(__name__)


def safe_div(num: float, den: float, default: float = 0.0) -> float:
    return num / den if den > 0 else default


# ============================================================================
# RATINGS
# ============================================================================

def relative_rating(points: Optional[float], league_avg_ppg: float) -> float:
    """Points per game relative to league average, scaled so average = 100."""
    if points is None or points <= 0:
        return 100.0
    return safe_div(points, league_avg_ppg, 1.0) * 100.0


def shooting_efficiency(stats: TeamStats, league: Optional[LeagueBaseline] = None) -> float:
    """FG/3P/FT blend, each normalized to the sport's baseline (weights 50/30/20)."""
    league = league or get_league_baseline(stats.sport)
    w_fg, w_3p, w_ft = SHOOTING_WEIGHTS
    fg = stats.field_goal_pct.or_default(league.avg_fg_pct)
    tp = stats.three_point_pct.or_default(league.avg_three_pct)
    ft = stats.free_throw_pct.or_default(league.avg_ft_pct)
    return ((fg / league.avg_fg_pct) * w_fg
            + (tp / league.avg_three_pct) * w_3p
            + (ft / league.avg_ft_pct) * w_ft)


# ============================================================================
# RECENT FORM
# ============================================================================

def _team_result(team: str, game: GameResult) -> Optional[Tuple[bool, float]]:
    """(won, margin) from ``team``'s perspective, None unless one side is exactly ``team``."""
    side = side_of(team, game.home_team, game.away_team)
    if side is None:
        return None
    own, opp = ((game.home_score, game.away_score) if side == "home"
                else (game.away_score, game.home_score))
    return own > opp, abs(own - opp)


def _results(team: str, games: Sequence[GameResult], window: int) -> List[Tuple[bool, float]]:
    out = []
    for game in games[:window]:
        result = _team_result(team, game)
        if result is None:
            log.debug(f"{team} not found in {game.away_team} @ {game.home_team} — skipped")
            continue
        out.append(result)
    return out


def calculate_momentum(team: str, games: Sequence[GameResult]) -> float:
    """
    Weighted last-5 momentum in [−100, 100].

    Game i (0 = most recent) carries weight (5 − i)/5. A win adds
    (20 + min(margin, 20))·weight, a loss subtracts it.
    """
    momentum = 0.0
    for i, (won, margin) in enumerate(_results(team, games, MOMENTUM_WINDOW)):
        weight = (MOMENTUM_WINDOW - i) / MOMENTUM_WINDOW
        swing  = (20.0 + min(margin, 20.0)) * weight
        momentum += swing if won else -swing
    return float(max(-100.0, min(100.0, momentum)))


def analyze_recent_form(team: str, games: Sequence[GameResult]) -> Tuple[int, str, int, int]:
    """(win_streak, form string oldest→newest, last-5 wins, last-5 losses)."""
    results = [won for won, _ in _results(team, games, MOMENTUM_WINDOW)]
    if not results:
        return 0, "", 0, 0

    streak = 0
    for won in results:
        if won != results[0]:
            break
        streak += 1
    if not results[0]:
        streak = -streak

    form   = "-".join("W" if won else "L" for won in reversed(results))
    wins   = sum(results)
    return streak, form, wins, len(results) - wins


def calculate_consistency(games: Sequence[GameResult]) -> float:
    """100 − 5·sd(|margin|) over the last 10 games, clamped to [0, 100]; 50 with < 3 games."""
    recent = list(games[:CONSISTENCY_WINDOW])
    if len(recent) < MIN_CONSISTENCY_GAMES:
        return NEUTRAL_CONSISTENCY
    margins = np.array([g.margin for g in recent], dtype=float)
    sd = float(np.std(margins))
    return float(max(0.0, min(100.0, 100.0 - sd * 5.0)))


# ============================================================================
# ENTRY POINT
# ============================================================================

def calculate_team_analytics(
    stats: TeamStats,
    recent_games: Optional[Sequence[GameResult]] = None,
    is_home: bool = False,
    league: Optional[LeagueBaseline] = None,
) -> TeamAnalytics:
    """
    Derive TeamAnalytics for one team.

    Parameters
    ----------
    stats        : Season aggregate for the team
    recent_games : Completed games, most recent first (only the first 10 are read)
    is_home      : Adds the league home-court bonus when True
    league       : Sport baseline; defaults to the one for ``stats.sport``
    """
    league = league or get_league_baseline(stats.sport)
    games  = list(recent_games or [])

    off_rating = relative_rating(stats.points_per_game, league.avg_ppg)
    def_rating = relative_rating(stats.points_allowed_per_game, league.avg_ppg)

    streak, form, wins, losses = analyze_recent_form(stats.name, games)

    three_pct  = stats.three_point_pct.or_default(league.avg_three_pct)
    ft_pct     = stats.free_throw_pct.or_default(league.avg_ft_pct)
    rebounds   = stats.rebounds_per_game or league.avg_rebounds
    assists    = stats.assists_per_game or league.avg_assists
    turnovers  = stats.turnovers_per_game or league.avg_turnovers

    return TeamAnalytics(
        offensive_rating       = off_rating,
        defensive_rating       = def_rating,
        net_rating             = off_rating - def_rating,
        momentum               = calculate_momentum(stats.name, games),
        win_streak             = streak,
        recent_form            = form,
        last5_wins             = wins,
        last5_losses           = losses,
        shooting_efficiency    = shooting_efficiency(stats, league),
        three_point_threat     = three_pct / league.avg_three_pct * 100.0,
        free_throw_reliability = ft_pct / league.avg_ft_pct * 100.0,
        rebounding_advantage   = rebounds / league.avg_rebounds * 100.0,
        assist_to_turnover     = assists / max(turnovers, 1.0),
        consistency            = calculate_consistency(games),
        home_advantage         = league.home_advantage if is_home else 0.0,
    )
