#!/usr/bin/env python3
"""
Matchup Engine Feed — Prediction Runner
Bridges schedule.csv + team_stats.csv + games.csv → predict_matchup → tracked_predictions.csv

For each scheduled game: resolve both teams against the stats provider,
derive analytics from season stats and recent results, predict with the
active recalibration snapshot, flag value bets against the market snapshot
in the schedule row, and track the prediction. A game that already has an
unvalidated prediction is returned as-is, so rerunning the job is safe.

Usage:
    python feed_prediction_runner.py
        - Default: data/schedule.csv
    python feed_prediction_runner.py --schedule data/schedule_20250315.csv
    python feed_prediction_runner.py --data-dir data2
    python feed_prediction_runner.py --simulate 10000   # + Monte Carlo 80% intervals

Input files in the data directory:
    team_stats.csv   name, team_id, sport, season, points_per_game, points_allowed_per_game,
                     field_goal_pct, three_point_pct, free_throw_pct, rebounds_per_game,
                     assists_per_game, turnovers_per_game, pace
    games.csv        game_id, game_date, sport, home_team, away_team, home_score, away_score
    schedule.csv     game_id, game_date, sport, home_team, away_team,
                     home_moneyline, away_moneyline, spread, total (odds optional)
"""

import argparse
import logging
import warnings
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

import pandas as pd

from feed_config import (
    DATA_DIR,
    GAMES_FILE,
    KV_STORE_FILE,
    PREDICTIONS_FILE,
    SCHEDULE_FILE,
    TEAM_STATS_FILE,
)
from feed_prediction_store import (
    CsvPredictionStore,
    JsonKeyValueStore,
    PredictionStorageError,
    track_prediction,
)
from feed_team_matcher import find_best_match, side_of
from model_config import CONSISTENCY_WINDOW, ModelWeights, load_model_weights, normalize_sport
from model_matchup import identify_value_bets, predict_matchup
from model_monte_carlo import SimulationResult, simulate
from model_recalibration import CalibrationState, RecalibrationParams
from model_schemas import (
    GameResult,
    MarketOdds,
    MatchupPrediction,
    TeamStats,
    _safe_float,
    parse_game_date,
)
from model_team_analytics import calculate_team_analytics
from model_variance import load_variance_model

warnings.filterwarnings("ignore")

log = logging.getLogger(__name__)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


# ═══════════════════════════════════════════════════════════════════════════════
# STATS PROVIDER
# ═══════════════════════════════════════════════════════════════════════════════

class StatsProvider(Protocol):
    def find_team(self, sport: str, name: str) -> Optional[str]:
        """Canonical team name for ``name``, None when the team is unknown."""
        ...

    def get_team_stats(self, sport: str, name: str) -> Optional[TeamStats]:
        ...

    def get_recent_games(self, sport: str, name: str, limit: int = CONSISTENCY_WINDOW) -> List[GameResult]:
        """Completed games involving the team, most recent first."""
        ...


class CsvStatsProvider:
    """Season stats and completed results read once from CSV files."""

    def __init__(self, team_stats_path: Path, games_path: Optional[Path] = None):
        self._stats: Dict[str, Dict[str, TeamStats]] = defaultdict(dict)
        self._games: Dict[str, List[GameResult]] = defaultdict(list)
        self._load_stats(Path(team_stats_path))
        if games_path is not None:
            self._load_games(Path(games_path))

    @classmethod
    def from_data_dir(cls, data_dir: Path = DATA_DIR) -> "CsvStatsProvider":
        return cls(Path(data_dir) / TEAM_STATS_FILE, Path(data_dir) / GAMES_FILE)

    def _load_stats(self, path: Path) -> None:
        if not path.exists():
            log.warning(f"Team stats file not found: {path}")
            return
        df = pd.read_csv(path, dtype=str, keep_default_na=False, low_memory=False)
        for row in df.to_dict(orient="records"):
            if not row.get("name"):
                continue
            row["sport"] = normalize_sport(row.get("sport"))
            stats = TeamStats.from_row(row)
            self._stats[stats.sport][stats.name] = stats
        log.info(f"Loaded stats for {sum(len(v) for v in self._stats.values())} teams from {path.name}")

    def _load_games(self, path: Path) -> None:
        if not path.exists():
            log.warning(f"Games file not found: {path} — recent form unavailable")
            return
        df = pd.read_csv(path, dtype=str, keep_default_na=False, low_memory=False)
        skipped = 0
        for row in df.to_dict(orient="records"):
            home_score = _safe_float(row.get("home_score"))
            away_score = _safe_float(row.get("away_score"))
            if home_score is None or away_score is None:
                skipped += 1
                continue
            self._games[normalize_sport(row.get("sport"))].append(GameResult(
                home_team  = row.get("home_team", ""),
                away_team  = row.get("away_team", ""),
                home_score = home_score,
                away_score = away_score,
                game_date  = row.get("game_date", ""),
                game_id    = row.get("game_id", ""),
            ))
        for games in self._games.values():
            games.sort(key=lambda g: str(parse_game_date(g.game_date) or ""), reverse=True)
        log.info(f"Loaded {sum(len(v) for v in self._games.values())} completed games "
                 f"from {path.name} ({skipped} without scores skipped)")

    def find_team(self, sport: str, name: str) -> Optional[str]:
        teams = self._stats.get(normalize_sport(sport), {})
        if name in teams:
            return name
        match = find_best_match(name, teams.keys())
        return match[0] if match else None

    def get_team_stats(self, sport: str, name: str) -> Optional[TeamStats]:
        return self._stats.get(normalize_sport(sport), {}).get(name)

    def get_recent_games(self, sport: str, name: str, limit: int = CONSISTENCY_WINDOW) -> List[GameResult]:
        recent = []
        for game in self._games.get(normalize_sport(sport), []):
            if side_of(name, game.home_team, game.away_team) is None:
                continue
            recent.append(game)
            if len(recent) >= limit:
                break
        return recent


# ═══════════════════════════════════════════════════════════════════════════════
# REQUEST / RESULT
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class GameRequest:
    """One scheduled game plus the market snapshot (optional) at prediction time."""
    game_id:   str
    game_date: str
    home_team: str
    away_team: str
    sport:     str = "cbb"
    odds:      Optional[MarketOdds] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "GameRequest":
        odds = MarketOdds.from_dict(row)
        has_odds = odds is not None and any(
            v is not None for v in (odds.home_moneyline, odds.away_moneyline, odds.spread, odds.total)
        )
        return cls(
            game_id   = str(row.get("game_id", "")),
            game_date = str(row.get("game_date", "")),
            home_team = str(row.get("home_team", "")),
            away_team = str(row.get("away_team", "")),
            sport     = normalize_sport(row.get("sport")),
            odds      = odds if has_odds else None,
        )


@dataclass
class GenerationResult:
    game_id:       str
    success:       bool = False
    prediction:    Optional[MatchupPrediction] = None
    prediction_id: Optional[str] = None
    existing:      bool = False
    skipped:       bool = False
    skip_reason:   str = ""
    error:         str = ""
    simulation:    Optional[SimulationResult] = None


# ═══════════════════════════════════════════════════════════════════════════════
# RUNNER
# ═══════════════════════════════════════════════════════════════════════════════

class PredictionRunner:
    """
    Generates and tracks predictions.

    The recalibration snapshot is read once at construction; call
    ``reload_params()`` after a sync has trained new parameters. With
    ``simulations`` > 0 every returned prediction also carries a Monte Carlo
    run against the sport's stored variance model.
    """

    def __init__(self, stats_provider: StatsProvider, store, kv_store=None,
                 weights: Optional[ModelWeights] = None, simulations: int = 0):
        self.stats_provider = stats_provider
        self.store          = store
        self.kv_store       = kv_store
        self.simulations    = simulations
        self.weights        = weights or ModelWeights()
        self.calibration    = CalibrationState(kv_store)

    @property
    def params(self) -> RecalibrationParams:
        return self.calibration.current

    def reload_params(self) -> RecalibrationParams:
        return self.calibration.reload()

    def simulate_prediction(self, prediction: MatchupPrediction,
                            seed: Optional[int] = None) -> SimulationResult:
        model = load_variance_model(self.kv_store, prediction.sport)
        return simulate(prediction, model, n=self.simulations, seed=seed)

    def _attach_simulation(self, result: GenerationResult) -> GenerationResult:
        if self.simulations > 0 and result.prediction is not None:
            try:
                result.simulation = self.simulate_prediction(result.prediction)
            except ValueError as exc:
                log.warning(f"Simulation skipped for {result.game_id}: {exc}")
        return result

    def generate_prediction(self, game: GameRequest) -> GenerationResult:
        """Predict and track one game. Never raises; failures come back on the result."""
        result = GenerationResult(game_id=game.game_id)
        sport  = normalize_sport(game.sport)

        existing = self.store.find_first_unvalidated(game.game_id)
        if existing is not None:
            result.success       = True
            result.existing      = True
            result.prediction    = existing.prediction
            result.prediction_id = existing.id
            return self._attach_simulation(result)

        provider = self.stats_provider
        away_name = provider.find_team(sport, game.away_team)
        home_name = provider.find_team(sport, game.home_team)
        if away_name is None or home_name is None:
            result.skipped     = True
            result.skip_reason = f"Team not found: {game.away_team if away_name is None else game.home_team}"
            return result

        away_stats = provider.get_team_stats(sport, away_name)
        home_stats = provider.get_team_stats(sport, home_name)
        if away_stats is None or home_stats is None:
            result.skipped     = True
            result.skip_reason = f"Stats not available for: {game.away_team if away_stats is None else game.home_team}"
            return result

        try:
            away_analytics = calculate_team_analytics(
                away_stats, provider.get_recent_games(sport, away_name), is_home=False)
            home_analytics = calculate_team_analytics(
                home_stats, provider.get_recent_games(sport, home_name), is_home=True)

            prediction = predict_matchup(
                away_analytics, home_analytics, away_stats, home_stats,
                sport=sport, weights=self.weights, params=self.params,
            )
            # Provider names on the record so outcome matching sees the schedule's spelling
            prediction.home_team = game.home_team
            prediction.away_team = game.away_team
            if game.odds is not None:
                identify_value_bets(prediction, game.odds, self.weights)

            tracked = track_prediction(
                self.store, game.game_id, game.game_date, prediction,
                odds           = game.odds,
                home_analytics = home_analytics,
                away_analytics = away_analytics,
            )
        except PredictionStorageError as exc:
            result.prediction_id = exc.fallback_id
            result.error         = f"Storage failed: {exc}"
            return result
        except Exception as exc:
            log.error(f"Prediction failed for {game.game_id}: {exc}")
            result.error = str(exc)
            return result

        result.success       = True
        result.prediction    = prediction
        result.prediction_id = tracked.id
        return self._attach_simulation(result)

    def generate_predictions(self, games: Sequence[GameRequest]) -> Dict[str, Any]:
        counts: Dict[str, Any] = {
            "generated":    0,
            "existing":     0,
            "skipped":      0,
            "errors":       0,
            "skip_reasons": [],
            "error_messages": [],
            "results":      [],
        }
        for game in games:
            log.info(f"  Processing: {game.away_team} @ {game.home_team} (game_id={game.game_id})")
            result = self.generate_prediction(game)
            counts["results"].append(result)
            if result.existing:
                counts["existing"] += 1
            elif result.success:
                counts["generated"] += 1
            elif result.skipped:
                counts["skipped"] += 1
                counts["skip_reasons"].append(f"{game.game_id}: {result.skip_reason}")
                log.warning(f"    Skipped {game.game_id}: {result.skip_reason}")
            else:
                counts["errors"] += 1
                counts["error_messages"].append(f"{game.game_id}: {result.error}")

        log.info(f"Predictions: generated={counts['generated']} existing={counts['existing']} "
                 f"skipped={counts['skipped']} errors={counts['errors']}")
        return counts


def load_schedule(path: Path) -> List[GameRequest]:
    if not Path(path).exists():
        log.warning(f"Schedule file not found: {path}")
        return []
    df = pd.read_csv(path, dtype=str, keep_default_na=False, low_memory=False)
    games = [GameRequest.from_row(row) for row in df.to_dict(orient="records")
             if row.get("game_id") and row.get("home_team") and row.get("away_team")]
    log.info(f"Loaded {len(games)} scheduled games from {Path(path).name}")
    return games


def print_summary(counts: Dict[str, Any]) -> None:
    made = [r for r in counts["results"] if r.success and r.prediction is not None]
    print()
    print("=" * 100)
    print(f"{'MATCHUP':<48} {'HOME WIN':>9} {'SPREAD':>8} {'TOTAL':>7} {'CONF':>6} {'BETS':>5}")
    print("=" * 100)
    for r in made:
        p = r.prediction
        matchup = f"{p.away_team} @ {p.home_team}"[:47]
        tag = " (existing)" if r.existing else ""
        print(f"{matchup:<48} {p.home_win_prob:>9.1%} {p.predicted_spread:>+8.1f} "
              f"{p.predicted_total:>7.1f} {p.confidence:>6.0f} {len(p.value_bets):>5}{tag}")
        if r.simulation is not None:
            lo, hi = r.simulation.spread.ci80
            print(f"{'':<48} sim {r.simulation.home_win_prob:>5.1%}  spread 80% {lo:+.1f}..{hi:+.1f}")
    print("=" * 100)
    print(f"  Generated: {counts['generated']}  |  Existing: {counts['existing']}  |  "
          f"Skipped: {counts['skipped']}  |  Errors: {counts['errors']}")
    for reason in counts["skip_reasons"]:
        print(f"    - {reason}")
    for msg in counts["error_messages"]:
        print(f"    ⚠️  {msg}")
    print()


# ═══════════════════════════════════════════════════════════════════════════════
# ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════════

def main():
    parser = argparse.ArgumentParser(description="Generate and track predictions for scheduled games")
    parser.add_argument("--data-dir", type=Path, default=DATA_DIR)
    parser.add_argument("--schedule", type=Path, default=None,
                        help=f"Schedule CSV (default: <data-dir>/{SCHEDULE_FILE})")
    parser.add_argument("--simulate", type=int, default=0, metavar="N",
                        help="Also run N Monte Carlo simulations per game")
    args = parser.parse_args()

    data_dir = args.data_dir
    runner = PredictionRunner(
        stats_provider = CsvStatsProvider.from_data_dir(data_dir),
        store          = CsvPredictionStore(data_dir / PREDICTIONS_FILE),
        kv_store       = JsonKeyValueStore(data_dir / KV_STORE_FILE),
        weights        = load_model_weights(),
        simulations    = args.simulate,
    )
    log.info(f"Recalibration: a={runner.params.a} b={runner.params.b} trained={runner.params.trained}")

    counts = runner.generate_predictions(load_schedule(args.schedule or data_dir / SCHEDULE_FILE))
    print_summary(counts)
    if counts["errors"] and not (counts["generated"] or counts["existing"]):
        raise SystemExit(1)


if __name__ == "__main__":
    main()
