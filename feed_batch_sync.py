#!/usr/bin/env python3
"""
feed_batch_sync.py — Outcome Matcher / Batch Synchronizer

Closes the feedback loop: finds tracked predictions whose games have been
played, records the final scores, and refits the Platt recalibration once
enough predictions are validated.

FLOW
─────────────────────────────────────────────────────────────────────────────
1. Pending = unvalidated predictions whose game date is before today (PT).
   Nothing pending → return immediately, no provider calls.
2. PRIMARY: completed scores per sport key, matched on exact game id.
3. FALLBACK: for predictions still pending and played within the last
   30 days, pull each date's completed games and match on team names
   (both sides equivalent) with the game date within ±1 day.
4. TRAIN: with ≥ 20 validated predictions fit Platt on the raw
   probabilities and persist the result. A failed fit persists identity.

Recording goes through the store's single-validation guard, so running the
job twice never double-counts an outcome.

Usage:
    python feed_batch_sync.py                   # sync + train
    python feed_batch_sync.py --dry-run         # match only, no writes
    python feed_batch_sync.py --data-dir data2  # alternate data directory
    python feed_batch_sync.py --prune           # also clear validated predictions > 30 days old
"""

import argparse
import logging
import time
import warnings
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from feed_client import CompletedGame, fetch_completed_scores, fetch_games_by_date
from feed_config import (
    DATA_DIR,
    DATE_FETCH_SLEEP,
    FALLBACK_WINDOW_DAYS,
    KV_STORE_FILE,
    MATCH_DATE_TOLERANCE,
    PREDICTIONS_FILE,
    PRUNE_AFTER_DAYS,
    SCOREBOARD_LEAGUES,
    SCORES_DAYS_FROM,
    SPORT_FETCH_SLEEP,
    SYNC_SPORT_KEYS,
    TZ,
)
from feed_prediction_store import CsvPredictionStore, JsonKeyValueStore
from feed_team_matcher import teams_equivalent
from model_config import MIN_TRAINING_SAMPLES, normalize_sport
from model_recalibration import (
    IDENTITY,
    CalibrationState,
    RecalibrationParams,
    fit_platt,
    save_recalibration_params,
)
from model_schemas import TrackedPrediction, parse_game_date
from model_validation import holdout_recalibration_check
from model_variance import estimate_by_sport, save_variance_models

warnings.filterwarnings("ignore")

log = logging.getLogger(__name__)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

SAMPLE_PENDING = 5


# ═══════════════════════════════════════════════════════════════════════════════
# RESULT
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class BatchSyncResult:
    success:         bool
    checked:         int
    matched:         int
    trained:         bool
    params:          Optional[RecalibrationParams] = None
    validated_count: int = 0
    dates_fetched:   int = 0
    duration_sec:    float = 0.0
    variance_sports: List[str] = field(default_factory=list)
    errors:          List[str] = field(default_factory=list)
    diagnostics:     Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return asdict(self)


def _empty_diagnostics() -> Dict:
    return {
        "primary_completed":  0,
        "primary_matched":    0,
        "fallback_completed": 0,
        "fallback_matched":   0,
        "pending_sample":     [],
        "skipped_sports":     [],
        "holdout":            None,
    }


# ═══════════════════════════════════════════════════════════════════════════════
# SYNCHRONIZER
# ═══════════════════════════════════════════════════════════════════════════════

class BatchSynchronizer:
    """
    One sync run over a prediction store.

    Providers, clock and sleep are injectable so the job can run against
    fixtures: ``fetch_completed(sport_key, days_from)`` and
    ``fetch_by_date(date, sport)`` both return lists of CompletedGame.
    ``fallback_sports`` lists the sport codes ``fetch_by_date`` serves.
    """

    def __init__(
        self,
        store,
        kv_store,
        fetch_completed: Callable[..., List[CompletedGame]] = fetch_completed_scores,
        fetch_by_date: Callable[..., List[CompletedGame]] = fetch_games_by_date,
        sport_keys=SYNC_SPORT_KEYS,
        fallback_sports=tuple(SCOREBOARD_LEAGUES),
        today: Optional[date] = None,
        sleep: Callable[[float], None] = time.sleep,
        calibration: Optional[CalibrationState] = None,
        dry_run: bool = False,
    ):
        self.store           = store
        self.kv_store        = kv_store
        self.fetch_completed = fetch_completed
        self.fetch_by_date   = fetch_by_date
        self.sport_keys      = list(sport_keys)
        self.fallback_sports = {normalize_sport(s) for s in fallback_sports}
        self.today           = today
        self.sleep           = sleep
        self.calibration     = calibration
        self.dry_run         = dry_run

    def _today(self) -> date:
        return self.today or datetime.now(TZ).date()

    def _record(self, prediction: TrackedPrediction, game: CompletedGame) -> bool:
        if self.dry_run:
            log.info(f"[dry-run] would record {game.away_team} {game.away_score:g} @ "
                     f"{game.home_team} {game.home_score:g} → {prediction.id}")
            return True
        return self.store.record_outcome(prediction.id, game.home_score, game.away_score)

    # ── Step 1 ───────────────────────────────────────────────────────────────
    def _pending(self) -> List[TrackedPrediction]:
        today = self._today()
        pending = []
        for p in self.store.list_unvalidated():
            day = p.game_day
            if day is None:
                log.warning(f"Prediction {p.id} has unparseable game date {p.game_date!r} — skipped")
                continue
            if day < today:
                pending.append(p)
        return pending

    # ── Step 2 ───────────────────────────────────────────────────────────────
    def _primary_pass(self, pending: Dict[str, TrackedPrediction],
                      errors: List[str], diag: Dict) -> int:
        matched = 0
        for i, sport_key in enumerate(self.sport_keys):
            if i > 0:
                self.sleep(SPORT_FETCH_SLEEP)
            try:
                games = self.fetch_completed(sport_key, SCORES_DAYS_FROM)
            except Exception as exc:
                msg = f"Completed scores {sport_key}: {exc}"
                log.warning(f"{msg} — skipped")
                errors.append(msg)
                continue

            diag["primary_completed"] += len(games)
            for game in games:
                prediction = pending.get(game.game_id)
                if prediction is None:
                    continue
                if self._record(prediction, game):
                    matched += 1
                    diag["primary_matched"] += 1
                pending.pop(game.game_id, None)
        return matched

    # ── Step 3 ───────────────────────────────────────────────────────────────
    def _fallback_pass(self, pending: Dict[str, TrackedPrediction],
                       errors: List[str], diag: Dict) -> Tuple[int, int]:
        today  = self._today()
        cutoff = today - timedelta(days=FALLBACK_WINDOW_DAYS)

        by_date: Dict[date, set] = defaultdict(set)
        for p in pending.values():
            if p.game_day >= cutoff:
                by_date[p.game_day].add(p.sport)

        matched = 0
        fetched = set()
        for i, day in enumerate(sorted(by_date)):
            if i > 0:
                self.sleep(DATE_FETCH_SLEEP)
            for sport in sorted(by_date[day]):
                if normalize_sport(sport) not in self.fallback_sports:
                    if sport not in diag["skipped_sports"]:
                        log.debug(f"No by-date provider for {sport} — fallback skipped")
                        diag["skipped_sports"].append(sport)
                    continue
                fetched.add(day)
                try:
                    games = self.fetch_by_date(day, sport)
                except Exception as exc:
                    msg = f"Date {day.isoformat()} ({sport}): {exc}"
                    log.warning(f"{msg} — skipped")
                    errors.append(msg)
                    continue

                diag["fallback_completed"] += len(games)
                for game in games:
                    prediction = self._match_by_teams(game, pending)
                    if prediction is None:
                        continue
                    if self._record(prediction, game):
                        matched += 1
                        diag["fallback_matched"] += 1
                    pending.pop(prediction.game_id, None)
        return matched, len(fetched)

    @staticmethod
    def _match_by_teams(game: CompletedGame,
                        pending: Dict[str, TrackedPrediction]) -> Optional[TrackedPrediction]:
        game_day = parse_game_date(game.game_date)
        for p in pending.values():
            if game.sport and game.sport != normalize_sport(p.sport):
                continue
            if game_day is not None and abs((game_day - p.game_day).days) > MATCH_DATE_TOLERANCE:
                continue
            if teams_equivalent(p.home_team, game.home_team) and \
               teams_equivalent(p.away_team, game.away_team):
                return p
        return None

    # ── Step 4 ───────────────────────────────────────────────────────────────
    def _train(self, errors: List[str]) -> Tuple[bool, Optional[RecalibrationParams], int]:
        validated = self.store.list_validated()
        n = len(validated)
        if n < MIN_TRAINING_SAMPLES:
            log.info(f"Training skipped: {n} validated < {MIN_TRAINING_SAMPLES}")
            return False, None, n
        if self.dry_run:
            log.info(f"[dry-run] would fit recalibration on {n} validated predictions")
            return False, None, n

        pairs = [(p.prediction.home_win_prob_raw, p.actual.winner == "home") for p in validated]
        fit = fit_platt(pairs)
        if fit.converged:
            params = fit.params
        else:
            params = IDENTITY
            errors.append(f"Recalibration fit failed: {fit.message}")
        save_recalibration_params(self.kv_store, params)
        if self.calibration is not None:
            self.calibration.replace(params)
        return fit.converged, params, n

    def _refresh_variance(self) -> List[str]:
        if self.dry_run:
            return []
        models = estimate_by_sport(self.store.list_validated())
        if models:
            save_variance_models(self.kv_store, models)
        return sorted(models)

    def _holdout(self, diag: Dict) -> None:
        checked = holdout_recalibration_check(self.store.list_validated())
        if checked is not None:
            params, comparison = checked
            diag["holdout"] = {"a": params.a, "b": params.b, **comparison.to_dict()}

    # ── Run ──────────────────────────────────────────────────────────────────
    def run(self) -> BatchSyncResult:
        start  = time.time()
        errors: List[str] = []
        diag   = _empty_diagnostics()

        pending_list = self._pending()
        if not pending_list:
            log.info("No pending predictions with completed game dates — nothing to sync")
            return BatchSyncResult(
                success         = True,
                checked         = 0,
                matched         = 0,
                trained         = False,
                validated_count = self.store.tracking_stats()["validated"],
                duration_sec    = round(time.time() - start, 3),
                diagnostics     = diag,
            )

        diag["pending_sample"] = [
            {"game_id": p.game_id, "home_team": p.home_team,
             "away_team": p.away_team, "game_date": p.game_date}
            for p in pending_list[:SAMPLE_PENDING]
        ]
        log.info(f"Pending predictions: {len(pending_list)}")

        # Keyed by game id; dedup on tracking keeps one unvalidated per game
        pending = {p.game_id: p for p in pending_list}

        matched = self._primary_pass(pending, errors, diag)
        log.info(f"Primary: {diag['primary_matched']} matched "
                 f"of {diag['primary_completed']} completed games")

        fb_matched, dates_fetched = self._fallback_pass(pending, errors, diag)
        matched += fb_matched
        log.info(f"Fallback: {fb_matched} matched over {dates_fetched} dates "
                 f"({diag['fallback_completed']} completed games)")

        fetch_errors = len(errors)
        trained, params, validated_count = self._train(errors)
        variance_sports = self._refresh_variance() if matched else []
        if trained:
            self._holdout(diag)

        result = BatchSyncResult(
            success         = fetch_errors == 0 or matched > 0,
            checked         = len(pending_list),
            matched         = matched,
            trained         = trained,
            params          = params,
            validated_count = validated_count,
            variance_sports = variance_sports,
            dates_fetched   = dates_fetched,
            duration_sec    = round(time.time() - start, 3),
            errors          = errors,
            diagnostics     = diag,
        )
        log.info(
            f"Batch sync: checked={result.checked} matched={result.matched} "
            f"trained={result.trained} validated={result.validated_count} "
            f"errors={len(errors)} ({result.duration_sec:.1f}s)"
        )
        return result


def run_batch_sync(data_dir: Path = DATA_DIR, dry_run: bool = False) -> BatchSyncResult:
    """Sync against the CSV/JSON stores in ``data_dir``."""
    store    = CsvPredictionStore(Path(data_dir) / PREDICTIONS_FILE)
    kv_store = JsonKeyValueStore(Path(data_dir) / KV_STORE_FILE)
    return BatchSynchronizer(store, kv_store, dry_run=dry_run).run()


def _print_summary(result: BatchSyncResult) -> None:
    print()
    print("=" * 80)
    print(f"  BATCH SYNC — {'OK' if result.success else 'FAILED'}")
    print("=" * 80)
    print(f"  Pending checked:     {result.checked}")
    print(f"  Outcomes recorded:   {result.matched}")
    print(f"  Dates fetched:       {result.dates_fetched}")
    print(f"  Validated total:     {result.validated_count}")
    if result.trained and result.params is not None:
        print(f"  Recalibration:       a={result.params.a:.4f}  b={result.params.b:.4f}")
    else:
        print(f"  Recalibration:       not trained")
    if result.diagnostics.get("holdout"):
        h = result.diagnostics["holdout"]
        print(f"  Holdout Brier Δ:     {h['brier_diff']:+.4f}  ({'improved' if h['improved'] else 'not improved'})")
    if result.variance_sports:
        print(f"  Variance models:     {', '.join(result.variance_sports)}")
    if result.errors:
        print()
        print(f"  ⚠️  {len(result.errors)} error(s):")
        for err in result.errors:
            print(f"    - {err}")
    print("=" * 80)
    print()


# ═══════════════════════════════════════════════════════════════════════════════
# CLI
# ═══════════════════════════════════════════════════════════════════════════════

def main():
    parser = argparse.ArgumentParser(description="Prediction outcome sync + recalibration")
    parser.add_argument("--data-dir", type=Path, default=DATA_DIR)
    parser.add_argument("--dry-run",  action="store_true",
                        help="Match outcomes but don't write or train")
    parser.add_argument("--prune",    action="store_true",
                        help=f"Clear validated predictions older than {PRUNE_AFTER_DAYS} days")
    args = parser.parse_args()

    result = run_batch_sync(data_dir=args.data_dir, dry_run=args.dry_run)

    if args.prune and not args.dry_run:
        store = CsvPredictionStore(args.data_dir / PREDICTIONS_FILE)
        store.clear_old_predictions(days=PRUNE_AFTER_DAYS)

    _print_summary(result)
    if not result.success:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
