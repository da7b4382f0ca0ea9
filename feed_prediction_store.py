"""
Matchup Engine Feed — Prediction Store

Persistence contract for tracked predictions and the small key/value store
that holds model configuration (recalibration snapshot).

  InMemoryPredictionStore   dict-backed; used by tests and as the base class
  CsvPredictionStore        one row per prediction in data/tracked_predictions.csv,
                            nested objects JSON-encoded per column
  JsonKeyValueStore         data/model_config.json

Every read and mutation runs under the store lock and re-reads storage first.
File-backed stores also hold an exclusive flock on ``<file>.lock`` from the
re-read through the replace, so the single-validation guard in record_outcome
holds across store instances and processes sharing a file: a prediction is
validated at most once and later attempts return False. The lock is POSIX
only (fcntl).
"""

import dataclasses
import fcntl
import json
import logging
import threading
import time
import uuid
from contextlib import contextmanager, nullcontext
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from model_schemas import (
    MarketOdds,
    MatchupPrediction,
    TeamAnalytics,
    TrackedPrediction,
    _safe_float,
    utc_now_iso,
)

log = logging.getLogger(__name__)


class PredictionStorageError(RuntimeError):
    """Persisting a fresh prediction failed. ``fallback_id`` identifies it anyway."""

    def __init__(self, message: str, fallback_id: str):
        super().__init__(message)
        self.fallback_id = fallback_id


@contextmanager
def _file_lock(path: Path):
    """Exclusive flock on ``<path>.lock`` for the duration of the block."""
    lock_path = path.with_name(path.name + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, "w") as lock:
        fcntl.flock(lock.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock.fileno(), fcntl.LOCK_UN)


# ═══════════════════════════════════════════════════════════════════════════════
# PREDICTION STORE
# ═══════════════════════════════════════════════════════════════════════════════

class InMemoryPredictionStore:
    """
    Reference implementation of the prediction persistence contract.

    Subclasses provide durable storage by overriding ``_load`` (refresh
    ``self._rows`` from storage), ``_flush`` (write ``self._rows`` back) and
    ``_storage_lock`` (exclusive across instances).
    """

    def __init__(self):
        self._rows: Dict[str, TrackedPrediction] = {}
        self._lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def _locked(self):
        # Re-entrant: only the outermost block takes the storage lock
        with self._lock:
            outer = self._depth == 0
            with (self._storage_lock() if outer else nullcontext()):
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1

    # ── storage hooks ────────────────────────────────────────────────────────
    def _storage_lock(self):
        return nullcontext()

    def _load(self) -> None:
        pass

    def _flush(self) -> None:
        pass

    def _snapshot(self) -> List[TrackedPrediction]:
        with self._locked():
            self._load()
            return list(self._rows.values())

    # ── reads ────────────────────────────────────────────────────────────────
    def get(self, prediction_id: str) -> Optional[TrackedPrediction]:
        with self._locked():
            self._load()
            return self._rows.get(prediction_id)

    def list_all(self) -> List[TrackedPrediction]:
        return self._snapshot()

    def list_unvalidated(self) -> List[TrackedPrediction]:
        return [p for p in self._snapshot() if not p.validated]

    def list_validated(self) -> List[TrackedPrediction]:
        return [p for p in self._snapshot() if p.validated]

    def _first_unvalidated(self, game_id: str) -> Optional[TrackedPrediction]:
        best: Optional[TrackedPrediction] = None
        for p in self._rows.values():
            if p.validated or p.game_id != str(game_id):
                continue
            # Later insertion wins ties on predicted_at
            if best is None or p.predicted_at >= best.predicted_at:
                best = p
        return best

    def find_first_unvalidated(self, game_id: str) -> Optional[TrackedPrediction]:
        """Most recent unvalidated prediction for ``game_id``."""
        with self._locked():
            self._load()
            return self._first_unvalidated(game_id)

    # ── writes ───────────────────────────────────────────────────────────────
    def create(self, prediction: TrackedPrediction) -> TrackedPrediction:
        with self._locked():
            self._load()
            if prediction.id in self._rows:
                raise ValueError(f"Prediction {prediction.id} already exists")
            self._rows[prediction.id] = prediction
            self._flush()
        return prediction

    def record_outcome(self, prediction_id: str, home_score: float, away_score: float) -> bool:
        """Validate one prediction. False when unknown or already validated."""
        with self._locked():
            self._load()
            current = self._rows.get(prediction_id)
            if current is None:
                log.warning(f"record_outcome: unknown prediction {prediction_id}")
                return False
            if current.validated:
                log.debug(f"record_outcome: {prediction_id} already validated — skipped")
                return False
            self._rows[prediction_id] = current.with_outcome(home_score, away_score)
            self._flush()
        log.info(f"Recorded outcome {current.away_team} {away_score:g} @ "
                 f"{current.home_team} {home_score:g} ({prediction_id})")
        return True

    def record_outcome_by_game_id(self, game_id: str, home_score: float, away_score: float) -> bool:
        with self._locked():
            self._load()
            target = self._first_unvalidated(game_id)
            if target is None:
                return False
            return self.record_outcome(target.id, home_score, away_score)

    def enrich(
        self,
        game_id: str,
        odds: Optional[MarketOdds] = None,
        closing_spread: Optional[float] = None,
        closing_total: Optional[float] = None,
    ) -> bool:
        """Attach an odds snapshot and/or closing lines to the latest unvalidated prediction."""
        with self._locked():
            self._load()
            target = self._first_unvalidated(game_id)
            if target is None:
                return False
            updates: Dict[str, Any] = {}
            if odds is not None:
                updates["odds"] = odds
            if closing_spread is not None:
                updates["closing_spread"] = float(closing_spread)
            if closing_total is not None:
                updates["closing_total"] = float(closing_total)
            if not updates:
                return False
            self._rows[target.id] = dataclasses.replace(target, **updates)
            self._flush()
        return True

    def clear_old_predictions(self, days: int = 30, now: Optional[datetime] = None) -> int:
        """Delete validated predictions made more than ``days`` ago."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
        with self._locked():
            self._load()
            stale = [
                pid for pid, p in self._rows.items()
                if p.validated and _parse_ts(p.predicted_at) is not None
                and _parse_ts(p.predicted_at) < cutoff
            ]
            for pid in stale:
                del self._rows[pid]
            if stale:
                self._flush()
        if stale:
            log.info(f"Cleared {len(stale)} validated predictions older than {days} days")
        return len(stale)

    def tracking_stats(self) -> Dict[str, Any]:
        rows = self._snapshot()
        validated = sum(1 for p in rows if p.validated)
        stamps = sorted(p.predicted_at for p in rows if p.predicted_at)
        return {
            "total":             len(rows),
            "validated":         validated,
            "unvalidated":       len(rows) - validated,
            "oldest_prediction": stamps[0] if stamps else None,
            "newest_prediction": stamps[-1] if stamps else None,
        }


def _parse_ts(value: str) -> Optional[datetime]:
    try:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


# ── CSV ──────────────────────────────────────────────────────────────────────

_SCALAR_COLS = ["id", "game_id", "game_date", "home_team", "away_team", "sport",
                "predicted_at", "validated", "closing_spread", "closing_total"]
_JSON_COLS   = ["prediction", "odds", "home_analytics", "away_analytics", "actual"]
# Flattened for people reading the file; ignored on load
_VIEW_COLS   = ["home_win_prob", "home_win_prob_raw", "predicted_spread", "predicted_total",
                "confidence", "actual_home_score", "actual_away_score"]
CSV_COLUMNS  = _SCALAR_COLS + _VIEW_COLS + _JSON_COLS


def _to_row(p: TrackedPrediction) -> Dict[str, Any]:
    d = p.to_dict()
    row = {c: d[c] for c in _SCALAR_COLS}
    row.update({
        "home_win_prob":     round(p.prediction.home_win_prob, 4),
        "home_win_prob_raw": round(p.prediction.home_win_prob_raw, 4),
        "predicted_spread":  p.prediction.predicted_spread,
        "predicted_total":   p.prediction.predicted_total,
        "confidence":        round(p.prediction.confidence, 1),
        "actual_home_score": p.actual.home_score if p.actual else None,
        "actual_away_score": p.actual.away_score if p.actual else None,
    })
    for col in _JSON_COLS:
        row[col] = json.dumps(d[col]) if d[col] is not None else ""
    return row


def _from_row(row: Dict[str, str]) -> TrackedPrediction:
    d: Dict[str, Any] = {c: row.get(c, "") for c in _SCALAR_COLS}
    for col in _JSON_COLS:
        raw = row.get(col) or ""
        d[col] = json.loads(raw) if raw else None
    d["closing_spread"] = _safe_float(d["closing_spread"])
    d["closing_total"]  = _safe_float(d["closing_total"])
    return TrackedPrediction.from_dict(d)


class CsvPredictionStore(InMemoryPredictionStore):
    """CSV-backed store. Rows that fail to parse are logged and skipped."""

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)

    def _storage_lock(self):
        return _file_lock(self.path)

    def _load(self) -> None:
        rows: Dict[str, TrackedPrediction] = {}
        if self.path.exists() and self.path.stat().st_size > 0:
            df = pd.read_csv(self.path, dtype=str, keep_default_na=False, low_memory=False)
            for rec in df.to_dict(orient="records"):
                try:
                    p = _from_row(rec)
                except (KeyError, ValueError, TypeError) as exc:
                    log.warning(f"Skipping malformed prediction row {rec.get('id', '?')}: {exc}")
                    continue
                rows[p.id] = p
        self._rows = rows

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        df = pd.DataFrame([_to_row(p) for p in self._rows.values()], columns=CSV_COLUMNS)
        tmp = self.path.with_suffix(".tmp")
        df.to_csv(tmp, index=False)
        tmp.replace(self.path)


# ═══════════════════════════════════════════════════════════════════════════════
# TRACKING ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════════

def track_prediction(
    store: InMemoryPredictionStore,
    game_id: str,
    game_date: str,
    prediction: MatchupPrediction,
    odds: Optional[MarketOdds] = None,
    home_analytics: Optional[TeamAnalytics] = None,
    away_analytics: Optional[TeamAnalytics] = None,
) -> TrackedPrediction:
    """
    Store a fresh prediction, or return the existing unvalidated one for the
    same game. Raises PredictionStorageError when the store write fails.
    """
    existing = store.find_first_unvalidated(game_id)
    if existing is not None:
        log.debug(f"Prediction for game {game_id} already tracked ({existing.id})")
        return existing

    tracked = TrackedPrediction(
        id             = uuid.uuid4().hex,
        game_id        = str(game_id),
        game_date      = str(game_date),
        home_team      = prediction.home_team,
        away_team      = prediction.away_team,
        sport          = prediction.sport,
        predicted_at   = utc_now_iso(),
        prediction     = prediction,
        odds           = odds,
        home_analytics = home_analytics,
        away_analytics = away_analytics,
    )
    try:
        return store.create(tracked)
    except (OSError, ValueError) as exc:
        fallback_id = f"{game_id}-{int(time.time() * 1000)}"
        log.error(f"Could not store prediction for game {game_id}: {exc} (fallback id {fallback_id})")
        raise PredictionStorageError(str(exc), fallback_id) from exc


# ═══════════════════════════════════════════════════════════════════════════════
# KEY / VALUE STORE
# ═══════════════════════════════════════════════════════════════════════════════

class JsonKeyValueStore:
    """Flat JSON object on disk. A missing or unreadable file reads as empty."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists() or self.path.stat().st_size == 0:
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            log.warning(f"Ignoring unreadable key/value file {self.path}: {exc}")
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock, _file_lock(self.path):
            data = self._read()
            data[key] = value
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".tmp")
            tmp.write_text(json.dumps(data, indent=2, sort_keys=True))
            tmp.replace(self.path)
