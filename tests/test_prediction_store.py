"""
Tests for feed_prediction_store.py — CSV persistence, dedup on tracking,
the single-validation guard and housekeeping.
"""
import threading
from datetime import datetime, timezone

import pandas as pd
import pytest

from feed_prediction_store import (
    CsvPredictionStore,
    InMemoryPredictionStore,
    JsonKeyValueStore,
    PredictionStorageError,
    track_prediction,
)
from model_schemas import MarketOdds, MatchupPrediction, TeamAnalytics, TrackedPrediction


# ── Helpers ──────────────────────────────────────────────────────────────────

def _make_prediction(home="Home Tech", away="Away State", home_p=0.64) -> MatchupPrediction:
    return MatchupPrediction(
        home_team=home, away_team=away, sport="cbb",
        home_win_prob=home_p, away_win_prob=1 - home_p, home_win_prob_raw=home_p,
        recalibration_applied=False, home_score=74.2, away_score=69.8,
        predicted_spread=4.4, predicted_total=144.0, confidence=71.5,
        key_factors=["Home Tech net rating edge (+4.0)"],
    )


def _make_tracked(pid, game_id, predicted_at, validated=False) -> TrackedPrediction:
    tracked = TrackedPrediction(
        id=pid, game_id=game_id, game_date="2026-01-15", home_team="Home Tech",
        away_team="Away State", sport="cbb", predicted_at=predicted_at,
        prediction=_make_prediction(),
    )
    return tracked.with_outcome(70, 65) if validated else tracked


@pytest.fixture(params=["memory", "csv"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryPredictionStore()
    return CsvPredictionStore(tmp_path / "tracked_predictions.csv")


# ── Tests ────────────────────────────────────────────────────────────────────

class TestTracking:

    def test_track_creates_unvalidated(self, store):
        tracked = track_prediction(store, "401", "2026-01-15", _make_prediction())
        assert tracked.validated is False
        assert tracked.actual is None
        assert store.get(tracked.id) == tracked

    def test_same_game_tracked_once(self, store):
        first = track_prediction(store, "401", "2026-01-15", _make_prediction())
        second = track_prediction(store, "401", "2026-01-15", _make_prediction(home_p=0.7))
        assert second.id == first.id
        assert store.tracking_stats()["total"] == 1

    def test_storage_failure_raises_with_fallback_id(self, monkeypatch):
        store = InMemoryPredictionStore()

        def boom(prediction):
            raise OSError("read-only filesystem")

        monkeypatch.setattr(store, "create", boom)
        with pytest.raises(PredictionStorageError) as exc_info:
            track_prediction(store, "401", "2026-01-15", _make_prediction())
        assert exc_info.value.fallback_id.startswith("401-")

    def test_duplicate_id_rejected(self, store):
        tracked = _make_tracked("p1", "401", "2026-01-14T12:00:00+00:00")
        store.create(tracked)
        with pytest.raises(ValueError):
            store.create(tracked)


class TestRecordOutcome:

    def test_validates_exactly_once(self, store):
        tracked = track_prediction(store, "401", "2026-01-15", _make_prediction())
        assert store.record_outcome(tracked.id, 72, 68) is True
        assert store.record_outcome(tracked.id, 50, 90) is False

        saved = store.get(tracked.id)
        assert saved.validated is True
        assert (saved.actual.home_score, saved.actual.away_score) == (72.0, 68.0)
        assert saved.actual.winner == "home"

    def test_unknown_id(self, store):
        assert store.record_outcome("nope", 1, 0) is False

    def test_by_game_id(self, store):
        track_prediction(store, "401", "2026-01-15", _make_prediction())
        assert store.record_outcome_by_game_id("401", 60, 61) is True
        assert store.record_outcome_by_game_id("401", 60, 61) is False
        assert store.list_unvalidated() == []
        assert len(store.list_validated()) == 1

    def test_validated_prediction_cannot_revalidate(self):
        tracked = _make_tracked("p1", "401", "2026-01-14T12:00:00+00:00", validated=True)
        with pytest.raises(ValueError):
            tracked.with_outcome(1, 2)


class TestEnrich:

    def test_closing_line_preferred(self, store):
        track_prediction(store, "401", "2026-01-15", _make_prediction(),
                         odds=MarketOdds(spread=-3.0, total=141.5))
        assert store.enrich("401", closing_spread=-4.5) is True
        saved = store.find_first_unvalidated("401")
        assert saved.market_spread == -4.5
        assert saved.market_total == 141.5

    def test_nothing_to_enrich(self, store):
        assert store.enrich("missing", closing_total=140.0) is False
        track_prediction(store, "401", "2026-01-15", _make_prediction())
        assert store.enrich("401") is False


class TestHousekeeping:

    def test_clear_old_validated_only(self, store):
        store.create(_make_tracked("old-validated", "1", "2025-11-01T12:00:00+00:00", validated=True))
        store.create(_make_tracked("old-pending",   "2", "2025-11-01T12:00:00+00:00"))
        store.create(_make_tracked("new-validated", "3", "2026-01-10T12:00:00+00:00", validated=True))

        removed = store.clear_old_predictions(days=30, now=datetime(2026, 1, 20, tzinfo=timezone.utc))
        assert removed == 1
        assert {p.id for p in store.list_all()} == {"old-pending", "new-validated"}

    def test_tracking_stats(self, store):
        store.create(_make_tracked("a", "1", "2026-01-01T00:00:00+00:00", validated=True))
        store.create(_make_tracked("b", "2", "2026-01-03T00:00:00+00:00"))
        stats = store.tracking_stats()
        assert stats == {
            "total": 2, "validated": 1, "unvalidated": 1,
            "oldest_prediction": "2026-01-01T00:00:00+00:00",
            "newest_prediction": "2026-01-03T00:00:00+00:00",
        }


class TestCsvStore:

    def test_round_trip_nested_fields(self, tmp_path):
        path = tmp_path / "tracked_predictions.csv"
        tracked = track_prediction(
            CsvPredictionStore(path), "401", "2026-01-15", _make_prediction(),
            odds=MarketOdds(home_moneyline=-180, away_moneyline=150, spread=-4.0, total=143.5),
            home_analytics=TeamAnalytics(net_rating=6.5, recent_form="W-W-L", home_advantage=3.5),
        )

        reloaded = CsvPredictionStore(path).get(tracked.id)
        assert reloaded.odds == tracked.odds
        assert reloaded.home_analytics == tracked.home_analytics
        assert reloaded.away_analytics is None
        assert reloaded.prediction.key_factors == ["Home Tech net rating edge (+4.0)"]
        assert reloaded.prediction.home_win_prob_raw == pytest.approx(0.64)

    def test_outcome_visible_to_second_handle(self, tmp_path):
        path = tmp_path / "tracked_predictions.csv"
        a, b = CsvPredictionStore(path), CsvPredictionStore(path)
        tracked = track_prediction(a, "401", "2026-01-15", _make_prediction())
        assert b.record_outcome(tracked.id, 80, 70) is True
        assert a.record_outcome(tracked.id, 80, 70) is False

    def test_concurrent_handles_keep_both_outcomes(self, tmp_path, monkeypatch):
        path = tmp_path / "tracked_predictions.csv"
        a, b = CsvPredictionStore(path), CsvPredictionStore(path)
        a.create(_make_tracked("p1", "401", "2026-01-14T09:00:00+00:00"))
        a.create(_make_tracked("p2", "402", "2026-01-14T09:00:00+00:00"))

        # b writes while a sits between its re-read and its replace
        other = threading.Thread(target=b.record_outcome, args=("p2", 60, 70))
        blocked = []
        original_load = a._load

        def load_then_race():
            original_load()
            if not other.is_alive() and not blocked:
                other.start()
                other.join(timeout=0.2)
                blocked.append(other.is_alive())

        monkeypatch.setattr(a, "_load", load_then_race)
        assert a.record_outcome("p1", 80, 70) is True
        other.join(timeout=5)

        assert blocked == [True]
        fresh = CsvPredictionStore(path)
        assert fresh.get("p1").validated and fresh.get("p2").validated
        assert fresh.get("p2").actual.winner == "away"

    def test_nested_lock_in_one_handle(self, tmp_path):
        path = tmp_path / "tracked_predictions.csv"
        store = CsvPredictionStore(path)
        store.create(_make_tracked("p1", "401", "2026-01-14T09:00:00+00:00"))
        assert store.record_outcome_by_game_id("401", 75, 70) is True
        assert (tmp_path / "tracked_predictions.csv.lock").exists()

    def test_malformed_row_skipped(self, tmp_path):
        path = tmp_path / "tracked_predictions.csv"
        track_prediction(CsvPredictionStore(path), "401", "2026-01-15", _make_prediction())

        df = pd.read_csv(path, dtype=str, keep_default_na=False)
        broken = {c: "" for c in df.columns}
        broken.update({"id": "broken", "game_id": "402", "prediction": "{not json"})
        pd.concat([df, pd.DataFrame([broken])]).to_csv(path, index=False)

        assert [p.game_id for p in CsvPredictionStore(path).list_all()] == ["401"]

    def test_missing_file_is_empty(self, tmp_path):
        assert CsvPredictionStore(tmp_path / "none.csv").list_all() == []


class TestJsonKeyValueStore:

    def test_get_set(self, tmp_path):
        kv = JsonKeyValueStore(tmp_path / "model_config.json")
        assert kv.get("recalibration_params", "fallback") == "fallback"
        kv.set("recalibration_params", {"a": 0.9, "b": 0.0})
        kv.set("other", 3)
        assert JsonKeyValueStore(tmp_path / "model_config.json").get("recalibration_params") == {"a": 0.9, "b": 0.0}

    def test_corrupt_file_reads_empty(self, tmp_path):
        path = tmp_path / "model_config.json"
        path.write_text("{oops")
        assert JsonKeyValueStore(path).get("anything") is None
