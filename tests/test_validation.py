"""
Tests for model_validation.py — per-game grading and aggregate metrics.
"""
import dataclasses
from datetime import date

import pytest

from model_schemas import ActualOutcome, MarketOdds, MatchupPrediction, TrackedPrediction
from model_validation import (
    ats_cover,
    compare_metrics,
    compute_validation_metrics,
    grade_cover,
    grade_total,
    holdout_recalibration_check,
    records_from_tracked,
    split_by_date,
    split_by_time_fraction,
    validate_game_prediction,
)


# ── Helpers ──────────────────────────────────────────────────────────────────

def _make_prediction(home=75.0, away=70.0, home_p=0.65) -> MatchupPrediction:
    return MatchupPrediction(
        home_team="Home", away_team="Away", sport="cbb",
        home_win_prob=home_p, away_win_prob=1 - home_p, home_win_prob_raw=home_p,
        recalibration_applied=False, home_score=home, away_score=away,
        predicted_spread=round(home - away, 1), predicted_total=home + away,
        confidence=70.0,
    )


def _make_tracked(pid, home_score=None, away_score=None, spread=None, total=None):
    tracked = TrackedPrediction(
        id=pid, game_id=f"g{pid}", game_date="2026-02-01", home_team="Home",
        away_team="Away", sport="cbb", predicted_at="2026-02-01T12:00:00+00:00",
        prediction=_make_prediction(),
        odds=MarketOdds(spread=spread, total=total) if spread is not None or total is not None else None,
    )
    if home_score is not None:
        tracked = tracked.with_outcome(home_score, away_score)
    return tracked


def _dated(pid, game_date, home_p=0.65, home_won=True):
    tracked = dataclasses.replace(_make_tracked(pid), game_date=game_date,
                                  prediction=_make_prediction(home_p=home_p))
    return tracked.with_outcome(80, 70) if home_won else tracked.with_outcome(70, 80)


def _overconfident_season(n=40):
    """0.9 / 0.1 calls that land only half the time, two games a day from Jan 1."""
    return [
        _dated(f"s{i}", f"2026-01-{i // 2 + 1:02d}", home_p=0.9 if i % 2 == 0 else 0.1,
               home_won=i % 4 in (0, 1))
        for i in range(n)
    ]


# ── Tests ────────────────────────────────────────────────────────────────────

class TestGrading:

    def test_home_bet_covers(self):
        # Model home by 5, market home −3.5 (expects +3.5), home wins by 6
        side, cover = ats_cover(5.0, -3.5, 6.0)
        assert side == "home"
        assert cover == pytest.approx(2.5)
        assert grade_cover(cover) == "win"

    def test_away_bet(self):
        side, cover = ats_cover(-2.0, 1.5, -5.0)
        assert side == "away"
        assert cover == pytest.approx(3.5)

    def test_zero_predicted_spread_bets_away(self):
        side, _ = ats_cover(0.0, -1.0, 3.0)
        assert side == "away"

    @pytest.mark.parametrize("cover,grade", [(0.0, "push"), (0.49, "push"), (-0.49, "push"),
                                             (0.5, "win"), (-0.5, "loss")])
    def test_push_threshold(self, cover, grade):
        assert grade_cover(cover) == grade

    def test_total_grading(self):
        assert grade_total(150.0, 145.5, 151.0) == "win"
        assert grade_total(150.0, 145.5, 140.0) == "loss"
        assert grade_total(150.0, 145.0, 145.0) == "push"
        assert grade_total(145.0, 145.0, 150.0) is None


class TestValidateGame:

    def test_errors_and_winner(self):
        rec = validate_game_prediction(_make_prediction(75, 70), ActualOutcome(68, 72))
        assert rec.home_error == 7.0
        assert rec.away_error == 2.0
        assert rec.actual_spread == -4.0
        assert rec.spread_error == 9.0
        assert rec.total_error == 5.0
        assert rec.actual_winner == "away"
        assert rec.winner_correct is False
        assert rec.ats_result is None

    def test_market_grades_attached(self):
        rec = validate_game_prediction(_make_prediction(75, 70), ActualOutcome(80, 70),
                                       market_spread=-4.0, market_total=140.0)
        assert rec.ats_result == "win"
        assert rec.ou_result == "win"

    def test_validated_tracked_only(self):
        preds = [_make_tracked("1", 80, 70, spread=-3.0), _make_tracked("2")]
        records = records_from_tracked(preds)
        assert [r.game_id for r in records] == ["g1"]
        assert records[0].market_spread == -3.0


class TestMetrics:

    def test_empty(self):
        m = compute_validation_metrics([])
        assert m.game_count == 0
        assert m.ats_record == "0-0-0"

    def test_aggregate(self):
        records = [
            validate_game_prediction(_make_prediction(75, 70, 0.7), ActualOutcome(77, 70), market_spread=-3.0),
            validate_game_prediction(_make_prediction(75, 70, 0.7), ActualOutcome(70, 72), market_spread=-3.0),
            validate_game_prediction(_make_prediction(70, 72, 0.4), ActualOutcome(68, 70.5), market_spread=2.5),
            validate_game_prediction(_make_prediction(70, 72, 0.4), ActualOutcome(70, 70.5), market_spread=0.5),
        ]
        m = compute_validation_metrics(records)
        assert m.game_count == 4
        assert m.winner_accuracy == pytest.approx(75.0)
        assert (m.ats_wins, m.ats_losses, m.ats_pushes) == (1, 1, 2)
        assert m.ats_win_rate == pytest.approx(50.0)
        assert 0.0 < m.brier_score < 1.0
        assert m.log_loss > 0.0
        assert m.rmse_spread >= m.mae_spread


class TestTimeSplits:

    def test_split_by_date(self):
        items = [_dated("a", "2026-01-05"), _dated("b", "2026-01-10"), _dated("c", "2026-01-12")]
        train, test = split_by_date(items, "2026-01-10")
        assert [p.id for p in train] == ["a"]
        assert [p.id for p in test] == ["b", "c"]
        assert split_by_date(items, date(2026, 1, 11))[1][0].id == "c"

    def test_split_by_fraction_holds_out_latest(self):
        items = [_dated(str(d), f"2026-01-{d:02d}") for d in (9, 2, 7, 1, 5, 3, 8, 4, 6, 10)]
        train, test = split_by_time_fraction(items, 0.3)
        assert [p.id for p in test] == ["8", "9", "10"]
        assert len(train) == 7
        assert max(p.game_date for p in train) < min(p.game_date for p in test)

    def test_split_by_fraction_validates(self):
        with pytest.raises(ValueError):
            split_by_time_fraction([], 1.0)
        only = _dated("a", "2026-01-01")
        assert split_by_time_fraction([only], 0.2) == ([only], [])


class TestCompareMetrics:

    def test_better_probabilities_improve(self):
        outcome = ActualOutcome(80, 70)
        confident = [validate_game_prediction(_make_prediction(home_p=0.9), outcome) for _ in range(4)]
        timid = [validate_game_prediction(_make_prediction(home_p=0.55), outcome) for _ in range(4)]

        comparison = compare_metrics(compute_validation_metrics(timid), compute_validation_metrics(confident))
        assert comparison.brier_diff < 0
        assert comparison.log_loss_diff < 0
        assert comparison.mae_spread_diff == pytest.approx(0.0)
        assert comparison.improved is True
        assert compare_metrics(comparison.candidate, comparison.baseline).improved is False
        assert comparison.to_dict()["game_count"] == 4


class TestHoldoutRecalibration:

    def test_overconfident_model_improves_on_later_games(self):
        checked = holdout_recalibration_check(_overconfident_season(), test_fraction=0.2)
        assert checked is not None
        params, comparison = checked
        assert params.a < 1.0
        assert comparison.game_count == 8
        assert comparison.brier_diff < 0
        assert comparison.improved is True

    def test_too_little_history(self):
        assert holdout_recalibration_check(_overconfident_season(20)) is None

    def test_unvalidated_ignored(self):
        season = _overconfident_season(25) + [_make_tracked(f"open{i}") for i in range(10)]
        params, comparison = holdout_recalibration_check(season)
        assert comparison.game_count == 5
