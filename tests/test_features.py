"""
Tests for model_features.py
"""
import pytest

from model_features import build_training_examples, examples_to_frame, extract_features
from model_schemas import (
    FactorBreakdown,
    MarketOdds,
    MatchupPrediction,
    TeamAnalytics,
    TrackedPrediction,
)


# ── Helpers ──────────────────────────────────────────────────────────────────

def _make_tracked(outcome=(78, 70), odds=None, closing_spread=None, sport="cbb",
                  home_analytics=None, away_analytics=None) -> TrackedPrediction:
    prediction = MatchupPrediction(
        home_team="Home Tech", away_team="Away State", sport=sport,
        home_win_prob=0.66, away_win_prob=0.34, home_win_prob_raw=0.7,
        recalibration_applied=True, home_score=75.0, away_score=70.0,
        predicted_spread=5.0, predicted_total=145.0, confidence=74.0,
        factors=FactorBreakdown(net_rating=4.0, matchup=1.0, momentum=0.5,
                                home_court=0.7, total_score=6.2),
    )
    tracked = TrackedPrediction(
        id="p1", game_id="401", game_date="2026-02-01", home_team="Home Tech",
        away_team="Away State", sport=sport, predicted_at="2026-02-01T15:00:00+00:00",
        prediction=prediction, odds=odds, closing_spread=closing_spread,
        home_analytics=home_analytics, away_analytics=away_analytics,
    )
    return tracked.with_outcome(*outcome) if outcome else tracked


# ── Tests ────────────────────────────────────────────────────────────────────

class TestExtractFeatures:

    def test_unvalidated_has_no_example(self):
        assert extract_features(_make_tracked(outcome=None)) is None

    def test_labels_and_errors(self):
        ex = extract_features(_make_tracked(outcome=(78, 70)))
        assert ex.actual_home_win == 1
        assert ex.actual_spread == 8.0
        assert ex.actual_total == 148.0
        assert ex.spread_error == pytest.approx(3.0)
        assert ex.total_error == pytest.approx(3.0)
        assert ex.home_favorite == 1
        assert ex.spread_magnitude == 5.0
        assert ex.total_score == pytest.approx(6.2)
        assert ex.home_win_prob_raw == 0.7

    def test_market_context_prefers_closing_line(self):
        ex = extract_features(_make_tracked(odds=MarketOdds(spread=-3.0, total=142.5),
                                            closing_spread=-4.0))
        assert ex.market_spread == -4.0
        assert ex.market_total == 142.5
        # model says home by 5, market home by 4
        assert ex.spread_diff == pytest.approx(1.0)

    def test_no_market(self):
        ex = extract_features(_make_tracked())
        assert ex.market_spread is None
        assert ex.spread_diff is None

    def test_sport_codes(self):
        assert extract_features(_make_tracked(sport="nba")).sport_code == 1
        assert extract_features(_make_tracked(sport="nfl")).sport_code == -1

    def test_team_features(self):
        ex = extract_features(_make_tracked(
            home_analytics=TeamAnalytics(net_rating=8.0, momentum=20.0, shooting_efficiency=104.0),
            away_analytics=TeamAnalytics(net_rating=-2.0, momentum=-10.0, shooting_efficiency=98.0),
        ))
        assert ex.feature("home_net_rating") == 8.0
        assert ex.feature("net_rating_diff") == pytest.approx(10.0)
        assert ex.feature("momentum_diff") == pytest.approx(30.0)
        assert ex.feature("shooting_efficiency_diff") == pytest.approx(6.0)

    def test_missing_analytics_are_none(self):
        ex = extract_features(_make_tracked(home_analytics=TeamAnalytics()))
        assert ex.feature("home_consistency") == 50.0
        assert ex.feature("away_consistency") is None
        assert ex.feature("net_rating_diff") is None

    def test_feature_lookup_top_level(self):
        ex = extract_features(_make_tracked())
        assert ex.feature("confidence") == 74.0
        assert ex.feature("sport") is None
        assert ex.feature("no_such_feature") is None


class TestBuild:

    def test_skips_unvalidated(self):
        examples = build_training_examples([_make_tracked(), _make_tracked(outcome=None)])
        assert len(examples) == 1

    def test_frame_flattens_team_features(self):
        df = examples_to_frame(build_training_examples([_make_tracked(
            home_analytics=TeamAnalytics(net_rating=3.0))]))
        assert len(df) == 1
        assert "home_net_rating" in df.columns
        assert "team_features" not in df.columns
        assert df.loc[0, "home_net_rating"] == 3.0

    def test_empty_frame(self):
        assert examples_to_frame([]).empty
