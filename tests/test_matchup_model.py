"""
Tests for model_matchup.py — factor model, calibration hand-off,
alternate spreads and value-bet detection.
"""
import numpy as np
import pytest

from model_config import ModelWeights, get_league_baseline
from model_matchup import (
    calculate_alternate_spread,
    compute_factors,
    identify_value_bets,
    implied_margin,
    implied_probability,
    logistic,
    predict_matchup,
)
from model_recalibration import IDENTITY, RecalibrationParams, apply_platt
from model_schemas import (
    MarketOdds,
    MoneylineBet,
    SpreadBet,
    TeamAnalytics,
    TeamStats,
    TotalBet,
    describe_value_bet,
)


# ── Helpers ──────────────────────────────────────────────────────────────────

def _make_analytics(net=0.0, momentum=0.0, consistency=75.0, home_adv=0.0, shooting=100.0):
    return TeamAnalytics(
        offensive_rating    = 100.0 + net / 2,
        defensive_rating    = 100.0 - net / 2,
        net_rating          = net,
        momentum            = momentum,
        consistency         = consistency,
        home_advantage      = home_adv,
        shooting_efficiency = shooting,
    )


def _make_stats(name, ppg=72.0, allowed=72.0, sport="cbb"):
    return TeamStats.build(name, sport=sport, points_per_game=ppg, points_allowed_per_game=allowed)


def _predict(home=None, away=None, **kwargs):
    return predict_matchup(
        away or _make_analytics(),
        home or _make_analytics(),
        _make_stats("Away State"),
        _make_stats("Home Tech"),
        **kwargs,
    )


# ── Tests ────────────────────────────────────────────────────────────────────

class TestLogistic:

    def test_midpoint(self):
        assert logistic(0.0) == 0.5

    def test_extremes_do_not_overflow(self):
        assert logistic(1000.0) == pytest.approx(1.0)
        assert logistic(-1000.0) == pytest.approx(0.0)

    def test_implied_margin(self):
        cbb = get_league_baseline("cbb")
        assert implied_margin(0.5, cbb) == 0.0
        assert implied_margin(0.3, cbb) == pytest.approx(-implied_margin(0.7, cbb))
        # Probabilities past the floor give the same capped margin
        assert implied_margin(0.9999, cbb) == pytest.approx(5.0 * np.log(99.0))


class TestFactors:

    def test_identical_teams_score_zero(self):
        f = compute_factors(_make_analytics(), _make_analytics(),
                            get_league_baseline("cbb"), ModelWeights())
        assert f.total_score == 0.0

    def test_total_is_sum_of_terms(self):
        f = compute_factors(_make_analytics(net=8, momentum=20, home_adv=3.5),
                            _make_analytics(net=-2, momentum=-10),
                            get_league_baseline("cbb"), ModelWeights())
        assert f.total_score == pytest.approx(f.net_rating + f.matchup + f.momentum + f.home_court)
        assert f.net_rating == pytest.approx(0.40 * 10)
        assert f.momentum == pytest.approx(0.15 * 30 / 200 * 100)
        assert f.home_court == pytest.approx(0.15 * 3.5 / 72 * 100)


class TestPredictMatchup:

    def test_identical_sides_are_coin_flip(self):
        p = _predict()
        assert p.home_win_prob == 0.5
        assert p.away_win_prob == 0.5
        assert p.predicted_spread == 0.0

    def test_net_rating_scenario(self):
        p = _predict(home=_make_analytics(net=10), away=_make_analytics(net=-5))
        assert p.home_win_prob > 0.5
        assert p.predicted_spread > 0

    @pytest.mark.parametrize("home_net,away_net", [(15, -15), (-15, 15), (3, 2), (-1, 4)])
    def test_spread_sign_matches_scores(self, home_net, away_net):
        p = _predict(home=_make_analytics(net=home_net), away=_make_analytics(net=away_net))
        if p.home_score > p.away_score:
            assert p.predicted_spread > 0
        elif p.home_score < p.away_score:
            assert p.predicted_spread < 0
        assert p.predicted_spread == pytest.approx(p.home_score - p.away_score)
        assert p.predicted_total == pytest.approx(p.home_score + p.away_score)

    def test_spread_never_opposes_probability(self):
        rng = np.random.default_rng(11)
        for _ in range(200):
            home = TeamAnalytics(
                offensive_rating = float(rng.uniform(80, 120)),
                defensive_rating = float(rng.uniform(80, 120)),
                net_rating       = float(rng.uniform(-20, 20)),
                momentum         = float(rng.uniform(-100, 100)),
                home_advantage   = float(rng.choice([0.0, 3.5])),
            )
            away = TeamAnalytics(
                offensive_rating = float(rng.uniform(80, 120)),
                defensive_rating = float(rng.uniform(80, 120)),
                net_rating       = float(rng.uniform(-20, 20)),
                momentum         = float(rng.uniform(-100, 100)),
            )
            p = predict_matchup(away, home,
                                _make_stats("Away State", ppg=float(rng.uniform(60, 85))),
                                _make_stats("Home Tech", ppg=float(rng.uniform(60, 85))))
            assert p.predicted_spread * (p.home_win_prob - 0.5) >= 0

    def test_weak_home_team_with_momentum_not_favored_by_spread_alone(self):
        home = TeamAnalytics(offensive_rating=100.0, defensive_rating=110.0,
                             net_rating=-10.0, momentum=30.0)
        p = _predict(home=home, away=_make_analytics())
        assert (p.predicted_spread > 0) == (p.home_win_prob > 0.5)

    def test_calibrated_probability_sets_the_margin(self):
        params = RecalibrationParams(a=1.0, b=-1.0, trained=True, n_samples=40)
        p = _predict(home=_make_analytics(net=4), params=params)
        assert p.home_win_prob_raw > 0.5 > p.home_win_prob
        assert p.predicted_spread < 0

    def test_home_bonus_in_scores(self):
        p = _predict(home=_make_analytics(home_adv=3.5), away=_make_analytics(home_adv=3.5))
        assert p.home_win_prob == 0.5
        assert p.predicted_spread == 0.0
        assert p.predicted_total == pytest.approx(72.0 * 2 + 3.5)

    @pytest.mark.parametrize("consistency", [0.0, 30.0, 60.0, 77.0, 100.0])
    def test_confidence_bounded(self, consistency):
        p = _predict(home=_make_analytics(consistency=consistency),
                     away=_make_analytics(consistency=consistency))
        assert 60.0 <= p.confidence <= 95.0

    def test_probabilities_sum_to_one(self):
        p = _predict(home=_make_analytics(net=4, momentum=40))
        assert p.home_win_prob + p.away_win_prob == pytest.approx(1.0)

    def test_scores_clamped_to_league_bounds(self):
        league = get_league_baseline("cbb")
        p = _predict(home=_make_analytics(net=400), away=_make_analytics(net=-400))
        assert league.score_min <= p.away_score <= p.home_score <= league.score_max

    def test_identity_params_leave_raw_probability(self):
        home = _make_analytics(net=6)
        p = _predict(home=home, params=IDENTITY)
        assert p.recalibration_applied is False
        assert p.home_win_prob == p.home_win_prob_raw

    def test_trained_params_applied_but_raw_kept(self):
        params = RecalibrationParams(a=0.5, b=-0.2, trained=True, n_samples=40)
        home = _make_analytics(net=6)
        baseline = _predict(home=home)
        p = _predict(home=home, params=params)
        assert p.recalibration_applied is True
        assert p.home_win_prob_raw == baseline.home_win_prob_raw
        assert p.home_win_prob == pytest.approx(apply_platt(baseline.home_win_prob_raw, params))

    def test_key_factors_ranked(self):
        p = _predict(home=_make_analytics(net=30, momentum=80, home_adv=3.5),
                     away=_make_analytics(net=0))
        assert p.key_factors
        assert "net rating" in p.key_factors[0]

    def test_sport_defaults_to_home_stats(self):
        p = predict_matchup(_make_analytics(), _make_analytics(),
                            _make_stats("A", 112, 112, "nba"), _make_stats("B", 112, 112, "nba"))
        assert p.sport == "nba"
        assert p.home_score == pytest.approx(112.0)

    def test_alternate_spread_attached(self):
        p = _predict(home=_make_analytics(net=12))
        assert p.alternate_spread is not None
        assert p.alternate_spread.spread * 2 == round(p.alternate_spread.spread * 2)


class TestAlternateSpread:

    def test_buy_past_key_number_high_confidence(self):
        alt = calculate_alternate_spread(3.0, 0.62, 82.0, "Home", "Away")
        assert (alt.direction, alt.team, alt.risk_level) == ("buy", "home", "aggressive")
        assert alt.spread == 4.5
        assert alt.confidence == 77.0

    def test_sell_past_key_number(self):
        alt = calculate_alternate_spread(-7.0, 0.3, 72.0, "Home", "Away")
        assert (alt.direction, alt.team) == ("sell", "home")
        assert alt.spread == -5.5

    def test_low_confidence_sells_safer(self):
        alt = calculate_alternate_spread(8.6, 0.7, 60.0, "Home", "Away")
        assert alt.risk_level == "safer"
        assert alt.confidence == 70.0

    def test_confidence_clamped(self):
        alt = calculate_alternate_spread(9.0, 0.9, 95.0, "Home", "Away")
        assert 50.0 <= alt.confidence <= 95.0


class TestValueBets:

    def test_implied_probability(self):
        assert implied_probability(-150) == pytest.approx(60.0)
        assert implied_probability(150) == pytest.approx(40.0)

    def test_no_odds_no_bets(self):
        p = _predict()
        assert identify_value_bets(p, None) == []
        assert p.value_bets == []

    def test_moneyline_edge(self):
        p = _predict(home=_make_analytics(net=20))      # home ≈ 0.69
        bets = identify_value_bets(p, MarketOdds(home_moneyline=-150, away_moneyline=130))
        ml = [b for b in bets if isinstance(b, MoneylineBet)]
        assert [b.side for b in ml] == ["home"]
        assert ml[0].edge > 5
        assert p.value_bets == bets

    def test_spread_uses_home_line_convention(self):
        p = _predict(home=_make_analytics(net=40))
        assert p.predicted_spread > 6
        # Market has home only -1.5: model likes home
        bets = identify_value_bets(p, MarketOdds(spread=-1.5))
        spread = [b for b in bets if isinstance(b, SpreadBet)]
        assert len(spread) == 1 and spread[0].side == "home"
        assert describe_value_bet(spread[0]) == "Home -1.5"

    def test_spread_within_threshold_ignored(self):
        p = _predict()
        assert identify_value_bets(p, MarketOdds(spread=-2.0)) == []

    def test_total_direction(self):
        p = _predict()
        bets = identify_value_bets(p, MarketOdds(total=p.predicted_total + 10))
        assert len(bets) == 1 and isinstance(bets[0], TotalBet)
        assert bets[0].direction == "under"

    def test_total_threshold_override(self):
        p = _predict()
        weights = ModelWeights(total_edge_points=20.0)
        assert identify_value_bets(p, MarketOdds(total=p.predicted_total - 10), weights) == []
