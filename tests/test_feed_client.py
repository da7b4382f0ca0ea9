"""
Tests for feed_client.py — retry behaviour and provider payload parsing.
No network: requests.get and time.sleep are monkeypatched.
"""
from datetime import date

import pytest
import requests

import feed_client
from feed_client import (
    fetch_games_by_date,
    fetch_with_retry,
    parse_completed_scores,
    parse_games_by_date,
)


# ── Helpers ──────────────────────────────────────────────────────────────────

class _Response:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def json(self):
        return self.payload


def _competitor(side, name, score):
    return {"homeAway": side, "team": {"displayName": name}, "score": score}


def _event(eid, home, away, home_score, away_score, completed=True):
    return {
        "id": eid,
        "date": "2026-02-14T01:00Z",
        "competitions": [{
            "date": "2026-02-14T01:00Z",
            "status": {"type": {"completed": completed}},
            "competitors": [
                _competitor("home", home, home_score),
                _competitor("away", away, away_score),
            ],
        }],
    }


@pytest.fixture
def no_sleep(monkeypatch):
    sleeps = []
    monkeypatch.setattr(feed_client.time, "sleep", lambda s: sleeps.append(s))
    return sleeps


# ── Tests ────────────────────────────────────────────────────────────────────

class TestFetchWithRetry:

    def test_success_first_try(self, monkeypatch, no_sleep):
        monkeypatch.setattr(feed_client.requests, "get", lambda url, headers, timeout: _Response({"ok": 1}))
        assert fetch_with_retry("https://example.test/x") == {"ok": 1}
        assert no_sleep == []

    def test_retries_then_succeeds(self, monkeypatch, no_sleep):
        responses = iter([_Response(None, 503), _Response({"ok": 2})])
        monkeypatch.setattr(feed_client.requests, "get", lambda url, headers, timeout: next(responses))
        assert fetch_with_retry("https://example.test/x") == {"ok": 2}
        assert no_sleep == [1.0]

    def test_raises_after_max_retries(self, monkeypatch, no_sleep):
        calls = []

        def failing(url, headers, timeout):
            calls.append(url)
            raise requests.ConnectionError("refused")

        monkeypatch.setattr(feed_client.requests, "get", failing)
        with pytest.raises(RuntimeError, match="after 3 attempts"):
            fetch_with_retry("https://example.test/x")
        assert len(calls) == 3
        assert no_sleep == [1.0, 2.0]


class TestParseCompletedScores:

    def test_completed_games_only(self):
        payload = [
            {"id": "abc", "completed": True, "commence_time": "2026-02-13T00:00:00Z",
             "home_team": "Duke Blue Devils", "away_team": "Virginia Cavaliers",
             "scores": [{"name": "Virginia Cavaliers", "score": "61"},
                        {"name": "Duke Blue Devils", "score": "74"}]},
            {"id": "live", "completed": False, "home_team": "A", "away_team": "B",
             "scores": [{"name": "A", "score": "10"}, {"name": "B", "score": "8"}]},
            {"id": "noscore", "completed": True, "home_team": "C", "away_team": "D", "scores": None},
        ]
        games = parse_completed_scores(payload, "basketball_ncaab")
        assert len(games) == 1
        g = games[0]
        assert (g.game_id, g.home_score, g.away_score) == ("abc", 74.0, 61.0)
        assert g.sport == "cbb"

    def test_unexpected_payload(self):
        assert parse_completed_scores({"message": "quota exceeded"}) == []


class TestParseGamesByDate:

    def test_closed_games_with_scores(self):
        payload = {"events": [
            _event("1", "Kansas Jayhawks", "Baylor Bears", "80", "75"),
            _event("2", "Iowa Hawkeyes", "Ohio State Buckeyes", "70", "71", completed=False),
            _event("3", "Purdue Boilermakers", "Indiana Hoosiers", "", "60"),
        ]}
        games = parse_games_by_date(payload, "cbb")
        assert [g.game_id for g in games] == ["1"]
        assert games[0].home_team == "Kansas Jayhawks"
        assert games[0].away_score == 75.0
        assert games[0].game_date == "2026-02-14T01:00Z"

    def test_empty(self):
        assert parse_games_by_date({}) == []
        assert parse_games_by_date(None) == []


class TestFetchGamesByDate:

    def test_builds_url_for_date(self, monkeypatch):
        seen = []

        def fake_fetch(url, timeout=25):
            seen.append(url)
            return {"events": [_event("9", "Duke", "UNC", "82", "79")]}

        monkeypatch.setattr(feed_client, "fetch_with_retry", fake_fetch)
        games = fetch_games_by_date(date(2026, 2, 13), "cbb")
        assert len(games) == 1
        assert "dates=20260213" in seen[0]
        assert "mens-college-basketball" in seen[0]
        assert "groups=50" in seen[0]

    def test_nba_has_no_group_filter(self, monkeypatch):
        seen = []
        monkeypatch.setattr(feed_client, "fetch_with_retry",
                            lambda url, timeout=25: seen.append(url) or {"events": []})
        assert fetch_games_by_date("2026-02-13", "nba") == []
        assert "groups=" not in seen[0]

    @pytest.mark.parametrize("sport,path", [
        ("nhl", "/sports/hockey/nhl/scoreboard"),
        ("mlb", "/sports/baseball/mlb/scoreboard"),
        ("nba", "/sports/basketball/nba/scoreboard"),
    ])
    def test_league_path_per_sport(self, monkeypatch, sport, path):
        seen = []
        monkeypatch.setattr(feed_client, "fetch_with_retry",
                            lambda url, timeout=25: seen.append(url) or {"events": []})
        fetch_games_by_date("2026-02-13", sport)
        assert path in seen[0]

    def test_hockey_games_carry_sport(self, monkeypatch):
        monkeypatch.setattr(feed_client, "fetch_with_retry",
                            lambda url, timeout=25: {"events": [_event("7", "Bruins", "Rangers", "4", "2")]})
        games = fetch_games_by_date("2026-02-13", "icehockey_nhl")
        assert [g.sport for g in games] == ["nhl"]

    def test_unsupported_sport(self, monkeypatch):
        monkeypatch.delitem(feed_client.SCOREBOARD_LEAGUES, "mlb")
        with pytest.raises(ValueError):
            fetch_games_by_date("2026-02-13", "mlb")
