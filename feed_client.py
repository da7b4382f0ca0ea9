"""
Matchup Engine Feed — HTTP Client
Fetch layer with retry/backoff plus the payload parsers for the two
completed-game providers. No matching or persistence logic here.
"""

import time
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Union

import requests

from feed_config import (
    DEFAULT_HEADERS,
    REQUEST_TIMEOUT,
    MAX_RETRIES,
    RETRY_INITIAL_DELAY,
    RETRY_BACKOFF,
    ODDS_API_KEY,
    ODDS_API_SCORES_URL,
    SCOREBOARD_URL,
    SCOREBOARD_LEAGUES,
    SCOREBOARD_EXTRA,
    SCORES_DAYS_FROM,
)
from model_config import normalize_sport

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletedGame:
    """A final score as reported by a provider."""
    game_id:    str
    home_team:  str
    away_team:  str
    home_score: float
    away_score: float
    game_date:  str = ""      # ISO date or datetime
    sport:      str = ""


def _safe_int(val: Any, default: Optional[int] = None) -> Optional[int]:
    try:
        return int(float(val))
    except (TypeError, ValueError):
        return default


def fetch_with_retry(url: str, timeout: int = REQUEST_TIMEOUT) -> Any:
    """
    GET a URL with exponential backoff retry.
    Raises RuntimeError if all attempts fail.
    """
    delay = RETRY_INITIAL_DELAY
    last_exc: Exception = RuntimeError("No attempts made")

    for attempt in range(1, MAX_RETRIES + 1):
        try:
            resp = requests.get(url, headers=DEFAULT_HEADERS, timeout=timeout)
            resp.raise_for_status()
            return resp.json()
        except Exception as exc:
            last_exc = exc
            if attempt < MAX_RETRIES:
                log.warning(f"Attempt {attempt}/{MAX_RETRIES} failed for {_redact(url)}: {exc} — retrying in {delay}s")
                time.sleep(delay)
                delay *= RETRY_BACKOFF
            else:
                log.error(f"All {MAX_RETRIES} attempts failed for {_redact(url)}: {exc}")

    raise RuntimeError(f"fetch_with_retry failed after {MAX_RETRIES} attempts: {last_exc}") from last_exc


def _redact(url: str) -> str:
    if ODDS_API_KEY and ODDS_API_KEY in url:
        return url.replace(ODDS_API_KEY, "***")
    return url


# ============================================================================
# COMPLETED SCORES (exact provider game id)
# ============================================================================

def parse_completed_scores(payload: Any, sport_key: str = "") -> List[CompletedGame]:
    """
    Completed games from a scores payload:

        [{"id", "completed", "commence_time", "home_team", "away_team",
          "scores": [{"name": ..., "score": "71"}, ...]}, ...]

    Scores are matched to sides by exact team name; games without both
    scores are dropped.
    """
    games: List[CompletedGame] = []
    if not isinstance(payload, list):
        return games

    for raw in payload:
        if not isinstance(raw, dict) or not raw.get("completed"):
            continue
        scores = raw.get("scores") or []
        if len(scores) < 2:
            continue
        home, away = raw.get("home_team", ""), raw.get("away_team", "")
        home_score = away_score = None
        for s in scores:
            score = _safe_int(s.get("score"))
            if score is None:
                continue
            if s.get("name") == home:
                home_score = score
            elif s.get("name") == away:
                away_score = score
        if home_score is None or away_score is None:
            continue
        games.append(CompletedGame(
            game_id    = str(raw.get("id", "")),
            home_team  = home,
            away_team  = away,
            home_score = float(home_score),
            away_score = float(away_score),
            game_date  = str(raw.get("commence_time", "")),
            sport      = normalize_sport(raw.get("sport_key") or sport_key),
        ))
    return games


def fetch_completed_scores(sport_key: str, days_from: int = SCORES_DAYS_FROM) -> List[CompletedGame]:
    """Completed games for a provider sport key over the last ``days_from`` days."""
    url = ODDS_API_SCORES_URL.format(sport_key=sport_key, api_key=ODDS_API_KEY, days_from=days_from)
    log.debug(f"Fetching completed scores: {sport_key} (daysFrom={days_from})")
    return parse_completed_scores(fetch_with_retry(url), sport_key)


# ============================================================================
# GAMES BY DATE (fallback, matched on team names)
# ============================================================================

def _scoreboard_event(event: Dict[str, Any], sport: str) -> Optional[CompletedGame]:
    comps = event.get("competitions", [])
    if not comps:
        return None
    comp = comps[0]
    if not comp.get("status", {}).get("type", {}).get("completed", False):
        return None

    home_team = away_team = ""
    home_score = away_score = None
    for c in comp.get("competitors", []):
        ha    = c.get("homeAway", "").lower()
        tname = c.get("team", {}).get("displayName", c.get("team", {}).get("name", ""))
        score = _safe_int(c.get("score"))
        if ha == "home":
            home_team, home_score = tname, score
        elif ha == "away":
            away_team, away_score = tname, score

    if not home_team or not away_team or home_score is None or away_score is None:
        return None
    return CompletedGame(
        game_id    = str(event.get("id", "")),
        home_team  = home_team,
        away_team  = away_team,
        home_score = float(home_score),
        away_score = float(away_score),
        game_date  = str(comp.get("date", event.get("date", ""))),
        sport      = sport,
    )


def parse_games_by_date(payload: Any, sport: str = "cbb") -> List[CompletedGame]:
    """Closed games with both scores present from a scoreboard payload."""
    games: List[CompletedGame] = []
    if not isinstance(payload, dict):
        return games
    for event in payload.get("events", []) or []:
        game = _scoreboard_event(event, sport)
        if game is not None:
            games.append(game)
    return games


def fetch_games_by_date(game_date: Union[str, date], sport: str = "cbb") -> List[CompletedGame]:
    """Completed games for one date (YYYY-MM-DD, YYYYMMDD or date)."""
    sport = normalize_sport(sport)
    league = SCOREBOARD_LEAGUES.get(sport)
    if league is None:
        raise ValueError(f"No by-date provider for sport {sport!r}")
    day = game_date.strftime("%Y%m%d") if isinstance(game_date, date) else str(game_date).replace("-", "")
    url = SCOREBOARD_URL.format(league=league, date=day, extra=SCOREBOARD_EXTRA.get(sport, ""))
    log.debug(f"Fetching scoreboard: {sport} {day}")
    return parse_games_by_date(fetch_with_retry(url), sport)

