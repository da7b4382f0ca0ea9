"""
Matchup Engine Feed — Configuration
Paths, provider endpoints, HTTP retry and sync-window settings in one place.
"""

import os
from pathlib import Path
from zoneinfo import ZoneInfo

# ── Paths ────────────────────────────────────────────────────────────────────
BASE_DIR = Path(__file__).parent.resolve()
DATA_DIR = Path(os.getenv("MATCHUP_DATA_DIR", str(BASE_DIR / "data")))

PREDICTIONS_FILE = "tracked_predictions.csv"
KV_STORE_FILE    = "model_config.json"
TEAM_STATS_FILE  = "team_stats.csv"
GAMES_FILE       = "games.csv"
SCHEDULE_FILE    = "schedule.csv"

# ── Completed scores (exact game id) ─────────────────────────────────────────
ODDS_API_KEY = os.getenv("ODDS_API_KEY", "")
ODDS_API_SCORES_URL = (
    "https://api.the-odds-api.com/v4/sports/{sport_key}/scores/"
    "?apiKey={api_key}&daysFrom={days_from}&dateFormat=iso"
)

# ── Games by date (fallback, team-name matching) ─────────────────────────────
SCOREBOARD_URL = (
    "https://site.api.espn.com/apis/site/v2/sports"
    "/{league}/scoreboard?dates={date}&limit=1000{extra}"
)
# Internal sport code → scoreboard league path
SCOREBOARD_LEAGUES = {
    "cbb": "basketball/mens-college-basketball",
    "nba": "basketball/nba",
    "nhl": "hockey/nhl",
    "mlb": "baseball/mlb",
}
# Division I filter for college games
SCOREBOARD_EXTRA = {"cbb": "&groups=50"}

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0",
    "Accept":     "application/json,text/plain,*/*",
}

# ── HTTP Retry ────────────────────────────────────────────────────────────────
REQUEST_TIMEOUT     = int(os.getenv("FEED_TIMEOUT",         "25"))
MAX_RETRIES         = int(os.getenv("FEED_MAX_RETRIES",     "3"))
RETRY_INITIAL_DELAY = float(os.getenv("FEED_RETRY_DELAY",   "1.0"))
RETRY_BACKOFF       = float(os.getenv("FEED_RETRY_BACKOFF", "2.0"))

# ── Batch sync window ─────────────────────────────────────────────────────────
SYNC_SPORT_KEYS = tuple(
    s.strip() for s in os.getenv(
        "SYNC_SPORT_KEYS", "basketball_ncaab,basketball_nba,icehockey_nhl,baseball_mlb"
    ).split(",")
    if s.strip()
)
SCORES_DAYS_FROM     = int(os.getenv("SCORES_DAYS_FROM", "1"))
FALLBACK_WINDOW_DAYS = int(os.getenv("FALLBACK_WINDOW_DAYS", "30"))
MATCH_DATE_TOLERANCE = int(os.getenv("MATCH_DATE_TOLERANCE", "1"))

# Timezone used to determine "today" (PST keeps us safe for late-night games)
TZ = ZoneInfo("America/Los_Angeles")

# ── Rate limiting ─────────────────────────────────────────────────────────────
SPORT_FETCH_SLEEP = float(os.getenv("SPORT_FETCH_SLEEP", "0.10"))
DATE_FETCH_SLEEP  = float(os.getenv("DATE_FETCH_SLEEP",  "0.15"))

# ── Housekeeping ──────────────────────────────────────────────────────────────
PRUNE_AFTER_DAYS = int(os.getenv("PRUNE_AFTER_DAYS", "30"))
