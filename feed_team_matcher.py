"""
Team-name equivalence for outcome matching.

Providers spell the same team differently ("UConn Huskies", "Connecticut",
"St. John's (NY)"). Matching goes through one scoring function so the batch
synchronizer never does its own string heuristics.

Scoring (match_score, 0..1):
  1.00  identical after normalization
  0.90  one name contains the other (whole words)
  0.85  first two words match
  0.80  first significant word matches
  else  difflib.SequenceMatcher ratio of the normalized names

Two names are equivalent when the score is at least MATCH_THRESHOLD.
Equivalence is for reconciling provider outcomes and resolving a schedule
name to a stats row. Picking a team's own games out of a results list uses
``same_team`` / ``side_of`` instead: "Kansas" and "Kansas State" score 0.90
but are different teams.
"""

import logging
import re
import unicodedata
from difflib import SequenceMatcher
from typing import Iterable, List, Optional, Tuple

log = logging.getLogger(__name__)

MATCH_THRESHOLD = 0.70

# Words skipped when looking for the first significant word
INSIGNIFICANT_WORDS = {"the", "university", "univ", "college", "of", "u"}

_PUNCT = re.compile(r"[^a-z0-9 ]+")
_SPACES = re.compile(r"\s+")


def normalize_team_name(name: Optional[str]) -> str:
    """Lowercase, strip accents and punctuation, '&' → 'and', collapse whitespace."""
    if not name:
        return ""
    text = unicodedata.normalize("NFKD", str(name))
    text = "".join(c for c in text if not unicodedata.combining(c))
    text = text.lower().replace("&", " and ")
    text = _PUNCT.sub(" ", text)
    return _SPACES.sub(" ", text).strip()


def _first_significant_word(words: List[str]) -> str:
    for w in words:
        if w not in INSIGNIFICANT_WORDS:
            return w
    return words[0] if words else ""


def match_score(a: Optional[str], b: Optional[str]) -> float:
    na, nb = normalize_team_name(a), normalize_team_name(b)
    if not na or not nb:
        return 0.0
    if na == nb:
        return 1.0
    if f" {na} " in f" {nb} " or f" {nb} " in f" {na} ":
        return 0.90

    wa, wb = na.split(), nb.split()
    if len(wa) >= 2 and len(wb) >= 2 and wa[:2] == wb[:2]:
        return 0.85
    if _first_significant_word(wa) == _first_significant_word(wb):
        return 0.80

    return SequenceMatcher(None, na, nb).ratio()


def teams_equivalent(a: Optional[str], b: Optional[str]) -> bool:
    return match_score(a, b) >= MATCH_THRESHOLD


def find_best_match(name: str, candidates: Iterable[str]) -> Optional[Tuple[str, float]]:
    """Best-scoring candidate at or above the threshold, or None."""
    best: Optional[Tuple[str, float]] = None
    for candidate in candidates:
        score = match_score(name, candidate)
        if score >= MATCH_THRESHOLD and (best is None or score > best[1]):
            best = (candidate, score)
            if score == 1.0:
                break
    return best


def same_team(a: Optional[str], b: Optional[str]) -> bool:
    """Strict identity: equal after normalization, never a fuzzy score."""
    na = normalize_team_name(a)
    return bool(na) and na == normalize_team_name(b)


def side_of(team: str, home_team: str, away_team: str) -> Optional[str]:
    """'home' / 'away' when ``team`` is strictly one of the two sides, else None."""
    if same_team(team, home_team):
        return "home"
    if same_team(team, away_team):
        return "away"
    return None
