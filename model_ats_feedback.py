#!/usr/bin/env python3
"""
model_ats_feedback.py — ATS Feedback Report

Looks back over validated predictions that carried a market spread and asks
which inputs push or pull against-the-spread results. Used for model tuning:
which sports to stop betting, whether confidence is ranked correctly, which
spread sizes and totals the model struggles with.

WHAT IT COMPUTES
─────────────────────────────────────────────────────────────────────────────
Overall       : W-L-P, win rate over decided bets, net units at -110
Correlations  : per feature, win rate at/above vs below the median and the
                Pearson r between the feature and the cover outcome
Segments      : sport, confidence band, home/away favorite, spread size,
                total bucket
Bias table    : every segment ranked worst first, weighted by its share
                of decided bets
Actions       : disable / downweight / recalibrate / investigate
Bootstrap CI  : 95% interval on the win rate (overall ≥ 50, sport ≥ 20)

Bet side rule: the model takes home when it predicts home to win
(predicted spread > 0), otherwise away. A cover within half a point of the
line is a push and counts as neither win nor loss.

Usage:
    python model_ats_feedback.py
    python model_ats_feedback.py --data-dir data2 --min-samples 30
    python model_ats_feedback.py --seed 7        # reproducible bootstrap
"""

import argparse
import logging
import warnings
from collections import OrderedDict
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from feed_config import DATA_DIR, PREDICTIONS_FILE
from feed_prediction_store import CsvPredictionStore
from model_config import VIG_BREAK_EVEN, WIN_PAYOUT_UNITS
from model_features import ANALYTICS_FEATURES, DIFF_FEATURES, TrainingExample, build_training_examples
from model_validation import ats_cover, grade_cover

warnings.filterwarnings("ignore")

log = logging.getLogger(__name__)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

MIN_FEATURE_SAMPLES  = 10
MIN_DECIDED_FOR_FLAG = 10
MIN_BOOTSTRAP_OVERALL = 50
MIN_BOOTSTRAP_SPORT   = 20
BOOTSTRAP_ITERATIONS  = 1000
DIRECTION_BAND        = 0.05

DISABLE_BELOW     = 35.0
DOWNWEIGHT_BELOW  = 45.0
INVESTIGATE_BELOW = 40.0
CONFIDENCE_INVERSION_GAP = 5.0

_COVER_CODE = {"win": 1, "loss": -1, "push": 0}
_SEVERITY_ORDER = {"high": 0, "medium": 1, "low": 2}

# Top-level model inputs, then per-team analytics and home − away diffs
CORE_FEATURES = (
    "home_win_prob",
    "home_win_prob_raw",
    "total_score",
    "net_rating_term",
    "matchup_term",
    "momentum_term",
    "home_court_term",
    "confidence",
    "predicted_spread",
    "predicted_total",
    "spread_magnitude",
    "spread_diff",
)
FEATURE_NAMES = (
    CORE_FEATURES
    + tuple(f"{side}_{name}" for name in ANALYTICS_FEATURES for side in ("away", "home"))
    + tuple(f"{name}_diff" for name in DIFF_FEATURES)
)


# ═══════════════════════════════════════════════════════════════════════════════
# RESULT TYPES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class ATSSample:
    example:     TrainingExample
    cover:       int        # 1 cover, -1 no cover, 0 push
    bet_on_home: bool
    line:        float      # home margin the market expects (−market spread)


@dataclass
class ATSTally:
    sample_count: int = 0
    wins:         int = 0
    losses:       int = 0
    pushes:       int = 0
    win_rate:     float = 0.0
    net_units:    float = 0.0

    @property
    def decided(self) -> int:
        return self.wins + self.losses

    @property
    def record(self) -> str:
        return f"{self.wins}-{self.losses}-{self.pushes}"


@dataclass
class FeatureCorrelation:
    feature:               str
    sample_count:          int
    win_rate_above_median: float
    win_rate_below_median: float
    delta:                 float
    correlation:           Optional[float]


@dataclass
class FeatureImportance:
    feature:      str
    importance:   float
    direction:    str       # positive / negative / neutral
    sample_count: int


@dataclass
class SegmentResult:
    segment:      str
    value:        str
    sample_count: int
    wins:         int
    losses:       int
    pushes:       int
    win_rate:     float

    @property
    def decided(self) -> int:
        return self.wins + self.losses

    @property
    def net_units(self) -> float:
        return net_units(self.wins, self.losses)


@dataclass
class BiasEntry:
    segment:               str
    value:                 str
    sample_count:          int
    wins:                  int
    losses:                int
    win_rate:              float
    weighted_contribution: float
    net_units:             float


@dataclass
class Recommendation:
    type:             str   # disable / downweight / recalibrate / investigate
    target:           str
    reason:           str
    severity:         str   # high / medium / low
    suggested_action: str = ""


@dataclass
class WinRateInterval:
    win_rate: float
    lower:    float
    upper:    float


@dataclass
class ATSFeedbackReport:
    overall:              ATSTally
    feature_correlations: List[FeatureCorrelation] = field(default_factory=list)
    feature_importance:   List[FeatureImportance] = field(default_factory=list)
    segmentations:        Dict[str, List[SegmentResult]] = field(default_factory=dict)
    bias_analysis:        List[BiasEntry] = field(default_factory=list)
    recommendations:      List[Recommendation] = field(default_factory=list)
    confidence_interval:  Optional[WinRateInterval] = None
    sport_intervals:      Dict[str, WinRateInterval] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return asdict(self)


# ═══════════════════════════════════════════════════════════════════════════════
# SAMPLES
# ═══════════════════════════════════════════════════════════════════════════════

def net_units(wins: int, losses: int) -> float:
    """Flat 1-unit bets at -110: a win pays 0.91, a loss costs 1."""
    return wins * WIN_PAYOUT_UNITS - losses


def _win_rate(wins: int, losses: int) -> float:
    decided = wins + losses
    return wins / decided * 100 if decided > 0 else 0.0


def get_ats_samples(examples: Sequence[TrainingExample]) -> List[ATSSample]:
    """One sample per example with a market spread."""
    samples: List[ATSSample] = []
    for ex in examples:
        if ex.market_spread is None:
            continue
        side, cover = ats_cover(ex.predicted_spread, ex.market_spread, ex.actual_spread)
        samples.append(ATSSample(
            example     = ex,
            cover       = _COVER_CODE[grade_cover(cover)],
            bet_on_home = side == "home",
            line        = -ex.market_spread,
        ))
    return samples


def tally(samples: Sequence[ATSSample]) -> ATSTally:
    wins   = sum(1 for s in samples if s.cover == 1)
    losses = sum(1 for s in samples if s.cover == -1)
    pushes = sum(1 for s in samples if s.cover == 0)
    return ATSTally(
        sample_count = len(samples),
        wins         = wins,
        losses       = losses,
        pushes       = pushes,
        win_rate     = _win_rate(wins, losses),
        net_units    = net_units(wins, losses),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# FEATURE CORRELATION
# ═══════════════════════════════════════════════════════════════════════════════

def pearson(x: Sequence[float], y: Sequence[float]) -> Optional[float]:
    """Pearson r, or None with fewer than 3 points or no variance."""
    if len(x) != len(y) or len(x) < 3:
        return None
    xa = np.asarray(x, dtype=float)
    ya = np.asarray(y, dtype=float)
    dx = xa - xa.mean()
    dy = ya - ya.mean()
    den = np.sqrt((dx * dx).sum() * (dy * dy).sum())
    if den < 1e-10:
        return None
    return float((dx * dy).sum() / den)


def feature_correlation(samples: Sequence[ATSSample], feature: str) -> Optional[FeatureCorrelation]:
    with_value = [(s, s.example.feature(feature)) for s in samples]
    with_value = [(s, v) for s, v in with_value if v is not None and np.isfinite(v)]
    if len(with_value) < MIN_FEATURE_SAMPLES:
        return None

    values = sorted(v for _, v in with_value)
    median = values[len(values) // 2]

    above = tally([s for s, v in with_value if v >= median])
    below = tally([s for s, v in with_value if v < median])

    return FeatureCorrelation(
        feature               = feature,
        sample_count          = len(with_value),
        win_rate_above_median = above.win_rate,
        win_rate_below_median = below.win_rate,
        delta                 = above.win_rate - below.win_rate,
        correlation           = pearson([v for _, v in with_value],
                                        [s.cover for s, _ in with_value]),
    )


def rank_feature_importance(correlations: Sequence[FeatureCorrelation]) -> List[FeatureImportance]:
    ranked = []
    for c in correlations:
        if c.correlation is None:
            continue
        if c.correlation > DIRECTION_BAND:
            direction = "positive"
        elif c.correlation < -DIRECTION_BAND:
            direction = "negative"
        else:
            direction = "neutral"
        ranked.append(FeatureImportance(
            feature      = c.feature,
            importance   = abs(c.correlation),
            direction    = direction,
            sample_count = c.sample_count,
        ))
    return sorted(ranked, key=lambda f: f.importance, reverse=True)


# ═══════════════════════════════════════════════════════════════════════════════
# SEGMENTATION
# ═══════════════════════════════════════════════════════════════════════════════

def confidence_band(ex: TrainingExample) -> str:
    if ex.confidence < 50:
        return "low(<50)"
    if ex.confidence < 70:
        return "medium(50-70)"
    return "high(>=70)"


def favorite_side(ex: TrainingExample) -> str:
    return "home_favorite" if ex.predicted_spread > 0 else "away_favorite"


def spread_bucket(ex: TrainingExample) -> str:
    mag = abs(ex.predicted_spread)
    if mag < 3:
        return "small(<3)"
    if mag < 7:
        return "medium(3-7)"
    if mag < 12:
        return "large(7-12)"
    return "very_large(>=12)"


def total_bucket(ex: TrainingExample) -> str:
    t = ex.predicted_total
    if t < 130:
        return "low(<130)"
    if t < 145:
        return "medium(130-145)"
    if t < 160:
        return "high(145-160)"
    return "very_high(>=160)"


# segment name → (labeller, display order; None keeps first-seen order)
SEGMENTERS = OrderedDict([
    ("sport",           (lambda ex: ex.sport, None)),
    ("home_favorite",   (favorite_side, ["home_favorite", "away_favorite"])),
    ("spread_magnitude", (spread_bucket, ["small(<3)", "medium(3-7)", "large(7-12)", "very_large(>=12)"])),
    ("total_bucket",    (total_bucket, ["low(<130)", "medium(130-145)", "high(145-160)", "very_high(>=160)"])),
    ("confidence_band", (confidence_band, ["low(<50)", "medium(50-70)", "high(>=70)"])),
])


def segment_by(samples: Sequence[ATSSample], segment: str,
               labeller: Callable[[TrainingExample], str],
               order: Optional[List[str]] = None) -> List[SegmentResult]:
    buckets: Dict[str, List[ATSSample]] = OrderedDict()
    for s in samples:
        buckets.setdefault(labeller(s.example), []).append(s)

    results = []
    for value, group in buckets.items():
        t = tally(group)
        results.append(SegmentResult(
            segment      = segment,
            value        = value,
            sample_count = t.sample_count,
            wins         = t.wins,
            losses       = t.losses,
            pushes       = t.pushes,
            win_rate     = t.win_rate,
        ))
    if order:
        results.sort(key=lambda r: order.index(r.value) if r.value in order else len(order))
    return results


def build_bias_table(segmentations: Dict[str, List[SegmentResult]], overall: ATSTally) -> List[BiasEntry]:
    """All segments, worst win rate first."""
    total_decided = overall.decided
    entries = []
    for results in segmentations.values():
        for r in results:
            share = r.decided / total_decided if total_decided > 0 else 0.0
            entries.append(BiasEntry(
                segment               = r.segment,
                value                 = r.value,
                sample_count          = r.sample_count,
                wins                  = r.wins,
                losses                = r.losses,
                win_rate              = r.win_rate,
                weighted_contribution = r.win_rate * share,
                net_units             = r.net_units,
            ))
    return sorted(entries, key=lambda e: e.win_rate)


# ═══════════════════════════════════════════════════════════════════════════════
# RECOMMENDATIONS
# ═══════════════════════════════════════════════════════════════════════════════

def generate_recommendations(segmentations: Dict[str, List[SegmentResult]]) -> List[Recommendation]:
    recs: List[Recommendation] = []

    for s in segmentations.get("sport", []):
        if s.decided < MIN_DECIDED_FOR_FLAG:
            continue
        if s.win_rate < DISABLE_BELOW:
            recs.append(Recommendation(
                type             = "disable",
                target           = f"sport:{s.value}",
                reason           = (f"{s.value} ATS is {s.win_rate:.1f}% ({s.wins}-{s.losses}), "
                                    f"well below break-even"),
                severity         = "high",
                suggested_action = f"Stop spread recommendations for {s.value} until recalibrated",
            ))
        elif s.win_rate < DOWNWEIGHT_BELOW:
            recs.append(Recommendation(
                type             = "downweight",
                target           = f"sport:{s.value}",
                reason           = f"{s.value} ATS is {s.win_rate:.1f}%, below the profitable threshold",
                severity         = "medium",
                suggested_action = f"Reduce confidence for {s.value} predictions by 20%",
            ))

    bands = {s.value: s for s in segmentations.get("confidence_band", [])}
    high, medium = bands.get("high(>=70)"), bands.get("medium(50-70)")
    if (high is not None and medium is not None
            and high.decided >= MIN_DECIDED_FOR_FLAG and medium.decided >= MIN_DECIDED_FOR_FLAG
            and high.win_rate < medium.win_rate - CONFIDENCE_INVERSION_GAP):
        recs.append(Recommendation(
            type             = "recalibrate",
            target           = "confidence",
            reason           = (f"High confidence ({high.win_rate:.1f}%) underperforms "
                                f"medium ({medium.win_rate:.1f}%)"),
            severity         = "high",
            suggested_action = "Rework confidence scoring; it runs opposite to ATS results",
        ))

    for segment, label in (("spread_magnitude", "spreads"), ("total_bucket", "total games")):
        for s in segmentations.get(segment, []):
            if s.decided >= MIN_DECIDED_FOR_FLAG and s.win_rate < INVESTIGATE_BELOW:
                recs.append(Recommendation(
                    type             = "investigate",
                    target           = f"{segment}:{s.value}",
                    reason           = f"{s.value} {label} are {s.win_rate:.1f}% ATS",
                    severity         = "medium",
                    suggested_action = "Adjust predictions in this range or reduce confidence",
                ))

    return sorted(recs, key=lambda r: _SEVERITY_ORDER[r.severity])


# ═══════════════════════════════════════════════════════════════════════════════
# BOOTSTRAP
# ═══════════════════════════════════════════════════════════════════════════════

def bootstrap_win_rate(
    samples: Sequence[ATSSample],
    iterations: int = BOOTSTRAP_ITERATIONS,
    rng: Optional[np.random.Generator] = None,
) -> WinRateInterval:
    """95% percentile interval on the ATS win rate, resampling with replacement."""
    rng = rng or np.random.default_rng()
    covers = np.array([s.cover for s in samples], dtype=int)
    observed = tally(samples).win_rate
    if covers.size == 0:
        return WinRateInterval(observed, 0.0, 0.0)

    draws   = covers[rng.integers(0, covers.size, size=(iterations, covers.size))]
    wins    = (draws == 1).sum(axis=1)
    decided = (draws != 0).sum(axis=1)
    mask    = decided > 0
    if not mask.any():
        return WinRateInterval(observed, 0.0, 0.0)

    rates = np.sort(wins[mask] / decided[mask] * 100)
    lower = rates[min(int(iterations * 0.025), rates.size - 1)]
    upper = rates[min(int(iterations * 0.975), rates.size - 1)]
    return WinRateInterval(observed, float(lower), float(upper))


# ═══════════════════════════════════════════════════════════════════════════════
# REPORT
# ═══════════════════════════════════════════════════════════════════════════════

def run_feedback_report(
    examples: Sequence[TrainingExample],
    seed: Optional[int] = None,
    iterations: int = BOOTSTRAP_ITERATIONS,
) -> ATSFeedbackReport:
    samples = get_ats_samples(examples)
    if not samples:
        log.info("ATS feedback: no examples with a market spread")
        return ATSFeedbackReport(overall=ATSTally(),
                                 segmentations={name: [] for name in SEGMENTERS})

    overall = tally(samples)

    correlations = [c for c in (feature_correlation(samples, f) for f in FEATURE_NAMES) if c is not None]
    importance   = rank_feature_importance(correlations)

    segmentations = {
        name: segment_by(samples, name, labeller, order)
        for name, (labeller, order) in SEGMENTERS.items()
    }

    report = ATSFeedbackReport(
        overall              = overall,
        feature_correlations = correlations,
        feature_importance   = importance,
        segmentations        = segmentations,
        bias_analysis        = build_bias_table(segmentations, overall),
        recommendations      = generate_recommendations(segmentations),
    )

    if len(samples) >= MIN_BOOTSTRAP_OVERALL:
        rng = np.random.default_rng(seed)
        report.confidence_interval = bootstrap_win_rate(samples, iterations, rng)
        for seg in segmentations["sport"]:
            sport_samples = [s for s in samples if s.example.sport == seg.value]
            if len(sport_samples) >= MIN_BOOTSTRAP_SPORT:
                report.sport_intervals[seg.value] = bootstrap_win_rate(sport_samples, iterations, rng)

    log.info(f"ATS feedback: {overall.record} ({overall.win_rate:.1f}%) over {overall.sample_count} "
             f"samples, {len(correlations)} features, {len(report.recommendations)} recommendations")
    return report


def _units(value: float) -> str:
    return f"{value:+.2f}u"


def format_ats_report(report: ATSFeedbackReport) -> str:
    lines: List[str] = []
    o = report.overall

    lines.append("=" * 80)
    lines.append("  ATS FEEDBACK REPORT")
    lines.append("=" * 80)
    lines.append(f"  Overall: {o.record} ({o.win_rate:.1f}%) | Net: {_units(o.net_units)} | n={o.sample_count}")
    ci = report.confidence_interval
    if ci is not None:
        lines.append(f"  95% CI:  {ci.lower:.1f}% - {ci.upper:.1f}%  "
                     f"(break-even {VIG_BREAK_EVEN:.2f}%)")
    lines.append("")

    if report.recommendations:
        lines.append("── Recommendations ──")
        for r in report.recommendations:
            lines.append(f"  [{r.severity.upper():<6}] {r.type.upper()} {r.target}")
            lines.append(f"           Reason: {r.reason}")
            if r.suggested_action:
                lines.append(f"           Action: {r.suggested_action}")
        lines.append("")

    lines.append("── Feature Importance (|r| with cover) ──")
    arrows = {"positive": "↑", "negative": "↓", "neutral": "·"}
    for f in report.feature_importance[:15]:
        lines.append(f"  {f.feature:<28} {f.importance:.3f} {arrows[f.direction]}  (n={f.sample_count})")
    lines.append("")

    titles = {
        "sport":            "By Sport",
        "home_favorite":    "By Home/Away Favorite",
        "spread_magnitude": "By Spread Magnitude",
        "total_bucket":     "By Total Bucket",
        "confidence_band":  "By Confidence Band",
    }
    for name, results in report.segmentations.items():
        lines.append(f"── {titles.get(name, name)} ──")
        for s in results:
            flag = ""
            if s.decided >= MIN_DECIDED_FOR_FLAG:
                if s.win_rate < INVESTIGATE_BELOW:
                    flag = "  ⚠️"
                elif s.win_rate >= VIG_BREAK_EVEN:
                    flag = "  ⚡"
            ci_str = ""
            if name == "sport" and s.value in report.sport_intervals:
                sci = report.sport_intervals[s.value]
                ci_str = f"  [{sci.lower:.1f}-{sci.upper:.1f}]"
            lines.append(f"  {s.value:<24} {s.wins}-{s.losses}-{s.pushes:<4} "
                         f"{s.win_rate:5.1f}%  {_units(s.net_units):>9}{ci_str}{flag}")
        lines.append("")

    lines.append("── Worst Performing Segments ──")
    worst = [b for b in report.bias_analysis if b.wins + b.losses >= MIN_DECIDED_FOR_FLAG][:5]
    for b in worst:
        lines.append(f"  {b.segment + ':' + b.value:<36}{b.wins}-{b.losses}  "
                     f"{b.win_rate:.1f}%  {_units(b.net_units)}")
    lines.append("")

    lines.append("── Feature vs ATS (above vs below median) ──")
    by_delta = sorted(report.feature_correlations, key=lambda c: abs(c.delta), reverse=True)[:20]
    for c in by_delta:
        corr = f" r={c.correlation:.3f}" if c.correlation is not None else ""
        lines.append(f"  {c.feature:<28} above={c.win_rate_above_median:.1f}% "
                     f"below={c.win_rate_below_median:.1f}% Δ={c.delta:+.1f}%{corr}")
    lines.append("=" * 80)

    return "\n".join(lines)


# ═══════════════════════════════════════════════════════════════════════════════
# CLI
# ═══════════════════════════════════════════════════════════════════════════════

def main():
    parser = argparse.ArgumentParser(description="ATS feedback report over validated predictions")
    parser.add_argument("--data-dir",    type=Path, default=DATA_DIR)
    parser.add_argument("--min-samples", type=int,  default=MIN_FEATURE_SAMPLES,
                        help="Minimum ATS samples before a report is produced")
    parser.add_argument("--seed",        type=int,  default=None,
                        help="Seed for the bootstrap resampling")
    args = parser.parse_args()

    store    = CsvPredictionStore(args.data_dir / PREDICTIONS_FILE)
    examples = build_training_examples(store.list_validated())
    n_ats    = len(get_ats_samples(examples))
    if n_ats < args.min_samples:
        log.warning(f"Only {n_ats} ATS samples (< {args.min_samples}) — no report")
        return

    print(format_ats_report(run_feedback_report(examples, seed=args.seed)))


if __name__ == "__main__":
    main()
