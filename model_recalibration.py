"""
Probability recalibration (Platt scaling).

Raw home win probabilities from the matchup model are mapped through

    p_cal = sigmoid(a · logit(p) + b)

with (a, b) fitted by maximum likelihood on validated predictions. The
identity snapshot (1, 0) is a no-op up to the [0.01, 0.99] output clamp.

Parameters live in the key/value store under RECALIBRATION_KEY and are held
in memory as an immutable snapshot. ``CalibrationState`` swaps the whole
snapshot at once, so a reader never pairs a new ``a`` with an old ``b``.

Usage:
    params = load_recalibration_params(kv_store)
    p = apply_platt(0.64, params)

    fit = fit_platt([(0.64, 1), (0.41, 0), ...])   # >= 20 pairs
    if fit.converged:
        save_recalibration_params(kv_store, fit.params)
"""

import logging
import threading
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import minimize

from model_config import MIN_TRAINING_SAMPLES, RECALIBRATION_KEY
from model_schemas import _safe_float, utc_now_iso

log = logging.getLogger(__name__)

EPS          = 1e-7
OUTPUT_FLOOR = 0.01
OUTPUT_CEIL  = 0.99

# Search box for (a, b); keeps the fit finite on perfectly separable samples
A_BOUNDS = (0.05, 10.0)
B_BOUNDS = (-5.0, 5.0)


@dataclass(frozen=True)
class RecalibrationParams:
    a:         float = 1.0
    b:         float = 0.0
    trained:   bool = False
    n_samples: int = 0
    fitted_at: str = ""

    @property
    def is_identity(self) -> bool:
        return self.a == 1.0 and self.b == 0.0

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Any) -> "RecalibrationParams":
        """Parse a stored value. Anything malformed yields IDENTITY."""
        if not isinstance(d, dict):
            return IDENTITY
        a = _safe_float(d.get("a", d.get("A")))
        b = _safe_float(d.get("b", d.get("B")))
        if a is None or b is None:
            return IDENTITY
        return cls(
            a         = a,
            b         = b,
            trained   = bool(d.get("trained", True)),
            n_samples = int(_safe_float(d.get("n_samples"), 0)),
            fitted_at = str(d.get("fitted_at") or ""),
        )


IDENTITY = RecalibrationParams()


@dataclass(frozen=True)
class PlattFit:
    params:    RecalibrationParams
    converged: bool
    message:   str = ""
    log_loss:  Optional[float] = None


# ============================================================================
# APPLY
# ============================================================================

def _logit(p):
    p = np.clip(p, EPS, 1.0 - EPS)
    return np.log(p / (1.0 - p))


def _sigmoid(z):
    return 1.0 / (1.0 + np.exp(-z))


def apply_platt(raw_prob: float, params: Optional[RecalibrationParams] = None) -> float:
    """Calibrated probability in [0.01, 0.99]."""
    params = params or IDENTITY
    p = _sigmoid(params.a * _logit(float(raw_prob)) + params.b)
    return float(min(OUTPUT_CEIL, max(OUTPUT_FLOOR, p)))


# ============================================================================
# FIT
# ============================================================================

def _mean_log_loss(x: np.ndarray, y: np.ndarray, a: float, b: float) -> float:
    p = np.clip(_sigmoid(a * x + b), EPS, 1.0 - EPS)
    return float(-np.mean(y * np.log(p) + (1.0 - y) * np.log(1.0 - p)))


def fit_platt(pairs: Sequence[Tuple[float, int]]) -> PlattFit:
    """
    Maximum-likelihood Platt fit over (raw_probability, home_won) pairs.

    Raises ValueError below MIN_TRAINING_SAMPLES; callers check the count
    before fitting. Returns an unconverged identity fit when every pair has
    the same outcome or the optimizer fails.
    """
    if len(pairs) < MIN_TRAINING_SAMPLES:
        raise ValueError(
            f"Platt fit needs at least {MIN_TRAINING_SAMPLES} samples, got {len(pairs)}"
        )

    raw = np.array([p for p, _ in pairs], dtype=float)
    y   = np.array([1.0 if won else 0.0 for _, won in pairs], dtype=float)
    x   = _logit(raw)
    n   = len(y)

    if y.min() == y.max():
        msg = f"all {n} outcomes are {'home wins' if y[0] else 'away wins'}"
        log.warning(f"Platt fit skipped: {msg}")
        return PlattFit(params=IDENTITY, converged=False, message=msg)

    def objective(theta):
        a, b = theta
        p    = np.clip(_sigmoid(a * x + b), EPS, 1.0 - EPS)
        loss = -np.mean(y * np.log(p) + (1.0 - y) * np.log(1.0 - p))
        resid = p - y
        grad = np.array([np.mean(resid * x), np.mean(resid)])
        return loss, grad

    result = minimize(
        objective,
        x0=np.array([1.0, 0.0]),
        jac=True,
        method="L-BFGS-B",
        bounds=[A_BOUNDS, B_BOUNDS],
    )

    a, b = (float(v) for v in result.x)
    if not result.success or not np.isfinite([a, b]).all():
        msg = f"optimizer did not converge: {result.message}"
        log.warning(f"Platt fit failed on {n} samples — {msg}")
        return PlattFit(params=IDENTITY, converged=False, message=str(msg))

    params = RecalibrationParams(
        a=round(a, 6), b=round(b, 6), trained=True, n_samples=n, fitted_at=utc_now_iso(),
    )
    loss = _mean_log_loss(x, y, params.a, params.b)
    log.info(
        f"Platt fit on {n} samples: a={params.a:.4f} b={params.b:.4f} "
        f"log_loss {_mean_log_loss(x, y, 1.0, 0.0):.4f} → {loss:.4f}"
    )
    return PlattFit(params=params, converged=True, message="ok", log_loss=loss)


# ============================================================================
# PERSISTENCE
# ============================================================================

def load_recalibration_params(kv_store) -> RecalibrationParams:
    """Stored snapshot, or IDENTITY when absent, malformed or unreadable."""
    try:
        value = kv_store.get(RECALIBRATION_KEY)
    except Exception as exc:
        log.warning(f"Could not read {RECALIBRATION_KEY}: {exc} — using identity")
        return IDENTITY
    if value is None:
        return IDENTITY
    params = RecalibrationParams.from_dict(value)
    if params is IDENTITY:
        log.warning(f"Malformed {RECALIBRATION_KEY} value {value!r} — using identity")
    return params


def save_recalibration_params(kv_store, params: RecalibrationParams) -> None:
    kv_store.set(RECALIBRATION_KEY, params.to_dict())
    log.info(f"Saved {RECALIBRATION_KEY}: a={params.a} b={params.b} trained={params.trained}")


class CalibrationState:
    """Holds the active snapshot; swaps happen by reference under a lock."""

    def __init__(self, kv_store=None, params: Optional[RecalibrationParams] = None):
        self._kv_store = kv_store
        self._lock     = threading.Lock()
        self._params   = params or (load_recalibration_params(kv_store) if kv_store is not None
                                    else IDENTITY)

    @property
    def current(self) -> RecalibrationParams:
        return self._params

    def reload(self) -> RecalibrationParams:
        if self._kv_store is None:
            return self._params
        fresh = load_recalibration_params(self._kv_store)
        with self._lock:
            self._params = fresh
        return fresh

    def replace(self, params: RecalibrationParams) -> None:
        with self._lock:
            self._params = params
