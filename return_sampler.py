import math
import numbers
import pathlib
import threading

import numpy as np

from simulation_errors import ConfigurationError


DEFAULT_SAMPLER_CONFIG = {
    "model": "gbm",
    "periods": 30,
    "assets": 4,
    "drift_annual": 0.07,
    "volatility_annual": 0.18,
    "correlation": 0.3,
    "history_path": None,
    "seed": None,
}

SUPPORTED_SAMPLER_MODELS = {"gbm", "bootstrap"}


def _is_real(value):
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _is_positive_int(value):
    return isinstance(value, numbers.Integral) and not isinstance(value, bool) and value > 0


def _validate_per_asset(name, value, assets, minimum=None):
    values = value if isinstance(value, (list, tuple)) else [value]
    if isinstance(value, (list, tuple)) and len(values) != assets:
        raise ConfigurationError(f"{name} must be a number or a list of {assets} numbers.")
    for item in values:
        if not _is_real(item) or not math.isfinite(item):
            raise ConfigurationError(f"{name} must contain finite numbers.")
        if minimum is not None and item < minimum:
            raise ConfigurationError(f"{name} must be >= {minimum}.")


def validate_sampler_config(sampler):
    model = sampler.get("model")
    if model not in SUPPORTED_SAMPLER_MODELS:
        allowed = ", ".join(sorted(SUPPORTED_SAMPLER_MODELS))
        raise ConfigurationError(f"sampler.model must be one of: {allowed}")

    if not _is_positive_int(sampler.get("periods")) or sampler["periods"] < 2:
        raise ConfigurationError("sampler.periods must be an int >= 2.")
    if sampler.get("seed") is not None and (
        not isinstance(sampler["seed"], numbers.Integral) or isinstance(sampler["seed"], bool)
    ):
        raise ConfigurationError("sampler.seed must be an int or None.")

    if model == "gbm":
        if not _is_positive_int(sampler.get("assets")):
            raise ConfigurationError("sampler.assets must be an int > 0.")
        assets = sampler["assets"]
        _validate_per_asset("sampler.drift_annual", sampler.get("drift_annual"), assets)
        _validate_per_asset("sampler.volatility_annual", sampler.get("volatility_annual"), assets, minimum=0.0)
        correlation = sampler.get("correlation")
        if correlation is not None:
            if not _is_real(correlation) or not (0.0 <= correlation < 1.0):
                raise ConfigurationError("sampler.correlation must be in [0, 1) or None.")

    if model == "bootstrap":
        history_path = sampler.get("history_path")
        if not isinstance(history_path, str) or not history_path:
            raise ConfigurationError("sampler.history_path is required for the bootstrap model.")


def load_history(path):
    """Load a periods x assets matrix of historical log-returns from ``.npy`` or CSV."""
    history_path = pathlib.Path(path)
    if not history_path.is_file():
        raise ConfigurationError(f"sampler.history_path does not exist: {history_path}")
    if history_path.suffix == ".npy":
        history = np.load(history_path, allow_pickle=False)
    else:
        history = np.loadtxt(history_path, delimiter=",", ndmin=2)
    history = np.asarray(history, dtype=np.float64)
    if history.ndim != 2 or history.shape[0] == 0 or history.shape[1] == 0:
        raise ConfigurationError("Historical returns must be a non-empty periods x assets matrix.")
    if not np.all(np.isfinite(history)):
        raise ConfigurationError("Historical returns contain non-finite values.")
    return history


class GbmReturnSampler:
    """Draws log-returns of correlated geometric Brownian motions.

    Each call to :meth:`sample_returns` produces a fresh ``(periods, assets)``
    matrix whose periods evenly split ``time_horizon_in_days``.
    """

    def __init__(
        self,
        periods,
        assets,
        drift_annual,
        volatility_annual,
        time_horizon_in_days,
        correlation=None,
        seed=None,
    ):
        if periods < 2 or assets <= 0:
            raise ConfigurationError("GBM sampler needs at least two periods and one asset.")
        if time_horizon_in_days <= 0:
            raise ConfigurationError("GBM sampler needs a positive time horizon.")

        self.periods = int(periods)
        self.assets = int(assets)
        dt = time_horizon_in_days / 365.0 / self.periods
        mu = np.broadcast_to(np.asarray(drift_annual, dtype=np.float64), (self.assets,))
        sigma = np.broadcast_to(np.asarray(volatility_annual, dtype=np.float64), (self.assets,))
        self._drift = (mu - 0.5 * sigma**2) * dt
        self._diffusion = sigma * math.sqrt(dt)

        self._cholesky = None
        if correlation and self.assets > 1:
            corr = np.full((self.assets, self.assets), float(correlation), dtype=np.float64)
            np.fill_diagonal(corr, 1.0)
            self._cholesky = np.linalg.cholesky(corr)

        self._rng = np.random.default_rng(seed)
        self._lock = threading.Lock()

    def sample_returns(self):
        with self._lock:
            shocks = self._rng.standard_normal((self.periods, self.assets))
        if self._cholesky is not None:
            shocks = shocks @ self._cholesky.T
        return self._drift + shocks * self._diffusion


class BootstrapReturnSampler:
    """Resamples whole periods, with replacement, from a historical matrix."""

    def __init__(self, history, periods, seed=None):
        history = np.asarray(history, dtype=np.float64)
        if history.ndim != 2 or history.shape[0] == 0:
            raise ConfigurationError("Bootstrap sampler needs a non-empty periods x assets history.")
        if periods < 2:
            raise ConfigurationError("Bootstrap sampler needs at least two periods.")
        self._history = history
        self.periods = int(periods)
        self.assets = int(history.shape[1])
        self._rng = np.random.default_rng(seed)
        self._lock = threading.Lock()

    def sample_returns(self):
        with self._lock:
            rows = self._rng.integers(0, self._history.shape[0], size=self.periods)
        return self._history[rows]


def build_sampler(config):
    sampler = config["sampler"]
    validate_sampler_config(sampler)

    if sampler["model"] == "bootstrap":
        return BootstrapReturnSampler(
            load_history(sampler["history_path"]),
            periods=sampler["periods"],
            seed=sampler["seed"],
        )
    return GbmReturnSampler(
        periods=sampler["periods"],
        assets=sampler["assets"],
        drift_annual=sampler["drift_annual"],
        volatility_annual=sampler["volatility_annual"],
        time_horizon_in_days=float(config["evaluation"]["time_horizon_in_days"]),
        correlation=sampler["correlation"],
        seed=sampler["seed"],
    )
