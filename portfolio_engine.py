import concurrent.futures
from copy import deepcopy
from dataclasses import dataclass
import logging
import math
import numbers
import os
import time

import numpy as np

import return_sampler
from simulation_errors import (
    ConfigurationError,
    EmptyPopulationError,
    InsufficientDataError,
    ShapeMismatchError,
)


logger = logging.getLogger(__name__)

EPSILON = 1e-9
DAYS_PER_YEAR = 365.0

DEFAULT_CONFIG = {
    "evaluation": {
        "money_to_invest": 10_000.0,
        "risk_free_rate": 0.02,
        "time_horizon_in_days": 30.0,
        "simulations_per_generation": 256,
    },
    "sampler": deepcopy(return_sampler.DEFAULT_SAMPLER_CONFIG),
    "execution": {
        "parallel_enabled": True,
        "parallel_workers": None,
        "portfolio_tile_size": 512,
        "parallel_min_tiles": 2,
    },
    "service": {
        "max_concurrent_batches": 4,
    },
}


def _deep_merge(base, overrides):
    merged = deepcopy(base)
    _deep_merge_in_place(merged, overrides)
    return merged


def _deep_merge_in_place(target, overrides):
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge_in_place(target[key], value)
        else:
            target[key] = value


def _is_real(value):
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _is_positive_int(value):
    return isinstance(value, numbers.Integral) and not isinstance(value, bool) and value > 0


def _check_evaluation_inputs(money_to_invest, time_horizon_in_days):
    if abs(money_to_invest) <= EPSILON:
        raise ConfigurationError("evaluation.money_to_invest must be non-zero.")
    if abs(time_horizon_in_days) <= EPSILON:
        raise ConfigurationError("evaluation.time_horizon_in_days must be non-zero.")
    if time_horizon_in_days < 0:
        raise ConfigurationError("evaluation.time_horizon_in_days must be positive.")


def validate_evaluation_config(evaluation):
    for key in ("money_to_invest", "risk_free_rate", "time_horizon_in_days"):
        if key not in evaluation:
            raise ConfigurationError(f"Missing evaluation.{key}")
        value = evaluation[key]
        if not _is_real(value) or not math.isfinite(value):
            raise ConfigurationError(f"evaluation.{key} must be a finite number.")
    _check_evaluation_inputs(evaluation["money_to_invest"], evaluation["time_horizon_in_days"])

    if not _is_positive_int(evaluation.get("simulations_per_generation")):
        raise ConfigurationError("evaluation.simulations_per_generation must be an int >= 1.")


def validate_config(config):
    for key in ("evaluation", "sampler", "execution", "service"):
        if key not in config:
            raise ConfigurationError(f"Missing top-level config section '{key}'.")

    validate_evaluation_config(config["evaluation"])
    return_sampler.validate_sampler_config(config["sampler"])

    execution = config["execution"]
    if not isinstance(execution["parallel_enabled"], bool):
        raise ConfigurationError("execution.parallel_enabled must be a bool.")
    if execution["parallel_workers"] is not None and not _is_positive_int(execution["parallel_workers"]):
        raise ConfigurationError("execution.parallel_workers must be > 0 or None.")
    if not _is_positive_int(execution["portfolio_tile_size"]):
        raise ConfigurationError("execution.portfolio_tile_size must be > 0.")
    if not _is_positive_int(execution["parallel_min_tiles"]):
        raise ConfigurationError("execution.parallel_min_tiles must be > 0.")

    if not _is_positive_int(config["service"]["max_concurrent_batches"]):
        raise ConfigurationError("service.max_concurrent_batches must be > 0.")


def _readonly(values):
    array = np.array(values, dtype=np.float64)
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class PortfolioPerformance:
    period_returns: np.ndarray
    annualized_return: float
    percent_annualized_volatility: float
    sharpe_ratio: float


@dataclass(frozen=True)
class PartialBatchResult:
    """Unaveraged per-portfolio sums over ``iterations`` trials.

    Partials computed for the same population and evaluation settings can be
    combined with :func:`merge_partial_results` and normalised once with
    :func:`finalize_partial_result`.
    """

    sum_returns: np.ndarray
    sum_volatilities: np.ndarray
    sum_sharpe_ratios: np.ndarray
    last_scenario_returns: np.ndarray
    iterations: int

    @property
    def population_size(self):
        return int(self.sum_returns.shape[0])

    def to_dict(self):
        return {
            "sum_returns": self.sum_returns.tolist(),
            "sum_volatilities": self.sum_volatilities.tolist(),
            "sum_sharpe_ratios": self.sum_sharpe_ratios.tolist(),
            "last_scenario": self.last_scenario_returns.tolist(),
            "iterations": int(self.iterations),
            "population_size": self.population_size,
        }

    @classmethod
    def from_dict(cls, payload):
        try:
            sums = [
                np.asarray(payload[key], dtype=np.float64)
                for key in ("sum_returns", "sum_volatilities", "sum_sharpe_ratios")
            ]
            last_scenario = payload.get("last_scenario")
            last_scenario = np.asarray([] if last_scenario is None else last_scenario, dtype=np.float64)
            iterations = int(payload["iterations"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ShapeMismatchError(f"Partial batch payload is incomplete: {exc}") from exc

        if any(item.ndim != 1 for item in sums) or len({item.shape[0] for item in sums}) != 1:
            raise ShapeMismatchError("Partial batch sums must be equal-length vectors.")
        if last_scenario.size == 0:
            last_scenario = np.empty((0, 0), dtype=np.float64)
        if iterations < 0:
            raise ShapeMismatchError("Partial batch iterations must be >= 0.")
        return cls(
            sum_returns=_readonly(sums[0]),
            sum_volatilities=_readonly(sums[1]),
            sum_sharpe_ratios=_readonly(sums[2]),
            last_scenario_returns=_readonly(last_scenario),
            iterations=iterations,
        )


@dataclass(frozen=True)
class PopulationEvaluationResult:
    average_returns: np.ndarray
    average_volatilities: np.ndarray
    average_sharpe_ratios: np.ndarray
    last_scenario_returns: np.ndarray
    best_return: float
    population_average_return: float
    best_volatility: float
    population_average_volatility: float
    best_sharpe: float
    population_average_sharpe: float

    def to_dict(self):
        return {
            "average_returns": self.average_returns.tolist(),
            "average_volatilities": self.average_volatilities.tolist(),
            "average_sharpe_ratios": self.average_sharpe_ratios.tolist(),
            "last_scenario": self.last_scenario_returns.tolist(),
            "best_return": self.best_return,
            "population_average_return": self.population_average_return,
            "best_volatility": self.best_volatility,
            "population_average_volatility": self.population_average_volatility,
            "best_sharpe": self.best_sharpe,
            "population_average_sharpe": self.population_average_sharpe,
        }


def _as_weight_vector(weights):
    try:
        vector = np.asarray(weights, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Portfolio weights must be numeric: {exc}") from exc
    if vector.ndim != 1 or vector.size == 0:
        raise ShapeMismatchError("Portfolio weights must be a non-empty 1-D sequence.")
    if not np.all(np.isfinite(vector)):
        raise ConfigurationError("Portfolio weights must be finite.")
    return vector


def _as_population_matrix(population):
    if population is None or len(population) == 0:
        raise EmptyPopulationError("Population must contain at least one portfolio.")

    rows = [_as_weight_vector(weights) for weights in population]
    widths = {row.size for row in rows}
    if len(widths) != 1:
        raise ShapeMismatchError(
            "All portfolios must hold the same number of weights "
            f"(got lengths {sorted(widths)})."
        )
    return np.vstack(rows)


def _as_scenario_matrix(scenario_returns, n_assets):
    scenario = np.asarray(scenario_returns, dtype=np.float64)
    if scenario.ndim == 1 and scenario.size == 0:
        scenario = scenario.reshape(0, n_assets)
    if scenario.ndim != 2:
        raise ShapeMismatchError(f"Scenario must be a 2-D periods x assets matrix, got {scenario.ndim}-D.")
    if scenario.shape[0] < 2:
        raise InsufficientDataError(
            f"Scenario has {scenario.shape[0]} period(s); at least 2 are required to estimate variance."
        )
    if scenario.shape[1] != n_assets:
        raise ShapeMismatchError(
            f"Scenario has {scenario.shape[1]} asset column(s) but portfolios hold {n_assets} weight(s)."
        )
    return scenario


def _performance_arrays(scenario, weights, money_to_invest, risk_free_rate, time_horizon_in_days):
    # scenario: (periods, assets) log-returns, weights: (portfolios, assets)
    periods = scenario.shape[0]
    period_returns = (np.expm1(scenario) @ weights.T) * money_to_invest

    mean_returns = period_returns.mean(axis=0)
    volatilities = period_returns.std(axis=0, ddof=1)

    periods_per_year = periods / (time_horizon_in_days / DAYS_PER_YEAR)
    annualized_returns = mean_returns * periods_per_year
    annualized_volatilities = volatilities * math.sqrt(periods_per_year)

    risk_free_return = money_to_invest * risk_free_rate
    # Zero-volatility portfolios are not comparable; their Sharpe ratio is pinned to 0.0.
    sharpe_ratios = np.zeros_like(annualized_returns)
    np.divide(
        annualized_returns - risk_free_return,
        annualized_volatilities,
        out=sharpe_ratios,
        where=annualized_volatilities > EPSILON,
    )
    percent_volatilities = annualized_volatilities / money_to_invest
    return period_returns, annualized_returns, percent_volatilities, sharpe_ratios


def compute_portfolio_performance(
    scenario_returns,
    weights,
    money_to_invest,
    risk_free_rate,
    time_horizon_in_days,
):
    """Score one portfolio against one scenario of per-period log-returns."""
    _check_evaluation_inputs(money_to_invest, time_horizon_in_days)
    weight_vector = _as_weight_vector(weights)
    scenario = _as_scenario_matrix(scenario_returns, weight_vector.size)

    period_returns, returns, volatilities, sharpes = _performance_arrays(
        scenario,
        weight_vector.reshape(1, -1),
        float(money_to_invest),
        float(risk_free_rate),
        float(time_horizon_in_days),
    )
    return PortfolioPerformance(
        period_returns=_readonly(period_returns[:, 0]),
        annualized_return=float(returns[0]),
        percent_annualized_volatility=float(volatilities[0]),
        sharpe_ratio=float(sharpes[0]),
    )


def _iter_chunk_ranges(total, chunk_size):
    start = 0
    while start < total:
        end = min(total, start + chunk_size)
        yield start, end
        start = end


def _resolve_execution_settings(config, population_size):
    execution_cfg = config["execution"]
    tile_size = execution_cfg["portfolio_tile_size"]
    tile_count = max(1, math.ceil(population_size / tile_size))

    resolved_workers = execution_cfg["parallel_workers"]
    if resolved_workers is None:
        resolved_workers = os.cpu_count() or 1

    execution = {
        "mode": "single",
        "workers_used": 1,
        "backend": "single",
        "tile_size": tile_size,
        "tiles": tile_count,
    }

    if not execution_cfg["parallel_enabled"]:
        return execution
    if tile_count < execution_cfg["parallel_min_tiles"]:
        return execution

    workers_used = max(1, min(resolved_workers, tile_count))
    if workers_used <= 1:
        return execution

    execution["mode"] = "parallel"
    execution["workers_used"] = workers_used
    execution["backend"] = "threads"
    return execution


def _score_tile(scenario, weights, evaluation):
    _, returns, volatilities, sharpes = _performance_arrays(
        scenario,
        weights,
        float(evaluation["money_to_invest"]),
        float(evaluation["risk_free_rate"]),
        float(evaluation["time_horizon_in_days"]),
    )
    return returns, volatilities, sharpes


def _score_population(scenario, weights, evaluation, execution, executor):
    if executor is None:
        return _score_tile(scenario, weights, evaluation)

    futures = {}
    for start, end in _iter_chunk_ranges(weights.shape[0], execution["tile_size"]):
        future = executor.submit(_score_tile, scenario, weights[start:end], evaluation)
        futures[future] = start

    tiles = {}
    for future in concurrent.futures.as_completed(futures):
        tiles[futures[future]] = future.result()

    ordered = [tiles[start] for start in sorted(tiles)]
    return tuple(np.concatenate([tile[metric] for tile in ordered]) for metric in range(3))


def _run_trials(weights, evaluation, sampler, iterations, execution, progress_callback, tile_executor=None):
    population_size, n_assets = weights.shape
    sum_returns = np.zeros(population_size, dtype=np.float64)
    sum_volatilities = np.zeros(population_size, dtype=np.float64)
    sum_sharpes = np.zeros(population_size, dtype=np.float64)
    last_scenario = np.empty((0, 0), dtype=np.float64)

    executor = None
    owns_executor = False
    if execution["mode"] == "parallel" and tile_executor is not None:
        executor = tile_executor
    elif execution["mode"] == "parallel":
        owns_executor = True
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=execution["workers_used"],
            thread_name_prefix="portfolio-tile",
        )
    try:
        for trial in range(iterations):
            scenario = _as_scenario_matrix(sampler.sample_returns(), n_assets)
            returns, volatilities, sharpes = _score_population(
                scenario,
                weights,
                evaluation,
                execution,
                executor,
            )
            sum_returns += returns
            sum_volatilities += volatilities
            sum_sharpes += sharpes
            last_scenario = scenario

            if progress_callback is not None:
                progress_callback(
                    "trial_complete",
                    {"trial": trial + 1, "iterations": iterations, "population_size": population_size},
                )
    finally:
        if owns_executor:
            executor.shutdown(wait=True)

    return PartialBatchResult(
        sum_returns=_readonly(sum_returns),
        sum_volatilities=_readonly(sum_volatilities),
        sum_sharpe_ratios=_readonly(sum_sharpes),
        last_scenario_returns=_readonly(last_scenario),
        iterations=iterations,
    )


def run_simulation_batch(population, iterations, config=None, sampler=None, progress_callback=None, tile_executor=None):
    """Run ``iterations`` trials and return the per-portfolio sums, unaveraged.

    Tiles are scored on ``tile_executor`` when one is given and parallel mode
    applies; it is left running. Otherwise a pool is created for the call.
    """
    merged_config = _deep_merge(DEFAULT_CONFIG, config or {})
    validate_config(merged_config)
    weights = _as_population_matrix(population)
    if not isinstance(iterations, numbers.Integral) or isinstance(iterations, bool) or iterations < 0:
        raise ConfigurationError("iterations must be an int >= 0.")
    iterations = int(iterations)

    if sampler is None:
        sampler = return_sampler.build_sampler(merged_config)

    execution = _resolve_execution_settings(merged_config, weights.shape[0])
    logger.debug(
        "Running %d trial(s) for %d portfolio(s) x %d asset(s) [mode=%s, workers=%d]",
        iterations,
        weights.shape[0],
        weights.shape[1],
        execution["mode"],
        execution["workers_used"],
    )

    t0 = time.perf_counter()
    partial = _run_trials(
        weights,
        merged_config["evaluation"],
        sampler,
        iterations,
        execution,
        progress_callback,
        tile_executor,
    )
    logger.debug("Batch of %d trial(s) finished in %.3fs", iterations, time.perf_counter() - t0)
    return partial


def merge_partial_results(partials):
    partials = list(partials)
    if not partials:
        raise ValueError("At least one partial result is required to merge.")

    sizes = {partial.population_size for partial in partials}
    if len(sizes) != 1:
        raise ShapeMismatchError(f"Cannot merge partial results for different population sizes {sorted(sizes)}.")

    last_scenario = np.empty((0, 0), dtype=np.float64)
    for partial in partials:
        if partial.iterations > 0:
            last_scenario = partial.last_scenario_returns

    return PartialBatchResult(
        sum_returns=_readonly(np.sum([p.sum_returns for p in partials], axis=0)),
        sum_volatilities=_readonly(np.sum([p.sum_volatilities for p in partials], axis=0)),
        sum_sharpe_ratios=_readonly(np.sum([p.sum_sharpe_ratios for p in partials], axis=0)),
        last_scenario_returns=_readonly(last_scenario),
        iterations=sum(partial.iterations for partial in partials),
    )


def finalize_partial_result(partial):
    if partial.population_size == 0:
        raise EmptyPopulationError("Cannot summarise an empty population.")
    if partial.iterations <= 0:
        raise ValueError("Cannot average a partial result that ran zero iterations.")

    count = float(partial.iterations)
    average_returns = partial.sum_returns / count
    average_volatilities = partial.sum_volatilities / count
    average_sharpes = partial.sum_sharpe_ratios / count

    return PopulationEvaluationResult(
        average_returns=_readonly(average_returns),
        average_volatilities=_readonly(average_volatilities),
        average_sharpe_ratios=_readonly(average_sharpes),
        last_scenario_returns=partial.last_scenario_returns,
        best_return=float(np.max(average_returns)),
        population_average_return=float(np.mean(average_returns)),
        # lower volatility is better
        best_volatility=float(np.min(average_volatilities)),
        population_average_volatility=float(np.mean(average_volatilities)),
        best_sharpe=float(np.max(average_sharpes)),
        population_average_sharpe=float(np.mean(average_sharpes)),
    )


def evaluate_population_performance(population, config=None, sampler=None, progress_callback=None):
    """Average each portfolio's metrics over ``simulations_per_generation`` trials.

    Returns per-portfolio averages aligned with ``population`` order, the
    scenario drawn in the final trial, and best/mean summaries across the
    population.
    """
    merged_config = _deep_merge(DEFAULT_CONFIG, config or {})
    validate_config(merged_config)
    simulations = merged_config["evaluation"]["simulations_per_generation"]

    partial = run_simulation_batch(
        population,
        simulations,
        config=merged_config,
        sampler=sampler,
        progress_callback=progress_callback,
    )
    result = finalize_partial_result(partial)
    logger.info(
        "Evaluated %d portfolio(s) over %d simulation(s): best sharpe %.4f, mean sharpe %.4f",
        partial.population_size,
        simulations,
        result.best_sharpe,
        result.population_average_sharpe,
    )
    return result
