from __future__ import annotations

import concurrent.futures
import json
import logging
import pathlib
import sys
import urllib.error
import urllib.request
from typing import Any, Optional, Sequence, Union

REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from portfolio_engine import PartialBatchResult, finalize_partial_result, merge_partial_results
from population_codec import encode_population_blob


logger = logging.getLogger(__name__)


class RemoteBatchError(RuntimeError):
    def __init__(self, endpoint: str, status: int, kind: str, message: str) -> None:
        super().__init__(f"{endpoint} answered {status} ({kind}): {message}")
        self.endpoint = endpoint
        self.status = status
        self.kind = kind


def post_batch(endpoint: str, payload: dict[str, Any], timeout: Optional[float] = None) -> PartialBatchResult:
    url = endpoint.rstrip("/") + "/batches"
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    request = urllib.request.Request(
        url,
        data=body,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            reply = json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        try:
            error = json.loads(exc.read().decode("utf-8"))
        except ValueError:
            error = {}
        raise RemoteBatchError(
            endpoint,
            exc.code,
            str(error.get("kind", "unknown")),
            str(error.get("error", exc.reason)),
        ) from exc
    return PartialBatchResult.from_dict(reply)


def run_sharded_batch(
    endpoints: Sequence[str],
    population: Any,
    iterations_per_shard: Union[int, Sequence[int]],
    evaluation: Optional[dict[str, Any]] = None,
    timeout: Optional[float] = None,
) -> PartialBatchResult:
    """Fan one population out to every endpoint and add up the partial sums."""
    if not endpoints:
        raise ValueError("At least one endpoint is required.")
    if isinstance(iterations_per_shard, int):
        shard_iterations = [iterations_per_shard] * len(endpoints)
    else:
        shard_iterations = list(iterations_per_shard)
    if len(shard_iterations) != len(endpoints):
        raise ValueError("iterations_per_shard must provide one count per endpoint.")

    blob = encode_population_blob(population)
    futures = {}
    partials: dict[int, PartialBatchResult] = {}
    with concurrent.futures.ThreadPoolExecutor(max_workers=len(endpoints)) as executor:
        for idx, (endpoint, iterations) in enumerate(zip(endpoints, shard_iterations)):
            payload = {
                "portfolios_blob": blob,
                "config": dict(evaluation or {}),
                "iterations": int(iterations),
            }
            futures[executor.submit(post_batch, endpoint, payload, timeout)] = idx

        for future in concurrent.futures.as_completed(futures):
            partials[futures[future]] = future.result()

    merged = merge_partial_results(partials[idx] for idx in sorted(partials))
    logger.info("Merged %d shard(s) into %d iteration(s)", len(partials), merged.iterations)
    return merged


def evaluate_sharded(
    endpoints: Sequence[str],
    population: Any,
    iterations_per_shard: Union[int, Sequence[int]],
    evaluation: Optional[dict[str, Any]] = None,
    timeout: Optional[float] = None,
):
    merged = run_sharded_batch(endpoints, population, iterations_per_shard, evaluation, timeout)
    return finalize_partial_result(merged)
