#!/usr/bin/env python3
from __future__ import annotations

import argparse
import concurrent.futures
import datetime as dt
import json
import logging
import math
import numbers
import os
import pathlib
import signal
import sys
import threading
from dataclasses import dataclass
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Optional
from urllib.parse import urlparse

import numpy as np

REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

import return_sampler
from population_codec import decode_population_blob
from portfolio_engine import (
    DEFAULT_CONFIG,
    _as_population_matrix,
    _deep_merge,
    run_simulation_batch,
    validate_config,
)
from simulation_errors import (
    ComputationFault,
    ConfigurationError,
    DecodeError,
    ShapeMismatchError,
    SimulationError,
)


logger = logging.getLogger(__name__)

EVALUATION_REQUEST_KEYS = {"money_to_invest", "risk_free_rate", "time_horizon_in_days"}


def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(item) for item in value]
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    return value


def _decode_portfolios(payload: dict[str, Any]) -> Any:
    if "portfolios_blob" in payload:
        return decode_population_blob(payload["portfolios_blob"])

    portfolios = payload.get("portfolios")
    if portfolios is None:
        raise DecodeError("Request must include 'portfolios' or 'portfolios_blob'.")
    if not isinstance(portfolios, list):
        raise DecodeError("portfolios must be a JSON array.")

    decoded = []
    for item in portfolios:
        if isinstance(item, dict):
            if "weights" not in item:
                raise DecodeError("Portfolio objects must carry a 'weights' array.")
            item = item["weights"]
        if not isinstance(item, list):
            raise DecodeError("Each portfolio must be an array of weights.")
        for weight in item:
            if not isinstance(weight, numbers.Real) or isinstance(weight, bool) or not math.isfinite(weight):
                raise DecodeError(f"Portfolio weights must be finite numbers, got {weight!r}.")
        decoded.append(item)
    return decoded


@dataclass(frozen=True)
class BatchRequest:
    population: np.ndarray
    config: dict[str, Any]
    iterations: int


def parse_batch_request(payload: dict[str, Any], base_config: dict[str, Any]) -> BatchRequest:
    raw_config = payload.get("config")
    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise DecodeError("config must be a JSON object.")
    unknown = set(raw_config) - EVALUATION_REQUEST_KEYS
    if unknown:
        raise ConfigurationError(f"Unsupported config key(s): {', '.join(sorted(unknown))}")

    config = _deep_merge(base_config, {"evaluation": raw_config})
    validate_config(config)

    iterations = payload.get("iterations")
    if not isinstance(iterations, numbers.Integral) or isinstance(iterations, bool) or iterations < 0:
        raise ConfigurationError("iterations must be an int >= 0.")

    population = _as_population_matrix(_decode_portfolios(payload))
    return BatchRequest(population=population, config=config, iterations=int(iterations))


class BatchEvaluationService:
    """Runs simulation batches on a bounded worker pool shared by all requests.

    Requests are decoded and validated on the calling thread; only the
    simulation body is handed to the pool. When every worker is busy new
    batches wait in the pool's queue. All batches score their portfolio
    tiles on one shared tile pool, so the thread count stays at
    ``max_concurrent_batches + tile_workers`` however many batches run.
    """

    def __init__(self, config: Optional[dict[str, Any]] = None, sampler: Any = None) -> None:
        self.config = _deep_merge(DEFAULT_CONFIG, config or {})
        validate_config(self.config)
        self.sampler = sampler if sampler is not None else return_sampler.build_sampler(self.config)
        self.max_workers = int(self.config["service"]["max_concurrent_batches"])
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.max_workers,
            thread_name_prefix="batch-worker",
        )
        self.tile_workers = int(self.config["execution"]["parallel_workers"] or os.cpu_count() or 1)
        self._tile_executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.tile_workers,
            thread_name_prefix="portfolio-tile",
        )
        self._lock = threading.Lock()
        self._counters = {"queued": 0, "active": 0, "completed": 0, "rejected": 0, "failed": 0}
        self.started_at = _now_iso()

    def _bump(self, **deltas: int) -> None:
        with self._lock:
            for key, delta in deltas.items():
                self._counters[key] += delta

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
        return {
            "workers": self.max_workers,
            "tile_workers": self.tile_workers,
            "started_at": self.started_at,
            **counters,
        }

    def _check_sampler_width(self, request: BatchRequest) -> None:
        assets = getattr(self.sampler, "assets", None)
        if assets is not None and request.population.shape[1] != assets:
            raise ShapeMismatchError(
                f"Portfolios hold {request.population.shape[1]} weight(s) "
                f"but the service samples {assets} asset(s)."
            )

    def submit_batch(self, payload: dict[str, Any]) -> concurrent.futures.Future:
        try:
            request = parse_batch_request(payload, self.config)
            self._check_sampler_width(request)
        except SimulationError:
            self._bump(rejected=1)
            raise
        self._bump(queued=1)
        return self._executor.submit(self._execute, request)

    def run_batch(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self.submit_batch(payload).result()

    def _execute(self, request: BatchRequest) -> dict[str, Any]:
        self._bump(queued=-1, active=1)
        batch_id = threading.get_ident()

        def progress_callback(event: str, details: dict[str, Any]) -> None:
            logger.debug("batch %s %s %s", batch_id, event, details)

        try:
            partial = run_simulation_batch(
                request.population,
                request.iterations,
                config=request.config,
                sampler=self.sampler,
                progress_callback=progress_callback,
                tile_executor=self._tile_executor,
            )
        except SimulationError:
            self._bump(active=-1, rejected=1)
            raise
        except Exception as exc:
            self._bump(active=-1, failed=1)
            logger.exception("Batch evaluation failed")
            raise ComputationFault(f"Batch evaluation failed: {exc}") from exc

        self._bump(active=-1, completed=1)
        return partial.to_dict()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
        self._tile_executor.shutdown(wait=True)


def _read_json_body(handler: BaseHTTPRequestHandler) -> dict[str, Any]:
    try:
        content_length = int(handler.headers.get("Content-Length", "0"))
    except ValueError:
        content_length = 0

    if content_length <= 0:
        return {}

    raw = handler.rfile.read(content_length)
    if not raw:
        return {}

    try:
        parsed = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeError(f"Invalid JSON body: {exc}") from exc

    if not isinstance(parsed, dict):
        raise DecodeError("Request JSON body must be an object.")
    return parsed


def _build_handler(service: BatchEvaluationService):
    class ServiceHandler(BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"

        def log_message(self, fmt: str, *args: Any) -> None:  # pragma: no cover
            logger.debug("%s - %s", self.address_string(), fmt % args)

        def _send_json(self, payload: dict[str, Any], status: int = HTTPStatus.OK) -> None:
            blob = json.dumps(_to_jsonable(payload), separators=(",", ":"), ensure_ascii=False).encode("utf-8")
            self.send_response(int(status))
            self.send_header("Content-Type", "application/json; charset=utf-8")
            self.send_header("Content-Length", str(len(blob)))
            self.end_headers()
            self.wfile.write(blob)

        def do_GET(self) -> None:  # noqa: N802
            path = urlparse(self.path).path

            if path == "/health":
                self._send_json({"status": "ok", **service.snapshot()})
                return

            if path == "/defaults":
                self._send_json({"defaults": service.config})
                return

            self._send_json({"error": "Not found."}, status=HTTPStatus.NOT_FOUND)

        def do_POST(self) -> None:  # noqa: N802
            path = urlparse(self.path).path

            if path != "/batches":
                self._send_json({"error": "Not found."}, status=HTTPStatus.NOT_FOUND)
                return

            try:
                payload = _read_json_body(self)
                result = service.run_batch(payload)
            except ComputationFault as exc:
                self._send_json({"error": str(exc), "kind": exc.kind}, status=HTTPStatus.INTERNAL_SERVER_ERROR)
                return
            except SimulationError as exc:
                logger.warning("Rejected batch request: %s", exc)
                self._send_json({"error": str(exc), "kind": exc.kind}, status=HTTPStatus.BAD_REQUEST)
                return
            except Exception as exc:
                logger.exception("Unexpected failure while handling batch request")
                self._send_json(
                    {"error": f"Unexpected failure: {exc}", "kind": ComputationFault.kind},
                    status=HTTPStatus.INTERNAL_SERVER_ERROR,
                )
                return

            self._send_json(result)

    return ServiceHandler


def create_server(service: BatchEvaluationService, host: str = "127.0.0.1", port: int = 0) -> ThreadingHTTPServer:
    server = ThreadingHTTPServer((host, port), _build_handler(service))
    server.daemon_threads = True
    return server


def _load_config_overrides(path: Optional[str]) -> dict[str, Any]:
    if not path:
        return {}
    overrides = json.loads(pathlib.Path(path).read_text(encoding="utf-8"))
    if not isinstance(overrides, dict):
        raise ConfigurationError("Config file must contain a JSON object.")
    return overrides


def main() -> int:
    parser = argparse.ArgumentParser(description="Monte Carlo portfolio batch evaluation service")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=0)
    parser.add_argument("--config", default="", help="JSON file with config overrides")
    parser.add_argument("--workers", type=int, default=None, help="Maximum concurrent batches")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    overrides = _load_config_overrides(args.config)
    if args.workers is not None:
        overrides = _deep_merge(overrides, {"service": {"max_concurrent_batches": args.workers}})
    service = BatchEvaluationService(overrides)
    server = create_server(service, args.host, args.port)

    host, port = server.server_address[:2]
    handshake = {
        "event": "service_ready",
        "host": host,
        "port": int(port),
        "workers": service.max_workers,
        "pid": os.getpid(),
    }
    print(json.dumps(handshake, separators=(",", ":"), ensure_ascii=False), flush=True)
    logger.info("Serving batch evaluations on %s:%d with %d worker(s)", host, port, service.max_workers)

    def _request_stop(signum: int, _frame: Any) -> None:
        raise KeyboardInterrupt(f"Received signal {signum}")

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)

    try:
        server.serve_forever(poll_interval=0.3)
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        server.server_close()
        service.shutdown()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
