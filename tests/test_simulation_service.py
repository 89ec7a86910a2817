import base64
import concurrent.futures
import io
import json
import os
from pathlib import Path
import subprocess
import sys
import threading
import time
import urllib.error
import urllib.request

import numpy as np
import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))
sys.path.insert(0, str(REPO_ROOT / "python_service"))

import population_codec
import portfolio_engine as engine
import shard_client
import simulation_service
from simulation_errors import ConfigurationError, DecodeError, EmptyPopulationError, ShapeMismatchError


SCENARIO = [
    [0.010, 0.020, -0.005],
    [-0.010, 0.000, 0.004],
    [0.003, -0.012, 0.001],
    [0.007, 0.002, -0.002],
]

POPULATION = [
    [1.0, 0.0, 0.0],
    [0.5, 0.5, 0.0],
    [0.2, 0.3, 0.5],
]

EVALUATION = {"money_to_invest": 1_000.0, "risk_free_rate": 0.02, "time_horizon_in_days": 30.0}


class _ConstantSampler:
    def __init__(self, scenario=SCENARIO, delay=0.0):
        self._scenario = np.asarray(scenario, dtype=np.float64)
        self._delay = delay

    def sample_returns(self):
        if self._delay:
            time.sleep(self._delay)
        return self._scenario


class _BrokenSampler:
    def sample_returns(self):
        raise RuntimeError("sampler exploded")


@pytest.fixture
def serve():
    running = []

    def _start(sampler, **service_config):
        service = simulation_service.BatchEvaluationService(
            {"service": service_config} if service_config else None,
            sampler=sampler,
        )
        server = simulation_service.create_server(service)
        thread = threading.Thread(target=server.serve_forever, kwargs={"poll_interval": 0.05}, daemon=True)
        thread.start()
        running.append((server, service, thread))
        host, port = server.server_address[:2]
        return f"http://{host}:{port}", service

    yield _start

    for server, service, thread in running:
        server.shutdown()
        server.server_close()
        service.shutdown()
        thread.join(timeout=5)


def _request(url, payload=None, raw=None):
    if payload is not None:
        raw = json.dumps(payload).encode("utf-8")
    request = urllib.request.Request(
        url,
        data=raw,
        headers={"Content-Type": "application/json"},
        method="POST" if raw is not None else "GET",
    )
    try:
        with urllib.request.urlopen(request, timeout=30) as response:
            return response.status, json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        return exc.code, json.loads(exc.read().decode("utf-8"))


def _batch(portfolios=POPULATION, iterations=3, **extra):
    payload = {"portfolios": portfolios, "config": dict(EVALUATION), "iterations": iterations}
    payload.update(extra)
    return payload


def _expected_partial(iterations):
    return engine.run_simulation_batch(
        POPULATION,
        iterations,
        config={"evaluation": EVALUATION},
        sampler=_ConstantSampler(),
    )


def _assert_matches(body, expected):
    assert body["iterations"] == expected.iterations
    assert body["population_size"] == expected.population_size
    np.testing.assert_allclose(body["sum_returns"], expected.sum_returns, rtol=1e-12)
    np.testing.assert_allclose(body["sum_volatilities"], expected.sum_volatilities, rtol=1e-12)
    np.testing.assert_allclose(body["sum_sharpe_ratios"], expected.sum_sharpe_ratios, rtol=1e-12)


def test_batch_with_weight_lists_returns_partial_sums(serve):
    url, _ = serve(_ConstantSampler())

    status, body = _request(f"{url}/batches", _batch())

    assert status == 200
    _assert_matches(body, _expected_partial(3))
    assert body["last_scenario"] == SCENARIO


def test_batch_accepts_binary_population_blob(serve):
    url, _ = serve(_ConstantSampler())
    payload = _batch()
    del payload["portfolios"]
    payload["portfolios_blob"] = population_codec.encode_population_blob(POPULATION)

    status, body = _request(f"{url}/batches", payload)

    assert status == 200
    _assert_matches(body, _expected_partial(3))


def test_batch_accepts_portfolio_objects(serve):
    url, _ = serve(_ConstantSampler())

    status, body = _request(f"{url}/batches", _batch(portfolios=[{"weights": item} for item in POPULATION]))

    assert status == 200
    _assert_matches(body, _expected_partial(3))


def test_zero_iteration_batch_returns_empty_sums(serve):
    url, _ = serve(_ConstantSampler())

    status, body = _request(f"{url}/batches", _batch(iterations=0))

    assert status == 200
    assert body["iterations"] == 0
    assert body["sum_returns"] == [0.0, 0.0, 0.0]
    assert body["last_scenario"] == []


@pytest.mark.parametrize(
    "payload,kind",
    [
        ({"portfolios_blob": "***not-base64***", "iterations": 1}, "malformed_input"),
        ({"portfolios_blob": base64.b64encode(b"garbage").decode("ascii"), "iterations": 1}, "malformed_input"),
        ({"portfolios": "0.5,0.5", "iterations": 1}, "malformed_input"),
        ({"iterations": 1}, "malformed_input"),
        (_batch(portfolios=[]), "empty_population"),
        (_batch(config={"money_to_invest": 0.0}), "invalid_configuration"),
        (_batch(config={"time_horizon_in_days": 0.0}), "invalid_configuration"),
        (_batch(config={"simulations_per_generation": 3}), "invalid_configuration"),
        (_batch(iterations=-1), "invalid_configuration"),
        (_batch(portfolios=[[0.5, 0.5]]), "shape_mismatch"),
        (_batch(portfolios=[["a", 0.5, 0.5]]), "malformed_input"),
        (_batch(portfolios=[[float("nan"), 0.5, 0.5]]), "malformed_input"),
        (_batch(portfolios=[[True, 0.0, 0.0]]), "malformed_input"),
    ],
)
def test_invalid_requests_are_rejected(serve, payload, kind):
    url, service = serve(_ConstantSampler())

    status, body = _request(f"{url}/batches", payload)

    assert status == 400
    assert body["kind"] == kind
    assert service.snapshot()["rejected"] == 1


def test_invalid_json_body_is_malformed_input(serve):
    url, _ = serve(_ConstantSampler())

    status, body = _request(f"{url}/batches", raw=b"{not json")

    assert status == 400
    assert body["kind"] == "malformed_input"


def test_sampler_with_too_few_periods_is_rejected(serve):
    url, _ = serve(_ConstantSampler(scenario=[SCENARIO[0]]))

    status, body = _request(f"{url}/batches", _batch())

    assert status == 400
    assert body["kind"] == "insufficient_data"


def test_worker_failure_is_internal_error_and_service_keeps_serving(serve):
    url, _ = serve(_BrokenSampler())

    status, body = _request(f"{url}/batches", _batch())
    assert status == 500
    assert body["kind"] == "internal"
    assert "sampler exploded" in body["error"]

    status, health = _request(f"{url}/health")
    assert status == 200
    assert health["status"] == "ok"
    assert health["failed"] == 1


def test_saturated_pool_queues_batches_instead_of_dropping_them(serve):
    url, _ = serve(_ConstantSampler(delay=0.02), max_concurrent_batches=1)

    with concurrent.futures.ThreadPoolExecutor(max_workers=4) as executor:
        replies = list(executor.map(lambda _: _request(f"{url}/batches", _batch()), range(4)))

    assert [status for status, _ in replies] == [200, 200, 200, 200]
    expected = _expected_partial(3)
    for _, body in replies:
        _assert_matches(body, expected)

    status, health = _request(f"{url}/health")
    assert health["workers"] == 1
    assert health["completed"] == 4
    assert health["active"] == 0
    assert health["queued"] == 0


def test_defaults_and_unknown_routes(serve):
    url, _ = serve(_ConstantSampler())

    status, body = _request(f"{url}/defaults")
    assert status == 200
    assert body["defaults"]["evaluation"]["money_to_invest"] == engine.DEFAULT_CONFIG["evaluation"]["money_to_invest"]

    status, body = _request(f"{url}/nowhere")
    assert status == 404


def test_submit_batch_validates_on_the_calling_thread():
    service = simulation_service.BatchEvaluationService(sampler=_BrokenSampler())
    try:
        with pytest.raises(EmptyPopulationError):
            service.submit_batch(_batch(portfolios=[]))
        assert service.snapshot()["rejected"] == 1
        assert service.snapshot()["queued"] == 0
    finally:
        service.shutdown()


def test_population_blob_rejects_non_numeric_and_non_matrix_payloads():
    buffer = io.BytesIO()
    np.save(buffer, np.array([{"weights": [1.0]}], dtype=object), allow_pickle=True)
    pickled = base64.b64encode(buffer.getvalue()).decode("ascii")

    with pytest.raises(DecodeError):
        population_codec.decode_population_blob(pickled)
    with pytest.raises(DecodeError):
        population_codec.decode_population_blob(population_codec.encode_population_blob([0.5, 0.5]))
    with pytest.raises(DecodeError):
        population_codec.decode_population_blob(42)


def test_population_blob_preserves_weights():
    decoded = population_codec.decode_population_blob(population_codec.encode_population_blob(POPULATION))

    assert decoded.dtype == np.float64
    np.testing.assert_array_equal(decoded, np.asarray(POPULATION))


def test_sharded_batches_merge_into_a_combined_result(serve):
    first_url, _ = serve(_ConstantSampler())
    second_url, _ = serve(_ConstantSampler())

    merged = shard_client.run_sharded_batch([first_url, second_url], POPULATION, [2, 3], evaluation=EVALUATION)

    expected = _expected_partial(5)
    assert merged.iterations == 5
    np.testing.assert_allclose(merged.sum_returns, expected.sum_returns, rtol=1e-12)
    np.testing.assert_allclose(merged.sum_sharpe_ratios, expected.sum_sharpe_ratios, rtol=1e-12)
    np.testing.assert_array_equal(merged.last_scenario_returns, np.asarray(SCENARIO))

    result = shard_client.evaluate_sharded([first_url, second_url], POPULATION, 2, evaluation=EVALUATION)
    finalized = engine.finalize_partial_result(expected)
    np.testing.assert_allclose(result.average_sharpe_ratios, finalized.average_sharpe_ratios, rtol=1e-12)
    assert result.best_sharpe >= result.population_average_sharpe


def test_shard_client_surfaces_remote_rejections(serve):
    url, _ = serve(_ConstantSampler())

    with pytest.raises(shard_client.RemoteBatchError) as excinfo:
        shard_client.run_sharded_batch([url], POPULATION, 1, evaluation={"money_to_invest": 0.0})

    assert excinfo.value.status == 400
    assert excinfo.value.kind == "invalid_configuration"


def _forged_blob(shape, data_bytes, descr="<f8"):
    buffer = io.BytesIO()
    np.lib.format.write_array_header_1_0(buffer, {"descr": descr, "fortran_order": False, "shape": shape})
    buffer.write(b"\0" * data_bytes)
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def test_population_blob_header_is_checked_before_allocating():
    with pytest.raises(DecodeError, match="declares"):
        population_codec.decode_population_blob(_forged_blob((10**7, 10**7), 64))
    with pytest.raises(DecodeError, match="declares"):
        population_codec.decode_population_blob(_forged_blob((3, 3), 8 * 8))
    with pytest.raises(DecodeError, match="2-D"):
        population_codec.decode_population_blob(_forged_blob((2, 2, 2), 8 * 8))


def test_oversized_population_blob_is_malformed_input(serve):
    url, service = serve(_ConstantSampler())
    payload = _batch()
    del payload["portfolios"]
    payload["portfolios_blob"] = _forged_blob((10**7, 10**7), 64)

    status, body = _request(f"{url}/batches", payload)

    assert status == 400
    assert body["kind"] == "malformed_input"
    assert service.snapshot()["rejected"] == 1


def test_population_blob_rejects_non_finite_weights():
    with pytest.raises(DecodeError, match="non-finite"):
        population_codec.decode_population_blob(population_codec.encode_population_blob([[0.5, float("inf")]]))


class _SizedSampler(_ConstantSampler):
    assets = 3


def test_width_mismatch_with_service_sampler_is_rejected_before_queueing():
    service = simulation_service.BatchEvaluationService(sampler=_SizedSampler())
    try:
        with pytest.raises(ShapeMismatchError, match="samples 3 asset"):
            service.submit_batch(_batch(portfolios=[[0.5, 0.5]]))
        snapshot = service.snapshot()
        assert snapshot["rejected"] == 1
        assert snapshot["queued"] == 0
        assert snapshot["active"] == 0

        _assert_matches(service.run_batch(_batch()), _expected_partial(3))
    finally:
        service.shutdown()


def test_single_period_sampler_config_is_rejected_at_startup():
    with pytest.raises(ConfigurationError, match="periods"):
        simulation_service.BatchEvaluationService({"sampler": {"periods": 1}})


def test_concurrent_batches_share_one_tile_pool():
    population = [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0], [0.2, 0.3, 0.5]] * 4
    config = {
        "execution": {"parallel_enabled": True, "parallel_workers": 2, "portfolio_tile_size": 2},
        "service": {"max_concurrent_batches": 3},
    }
    service = simulation_service.BatchEvaluationService(config, sampler=_ConstantSampler())
    try:
        futures = [service.submit_batch(_batch(portfolios=population)) for _ in range(6)]
        replies = [future.result(timeout=30) for future in futures]

        tile_threads = [thread for thread in threading.enumerate() if thread.name.startswith("portfolio-tile")]
        assert len(tile_threads) <= 2
        assert service.snapshot()["tile_workers"] == 2
    finally:
        service.shutdown()

    expected = engine.run_simulation_batch(
        population,
        3,
        config={"evaluation": EVALUATION, "execution": {"parallel_enabled": False}},
        sampler=_ConstantSampler(),
    )
    for reply in replies:
        np.testing.assert_allclose(reply["sum_returns"], expected.sum_returns, rtol=1e-12)
        np.testing.assert_allclose(reply["sum_sharpe_ratios"], expected.sum_sharpe_ratios, rtol=1e-12)


def test_service_modules_import_as_a_package():
    env = {key: value for key, value in os.environ.items() if key != "PYTHONPATH"}
    completed = subprocess.run(
        [sys.executable, "-c", "import python_service.shard_client, python_service.simulation_service"],
        cwd=str(REPO_ROOT),
        env=env,
        capture_output=True,
        text=True,
        timeout=60,
    )

    assert completed.returncode == 0, completed.stderr
