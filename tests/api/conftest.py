# tests/api/conftest.py
from __future__ import annotations

import pytest

from modelfarm.api import create_app
from modelfarm.config.app_config import AppConfig
from modelfarm.config.storage_config import StorageConfig
from modelfarm.contracts.resources import HardwareInfo
from modelfarm.control_plane import ControlPlane
from modelfarm.market_data.kline_store import klines_to_frame
from modelfarm.market_data.sources import FrameKlineSource
from tests.conftest import make_klines, sine_closes, wait_until
from tests.training.conftest import FAST

N_CANDLES = 300
HARDWARE = HardwareInfo(cpu_count=4, gpu_count=0)


def make_source(n: int = N_CANDLES) -> FrameKlineSource:
    return FrameKlineSource({("BTCUSDT", "1h"): klines_to_frame(make_klines(sine_closes(n)))})


def make_plane(base_dir, source=None) -> ControlPlane:
    config = AppConfig(storage=StorageConfig(base_dir=str(base_dir)), orchestrator=FAST)
    return ControlPlane(config, source=source or make_source())


def linear_config_payload(dataset_id, **overrides) -> dict:
    payload = {
        "name": "linear-api",
        "dataset_id": str(dataset_id),
        "model_type": 0,
        "max_lags": 3,
        "max_epochs": 5,
        "learning_rate": 0.01,
        "batch_size": 16,
        "use_early_stopping": False,
        "validation_split": 0.2,
        "test_split": 0.2,
        "checkpoint_interval_epochs": 2,
        "performance_requirements": {"min_trade_count": 0},
        "trading_environment": {"fees": {"maker_fee_rate": 0.0, "taker_fee_rate": 0.0}},
    }
    payload.update(overrides)
    return payload


def dataset_payload(**overrides) -> dict:
    payload = {
        "name": "btc hourly",
        "symbol": "BTCUSDT",
        "interval": "1h",
        "start_time_utc": "2024-01-01T00:00:00Z",
        "end_time_utc": f"2024-01-{1 + (N_CANDLES - 1) // 24:02d}T{(N_CANDLES - 1) % 24:02d}:00:00Z",
    }
    payload.update(overrides)
    return payload


def wait_for_json(client, url, predicate, timeout=30.0) -> dict:
    box = {}

    def check():
        box["body"] = client.get(url).get_json()
        return predicate(box["body"])

    assert wait_until(check, timeout=timeout), box.get("body")
    return box["body"]


@pytest.fixture
def plane(tmp_path):
    p = make_plane(tmp_path).start(hardware=HARDWARE)
    yield p
    p.stop()


@pytest.fixture
def client(plane):
    app = create_app(plane)
    app.config["TESTING"] = True
    return app.test_client()


@pytest.fixture
def ready_dataset(client):
    created = client.post("/datasets", json=dataset_payload())
    assert created.status_code == 201
    ds_id = created.get_json()["id"]
    return wait_for_json(client, f"/datasets/{ds_id}", lambda d: d["status"] == 2)
