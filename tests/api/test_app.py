#!filepath: tests/api/test_app.py
import uuid

from tests.api.conftest import N_CANDLES, dataset_payload, linear_config_payload, wait_for_json


def _config(client, dataset_id, **overrides):
    resp = client.post("/configurations", json=linear_config_payload(dataset_id, **overrides))
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()


def _completed_job(client, dataset_id):
    config = _config(client, dataset_id)
    resp = client.post("/jobs", json={"configuration_id": config["id"], "name": "api job"})
    assert resp.status_code == 201
    job_id = resp.get_json()["id"]
    return wait_for_json(client, f"/jobs/{job_id}", lambda j: j["status"] == 5)


# ----------------------------------------------------------------------
# basics
# ----------------------------------------------------------------------
def test_health_and_hardware(client):
    assert client.get("/health").get_json() == {"ok": True}
    hw = client.get("/hardware").get_json()
    assert hw["cpu_count"] == 4
    assert hw["gpu_count"] == 0


def test_unknown_ids_are_404(client):
    missing = uuid.uuid4()
    for url in (f"/jobs/{missing}", f"/datasets/{missing}", f"/configurations/{missing}",
                f"/containers/{missing}", f"/queues/{missing}", f"/tasks/{missing}", f"/tests/{missing}"):
        resp = client.get(url)
        assert resp.status_code == 404, url
        assert resp.get_json()["kind"] == "NotFound"

    resp = client.post(f"/jobs/{missing}/cancel")
    assert resp.status_code == 404


def test_bad_enum_filter_is_400(client):
    resp = client.get("/jobs?status=SLEEPING")
    assert resp.status_code == 400
    assert resp.get_json()["kind"] == "InvalidArgument"


# ----------------------------------------------------------------------
# datasets
# ----------------------------------------------------------------------
def test_dataset_ingestion_and_klines(client, ready_dataset):
    assert ready_dataset["record_count"] == N_CANDLES
    assert ready_dataset["symbol"] == "BTCUSDT"

    page = client.get(f"/datasets/{ready_dataset['id']}/klines?offset=10&limit=5").get_json()
    assert page["total"] == N_CANDLES
    assert page["offset"] == 10
    assert len(page["data"]) == 5
    assert page["data"][0]["open_time"] < page["data"][1]["open_time"]

    listed = client.get("/datasets?status=READY").get_json()
    assert [d["id"] for d in listed] == [ready_dataset["id"]]

    tasks = client.get("/tasks?type=DATA_INGESTION").get_json()
    assert tasks[0]["status"] == 2
    assert tasks[0]["related_entity_id"] == ready_dataset["id"]


def test_dataset_validation(client):
    resp = client.post("/datasets", json=dataset_payload(end_time_utc="2999-01-01T00:00:00Z"))
    assert resp.status_code == 400
    assert "future" in resp.get_json()["error"]

    resp = client.post("/datasets", json={"name": "x"})
    assert resp.status_code == 400


def test_delete_dataset(client, ready_dataset):
    ds_id = ready_dataset["id"]
    assert client.delete(f"/datasets/{ds_id}?delete_data=true").status_code == 200
    assert client.get(f"/datasets/{ds_id}").status_code == 404
    assert client.delete(f"/datasets/{ds_id}").status_code == 404


# ----------------------------------------------------------------------
# configurations
# ----------------------------------------------------------------------
def test_configuration_crud(client, ready_dataset):
    config = _config(client, ready_dataset["id"])
    assert config["model_type"] == 0

    resp = client.patch(f"/configurations/{config['id']}", json={"max_epochs": 7})
    assert resp.status_code == 200
    assert resp.get_json()["max_epochs"] == 7

    assert [c["id"] for c in client.get("/configurations").get_json()] == [config["id"]]
    assert client.delete(f"/configurations/{config['id']}").status_code == 200
    assert client.delete(f"/configurations/{config['id']}").status_code == 404


def test_configuration_validation(client, ready_dataset):
    resp = client.post("/configurations", json=linear_config_payload(ready_dataset["id"], max_lags=0))
    assert resp.status_code == 400
    assert "max_lags" in resp.get_json()["error"]

    resp = client.post("/configurations", json=linear_config_payload(uuid.uuid4()))
    assert resp.status_code == 400


# ----------------------------------------------------------------------
# jobs
# ----------------------------------------------------------------------
def test_job_runs_to_completion(client, ready_dataset):
    job = _completed_job(client, ready_dataset["id"])
    assert job["name"] == "api job"
    assert job["result"]["meets_requirements"] is True
    assert job["has_checkpoint"] is True

    listed = client.get("/jobs?status=COMPLETED").get_json()
    assert [j["id"] for j in listed] == [job["id"]]

    resp = client.post(f"/jobs/{job['id']}/cancel")
    assert resp.status_code == 409
    body = resp.get_json()
    assert "COMPLETED" in body["error"]
    assert body["job"]["id"] == job["id"]

    resp = client.post(f"/jobs/{job['id']}/retry")
    assert resp.status_code == 200
    wait_for_json(client, f"/jobs/{job['id']}", lambda j: j["status"] == 5)


def test_cancel_running_job(client, ready_dataset):
    config = _config(client, ready_dataset["id"], max_epochs=10_000_000)
    job_id = client.post("/jobs", json={"configuration_id": config["id"]}).get_json()["id"]
    wait_for_json(client, f"/jobs/{job_id}", lambda j: j["status"] == 3 and j["current_epoch"] > 0)

    assert client.post(f"/jobs/{job_id}/pause").get_json()["is_paused"] is True
    assert client.post(f"/jobs/{job_id}/resume").get_json()["is_paused"] is False

    resp = client.post(f"/jobs/{job_id}/cancel")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == 7


def test_start_job_validation(client):
    assert client.post("/jobs", json={}).status_code == 400
    assert client.post("/jobs", json={"configuration_id": "nope"}).status_code == 400
    assert client.post("/jobs", json={"configuration_id": str(uuid.uuid4())}).status_code == 404


def test_resume_from_checkpoint_requires_failed_job(client, ready_dataset):
    job = _completed_job(client, ready_dataset["id"])
    resp = client.post(f"/jobs/{job['id']}/resume-from-checkpoint")
    assert resp.status_code == 409


# ----------------------------------------------------------------------
# model tests
# ----------------------------------------------------------------------
def test_model_test_flow(client, ready_dataset):
    job = _completed_job(client, ready_dataset["id"])
    models = client.get("/tests/models").get_json()
    assert [m["id"] for m in models] == [job["id"]]

    resp = client.post("/tests", json={"job_id": job["id"], "dataset_id": ready_dataset["id"], "wait": True})
    assert resp.status_code == 201
    test = resp.get_json()
    assert test["status"] == 1
    assert test["result"]["sample_count"] > 0

    resp = client.post("/tests", json={"job_id": job["id"], "dataset_id": ready_dataset["id"]})
    assert resp.status_code == 202
    wait_for_json(client, f"/tests/{resp.get_json()['id']}", lambda t: t["status"] == 1)

    assert client.delete(f"/tests/{test['id']}").status_code == 200
    assert client.get(f"/tests/{test['id']}").status_code == 404


# ----------------------------------------------------------------------
# resources
# ----------------------------------------------------------------------
def test_default_resources_exist(client):
    containers = client.get("/containers").get_json()
    assert {c["type"] for c in containers} >= {0, 1}
    queues = client.get("/queues").get_json()
    assert len(queues) == 1 and queues[0]["is_default"]

    status = client.get(f"/queues/{queues[0]['id']}/status").get_json()
    assert status["available_slots"] == queues[0]["max_concurrent_jobs"]
    assert status["running"] == [] and status["waiting"] == []
    assert set(status) == {"queue", "available_slots", "running", "waiting", "cpu", "gpu", "ram"}

    cpu = client.get(f"/containers/{status['cpu']['container']['id']}/status").get_json()
    assert set(cpu) == {"container", "slot_capacity", "available", "held", "queued"}
    assert cpu["held"] == [] and cpu["queued"] == []


def test_container_and_queue_crud(client):
    resp = client.post("/containers", json={"name": "big cpu", "type": "CPU", "max_capacity": 8})
    assert resp.status_code == 201
    cpu = resp.get_json()
    gpu = client.get("/containers?type=GPU").get_json()[0]

    resp = client.patch(f"/containers/{cpu['id']}", json={"max_capacity": 6})
    assert resp.get_json()["max_capacity"] == 6
    assert client.get(f"/containers/{cpu['id']}/status").get_json()["slot_capacity"] == 6

    resp = client.post(
        "/queues",
        json={
            "name": "fast lane",
            "cpu_container_id": cpu["id"],
            "gpu_container_id": gpu["id"],
            "max_concurrent_jobs": 2,
            "max_job_duration_seconds": 60,
        },
    )
    assert resp.status_code == 201
    queue = resp.get_json()

    resp = client.patch(f"/queues/{queue['id']}", json={"max_job_duration_seconds": None, "max_concurrent_jobs": 3})
    body = resp.get_json()
    assert body["max_job_duration_seconds"] is None
    assert body["max_concurrent_jobs"] == 3

    # referenced by a queue
    assert client.delete(f"/containers/{cpu['id']}").status_code == 409

    assert client.post(f"/queues/{queue['id']}/default").get_json()["is_default"] is True
    assert client.delete(f"/queues/{queue['id']}").status_code == 409


def test_container_validation(client):
    assert client.post("/containers", json={"name": "x", "max_capacity": 1}).status_code == 400
    assert client.post("/containers", json={"name": "x", "type": "CPU", "max_capacity": 0}).status_code == 400
    assert client.post("/containers", json={"name": "x", "type": "TPU", "max_capacity": 1}).status_code == 400


def test_cancel_finished_task_is_409(client, ready_dataset):
    task_id = ready_dataset["ingestion_task_id"]
    resp = client.post(f"/tasks/{task_id}/cancel")
    assert resp.status_code == 409
    assert resp.get_json()["task"]["id"] == task_id


def test_configuration_jobs(client, ready_dataset):
    job = _completed_job(client, ready_dataset["id"])
    jobs = client.get(f"/configurations/{job['configuration_id']}/jobs").get_json()
    assert [j["id"] for j in jobs] == [job["id"]]
    assert client.get(f"/configurations/{uuid.uuid4()}/jobs").status_code == 404
