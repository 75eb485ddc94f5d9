# modelfarm/api/app.py
"""
HTTP adapter over the ControlPlane command surface.

Every entity is returned as its pydantic JSON dump; enums are integers.

    python -m modelfarm.api.app        # serve with the default config
"""
from __future__ import annotations

import uuid
from dataclasses import asdict, is_dataclass
from enum import IntEnum
from typing import Any, Optional

from flask import Blueprint, Flask, current_app, jsonify, request
from pydantic import BaseModel

from modelfarm.api.decorators import handle_errors
from modelfarm.contracts.enums import (
    BackgroundTaskStatus,
    BackgroundTaskType,
    DatasetStatus,
    Exchange,
    ModelTestStatus,
    ResourceType,
    TrainingJobStatus,
)
from modelfarm.control_plane import ControlPlane
from modelfarm.utils.errors import InvalidArgument, NotFound

bp = Blueprint("modelfarm", __name__)


def create_app(plane: ControlPlane) -> Flask:
    app = Flask(__name__)
    app.config["PLANE"] = plane
    app.register_blueprint(bp)
    return app


def _plane() -> ControlPlane:
    return current_app.config["PLANE"]


# ----------------------------------------------------------------------
# helpers
# ----------------------------------------------------------------------
def _dump(obj: Any):
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    if is_dataclass(obj) and not isinstance(obj, type):
        return asdict(obj)
    if isinstance(obj, (list, tuple)):
        return [_dump(o) for o in obj]
    return obj


def _payload() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise InvalidArgument("Request body must be a JSON object")
    return payload


def _uuid(payload: dict, key: str, required: bool = True) -> Optional[uuid.UUID]:
    value = payload.get(key)
    if value is None:
        if required:
            raise InvalidArgument(f"missing {key}")
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError as e:
        raise InvalidArgument(f"{key} is not a valid id: {value}") from e


def _enum(enum_cls: type[IntEnum], value: Any, label: str) -> Optional[IntEnum]:
    """
    Accepts the integer value or the member name (case-insensitive).
    """
    if value is None or value == "":
        return None
    try:
        if isinstance(value, int) or str(value).lstrip("-").isdigit():
            return enum_cls(int(value))
        return enum_cls[str(value).strip().upper()]
    except (KeyError, ValueError) as e:
        raise InvalidArgument(f"unknown {label}: {value}") from e


def _command_result(ok: bool, job_id: uuid.UUID, action: str):
    plane = _plane()
    job = plane.orchestrator.get_job(job_id)
    if job is None:
        raise NotFound(f"Training job {job_id} not found")
    if not ok:
        return jsonify({
            "error": f"cannot {action} job in status {job.status.name}",
            "job": _dump(job),
        }), 409
    return jsonify(_dump(job))


@bp.get("/health")
def health():
    return jsonify({"ok": True})


@bp.get("/hardware")
def hardware():
    return jsonify(_dump(_plane().hardware))


# ======================================================================
# training jobs
# ======================================================================
@bp.get("/jobs")
@handle_errors
def list_jobs():
    status = _enum(TrainingJobStatus, request.args.get("status"), "job status")
    return jsonify(_dump(_plane().orchestrator.list_jobs(status)))


@bp.post("/jobs")
@handle_errors
def start_training():
    payload = _payload()
    job = _plane().orchestrator.start_training(
        _uuid(payload, "configuration_id"),
        job_name=payload.get("name"),
        queue_id=_uuid(payload, "queue_id", required=False),
    )
    return jsonify(_dump(job)), 201


@bp.get("/jobs/<uuid:job_id>")
@handle_errors
def get_job(job_id: uuid.UUID):
    job = _plane().orchestrator.get_job(job_id)
    if job is None:
        raise NotFound(f"Training job {job_id} not found")
    return jsonify(_dump(job))


@bp.post("/jobs/<uuid:job_id>/cancel")
@handle_errors
def cancel_job(job_id: uuid.UUID):
    return _command_result(_plane().orchestrator.cancel_job(job_id), job_id, "cancel")


@bp.post("/jobs/<uuid:job_id>/pause")
@handle_errors
def pause_job(job_id: uuid.UUID):
    return _command_result(_plane().orchestrator.pause_job(job_id), job_id, "pause")


@bp.post("/jobs/<uuid:job_id>/resume")
@handle_errors
def resume_job(job_id: uuid.UUID):
    return _command_result(_plane().orchestrator.resume_job(job_id), job_id, "resume")


@bp.post("/jobs/<uuid:job_id>/retry")
@handle_errors
def retry_job(job_id: uuid.UUID):
    return _command_result(_plane().orchestrator.retry_job(job_id), job_id, "retry")


@bp.post("/jobs/<uuid:job_id>/resume-from-checkpoint")
@handle_errors
def resume_job_from_checkpoint(job_id: uuid.UUID):
    ok = _plane().orchestrator.resume_job_from_checkpoint(job_id)
    return _command_result(ok, job_id, "resume from checkpoint")


# ======================================================================
# configurations
# ======================================================================
@bp.get("/configurations")
@handle_errors
def list_configurations():
    return jsonify(_dump(_plane().configurations.list()))


@bp.post("/configurations")
@handle_errors
def create_configuration():
    return jsonify(_dump(_plane().configurations.create(_payload()))), 201


@bp.get("/configurations/<uuid:configuration_id>")
@handle_errors
def get_configuration(configuration_id: uuid.UUID):
    return jsonify(_dump(_plane().configurations.get(configuration_id)))


@bp.get("/configurations/<uuid:configuration_id>/jobs")
@handle_errors
def list_configuration_jobs(configuration_id: uuid.UUID):
    _plane().configurations.get(configuration_id)
    return jsonify(_dump(_plane().orchestrator.jobs_for_configuration(configuration_id)))


@bp.patch("/configurations/<uuid:configuration_id>")
@handle_errors
def update_configuration(configuration_id: uuid.UUID):
    return jsonify(_dump(_plane().configurations.update(configuration_id, _payload())))


@bp.delete("/configurations/<uuid:configuration_id>")
@handle_errors
def delete_configuration(configuration_id: uuid.UUID):
    if not _plane().configurations.delete(configuration_id):
        raise NotFound(f"Configuration {configuration_id} not found")
    return jsonify({"deleted": str(configuration_id)})


# ======================================================================
# datasets
# ======================================================================
@bp.get("/datasets")
@handle_errors
def list_datasets():
    status = _enum(DatasetStatus, request.args.get("status"), "dataset status")
    return jsonify(_dump(_plane().datasets.list(status)))


@bp.post("/datasets")
@handle_errors
def create_dataset():
    payload = _payload()
    for key in ("name", "symbol", "interval", "start_time_utc", "end_time_utc"):
        if not payload.get(key):
            raise InvalidArgument(f"missing {key}")
    dataset = _plane().datasets.create_dataset(
        name=payload["name"],
        symbol=payload["symbol"],
        interval=payload["interval"],
        start_time_utc=payload["start_time_utc"],
        end_time_utc=payload["end_time_utc"],
        exchange=_enum(Exchange, payload.get("exchange"), "exchange") or Exchange.BINANCE,
        description=payload.get("description"),
    )
    return jsonify(_dump(dataset)), 201


@bp.get("/datasets/<uuid:dataset_id>")
@handle_errors
def get_dataset(dataset_id: uuid.UUID):
    return jsonify(_dump(_plane().datasets.get(dataset_id)))


@bp.get("/datasets/<uuid:dataset_id>/klines")
@handle_errors
def get_dataset_klines(dataset_id: uuid.UUID):
    offset = int(request.args.get("offset", 0))
    limit = int(request.args.get("limit", 1000))
    klines = _plane().datasets.get_klines(dataset_id)
    return jsonify({
        "total": len(klines),
        "offset": offset,
        "data": _dump(klines[offset:offset + limit]),
    })


@bp.delete("/datasets/<uuid:dataset_id>")
@handle_errors
def delete_dataset(dataset_id: uuid.UUID):
    delete_data = request.args.get("delete_data", "false").lower() in ("1", "true", "yes")
    if not _plane().datasets.delete(dataset_id, delete_data=delete_data):
        raise NotFound(f"Dataset {dataset_id} not found")
    return jsonify({"deleted": str(dataset_id)})


# ======================================================================
# resource containers
# ======================================================================
@bp.get("/containers")
@handle_errors
def list_containers():
    type_ = _enum(ResourceType, request.args.get("type"), "resource type")
    return jsonify(_dump(_plane().containers.list(type_)))


@bp.post("/containers")
@handle_errors
def create_container():
    payload = _payload()
    type_ = _enum(ResourceType, payload.get("type"), "resource type")
    if type_ is None:
        raise InvalidArgument("missing type")
    if payload.get("max_capacity") is None:
        raise InvalidArgument("missing max_capacity")
    container = _plane().containers.create(
        name=payload.get("name", ""),
        type_=type_,
        max_capacity=int(payload["max_capacity"]),
        description=payload.get("description"),
        is_default=bool(payload.get("is_default", False)),
    )
    return jsonify(_dump(container)), 201


@bp.get("/containers/<uuid:container_id>")
@handle_errors
def get_container(container_id: uuid.UUID):
    return jsonify(_dump(_plane().containers.get(container_id)))


@bp.get("/containers/<uuid:container_id>/status")
@handle_errors
def container_status(container_id: uuid.UUID):
    return jsonify(_dump(_plane().containers.status(container_id)))


@bp.patch("/containers/<uuid:container_id>")
@handle_errors
def update_container(container_id: uuid.UUID):
    payload = _payload()
    container = _plane().containers.update(
        container_id,
        name=payload.get("name"),
        description=payload.get("description"),
        max_capacity=payload.get("max_capacity"),
    )
    return jsonify(_dump(container))


@bp.post("/containers/<uuid:container_id>/default")
@handle_errors
def set_default_container(container_id: uuid.UUID):
    return jsonify(_dump(_plane().containers.set_default(container_id)))


@bp.delete("/containers/<uuid:container_id>")
@handle_errors
def delete_container(container_id: uuid.UUID):
    _plane().containers.delete(container_id)
    return jsonify({"deleted": str(container_id)})


# ======================================================================
# resource queues
# ======================================================================
_QUEUE_OPTIONAL = ("ram_container_id", "max_job_duration_seconds", "max_queue_wait_seconds")


@bp.get("/queues")
@handle_errors
def list_queues():
    return jsonify(_dump(_plane().queues.list()))


@bp.post("/queues")
@handle_errors
def create_queue():
    payload = _payload()
    queue = _plane().queues.create(
        name=payload.get("name", ""),
        cpu_container_id=_uuid(payload, "cpu_container_id"),
        gpu_container_id=_uuid(payload, "gpu_container_id"),
        ram_container_id=_uuid(payload, "ram_container_id", required=False),
        max_concurrent_jobs=int(payload.get("max_concurrent_jobs", 1)),
        max_job_duration_seconds=payload.get("max_job_duration_seconds"),
        max_queue_wait_seconds=payload.get("max_queue_wait_seconds"),
        description=payload.get("description"),
        is_default=bool(payload.get("is_default", False)),
    )
    return jsonify(_dump(queue)), 201


@bp.get("/queues/<uuid:queue_id>")
@handle_errors
def get_queue(queue_id: uuid.UUID):
    return jsonify(_dump(_plane().queues.get(queue_id)))


@bp.get("/queues/<uuid:queue_id>/status")
@handle_errors
def queue_status(queue_id: uuid.UUID):
    return jsonify(_dump(_plane().queues.status(queue_id)))


@bp.patch("/queues/<uuid:queue_id>")
@handle_errors
def update_queue(queue_id: uuid.UUID):
    payload = _payload()
    # only keys present in the body are changed; null clears an optional limit
    optional = {k: payload[k] for k in _QUEUE_OPTIONAL if k in payload}
    if optional.get("ram_container_id") is not None:
        optional["ram_container_id"] = _uuid(payload, "ram_container_id")
    queue = _plane().queues.update(
        queue_id,
        name=payload.get("name"),
        description=payload.get("description"),
        cpu_container_id=_uuid(payload, "cpu_container_id", required=False),
        gpu_container_id=_uuid(payload, "gpu_container_id", required=False),
        max_concurrent_jobs=payload.get("max_concurrent_jobs"),
        **optional,
    )
    return jsonify(_dump(queue))


@bp.post("/queues/<uuid:queue_id>/default")
@handle_errors
def set_default_queue(queue_id: uuid.UUID):
    return jsonify(_dump(_plane().queues.set_default(queue_id)))


@bp.delete("/queues/<uuid:queue_id>")
@handle_errors
def delete_queue(queue_id: uuid.UUID):
    _plane().queues.delete(queue_id)
    return jsonify({"deleted": str(queue_id)})


# ======================================================================
# background tasks
# ======================================================================
@bp.get("/tasks")
@handle_errors
def list_tasks():
    type_ = _enum(BackgroundTaskType, request.args.get("type"), "task type")
    status = _enum(BackgroundTaskStatus, request.args.get("status"), "task status")
    return jsonify(_dump(_plane().task_manager.list_tasks(type_, status)))


@bp.get("/tasks/<uuid:task_id>")
@handle_errors
def get_task(task_id: uuid.UUID):
    task = _plane().task_manager.get_task(task_id)
    if task is None:
        raise NotFound(f"Task {task_id} not found")
    return jsonify(_dump(task))


@bp.post("/tasks/<uuid:task_id>/cancel")
@handle_errors
def cancel_task(task_id: uuid.UUID):
    manager = _plane().task_manager
    task = manager.get_task(task_id)
    if task is None:
        raise NotFound(f"Task {task_id} not found")
    if not manager.cancel_task(task_id):
        return jsonify({"error": f"task already {task.status.name}", "task": _dump(task)}), 409
    return jsonify(_dump(manager.get_task(task_id)))


# ======================================================================
# model tests
# ======================================================================
@bp.get("/tests")
@handle_errors
def list_tests():
    status = _enum(ModelTestStatus, request.args.get("status"), "test status")
    return jsonify(_dump(_plane().model_tests.list(status)))


@bp.get("/tests/models")
@handle_errors
def available_models():
    return jsonify(_dump(_plane().model_tests.available_models()))


@bp.post("/tests")
@handle_errors
def start_test():
    payload = _payload()
    job_id = _uuid(payload, "job_id")
    dataset_id = _uuid(payload, "dataset_id")
    service = _plane().model_tests
    if payload.get("wait"):
        return jsonify(_dump(service.run_test(job_id, dataset_id))), 201
    return jsonify(_dump(service.start_test(job_id, dataset_id))), 202


@bp.get("/tests/<uuid:test_id>")
@handle_errors
def get_test(test_id: uuid.UUID):
    return jsonify(_dump(_plane().model_tests.get(test_id)))


@bp.delete("/tests/<uuid:test_id>")
@handle_errors
def delete_test(test_id: uuid.UUID):
    if not _plane().model_tests.delete(test_id):
        raise NotFound(f"Model test {test_id} not found")
    return jsonify({"deleted": str(test_id)})


if __name__ == "__main__":
    from modelfarm.config.app_config import AppConfig
    from modelfarm.utils.logger import init_logging

    cfg = AppConfig.load()
    init_logging(cfg.log)
    with ControlPlane(cfg) as plane:
        create_app(plane).run(host=cfg.api.host, port=cfg.api.port)
