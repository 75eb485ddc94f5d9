#!filepath: modelfarm/cli.py
from typing import Optional

import typer
from rich import print
from rich.table import Table

from modelfarm import __version__
from modelfarm.config.app_config import AppConfig
from modelfarm.contracts.enums import BackgroundTaskStatus, TrainingJobStatus
from modelfarm.utils.logger import init_logging

app = typer.Typer(help="ModelFarm Training Control Plane CLI")


def _load(config: Optional[str], console: bool = False) -> AppConfig:
    cfg = AppConfig.load(config)
    if console:
        cfg.log.console = True
    init_logging(cfg.log)
    return cfg


@app.command()
def version():
    print(f"v{__version__}")


@app.command()
def hardware():
    """
    显示检测到的硬件（CPU / GPU / 内存）
    """
    from modelfarm.resources.hardware import detect_hardware

    info = detect_hardware()
    print(f"[green]CPU cores:[/green] {info.cpu_count}")
    print(f"[green]GPUs:[/green] {info.gpu_count} {', '.join(info.gpu_names)}")
    if info.total_memory_bytes:
        print(f"[green]Memory:[/green] {info.total_memory_bytes / 2**30:.1f} GiB")


@app.command()
def serve(
    config: Optional[str] = typer.Option(None, help="YAML config path"),
    host: Optional[str] = None,
    port: Optional[int] = None,
    console: bool = typer.Option(True, help="Also log to the terminal"),
):
    """
    启动控制面 + HTTP API
    """
    from modelfarm.api.app import create_app
    from modelfarm.control_plane import ControlPlane

    cfg = _load(config, console=console)
    host = host or cfg.api.host
    port = port or cfg.api.port
    print(f"[green]Serving ModelFarm on {host}:{port} (data={cfg.storage.base_dir})[/green]")
    with ControlPlane(cfg) as plane:
        create_app(plane).run(host=host, port=port)


@app.command()
def reconcile(config: Optional[str] = typer.Option(None, help="YAML config path")):
    """
    离线执行作业重启对账（不启动任何 worker）
    """
    from modelfarm.control_plane import ControlPlane

    plane = ControlPlane(_load(config))
    try:
        ids = plane.reconciler.reconcile()
    finally:
        plane.stop()
    print(f"[yellow]Reconciled {len(ids)} job(s)[/yellow]")
    for job_id in ids:
        print(f"  {job_id}")


@app.command()
def jobs(
    status: Optional[str] = typer.Option(None, help="e.g. TRAINING, FAILED"),
    config: Optional[str] = typer.Option(None, help="YAML config path"),
):
    """
    列出训练作业
    """
    from modelfarm.control_plane import ControlPlane

    plane = ControlPlane(_load(config))
    try:
        found = plane.orchestrator.list_jobs(TrainingJobStatus[status.upper()] if status else None)
    finally:
        plane.stop()

    table = Table(title=f"Training jobs ({len(found)})")
    for col in ("id", "name", "status", "epoch", "attempt", "best val", "message"):
        table.add_column(col)
    for job in found:
        table.add_row(
            str(job.id)[:8],
            job.name,
            job.status.name + (" (paused)" if job.is_paused else ""),
            f"{job.current_epoch}/{job.total_epochs}",
            f"{job.current_attempt}/{job.max_attempts}",
            "-" if job.best_validation_loss is None else f"{job.best_validation_loss:.6f}",
            job.message or "",
        )
    print(table)


@app.command()
def tasks(
    status: Optional[str] = typer.Option(None, help="e.g. PENDING, RUNNING"),
    config: Optional[str] = typer.Option(None, help="YAML config path"),
):
    """
    列出后台任务（从数据库读取）
    """
    from modelfarm.control_plane import ControlPlane

    plane = ControlPlane(_load(config))
    try:
        found = plane.repos.tasks.list(BackgroundTaskStatus[status.upper()] if status else None)
    finally:
        plane.stop()

    table = Table(title=f"Background tasks ({len(found)})")
    for col in ("id", "type", "status", "priority", "progress", "error"):
        table.add_column(col)
    for task in found:
        table.add_row(
            str(task.id)[:8],
            task.type.name,
            task.status.name,
            str(task.priority),
            f"{task.progress_percent:.0f}%",
            task.error_message or "",
        )
    print(table)


if __name__ == "__main__":
    app()

# python -m modelfarm.cli serve --port 5000
