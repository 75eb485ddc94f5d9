# modelfarm/training/reconciler.py
"""
TrainingJobReconciler

Runs once at startup, before any job thread exists. Every job still in an
active state was interrupted by the previous process:

    active → Failed
        checkpoint valid   → has_checkpoint=True,  "Resumable"
        otherwise          → has_checkpoint=False, "Retry required"

    terminal → has_checkpoint re-derived from the sidecar on disk
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable, List

from modelfarm.checkpoint.store import CheckpointStore
from modelfarm.contracts.enums import ACTIVE_JOB_STATUSES, TrainingJobStatus
from modelfarm.persistence.jobs import JobRepository
from modelfarm.utils.datetime_utils import DateTimeUtils
from modelfarm.utils.logger import logs

RESUMABLE_MESSAGE = "Interrupted by restart. Resumable from checkpoint (epoch {epoch})."
RETRY_MESSAGE = "Interrupted by restart. No usable checkpoint; retry required."


class TrainingJobReconciler:
    def __init__(
        self,
        jobs: JobRepository,
        checkpoints: CheckpointStore,
        clock: Callable[[], datetime] = DateTimeUtils.utc_now,
    ):
        self.jobs = jobs
        self.checkpoints = checkpoints
        self.clock = clock

    def reconcile(self) -> List:
        """
        Returns the ids of the jobs that were moved to Failed.
        """
        reconciled = []
        for job in self.jobs.list_in(ACTIVE_JOB_STATUSES):
            resumable = self.checkpoints.is_valid(job.id)
            if resumable:
                ckpt = self.checkpoints.load(job.id)
                message = RESUMABLE_MESSAGE.format(epoch=ckpt.epoch)
            else:
                message = RETRY_MESSAGE

            ok = self.jobs.transition(
                job.id,
                ACTIVE_JOB_STATUSES,
                TrainingJobStatus.FAILED,
                has_checkpoint=resumable,
                message=message,
                error_message="Process restarted while the job was running",
                completed_at=self.clock(),
                is_paused=False,
            )
            if ok:
                reconciled.append(job.id)
                logs.info(
                    f"[Reconciler] job={job.id} {job.status.name} → FAILED resumable={resumable}"
                )

        # terminal jobs: has_checkpoint mirrors whether a valid sidecar is on disk
        for job in self.jobs.list():
            if job.status in ACTIVE_JOB_STATUSES:
                continue
            valid = self.checkpoints.is_valid(job.id)
            if valid == job.has_checkpoint:
                continue
            self.jobs.set_checkpoint_flag(job.id, valid)
            if not valid and job.status is TrainingJobStatus.FAILED:
                self.jobs.update_where(job.id, {TrainingJobStatus.FAILED}, message=RETRY_MESSAGE)
            logs.warning(f"[Reconciler] job={job.id} has_checkpoint {job.has_checkpoint} → {valid}")

        logs.info(f"[Reconciler] reconciled {len(reconciled)} interrupted job(s)")
        return reconciled
