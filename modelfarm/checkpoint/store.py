# modelfarm/checkpoint/store.py
"""
CheckpointStore（FINAL）

Layout:
    <root>/<jobHex>/
        model_current.<ext>
        model_best.<ext>
        checkpoint.json

Save order: every file goes to <name>.tmp first, then weights are
renamed into place and checkpoint.json last. A crash while writing the
temporaries leaves the previous checkpoint intact.
"""
from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import Iterable, Optional

from pydantic import ValidationError

from modelfarm.utils.errors import CheckpointCorrupt
from modelfarm.utils.filesystem import FileSystem
from modelfarm.utils.logger import logs

from .model import TrainingCheckpoint

SIDECAR_NAME = "checkpoint.json"
CURRENT_STEM = "model_current"
BEST_STEM = "model_best"


class CheckpointStore:
    def __init__(self, root: str | Path, weights_ext: str = "joblib"):
        self.root = Path(root)
        self.weights_ext = weights_ext.lstrip(".")

    # ------------------------------------------------------------------
    # paths
    # ------------------------------------------------------------------
    def job_dir(self, job_id: uuid.UUID) -> Path:
        return self.root / uuid.UUID(str(job_id)).hex

    def current_weights_path(self, job_id: uuid.UUID) -> Path:
        return self.job_dir(job_id) / f"{CURRENT_STEM}.{self.weights_ext}"

    def best_weights_path(self, job_id: uuid.UUID) -> Path:
        return self.job_dir(job_id) / f"{BEST_STEM}.{self.weights_ext}"

    def sidecar_path(self, job_id: uuid.UUID) -> Path:
        return self.job_dir(job_id) / SIDECAR_NAME

    def weights_path(self, job_id: uuid.UUID, best: bool = True) -> Path:
        return self.best_weights_path(job_id) if best else self.current_weights_path(job_id)

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------
    def save(
        self,
        checkpoint: TrainingCheckpoint,
        current_weights: bytes,
        best_weights: Optional[bytes] = None,
    ) -> Path:
        job_id = checkpoint.job_id
        directory = FileSystem.ensure_dir(self.job_dir(job_id))

        current_path = self.current_weights_path(job_id)
        best_path = self.best_weights_path(job_id)
        sidecar_path = self.sidecar_path(job_id)

        checkpoint = checkpoint.model_copy(
            update={
                "model_weights_file": current_path.name,
                "best_model_weights_file": best_path.name,
            }
        )
        payload = json.dumps(checkpoint.model_dump(mode="json"), indent=2).encode("utf-8")

        staged = [
            (current_path, current_weights),
            (best_path, current_weights if best_weights is None else best_weights),
            (sidecar_path, payload),
        ]
        FileSystem.write_all_atomic(staged)

        logs.info(
            f"[Checkpoint] saved job={job_id} epoch={checkpoint.epoch} "
            f"best_val={checkpoint.best_validation_loss:.6g} dir={directory}"
        )
        return directory

    def load(self, job_id: uuid.UUID) -> Optional[TrainingCheckpoint]:
        path = self.sidecar_path(job_id)
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return TrainingCheckpoint.model_validate(raw)
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError, TypeError) as e:
            raise CheckpointCorrupt(f"Checkpoint for job {job_id} is unreadable: {e}") from e

    def exists(self, job_id: uuid.UUID) -> bool:
        return self.sidecar_path(job_id).exists()

    def is_valid(self, job_id: uuid.UUID) -> bool:
        """
        Sidecar present AND parseable AND both weight blobs on disk.
        """
        try:
            ckpt = self.load(job_id)
        except CheckpointCorrupt:
            return False
        if ckpt is None:
            return False
        return self.current_weights_path(job_id).exists() and self.best_weights_path(job_id).exists()

    def read_weights(self, job_id: uuid.UUID, best: bool = True) -> bytes:
        return self.weights_path(job_id, best=best).read_bytes()

    def delete(self, job_id: uuid.UUID) -> bool:
        directory = self.job_dir(job_id)
        if not directory.exists():
            return False
        FileSystem.remove(directory)
        logs.info(f"[Checkpoint] deleted job={job_id}")
        return True

    def list_job_ids(self) -> list[uuid.UUID]:
        ids = []
        for d in FileSystem.list_subdirs(self.root):
            try:
                ids.append(uuid.UUID(hex=d.name))
            except ValueError:
                continue
        return ids

    def cleanup_stale(self, active_job_ids: Iterable[uuid.UUID]) -> int:
        """
        Remove checkpoint directories of jobs not in active_job_ids.
        """
        keep = {uuid.UUID(str(j)) for j in active_job_ids}
        removed = 0
        for job_id in self.list_job_ids():
            if job_id not in keep:
                self.delete(job_id)
                removed += 1
        if removed:
            logs.info(f"[Checkpoint] cleanup removed {removed} stale checkpoint(s)")
        return removed
