# modelfarm/resources/hardware.py
from __future__ import annotations

import os
import shutil
import subprocess
from typing import List, Optional

from modelfarm.contracts.resources import HardwareInfo
from modelfarm.utils.logger import logs


def _gpu_names() -> List[str]:
    """
    nvidia-smi if present; no GPU otherwise.
    """
    exe = shutil.which("nvidia-smi")
    if exe is None:
        return []
    try:
        proc = subprocess.run(
            [exe, "--query-gpu=name", "--format=csv,noheader"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logs.warning(f"[Hardware] nvidia-smi failed: {e}")
        return []
    if proc.returncode != 0:
        return []
    return [line.strip() for line in proc.stdout.splitlines() if line.strip()]


def _memory() -> tuple[Optional[int], Optional[int]]:
    try:
        page = os.sysconf("SC_PAGE_SIZE")
        total = os.sysconf("SC_PHYS_PAGES") * page
        free = os.sysconf("SC_AVPHYS_PAGES") * page
        return total, free
    except (AttributeError, ValueError, OSError):
        return None, None


def detect_hardware() -> HardwareInfo:
    gpus = _gpu_names()
    total, free = _memory()
    info = HardwareInfo(
        cpu_count=os.cpu_count() or 1,
        gpu_count=len(gpus),
        gpu_names=gpus,
        total_memory_bytes=total,
        available_memory_bytes=free,
    )
    logs.info(
        f"[Hardware] cpu={info.cpu_count} gpu={info.gpu_count} "
        f"ram_total={total} ram_free={free}"
    )
    return info
