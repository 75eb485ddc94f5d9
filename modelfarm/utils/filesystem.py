#!filepath: modelfarm/utils/filesystem.py
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, List, Tuple

from modelfarm.utils.logger import logs


class FileSystem:
    """
    统一文件系统工具
    - 原子写入：先写 <name>.tmp，再 rename 覆盖正式文件
    - 删除文件/目录
    - 启动时清理中断写入留下的 *.tmp
    """

    TMP_SUFFIX = ".tmp"

    @staticmethod
    def ensure_dir(path: str | Path) -> Path:
        p = Path(path)
        if not p.exists():
            p.mkdir(parents=True, exist_ok=True)
            logs.debug(f"[FS] 创建目录: {p}")
        return p

    @staticmethod
    def temp_path(path: str | Path) -> Path:
        p = Path(path)
        return p.with_name(p.name + FileSystem.TMP_SUFFIX)

    @staticmethod
    @contextmanager
    def atomic_path(path: str | Path) -> Iterator[Path]:
        """
        with FileSystem.atomic_path(target) as tmp:
            write(tmp)
        正常退出 → tmp 覆盖 target；异常 → 删除 tmp，target 不变
        """
        target = Path(path)
        FileSystem.ensure_dir(target.parent)
        tmp = FileSystem.temp_path(target)
        try:
            yield tmp
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        tmp.replace(target)
        logs.debug(f"[FS] 原子写入完成: {target}")

    @staticmethod
    def write_all_atomic(files: Iterable[Tuple[Path, bytes]]) -> None:
        """
        多文件一组写入：
            1) 全部写入 *.tmp（任一失败 → 清理已写临时文件，正式文件不动）
            2) 按给定顺序 rename，最后一个文件最后落地
        """
        staged: List[Tuple[Path, Path]] = []
        try:
            for target, data in files:
                tmp = FileSystem.temp_path(target)
                # staged before writing: a half-written tmp is cleaned up too
                staged.append((tmp, target))
                tmp.write_bytes(data)
        except OSError:
            for tmp, _ in staged:
                tmp.unlink(missing_ok=True)
            raise

        for tmp, target in staged:
            tmp.replace(target)

    @staticmethod
    def remove(path: str | Path) -> None:
        p = Path(path)
        if not p.exists():
            return
        if p.is_dir():
            shutil.rmtree(p)
        else:
            p.unlink()
        logs.debug(f"[FS] 删除: {p}")

    @staticmethod
    def list_subdirs(path: str | Path) -> List[Path]:
        p = Path(path)
        if not p.exists():
            return []
        return sorted(d for d in p.iterdir() if d.is_dir())

    @staticmethod
    def clean_temp_files(path: str | Path, suffix: str = TMP_SUFFIX) -> int:
        """
        删除目录下所有 *.tmp 临时文件，返回删除数量
        """
        p = Path(path)
        if not p.exists():
            return 0

        leftovers = list(p.rglob(f"*{suffix}"))
        for f in leftovers:
            f.unlink()
        if leftovers:
            logs.info(f"[FS] 清理中断写入 {len(leftovers)} 个临时文件: {p}")
        return len(leftovers)
