#!filepath: modelfarm/utils/logger.py
import os
import sys
import json
from functools import wraps
from time import perf_counter
from loguru import logger
from typing import Callable


class Logging:
    """
    生产级日志模块
    ---------------------------------------
    - 按日期切割 / 保留周期
    - 多线程安全（enqueue=True）
    - 函数级日志装饰器（catch）
    ---------------------------------------
    """

    def __init__(
        self,
        log_dir: str = "logs",
        rotation: str = "1 day",
        retention: str = "30 days",
        log_level: str = "INFO",
        console: bool = False,
    ):
        self.log_dir = log_dir
        self.rotation = rotation
        self.retention = retention
        self.level = log_level
        self.console = console

        os.makedirs(self.log_dir, exist_ok=True)
        self._configure()

    def _configure(self) -> None:
        """
        配置全局 logger（会覆盖之前的 sink）
        """
        logger.remove()

        logger.add(
            sink=f"{self.log_dir}/{{time:YYYY-MM-DD}}.log",
            rotation=self.rotation,
            retention=self.retention,
            level=self.level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
            enqueue=True,  # 训练线程 / 任务线程同时写日志
            backtrace=True,
            diagnose=True,
        )

        if self.console:
            # serve 模式：同时输出到终端
            logger.add(
                sink=sys.stderr,
                level=self.level,
                format="<green>{time:HH:mm:ss}</green> | <level>{level: <7}</level> | {message}",
                colorize=True,
            )

        logger.info("-----------Logger initialized successfully.-----------")

    def reconfigure(
        self,
        log_dir: str,
        rotation: str,
        retention: str,
        log_level: str,
        console: bool = False,
    ) -> None:
        self.log_dir = log_dir
        self.rotation = rotation
        self.retention = retention
        self.level = log_level
        self.console = console
        os.makedirs(self.log_dir, exist_ok=True)
        self._configure()

    # ----------- 日志方法 -----------
    def debug(self, msg: str, *args, **kwargs):
        logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        logger.error(msg, *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs):
        logger.exception(msg, *args, **kwargs)

    # ---------- 日志装饰器 ----------
    def catch(
        self,
        msg: str = "Exception occurred",
        log_inputs: bool = False,
        log_outputs: bool = False,
        log_time: bool = True,
    ) -> Callable:

        def decorator(func: Callable):
            @wraps(func)
            def wrapper(*args, **kwargs):

                if log_inputs:
                    logger.info(
                        f"[CALL] {func.__name__} args={args}, "
                        f"kwargs={json.dumps(kwargs, ensure_ascii=False, default=str)}"
                    )

                start = perf_counter()

                try:
                    result = func(*args, **kwargs)
                except Exception:
                    logger.exception(f"[ERROR] {func.__name__}: {msg}")
                    raise

                if log_outputs:
                    logger.info(f"[RETURN] {func.__name__} result={result}")

                if log_time:
                    cost = perf_counter() - start
                    logger.info(f"[TIME] {func.__name__} took {cost:.4f}s")

                return result

            return wrapper

        return decorator


# 默认全局 logs（可被 init_logging 重新配置）
logs = Logging(log_dir=os.getenv("MODELFARM_LOG_DIR", "logs"))


def init_logging(cfg) -> Logging:
    """
    按 AppConfig.log 重新配置全局 logs。
    """
    logs.reconfigure(
        log_dir=cfg.dir,
        rotation=cfg.rotation,
        retention=cfg.retention,
        log_level=cfg.level,
        console=cfg.console,
    )
    return logs
