#!filepath: modelfarm/utils/retry.py
import random
import time
from functools import wraps
from typing import Callable, Optional, Tuple, Type

from modelfarm.utils.cancellation import CancellationToken
from modelfarm.utils.errors import Cancelled
from modelfarm.utils.logger import logs


class Retry:
    """
    同步重试工具（数据源抓取等瞬时 I/O）

    - 指数退避，单次等待上限 max_delay，可选 jitter
    - 传入 token 时，退避等待可被 cancel 立即打断
    - Cancelled 永远不重试
    """

    @staticmethod
    def backoff(
        attempt: int,
        delay: float,
        backoff: float,
        max_delay: float,
        jitter: bool,
    ) -> float:
        wait = min(max_delay, delay * (backoff ** (attempt - 1)))
        if jitter:
            wait = wait * random.uniform(0.8, 1.2)
        return wait

    @staticmethod
    def run(
        func: Callable,
        *args,
        exceptions: Tuple[Type[Exception], ...] = (Exception,),
        max_attempts: int = 3,
        delay: float = 1.0,
        backoff: float = 2.0,
        max_delay: float = 30.0,
        jitter: bool = True,
        token: Optional[CancellationToken] = None,
        sleep: Optional[Callable[[float], object]] = None,
        **kwargs,
    ):
        if sleep is None:
            sleep = token.wait if token is not None else time.sleep
        name = getattr(func, "__name__", repr(func))

        for attempt in range(1, max_attempts + 1):
            if token is not None:
                token.raise_if_cancelled()

            try:
                return func(*args, **kwargs)

            except Cancelled:
                raise

            except exceptions as e:
                if attempt >= max_attempts:
                    logs.error(f"[Retry] {name} failed after {max_attempts} attempts: {e}")
                    raise

                wait = Retry.backoff(attempt, delay, backoff, max_delay, jitter)
                logs.warning(
                    f"[Retry] {name} attempt {attempt}/{max_attempts} failed: {e}. "
                    f"retrying in {wait:.2f}s"
                )
                sleep(wait)

    @staticmethod
    def decorator(
        exceptions: Tuple[Type[Exception], ...] = (Exception,),
        max_attempts: int = 2,
        delay: float = 1.0,
        backoff: float = 2.0,
        max_delay: float = 30.0,
        jitter: bool = True,
    ):
        """
        装饰器版本（无取消）
        """

        def wrapper(func: Callable):
            @wraps(func)
            def inner(*args, **kwargs):
                return Retry.run(
                    func,
                    *args,
                    exceptions=exceptions,
                    max_attempts=max_attempts,
                    delay=delay,
                    backoff=backoff,
                    max_delay=max_delay,
                    jitter=jitter,
                    **kwargs,
                )

            return inner

        return wrapper
