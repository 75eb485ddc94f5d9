# modelfarm/tasks/handlers/base.py
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

from modelfarm.contracts.enums import BackgroundTaskType
from modelfarm.contracts.tasks import BackgroundTask, TaskProgress
from modelfarm.utils.cancellation import CancellationToken

ProgressSink = Callable[[TaskProgress], None]


class BackgroundTaskHandler(ABC):
    """
    Handler 契约：

    - execute(task, report, token) 返回 result（dict / str / None）
    - 必须传播 token 的取消（raise Cancelled）
    - 可以通过 report(TaskProgress) 汇报进度
    """

    task_type: BackgroundTaskType

    @abstractmethod
    def execute(
        self,
        task: BackgroundTask,
        report: ProgressSink,
        token: CancellationToken,
    ) -> Optional[dict | str]:
        raise NotImplementedError


class HandlerRegistry:
    """type → handler, dispatch by BackgroundTask.type."""

    def __init__(self):
        self._handlers: Dict[BackgroundTaskType, BackgroundTaskHandler] = {}

    def register(self, handler: BackgroundTaskHandler) -> None:
        self._handlers[BackgroundTaskType(handler.task_type)] = handler

    def get(self, type_: BackgroundTaskType) -> Optional[BackgroundTaskHandler]:
        return self._handlers.get(BackgroundTaskType(type_))

    def __contains__(self, type_: BackgroundTaskType) -> bool:
        return BackgroundTaskType(type_) in self._handlers
