"""执行引擎基类。

各引擎以 `XxxEngine.run() -> EngineResult` 对外提供统一出口：
summary 为可 JSON 序列化的摘要，artifacts 放结构化结果或导出文件路径。
取消通过共享的 `threading.Event` 传递，引擎在每次循环开始时检查。
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class EngineResult:
    """引擎运行结果（统一出口）。"""

    summary: dict[str, Any]
    artifacts: dict[str, Any] | None = None


class BaseEngine(ABC):
    """引擎抽象基类。"""

    def __init__(self, cancel_event: threading.Event | None = None):
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    @abstractmethod
    def run(self) -> EngineResult:
        raise NotImplementedError
