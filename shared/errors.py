"""回测核心的异常分类。

- 致命（运行前）：ConfigValidationError
- 单根 K 线可恢复：InsufficientDataError
- 单个信号可恢复：PositionConflict / LotLimitExceeded
- 单个 symbol 致命：FeedError
"""

from __future__ import annotations

from typing import Any


class BacktestError(Exception):
    """回测核心异常基类。"""


class ConfigValidationError(BacktestError):
    """配置结构非法或安全检查未通过；携带结构化报告。"""

    def __init__(self, message: str, report: Any = None):
        super().__init__(message)
        self.report = report


class InsufficientDataError(BacktestError):
    """指标历史不足，当前 K 线无法评估。"""


class LedgerError(BacktestError):
    """账本拒绝的非法信号。"""


class PositionConflict(LedgerError):
    """与当前持仓方向冲突（或空仓时加仓/同向重复开仓）。"""


class LotLimitExceeded(LedgerError):
    """加仓超过 max_lots。"""


class FeedError(BacktestError):
    """行情源失败（无数据/读取失败），仅对当前 symbol 致命。"""
