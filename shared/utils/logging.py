"""统一日志入口。"""

from __future__ import annotations

import logging

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def setup_logger(name: str = "backtest", level: int | str | None = None) -> logging.Logger:
    """获取（并在首次调用时配置）命名 logger。

    Parameters
    ----------
    name:
        logger 名称，按关注点命名（backtest/ledger/trailing-stop/...）。
    level:
        日志级别；None 表示保持现有级别（首次默认 INFO）。

    Returns
    -------
    logging.Logger
        只挂一个 StreamHandler，且不向 root 传播，避免重复输出。
    """
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(_coerce_level(level))
    elif logger.level == logging.NOTSET:
        logger.setLevel(logging.INFO)
    logger.propagate = False

    has_stream = any(isinstance(h, logging.StreamHandler) for h in logger.handlers)
    if not has_stream:
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(ch)
    return logger


def set_global_level(level: int | str, names: tuple[str, ...] | None = None) -> None:
    """批量调整已创建 logger 的级别（配置文件 logging.level 使用）。"""
    lvl = _coerce_level(level)
    manager = logging.Logger.manager
    for name, obj in list(manager.loggerDict.items()):
        if not isinstance(obj, logging.Logger):
            continue
        if names is not None and name not in names:
            continue
        if any(isinstance(h, logging.StreamHandler) for h in obj.handlers):
            obj.setLevel(lvl)


def _coerce_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level}")
    return resolved
