"""配置驱动的回测入口。

YAML → AppConfig → CsvCandleFeed → MultiSymbolCoordinator。
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

from engine.base_engine import EngineResult
from engine.batch_backtest import MultiSymbolCoordinator
from market_data.feed import CandleFeed
from market_data.loader import CsvCandleFeed
from risk.safety import SafetyChecker
from shared.config.config_loader import load_config, resolve_symbol_config
from shared.config.schema import AppConfig
from shared.utils.logging import set_global_level, setup_logger

logger = setup_logger("backtest")


def build_coordinator(
    cfg: AppConfig,
    *,
    feed: CandleFeed | None = None,
    cancel_event: threading.Event | None = None,
) -> MultiSymbolCoordinator:
    """按配置组装协调器；未提供 feed 时从 `backtest.data_dir` 读取 CSV。"""
    set_global_level(cfg.logging.level)
    data_feed = feed or CsvCandleFeed(cfg.backtest.data_dir)
    return MultiSymbolCoordinator.from_app_config(cfg, data_feed, cancel_event=cancel_event)


def run_backtest_from_config(
    cfg_path: str | Path,
    *,
    feed: CandleFeed | None = None,
    cancel_event: threading.Event | None = None,
    load_env: bool = True,
) -> EngineResult:
    """从 YAML 配置运行多 symbol 回测。

    Parameters
    ----------
    cfg_path:
        配置文件路径。
    feed:
        可选数据源（测试/外部预加载数据）；默认 CsvCandleFeed。
    cancel_event:
        取消信号，传递给每个 symbol 的回测。
    load_env:
        是否加载配置同目录的 `.env`。

    Returns
    -------
    EngineResult
        summary 为组合层面摘要，artifacts["result"] 为 MultiSymbolResult。
    """
    cfg = load_config(cfg_path, load_env=load_env)
    logger.info("config loaded: %s symbols=%s", cfg_path, cfg.backtest.symbols)
    return build_coordinator(cfg, feed=feed, cancel_event=cancel_event).run()


def check_config(cfg_path: str | Path, *, price_hint: float | None = None, load_env: bool = True) -> dict[str, Any]:
    """只做配置校验与安全检查，不加载行情。

    Returns
    -------
    dict[str, Any]
        `{symbol: {"safety": SafetyReport.to_dict(), "can_proceed": bool}}`；
        结构非法时抛 ConfigValidationError。
    """
    cfg = load_config(cfg_path, load_env=load_env)
    checker = SafetyChecker(price_hint=price_hint)
    out: dict[str, Any] = {}
    for sym in cfg.backtest.symbols:
        strategy_cfg = resolve_symbol_config(cfg, sym)
        report = checker.check(strategy_cfg, cfg.backtest.start, cfg.backtest.end)
        out[sym] = {
            "safety": report.to_dict(),
            "can_proceed": report.can_proceed(strict=cfg.backtest.strict_safety),
        }
    return out
