"""配置加载。

支持 YAML 配置、环境变量占位符 `${VAR}` 展开，以及 .env/.env.local 自动加载。
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from shared.config.schema import AppConfig, StrategyConfig
from shared.config.validation import parse_strategy_config

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _load_env_file(env_path: Path) -> None:
    if not env_path.exists():
        return
    for line in env_path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _load_envs(cfg_path: Path) -> None:
    """加载配置文件目录下的 .env/.env.local（不覆盖已有环境变量）。"""
    for env_file in (cfg_path.parent / ".env", cfg_path.parent / ".env.local"):
        _load_env_file(env_file)


def _coerce_scalar(text: str) -> Any:
    low = text.strip().lower()
    if low in {"true", "false"}:
        return low == "true"
    for cast in (int, float):
        try:
            return cast(text)
        except ValueError:
            continue
    return text


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        whole = _ENV_PATTERN.fullmatch(value.strip())
        if whole is not None:
            # 整个值就是一个占位符时还原数字/布尔类型
            if whole.group(1) not in os.environ:
                raise ValueError(f"Missing environment variable: {whole.group(1)}")
            return _coerce_scalar(os.environ[whole.group(1)])

        def replacer(match: re.Match) -> str:
            var_name = match.group(1)
            if var_name not in os.environ:
                raise ValueError(f"Missing environment variable: {var_name}")
            return os.environ[var_name]

        return _ENV_PATTERN.sub(replacer, value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def load_config(path: str | Path, load_env: bool = True, expand_env: bool = True) -> AppConfig:
    """从 YAML 读取并解析配置。

    Parameters
    ----------
    path:
        配置文件路径。
    load_env:
        是否自动加载 .env/.env.local。
    expand_env:
        是否展开 `${VAR}` 占位符。

    Returns
    -------
    AppConfig
        解析后的配置对象（strategy 仍是原始 dict，需经 `resolve_symbol_config` 解析）。

    Raises
    ------
    FileNotFoundError
        配置文件不存在。
    ValueError
        缺少必填字段、未知字段或缺失环境变量。
    """
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config file not found: {cfg_path}")

    if load_env:
        _load_envs(cfg_path)

    with cfg_path.open("r", encoding="utf-8") as f:
        raw_cfg: dict[str, Any] = yaml.safe_load(f) or {}
    if not isinstance(raw_cfg, dict):
        raise ValueError("Config root must be a dict")

    if expand_env:
        raw_cfg = _expand_env(raw_cfg)

    # YAML 会把未加引号的日期解析成 date；统一成 ISO 字符串
    bt = raw_cfg.get("backtest")
    if isinstance(bt, dict):
        for key in ("start", "end"):
            if key in bt and not isinstance(bt[key], str):
                bt[key] = str(bt[key])

    try:
        return AppConfig.model_validate(raw_cfg)
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ()))
        if first.get("type") == "missing":
            raise ValueError(f"Missing required config key: {loc}") from exc
        raise ValueError(f"Invalid config at {loc}: {first.get('msg')}") from exc


def merge_overrides(base: Mapping[str, Any], overrides: Mapping[str, Any] | None) -> dict[str, Any]:
    """浅合并策略参数；嵌套 dict（如 trailing_stop）按键合并。"""
    merged = dict(base)
    for k, v in (overrides or {}).items():
        if isinstance(v, Mapping) and isinstance(merged.get(k), Mapping):
            merged[k] = {**merged[k], **v}
        else:
            merged[k] = v
    return merged


def resolve_symbol_config(cfg: AppConfig, symbol: str) -> StrategyConfig:
    """为某个 symbol 解析最终策略配置：基础 strategy + symbol_overrides[symbol]。"""
    raw = merge_overrides(cfg.strategy, cfg.symbol_overrides.get(symbol))
    raw.setdefault("symbol", symbol)
    raw.setdefault("timeframe", cfg.backtest.timeframe)
    return parse_strategy_config(raw)
