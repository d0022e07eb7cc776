"""回测核心命令行入口。

- `backtest`：按配置运行多 symbol 回测，打印组合摘要。
- `check`：只做配置校验与安全检查。
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from typing import Any

from engine.runner import check_config, run_backtest_from_config


@dataclass
class CliArgs:
    config: str
    task: str
    price_hint: float | None = None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="zenith-backtest", description="策略回测核心")

    def _add_config_arg(p: argparse.ArgumentParser, *, default: Any) -> None:
        p.add_argument(
            "--config",
            default=default,
            help="配置文件路径 (默认: config/backtest.yml)",
        )

    _add_config_arg(parser, default="config/backtest.yml")
    sub = parser.add_subparsers(dest="task")

    p_backtest = sub.add_parser("backtest", help="多 symbol 回测")
    _add_config_arg(p_backtest, default=argparse.SUPPRESS)

    p_check = sub.add_parser("check", help="配置校验与安全检查")
    _add_config_arg(p_check, default=argparse.SUPPRESS)
    p_check.add_argument("--price-hint", type=float, default=None, help="参考价格，用于敞口检查")
    return parser


def parse_args(argv: list[str] | None = None) -> CliArgs:
    ns = build_parser().parse_args(argv)
    return CliArgs(
        config=str(getattr(ns, "config", "config/backtest.yml")),
        task=ns.task or "backtest",
        price_hint=getattr(ns, "price_hint", None),
    )


def main(argv: list[str] | None = None) -> Any:
    args = parse_args(argv)
    if args.task == "check":
        out = check_config(args.config, price_hint=args.price_hint)
    else:
        out = run_backtest_from_config(args.config).summary
    print(json.dumps(out, ensure_ascii=False, indent=2, default=str))
    return out


if __name__ == "__main__":
    main()
