from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import main as app_main


@dataclass
class _Res:
    summary: dict[str, Any]


def test_main_backtest_delegates_to_runner(monkeypatch):
    calls: list[str] = []

    def _fake_run(cfg_path: str, **kwargs):
        calls.append(cfg_path)
        return _Res(summary={"ok": True})

    monkeypatch.setattr(app_main, "run_backtest_from_config", _fake_run)
    res = app_main.main(["--config", "config/other.yml", "backtest"])
    assert res == {"ok": True}
    assert calls == ["config/other.yml"]


def test_main_backtest_accepts_config_after_subcommand(monkeypatch):
    calls: list[str] = []

    def _fake_run(cfg_path: str, **kwargs):
        calls.append(cfg_path)
        return _Res(summary={"ok": True})

    monkeypatch.setattr(app_main, "run_backtest_from_config", _fake_run)
    app_main.main(["backtest", "--config", "config/other.yml"])
    app_main.main([])
    assert calls == ["config/other.yml", "config/backtest.yml"]


def test_main_check_passes_price_hint(monkeypatch, capsys):
    calls: list[dict[str, Any]] = []

    def _fake_check(cfg_path: str, *, price_hint=None, **kwargs):
        calls.append({"cfg_path": cfg_path, "price_hint": price_hint})
        return {"AAA": {"can_proceed": True}}

    monkeypatch.setattr(app_main, "check_config", _fake_check)
    res = app_main.main(["check", "--price-hint", "250.5"])
    assert res == {"AAA": {"can_proceed": True}}
    assert calls == [{"cfg_path": "config/backtest.yml", "price_hint": 250.5}]
    assert '"can_proceed": true' in capsys.readouterr().out
