"""执行引擎层（engine）。

统一入口：各引擎以 `XxxEngine.run() -> EngineResult` 形式对外提供能力；
单 symbol 为 BacktestOrchestrator，多 symbol 为 MultiSymbolCoordinator，
命令行入口由仓库根目录 `main.py` 承载。
"""
