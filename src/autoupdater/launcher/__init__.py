from autoupdater.launcher.manager import UpdaterManager, strategy_from_args

__all__ = ["UpdaterManager", "strategy_from_args"]
