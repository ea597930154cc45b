"""am-executor: run a command for every Alertmanager notification."""

__version__ = "0.3.0"
