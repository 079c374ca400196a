"""参考 host：轮询 broker 并执行不透明的 operations。"""

from __future__ import annotations

from pilot_bridge.host.executor import HostExecutor, OperationRegistry, builtin_registry

__all__ = ["HostExecutor", "OperationRegistry", "builtin_registry"]
