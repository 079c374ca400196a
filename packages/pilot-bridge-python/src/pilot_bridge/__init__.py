"""
pilot-bridge（Python）：本机 Bridge Broker。

说明：
- 外部调用方（CLI / agent tool server）无法直接调用沙箱内的 host 进程，host 也只能轮询本机端点；
- 本包把这种“单向轮询”约束变成可靠、有序、有超时上限的请求/响应通道：
  - CorrelationEngine：队列、in-flight 表、超时、容量上限、存活信号
  - Broker Transport：FastAPI 端点（/poll /response /queue /health）
  - Topology Selector：按 bind 结果选择 Owner / Delegate，并提供一次性兜底
"""

from __future__ import annotations

__version__ = "0.1.0"

from pilot_bridge.broker.engine import CorrelationEngine  # noqa: E402
from pilot_bridge.broker.server import BrokerServer  # noqa: E402
from pilot_bridge.config.loader import BridgeConfig  # noqa: E402
from pilot_bridge.topology.selector import BridgeClient, TopologyRole  # noqa: E402

__all__ = ["BridgeClient", "BridgeConfig", "BrokerServer", "CorrelationEngine", "TopologyRole", "__version__"]
