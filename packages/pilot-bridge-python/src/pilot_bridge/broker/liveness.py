"""
host 存活信号（由 poll 节奏推导，非权威）。

说明：
- host 只能主动轮询 broker，broker 无法探测 host；
- “最近一次 drain 落在新鲜度窗口内”即视为 live。host 可能 drain 后卡死，因此这只是启发式信号。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass
class LivenessState:
    """
    最近活动时间戳。

    字段：
    - last_poll_*：最近一次 drain
    - last_response_*：最近一次 deliver（无论是否匹配）
    - last_request_*：最近一次被接受的 enqueue

    `*_monotonic` 用于新鲜度判断；`*_at_ms` 为 epoch 毫秒，仅用于对外展示。
    """

    last_poll_monotonic: Optional[float] = None
    last_poll_at_ms: Optional[int] = None
    last_response_at_ms: Optional[int] = None
    last_request_at_ms: Optional[int] = None

    def is_live(self, *, now_monotonic: float, ttl_ms: int) -> bool:
        """最近一次 drain 是否在 `ttl_ms` 窗口内。"""

        if self.last_poll_monotonic is None:
            return False
        return (now_monotonic - self.last_poll_monotonic) * 1000.0 <= float(ttl_ms)
