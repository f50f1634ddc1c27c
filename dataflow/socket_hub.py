"""
Socket 订阅缓冲：按 topic 保存最近一条消息。

推送方（WebSocket 客户端、API 等）调用 publish，抓取器通过 latest 读取，永不阻塞。
"""

import logging
import time
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class SocketHub:

    def __init__(self):
        # topic -> (message, received_at)
        self._latest: Dict[str, Tuple[Any, float]] = {}

    def publish(self, topic: str, message: Any):
        self._latest[topic] = (message, time.time())
        logger.debug(f"[socket:{topic}] message buffered")

    def latest(self, topic: str) -> Optional[Any]:
        """最近一条消息；尚未收到任何消息时返回 None。"""
        entry = self._latest.get(topic)
        return entry[0] if entry else None

    def received_at(self, topic: str) -> Optional[float]:
        entry = self._latest.get(topic)
        return entry[1] if entry else None

    def clear(self, topic: str):
        self._latest.pop(topic, None)

    def topics(self) -> list[str]:
        return sorted(self._latest)
