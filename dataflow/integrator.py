"""
多源整合器：把各数据源的合并结果按 source_id 组装成组件最终数据。
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import Field

from dataflow.execution_state import ComponentData, ItemError, SourceMetadata, SourcePayload, now_ms
from dataflow.models import DataflowModel

logger = logging.getLogger(__name__)


class SourceResult(DataflowModel):
    """单个数据源一次执行的结果，供整合器消费。"""
    source_id: str
    type: str = "unknown"
    data: Any = None
    success: bool = True
    error: Optional[str] = None
    item_errors: List[ItemError] = Field(default_factory=list)


class MultiSourceIntegrator:

    def integrate(self, sources: List[SourceResult], component_id: str) -> ComponentData:
        """
        失败的数据源同样保留（data 为 None，metadata 中带错误），
        以区分“尚未加载”和“从未声明”。
        """
        result: ComponentData = {}
        timestamp = now_ms()
        processed_at = datetime.now(timezone.utc).isoformat()

        for source in sources:
            if not source.source_id:
                continue
            result[source.source_id] = SourcePayload(
                type=source.type or "unknown",
                data=source.data if source.success else None,
                last_updated=timestamp,
                metadata=SourceMetadata(
                    component_id=component_id,
                    success=source.success,
                    error=source.error,
                    item_errors=source.item_errors,
                    processed_at=processed_at,
                ),
            )
        return result

    @staticmethod
    def statistics(component_data: ComponentData) -> Dict[str, int]:
        payloads = list(component_data.values())
        failed = [p for p in payloads if p.metadata is not None and not p.metadata.success]
        return {
            "total_sources": len(payloads),
            "successful_sources": len(payloads) - len(failed),
            "failed_sources": len(failed),
            "last_updated": max((p.last_updated for p in payloads), default=0),
        }

    @staticmethod
    def merge_component_data(existing: ComponentData, updates: ComponentData) -> ComponentData:
        """增量更新：仅当更新更晚时覆盖。"""
        result = dict(existing)
        for source_id, payload in updates.items():
            current = result.get(source_id)
            if current is None or current.last_updated < payload.last_updated:
                result[source_id] = payload
        return result

    @staticmethod
    def to_flat_payload(component_data: ComponentData) -> Dict[str, Any]:
        return {source_id: payload.data for source_id, payload in component_data.items()}
