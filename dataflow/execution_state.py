"""
执行运行时状态定义。
包含阶段枚举、执行状态追踪与结果信封。
"""

import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import ConfigDict, Field

from dataflow.models import DataflowModel


def now_ms() -> int:
    return int(time.time() * 1000)


class StageStatus(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PROCESSING = "processing"
    MERGING = "merging"
    INTEGRATING = "integrating"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATUSES = (StageStatus.DONE, StageStatus.FAILED)


class StageSnapshot(DataflowModel):
    """某一阶段的中间结果（仅调试模式记录）。"""
    data: Any = None
    timestamp: int = Field(default_factory=now_ms)
    success: bool = True


class ItemError(DataflowModel):
    item_id: str
    stage: str  # fetch / process
    error_type: str
    message: str


class SourceMetadata(DataflowModel):
    component_id: str
    success: bool
    error: Optional[str] = None
    item_errors: List[ItemError] = Field(default_factory=list)
    processed_at: str


class SourcePayload(DataflowModel):
    """一个数据源在组件数据中的条目。data 为 None 表示未加载或失败。"""
    type: str
    data: Any = None
    last_updated: int
    metadata: Optional[SourceMetadata] = None


ComponentData = Dict[str, SourcePayload]


class SourceState(DataflowModel):
    source_id: str
    status: StageStatus = StageStatus.IDLE
    raw: Dict[str, StageSnapshot] = Field(default_factory=dict)
    processed: Dict[str, StageSnapshot] = Field(default_factory=dict)
    merged: Optional[StageSnapshot] = None
    error: Optional[str] = None


class ExecutionState(DataflowModel):
    """
    单次执行的状态机，由 ExecutorChain 独占。
    每个数据源独立推进 Idle -> Fetching -> Processing -> Merging -> Integrating -> Done | Failed。
    """
    component_id: str
    status: StageStatus = StageStatus.IDLE
    sources: Dict[str, SourceState] = Field(default_factory=dict)
    debug_mode: bool = False
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    final: Optional[StageSnapshot] = None

    def source(self, source_id: str) -> SourceState:
        if source_id not in self.sources:
            self.sources[source_id] = SourceState(source_id=source_id)
        return self.sources[source_id]

    def transition(self, source_id: str, status: StageStatus, error: str | None = None):
        state = self.source(source_id)
        if state.status in TERMINAL_STATUSES:
            raise RuntimeError(f"source '{source_id}' already settled as {state.status.value}")
        state.status = status
        if error is not None:
            state.error = error

    def all_settled(self) -> bool:
        return all(s.status in TERMINAL_STATUSES for s in self.sources.values())


class ExecutionResult(DataflowModel):
    """一次执行尝试的结果信封，创建后不可修改。"""

    model_config = ConfigDict(frozen=True)

    success: bool
    data: Optional[Dict[str, SourcePayload]] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    execution_time: float = 0.0  # 毫秒
    timestamp: int = Field(default_factory=now_ms)
    execution_state: Optional[ExecutionState] = None
