"""
数据源合并器：把一个数据源下所有数据项的处理结果折叠成一个值。
"""

import logging
from typing import Any, List

from dataflow.errors import MergeScriptError, ScriptError
from dataflow.models import (
    ArrayMergeStrategy,
    ConditionMergeStrategy,
    ConditionRule,
    ObjectMergeStrategy,
    ScriptMergeStrategy,
    SelectMergeStrategy,
)
from dataflow.script_engine import ScriptEngine

logger = logging.getLogger(__name__)


def _size(value: Any) -> int:
    if isinstance(value, (list, tuple, dict, str)):
        return len(value)
    return 0 if value is None else 1


class DataSourceMerger:
    """
    合并策略：
    - object：从左到右浅合并，后者覆盖前者；非 dict 的项按空对象处理（会丢数据，见 non_object_items）。
    - array：按声明顺序原样包装，包括 None。
    - condition：first-available / largest-dataset / merge-arrays，平局按声明顺序。
    - select：按下标取一项，越界回退到第一项。
    - script：调用用户纯函数 (items) -> value。
    零项返回 None，单项原样返回。
    """

    def __init__(self, script_engine: ScriptEngine | None = None):
        self._scripts = script_engine

    async def merge(self, items: List[Any], strategy, source_id: str = "") -> Any:
        if not items:
            return None
        if len(items) == 1:
            return items[0]

        if isinstance(strategy, ObjectMergeStrategy):
            return self._merge_object(items, source_id)
        elif isinstance(strategy, ArrayMergeStrategy):
            return list(items)
        elif isinstance(strategy, ConditionMergeStrategy):
            return self._merge_condition(items, strategy.rule)
        elif isinstance(strategy, SelectMergeStrategy):
            index = strategy.selected_index
            return items[index] if 0 <= index < len(items) else items[0]
        elif isinstance(strategy, ScriptMergeStrategy):
            return await self._merge_script(items, strategy.script, source_id)
        raise TypeError(f"Unsupported merge strategy: {strategy!r}")

    def _merge_object(self, items: List[Any], source_id: str) -> dict:
        result = {}
        skipped = self.non_object_items(items)
        if skipped:
            logger.warning(
                f"[{source_id}] object merge ignored non-object items at positions {skipped}"
            )
        for item in items:
            if isinstance(item, dict):
                result.update(item)
        return result

    @staticmethod
    def non_object_items(items: List[Any]) -> List[int]:
        """Positions whose value an object merge would discard."""
        return [i for i, item in enumerate(items) if item is not None and not isinstance(item, dict)]

    def _merge_condition(self, items: List[Any], rule: ConditionRule) -> Any:
        if rule == ConditionRule.FIRST_AVAILABLE:
            return next((item for item in items if item is not None), None)
        elif rule == ConditionRule.LARGEST_DATASET:
            best = None
            best_size = -1
            for item in items:
                size = _size(item)
                # 严格大于：平局保留先声明的项
                if item is not None and size > best_size:
                    best, best_size = item, size
            return best
        elif rule == ConditionRule.MERGE_ARRAYS:
            merged = []
            for item in items:
                if isinstance(item, (list, tuple)):
                    merged.extend(item)
                elif item is not None:
                    merged.append(item)
            return merged
        raise TypeError(f"Unsupported condition rule: {rule!r}")

    async def _merge_script(self, items: List[Any], script: str, source_id: str) -> Any:
        if self._scripts is None:
            raise MergeScriptError(source_id, "no script engine is available")
        try:
            return await self._scripts.run(script, {"items": list(items)}, name=f"<merge:{source_id}>")
        except ScriptError as e:
            raise MergeScriptError(source_id, e.message) from e

    # ── 辅助 ──────────────────────────────────────────

    @staticmethod
    def validate_strategy(strategy) -> bool:
        if isinstance(strategy, ScriptMergeStrategy):
            return bool(strategy.script and strategy.script.strip())
        return isinstance(
            strategy,
            (ObjectMergeStrategy, ArrayMergeStrategy, ConditionMergeStrategy, SelectMergeStrategy),
        )

    @staticmethod
    def recommend_strategy(items: List[Any]):
        """全是 list 推荐 array，全是 dict 推荐 object，否则 array。"""
        if len(items) <= 1:
            return ObjectMergeStrategy()
        if all(isinstance(item, list) for item in items):
            return ArrayMergeStrategy()
        if all(isinstance(item, dict) for item in items):
            return ObjectMergeStrategy()
        return ArrayMergeStrategy()
