"""
执行桥：组件级执行入口与结果缓存。

- 同一组件、同一组占位符取值同一时刻最多一次执行，并发调用共享同一个进行中的任务。
- 取值变化时启动新的执行，被取代的执行结果不写回缓存。
- 缓存没有 TTL，只能由调用方显式清除（配置存储的变更通知会推送清除）。
- 执行失败时保留上一次成功的结果，直到被显式清除。
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

from dataflow.adapter import ConfigurationAdapter
from dataflow.config_store import DATA_SOURCE_SECTION, ConfigurationStore
from dataflow.errors import ComponentNotFoundError, StructuralConfigError
from dataflow.execution_state import ComponentData, ExecutionResult
from dataflow.executor import ExecutorChain
from dataflow.placeholders import PlaceholderResolver

logger = logging.getLogger(__name__)

DataUpdateCallback = Callable[[str, ComponentData], None]


def _values_key(values: Mapping[str, Any] | None) -> str:
    """占位符取值的稳定指纹；None 与空取值等价。"""
    present = {k: v for k, v in (values or {}).items() if v is not None}
    return json.dumps(present, sort_keys=True, default=str)


class ExecutionBridge:

    def __init__(
        self,
        chain: ExecutorChain,
        store: ConfigurationStore | None = None,
        adapter: ConfigurationAdapter | None = None,
        resolver: PlaceholderResolver | None = None,
    ):
        self._chain = chain
        self._store = store
        self._adapter = adapter or ConfigurationAdapter()
        self._resolver = resolver or PlaceholderResolver()
        # component_id -> last successful result
        self._cache: Dict[str, ExecutionResult] = {}
        # component_id -> in-flight run
        self._inflight: Dict[str, asyncio.Task] = {}
        # 缓存结果与进行中执行对应的占位符取值指纹
        self._cache_keys: Dict[str, str] = {}
        self._inflight_keys: Dict[str, str] = {}
        # 每次清除缓存递增，旧代次的执行结果不写回缓存
        self._generation: Dict[str, int] = {}
        self._callbacks: List[DataUpdateCallback] = []
        self._counters = {"executions": 0, "cache_hits": 0, "coalesced": 0, "failures": 0}

    # ── 执行 ──────────────────────────────────────────

    async def execute(
        self,
        component_id: str,
        requirement: Any = None,
        values: Mapping[str, Any] | None = None,
        force: bool = False,
    ) -> ExecutionResult:
        """
        执行组件的数据源配置。

        缓存与进行中的执行都按占位符取值区分：取值不同的调用不会拿到别的取值算出的结果。

        Args:
            requirement: 数据源配置文档（v1 或 v2）；为空时从配置存储读取
            values: 运行时占位符取值
            force: 忽略已缓存的结果重新执行

        Raises:
            ComponentNotFoundError: 未提供配置且存储中也没有
        """
        values_key = _values_key(values)
        if not force and component_id in self._cache and self._cache_keys.get(component_id) == values_key:
            self._counters["cache_hits"] += 1
            logger.debug(f"[{component_id}] Serving cached result")
            return self._cache[component_id]

        task = self._inflight.get(component_id)
        if task is not None and self._inflight_keys.get(component_id) == values_key:
            self._counters["coalesced"] += 1
            logger.debug(f"[{component_id}] Joining in-flight execution")
            return await asyncio.shield(task)

        if requirement is None:
            requirement = self._load_requirement(component_id)

        if task is not None:
            # 取值已变，旧的执行结果不再写回缓存
            logger.info(f"[{component_id}] Placeholder values changed, superseding in-flight execution")
            self._bump_generation(component_id)

        generation = self._generation.get(component_id, 0)
        task = asyncio.ensure_future(self._run(component_id, requirement, values, generation, values_key))
        self._inflight[component_id] = task
        self._inflight_keys[component_id] = values_key
        task.add_done_callback(lambda t, cid=component_id: self._release(cid, t))
        return await asyncio.shield(task)

    def _release(self, component_id: str, task: asyncio.Task):
        if self._inflight.get(component_id) is task:
            del self._inflight[component_id]
            self._inflight_keys.pop(component_id, None)

    def _load_requirement(self, component_id: str) -> Any:
        if self._store is None:
            raise ComponentNotFoundError(component_id)
        document = self._store.get_section(component_id, DATA_SOURCE_SECTION)
        if document is None:
            raise ComponentNotFoundError(component_id)
        return document

    async def _run(
        self,
        component_id: str,
        requirement: Any,
        values: Mapping[str, Any] | None,
        generation: int,
        values_key: str,
    ) -> ExecutionResult:
        self._counters["executions"] += 1
        try:
            config = self._adapter.normalize(requirement)
        except StructuralConfigError as e:
            logger.error(f"[{component_id}] Invalid configuration: {'; '.join(e.problems)}")
            result = ExecutionResult(success=False, error=e.message, error_type=type(e).__name__)
        else:
            result = await self._chain.execute(config, values)

        if not result.success:
            self._counters["failures"] += 1
            if component_id in self._cache:
                logger.warning(f"[{component_id}] Execution failed, keeping previous result: {result.error}")
            return result

        if self._generation.get(component_id, 0) != generation:
            logger.info(f"[{component_id}] Cache cleared during execution, result not cached")
            return result

        self._cache[component_id] = result
        self._cache_keys[component_id] = values_key
        self._notify(component_id, result.data or {})
        return result

    # ── 缓存管理 ──────────────────────────────────────

    def clear_component_cache(self, component_id: str):
        """清除组件缓存；进行中的执行不再写回，下一次 execute 启动新的执行。"""
        self._cache.pop(component_id, None)
        self._cache_keys.pop(component_id, None)
        self._inflight.pop(component_id, None)
        self._inflight_keys.pop(component_id, None)
        self._bump_generation(component_id)
        logger.debug(f"[{component_id}] Cache cleared")

    def _bump_generation(self, component_id: str):
        self._generation[component_id] = self._generation.get(component_id, 0) + 1

    def clear_all_cache(self):
        for component_id in set(self._cache) | set(self._inflight):
            self.clear_component_cache(component_id)

    def get_component_data(self, component_id: str) -> Optional[ComponentData]:
        result = self._cache.get(component_id)
        return result.data if result else None

    def get_cached_result(self, component_id: str) -> Optional[ExecutionResult]:
        return self._cache.get(component_id)

    def is_pending(self, component_id: str) -> bool:
        return component_id in self._inflight

    # ── 通知 ──────────────────────────────────────────

    def on_data_update(self, callback: DataUpdateCallback) -> Callable[[], None]:
        """注册数据更新回调；返回取消注册的函数。"""
        self._callbacks.append(callback)

        def remove():
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def _notify(self, component_id: str, data: ComponentData):
        for callback in list(self._callbacks):
            try:
                callback(component_id, data)
            except Exception as e:
                logger.error(f"[{component_id}] Data update callback failed: {e}", exc_info=True)

    def on_configuration_changed(self, component_id: str, section: str):
        """配置存储监听入口：数据源配置变化时清除缓存。"""
        if section in (DATA_SOURCE_SECTION, "*"):
            self.clear_component_cache(component_id)

    # ── 查询 ──────────────────────────────────────────

    def get_config_summary(self, component_id: str, requirement: Any = None) -> Dict[str, Any]:
        if requirement is None:
            requirement = self._load_requirement(component_id)
        version = self._adapter.detect_version(requirement)
        config = self._adapter.normalize(requirement)
        cached = self._cache.get(component_id)

        sources = [
            {
                "sourceId": source.source_id,
                "type": source.type,
                "itemCount": len(source.data_items),
                "itemTypes": [entry.item.type for entry in source.data_items],
                "mergeStrategy": source.merge_strategy.type,
            }
            for source in config.data_sources
        ]
        return {
            "componentId": component_id,
            "version": version.value,
            "sourceCount": len(sources),
            "sources": sources,
            "placeholders": self._resolver.analyze_dependencies(config).placeholders,
            "cached": cached is not None,
            "pending": self.is_pending(component_id),
            "lastExecution": cached.timestamp if cached else None,
        }

    def stats(self) -> Dict[str, Any]:
        return {
            **self._counters,
            "cached_components": len(self._cache),
            "pending_components": len(self._inflight),
            "active_callbacks": len(self._callbacks),
            "timestamp": int(time.time() * 1000),
        }
