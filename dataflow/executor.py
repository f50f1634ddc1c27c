"""
执行链：按组件配置运行 抓取 -> 处理 -> 合并 -> 整合 管线。

- 数据源之间并发执行，同一数据源内的数据项也并发抓取。
- 单个数据项 / 数据源的失败在本地降级（默认值或 None），记录在数据源元数据中。
- 只有结构错误与占位符校验错误会在任何抓取之前终止整次执行。
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple

from dataflow.errors import (
    DataflowError,
    FetchError,
    MergeScriptError,
    ProcessingError,
    StructuralConfigError,
    ValidationError,
)
from dataflow.execution_state import (
    ExecutionResult,
    ExecutionState,
    ItemError,
    StageSnapshot,
    StageStatus,
)
from dataflow.fetcher import DataItemFetcher
from dataflow.integrator import MultiSourceIntegrator, SourceResult
from dataflow.merger import DataSourceMerger
from dataflow.models import (
    DataItemEntry,
    DataSourceDefinition,
    EnhancedDataSourceConfiguration,
    item_key,
    parse_document,
)
from dataflow.placeholders import PlaceholderResolver
from dataflow.processor import DataItemProcessor, resolve_path

logger = logging.getLogger(__name__)


class ExecutorChain:
    """
    负责执行一份 EnhancedDataSourceConfiguration。
    每次 execute 创建独立的 ExecutionState，执行链本身不持有跨次执行的状态。
    """

    def __init__(
        self,
        fetcher: DataItemFetcher,
        processor: DataItemProcessor | None = None,
        merger: DataSourceMerger | None = None,
        integrator: MultiSourceIntegrator | None = None,
        resolver: PlaceholderResolver | None = None,
    ):
        self._fetcher = fetcher
        self._processor = processor or DataItemProcessor()
        self._merger = merger or DataSourceMerger()
        self._integrator = integrator or MultiSourceIntegrator()
        self._resolver = resolver or PlaceholderResolver()

    async def execute(
        self,
        config: Any,
        values: Mapping[str, Any] | None = None,
        debug: bool = False,
    ) -> ExecutionResult:
        try:
            config = parse_document(EnhancedDataSourceConfiguration, config)
            config = self.prepare(config, values)
        except StructuralConfigError as e:
            logger.error(f"Structural configuration error: {'; '.join(e.problems)}")
            return ExecutionResult(success=False, error=e.message, error_type=type(e).__name__)
        except ValidationError as e:
            logger.error(f"[{config.component_id}] Placeholder validation failed: {e.message}")
            return ExecutionResult(success=False, error=e.message, error_type=type(e).__name__)

        component_id = config.component_id
        state = ExecutionState(component_id=component_id, debug_mode=debug)
        for source in config.data_sources:
            state.source(source.source_id)

        started = time.perf_counter()
        state.started_at = int(time.time() * 1000)
        state.status = StageStatus.FETCHING
        logger.info(f"[{component_id}] Executing {len(config.data_sources)} data source(s)")

        results = await asyncio.gather(
            *(self._run_source(component_id, source, state) for source in config.data_sources)
        )

        state.status = StageStatus.INTEGRATING
        component_data = self._integrator.integrate(list(results), component_id)
        for result in results:
            state.transition(result.source_id, StageStatus.DONE if result.success else StageStatus.FAILED)

        elapsed = (time.perf_counter() - started) * 1000
        state.status = StageStatus.DONE
        state.finished_at = int(time.time() * 1000)
        if debug:
            state.final = StageSnapshot(data=self._integrator.to_flat_payload(component_data))

        failed = [r.source_id for r in results if not r.success]
        if failed:
            logger.warning(f"[{component_id}] Finished in {elapsed:.1f}ms, failed sources: {failed}")
        else:
            logger.info(f"[{component_id}] Finished in {elapsed:.1f}ms")

        return ExecutionResult(
            success=True,
            data=component_data,
            execution_time=elapsed,
            execution_state=state if debug else None,
        )

    # ── 占位符 ────────────────────────────────────────

    def prepare(
        self,
        config: EnhancedDataSourceConfiguration,
        values: Mapping[str, Any] | None = None,
    ) -> EnhancedDataSourceConfiguration:
        """
        校验并替换占位符，返回可直接执行的配置。

        Raises:
            ValidationError: 缺少必需值、类型错误、循环依赖或替换后仍有残留占位符
        """
        resolver = self._resolver
        sources_tree = {"dataSources": [s.model_dump(by_alias=True, mode="json") for s in config.data_sources]}
        if not config.placeholder_configs and not resolver.find_occurrences(sources_tree):
            return config

        overrides = {k: v for k, v in (values or {}).items() if v is not None}
        effective = {
            name: cfg.model_copy(update={"value": overrides[name]}) if name in overrides else cfg
            for name, cfg in config.placeholder_configs.items()
        }
        resolved = resolver.resolve_values(config.placeholder_configs, overrides)

        report = resolver.validate(sources_tree, effective)
        errors = [
            issue for issue in report.errors
            if not (issue.placeholder in report.undefined and issue.placeholder in resolved)
        ]
        cycles = resolver.detect_circular_dependencies(resolver.dependency_graph(effective))
        if errors:
            raise ValidationError(
                "; ".join(issue.message for issue in errors),
                errors=[issue.to_document() for issue in errors],
                cycles=cycles.circular_paths,
            )

        substituted = resolver.substitute(config, resolved)
        resolver.ensure_resolved(
            {"dataSources": [s.model_dump(by_alias=True, mode="json") for s in substituted.data_sources]}
        )
        return substituted

    # ── 单个数据源 ────────────────────────────────────

    async def _run_source(
        self,
        component_id: str,
        source: DataSourceDefinition,
        state: ExecutionState,
    ) -> SourceResult:
        source_id = source.source_id
        tag = f"[{component_id}/{source_id}]"
        source_type = source.type or (source.data_items[0].item.type if source.data_items else "unknown")
        item_errors: List[ItemError] = []

        try:
            state.transition(source_id, StageStatus.FETCHING)
            logger.debug(f"{tag} fetching {len(source.data_items)} item(s)")
            keys = [item_key(source_id, i, entry.item.id) for i, entry in enumerate(source.data_items)]
            fetched = await asyncio.gather(
                *(self._fetch_item(component_id, key, entry) for key, entry in zip(keys, source.data_items))
            )

            state.transition(source_id, StageStatus.PROCESSING)
            debug = state.debug_mode
            values = []
            for key, entry, (ok, raw, error) in zip(keys, source.data_items, fetched):
                if debug:
                    state.source(source_id).raw[key] = StageSnapshot(data=raw, success=ok)
                if not ok:
                    item_errors.append(error)
                    logger.warning(f"{tag} item '{key}' fetch failed, using default: {error.message}")
                    values.append(entry.processing.default_value if entry.processing else None)
                    continue
                value, error = await self._process_item(key, raw, entry)
                if error is not None:
                    item_errors.append(error)
                    logger.warning(f"{tag} item '{key}' processing failed, using default: {error.message}")
                if debug:
                    state.source(source_id).processed[key] = StageSnapshot(data=value, success=error is None)
                values.append(value)

            state.transition(source_id, StageStatus.MERGING)
            try:
                merged = await self._merger.merge(values, source.merge_strategy, source_id=source_id)
            except MergeScriptError as e:
                logger.warning(f"{tag} {e.message}")
                if state.debug_mode:
                    state.source(source_id).merged = StageSnapshot(data=None, success=False)
                state.transition(source_id, StageStatus.INTEGRATING, error=e.message)
                return SourceResult(
                    source_id=source_id, type=source_type, success=False,
                    error=e.message, item_errors=item_errors,
                )

            if source.field_mapping:
                merged = self._apply_field_mapping(tag, merged, source.field_mapping)
            if state.debug_mode:
                state.source(source_id).merged = StageSnapshot(data=merged)

            state.transition(source_id, StageStatus.INTEGRATING)
            return SourceResult(source_id=source_id, type=source_type, data=merged, item_errors=item_errors)

        except Exception as e:
            logger.error(f"{tag} Source execution failed: {e}", exc_info=True)
            state.source(source_id).error = str(e)
            return SourceResult(
                source_id=source_id, type=source_type, success=False,
                error=str(e), item_errors=item_errors,
            )

    async def _fetch_item(
        self,
        component_id: str,
        key: str,
        entry: DataItemEntry,
    ) -> Tuple[bool, Any, Optional[ItemError]]:
        try:
            raw = await self._fetcher.fetch(entry.item, component_id=component_id, item_id=key)
            return True, raw, None
        except FetchError as e:
            return False, None, ItemError(item_id=key, stage="fetch", error_type=type(e).__name__, message=e.reason)
        except Exception as e:
            logger.error(f"[{component_id}] item '{key}' raised unexpectedly: {e}", exc_info=True)
            return False, None, ItemError(item_id=key, stage="fetch", error_type=type(e).__name__, message=str(e))

    async def _process_item(self, key: str, raw: Any, entry: DataItemEntry) -> Tuple[Any, Optional[ItemError]]:
        try:
            return await self._processor.process(raw, entry.processing), None
        except ProcessingError as e:
            default = entry.processing.default_value if entry.processing else None
            return default, ItemError(item_id=key, stage="process", error_type=type(e).__name__, message=e.message)

    @staticmethod
    def _apply_field_mapping(tag: str, merged: Any, mapping: Dict[str, str]) -> Dict[str, Any]:
        """{目标字段: 合并结果中的路径}；路径无效或未命中的字段为 None。"""
        shaped = {}
        for target, path in mapping.items():
            try:
                _, shaped[target] = resolve_path(merged, path)
            except DataflowError as e:
                logger.warning(f"{tag} field mapping '{target}' skipped: {e.message}")
                shaped[target] = None
        return shaped
