"""
配置版本适配器：在 v1（legacy）与 v2（enhanced）两代数据源配置之间转换。

- 升级是无损的：v1 的每个字段原样保留或 1:1 改名，v2 独有字段取显式默认值。
- 降级是有意的有损转换：v2 独有字段被丢弃，禁用的 header/param 记录被丢弃，
  每一处丢弃都以 warning 形式报告。
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from dataflow.errors import StructuralConfigError
from dataflow.execution_state import now_ms
from dataflow.models import (
    BodyType,
    ConfigurationMetadata,
    ConfigurationVersionEntry,
    ConfigVersion,
    DataflowModel,
    DataItemEntry,
    DataSourceConfiguration,
    DataSourceDefinition,
    EnhancedDataSourceConfiguration,
    EnhancedFeatureFlags,
    HttpBody,
    HttpDataItem,
    HttpHeader,
    HttpItemConfig,
    LegacyDataItemEntry,
    LegacyDataSource,
    LegacyHttpDataItem,
    LegacyHttpItemConfig,
    LegacyJsonDataItem,
    LegacyJsonItemConfig,
    LegacyScriptDataItem,
    LegacySocketDataItem,
    LegacyStaticDataItem,
    ScriptDataItem,
    SocketDataItem,
    StaticDataItem,
    StaticItemConfig,
    parse_document,
)
from dataflow.placeholders import generate_http_placeholder_name

logger = logging.getLogger(__name__)


class ConversionMetadata(DataflowModel):
    source_version: ConfigVersion
    target_version: ConfigVersion
    converted_at: int


class ConversionResult(DataflowModel):
    success: bool
    data: Optional[Dict[str, Any]] = None
    warnings: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    metadata: ConversionMetadata


def _as_raw(config: Any) -> Any:
    if isinstance(config, BaseModel):
        return config.model_dump(by_alias=True, mode="json")
    return config


class ConfigurationAdapter:

    # ── 版本检测 ──────────────────────────────────────

    def detect_version(self, config: Any) -> ConfigVersion:
        """结构化检测：version 字段以 "2." 开头为 v2，否则一律视为 v1。"""
        if isinstance(config, EnhancedDataSourceConfiguration):
            return ConfigVersion.V2
        if isinstance(config, DataSourceConfiguration):
            return ConfigVersion.V1
        version = config.get("version") if isinstance(config, dict) else None
        if isinstance(version, str) and version.startswith("2."):
            return ConfigVersion.V2
        return ConfigVersion.V1

    def normalize(self, config: Any) -> EnhancedDataSourceConfiguration:
        """Parse a document of either generation into the shape the executor runs on."""
        if self.detect_version(config) == ConfigVersion.V2:
            return parse_document(EnhancedDataSourceConfiguration, config)
        return self.upgrade_v1_to_v2(config)

    # ── 升级 ──────────────────────────────────────────

    def upgrade_v1_to_v2(self, config: Any) -> EnhancedDataSourceConfiguration:
        legacy = parse_document(DataSourceConfiguration, config)
        timestamp = now_ms()

        sources = [
            DataSourceDefinition(
                source_id=source.source_id,
                type=source.type,
                data_items=[
                    DataItemEntry(item=self._upgrade_item(entry.item), processing=entry.processing)
                    for entry in source.data_items
                ],
                merge_strategy=source.merge_strategy,
                field_mapping=source.field_mapping,
            )
            for source in legacy.data_sources
        ]

        enhanced = EnhancedDataSourceConfiguration(
            component_id=legacy.component_id,
            data_sources=sources,
            created_at=legacy.created_at,
            updated_at=legacy.updated_at,
            version="2.0.0",
            dynamic_params=[],
            enhanced_features=EnhancedFeatureFlags(),
            metadata=ConfigurationMetadata(
                name=f"Configuration_{legacy.component_id}",
                description="Upgraded from a v1 configuration",
                author="system",
                version_history=[
                    ConfigurationVersionEntry(
                        version="2.0.0",
                        timestamp=timestamp,
                        changelog="Automatic upgrade from v1",
                        author="ConfigurationAdapter",
                    )
                ],
                tags=["upgraded", "v2"],
            ),
        )
        logger.debug(f"[{legacy.component_id}] upgraded configuration to 2.0.0")
        return enhanced

    def _upgrade_item(self, item):
        item_id = item.id or ""
        if isinstance(item, LegacyJsonDataItem):
            return StaticDataItem(type="json", id=item_id, config=StaticItemConfig(json_data=item.config.json_string))
        elif isinstance(item, LegacyStaticDataItem):
            return StaticDataItem(type="static", id=item_id, config=item.config)
        elif isinstance(item, LegacyHttpDataItem):
            cfg = item.config
            return HttpDataItem(
                type="http",
                id=item_id,
                config=HttpItemConfig(
                    url=cfg.url,
                    method=cfg.method,
                    headers=[self._header_record(key, value) for key, value in cfg.headers.items()],
                    params=[],
                    body=HttpBody(type=BodyType.JSON, content=cfg.body) if cfg.body is not None else None,
                    timeout=cfg.timeout,
                ),
            )
        elif isinstance(item, LegacySocketDataItem):
            return SocketDataItem(type=item.type, id=item_id, config=item.config)
        elif isinstance(item, LegacyScriptDataItem):
            return ScriptDataItem(type="script", id=item_id, config=item.config)
        raise TypeError(f"Unsupported legacy data item: {item!r}")

    @staticmethod
    def _header_record(key: str, value: str) -> HttpHeader:
        try:
            variable_name = generate_http_placeholder_name(key)
        except ValueError:
            variable_name = ""
        return HttpHeader(key=key, value=value, enabled=True, is_dynamic=False, variable_name=variable_name)

    # ── 降级 ──────────────────────────────────────────

    def downgrade_v2_to_v1(self, config: Any) -> DataSourceConfiguration:
        legacy, _ = self.downgrade_with_warnings(config)
        return legacy

    def downgrade_with_warnings(self, config: Any) -> Tuple[DataSourceConfiguration, List[str]]:
        enhanced = parse_document(EnhancedDataSourceConfiguration, config)
        warnings: List[str] = []

        if enhanced.dynamic_params:
            warnings.append(f"dropped {len(enhanced.dynamic_params)} dynamic parameter(s)")
        if enhanced.placeholder_configs:
            warnings.append(f"dropped placeholder configs: {', '.join(enhanced.placeholder_configs)}")
        if enhanced.component_mappings:
            warnings.append(f"dropped {len(enhanced.component_mappings)} component mapping(s)")
        if enhanced.metadata is not None:
            warnings.append("dropped configuration metadata")
        if enhanced.enhanced_features != EnhancedFeatureFlags():
            warnings.append("dropped non-default enhanced feature flags")

        sources = []
        for source in enhanced.data_sources:
            entries = []
            for index, entry in enumerate(source.data_items):
                where = f"{source.source_id}[{index}]"
                entries.append(LegacyDataItemEntry(
                    item=self._downgrade_item(entry.item, where, warnings),
                    processing=entry.processing,
                ))
            sources.append(LegacyDataSource(
                source_id=source.source_id,
                type=source.type,
                data_items=entries,
                merge_strategy=source.merge_strategy,
                field_mapping=source.field_mapping,
            ))

        legacy = DataSourceConfiguration(
            component_id=enhanced.component_id,
            data_sources=sources,
            created_at=enhanced.created_at,
            updated_at=enhanced.updated_at,
        )
        for warning in warnings:
            logger.warning(f"[{enhanced.component_id}] downgrade: {warning}")
        return legacy, warnings

    def _downgrade_item(self, item, where: str, warnings: List[str]):
        item_id = item.id or None
        if item.metadata is not None:
            warnings.append(f"{where}: dropped item metadata")

        if isinstance(item, StaticDataItem):
            if item.type == "json":
                cfg = item.config
                text = cfg.json_data if cfg.json_data is not None else json.dumps(cfg.data)
                return LegacyJsonDataItem(type="json", id=item_id, config=LegacyJsonItemConfig(json_string=text))
            return LegacyStaticDataItem(type="static", id=item_id, config=item.config)
        elif isinstance(item, HttpDataItem):
            return LegacyHttpDataItem(type="http", id=item_id, config=self._downgrade_http(item.config, where, warnings))
        elif isinstance(item, SocketDataItem):
            return LegacySocketDataItem(type=item.type, id=item_id, config=item.config)
        elif isinstance(item, ScriptDataItem):
            return LegacyScriptDataItem(type="script", id=item_id, config=item.config)
        raise TypeError(f"Unsupported data item: {item!r}")

    def _downgrade_http(self, cfg: HttpItemConfig, where: str, warnings: List[str]) -> LegacyHttpItemConfig:
        headers = {}
        for header in cfg.headers:
            if not header.enabled:
                warnings.append(f"{where}: discarded disabled header '{header.key}'")
                continue
            if header.is_dynamic:
                warnings.append(f"{where}: header '{header.key}' loses its dynamic binding")
            headers[header.key] = header.value

        if cfg.params:
            warnings.append(f"{where}: dropped {len(cfg.params)} query parameter(s)")
        if cfg.retry is not None:
            warnings.append(f"{where}: dropped retry policy")
        if cfg.post_response_script:
            warnings.append(f"{where}: dropped post-response script")

        body = None
        if cfg.body is not None:
            body = cfg.body.content
            if cfg.body.type != BodyType.JSON:
                warnings.append(f"{where}: body type '{cfg.body.type.value}' downgraded to a plain body")
            if cfg.body.content_type:
                warnings.append(f"{where}: dropped body content type")

        return LegacyHttpItemConfig(url=cfg.url, method=cfg.method, headers=headers, body=body, timeout=cfg.timeout)

    # ── 统一入口 ──────────────────────────────────────

    def adapt_to_version(self, config: Any, target: ConfigVersion) -> ConversionResult:
        target = ConfigVersion(target)
        source = self.detect_version(config)
        warnings: List[str] = []

        try:
            if source == target:
                model = self.normalize(config) if target == ConfigVersion.V2 else parse_document(
                    DataSourceConfiguration, config
                )
            elif target == ConfigVersion.V2:
                model = self.upgrade_v1_to_v2(config)
            else:
                model, warnings = self.downgrade_with_warnings(config)
        except StructuralConfigError as e:
            return ConversionResult(
                success=False,
                errors=e.problems or [e.message],
                metadata=ConversionMetadata(source_version=source, target_version=target, converted_at=now_ms()),
            )

        return ConversionResult(
            success=True,
            data=model.to_document(),
            warnings=warnings,
            metadata=ConversionMetadata(source_version=source, target_version=target, converted_at=now_ms()),
        )

    def batch_convert(self, configs: List[Any], target: ConfigVersion) -> List[ConversionResult]:
        return [self.adapt_to_version(config, target) for config in configs]

    def validate_conversion(self, original: Any, converted: Any) -> Dict[str, Any]:
        """Structural consistency check between a document and its conversion."""
        original, converted = _as_raw(original), _as_raw(converted)
        issues: List[str] = []

        if original.get("componentId") != converted.get("componentId"):
            issues.append("componentId does not match")

        orig_sources = original.get("dataSources") or []
        conv_sources = converted.get("dataSources") or []
        if len(orig_sources) != len(conv_sources):
            issues.append("dataSources count does not match")

        for i, (orig, conv) in enumerate(zip(orig_sources, conv_sources)):
            if orig.get("sourceId") != conv.get("sourceId"):
                issues.append(f"dataSources[{i}].sourceId does not match")
            if len(orig.get("dataItems") or []) != len(conv.get("dataItems") or []):
                issues.append(f"dataSources[{i}].dataItems count does not match")

        return {"valid": not issues, "issues": issues}
