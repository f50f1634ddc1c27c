"""
Data source configuration documents (v1 legacy and v2 enhanced generations).

Both generations share the processing and merge-strategy shapes; they differ in the
data item configs (HTTP headers map vs. header records, ``jsonString`` vs. ``jsonData``)
and in the v2-only top-level sections.
"""

import re
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as ModelValidationError
from pydantic.alias_generators import to_camel

from dataflow.errors import StructuralConfigError

PLACEHOLDER_NAME_PATTERN = r"^[a-zA-Z][a-zA-Z0-9_]*$"


class DataflowModel(BaseModel):
    """camelCase on the wire, snake_case in code."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ── 枚举 ──────────────────────────────────────────────

class ConfigVersion(str, Enum):
    V1 = "1.x"
    V2 = "2.x"


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    PATCH = "PATCH"


class ValueDataType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"


class BodyType(str, Enum):
    JSON = "json"
    FORM = "form"
    TEXT = "text"
    BINARY = "binary"


class ConditionRule(str, Enum):
    FIRST_AVAILABLE = "first-available"
    LARGEST_DATASET = "largest-dataset"
    MERGE_ARRAYS = "merge-arrays"


# ── 数据项配置 ────────────────────────────────────────

class StaticItemConfig(DataflowModel):
    data: Any = None
    json_data: Optional[str] = None  # JSON 文本，data 为空时解析


class LegacyJsonItemConfig(DataflowModel):
    json_string: str


class HttpHeader(DataflowModel):
    key: str
    value: str = ""
    enabled: bool = True
    is_dynamic: bool = False
    data_type: ValueDataType = ValueDataType.STRING
    variable_name: str = ""
    description: Optional[str] = None


class HttpParam(HttpHeader):
    pass


class HttpBody(DataflowModel):
    type: BodyType = BodyType.JSON
    content: Any = None
    content_type: Optional[str] = None


class RetryConfig(DataflowModel):
    max_retries: int = Field(default=0, ge=0)
    retry_delay: int = Field(default=1000, ge=0, description="Milliseconds between attempts")


class HttpItemConfig(DataflowModel):
    url: str = Field(min_length=1)
    method: HttpMethod = HttpMethod.GET
    headers: List[HttpHeader] = Field(default_factory=list)
    params: List[HttpParam] = Field(default_factory=list)
    body: Optional[HttpBody] = None
    timeout: Optional[int] = Field(default=None, description="Milliseconds")
    retry: Optional[RetryConfig] = None
    post_response_script: Optional[str] = None


class LegacyHttpItemConfig(DataflowModel):
    url: str = Field(min_length=1)
    method: HttpMethod = HttpMethod.GET
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout: Optional[int] = None


class SocketItemConfig(DataflowModel):
    url: Optional[str] = None
    topic: Optional[str] = None
    protocols: List[str] = Field(default_factory=list)
    reconnect_interval: Optional[int] = None

    @model_validator(mode="after")
    def check_subscription_key(self) -> "SocketItemConfig":
        if not self.topic and not self.url:
            raise ValueError("socket item needs a 'topic' or 'url'")
        return self

    @property
    def subscription_key(self) -> str:
        return self.topic or self.url


class ScriptItemConfig(DataflowModel):
    script: str = Field(min_length=1)
    context: Dict[str, Any] = Field(default_factory=dict)


class ItemMetadata(DataflowModel):
    display_name: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[int] = None
    last_updated: Optional[int] = None
    enabled: bool = True
    tags: List[str] = Field(default_factory=list)


# ── v2 数据项 ─────────────────────────────────────────

class StaticDataItem(DataflowModel):
    type: Literal["static", "json"]
    id: str = ""
    config: StaticItemConfig
    metadata: Optional[ItemMetadata] = None


class HttpDataItem(DataflowModel):
    type: Literal["http"]
    id: str = ""
    config: HttpItemConfig
    metadata: Optional[ItemMetadata] = None


class SocketDataItem(DataflowModel):
    type: Literal["socket", "websocket"]
    id: str = ""
    config: SocketItemConfig
    metadata: Optional[ItemMetadata] = None


class ScriptDataItem(DataflowModel):
    type: Literal["script"]
    id: str = ""
    config: ScriptItemConfig
    metadata: Optional[ItemMetadata] = None


DataItem = Annotated[
    Union[StaticDataItem, HttpDataItem, SocketDataItem, ScriptDataItem],
    Field(discriminator="type"),
]


# ── v1 数据项 ─────────────────────────────────────────

class LegacyJsonDataItem(DataflowModel):
    type: Literal["json"]
    id: Optional[str] = None
    config: LegacyJsonItemConfig


class LegacyStaticDataItem(DataflowModel):
    type: Literal["static"]
    id: Optional[str] = None
    config: StaticItemConfig


class LegacyHttpDataItem(DataflowModel):
    type: Literal["http"]
    id: Optional[str] = None
    config: LegacyHttpItemConfig


class LegacySocketDataItem(DataflowModel):
    type: Literal["socket", "websocket"]
    id: Optional[str] = None
    config: SocketItemConfig


class LegacyScriptDataItem(DataflowModel):
    type: Literal["script"]
    id: Optional[str] = None
    config: ScriptItemConfig


LegacyDataItem = Annotated[
    Union[LegacyJsonDataItem, LegacyStaticDataItem, LegacyHttpDataItem, LegacySocketDataItem, LegacyScriptDataItem],
    Field(discriminator="type"),
]


# ── 处理与合并 ────────────────────────────────────────

class ProcessingConfig(DataflowModel):
    filter_path: Optional[str] = None  # JSONPath，如 $.data.items[0]
    default_value: Any = None
    custom_script: Optional[str] = None


class ObjectMergeStrategy(DataflowModel):
    type: Literal["object"] = "object"


class ArrayMergeStrategy(DataflowModel):
    type: Literal["array"] = "array"


class ConditionMergeStrategy(DataflowModel):
    type: Literal["condition"] = "condition"
    rule: ConditionRule = ConditionRule.FIRST_AVAILABLE


class SelectMergeStrategy(DataflowModel):
    type: Literal["select"] = "select"
    selected_index: int = 0


class ScriptMergeStrategy(DataflowModel):
    type: Literal["script"] = "script"
    script: str = Field(min_length=1)


MergeStrategy = Annotated[
    Union[ObjectMergeStrategy, ArrayMergeStrategy, ConditionMergeStrategy, SelectMergeStrategy, ScriptMergeStrategy],
    Field(discriminator="type"),
]


# ── 数据源 ────────────────────────────────────────────

def item_key(source_id: str, index: int, item_id: Optional[str]) -> str:
    """Effective identifier of a data item; generated from position when not declared."""
    return item_id or f"{source_id}_item_{index}"


class DataItemEntry(DataflowModel):
    item: DataItem
    processing: Optional[ProcessingConfig] = None


class LegacyDataItemEntry(DataflowModel):
    item: LegacyDataItem
    processing: Optional[ProcessingConfig] = None


def _check_unique_item_ids(source_id: str, entries: list) -> None:
    seen = set()
    for index, entry in enumerate(entries):
        key = item_key(source_id, index, entry.item.id)
        if key in seen:
            raise ValueError(f"duplicate data item id '{key}' in source '{source_id}'")
        seen.add(key)


class DataSourceDefinition(DataflowModel):
    source_id: str = Field(min_length=1)
    type: Optional[str] = None
    data_items: List[DataItemEntry] = Field(default_factory=list)
    merge_strategy: MergeStrategy = Field(default_factory=ObjectMergeStrategy)
    field_mapping: Optional[Dict[str, str]] = None  # 目标字段 -> 合并结果中的路径

    @model_validator(mode="after")
    def check_item_ids(self) -> "DataSourceDefinition":
        _check_unique_item_ids(self.source_id, self.data_items)
        return self


class LegacyDataSource(DataflowModel):
    source_id: str = Field(min_length=1)
    type: Optional[str] = None
    data_items: List[LegacyDataItemEntry] = Field(default_factory=list)
    merge_strategy: MergeStrategy = Field(default_factory=ObjectMergeStrategy)
    field_mapping: Optional[Dict[str, str]] = None

    @model_validator(mode="after")
    def check_item_ids(self) -> "LegacyDataSource":
        _check_unique_item_ids(self.source_id, self.data_items)
        return self


def _check_unique_source_ids(sources: list) -> None:
    seen = set()
    for source in sources:
        if source.source_id in seen:
            raise ValueError(f"duplicate data source id '{source.source_id}'")
        seen.add(source.source_id)


class DataSourceConfiguration(DataflowModel):
    """v1 configuration document."""
    component_id: str = Field(min_length=1)
    data_sources: List[LegacyDataSource] = Field(default_factory=list)
    created_at: int = 0
    updated_at: int = 0

    @model_validator(mode="after")
    def check_source_ids(self) -> "DataSourceConfiguration":
        _check_unique_source_ids(self.data_sources)
        return self


# ── v2 扩展字段 ───────────────────────────────────────

class PlaceholderValidationRule(DataflowModel):
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None
    enum: Optional[List[Any]] = None

    @field_validator("pattern")
    @classmethod
    def check_pattern(cls, pattern: Optional[str]) -> Optional[str]:
        if pattern is not None:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"invalid regular expression {pattern!r}: {e}") from e
        return pattern


class PlaceholderConfig(DataflowModel):
    name: str = Field(pattern=PLACEHOLDER_NAME_PATTERN)
    value: Any = None
    data_type: ValueDataType = ValueDataType.STRING
    required: bool = False
    description: Optional[str] = None
    default_value: Any = None
    validation: Optional[PlaceholderValidationRule] = None
    depends_on: List[str] = Field(default_factory=list)


class DynamicParam(DataflowModel):
    name: str
    type: Literal["string", "number", "boolean", "object"] = "string"
    current_value: Any = None
    example_value: Any = None
    description: Optional[str] = None
    required: bool = False
    validation: Optional[PlaceholderValidationRule] = None


class EnhancedFeatureFlags(DataflowModel):
    http_array_format: bool = True
    dynamic_parameter_support: bool = True
    secure_script_execution: bool = True
    configuration_validation: bool = True
    performance_monitoring: bool = True


class ConfigurationVersionEntry(DataflowModel):
    version: str
    timestamp: int
    changelog: str
    author: Optional[str] = None


class ConfigurationMetadata(DataflowModel):
    name: Optional[str] = None
    description: Optional[str] = None
    author: Optional[str] = None
    version_history: List[ConfigurationVersionEntry] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)


class EnhancedDataSourceConfiguration(DataflowModel):
    """v2 configuration document, the shape the executor chain runs on."""
    component_id: str = Field(min_length=1)
    data_sources: List[DataSourceDefinition] = Field(default_factory=list)
    created_at: int = 0
    updated_at: int = 0
    version: str = "2.0.0"
    dynamic_params: List[DynamicParam] = Field(default_factory=list)
    enhanced_features: EnhancedFeatureFlags = Field(default_factory=EnhancedFeatureFlags)
    metadata: Optional[ConfigurationMetadata] = None
    placeholder_configs: Dict[str, PlaceholderConfig] = Field(default_factory=dict)
    component_mappings: List[Dict[str, Any]] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_document(self) -> "EnhancedDataSourceConfiguration":
        if not self.version.startswith("2."):
            raise ValueError(f"enhanced configuration requires a 2.x version, got '{self.version}'")
        _check_unique_source_ids(self.data_sources)
        for key, placeholder in self.placeholder_configs.items():
            if key != placeholder.name:
                raise ValueError(f"placeholder config key '{key}' does not match its name '{placeholder.name}'")
        return self


# ── 解析入口 ──────────────────────────────────────────

M = TypeVar("M", bound=BaseModel)


def parse_document(model: Type[M], raw: Any) -> M:
    """Validate a raw document, reporting schema problems as StructuralConfigError."""
    if isinstance(raw, model):
        return raw
    try:
        return model.model_validate(raw)
    except ModelValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        ]
        raise StructuralConfigError(f"Invalid {model.__name__}: {problems[0]}", problems) from e
