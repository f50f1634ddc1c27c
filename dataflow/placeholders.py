"""
Placeholder resolver for ``{{name}}`` tokens.

Covers token extraction across arbitrary nested configuration, the explicit
dependency graph between placeholders (``dependsOn``), cycle detection, value
validation and substitution. Substitution leaves unknown tokens untouched; callers
run :meth:`PlaceholderResolver.ensure_resolved` before using the output.
"""

import json
import logging
import math
import re
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Tuple

from pydantic import BaseModel, Field

from dataflow.errors import ValidationError
from dataflow.models import (
    PLACEHOLDER_NAME_PATTERN,
    DataflowModel,
    EnhancedDataSourceConfiguration,
    PlaceholderConfig,
    ValueDataType,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_REGEX = re.compile(r"\{\{([^}]+)\}\}")
_NAME_REGEX = re.compile(PLACEHOLDER_NAME_PATTERN)


# ── 类型转换 ──────────────────────────────────────────

def convert_value(value: Any, data_type: ValueDataType) -> Any:
    """把（通常来自文本的）值转换为 data_type；无法转换时抛 ValueError。"""
    if value is None or value == "":
        return value
    data_type = ValueDataType(data_type)

    if data_type == ValueDataType.STRING:
        return value if isinstance(value, str) else str(value)
    elif data_type == ValueDataType.NUMBER:
        if isinstance(value, bool):
            raise ValueError(f'Unable to convert value "{value}" to number')
        if isinstance(value, (int, float)):
            return value
        text = str(value).strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            raise ValueError(f'Unable to convert value "{value}" to number')
        if math.isnan(number):
            raise ValueError(f'Unable to convert value "{value}" to number')
        return number
    elif data_type == ValueDataType.BOOLEAN:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ("true", "1"):
            return True
        if text in ("false", "0"):
            return False
        raise ValueError(f'Unable to convert value "{value}" to boolean')
    elif data_type == ValueDataType.JSON:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError as e:
                raise ValueError(f'Unable to convert value "{value}" to json: {e.msg}')
        return value
    raise ValueError(f"Unknown data type: {data_type}")


def validate_type(value: Any, data_type: ValueDataType) -> bool:
    data_type = ValueDataType(data_type)
    if data_type == ValueDataType.STRING:
        return isinstance(value, str)
    elif data_type == ValueDataType.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool) and not math.isnan(value)
    elif data_type == ValueDataType.BOOLEAN:
        return isinstance(value, bool)
    elif data_type == ValueDataType.JSON:
        try:
            if isinstance(value, str):
                json.loads(value)
            else:
                json.dumps(value)
            return True
        except (TypeError, ValueError):
            return False
    return False


# ── 结果模型 ──────────────────────────────────────────

class PlaceholderOccurrence(DataflowModel):
    path: str  # 如 dataSources[0].dataItems[0].item.config.url
    original_value: str
    start: int
    end: int


class PlaceholderDetail(DataflowModel):
    name: str
    occurrences: List[PlaceholderOccurrence] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    dependents: List[str] = Field(default_factory=list)


class CircularDependencyResult(DataflowModel):
    has_circular_dependency: bool
    circular_paths: List[List[str]] = Field(default_factory=list)
    affected_placeholders: List[str] = Field(default_factory=list)


class PlaceholderDependencyAnalysis(DataflowModel):
    config_id: str = ""
    placeholders: List[str] = Field(default_factory=list)
    details: Dict[str, PlaceholderDetail] = Field(default_factory=dict)
    has_circular_dependency: bool = False
    circular_dependency_paths: List[List[str]] = Field(default_factory=list)


class PlaceholderIssue(DataflowModel):
    placeholder: str
    type: Literal["missing", "invalid_type", "validation_failed", "circular_dependency", "unresolved"]
    message: str
    path: Optional[str] = None


class PlaceholderWarning(DataflowModel):
    placeholder: str
    type: Literal["unused", "deprecated", "performance"]
    message: str


class PlaceholderValidationResult(DataflowModel):
    is_valid: bool
    errors: List[PlaceholderIssue] = Field(default_factory=list)
    warnings: List[PlaceholderWarning] = Field(default_factory=list)
    missing_required: List[str] = Field(default_factory=list)
    undefined: List[str] = Field(default_factory=list)


# ── 树遍历 ────────────────────────────────────────────

def _as_tree(config: Any) -> Any:
    if isinstance(config, BaseModel):
        return config.model_dump(by_alias=True, mode="json")
    return config


def _walk_strings(node: Any, path: str = "") -> Iterable[Tuple[str, str]]:
    """Yield (path, text) for every string leaf of a dict/list tree."""
    if isinstance(node, str):
        yield path, node
    elif isinstance(node, Mapping):
        for key, value in node.items():
            child = f"{path}.{key}" if path else str(key)
            yield from _walk_strings(value, child)
    elif isinstance(node, (list, tuple)):
        for index, value in enumerate(node):
            yield from _walk_strings(value, f"{path}[{index}]")


def _replace_in_tree(node: Any, values: Mapping[str, Any]) -> Any:
    if isinstance(node, str):
        return replace_tokens(node, values)
    elif isinstance(node, Mapping):
        return {key: _replace_in_tree(value, values) for key, value in node.items()}
    elif isinstance(node, list):
        return [_replace_in_tree(value, values) for value in node]
    elif isinstance(node, tuple):
        return tuple(_replace_in_tree(value, values) for value in node)
    return node


def extract(text: Any) -> List[str]:
    """Unique placeholder names in order of first appearance."""
    if not isinstance(text, str):
        return []
    names: List[str] = []
    for match in PLACEHOLDER_REGEX.finditer(text):
        name = match.group(1).strip()
        if name and name not in names:
            names.append(name)
    return names


def stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def replace_tokens(text: str, values: Mapping[str, Any]) -> str:
    def _sub(match: re.Match) -> str:
        name = match.group(1).strip()
        value = values.get(name)
        return match.group(0) if value is None else stringify(value)

    return PLACEHOLDER_REGEX.sub(_sub, text)


def generate_http_placeholder_name(parameter_key: str) -> str:
    """HTTP 参数对应的占位符名：http_<清洗后的 key>。"""
    if not parameter_key or not isinstance(parameter_key, str):
        raise ValueError("Parameter key cannot be empty")
    clean = re.sub(r"[^a-zA-Z0-9_]", "_", parameter_key)
    clean = re.sub(r"_+", "_", clean).strip("_")
    if not clean:
        raise ValueError(f"Invalid parameter key: {parameter_key}")
    return f"http_{clean}"


def is_valid_name(name: str) -> bool:
    return isinstance(name, str) and bool(_NAME_REGEX.match(name.strip()))


# ── 解析器 ────────────────────────────────────────────

class PlaceholderResolver:

    def extract(self, text: Any) -> List[str]:
        return extract(text)

    def find_occurrences(self, config: Any) -> Dict[str, List[PlaceholderOccurrence]]:
        occurrences: Dict[str, List[PlaceholderOccurrence]] = {}
        for path, text in _walk_strings(_as_tree(config)):
            for match in PLACEHOLDER_REGEX.finditer(text):
                name = match.group(1).strip()
                if not name:
                    continue
                occurrences.setdefault(name, []).append(
                    PlaceholderOccurrence(path=path, original_value=text, start=match.start(), end=match.end())
                )
        return occurrences

    def analyze_dependencies(
        self,
        config: Any,
        placeholder_configs: Mapping[str, PlaceholderConfig] | None = None,
    ) -> PlaceholderDependencyAnalysis:
        if placeholder_configs is None and isinstance(config, EnhancedDataSourceConfiguration):
            placeholder_configs = config.placeholder_configs
        placeholder_configs = placeholder_configs or {}

        occurrences = self.find_occurrences(config)
        graph = self.dependency_graph(placeholder_configs)

        names = list(occurrences)
        for name, deps in graph.items():
            for candidate in [name, *deps]:
                if candidate not in names:
                    names.append(candidate)

        details = {
            name: PlaceholderDetail(
                name=name,
                occurrences=occurrences.get(name, []),
                dependencies=list(graph.get(name, [])),
                dependents=[other for other, deps in graph.items() if name in deps],
            )
            for name in names
        }
        cycles = self.detect_circular_dependencies(graph)
        config_id = getattr(config, "component_id", None) or (
            config.get("componentId", "") if isinstance(config, Mapping) else ""
        )
        return PlaceholderDependencyAnalysis(
            config_id=config_id,
            placeholders=names,
            details=details,
            has_circular_dependency=cycles.has_circular_dependency,
            circular_dependency_paths=cycles.circular_paths,
        )

    @staticmethod
    def dependency_graph(placeholder_configs: Mapping[str, PlaceholderConfig]) -> Dict[str, List[str]]:
        return {name: list(cfg.depends_on) for name, cfg in placeholder_configs.items() if cfg.depends_on}

    def detect_circular_dependencies(self, graph: Mapping[str, Iterable[str]]) -> CircularDependencyResult:
        """
        深度优先搜索，记录每条回边形成的环（不在第一个环处停止）。
        环以路径表示，首尾相同，如 [a, b, c, a]。
        """
        adjacency = {node: list(deps) for node, deps in graph.items()}
        for deps in list(adjacency.values()):
            for dep in deps:
                adjacency.setdefault(dep, [])

        WHITE, GRAY, BLACK = 0, 1, 2
        color = {node: WHITE for node in adjacency}
        stack: List[str] = []
        cycles: List[List[str]] = []
        seen_cycles = set()

        def visit(node: str):
            color[node] = GRAY
            stack.append(node)
            for dep in adjacency[node]:
                if color[dep] == GRAY:
                    cycle = stack[stack.index(dep):] + [dep]
                    key = _canonical_cycle(cycle[:-1])
                    if key not in seen_cycles:
                        seen_cycles.add(key)
                        cycles.append(cycle)
                elif color[dep] == WHITE:
                    visit(dep)
            stack.pop()
            color[node] = BLACK

        for node in adjacency:
            if color[node] == WHITE:
                visit(node)

        affected: List[str] = []
        for cycle in cycles:
            for node in cycle:
                if node not in affected:
                    affected.append(node)
        return CircularDependencyResult(
            has_circular_dependency=bool(cycles),
            circular_paths=cycles,
            affected_placeholders=affected,
        )

    def substitute(self, config: Any, values: Mapping[str, Any]):
        """替换所有字符串字段中的 {{name}}；未提供值的占位符保持原样。"""
        if isinstance(config, BaseModel):
            replaced = _replace_in_tree(config.model_dump(by_alias=True), values)
            return type(config).model_validate(replaced)
        return _replace_in_tree(config, values)

    def validate(
        self,
        config: Any,
        placeholder_configs: Mapping[str, PlaceholderConfig],
    ) -> PlaceholderValidationResult:
        errors: List[PlaceholderIssue] = []
        warnings: List[PlaceholderWarning] = []
        missing_required: List[str] = []
        undefined: List[str] = []

        occurrences = self.find_occurrences(config)

        for name, found in occurrences.items():
            if name not in placeholder_configs:
                undefined.append(name)
                errors.append(PlaceholderIssue(
                    placeholder=name,
                    type="missing",
                    message=f"Placeholder '{name}' is used but not defined",
                    path=found[0].path,
                ))

        for name, cfg in placeholder_configs.items():
            if name not in occurrences:
                warnings.append(PlaceholderWarning(
                    placeholder=name, type="unused", message=f"Placeholder '{name}' is defined but never used",
                ))

            for dep in cfg.depends_on:
                if dep not in placeholder_configs:
                    errors.append(PlaceholderIssue(
                        placeholder=name,
                        type="missing",
                        message=f"Placeholder '{name}' depends on undefined placeholder '{dep}'",
                    ))

            value = cfg.value if cfg.value is not None else cfg.default_value
            if value is None or value == "":
                if cfg.required:
                    missing_required.append(name)
                    errors.append(PlaceholderIssue(
                        placeholder=name, type="missing", message=f"Required placeholder '{name}' has no value",
                    ))
                continue
            errors.extend(self._check_value(name, value, cfg))

        cycles = self.detect_circular_dependencies(self.dependency_graph(placeholder_configs))
        for cycle in cycles.circular_paths:
            errors.append(PlaceholderIssue(
                placeholder=cycle[0],
                type="circular_dependency",
                message="Circular dependency: " + " -> ".join(cycle),
            ))

        return PlaceholderValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            missing_required=missing_required,
            undefined=undefined,
        )

    def _check_value(self, name: str, value: Any, cfg: PlaceholderConfig) -> List[PlaceholderIssue]:
        try:
            value = convert_value(value, cfg.data_type)
        except ValueError as e:
            return [PlaceholderIssue(placeholder=name, type="invalid_type", message=str(e))]
        if not validate_type(value, cfg.data_type):
            return [PlaceholderIssue(
                placeholder=name, type="invalid_type",
                message=f"Placeholder '{name}' expects {cfg.data_type.value}, got {type(value).__name__}",
            )]

        rule = cfg.validation
        if rule is None:
            return []
        problems = []
        measured = len(value) if isinstance(value, (str, list, dict)) else value
        if isinstance(measured, (int, float)) and not isinstance(measured, bool):
            if rule.min is not None and measured < rule.min:
                problems.append(f"below minimum {rule.min}")
            if rule.max is not None and measured > rule.max:
                problems.append(f"above maximum {rule.max}")
        if rule.pattern is not None and isinstance(value, str) and not re.search(rule.pattern, value):
            problems.append(f"does not match pattern '{rule.pattern}'")
        if rule.enum is not None and value not in rule.enum:
            problems.append(f"not one of {rule.enum}")
        return [
            PlaceholderIssue(placeholder=name, type="validation_failed", message=f"Placeholder '{name}' {p}")
            for p in problems
        ]

    # ── 执行前使用 ────────────────────────────────────

    def resolve_values(
        self,
        placeholder_configs: Mapping[str, PlaceholderConfig],
        overrides: Mapping[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """Effective values: runtime overrides > configured value > default value."""
        values: Dict[str, Any] = {}
        for name, cfg in placeholder_configs.items():
            value = cfg.value if cfg.value is not None else cfg.default_value
            if value is not None:
                values[name] = value
        for name, value in (overrides or {}).items():
            if value is not None:
                values[name] = value
        return values

    def ensure_resolved(self, config: Any):
        """输出中残留的占位符视为校验失败。"""
        leftover = self.find_occurrences(config)
        if leftover:
            errors = [
                PlaceholderIssue(
                    placeholder=name, type="unresolved",
                    message=f"Placeholder '{name}' has no value", path=found[0].path,
                ).to_document()
                for name, found in leftover.items()
            ]
            raise ValidationError(f"Unresolved placeholders: {', '.join(leftover)}", errors=errors)


def _canonical_cycle(nodes: List[str]) -> tuple:
    if not nodes:
        return ()
    pivot = nodes.index(min(nodes))
    return tuple(nodes[pivot:] + nodes[:pivot])
