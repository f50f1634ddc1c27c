"""
数据项处理器：对抓取到的原始数据做 JSONPath 过滤、默认值替换与可选的后处理脚本。

路径未命中不会抛异常，返回 default_value；只有路径语法错误才是 ProcessingError。
"""

import logging
import re
from functools import lru_cache
from typing import Any

from jsonpath_ng.ext import parse as jp_parse

from dataflow.errors import ProcessingError, ScriptError
from dataflow.models import ProcessingConfig
from dataflow.script_engine import ScriptEngine

logger = logging.getLogger(__name__)

_SIMPLE_PATH = re.compile(r"^(\$\.?)?[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*|\[\d+\])*$")


@lru_cache(maxsize=256)
def _compile_path(path: str):
    try:
        return jp_parse(path)
    except Exception as e:
        raise ProcessingError(f"Malformed filter path '{path}': {e}", path=path) from e


def resolve_path(data: Any, path: str | None) -> tuple[bool, Any]:
    """
    按 JSONPath 取值。

    Returns:
        (found, value)；多个匹配时取第一个。空路径或 "$" 返回原数据。
    """
    if not path or path.strip() == "$":
        return True, data
    if data is None:
        _compile_path(path.strip())
        return False, None

    matches = _compile_path(path.strip()).find(data)
    if not matches:
        logger.debug(f"JSONPath '{path}' 无匹配")
        return False, None
    return True, matches[0].value


class DataItemProcessor:
    """Applies a data item's ProcessingConfig to the fetcher's raw output."""

    def __init__(self, script_engine: ScriptEngine | None = None):
        self._scripts = script_engine

    async def process(self, raw: Any, cfg: ProcessingConfig | None) -> Any:
        if cfg is None:
            return raw

        found, value = resolve_path(raw, cfg.filter_path)
        if not found or value is None:
            value = cfg.default_value

        if cfg.custom_script:
            value = await self._apply_custom_script(value, cfg.custom_script)
        return value

    async def _apply_custom_script(self, data: Any, script: str) -> Any:
        if self._scripts is None:
            raise ProcessingError("customScript configured but no script engine is available")
        try:
            return await self._scripts.run(script, {"data": data}, name="<custom_script>")
        except ScriptError as e:
            raise ProcessingError(f"Custom script failed: {e.message}") from e

    @staticmethod
    def validate_filter_path(filter_path: str | None) -> bool:
        """基础语法校验：$ 开头或直接以属性名开头的点/下标路径。"""
        if not filter_path or filter_path == "$":
            return True
        if _SIMPLE_PATH.match(filter_path):
            return True
        try:
            _compile_path(filter_path)
            return True
        except ProcessingError:
            return False
