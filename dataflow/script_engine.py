"""
脚本引擎：执行用户提供的纯函数脚本（数据项脚本、合并脚本、后处理脚本）。

约定：
- 输入以变量形式注入（items / data / context / response）。
- 单个表达式直接返回其值；语句块需将结果赋给 result。
- 不提供 import、open 等 I/O 能力；超出执行预算视为失败。
"""

import asyncio
import builtins
import json
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict

from dataflow.errors import ScriptError

logger = logging.getLogger(__name__)

_SAFE_BUILTINS = {
    name: getattr(builtins, name)
    for name in (
        "abs", "all", "any", "bool", "dict", "enumerate", "filter", "float", "int",
        "isinstance", "len", "list", "map", "max", "min", "range", "reversed", "round",
        "set", "sorted", "str", "sum", "tuple", "zip",
        "Exception", "ValueError", "TypeError", "KeyError",
    )
}


class ScriptEngine:
    """在受限命名空间中编译并执行脚本，带墙钟超时。"""

    def __init__(self, timeout_seconds: float = 2.0, max_workers: int = 4):
        self.timeout_seconds = timeout_seconds
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="script")

    async def run(self, code: str, inputs: Dict[str, Any] | None = None, name: str = "<script>") -> Any:
        """
        在线程池中执行脚本并返回结果；任何异常或超时都转为 ScriptError。
        等待期间让出事件循环，其他数据源与请求照常推进。
        """
        if not code or not code.strip():
            raise ScriptError("Empty script", name)

        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._pool, self._evaluate, code, dict(inputs or {}), name)
        try:
            return await asyncio.wait_for(future, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Script {name} exceeded {self.timeout_seconds}s budget")
            raise ScriptError(f"Script exceeded execution budget of {self.timeout_seconds}s", name)
        except ScriptError:
            raise
        except Exception as e:
            logger.warning(f"Script {name} raised {type(e).__name__}: {e}")
            raise ScriptError(f"{type(e).__name__}: {e}", name) from e

    def _evaluate(self, code: str, inputs: Dict[str, Any], name: str) -> Any:
        namespace: Dict[str, Any] = {
            "__builtins__": _SAFE_BUILTINS,
            "json": json,
            "math": math,
        }
        namespace.update(inputs)

        try:
            compiled = compile(code.strip(), name, "eval")
        except SyntaxError:
            compiled = None

        if compiled is not None:
            return eval(compiled, namespace)

        try:
            compiled = compile(code, name, "exec")
        except SyntaxError as e:
            raise ScriptError(f"Syntax error: {e.msg} (line {e.lineno})", name) from e
        exec(compiled, namespace)
        return namespace.get("result")

    def shutdown(self):
        self._pool.shutdown(wait=False, cancel_futures=True)
