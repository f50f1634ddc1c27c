"""
数据管线异常定义。

按处理方式分两类：
- 局部恢复：FetchError / ProcessingError / MergeScriptError，降级为默认值并记录到数据源元数据。
- 直接上抛：StructuralConfigError / ValidationError，在任何抓取开始前终止本次执行。
"""


class DataflowError(Exception):
    """所有管线异常的基类。"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class FetchError(DataflowError):
    """网络、超时或订阅不可用导致的数据项抓取失败。"""

    def __init__(self, item_id: str, reason: str):
        self.item_id = item_id
        self.reason = reason
        super().__init__(f"Fetch failed for item '{item_id}': {reason}")


class ProcessingError(DataflowError):
    """过滤路径语法错误或后处理脚本失败。"""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class ScriptError(DataflowError):
    """用户脚本抛出异常或超出执行预算。"""

    def __init__(self, message: str, script_name: str = "<script>"):
        self.script_name = script_name
        super().__init__(message)


class MergeScriptError(DataflowError):
    """script 合并策略执行失败。"""

    def __init__(self, source_id: str, reason: str):
        self.source_id = source_id
        self.reason = reason
        super().__init__(f"Merge script failed for source '{source_id}': {reason}")


class StructuralConfigError(DataflowError):
    """配置结构错误：缺少必需字段、未知的数据项或合并类型等。"""

    def __init__(self, message: str, problems: list[str] | None = None):
        self.problems = problems or [message]
        super().__init__(message)


class ValidationError(DataflowError):
    """占位符缺失、类型错误、未解析或存在循环依赖。"""

    def __init__(
        self,
        message: str,
        errors: list[dict] | None = None,
        cycles: list[list[str]] | None = None,
    ):
        self.errors = errors or []
        self.cycles = cycles or []
        super().__init__(message)


class ComponentNotFoundError(DataflowError):
    """配置存储中没有该组件的数据源配置。"""

    def __init__(self, component_id: str):
        self.component_id = component_id
        super().__init__(f"No data source configuration for component '{component_id}'")
