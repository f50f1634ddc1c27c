"""
配置加载器：将 YAML 配置文件解析为 Pydantic 模型。

应用配置（HTTP 默认值、脚本超时、存储目录、服务端口）与组件数据源文档分开加载；
组件文档目录下的 *.yaml / *.yml / *.json 文件在启动时导入配置存储。
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ── 应用配置 ──────────────────────────────────────────

class HttpSettings(BaseModel):
    base_url: str = ""
    timeout_ms: int = Field(default=10000, gt=0)
    max_retries: int = Field(default=0, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)


class ScriptSettings(BaseModel):
    timeout_seconds: float = Field(default=2.0, gt=0)
    max_workers: int = Field(default=4, gt=0)


class StorageSettings(BaseModel):
    data_dir: str = "data"
    db_file: str = "configurations.json"


class ServerSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8400


class AppConfig(BaseModel):
    http: HttpSettings = Field(default_factory=HttpSettings)
    script: ScriptSettings = Field(default_factory=ScriptSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    # 组件数据源文档目录，相对路径以配置根目录为基准
    components_dir: Optional[str] = None

    def resolve(self, root: Path, relative: str) -> Path:
        path = Path(relative)
        return path if path.is_absolute() else root / path

    def db_path(self, root: Path) -> Path:
        return self.resolve(root, self.storage.data_dir) / self.storage.db_file


# ── Loading ───────────────────────────────────────────

_CONFIG_SEARCH_PATHS = [
    "config/config.yaml",
    "config.yaml",
]


def project_root() -> Path:
    return Path(os.getenv("DATAFLOW_ROOT", "."))


def find_config_root() -> Optional[Path]:
    """Find the application config file, or None when running on defaults."""
    base = project_root()
    for p in _CONFIG_SEARCH_PATHS:
        path = base / p
        if path.exists():
            return path
    return None


def load_config(path: Optional[str | Path] = None) -> AppConfig:
    if path is None:
        path = find_config_root()
    if path is None:
        logger.info("No config file found, using defaults")
        return AppConfig()

    path = Path(path)
    with open(path, "r", encoding="utf-8") as fp:
        raw = yaml.safe_load(fp) or {}
    logger.info(f"Loaded config from {path}")
    return AppConfig.model_validate(raw)


def load_component_documents(directory: str | Path) -> List[Dict[str, Any]]:
    """
    读取目录下所有组件数据源文档（YAML 或 JSON）。
    单个文件解析失败只记录错误并跳过，不影响其他文件。
    """
    directory = Path(directory)
    if not directory.is_dir():
        logger.warning(f"Components directory not found: {directory}")
        return []

    files = sorted(
        [*directory.glob("**/*.yaml"), *directory.glob("**/*.yml"), *directory.glob("**/*.json")]
    )
    documents = []
    for f in files:
        try:
            with open(f, "r", encoding="utf-8") as fp:
                content = json.load(fp) if f.suffix == ".json" else yaml.safe_load(fp)
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error(f"Error loading {f}: {e}")
            continue
        if not content:
            continue
        if isinstance(content, list):
            documents.extend(doc for doc in content if isinstance(doc, dict))
        elif isinstance(content, dict):
            documents.append(content)
        else:
            logger.warning(f"Skipping {f}: expected a mapping or a list of mappings")
    return documents
