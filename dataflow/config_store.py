"""
配置存储：基于 TinyDB 的组件配置持久化层。
每个组件一条记录，按 section 分区保存（dataSource 保存数据源配置文档）。
配置变更会同步通知所有监听者，执行缓存据此失效。
"""

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List

from tinydb import Query, TinyDB

from dataflow.config_loader import project_root

logger = logging.getLogger(__name__)

DATA_SOURCE_SECTION = "dataSource"

ChangeListener = Callable[[str, str], None]


class ConfigurationStore:
    """TinyDB 配置操作封装。"""

    def __init__(self, db_path: str | Path | None = None):
        if db_path is None:
            db_path = project_root() / "data" / "configurations.json"
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)

        self.db = TinyDB(str(db_path), indent=2, ensure_ascii=False)
        self.table = self.db.table("configurations")
        self._listeners: List[ChangeListener] = []
        logger.info(f"TinyDB 数据库已打开: {db_path}")

    # ── 监听 ──────────────────────────────────────────

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """注册变更监听 (component_id, section)；返回取消注册的函数。"""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, component_id: str, section: str):
        for listener in list(self._listeners):
            try:
                listener(component_id, section)
            except Exception as e:
                logger.error(f"[{component_id}] Configuration listener failed: {e}", exc_info=True)

    # ── 查询 ──────────────────────────────────────────

    def get_configuration(self, component_id: str) -> Dict[str, Any] | None:
        """获取组件的全部配置分区；不存在时返回 None。"""
        Component = Query()
        results = self.table.search(Component.component_id == component_id)
        return dict(results[0].get("sections", {})) if results else None

    def get_section(self, component_id: str, section: str) -> Any:
        sections = self.get_configuration(component_id)
        return sections.get(section) if sections else None

    def list_components(self) -> List[str]:
        return sorted(record["component_id"] for record in self.table.all())

    # ── 写入 ──────────────────────────────────────────

    def update_configuration(self, component_id: str, section: str, value: Any):
        """更新组件的一个配置分区（整体替换），并通知监听者。"""
        sections = self.get_configuration(component_id) or {}
        sections[section] = value
        record = {
            "component_id": component_id,
            "sections": sections,
            "updated_at": time.time(),
        }
        Component = Query()
        self.table.upsert(record, Component.component_id == component_id)
        logger.debug(f"[{component_id}] 配置分区已更新: {section}")
        self._notify(component_id, section)

    def delete_configuration(self, component_id: str) -> bool:
        Component = Query()
        removed = self.table.remove(Component.component_id == component_id)
        if removed:
            logger.info(f"[{component_id}] 配置已删除")
            self._notify(component_id, "*")
        return bool(removed)

    def close(self):
        """关闭数据库。"""
        self.db.close()
