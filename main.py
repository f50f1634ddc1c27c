"""
Dataflow 主入口：启动 FastAPI 后端服务。
"""

import logging
import sys
from contextlib import asynccontextmanager

import httpx
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dataflow import api
from dataflow.adapter import ConfigurationAdapter
from dataflow.bridge import ExecutionBridge
from dataflow.config_loader import AppConfig, load_component_documents, load_config, project_root
from dataflow.config_store import DATA_SOURCE_SECTION, ConfigurationStore
from dataflow.errors import StructuralConfigError
from dataflow.executor import ExecutorChain
from dataflow.fetcher import DataItemFetcher
from dataflow.integrator import MultiSourceIntegrator
from dataflow.merger import DataSourceMerger
from dataflow.placeholders import PlaceholderResolver
from dataflow.processor import DataItemProcessor
from dataflow.script_engine import ScriptEngine
from dataflow.socket_hub import SocketHub

# 日志配置
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def import_component_documents(config: AppConfig, store: ConfigurationStore, adapter: ConfigurationAdapter) -> int:
    """把 components_dir 下的数据源配置文档导入配置存储，返回导入数量。"""
    if not config.components_dir:
        return 0
    directory = config.resolve(project_root(), config.components_dir)
    imported = 0
    for document in load_component_documents(directory):
        try:
            normalized = adapter.normalize(document)
        except StructuralConfigError as e:
            logger.error(f"跳过无效的组件配置: {'; '.join(e.problems)}")
            continue
        store.update_configuration(normalized.component_id, DATA_SOURCE_SECTION, document)
        imported += 1
    return imported


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan 事件处理：启动时导入组件配置，关闭时释放资源。"""
    config: AppConfig = app.state.config

    imported = import_component_documents(config, app.state.store, app.state.adapter)
    if imported:
        logger.info(f"启动时导入 {imported} 个组件配置")

    yield  # 应用运行中

    logger.info("正在关闭...")
    await app.state.http_client.aclose()
    app.state.script_engine.shutdown()
    app.state.store.close()


def create_app(config: AppConfig | None = None) -> FastAPI:
    """创建并配置 FastAPI 应用。"""
    app = FastAPI(
        title="Dataflow API",
        description="Component data source execution, configuration versioning and placeholders",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS 中间件
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── 初始化核心组件 ────────────────────────────────────────
    if config is None:
        logger.info("正在加载配置...")
        config = load_config()

    # 配置持久化
    store = ConfigurationStore(config.db_path(project_root()))

    # 共享 HTTP 客户端
    http_client = httpx.AsyncClient(
        base_url=config.http.base_url,
        timeout=config.http.timeout_ms / 1000.0,
    )

    script_engine = ScriptEngine(
        timeout_seconds=config.script.timeout_seconds,
        max_workers=config.script.max_workers,
    )
    socket_hub = SocketHub()
    resolver = PlaceholderResolver()
    adapter = ConfigurationAdapter()

    # 执行链
    chain = ExecutorChain(
        fetcher=DataItemFetcher(
            client=http_client,
            socket_hub=socket_hub,
            script_engine=script_engine,
            http_settings=config.http,
        ),
        processor=DataItemProcessor(script_engine),
        merger=DataSourceMerger(script_engine),
        integrator=MultiSourceIntegrator(),
        resolver=resolver,
    )
    bridge = ExecutionBridge(chain, store=store, adapter=adapter, resolver=resolver)

    # 配置变更推送缓存失效
    store.add_listener(bridge.on_configuration_changed)

    # 注册 API 路由
    app.include_router(api.router)

    # 将组件存到 app.state，供路由与 lifespan 访问
    app.state.config = config
    app.state.store = store
    app.state.http_client = http_client
    app.state.script_engine = script_engine
    app.state.socket_hub = socket_hub
    app.state.resolver = resolver
    app.state.adapter = adapter
    app.state.bridge = bridge

    return app


def main():
    """主入口。"""
    config = load_config()
    port = int(sys.argv[1]) if len(sys.argv) > 1 else config.server.port

    logger.info(f"启动 Dataflow 后端 (port={port})...")

    app = create_app(config)

    uvicorn.run(
        app,
        host=config.server.host,
        port=port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
