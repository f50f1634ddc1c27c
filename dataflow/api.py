"""
FastAPI 路由：暴露执行、配置、版本适配与占位符接口。

服务实例在 main.py 中构造一次并挂在 app.state 上，路由通过依赖注入获取。
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from pydantic import Field

from dataflow.adapter import ConfigurationAdapter
from dataflow.bridge import ExecutionBridge
from dataflow.config_store import DATA_SOURCE_SECTION, ConfigurationStore
from dataflow.errors import ComponentNotFoundError, StructuralConfigError, ValidationError
from dataflow.integrator import MultiSourceIntegrator
from dataflow.models import ConfigVersion, DataflowModel, PlaceholderConfig
from dataflow.placeholders import PlaceholderResolver
from dataflow.socket_hub import SocketHub

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ── 依赖 ──────────────────────────────────────────────

def get_bridge(request: Request) -> ExecutionBridge:
    return request.app.state.bridge


def get_store(request: Request) -> ConfigurationStore:
    return request.app.state.store


def get_adapter(request: Request) -> ConfigurationAdapter:
    return request.app.state.adapter


def get_resolver(request: Request) -> PlaceholderResolver:
    return request.app.state.resolver


def get_socket_hub(request: Request) -> SocketHub:
    return request.app.state.socket_hub


# ── 请求体 ────────────────────────────────────────────

class ExecuteRequest(DataflowModel):
    configuration: Optional[Dict[str, Any]] = None
    values: Dict[str, Any] = Field(default_factory=dict)


class AdaptRequest(DataflowModel):
    configuration: Dict[str, Any]
    target_version: ConfigVersion = ConfigVersion.V2


class BatchAdaptRequest(DataflowModel):
    configurations: List[Dict[str, Any]]
    target_version: ConfigVersion = ConfigVersion.V2


class ExtractRequest(DataflowModel):
    text: str


class PlaceholderRequest(DataflowModel):
    configuration: Any = None
    values: Dict[str, Any] = Field(default_factory=dict)
    placeholder_configs: Optional[Dict[str, PlaceholderConfig]] = None


class DependencyGraphRequest(DataflowModel):
    graph: Dict[str, List[str]]


def _unprocessable(e: StructuralConfigError | ValidationError) -> HTTPException:
    detail: Dict[str, Any] = {"error": e.message, "errorType": type(e).__name__}
    if isinstance(e, StructuralConfigError):
        detail["problems"] = e.problems
    else:
        detail["errors"] = e.errors
        detail["cycles"] = e.cycles
    return HTTPException(422, detail)


# ── 组件执行 ──────────────────────────────────────────

@router.post("/components/{component_id}/execute")
async def execute_component(
    component_id: str,
    body: Optional[ExecuteRequest] = None,
    force: bool = False,
    bridge: ExecutionBridge = Depends(get_bridge),
) -> dict[str, Any]:
    """执行组件数据源；请求体可携带临时配置文档与占位符取值。"""
    body = body or ExecuteRequest()
    try:
        result = await bridge.execute(
            component_id,
            requirement=body.configuration,
            values=body.values,
            force=force or body.configuration is not None,
        )
    except ComponentNotFoundError as e:
        raise HTTPException(404, e.message)
    return result.to_document()


@router.delete("/components/{component_id}/cache")
async def clear_component_cache(
    component_id: str,
    bridge: ExecutionBridge = Depends(get_bridge),
) -> dict:
    bridge.clear_component_cache(component_id)
    return {"componentId": component_id, "cleared": True}


@router.get("/components/{component_id}/summary")
async def get_config_summary(
    component_id: str,
    bridge: ExecutionBridge = Depends(get_bridge),
) -> dict[str, Any]:
    try:
        return bridge.get_config_summary(component_id)
    except ComponentNotFoundError as e:
        raise HTTPException(404, e.message)
    except StructuralConfigError as e:
        raise _unprocessable(e)


@router.get("/components/{component_id}/data")
async def get_component_data(
    component_id: str,
    flat: bool = False,
    bridge: ExecutionBridge = Depends(get_bridge),
) -> dict[str, Any]:
    """获取缓存中的组件数据；尚未执行过返回 data: null。"""
    data = bridge.get_component_data(component_id)
    if data is None:
        return {"componentId": component_id, "data": None}
    if flat:
        return {"componentId": component_id, "data": MultiSourceIntegrator.to_flat_payload(data)}
    return {
        "componentId": component_id,
        "data": {source_id: payload.to_document() for source_id, payload in data.items()},
        "statistics": MultiSourceIntegrator.statistics(data),
    }


@router.get("/bridge/stats")
async def get_bridge_stats(bridge: ExecutionBridge = Depends(get_bridge)) -> dict[str, Any]:
    return bridge.stats()


# ── 组件配置 ──────────────────────────────────────────

@router.get("/components")
async def list_components(store: ConfigurationStore = Depends(get_store)) -> list[str]:
    return store.list_components()


@router.get("/components/{component_id}/configuration")
async def get_configuration(
    component_id: str,
    store: ConfigurationStore = Depends(get_store),
) -> dict[str, Any]:
    sections = store.get_configuration(component_id)
    if sections is None:
        raise HTTPException(404, f"Component '{component_id}' not found")
    return sections


@router.get("/components/{component_id}/configuration/{section}")
async def get_configuration_section(
    component_id: str,
    section: str,
    store: ConfigurationStore = Depends(get_store),
) -> Any:
    sections = store.get_configuration(component_id)
    if sections is None or section not in sections:
        raise HTTPException(404, f"Section '{section}' of component '{component_id}' not found")
    return sections[section]


@router.put("/components/{component_id}/configuration/{section}")
async def update_configuration_section(
    component_id: str,
    section: str,
    value: Any = Body(...),
    store: ConfigurationStore = Depends(get_store),
    adapter: ConfigurationAdapter = Depends(get_adapter),
) -> dict[str, Any]:
    """更新配置分区；dataSource 分区写入前先做结构校验。"""
    if section == DATA_SOURCE_SECTION:
        try:
            config = adapter.normalize(value)
        except StructuralConfigError as e:
            raise _unprocessable(e)
        if config.component_id != component_id:
            raise HTTPException(400, "componentId mismatch")
    store.update_configuration(component_id, section, value)
    return {"componentId": component_id, "section": section, "updated": True}


@router.put("/components/{component_id}/configuration")
async def update_configuration(
    component_id: str,
    sections: Dict[str, Any] = Body(...),
    store: ConfigurationStore = Depends(get_store),
    adapter: ConfigurationAdapter = Depends(get_adapter),
) -> dict[str, Any]:
    """逐个分区更新；任一分区校验失败则整体不写入。"""
    if DATA_SOURCE_SECTION in sections:
        try:
            adapter.normalize(sections[DATA_SOURCE_SECTION])
        except StructuralConfigError as e:
            raise _unprocessable(e)
    for section, value in sections.items():
        store.update_configuration(component_id, section, value)
    return {"componentId": component_id, "sections": sorted(sections), "updated": True}


@router.delete("/components/{component_id}/configuration")
async def delete_configuration(
    component_id: str,
    store: ConfigurationStore = Depends(get_store),
) -> dict:
    if store.delete_configuration(component_id):
        return {"componentId": component_id, "deleted": True}
    raise HTTPException(404, f"Component '{component_id}' not found")


# ── 版本适配 ──────────────────────────────────────────

@router.post("/adapter/detect")
async def detect_version(
    configuration: Dict[str, Any] = Body(...),
    adapter: ConfigurationAdapter = Depends(get_adapter),
) -> dict:
    return {"version": adapter.detect_version(configuration).value}


@router.post("/adapter/upgrade")
async def upgrade_configuration(
    configuration: Dict[str, Any] = Body(...),
    adapter: ConfigurationAdapter = Depends(get_adapter),
) -> dict[str, Any]:
    try:
        return adapter.upgrade_v1_to_v2(configuration).to_document()
    except StructuralConfigError as e:
        raise _unprocessable(e)


@router.post("/adapter/downgrade")
async def downgrade_configuration(
    configuration: Dict[str, Any] = Body(...),
    adapter: ConfigurationAdapter = Depends(get_adapter),
) -> dict[str, Any]:
    try:
        legacy, warnings = adapter.downgrade_with_warnings(configuration)
    except StructuralConfigError as e:
        raise _unprocessable(e)
    return {"configuration": legacy.to_document(), "warnings": warnings}


@router.post("/adapter/adapt")
async def adapt_configuration(
    body: AdaptRequest,
    adapter: ConfigurationAdapter = Depends(get_adapter),
) -> dict[str, Any]:
    return adapter.adapt_to_version(body.configuration, body.target_version).to_document()


@router.post("/adapter/batch")
async def batch_adapt(
    body: BatchAdaptRequest,
    adapter: ConfigurationAdapter = Depends(get_adapter),
) -> list[dict]:
    return [r.to_document() for r in adapter.batch_convert(body.configurations, body.target_version)]


# ── 占位符 ────────────────────────────────────────────

@router.post("/placeholders/extract")
async def extract_placeholders(
    body: ExtractRequest,
    resolver: PlaceholderResolver = Depends(get_resolver),
) -> dict:
    return {"placeholders": resolver.extract(body.text)}


@router.post("/placeholders/analyze")
async def analyze_placeholders(
    body: PlaceholderRequest,
    resolver: PlaceholderResolver = Depends(get_resolver),
) -> dict[str, Any]:
    return resolver.analyze_dependencies(body.configuration, body.placeholder_configs).to_document()


@router.post("/placeholders/substitute")
async def substitute_placeholders(
    body: PlaceholderRequest,
    resolver: PlaceholderResolver = Depends(get_resolver),
) -> dict[str, Any]:
    substituted = resolver.substitute(body.configuration, body.values)
    remaining = list(resolver.find_occurrences(substituted))
    return {"configuration": substituted, "unresolved": remaining}


@router.post("/placeholders/validate")
async def validate_placeholders(
    body: PlaceholderRequest,
    resolver: PlaceholderResolver = Depends(get_resolver),
) -> dict[str, Any]:
    return resolver.validate(body.configuration, body.placeholder_configs or {}).to_document()


@router.post("/placeholders/cycles")
async def detect_cycles(
    body: DependencyGraphRequest,
    resolver: PlaceholderResolver = Depends(get_resolver),
) -> dict[str, Any]:
    return resolver.detect_circular_dependencies(body.graph).to_document()


# ── Socket ────────────────────────────────────────────

@router.post("/sockets/{topic}")
async def publish_socket_message(
    topic: str,
    message: Any = Body(...),
    hub: SocketHub = Depends(get_socket_hub),
) -> dict:
    """推送一条消息到 socket 缓冲（供 socket 数据项读取）。"""
    hub.publish(topic, message)
    return {"topic": topic, "published": True}
