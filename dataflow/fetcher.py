"""
数据项抓取器：根据数据项类型获取原始数据。

- static / json：返回内嵌数据（或解析 jsonData 文本）。
- http：httpx 发起请求，支持超时、重试与同请求合并。
- socket / websocket：读取订阅缓冲中的最新消息，尚无消息返回 None。
- script：在固定上下文中执行纯函数脚本。

所有失败统一转为携带 item_id 的 FetchError，由调用方决定降级方式。
"""

import asyncio
import hashlib
import json
import logging
from typing import Any, Dict

import httpx

from dataflow.config_loader import HttpSettings
from dataflow.errors import FetchError, ScriptError
from dataflow.models import (
    BodyType,
    HttpDataItem,
    HttpItemConfig,
    HttpMethod,
    ScriptDataItem,
    SocketDataItem,
    StaticDataItem,
)
from dataflow.placeholders import convert_value
from dataflow.script_engine import ScriptEngine
from dataflow.socket_hub import SocketHub

logger = logging.getLogger(__name__)

_BODYLESS_METHODS = (HttpMethod.GET,)


class DataItemFetcher:
    """
    数据项抓取器。
    httpx 客户端、Socket 缓冲与脚本引擎均由外部构造后注入。
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        socket_hub: SocketHub | None = None,
        script_engine: ScriptEngine | None = None,
        http_settings: HttpSettings | None = None,
    ):
        self._client = client
        self._socket_hub = socket_hub
        self._scripts = script_engine
        self._http = http_settings or HttpSettings()
        # request key -> in-flight task
        self._inflight: Dict[str, asyncio.Task] = {}

    async def fetch(self, item, component_id: str = "", item_id: str | None = None) -> Any:
        item_id = item_id or item.id or item.type

        if isinstance(item, StaticDataItem):
            return self._fetch_static(item, item_id)
        elif isinstance(item, HttpDataItem):
            return await self._fetch_http(item.config, item_id)
        elif isinstance(item, SocketDataItem):
            return self._fetch_socket(item, item_id)
        elif isinstance(item, ScriptDataItem):
            return await self._fetch_script(item, component_id, item_id)
        raise TypeError(f"Unsupported data item: {item!r}")

    # ── static ────────────────────────────────────────

    def _fetch_static(self, item: StaticDataItem, item_id: str) -> Any:
        if item.config.data is not None:
            return item.config.data
        if item.config.json_data is None:
            return None
        try:
            return json.loads(item.config.json_data)
        except json.JSONDecodeError as e:
            raise FetchError(item_id, f"invalid JSON payload: {e}") from e

    # ── socket ────────────────────────────────────────

    def _fetch_socket(self, item: SocketDataItem, item_id: str) -> Any:
        if self._socket_hub is None:
            raise FetchError(item_id, "socket subscription provider unavailable")
        return self._socket_hub.latest(item.config.subscription_key)

    # ── script ────────────────────────────────────────

    async def _fetch_script(self, item: ScriptDataItem, component_id: str, item_id: str) -> Any:
        if self._scripts is None:
            raise FetchError(item_id, "script engine unavailable")
        context = dict(item.config.context)
        context.setdefault("componentId", component_id)
        context.setdefault("itemId", item_id)
        try:
            return await self._scripts.run(item.config.script, {"context": context}, name=f"<item:{item_id}>")
        except ScriptError as e:
            raise FetchError(item_id, f"script failed: {e.message}") from e

    # ── http ──────────────────────────────────────────

    async def _fetch_http(self, cfg: HttpItemConfig, item_id: str) -> Any:
        if self._client is None:
            raise FetchError(item_id, "no HTTP client configured")

        try:
            request = self.build_request(cfg)
        except ValueError as e:
            raise FetchError(item_id, str(e)) from e

        key = self.request_key(request)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._send(request, cfg))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        else:
            logger.debug(f"[{item_id}] joined in-flight request {key}")

        try:
            data = await asyncio.shield(task)
        except httpx.TimeoutException as e:
            raise FetchError(item_id, f"timeout: {e}") from e
        except httpx.InvalidURL as e:
            raise FetchError(item_id, f"invalid URL: {e}") from e
        except httpx.HTTPError as e:
            raise FetchError(item_id, f"{type(e).__name__}: {e}") from e

        if cfg.post_response_script and self._scripts is not None:
            try:
                data = await self._scripts.run(cfg.post_response_script, {"response": data}, name=f"<response:{item_id}>")
            except ScriptError as e:
                logger.warning(f"[{item_id}] post-response script failed, keeping raw response: {e.message}")
        return data

    def build_request(self, cfg: HttpItemConfig) -> Dict[str, Any]:
        """把 HTTP 数据项配置转成 httpx.request 的参数。"""
        headers = {h.key: h.value for h in cfg.headers if h.enabled and h.key}
        params = {}
        for p in cfg.params:
            if not p.enabled or not p.key:
                continue
            if p.value in ("", None):
                continue
            params[p.key] = convert_value(p.value, p.data_type)
        # httpx 查询参数不接受 dict/None，json 类型参数序列化回文本
        params = {k: json.dumps(v) if isinstance(v, (dict, list)) else v for k, v in params.items()}

        timeout_ms = cfg.timeout if cfg.timeout is not None else self._http.timeout_ms
        request: Dict[str, Any] = {
            "method": cfg.method.value,
            "url": cfg.url,
            "headers": headers,
            "params": params,
            "timeout": timeout_ms / 1000.0,
        }

        if cfg.body is not None and cfg.method not in _BODYLESS_METHODS:
            content = cfg.body.content
            if cfg.body.type == BodyType.JSON:
                if isinstance(content, str):
                    try:
                        content = json.loads(content)
                    except json.JSONDecodeError:
                        request["content"] = content
                        content = None
                if content is not None:
                    request["json"] = content
            elif cfg.body.type == BodyType.FORM:
                request["data"] = content
            elif cfg.body.type == BodyType.TEXT:
                request["content"] = "" if content is None else str(content)
            elif cfg.body.type == BodyType.BINARY:
                request["content"] = content.encode() if isinstance(content, str) else content
            if cfg.body.content_type:
                headers.setdefault("Content-Type", cfg.body.content_type)
        return request

    @staticmethod
    def request_key(request: Dict[str, Any]) -> str:
        """Identical method/url/params/headers/body share one in-flight request."""
        parts = [
            request["method"],
            request["url"],
            "query:" + "&".join(f"{k}={v}" for k, v in sorted(request["params"].items())),
            "headers:" + "&".join(f"{k}={v}" for k, v in sorted(request["headers"].items())),
        ]
        for field in ("json", "data", "content"):
            if field in request:
                parts.append(f"{field}:{json.dumps(request[field], sort_keys=True, default=str)}")
        digest = hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()[:16]
        return f"http_{digest}"

    async def _send(self, request: Dict[str, Any], cfg: HttpItemConfig) -> Any:
        retry = cfg.retry
        max_retries = retry.max_retries if retry else self._http.max_retries
        delay_ms = retry.retry_delay if retry else self._http.retry_delay_ms

        attempt = 0
        while True:
            try:
                response = await self._client.request(**request)
                response.raise_for_status()
                try:
                    return response.json()
                except ValueError:
                    return response.text
            except httpx.HTTPError as e:
                if attempt >= max_retries:
                    raise
                attempt += 1
                logger.warning(
                    f"{request['method']} {request['url']} failed ({type(e).__name__}), "
                    f"retry {attempt}/{max_retries} in {delay_ms}ms"
                )
                await asyncio.sleep(delay_ms / 1000.0)
