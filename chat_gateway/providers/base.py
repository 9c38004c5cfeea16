"""Provider 适配器抽象接口。

上层编排器不直接依赖具体厂商的 HTTP 协议，而是依赖此协议：

- 每种线协议实现一个适配器（AnthropicClient、OpenAICompatibleClient）。
- 负责：将 CompletionRequest 转成具体 API 请求，
  并把响应 JSON / 事件流解析为 CompletionResponse / StreamEvent。

HttpProviderBase 收拢了各适配器共用的部分：凭据校验、超时、
httpx 异常映射、非 2xx 状态处理，以及流式响应的记录切分。
"""

import json
import math
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Literal, Optional, Protocol

import httpx

from chat_gateway.domain.exceptions import (
    ConfigurationError,
    NetworkError,
    ProtocolError,
    RateLimitError,
    UpstreamError,
    UpstreamTimeoutError,
)
from chat_gateway.domain.models import CompletionRequest, CompletionResponse, Message, StreamEvent
from chat_gateway.infrastructure.logging.logger import get_logger
from chat_gateway.providers.catalog import ProviderConfig
from chat_gateway.providers.streaming import SseRecord, data_of, iter_lines, parse_record


def as_object(value: Any, what: str, **extra: Any) -> Dict[str, Any]:
    """上游 JSON 中应为对象的字段；缺失视为空对象，类型不符抛 ProtocolError。"""

    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ProtocolError(f"{what} is not a JSON object", **extra)
    return value


def as_list(value: Any, what: str, **extra: Any) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ProtocolError(f"{what} is not a JSON array", **extra)
    return value


class CancelToken:
    """跨线程的取消标记。适配器在每条记录之间检查，编排器在每轮之间检查。"""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class ModelListing:
    """模型列表查询结果。

    status="degraded" 表示在线查询失败，models 来自静态目录，
    调用方可以据此区分真实数据与兜底数据。
    """

    provider: str
    models: List[str] = field(default_factory=list)
    status: Literal["success", "degraded"] = "success"
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"provider": self.provider, "models": self.models, "status": self.status}
        if self.reason:
            payload["reason"] = self.reason
        return payload


class ProviderAdapter(Protocol):
    """LLM Provider 适配器协议。

    实现者需要提供：
    - name: Provider 名称，用于注册表与日志。
    - default_model: 请求未指定模型时使用的模型。
    - supports_tools: 是否支持工具调用；为 False 时编排器不会下发工具 schema。
    - complete(req): 非流式调用，返回统一的 CompletionResponse。
    - stream(req): 流式调用，逐个产出 StreamEvent，最后恰好产出一个终止事件。
    """

    name: str
    default_model: str
    supports_tools: bool

    def complete(self, request: CompletionRequest) -> CompletionResponse:
        ...

    def stream(self, request: CompletionRequest, cancel: Optional[CancelToken] = None) -> Iterator[StreamEvent]:
        ...

    def list_models(self) -> ModelListing:
        ...

    def context_window(self, model: Optional[str] = None) -> int:
        ...

    def count_tokens(self, messages: Iterable[Message]) -> int:
        ...


class HttpProviderBase:
    """基于 httpx 的适配器公共实现，子类只负责请求/响应格式转换。"""

    name = "base"
    supports_tools = True
    config: ProviderConfig

    def __init__(
        self,
        api_key: Optional[str],
        base_url: Optional[str] = None,
        default_model: Optional[str] = None,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
    ):
        if not api_key:
            raise ConfigurationError(
                f"{self.name.upper()}_API_KEY not set",
                code="MISSING_API_KEY",
                provider=self.name,
            )
        if not default_model:
            raise ConfigurationError(f"No default model configured for {self.name}", provider=self.name)
        self._api_key = api_key
        self._base_url = (base_url or self.config.base_url).rstrip("/")
        self.default_model = default_model
        self._timeout = httpx.Timeout(read_timeout, connect=connect_timeout)
        self._log = get_logger(f"providers.{self.name}")

    # ---- 子类实现 ----

    def _headers(self) -> Dict[str, str]:
        raise NotImplementedError

    # ---- 公共能力 ----

    def context_window(self, model: Optional[str] = None) -> int:
        return self.config.context_window(model or self.default_model)

    def count_tokens(self, messages: Iterable[Message]) -> int:
        """粗略估算：约 4 个字符折合 1 个 token。"""

        total_chars = sum(len(m.content) for m in messages)
        return math.ceil(total_chars / 4)

    def _model_for(self, request: CompletionRequest) -> str:
        return request.model or self.default_model

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self._timeout, trust_env=False)

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    def _raise_for_status(self, status_code: int, body: str) -> None:
        if status_code == 429:
            # 限流错误交给上层做重试/退避
            raise RateLimitError(body=body, provider=self.name)
        if status_code >= 400:
            raise UpstreamError(status=status_code, body=body, provider=self.name)

    def _request_json(self, method: str, path: str, payload: Optional[dict] = None) -> Dict[str, Any]:
        """执行一次非流式请求并返回 JSON 对象。"""

        try:
            with self._client() as client:
                if method == "GET":
                    resp = client.get(self._url(path), headers=self._headers())
                else:
                    resp = client.post(self._url(path), json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"{self.name} request timed out: {e}", provider=self.name)
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接被拒绝等
            raise NetworkError(str(e), provider=self.name)
        self._raise_for_status(resp.status_code, resp.text)
        if not (resp.text or "").strip():
            raise ProtocolError(f"{self.name} returned an empty response body", provider=self.name)
        try:
            data = resp.json()
        except ValueError as e:
            raise ProtocolError(f"{self.name} returned invalid JSON: {e}", provider=self.name)
        if not isinstance(data, dict):
            raise ProtocolError(f"{self.name} returned a non-object JSON body", provider=self.name)
        return data

    def _stream_records(
        self,
        path: str,
        payload: dict,
        cancel: Optional[CancelToken] = None,
    ) -> Iterator[SseRecord]:
        """发起流式请求，逐条产出已解析的记录。

        单条格式错误的记录只记日志并跳过；整个流没有任何有效记录时抛 ProtocolError。
        被取消时静默结束，由调用方决定不再产出终止事件。
        关闭本生成器会退出 httpx 的上下文管理器，从而关闭上游连接。
        """

        parsed = 0
        skipped = 0
        try:
            with self._client() as client:
                with client.stream("POST", self._url(path), json=payload, headers=self._headers()) as resp:
                    if resp.status_code >= 400:
                        resp.read()
                        self._raise_for_status(resp.status_code, resp.text)
                    for line in iter_lines(resp.iter_bytes()):
                        if cancel is not None and cancel.cancelled:
                            self._log.info("Stream cancelled", extra={"extra": {"provider": self.name}})
                            return
                        data = data_of(line)
                        if data is None:
                            continue
                        try:
                            record = parse_record(data)
                        except json.JSONDecodeError as e:
                            skipped += 1
                            self._log.warning(
                                "Skipping malformed stream record",
                                extra={"extra": {"provider": self.name, "error": str(e), "record": data[:200]}},
                            )
                            continue
                        parsed += 1
                        yield record
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"{self.name} stream timed out: {e}", provider=self.name)
        except httpx.RequestError as e:
            raise NetworkError(str(e), provider=self.name)
        if parsed == 0:
            raise ProtocolError(
                f"{self.name} stream ended without any parseable record",
                provider=self.name,
                skipped=skipped,
            )
