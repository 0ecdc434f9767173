from abc import ABC, abstractmethod
from dataclasses import dataclass
from time import time
from types import TracebackType
from typing import (
    Any,
    Awaitable,
    Callable,
    List,
    Optional,
    Sequence,
    Tuple,
)
import logging
from aiohttp import ClientResponse, ClientSession, ClientTimeout, hdrs
from aiohttp.typedefs import StrOrURL
from multidict import CIMultiDictProxy
from yarl import URL

from tavern.register.app.metrics import MetricsClient

RequestFunc = Callable[..., Awaitable[ClientResponse]]

logger = logging.getLogger(__name__)


@dataclass
class ChainRequest:
    method: str
    url: StrOrURL
    headers: dict[str, Any] | None = None
    trace_request_ctx: dict[str, Any] | None = None
    kwargs: dict[str, Any] | None = None


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | dict[str, Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        status = response.status
        headers = response.headers

        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        if content_type.startswith("application/json"):
            return ChainResponse(
                status=status, headers=headers, body=await response.json()
            )
        elif content_type.startswith("text/"):
            return ChainResponse(
                status=status, headers=headers, body=await response.text()
            )
        else:
            return ChainResponse(
                status=status, headers=headers, body=await response.read()
            )

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def set_cookie_headers(self) -> List[str]:
        return self.headers.getall(hdrs.SET_COOKIE, [])

    def body_text(self) -> str:
        if self.body is None:
            return ""

        if isinstance(self.body, str):
            return self.body

        elif isinstance(self.body, bytes):
            return self.body.decode("utf-8", errors="replace")

        elif isinstance(self.body, dict):
            return str(self.body.get("error") or self.body.get("message") or self.body)

        return str(self.body)

    def body_get(self, key: str, default: Any = None) -> Any:
        if isinstance(self.body, dict):
            return self.body.get(key, default)
        return default


NextChainResponseCallbackType = Tuple[ClientResponse, ChainResponse]

NextChainCallbackType = Callable[
    [ChainRequest], Awaitable[NextChainResponseCallbackType]
]


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> NextChainResponseCallbackType:
            return await self.handle(next, request)

        return next_invoke


class StatsdMiddleware(RequestMiddlewareBase):
    def __init__(self, metrics_client: MetricsClient, name: str = "remote") -> None:
        super().__init__()
        self._metrics_client = metrics_client
        self._name = name

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        start_time = time()
        request_method = request.method.upper()
        request_path = URL(str(request.url)).path
        status = 0
        try:
            response = await next(request)
            status = response[1].status
            return response
        except Exception as e:
            self._metrics_client.increment(
                f"register.client.{self._name}.exception",
                1,
                tag_dict={
                    "exception": type(e).__name__,
                    "path": request_path,
                    "method": request_method,
                },
            )
            raise
        finally:
            self._metrics_client.timer(
                f"register.client.{self._name}.time",
                time() - start_time,
                tag_dict={"path": request_path, "method": request_method},
            )
            self._metrics_client.increment(
                f"register.client.{self._name}.count",
                1,
                tag_dict={
                    "path": request_path,
                    "method": request_method,
                    "status": status,
                },
            )


class SessionCredentialMiddleware(RequestMiddlewareBase):
    """Attach a session cookie and anti-forgery token to outgoing requests."""

    def __init__(
        self,
        credential: Optional[str],
        anti_forgery_token: Optional[str] = None,
    ) -> None:
        super().__init__()
        self._credential = credential
        self._anti_forgery_token = anti_forgery_token

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        if request.headers is None:
            request.headers = {}

        if self._credential:
            request.headers[hdrs.COOKIE] = self._credential

        if self._anti_forgery_token:
            request.headers["X-CSRF-Token"] = self._anti_forgery_token

        return await next(request)


class EndOfLineChainMiddleware:
    def __init__(
        self,
        request_func: RequestFunc,
        logger: logging.Logger,
        raise_for_status: bool = False,
    ) -> None:
        super().__init__()
        self._request_func = request_func
        self._raise_for_status = raise_for_status
        self._logger = logger

    async def handle(self, request: ChainRequest) -> NextChainResponseCallbackType:

        self._logger.debug(f"Making request: {request.method} {request.url}")

        response: ClientResponse = await self._request_func(
            request.method.lower(),
            request.url,
            headers=request.headers,
            trace_request_ctx={
                **(request.trace_request_ctx or {}),
            },
            **(request.kwargs or {}),
        )

        if self._raise_for_status:
            response.raise_for_status()

        return response, await ChainResponse.from_aiohttp_response(response)


class ChainMiddlewareContext:
    """Sends one request through the chain and closes the response on exit."""

    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request
        self.client_response: ClientResponse | None = None

    async def __aenter__(self) -> Tuple[ClientResponse, ChainResponse]:
        client_response, chain_response = await self._chain_callback(
            self._chain_request
        )
        self.client_response = client_response
        return client_response, chain_response

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self.client_response is not None and not self.client_response.closed:
            self.client_response.close()


class ChainMiddlewareClient:
    def __init__(
        self,
        client_session: ClientSession,
        logger: logging.Logger | None = None,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
        raise_for_status: bool = False,
        timeout: ClientTimeout | None = None,
    ) -> None:
        self._client = client_session
        self._middleware = middleware
        self._timeout = timeout

        self._logger = logger or logging.getLogger("aiohttp_chain")
        self._raise_for_status = raise_for_status

    def request(
        self,
        method: str,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(
            method=method,
            url=url,
            raise_for_status=raise_for_status,
            **kwargs,
        )

    def get(
        self,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(
            method=hdrs.METH_GET,
            url=url,
            raise_for_status=raise_for_status,
            **kwargs,
        )

    def post(
        self,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(
            method=hdrs.METH_POST,
            url=url,
            raise_for_status=raise_for_status,
            **kwargs,
        )

    def _make_request(
        self,
        method: str,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        if self._timeout is not None:
            kwargs.setdefault("timeout", self._timeout)

        chain_request = ChainRequest(
            method=method,
            url=url,
            headers=kwargs.pop("headers", {}),
            trace_request_ctx=kwargs.pop("trace_request_ctx", None),
            kwargs=kwargs,
        )

        if raise_for_status is None:
            raise_for_status = self._raise_for_status

        end_of_line_middleware = EndOfLineChainMiddleware(
            request_func=self._client.request,
            logger=self._logger,
            raise_for_status=raise_for_status,
        )

        chain_callback: NextChainCallbackType = end_of_line_middleware.handle

        full_middleware_chain = reversed(self._middleware or [])

        for mw in full_middleware_chain:
            chain_callback = mw.handle_gen(chain_callback)

        return ChainMiddlewareContext(
            chain_callback=chain_callback,
            chain_request=chain_request,
        )
