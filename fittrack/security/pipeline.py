"""
Ordered request guards.

Each guard inspects the request and either lets it continue (optionally
adding response headers) or short-circuits with its own response. Guards
also get an ``after`` hook with the final status code once the route ran.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from starlette.datastructures import MutableHeaders
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger(__name__)


@dataclass
class GuardResult:
    response: Optional[Response] = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def short_circuit(self) -> bool:
        return self.response is not None


def proceed(headers: Optional[Dict[str, str]] = None) -> GuardResult:
    return GuardResult(headers=headers or {})


def stop(response: Response) -> GuardResult:
    return GuardResult(response=response)


class Guard:
    name = "guard"

    async def check(self, request: Request) -> GuardResult:
        raise NotImplementedError

    async def after(self, request: Request, status_code: int) -> None:
        pass


async def _read_body(receive: Receive) -> bytes:
    chunks: List[bytes] = []
    while True:
        message = await receive()
        if message["type"] != "http.request":
            break
        chunks.append(message.get("body", b""))
        if not message.get("more_body", False):
            break
    return b"".join(chunks)


def _replay(body: bytes, receive: Receive) -> Receive:
    sent = False

    async def replay_receive() -> Message:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay_receive


class SecurityPipeline:
    """Runs the guards in order before handing the request to the app."""

    def __init__(self, app: ASGIApp, guards: Sequence[Guard]) -> None:
        self.app = app
        self.guards = list(guards)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        # Guards may need to read the body (CSRF form field), so buffer it once.
        body = await _read_body(receive)
        request = Request(scope, _replay(body, receive))

        extra_headers: Dict[str, str] = {}
        passed: List[Guard] = []
        for guard in self.guards:
            result = await guard.check(request)
            if result.short_circuit:
                logger.debug("Request %s %s stopped by %s", request.method, request.url.path, guard.name)
                try:
                    await result.response(scope, _replay(body, receive), send)
                finally:
                    await self._run_after(passed, request, result.response.status_code)
                return
            passed.append(guard)
            extra_headers.update(result.headers)

        status_code = 500

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                if extra_headers:
                    headers = MutableHeaders(scope=message)
                    for name, value in extra_headers.items():
                        headers[name] = value
            await send(message)

        try:
            await self.app(scope, _replay(body, receive), send_wrapper)
        finally:
            await self._run_after(self.guards, request, status_code)

    async def _run_after(self, guards: Sequence[Guard], request: Request, status_code: int) -> None:
        for guard in guards:
            try:
                await guard.after(request, status_code)
            except Exception:
                logger.exception("Guard %s failed in its after hook", guard.name)
