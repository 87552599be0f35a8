"""HTTP mocking helpers for remote agent tests.

``AgentServer`` routes requests made through ``httpx.MockTransport`` to
per-URL handlers and records every request it receives.
"""

import json
from collections.abc import Callable
from typing import Any

import httpx

Handler = Callable[[httpx.Request], httpx.Response]


def reply(text: str = "done", status_code: int = 200) -> Handler:
    """Handler answering with an agent ``text`` body."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json={"text": text})

    return handler


def fail_with(status_code: int, body: Any = None) -> Handler:
    """Handler answering with an error status."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=body or {"error": "boom"})

    return handler


def raise_error(error_type: type[httpx.TransportError]) -> Handler:
    """Handler raising a transport error such as a refused connection."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise error_type("simulated failure", request=request)

    return handler


def sequence(*handlers: Handler) -> Handler:
    """Handler using each given handler once, repeating the last one."""
    remaining = list(handlers)

    def handler(request: httpx.Request) -> httpx.Response:
        current = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        return current(request)

    return handler


class AgentServer:
    """In-process stand-in for a fleet of agent endpoints."""

    def __init__(self):
        self.routes: dict[str, Handler] = {}
        self.requests: list[httpx.Request] = []

    def route(self, url: str, handler: Handler) -> None:
        """Register the handler for an exact URL."""
        self.routes[url] = handler

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(str(request.url))
        if handler is None:
            raise httpx.ConnectError("no route", request=request)
        return handler(request)

    def transport(self) -> httpx.MockTransport:
        """Mock transport dispatching to the registered routes."""
        return httpx.MockTransport(self.handle)

    def calls_to(self, url: str) -> list[httpx.Request]:
        """Requests received for one URL."""
        return [request for request in self.requests if str(request.url) == url]

    def body_of(self, request: httpx.Request) -> dict[str, Any]:
        """Decoded JSON body of a recorded request."""
        return json.loads(request.content)
