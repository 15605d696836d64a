from __future__ import annotations

import logging
import time
from typing import Any, Iterable, Optional


class RequestLogMiddleware:
    """
    Logs "METHOD path status duration" once the response body is complete.

    Plain ASGI so it does not wrap response background tasks (audit writes)
    in the client connection's lifetime.
    """

    def __init__(
        self,
        app: Any,
        quiet_paths: Iterable[str] = (),
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.app = app
        self.quiet_paths = frozenset(quiet_paths)
        self.logger = logger or logging.getLogger("tracker.requests")

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or scope.get("path") in self.quiet_paths:
            await self.app(scope, receive, send)
            return

        started = time.perf_counter()
        status_code = 500

        async def send_and_log(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)
            if message["type"] == "http.response.body" and not message.get("more_body", False):
                self.logger.info(
                    "%s %s %s %.1fms",
                    scope.get("method"),
                    scope.get("path"),
                    status_code,
                    (time.perf_counter() - started) * 1000,
                )

        await self.app(scope, receive, send_and_log)
