"""ASGI middleware that owns the script execution WebSocket route."""
import logging
from typing import Optional

from starlette.types import ASGIApp, Receive, Scope, Send
from starlette.websockets import WebSocket

from ..core.config import settings
from ..services.execution_service import ScriptExecutionHandler, execution_handler

logger = logging.getLogger(__name__)


class ScriptExecutionGateway:
    """Intercept WebSocket upgrades on one reserved path.

    Every other HTTP request and WebSocket connection is passed to the wrapped
    application unchanged.
    """

    def __init__(
        self,
        app: ASGIApp,
        handler: Optional[ScriptExecutionHandler] = None,
        path: Optional[str] = None,
    ) -> None:
        self.app = app
        self.handler = handler or execution_handler
        self.path = path or settings.websocket_path

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "websocket" and scope.get("path") == self.path:
            websocket = WebSocket(scope, receive=receive, send=send)
            await self.handler.serve(websocket)
            return
        await self.app(scope, receive, send)
