import argparse
import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, Optional

import socketio
import websockets

from ..exceptions import SignalingError

logger = logging.getLogger(__name__)

DISCONNECT = "disconnect"

_Handler = Callable[[Any], Any]


class BaseSignaling(ABC):
    """
    A channel to the relay which pairs participants and forwards their
    messages.

    Handlers are called with the payload of the message, or `None` if it
    has none. Coroutine handlers are awaited. When the channel is lost, the
    handlers subscribed to `"disconnect"` are called.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[_Handler]] = {}

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def _emit(self, event: str, payload: Optional[dict[str, Any]]) -> None: ...

    async def send(
        self,
        event: str,
        payload: Optional[dict[str, Any]] = None,
        to: Optional[str] = None,
    ) -> None:
        """
        Send a message to the relay.

        :param event: The event name.
        :param payload: The message payload.
        :param to: The identifier of the participant the relay should forward
                   the message to.
        """
        if to is not None:
            payload = dict(payload or {}, to=to)
        logger.debug("> %s %s", event, _summary(payload))
        await self._emit(event, payload)

    def subscribe(self, event: str, handler: _Handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def unsubscribe(self, event: str, handler: _Handler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    async def _dispatch(self, event: str, payload: Any = None) -> None:
        logger.debug("< %s %s", event, _summary(payload))
        for handler in list(self._handlers.get(event, [])):
            result = handler(payload)
            if inspect.isawaitable(result):
                await result


def _summary(payload: Any) -> str:
    if isinstance(payload, dict):
        return "{" + ", ".join(sorted(payload.keys())) + "}"
    return repr(payload)


class SocketIOSignaling(BaseSignaling):
    """
    Signaling over a Socket.IO relay.

    :param url: The URL of the relay.
    :param client: An optional :class:`socketio.AsyncClient`.
    """

    def __init__(self, url: str, client: Optional[socketio.AsyncClient] = None) -> None:
        super().__init__()
        self._client = client if client is not None else socketio.AsyncClient()
        self._registered: set[str] = set()
        self._url = url

    async def connect(self) -> None:
        try:
            await self._client.connect(self._url)
        except socketio.exceptions.ConnectionError as exc:
            raise SignalingError(f"Could not connect to {self._url}: {exc}") from exc

    async def close(self) -> None:
        if self._client.connected:
            await self._client.disconnect()

    def subscribe(self, event: str, handler: _Handler) -> None:
        super().subscribe(event, handler)
        if event not in self._registered:
            self._registered.add(event)
            self._client.on(event, self.__relay(event))

    async def _emit(self, event: str, payload: Optional[dict[str, Any]]) -> None:
        try:
            await self._client.emit(event, payload)
        except socketio.exceptions.SocketIOError as exc:
            raise SignalingError(f'Could not send "{event}": {exc}') from exc

    def __relay(self, event: str) -> Callable[..., Any]:
        async def handler(*args: Any) -> None:
            await self._dispatch(event, args[0] if args else None)

        return handler


class WebsocketSignaling(BaseSignaling):
    """
    Signaling over a WebSocket relay, each message being a JSON object
    with `"event"` and `"data"` keys.

    :param url: The URL of the relay, for instance `ws://localhost:8000`.
    """

    def __init__(self, url: str) -> None:
        super().__init__()
        self._closing = False
        self._reader: Optional[asyncio.Task] = None
        self._url = url
        self._websocket = None

    async def connect(self) -> None:
        try:
            self._websocket = await websockets.connect(self._url)
        except (OSError, websockets.exceptions.WebSocketException) as exc:
            raise SignalingError(f"Could not connect to {self._url}: {exc}") from exc
        self._closing = False
        self._reader = asyncio.ensure_future(self.__run())

    async def close(self) -> None:
        if self._websocket is None:
            return
        self._closing = True
        await self._websocket.close()
        # a disconnect handler may close the channel from the reader itself
        if self._reader is not None and self._reader is not asyncio.current_task():
            await self._reader
        self._reader = None
        self._websocket = None

    async def _emit(self, event: str, payload: Optional[dict[str, Any]]) -> None:
        if self._websocket is None:
            raise SignalingError(f'Could not send "{event}": not connected')
        data = json.dumps({"event": event, "data": payload}, sort_keys=True)
        try:
            await self._websocket.send(data)
        except websockets.exceptions.ConnectionClosed as exc:
            raise SignalingError(f'Could not send "{event}": {exc}') from exc

    async def __run(self) -> None:
        try:
            async for data in self._websocket:
                try:
                    message = json.loads(data)
                    event = message["event"]
                except (KeyError, TypeError, ValueError):
                    logger.warning("Discarding malformed frame %r", data)
                    continue
                await self._dispatch(event, message.get("data"))
        except websockets.exceptions.ConnectionClosedError as exc:
            logger.warning("Connection to %s lost: %s", self._url, exc)
        finally:
            if not self._closing:
                await self._dispatch(DISCONNECT)


def add_signaling_arguments(parser: argparse.ArgumentParser) -> None:
    """
    Add signaling method arguments to an argparse.ArgumentParser.
    """
    parser.add_argument(
        "--signaling",
        "-s",
        choices=["socketio", "websocket"],
        default="socketio",
    )
    parser.add_argument(
        "--signaling-url",
        default="http://localhost:8000",
        help="Relay URL (http:// for socketio, ws:// for websocket)",
    )


def create_signaling(args: argparse.Namespace) -> BaseSignaling:
    """
    Create a signaling method based on command-line arguments.
    """
    if args.signaling == "websocket":
        return WebsocketSignaling(args.signaling_url)
    else:
        return SocketIOSignaling(args.signaling_url)
