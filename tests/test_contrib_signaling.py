import argparse
import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import socketio
import websockets

from aioroulette.contrib.signaling import (
    DISCONNECT,
    SocketIOSignaling,
    WebsocketSignaling,
    add_signaling_arguments,
    create_signaling,
)
from aioroulette.exceptions import SignalingError

from .utils import TestCase, asynctest, wait_for


def create_client() -> MagicMock:
    client = MagicMock(spec=socketio.AsyncClient)
    client.connect = AsyncMock()
    client.disconnect = AsyncMock()
    client.emit = AsyncMock()
    client.connected = True
    return client


class ArgumentsTest(TestCase):
    def test_default(self) -> None:
        parser = argparse.ArgumentParser()
        add_signaling_arguments(parser)
        args = parser.parse_args([])

        signaling = self.ensureIsInstance(create_signaling(args), SocketIOSignaling)
        self.assertEqual(signaling._url, "http://localhost:8000")

    def test_websocket(self) -> None:
        parser = argparse.ArgumentParser()
        add_signaling_arguments(parser)
        args = parser.parse_args(
            ["-s", "websocket", "--signaling-url", "ws://relay.example:9000"]
        )

        signaling = self.ensureIsInstance(create_signaling(args), WebsocketSignaling)
        self.assertEqual(signaling._url, "ws://relay.example:9000")


class SocketIOSignalingTest(TestCase):
    @asynctest
    async def test_connect(self) -> None:
        client = create_client()
        signaling = SocketIOSignaling("http://localhost:8000", client=client)

        await signaling.connect()
        client.connect.assert_awaited_once_with("http://localhost:8000")

        await signaling.close()
        client.disconnect.assert_awaited_once_with()

    @asynctest
    async def test_connect_error(self) -> None:
        client = create_client()
        client.connect.side_effect = socketio.exceptions.ConnectionError(
            "Connection refused"
        )
        signaling = SocketIOSignaling("http://localhost:8000", client=client)

        with self.assertRaises(SignalingError) as cm:
            await signaling.connect()
        self.assertEqual(
            str(cm.exception),
            "Could not connect to http://localhost:8000: Connection refused",
        )

    @asynctest
    async def test_close_not_connected(self) -> None:
        client = create_client()
        client.connected = False
        signaling = SocketIOSignaling("http://localhost:8000", client=client)

        await signaling.close()
        client.disconnect.assert_not_awaited()

    @asynctest
    async def test_send(self) -> None:
        client = create_client()
        signaling = SocketIOSignaling("http://localhost:8000", client=client)

        await signaling.send("skip")
        client.emit.assert_awaited_with("skip", None)

        await signaling.send("offer", {"offer": {"sdp": "v=0", "type": "offer"}}, to="abc")
        client.emit.assert_awaited_with(
            "offer", {"offer": {"sdp": "v=0", "type": "offer"}, "to": "abc"}
        )

    @asynctest
    async def test_send_error(self) -> None:
        client = create_client()
        client.emit.side_effect = socketio.exceptions.BadNamespaceError(
            "/ is not a connected namespace."
        )
        signaling = SocketIOSignaling("http://localhost:8000", client=client)

        with self.assertRaises(SignalingError):
            await signaling.send("skip")

    @asynctest
    async def test_subscribe(self) -> None:
        client = create_client()
        signaling = SocketIOSignaling("http://localhost:8000", client=client)
        received: list[Any] = []

        async def async_handler(payload: Any) -> None:
            received.append(("async", payload))

        signaling.subscribe("offer", lambda payload: received.append(("sync", payload)))
        signaling.subscribe("offer", async_handler)
        signaling.subscribe("skipped", received.append)

        # a single Socket.IO handler per event
        self.assertEqual(
            [call.args[0] for call in client.on.call_args_list], ["offer", "skipped"]
        )

        relay = dict((call.args[0], call.args[1]) for call in client.on.call_args_list)
        await relay["offer"]({"from": "abc"})
        await relay["skipped"]()
        self.assertEqual(
            received, [("sync", {"from": "abc"}), ("async", {"from": "abc"}), None]
        )

        signaling.unsubscribe("offer", async_handler)
        await relay["offer"]({"from": "def"})
        self.assertEqual(received[-1], ("sync", {"from": "def"}))
        self.assertEqual(len(received), 4)


class WebsocketSignalingTest(TestCase):
    async def start_relay(self) -> tuple[Any, list[Any], list[Any]]:
        """
        Start a relay which records the frames it receives and lets the test
        push frames to the client.
        """
        connections: list[Any] = []
        frames: list[Any] = []

        async def handler(websocket: Any) -> None:
            connections.append(websocket)
            async for data in websocket:
                frames.append(json.loads(data))

        server = await websockets.serve(handler, "127.0.0.1", 0)
        return server, connections, frames

    def relay_url(self, server: Any) -> str:
        port = list(server.sockets)[0].getsockname()[1]
        return f"ws://127.0.0.1:{port}"

    @asynctest
    async def test_exchange(self) -> None:
        server, connections, frames = await self.start_relay()
        signaling = WebsocketSignaling(self.relay_url(server))
        received: list[Any] = []
        disconnects: list[Any] = []
        signaling.subscribe("user:connect", received.append)
        signaling.subscribe(DISCONNECT, disconnects.append)

        await signaling.connect()
        await wait_for(lambda: len(connections) == 1)

        # client -> relay
        await signaling.send("skip")
        await signaling.send("ice-candidate", {"candidate": {}}, to="abc")
        await wait_for(lambda: len(frames) == 2)
        self.assertEqual(
            frames,
            [
                {"event": "skip", "data": None},
                {"event": "ice-candidate", "data": {"candidate": {}, "to": "abc"}},
            ],
        )

        # relay -> client, malformed frames are skipped
        with self.assertLogs("aioroulette.contrib.signaling", level="WARNING"):
            await connections[0].send("not json")
            await connections[0].send(json.dumps({"data": {}}))
            await connections[0].send(
                json.dumps({"event": "user:connect", "data": {"remoteId": "abc"}})
            )
            await wait_for(lambda: len(received) == 1)
        self.assertEqual(received, [{"remoteId": "abc"}])

        # closing locally is not reported as a disconnection
        await signaling.close()
        self.assertEqual(disconnects, [])

        with self.assertRaises(SignalingError):
            await signaling.send("skip")

        server.close()
        await server.wait_closed()

    @asynctest
    async def test_relay_closes(self) -> None:
        server, connections, frames = await self.start_relay()
        signaling = WebsocketSignaling(self.relay_url(server))
        disconnects: list[Any] = []
        signaling.subscribe(DISCONNECT, disconnects.append)

        await signaling.connect()
        await wait_for(lambda: len(connections) == 1)

        await connections[0].close()
        await wait_for(lambda: len(disconnects) == 1)
        self.assertEqual(disconnects, [None])

        await signaling.close()
        server.close()
        await server.wait_closed()

    @asynctest
    async def test_close_from_disconnect_handler(self) -> None:
        server, connections, frames = await self.start_relay()
        signaling = WebsocketSignaling(self.relay_url(server))
        closed = asyncio.Event()

        async def on_disconnect(payload: Any) -> None:
            await signaling.close()
            closed.set()

        signaling.subscribe(DISCONNECT, on_disconnect)
        await signaling.connect()
        await wait_for(lambda: len(connections) == 1)

        await connections[0].close()
        await asyncio.wait_for(closed.wait(), timeout=5)

        server.close()
        await server.wait_closed()

    @asynctest
    async def test_connect_error(self) -> None:
        server, connections, frames = await self.start_relay()
        url = self.relay_url(server)
        server.close()
        await server.wait_closed()

        signaling = WebsocketSignaling(url)
        with self.assertRaises(SignalingError):
            await signaling.connect()
