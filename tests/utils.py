import asyncio
import functools
import itertools
import logging
import os
import unittest
from collections.abc import Callable, Coroutine
from typing import Any, Optional, ParamSpec, TypeVar, cast

from aiortc import AudioStreamTrack, VideoStreamTrack

from aioroulette.configuration import MediaConstraints, RouletteConfiguration
from aioroulette.contrib.signaling import DISCONNECT, BaseSignaling
from aioroulette.events import (
    NEGOTIATION_DONE,
    NEGOTIATION_FINAL,
    PARTNER_DISCONNECTED,
    SKIP,
    SKIPPED,
    USER_CONNECT,
)
from aioroulette.exceptions import MediaAcquisitionError, SignalingError
from aioroulette.mediastreams import MediaStream

P = ParamSpec("P")
T = TypeVar("T")


def lf2crlf(x: str) -> str:
    return x.replace("\n", "\r\n")


def local_configuration() -> RouletteConfiguration:
    # no STUN server, host candidates only
    return RouletteConfiguration(iceServers=[])


class FakeMediaDevices:
    """
    Media devices producing aiortc's synthetic audio and video.
    """

    def __init__(self) -> None:
        self.display_media_calls = 0
        self.display_media_delay = 0.0
        self.fail_display_media = False
        self.fail_user_media = False
        self.user_media_calls = 0

    async def get_user_media(
        self, constraints: Optional[MediaConstraints] = None
    ) -> MediaStream:
        self.user_media_calls += 1
        if self.fail_user_media:
            raise MediaAcquisitionError("Permission denied")
        return MediaStream([VideoStreamTrack(), AudioStreamTrack()])

    async def get_display_media(self) -> MediaStream:
        self.display_media_calls += 1
        if self.display_media_delay:
            await asyncio.sleep(self.display_media_delay)
        if self.fail_display_media:
            raise MediaAcquisitionError("Permission denied")
        return MediaStream([VideoStreamTrack()])


class LoopbackSignaling(BaseSignaling):
    def __init__(self, relay: "LoopbackRelay", id: str) -> None:
        super().__init__()
        self.connected = False
        self.id = id
        self.relay = relay
        self.sent: list[tuple[str, Any]] = []

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        if self.connected:
            self.connected = False
            await self.relay.leave(self)

    async def deliver(self, event: str, payload: Any = None) -> None:
        await self._dispatch(event, payload)

    async def _emit(self, event: str, payload: Optional[dict[str, Any]]) -> None:
        if not self.connected:
            raise SignalingError(f'Could not send "{event}": not connected')
        self.sent.append((event, payload))
        await self.relay.route(self, event, payload)


class LoopbackRelay:
    """
    An in-memory relay which forwards addressed messages between channels
    the way the Socket.IO relay does.
    """

    def __init__(self) -> None:
        self.channels: dict[str, LoopbackSignaling] = {}
        self.held: dict[str, list[tuple[str, Any]]] = {}
        self.partners: dict[str, str] = {}
        self._counter = itertools.count(1)

    def channel(self) -> LoopbackSignaling:
        signaling = LoopbackSignaling(self, f"user-{next(self._counter)}")
        self.channels[signaling.id] = signaling
        return signaling

    async def pair(self, initiator: LoopbackSignaling, other: LoopbackSignaling) -> None:
        self.partners[initiator.id] = other.id
        self.partners[other.id] = initiator.id
        await initiator.deliver(USER_CONNECT, {"remoteId": other.id})

    async def drop(self, signaling: LoopbackSignaling) -> None:
        """
        Cut the connection of `signaling` as if the network went away.
        """
        signaling.connected = False
        await self.leave(signaling)

    def hold(self, signaling: LoopbackSignaling) -> None:
        """
        Keep the messages for `signaling` until :meth:`release` is called.
        """
        self.held.setdefault(signaling.id, [])

    async def release(self, signaling: LoopbackSignaling) -> None:
        for event, payload in self.held.pop(signaling.id, []):
            await signaling.deliver(event, payload)

    async def leave(self, signaling: LoopbackSignaling) -> None:
        partner = self.__unpair(signaling)
        if partner is not None:
            await partner.deliver(PARTNER_DISCONNECTED)
        await signaling.deliver(DISCONNECT, "client disconnect")

    async def route(
        self, sender: LoopbackSignaling, event: str, payload: Optional[dict[str, Any]]
    ) -> None:
        if event == SKIP:
            partner = self.__unpair(sender)
            if partner is not None:
                await partner.deliver(SKIPPED)
            return

        payload = dict(payload or {})
        recipient = self.channels.get(payload.pop("to", None))
        if recipient is None or not recipient.connected:
            return
        payload["from"] = sender.id
        if event == NEGOTIATION_DONE:
            event = NEGOTIATION_FINAL

        if recipient.id in self.held:
            self.held[recipient.id].append((event, payload))
        else:
            await recipient.deliver(event, payload)

    def __unpair(self, signaling: LoopbackSignaling) -> Optional[LoopbackSignaling]:
        partner_id = self.partners.pop(signaling.id, None)
        if partner_id is None:
            return None
        self.partners.pop(partner_id, None)
        return self.channels.get(partner_id)


class TestCase(unittest.TestCase):
    def ensureIsInstance(self, obj: object, cls: type[T]) -> T:
        self.assertIsInstance(obj, cls)
        return cast(T, obj)


def asynctest(
    coro: Callable[P, Coroutine[None, None, None]],
) -> Callable[P, None]:
    @functools.wraps(coro)
    def wrap(*args: P.args, **kwargs: P.kwargs) -> None:
        asyncio.run(coro(*args, **kwargs))

    return wrap


async def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """
    Wait until `predicate` returns `True`.
    """
    loop = asyncio.get_event_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Timed out waiting for condition")
        await asyncio.sleep(0.01)


if os.environ.get("AIOROULETTE_DEBUG"):
    logging.basicConfig(level=logging.DEBUG)
