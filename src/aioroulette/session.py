import logging
from collections.abc import Callable
from typing import Any, Optional

from aiortc import RTCConfiguration

from .rtcpeerconnection import PeerConnection

logger = logging.getLogger(__name__)

SESSION_EVENTS = ["icecandidate", "track", "negotiationneeded"]


class PeerSession:
    """
    The single live or pending connection to one remote participant.

    A :class:`PeerSession` is never reused: once :meth:`close` has been
    called a new session must be created for the next pairing.

    :attr:`messages` belongs to the application, for instance to keep the
    chat history with the current partner. It is emptied on close so that
    nothing carries over to the next pairing.

    :param configuration: The :class:`aiortc.RTCConfiguration` for the
                          underlying :class:`PeerConnection`.
    """

    def __init__(self, configuration: Optional[RTCConfiguration] = None) -> None:
        self.connection = PeerConnection(configuration)
        self.initiator = False
        self.messages: list[Any] = []
        self.remote_id: Optional[str] = None

        self.__closed = False
        self.__handlers: dict[str, Callable[..., Any]] = {}

    def __repr__(self) -> str:
        return f"PeerSession({self.remote_id}, {self.signaling_state})"

    @property
    def closed(self) -> bool:
        return self.__closed

    @property
    def signaling_state(self) -> str:
        """
        The signaling state of the connection, one of `"stable"`,
        `"have-local-offer"`, `"have-remote-offer"` or `"closed"`.
        """
        return self.connection.signalingState

    def subscribe(self, **handlers: Callable[..., Any]) -> None:
        """
        Register the connection event handlers, keyed by event name.
        """
        for event, handler in handlers.items():
            if event not in SESSION_EVENTS:
                raise ValueError(f'Unsupported session event "{event}"')
            self.connection.on(event, handler)
            self.__handlers[event] = handler

    def unsubscribe(self) -> None:
        for event, handler in self.__handlers.items():
            try:
                self.connection.remove_listener(event, handler)
            except KeyError:
                # the connection drops its listeners when it closes
                pass
        self.__handlers.clear()

    async def close(self) -> None:
        """
        Stop the outbound tracks, detach the event handlers and close the
        connection, which stops every transceiver.
        """
        if self.__closed:
            return
        self.__closed = True
        self.__log_debug("close()")

        for sender in self.connection.getSenders():
            if sender.track is not None:
                sender.track.stop()

        self.unsubscribe()

        if self.connection.signalingState != "closed":
            await self.connection.close()

        self.messages.clear()

    def __log_debug(self, msg: str, *args: object) -> None:
        logger.debug(f"PeerSession(%s) {msg}", self.remote_id, *args)
