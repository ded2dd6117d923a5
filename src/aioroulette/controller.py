import asyncio
import functools
import logging
from typing import Any, Optional, Union

import aiortc.exceptions
from aiortc import MediaStreamTrack, RTCIceCandidate
from pyee.asyncio import AsyncIOEventEmitter

from .configuration import RouletteConfiguration
from .contrib.signaling import DISCONNECT, BaseSignaling
from .events import (
    ANSWER,
    INBOUND_EVENTS,
    NEGOTIATION_FINAL,
    NEGOTIATION_NEEDED,
    OFFER,
    PARTNER_DISCONNECTED,
    SKIP,
    SKIPPED,
    USER_CONNECT,
    Answer,
    IceCandidate,
    NegotiationDone,
    NegotiationNeeded,
    Offer,
    SignalingMessage,
    UserJoined,
    message_from_payload,
    message_to_payload,
)
from .exceptions import InvalidStateError, MediaAcquisitionError, SignalingError
from .mediastreams import MediaStream
from .negotiation import LOCAL_NEGOTIATION, NegotiationOrchestrator
from .session import PeerSession
from .tracks import MediaSource, MediaTrackCoordinator, MediaTrackSet

logger = logging.getLogger(__name__)

# errors which make a negotiation step be discarded
NEGOTIATION_ERRORS = (
    InvalidStateError,
    aiortc.exceptions.InvalidAccessError,
    aiortc.exceptions.InvalidStateError,
    ValueError,
)

# messages which only make sense within an established pairing
PAIRED_MESSAGES = (Answer, NegotiationNeeded, NegotiationDone)

_QueueItem = Optional[tuple[Optional[PeerSession], Union[SignalingMessage, str]]]


class SessionController(AsyncIOEventEmitter):
    """
    Pairs the local participant with one remote participant at a time and
    keeps the media session with them negotiated.

    The controller emits the following events:

    - `"localstream"` with the camera and microphone :class:`MediaStream`.
    - `"remotestream"` with the stream received from the partner, or `None`
      once the partner is gone.
    - `"partnerchange"` with the identifier of the new partner, or `None`.
    - `"screenshare"` with whether the screen is being shared.
    - `"error"` with a :class:`aioroulette.exceptions.RouletteError`.

    :param signaling: The :class:`aioroulette.contrib.signaling.BaseSignaling`
                      channel to the relay.
    :param media_devices: The source of local media, usually a
                          :class:`aioroulette.contrib.media.MediaDevices`.
    :param configuration: An optional :class:`RouletteConfiguration`.
    """

    def __init__(
        self,
        signaling: BaseSignaling,
        media_devices: MediaSource,
        configuration: Optional[RouletteConfiguration] = None,
    ) -> None:
        super().__init__()
        self.__configuration = configuration or RouletteConfiguration()
        self.__coordinator: Optional[MediaTrackCoordinator] = None
        self.__dispatcher: Optional[asyncio.Task] = None
        self.__error: Optional[Exception] = None
        self.__media_devices = media_devices
        self.__orchestrator: Optional[NegotiationOrchestrator] = None
        self.__queue: Optional[asyncio.Queue[_QueueItem]] = None
        self.__ready: Optional[asyncio.Event] = None
        self.__session: Optional[PeerSession] = None
        self.__signaling = signaling
        self.__state = "new"
        self.__subscriptions: list[tuple[str, Any]] = []
        self.__teardown_lock: Optional[asyncio.Lock] = None
        self.__toggling = False
        self.__tracks = MediaTrackSet()

    @property
    def error(self) -> Optional[Exception]:
        """
        The last error which was reported.
        """
        return self.__error

    @property
    def is_screen_sharing(self) -> bool:
        return self.__tracks.is_screen_sharing

    @property
    def local_stream(self) -> Optional[MediaStream]:
        return self.__tracks.local_primary

    @property
    def messages(self) -> list[Any]:
        """
        The application-owned history of the current pairing, emptied when the
        partner changes.
        """
        return self.__session.messages if self.__session is not None else []

    @property
    def remote_id(self) -> Optional[str]:
        return self.__session.remote_id if self.__session is not None else None

    @property
    def remote_stream(self) -> Optional[MediaStream]:
        return self.__tracks.remote

    @property
    def session(self) -> Optional[PeerSession]:
        """
        The current :class:`PeerSession`.
        """
        return self.__session

    @property
    def state(self) -> str:
        """
        One of `"new"`, `"running"`, `"failed"` or `"closed"`.
        """
        return self.__state

    async def start(self) -> None:
        """
        Acquire the camera and microphone, then connect to the relay and wait
        to be paired.

        If local media cannot be acquired or the relay cannot be reached, the
        controller moves to the `"failed"` state and emits `"error"`.
        """
        if self.__state not in ["new", "closed"]:
            raise InvalidStateError(f'Cannot start in state "{self.__state}"')

        self.__error = None
        self.__queue = asyncio.Queue()
        self.__ready = asyncio.Event()
        self.__ready.set()
        self.__teardown_lock = asyncio.Lock()

        if not await self.__acquire_local_media():
            return

        self.__create_session()
        for event in INBOUND_EVENTS:
            self.__subscribe(event, functools.partial(self.__on_channel_message, event))
        self.__subscribe(DISCONNECT, self.__on_channel_lost)

        self.__dispatcher = asyncio.ensure_future(self.__run_dispatcher())
        self.__state = "running"

        try:
            await self.__signaling.connect()
        except SignalingError as exc:
            self.__fail(exc)
            await self.__shutdown()

    async def exit(self) -> None:
        """
        Leave: stop all local media, disconnect from the relay and close the
        current session.
        """
        if self.__teardown_lock is None:
            return
        async with self.__teardown_lock:
            await self.__shutdown()

    async def skip(self) -> None:
        """
        Leave the current partner and ask the relay for a new one.
        """
        if self.__state != "running":
            raise InvalidStateError(f'Cannot skip in state "{self.__state}"')
        await self.__teardown(notify=True)

    async def toggle_screen_share(self) -> bool:
        """
        Switch the outbound video between the camera and the screen.

        If the screen cannot be captured, `"error"` is emitted and the camera
        keeps being sent.

        :return: Whether the screen is now being shared.
        :raises InvalidStateError: if the controller is not running, or a
                                   previous toggle is still in progress.
        """
        if self.__state != "running":
            raise InvalidStateError(
                f'Cannot share the screen in state "{self.__state}"'
            )

        if self.__toggling:
            raise InvalidStateError("Screen share toggle already in progress")

        session = self.__session
        self.__toggling = True
        try:
            renegotiate = await self.__coordinator.toggle_screen_share()
        except MediaAcquisitionError as exc:
            logger.warning("Screen sharing failed: %s", exc)
            self.__report(exc)
            return self.is_screen_sharing
        finally:
            self.__toggling = False

        self.emit("screenshare", self.is_screen_sharing)
        if renegotiate and session is self.__session and session.remote_id:
            self.__queue.put_nowait((session, LOCAL_NEGOTIATION))
        return self.is_screen_sharing

    async def wait_idle(self) -> None:
        """
        Wait until every message received so far has been handled.
        """
        if self.__queue is not None:
            await self.__queue.join()

    async def __acquire_local_media(self) -> bool:
        try:
            stream = await self.__media_devices.get_user_media(
                self.__configuration.constraints
            )
        except MediaAcquisitionError as exc:
            logger.error("Could not acquire local media: %s", exc)
            self.__fail(exc)
            return False

        self.__tracks.local_primary = stream
        self.emit("localstream", stream)
        return True

    def __create_session(self) -> None:
        session = PeerSession(self.__configuration.rtc_configuration())
        session.subscribe(
            icecandidate=functools.partial(self.__on_icecandidate, session),
            negotiationneeded=functools.partial(self.__on_negotiationneeded, session),
            track=functools.partial(self.__on_track, session),
        )
        self.__coordinator = MediaTrackCoordinator(
            session, self.__tracks, self.__media_devices
        )
        self.__orchestrator = NegotiationOrchestrator(
            session, audio_max_bitrate=self.__configuration.audioMaxBitrate
        )
        self.__session = session

    def __fail(self, exc: Exception) -> None:
        self.__state = "failed"
        self.__report(exc)

    async def __handle(self, session: PeerSession, message: Union[SignalingMessage, str]) -> None:
        coordinator = self.__coordinator
        orchestrator = self.__orchestrator

        if message == LOCAL_NEGOTIATION:
            if session.remote_id is None:
                self.__log_debug("No partner yet, the first offer will carry the tracks")
                return
            offer = await orchestrator.renegotiation_offer()
            await self.__send(session, NegotiationNeeded(offer, session.remote_id))

        elif isinstance(message, UserJoined):
            orchestrator.check(USER_CONNECT)
            if session.remote_id is not None:
                raise InvalidStateError(f'Already paired with "{session.remote_id}"')
            self.__set_partner(session, message.remote_id)
            session.initiator = True
            coordinator.attach_local_tracks()
            offer = await orchestrator.create_offer(USER_CONNECT)
            await self.__send(session, Offer(offer, session.remote_id))

        elif isinstance(message, Offer):
            orchestrator.check(OFFER)
            if session.remote_id is None and message.remote_id is not None:
                self.__set_partner(session, message.remote_id)
            answer = await orchestrator.create_answer(OFFER, message.description)
            await self.__send(session, Answer(answer, session.remote_id))
            coordinator.attach_local_tracks()
            orchestrator.set_audio_bandwidth()

        elif isinstance(message, Answer):
            await orchestrator.commit_remote(ANSWER, message.description)
            coordinator.attach_local_tracks()

        elif isinstance(message, NegotiationNeeded):
            answer = await orchestrator.create_answer(
                NEGOTIATION_NEEDED, message.description
            )
            await self.__send(session, NegotiationDone(answer, session.remote_id))

        elif isinstance(message, NegotiationDone):
            if session.signaling_state == "stable":
                self.__log_debug("Negotiation already converged")
                return
            await orchestrator.commit_remote(NEGOTIATION_FINAL, message.description)
            coordinator.attach_local_tracks()

        elif isinstance(message, IceCandidate):
            try:
                await session.connection.addIceCandidate(message.candidate)
            except NEGOTIATION_ERRORS as exc:
                logger.warning("Failed to add ICE candidate: %s", exc)

    async def __handle_remote_teardown(self, event: str) -> None:
        if self.__state != "running":
            return
        self.__log_debug("Partner left (%s)", event)
        await self.__teardown(notify=False)

    def __log_debug(self, msg: str, *args: object) -> None:
        logger.debug(f"SessionController(%s) {msg}", self.remote_id, *args)

    def __on_channel_message(self, event: str, payload: Any) -> Any:
        if event in [SKIPPED, PARTNER_DISCONNECTED]:
            return self.__handle_remote_teardown(event)

        try:
            message = message_from_payload(event, payload)
        except ValueError as exc:
            logger.warning("Discarding message: %s", exc)
            return None
        self.__queue.put_nowait((self.__session, message))
        return None

    async def __on_channel_lost(self, payload: Any = None) -> None:
        if self.__state != "running":
            return
        logger.warning("Signaling channel lost")
        self.__fail(SignalingError("Signaling channel lost"))
        await self.exit()

    async def __on_icecandidate(
        self, session: PeerSession, candidate: RTCIceCandidate
    ) -> None:
        if session is not self.__session or session.closed:
            return
        try:
            await self.__send(session, IceCandidate(candidate, session.remote_id))
        except SignalingError as exc:
            logger.warning("Failed to send ICE candidate: %s", exc)

    def __on_negotiationneeded(self, session: PeerSession) -> None:
        if session is self.__session and not session.closed:
            self.__queue.put_nowait((session, LOCAL_NEGOTIATION))

    def __on_track(self, session: PeerSession, track: MediaStreamTrack) -> None:
        if session is not self.__session or session.closed:
            return
        stream = self.__coordinator.handle_track(track)
        self.emit("remotestream", stream)

    async def __refresh_local_media(self) -> bool:
        substitute = self.__tracks.local_substitute
        if substitute is not None and not substitute.active:
            self.__tracks.local_substitute = None
            self.emit("screenshare", False)

        primary = self.__tracks.local_primary
        if primary is not None and all(
            track.readyState == "live" for track in primary.getTracks()
        ):
            return True
        if primary is not None:
            primary.stop()
        self.__tracks.local_primary = None
        return await self.__acquire_local_media()

    def __report(self, exc: Exception) -> None:
        self.__error = exc
        # an "error" event without listeners would raise
        if self.listeners("error"):
            self.emit("error", exc)

    async def __run_dispatcher(self) -> None:
        while True:
            item = await self.__queue.get()
            try:
                if item is None:
                    return
                await self.__ready.wait()

                # items are bound to the session which was current on arrival
                session, message = item
                if session is None or session is not self.__session or session.closed:
                    self.__log_debug("Discarding %r for a closed session", message)
                    continue

                remote_id = getattr(message, "remote_id", None)
                if session.remote_id is None and isinstance(message, PAIRED_MESSAGES):
                    logger.warning(
                        'Discarding "%s" from "%s", no partner yet',
                        message.event,
                        remote_id,
                    )
                    continue
                if (
                    not isinstance(message, UserJoined)
                    and remote_id is not None
                    and session.remote_id is not None
                    and remote_id != session.remote_id
                ):
                    logger.warning(
                        'Discarding "%s" from "%s", partner is "%s"',
                        message.event,
                        remote_id,
                        session.remote_id,
                    )
                    continue

                try:
                    await self.__handle(session, message)
                except NEGOTIATION_ERRORS as exc:
                    if session.closed:
                        self.__log_debug("Negotiation interrupted: %s", exc)
                    else:
                        logger.warning("Discarding %r: %s", message, exc)
                except SignalingError as exc:
                    logger.error("Could not reach the relay: %s", exc)
            finally:
                self.__queue.task_done()

    async def __send(self, session: PeerSession, message: SignalingMessage) -> None:
        if session.closed:
            return
        event, payload = message_to_payload(message)
        await self.__signaling.send(event, payload)

    def __set_partner(self, session: PeerSession, remote_id: Optional[str]) -> None:
        session.remote_id = remote_id
        self.__log_debug("Paired")
        self.emit("partnerchange", remote_id)

    async def __shutdown(self) -> None:
        if (
            self.__dispatcher is None
            and self.__session is None
            and self.__tracks.local_primary is None
        ):
            return
        if self.__state != "failed":
            self.__state = "closed"

        for event, handler in self.__subscriptions:
            self.__signaling.unsubscribe(event, handler)
        self.__subscriptions.clear()

        had_partner = self.remote_id is not None
        if self.__session is not None:
            await self.__session.close()
            self.__session = None
            self.__coordinator = None
            self.__orchestrator = None

        if self.__dispatcher is not None:
            self.__ready.set()
            self.__queue.put_nowait(None)
            await self.__dispatcher
            self.__dispatcher = None

        for stream in [self.__tracks.local_substitute, self.__tracks.local_primary]:
            if stream is not None:
                stream.stop()
        was_sharing = self.__tracks.is_screen_sharing
        self.__tracks = MediaTrackSet()

        await self.__signaling.close()

        if was_sharing:
            self.emit("screenshare", False)
        if had_partner:
            self.emit("partnerchange", None)
        self.emit("remotestream", None)
        self.emit("localstream", None)

    def __subscribe(self, event: str, handler: Any) -> None:
        self.__signaling.subscribe(event, handler)
        self.__subscriptions.append((event, handler))

    async def __teardown(self, notify: bool) -> None:
        async with self.__teardown_lock:
            if self.__state != "running":
                return

            session = self.__session
            had_partner = session.remote_id is not None
            self.__log_debug("Tearing down session")

            self.__ready.clear()
            try:
                await session.close()
                self.__tracks.remote = None
                if not await self.__refresh_local_media():
                    self.__ready.set()
                    await self.__shutdown()
                    return
                self.__create_session()
            finally:
                self.__ready.set()

            if had_partner:
                self.emit("partnerchange", None)
            self.emit("remotestream", None)

            if notify:
                try:
                    await self.__signaling.send(SKIP)
                except SignalingError as exc:
                    logger.warning("Could not send skip: %s", exc)
