import enum
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from aiortc import MediaStreamTrack, RTCRtpSender

from .configuration import MediaConstraints
from .exceptions import InvalidStateError, MediaAcquisitionError
from .mediastreams import MediaStream
from .session import PeerSession

logger = logging.getLogger(__name__)


class MediaSource(Protocol):
    async def get_user_media(
        self, constraints: Optional[MediaConstraints] = None
    ) -> MediaStream: ...

    async def get_display_media(self) -> MediaStream: ...


class ScreenShareState(enum.Enum):
    CAMERA = "camera"
    SCREEN = "screen"


@dataclass
class MediaTrackSet:
    """
    The local and remote media of the participant.
    """

    local_primary: Optional[MediaStream] = None
    "The camera and microphone stream."
    local_substitute: Optional[MediaStream] = None
    "The screen capture stream, while the screen is being shared."
    remote: Optional[MediaStream] = None
    "The stream received from the current partner."

    @property
    def is_screen_sharing(self) -> bool:
        return self.local_substitute is not None

    @property
    def screen_share_state(self) -> ScreenShareState:
        if self.is_screen_sharing:
            return ScreenShareState.SCREEN
        return ScreenShareState.CAMERA

    def outbound_audio(self) -> Optional[MediaStreamTrack]:
        return _first(self.local_primary.getAudioTracks()) if self.local_primary else None

    def outbound_video(self) -> Optional[MediaStreamTrack]:
        """
        The video track to send: the screen capture if the screen is being
        shared, otherwise the camera.
        """
        stream = self.local_substitute or self.local_primary
        return _first(stream.getVideoTracks()) if stream else None


def _first(tracks: list[MediaStreamTrack]) -> Optional[MediaStreamTrack]:
    return tracks[0] if tracks else None


class MediaTrackCoordinator:
    """
    Keeps the senders of a :class:`PeerSession` in line with the local
    media, and the remote stream in line with its receivers.

    :param session: The :class:`PeerSession` whose senders are managed.
    :param track_set: The :class:`MediaTrackSet` shared with the controller.
    :param media_devices: The source of screen capture streams.
    """

    def __init__(
        self,
        session: PeerSession,
        track_set: MediaTrackSet,
        media_devices: MediaSource,
    ) -> None:
        self.session = session
        self.track_set = track_set
        self.media_devices = media_devices

        self.__toggling = False

    def attach_local_tracks(self) -> list[RTCRtpSender]:
        """
        Add the outbound video track, then the outbound audio track, to the
        connection. A track is not added if a sender already carries a track
        of the same kind, so calling this repeatedly adds nothing.

        :return: The senders which were created.
        """
        connection = self.session.connection
        if self.session.closed:
            return []

        added = []
        for track in [self.track_set.outbound_video(), self.track_set.outbound_audio()]:
            if track is None or self.__sender_for(track.kind) is not None:
                continue
            added.append(connection.addTrack(track))
            self.__log_debug("Attached local %s track %s", track.kind, track.id)
        return added

    def handle_track(self, track: MediaStreamTrack) -> MediaStream:
        """
        Record a track received from the remote peer.

        The remote stream is rebuilt from every receiver of the connection,
        so that audio and video arriving in separate events end up in the
        same stream.
        """
        self.__log_debug("Received remote %s track %s", track.kind, track.id)
        tracks = [
            receiver.track
            for receiver in self.session.connection.getReceivers()
            if receiver.track is not None
        ]
        if track not in tracks:
            tracks.append(track)
        self.track_set.remote = MediaStream(tracks)
        return self.track_set.remote

    async def toggle_screen_share(self) -> bool:
        """
        Switch the outbound video between the camera and a screen capture.

        :return: Whether an offer should be sent to the remote peer for the
                 change to take effect.
        :raises MediaAcquisitionError: if the screen could not be captured, in
                                       which case nothing was changed.
        :raises InvalidStateError: if a previous toggle is still in progress.
        """
        if self.__toggling:
            raise InvalidStateError("Screen share toggle already in progress")

        if self.track_set.is_screen_sharing:
            return self.__stop_screen_share()

        self.__toggling = True
        try:
            return await self.__start_screen_share()
        finally:
            self.__toggling = False

    def __renegotiation_wanted(self) -> bool:
        return (
            not self.session.closed and self.session.signaling_state == "stable"
        )

    def __sender_for(self, kind: str) -> Optional[RTCRtpSender]:
        for sender in self.session.connection.getSenders():
            if sender.track is not None and sender.track.kind == kind:
                return sender
        return None

    async def __start_screen_share(self) -> bool:
        stream = await self.media_devices.get_display_media()
        screen = _first(stream.getVideoTracks())
        if screen is None:
            stream.stop()
            raise MediaAcquisitionError("Screen capture produced no video track")

        self.track_set.local_substitute = stream
        self.__log_debug("Screen sharing started")
        if self.session.closed:
            return False

        sender = self.__sender_for("video")
        if sender is not None:
            sender.replaceTrack(screen)
            return self.__renegotiation_wanted()

        # a new sender makes the connection fire "negotiationneeded"
        self.session.connection.addTrack(screen)
        return False

    def __stop_screen_share(self) -> bool:
        substitute = self.track_set.local_substitute
        self.track_set.local_substitute = None
        camera = self.track_set.outbound_video()

        renegotiate = False
        sender = None if self.session.closed else self.__sender_for("video")
        if sender is not None and camera is not None:
            # swap before stopping, a sender gives up on a track that ended
            sender.replaceTrack(camera)
            renegotiate = self.__renegotiation_wanted()

        substitute.stop()
        self.__log_debug("Screen sharing stopped")
        return renegotiate

    def __log_debug(self, msg: str, *args: object) -> None:
        logger.debug(f"MediaTrackCoordinator(%s) {msg}", self.session.remote_id, *args)
