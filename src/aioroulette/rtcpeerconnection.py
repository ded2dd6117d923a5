import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional, Union

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceCandidate,
    RTCPeerConnection,
    RTCRtpSender,
    RTCRtpTransceiver,
    RTCSessionDescription,
)
from aiortc import sdp
from aiortc.sdp import candidate_to_sdp

logger = logging.getLogger(__name__)


@dataclass
class SenderEncoding:
    """
    The :class:`SenderEncoding` dictionary describes limits requested for
    the media sent by an :class:`aiortc.RTCRtpSender`. They are stored
    only, aiortc's encoders do not read them.
    """

    maxBitrate: Optional[int] = None
    "The maximum bitrate in bits per second, or `None` for no limit."


@dataclass
class SenderParameters:
    encodings: list[SenderEncoding] = field(
        default_factory=lambda: [SenderEncoding()]
    )


class PeerConnection(RTCPeerConnection):
    """
    An :class:`aiortc.RTCPeerConnection` which behaves like its browser
    counterpart in the areas the negotiation engine depends on.

    - A `"negotiationneeded"` event is fired once the connection is stable,
      with no description being created or applied, after tracks or
      transceivers were added.
    - An `"icecandidate"` event is fired for each local candidate once it has
      been gathered.
    - Remote candidates received before a remote description are kept and
      applied once the remote description is set.
    - Encoding parameters can be stored for each sender.

    :param configuration: An optional :class:`aiortc.RTCConfiguration`.
    """

    def __init__(self, configuration: Optional[RTCConfiguration] = None) -> None:
        super().__init__(configuration)
        self.__id = str(uuid.uuid4())
        self.__negotiationNeeded = False
        self.__negotiationScheduled = False
        self.__operations = 0
        self.__pendingCandidates: list[Optional[RTCIceCandidate]] = []
        self.__senderParameters: dict[RTCRtpSender, SenderParameters] = {}
        self.__sentCandidates: set[str] = set()

    @property
    def pendingCandidates(self) -> list[Optional[RTCIceCandidate]]:
        """
        Remote candidates waiting for a remote description.
        """
        return list(self.__pendingCandidates)

    async def addIceCandidate(self, candidate: Optional[RTCIceCandidate]) -> None:
        if self.signalingState == "closed":
            self.__log_debug("addIceCandidate() ignored, connection is closed")
            return

        if self.remoteDescription is None:
            self.__log_debug("addIceCandidate() deferred until remote description")
            self.__pendingCandidates.append(candidate)
            return

        await super().addIceCandidate(candidate)

    def addTrack(self, track: MediaStreamTrack) -> RTCRtpSender:
        sender = super().addTrack(track)
        self.__updateNegotiationNeeded()
        return sender

    async def createAnswer(self) -> RTCSessionDescription:
        self.__operations += 1
        try:
            return await super().createAnswer()
        finally:
            self.__operations -= 1

    async def createOffer(self) -> RTCSessionDescription:
        self.__operations += 1
        try:
            return await super().createOffer()
        finally:
            self.__operations -= 1

    def addTransceiver(
        self, trackOrKind: Union[str, MediaStreamTrack], direction: str = "sendrecv"
    ) -> RTCRtpTransceiver:
        transceiver = super().addTransceiver(trackOrKind, direction=direction)
        self.__updateNegotiationNeeded()
        return transceiver

    def getSenderParameters(self, sender: RTCRtpSender) -> SenderParameters:
        """
        Return a copy of the encoding parameters stored for `sender`.
        """
        return copy.deepcopy(
            self.__senderParameters.get(sender, SenderParameters())
        )

    def setSenderParameters(
        self, sender: RTCRtpSender, parameters: SenderParameters
    ) -> None:
        """
        Store the encoding parameters for `sender`.
        """
        if sender not in self.getSenders():
            raise ValueError("Sender does not belong to this connection")
        self.__senderParameters[sender] = copy.deepcopy(parameters)

    async def setLocalDescription(
        self, sessionDescription: Optional[RTCSessionDescription] = None
    ) -> None:
        if sessionDescription is None:
            offering = self.signalingState != "have-remote-offer"
        else:
            offering = sessionDescription.type == "offer"

        # the offer will carry every track added so far
        if offering:
            self.__negotiationNeeded = False

        self.__operations += 1
        try:
            await super().setLocalDescription(sessionDescription)
        finally:
            self.__operations -= 1

        self.__emitLocalCandidates()
        self.__checkNegotiationNeeded()

    async def setRemoteDescription(
        self, sessionDescription: RTCSessionDescription
    ) -> None:
        self.__operations += 1
        try:
            await super().setRemoteDescription(sessionDescription)

            pending, self.__pendingCandidates = self.__pendingCandidates, []
            for candidate in pending:
                try:
                    await super().addIceCandidate(candidate)
                except ValueError as exc:
                    logger.warning(
                        "PeerConnection(%s) Failed to add ICE candidate: %s",
                        self.__id,
                        exc,
                    )
        finally:
            self.__operations -= 1

        self.__checkNegotiationNeeded()

    def __checkNegotiationNeeded(self) -> None:
        if self.__negotiationNeeded and self.__isIdle():
            self.__scheduleNegotiationNeeded()

    def __emitLocalCandidates(self) -> None:
        description = self.localDescription
        if description is None:
            return

        parsed = sdp.SessionDescription.parse(description.sdp)
        for index, media in enumerate(parsed.media):
            for candidate in media.ice_candidates:
                key = candidate_to_sdp(candidate)
                if key in self.__sentCandidates:
                    continue
                self.__sentCandidates.add(key)
                candidate.sdpMid = media.rtp.muxId
                candidate.sdpMLineIndex = index
                self.emit("icecandidate", candidate)

    def __fireNegotiationNeeded(self) -> None:
        self.__negotiationScheduled = False
        if self.__negotiationNeeded and self.__isIdle():
            self.__negotiationNeeded = False
            self.__log_debug("negotiationneeded")
            self.emit("negotiationneeded")

    def __isIdle(self) -> bool:
        # negotiation waits for pending operations and a stable state
        return self.__operations == 0 and self.signalingState == "stable"

    def __log_debug(self, msg: str, *args: object) -> None:
        logger.debug(f"PeerConnection(%s) {msg}", self.__id, *args)

    def __scheduleNegotiationNeeded(self) -> None:
        if not self.__negotiationScheduled:
            self.__negotiationScheduled = True
            asyncio.get_event_loop().call_soon(self.__fireNegotiationNeeded)

    def __updateNegotiationNeeded(self) -> None:
        if self.signalingState == "closed":
            return
        self.__negotiationNeeded = True
        self.__scheduleNegotiationNeeded()
