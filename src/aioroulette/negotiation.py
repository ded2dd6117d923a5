import logging

from aiortc import RTCSessionDescription

from .configuration import DEFAULT_AUDIO_MAX_BITRATE
from .events import ANSWER, NEGOTIATION_FINAL, NEGOTIATION_NEEDED, OFFER, USER_CONNECT
from .exceptions import InvalidStateError
from .rtcpeerconnection import SenderEncoding
from .sdp import pin_audio_parameters
from .session import PeerSession

logger = logging.getLogger(__name__)

LOCAL_NEGOTIATION = "negotiationneeded"

# signaling states in which each trigger may be handled
NEGOTIATION_GUARDS = {
    USER_CONNECT: ["stable"],
    OFFER: ["stable"],
    ANSWER: ["have-local-offer"],
    LOCAL_NEGOTIATION: ["stable"],
    # aiortc cannot roll back a local offer, so an offer crossing ours is refused
    NEGOTIATION_NEEDED: ["stable"],
    NEGOTIATION_FINAL: ["have-local-offer", "have-remote-offer"],
}


class NegotiationOrchestrator:
    """
    Produces, post-processes and commits session descriptions for a
    :class:`PeerSession`.

    Every operation takes the trigger it is handling and raises
    :class:`InvalidStateError` if the signaling state does not allow it,
    both on entry and immediately before each change to the connection.

    :param session: The :class:`PeerSession` to negotiate.
    :param audio_max_bitrate: The bitrate ceiling for the outbound audio
                              sender, in bits per second.
    """

    def __init__(
        self,
        session: PeerSession,
        audio_max_bitrate: int = DEFAULT_AUDIO_MAX_BITRATE,
    ) -> None:
        self.session = session
        self.audio_max_bitrate = audio_max_bitrate

    def allows(self, trigger: str) -> bool:
        return self.session.signaling_state in NEGOTIATION_GUARDS[trigger]

    def check(self, trigger: str) -> None:
        if not self.allows(trigger):
            raise InvalidStateError(
                f'Cannot handle "{trigger}" in signaling state '
                f'"{self.session.signaling_state}"'
            )

    async def create_offer(self, trigger: str) -> RTCSessionDescription:
        """
        Create an offer and commit it as the local description.

        The audio bitrate ceiling is applied each time an offer is produced.
        """
        connection = self.session.connection
        self.check(trigger)
        offer = await connection.createOffer()
        self.check(trigger)
        await connection.setLocalDescription(offer)
        self.set_audio_bandwidth()
        return connection.localDescription

    async def create_answer(
        self, trigger: str, remote: RTCSessionDescription
    ) -> RTCSessionDescription:
        """
        Commit the remote offer, then create an answer and commit it as the
        local description, which returns the connection to `"stable"`.
        """
        connection = self.session.connection
        self.check(trigger)
        await connection.setRemoteDescription(remote)
        answer = await connection.createAnswer()
        await connection.setLocalDescription(answer)
        return connection.localDescription

    async def commit_remote(
        self, trigger: str, description: RTCSessionDescription
    ) -> None:
        """
        Apply a description received from the remote peer.
        """
        self.check(trigger)
        await self.session.connection.setRemoteDescription(description)

    async def renegotiation_offer(self) -> RTCSessionDescription:
        """
        Create an offer renegotiating the session, with the audio section
        rewritten by :func:`aioroulette.sdp.pin_audio_parameters`.
        """
        offer = await self.create_offer(LOCAL_NEGOTIATION)
        return RTCSessionDescription(
            sdp=pin_audio_parameters(offer.sdp), type=offer.type
        )

    def set_audio_bandwidth(self) -> None:
        """
        Cap the bitrate of the outbound audio sender, if there is one.

        The ceiling is recorded in the sender's
        :class:`aioroulette.rtcpeerconnection.SenderParameters` for the
        application to inspect. It is not enforced: aiortc's Opus encoder
        runs at a fixed bitrate and reads no sender parameters.
        """
        connection = self.session.connection
        for sender in connection.getSenders():
            if sender.track is not None and sender.track.kind == "audio":
                parameters = connection.getSenderParameters(sender)
                parameters.encodings[0] = SenderEncoding(
                    maxBitrate=self.audio_max_bitrate
                )
                connection.setSenderParameters(sender, parameters)
                logger.debug(
                    "Audio bitrate capped at %d bps", self.audio_max_bitrate
                )
                return
