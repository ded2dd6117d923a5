# ruff: noqa: F401
import logging

from .configuration import AudioConstraints, MediaConstraints, RouletteConfiguration
from .controller import SessionController
from .events import (
    Answer,
    IceCandidate,
    NegotiationDone,
    NegotiationNeeded,
    Offer,
    PartnerDisconnected,
    SignalingMessage,
    Skip,
    Skipped,
    UserJoined,
)
from .exceptions import (
    InvalidStateError,
    MediaAcquisitionError,
    RouletteError,
    SignalingError,
)
from .mediastreams import MediaStream
from .negotiation import NegotiationOrchestrator
from .rtcpeerconnection import PeerConnection, SenderEncoding, SenderParameters
from .session import PeerSession
from .tracks import MediaTrackCoordinator, MediaTrackSet, ScreenShareState

__version__ = "0.1.0"

# Set default logging handler to avoid "No handler found" warnings.
logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "Answer",
    "AudioConstraints",
    "IceCandidate",
    "InvalidStateError",
    "MediaAcquisitionError",
    "MediaConstraints",
    "MediaStream",
    "MediaTrackCoordinator",
    "MediaTrackSet",
    "NegotiationDone",
    "NegotiationNeeded",
    "NegotiationOrchestrator",
    "Offer",
    "PartnerDisconnected",
    "PeerConnection",
    "PeerSession",
    "RouletteConfiguration",
    "RouletteError",
    "ScreenShareState",
    "SenderEncoding",
    "SenderParameters",
    "SessionController",
    "SignalingError",
    "SignalingMessage",
    "Skip",
    "Skipped",
    "UserJoined",
]
