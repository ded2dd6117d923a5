from dataclasses import dataclass
from typing import Any, ClassVar, Optional, Union

from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

USER_CONNECT = "user:connect"
OFFER = "offer"
ANSWER = "answer"
NEGOTIATION_NEEDED = "peer:nego:needed"
NEGOTIATION_DONE = "peer:nego:done"
NEGOTIATION_FINAL = "peer:nego:final"
ICE_CANDIDATE = "ice-candidate"
SKIP = "skip"
SKIPPED = "skipped"
PARTNER_DISCONNECTED = "partnerDisconnected"

INBOUND_EVENTS = [
    USER_CONNECT,
    OFFER,
    ANSWER,
    NEGOTIATION_NEEDED,
    NEGOTIATION_FINAL,
    ICE_CANDIDATE,
    SKIPPED,
    PARTNER_DISCONNECTED,
]


@dataclass
class UserJoined:
    """
    The relay paired us with `remote_id` and we are the initiator.
    """

    event: ClassVar[str] = USER_CONNECT
    remote_id: str


@dataclass
class Offer:
    event: ClassVar[str] = OFFER
    description: RTCSessionDescription
    remote_id: Optional[str] = None


@dataclass
class Answer:
    event: ClassVar[str] = ANSWER
    description: RTCSessionDescription
    remote_id: Optional[str] = None


@dataclass
class NegotiationNeeded:
    """
    An offer renegotiating an established session.
    """

    event: ClassVar[str] = NEGOTIATION_NEEDED
    description: RTCSessionDescription
    remote_id: Optional[str] = None


@dataclass
class NegotiationDone:
    """
    The answer to a :class:`NegotiationNeeded` offer.

    It is sent as `peer:nego:done` and the relay delivers it as
    `peer:nego:final`.
    """

    event: ClassVar[str] = NEGOTIATION_DONE
    description: RTCSessionDescription
    remote_id: Optional[str] = None


@dataclass
class IceCandidate:
    event: ClassVar[str] = ICE_CANDIDATE
    candidate: Optional[RTCIceCandidate]
    "The candidate, or `None` to signal end-of-candidates."
    remote_id: Optional[str] = None


@dataclass
class Skip:
    event: ClassVar[str] = SKIP


@dataclass
class Skipped:
    event: ClassVar[str] = SKIPPED


@dataclass
class PartnerDisconnected:
    event: ClassVar[str] = PARTNER_DISCONNECTED


SignalingMessage = Union[
    UserJoined,
    Offer,
    Answer,
    NegotiationNeeded,
    NegotiationDone,
    IceCandidate,
    Skip,
    Skipped,
    PartnerDisconnected,
]

_DESCRIPTION_MESSAGES: dict[str, tuple[type, str]] = {
    OFFER: (Offer, "offer"),
    ANSWER: (Answer, "answer"),
    NEGOTIATION_NEEDED: (NegotiationNeeded, "offer"),
    NEGOTIATION_DONE: (NegotiationDone, "answer"),
    NEGOTIATION_FINAL: (NegotiationDone, "answer"),
}


def description_from_dict(data: dict[str, Any]) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=data["sdp"], type=data["type"])


def description_to_dict(description: RTCSessionDescription) -> dict[str, str]:
    return {"sdp": description.sdp, "type": description.type}


def candidate_from_dict(data: Optional[dict[str, Any]]) -> Optional[RTCIceCandidate]:
    if not data or not data.get("candidate"):
        return None
    candidate = candidate_from_sdp(data["candidate"].split(":", 1)[1])
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


def candidate_to_dict(candidate: Optional[RTCIceCandidate]) -> dict[str, Any]:
    if candidate is None:
        return {"candidate": "", "sdpMid": None, "sdpMLineIndex": None}
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def message_from_payload(event: str, payload: Any) -> SignalingMessage:
    """
    Decode a message received from the relay.

    :raises ValueError: if the event is unknown or the payload is malformed.
    """
    try:
        if event == USER_CONNECT:
            if isinstance(payload, dict):
                payload = payload["remoteId"]
            if not isinstance(payload, str) or not payload:
                raise ValueError("missing remote identifier")
            return UserJoined(remote_id=payload)
        elif event in _DESCRIPTION_MESSAGES:
            cls, key = _DESCRIPTION_MESSAGES[event]
            return cls(
                description=description_from_dict(payload[key]),
                remote_id=payload.get("from"),
            )
        elif event == ICE_CANDIDATE:
            return IceCandidate(
                candidate=candidate_from_dict(payload["candidate"]),
                remote_id=payload.get("from"),
            )
        elif event == SKIP:
            return Skip()
        elif event == SKIPPED:
            return Skipped()
        elif event == PARTNER_DISCONNECTED:
            return PartnerDisconnected()
    except (AssertionError, IndexError, KeyError, TypeError, AttributeError) as exc:
        raise ValueError(f'Malformed "{event}" payload: {exc!r}') from exc
    raise ValueError(f'Unknown signaling event "{event}"')


def message_to_payload(
    message: SignalingMessage,
) -> tuple[str, Optional[dict[str, Any]]]:
    """
    Encode a message for the relay, returning the event name and payload.
    """
    if isinstance(message, UserJoined):
        return message.event, {"remoteId": message.remote_id}
    elif isinstance(message, (Offer, Answer, NegotiationNeeded, NegotiationDone)):
        key = message.description.type
        return message.event, {
            key: description_to_dict(message.description),
            "to": message.remote_id,
        }
    elif isinstance(message, IceCandidate):
        return message.event, {
            "candidate": candidate_to_dict(message.candidate),
            "to": message.remote_id,
        }
    else:
        return message.event, None
