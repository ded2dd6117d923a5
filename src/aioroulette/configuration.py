from dataclasses import dataclass, field
from typing import Optional

from aiortc import RTCConfiguration, RTCIceServer

DEFAULT_AUDIO_MAX_BITRATE = 128000
DEFAULT_ICE_SERVERS = ["stun:stun.l.google.com:19302"]


@dataclass
class AudioConstraints:
    """
    The :class:`AudioConstraints` dictionary describes how the microphone
    should be captured.
    """

    echoCancellation: bool = True
    noiseSuppression: bool = True
    autoGainControl: bool = True
    sampleRate: int = 48000
    "The capture sample rate in Hz."
    sampleSize: int = 16
    "The sample size in bits."
    channelCount: int = 2
    "The number of channels, 2 for stereo."


@dataclass
class MediaConstraints:
    """
    The :class:`MediaConstraints` dictionary is passed to
    :meth:`aioroulette.contrib.media.MediaDevices.get_user_media`.
    """

    audio: Optional[AudioConstraints] = field(default_factory=AudioConstraints)
    "The audio constraints, or `None` to capture no audio."
    video: bool = True
    "Whether to capture the camera."


@dataclass
class RouletteConfiguration:
    """
    The :class:`RouletteConfiguration` dictionary is used to provide
    configuration options for a :class:`aioroulette.SessionController`.
    """

    iceServers: Optional[list[RTCIceServer]] = None
    """
    A list of :class:`aiortc.RTCIceServer` objects to configure STUN / TURN
    servers. `None` uses a public STUN server, an empty list disables STUN.
    """

    audioMaxBitrate: int = DEFAULT_AUDIO_MAX_BITRATE
    "The bitrate ceiling applied to the outbound audio sender, in bits per second."

    constraints: MediaConstraints = field(default_factory=MediaConstraints)
    "The constraints used to capture the camera and microphone."

    def rtc_configuration(self) -> RTCConfiguration:
        """
        Build the :class:`aiortc.RTCConfiguration` for a new peer connection.
        """
        if self.iceServers is None:
            ice_servers = [RTCIceServer(urls=DEFAULT_ICE_SERVERS)]
        else:
            ice_servers = list(self.iceServers)
        return RTCConfiguration(iceServers=ice_servers)
