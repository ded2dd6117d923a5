import uuid
from collections.abc import Iterable
from typing import Optional

from aiortc import MediaStreamTrack


class MediaStream:
    """
    A group of :class:`aiortc.MediaStreamTrack` instances which are
    captured, sent or received together.

    :param tracks: The initial tracks of the stream.
    :param id: An optional identifier, a random one is generated otherwise.
    """

    def __init__(
        self,
        tracks: Iterable[MediaStreamTrack] = (),
        id: Optional[str] = None,
    ) -> None:
        self._id = id or str(uuid.uuid4())
        self.__tracks: list[MediaStreamTrack] = []
        for track in tracks:
            self.addTrack(track)

    def __repr__(self) -> str:
        kinds = ",".join(track.kind for track in self.__tracks)
        return f"MediaStream({self._id}, {kinds})"

    @property
    def id(self) -> str:
        return self._id

    @property
    def active(self) -> bool:
        """
        Whether at least one of the tracks is still live.
        """
        return any(track.readyState == "live" for track in self.__tracks)

    def addTrack(self, track: MediaStreamTrack) -> None:
        if track not in self.__tracks:
            self.__tracks.append(track)

    def getAudioTracks(self) -> list[MediaStreamTrack]:
        return [track for track in self.__tracks if track.kind == "audio"]

    def getVideoTracks(self) -> list[MediaStreamTrack]:
        return [track for track in self.__tracks if track.kind == "video"]

    def getTracks(self) -> list[MediaStreamTrack]:
        return list(self.__tracks)

    def stop(self) -> None:
        """
        Stop every track of the stream.
        """
        for track in self.__tracks:
            track.stop()
