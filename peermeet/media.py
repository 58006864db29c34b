"""
Local media capture.

Rendering is out of scope, so a stream here is a descriptor: a set of
tracks that can be enabled, disabled and stopped.  Transports that carry
media hand these descriptors to each other.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field

from .errors import MediaAcquisitionFailure
from .models import new_id

logger = logging.getLogger(__name__)


@dataclass
class MediaTrack:
    kind: str  # "audio" or "video"
    label: str = ""
    enabled: bool = True
    stopped: bool = False

    def stop(self) -> None:
        self.stopped = True
        self.enabled = False


@dataclass
class MediaStream:
    id: str = field(default_factory=new_id)
    tracks: list[MediaTrack] = field(default_factory=list)

    def audio_tracks(self) -> list[MediaTrack]:
        return [t for t in self.tracks if t.kind == "audio"]

    def video_tracks(self) -> list[MediaTrack]:
        return [t for t in self.tracks if t.kind == "video"]

    @property
    def active(self) -> bool:
        return any(not t.stopped for t in self.tracks)

    def stop(self) -> None:
        """Release every track.  Safe to call more than once."""
        for track in self.tracks:
            track.stop()


class MediaDevices(abc.ABC):
    """Source of the local capture stream."""

    @abc.abstractmethod
    async def acquire_local_stream(
        self, video: bool = True, audio: bool = True
    ) -> MediaStream:
        """Open the requested devices.

        Raises MediaAcquisitionFailure if permission is denied or no device
        is present.
        """


class HeadlessDevices(MediaDevices):
    """Device service for terminals: hands out placeholder tracks.

    *available* lists the track kinds this machine pretends to have; asking
    for a kind that is not available fails the same way a missing camera
    would.
    """

    def __init__(self, available: tuple[str, ...] = ("audio", "video")):
        self.available = available
        self.streams: list[MediaStream] = []

    async def acquire_local_stream(
        self, video: bool = True, audio: bool = True
    ) -> MediaStream:
        wanted = [kind for kind, on in (("audio", audio), ("video", video)) if on]
        missing = [kind for kind in wanted if kind not in self.available]
        if missing:
            raise MediaAcquisitionFailure(
                f"No {' or '.join(missing)} device available"
            )
        stream = MediaStream(
            tracks=[MediaTrack(kind=kind, label=f"headless {kind}") for kind in wanted]
        )
        self.streams.append(stream)
        logger.debug("Acquired local stream %s (%s)", stream.id, ", ".join(wanted))
        return stream
