"""HLS playlist helpers."""

from dataclasses import dataclass
from typing import Sequence

from vodpipeline.modules.transcoding.abr import Rendition

MASTER_PLAYLIST_NAME = "master.m3u8"
MEDIA_PLAYLIST_NAME = "playlist.m3u8"
SEGMENT_PATTERN = "segment%d.ts"


class PlaylistError(ValueError):
    """Playlist text is not a valid HLS playlist."""


@dataclass(frozen=True)
class VariantStream:
    """A variant entry of a master playlist."""

    bandwidth: int
    resolution: str
    uri: str


def rendition_playlist_uri(rendition: Rendition) -> str:
    """URI of a rendition's media playlist relative to the master playlist."""
    return f"{rendition.name}/{MEDIA_PLAYLIST_NAME}"


def build_master_playlist(renditions: Sequence[Rendition]) -> str:
    """Build a master playlist listing exactly ``renditions``, lowest first."""
    if not renditions:
        raise PlaylistError("A master playlist needs at least one rendition")

    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
    for rendition in sorted(renditions, key=lambda r: (r.bandwidth, r.height)):
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={rendition.bandwidth},"
            f"RESOLUTION={rendition.resolution}"
        )
        lines.append(rendition_playlist_uri(rendition))
    return "\n".join(lines) + "\n"


def _parse_attributes(text: str) -> dict[str, str]:
    attributes = {}
    for item in text.split(","):
        if "=" in item:
            key, value = item.split("=", 1)
            attributes[key.strip()] = value.strip().strip('"')
    return attributes


def parse_master_playlist(text: str) -> list[VariantStream]:
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if not lines or lines[0] != "#EXTM3U":
        raise PlaylistError("Missing #EXTM3U header")

    variants = []
    pending = None
    for line in lines[1:]:
        if line.startswith("#EXT-X-STREAM-INF:"):
            pending = _parse_attributes(line.split(":", 1)[1])
        elif not line.startswith("#") and pending is not None:
            try:
                bandwidth = int(pending["BANDWIDTH"])
            except (KeyError, ValueError) as e:
                raise PlaylistError(f"Invalid BANDWIDTH for {line}") from e
            variants.append(
                VariantStream(
                    bandwidth=bandwidth,
                    resolution=pending.get("RESOLUTION", ""),
                    uri=line,
                )
            )
            pending = None
    return variants


def parse_media_playlist(text: str) -> list[str]:
    """Segment URIs of a media playlist, in order.

    Raises:
        PlaylistError: If the header is missing or the playlist is not closed
            with ``#EXT-X-ENDLIST`` (a VOD encode that did not finish).
    """
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if not lines or lines[0] != "#EXTM3U":
        raise PlaylistError("Missing #EXTM3U header")
    if "#EXT-X-ENDLIST" not in lines:
        raise PlaylistError("Playlist is not terminated with #EXT-X-ENDLIST")
    return [line for line in lines if not line.startswith("#")]
