"""Adaptive bitrate rendition ladder.

Renditions are always ordered lowest bandwidth first: the lowest tier is the
quickest to encode and becomes playable first.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional

DEFAULT_AUDIO_BITRATE = 128_000  # bps
DEFAULT_SEGMENT_DURATION = 6  # seconds


@dataclass(frozen=True)
class Rendition:
    """One fixed resolution/bitrate variant of a video."""

    name: str
    width: int
    height: int
    video_bitrate: int  # bps
    audio_bitrate: int = DEFAULT_AUDIO_BITRATE
    segment_duration: int = DEFAULT_SEGMENT_DURATION

    @property
    def bandwidth(self) -> int:
        """Peak bandwidth advertised in the master playlist."""
        return self.video_bitrate + self.audio_bitrate

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"

    @property
    def max_bitrate(self) -> int:
        return int(self.video_bitrate * 1.07)

    @property
    def buffer_size(self) -> int:
        return int(self.video_bitrate * 1.5)


# Resolution catalog
RENDITION_CATALOG = {
    "480p": Rendition("480p", 854, 480, 1_000_000),
    "720p": Rendition("720p", 1280, 720, 3_000_000),
    "1080p": Rendition("1080p", 1920, 1080, 5_000_000),
}


class InvalidLadderError(ValueError):
    """Rendition ladder configuration is not usable."""


@dataclass
class RenditionLadder:
    """Ordered set of renditions produced for every video."""

    renditions: list[Rendition] = field(default_factory=list)

    def __post_init__(self):
        errors = validate_ladder(self.renditions)
        if errors:
            raise InvalidLadderError("; ".join(errors))
        self.renditions = sorted(self.renditions, key=lambda r: (r.bandwidth, r.height))

    @classmethod
    def from_names(
        cls,
        names: Iterable[str],
        segment_duration: int = DEFAULT_SEGMENT_DURATION,
        audio_bitrate: int = DEFAULT_AUDIO_BITRATE,
    ) -> "RenditionLadder":
        renditions = []
        for name in names:
            if name not in RENDITION_CATALOG:
                raise InvalidLadderError(f"Unknown rendition: {name}")
            base = RENDITION_CATALOG[name]
            renditions.append(
                Rendition(
                    name=base.name,
                    width=base.width,
                    height=base.height,
                    video_bitrate=base.video_bitrate,
                    audio_bitrate=audio_bitrate,
                    segment_duration=segment_duration,
                )
            )
        return cls(renditions=renditions)

    @classmethod
    def default(cls) -> "RenditionLadder":
        return cls(renditions=list(RENDITION_CATALOG.values()))

    def __iter__(self):
        return iter(self.renditions)

    def __len__(self) -> int:
        return len(self.renditions)

    @property
    def names(self) -> list[str]:
        return [r.name for r in self.renditions]

    def get(self, name: str) -> Optional[Rendition]:
        for rendition in self.renditions:
            if rendition.name == name:
                return rendition
        return None

    def ordered(self, names: Iterable[str]) -> list[Rendition]:
        """The given rendition names as ladder entries, in ladder order."""
        wanted = set(names)
        return [r for r in self.renditions if r.name in wanted]


def validate_ladder(renditions: list[Rendition]) -> list[str]:
    """Validate a rendition ladder.

    Returns:
        list of error messages (empty if valid)
    """
    errors = []

    if not renditions:
        errors.append("Ladder must contain at least one rendition")
        return errors

    seen = set()
    for rendition in renditions:
        if rendition.name in seen:
            errors.append(f"Duplicate rendition: {rendition.name}")
        seen.add(rendition.name)

        if rendition.width <= 0 or rendition.height <= 0:
            errors.append(f"{rendition.name}: dimensions must be positive")
        if rendition.width % 2 or rendition.height % 2:
            errors.append(f"{rendition.name}: dimensions must be even for H.264")
        if rendition.video_bitrate <= 0:
            errors.append(f"{rendition.name}: bitrate must be positive")
        if rendition.segment_duration <= 0:
            errors.append(f"{rendition.name}: segment duration must be positive")

    return errors
