"""
Transcode profiles: named sets of encoding parameters.

Jobs select a profile by name. The mapping is configuration, not code: the
built-in profiles can be overridden or extended with a JSON file
(MEDIA_ENGINE_PROFILES_FILE) of the form:

    {
      "hls_720": {
        "renditions": [{"name": "720p", "height": 720, "video_bitrate": "2500k", "audio_bitrate": "128k"}],
        "segment_duration": 4
      }
    }
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

BITRATE_PATTERN = re.compile(r"^\d+[kKmM]?$")
NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

SEGMENT_FORMATS = ("mpegts", "fmp4")
PLAYLIST_TYPES = ("vod", "event")


class ProfileError(ValueError):
    """A profile definition is invalid."""


class UnknownProfileError(LookupError):
    """No profile is registered under the requested name."""


@dataclass(frozen=True)
class Rendition:
    """One rung of a bitrate ladder."""

    name: str
    height: int
    video_bitrate: str
    audio_bitrate: str = "128k"

    @property
    def bufsize(self) -> str:
        """Rate-control buffer of twice the target bitrate."""
        value = self.video_bitrate.lower()
        if value.endswith("m"):
            return f"{int(value[:-1]) * 2000}k"
        if value.endswith("k"):
            return f"{int(value[:-1]) * 2}k"
        return str(int(value) * 2)


@dataclass(frozen=True)
class TranscodeProfile:
    """Encoding parameters for one output package."""

    name: str
    renditions: Tuple[Rendition, ...]
    video_codec: str = "libx264"
    audio_codec: str = "aac"
    preset: str = "veryfast"
    gop_size: int = 48
    segment_duration: int = 4
    segment_format: str = "mpegts"
    playlist_type: str = "vod"
    extra_args: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_ladder(self) -> bool:
        return len(self.renditions) > 1

    @property
    def segment_extension(self) -> str:
        return "m4s" if self.segment_format == "fmp4" else "ts"


DEFAULT_PROFILES: Dict[str, Dict[str, Any]] = {
    # Single rendition HLS; height 0 keeps the source resolution
    "hls_single": {
        "renditions": [
            {"name": "source", "height": 0, "video_bitrate": "1000k", "audio_bitrate": "128k"},
        ],
    },
    # YouTube-style bitrate ladder
    "hls_ladder": {
        "renditions": [
            {"name": "1080p", "height": 1080, "video_bitrate": "5000k", "audio_bitrate": "128k"},
            {"name": "720p", "height": 720, "video_bitrate": "2500k", "audio_bitrate": "128k"},
            {"name": "480p", "height": 480, "video_bitrate": "1000k", "audio_bitrate": "96k"},
            {"name": "360p", "height": 360, "video_bitrate": "600k", "audio_bitrate": "96k"},
        ],
        "segment_duration": 6,
    },
}


def _parse_rendition(profile_name: str, data: Dict[str, Any]) -> Rendition:
    try:
        rendition = Rendition(
            name=str(data["name"]),
            height=int(data.get("height", 0)),
            video_bitrate=str(data["video_bitrate"]),
            audio_bitrate=str(data.get("audio_bitrate", "128k")),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ProfileError(f"Profile '{profile_name}': invalid rendition {data!r}: {e}") from e

    if not NAME_PATTERN.match(rendition.name):
        raise ProfileError(f"Profile '{profile_name}': invalid rendition name '{rendition.name}'")
    if rendition.height < 0:
        raise ProfileError(f"Profile '{profile_name}': rendition height must not be negative")
    for value in (rendition.video_bitrate, rendition.audio_bitrate):
        if not BITRATE_PATTERN.match(value):
            raise ProfileError(f"Profile '{profile_name}': invalid bitrate '{value}'")
    return rendition


def parse_profile(name: str, data: Dict[str, Any]) -> TranscodeProfile:
    """
    Build a TranscodeProfile from a JSON-style dict.

    Raises:
        ProfileError: If any field is missing or out of range
    """
    if not NAME_PATTERN.match(name):
        raise ProfileError(f"Invalid profile name '{name}'")
    if not isinstance(data, dict):
        raise ProfileError(f"Profile '{name}' must be an object")

    raw_renditions = data.get("renditions")
    if not raw_renditions or not isinstance(raw_renditions, list):
        raise ProfileError(f"Profile '{name}' needs at least one rendition")
    renditions = tuple(_parse_rendition(name, r) for r in raw_renditions)
    if len({r.name for r in renditions}) != len(renditions):
        raise ProfileError(f"Profile '{name}' has duplicate rendition names")

    try:
        profile = TranscodeProfile(
            name=name,
            renditions=renditions,
            video_codec=str(data.get("video_codec", "libx264")),
            audio_codec=str(data.get("audio_codec", "aac")),
            preset=str(data.get("preset", "veryfast")),
            gop_size=int(data.get("gop_size", 48)),
            segment_duration=int(data.get("segment_duration", 4)),
            segment_format=str(data.get("segment_format", "mpegts")),
            playlist_type=str(data.get("playlist_type", "vod")),
            extra_args=tuple(str(a) for a in data.get("extra_args", ())),
        )
    except (TypeError, ValueError) as e:
        raise ProfileError(f"Profile '{name}': {e}") from e

    if profile.gop_size < 1:
        raise ProfileError(f"Profile '{name}': gop_size must be positive")
    if profile.segment_duration < 1:
        raise ProfileError(f"Profile '{name}': segment_duration must be positive")
    if profile.segment_format not in SEGMENT_FORMATS:
        raise ProfileError(f"Profile '{name}': segment_format must be one of {SEGMENT_FORMATS}")
    if profile.playlist_type not in PLAYLIST_TYPES:
        raise ProfileError(f"Profile '{name}': playlist_type must be one of {PLAYLIST_TYPES}")
    return profile


class ProfileRegistry:
    """Lookup table from profile name to TranscodeProfile."""

    def __init__(self, profiles: Optional[Dict[str, TranscodeProfile]] = None):
        self._profiles: Dict[str, TranscodeProfile] = dict(profiles or {})

    @classmethod
    def from_dict(cls, definitions: Dict[str, Dict[str, Any]]) -> "ProfileRegistry":
        return cls({name: parse_profile(name, data) for name, data in definitions.items()})

    @classmethod
    def load(cls, path: Optional[str] = None) -> "ProfileRegistry":
        """
        Build the registry from the defaults plus an optional JSON file.

        Entries in the file replace built-in profiles of the same name.

        Raises:
            ProfileError: If the file cannot be read or a definition is invalid
        """
        definitions: Dict[str, Dict[str, Any]] = dict(DEFAULT_PROFILES)
        if path:
            try:
                loaded = json.loads(Path(path).read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                raise ProfileError(f"Cannot load profiles from {path}: {e}") from e
            if not isinstance(loaded, dict):
                raise ProfileError(f"Profiles file {path} must contain a JSON object")
            definitions.update(loaded)
            logger.info(f"Loaded {len(loaded)} profile(s) from {path}")
        return cls.from_dict(definitions)

    def get(self, name: str) -> TranscodeProfile:
        try:
            return self._profiles[name]
        except KeyError:
            raise UnknownProfileError(f"Unknown transcode profile '{name}'") from None

    def names(self) -> List[str]:
        return sorted(self._profiles)

    def __contains__(self, name: object) -> bool:
        return name in self._profiles

    def __iter__(self) -> Iterator[TranscodeProfile]:
        return iter(self._profiles.values())

    def __len__(self) -> int:
        return len(self._profiles)
