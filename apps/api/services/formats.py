"""Target formats and the transcode profiles derived from them."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from services.errors import UnsupportedFormat, UnsupportedMediaType


MEDIA_KIND_VIDEO = "video"
MEDIA_KIND_AUDIO = "audio"
MEDIA_KINDS = (MEDIA_KIND_VIDEO, MEDIA_KIND_AUDIO)

VIDEO_RESOLUTIONS = ("360p", "480p", "720p", "1080p")
ASPECT_WIDTH, ASPECT_HEIGHT = 16, 9

VIDEO_AUDIO_BITRATE_K = 128
LOSSY_AUDIO_BITRATE_K = 192

FORMAT_LABELS: Dict[str, List[Dict[str, str]]] = {
    MEDIA_KIND_VIDEO: [
        {"label": "360p", "value": "360p"},
        {"label": "480p", "value": "480p"},
        {"label": "720p", "value": "720p"},
        {"label": "1080p", "value": "1080p"},
        {"label": "Extract MP3", "value": "mp3"},
    ],
    MEDIA_KIND_AUDIO: [
        {"label": "MP3", "value": "mp3"},
        {"label": "WAV", "value": "wav"},
        {"label": "OGG", "value": "ogg"},
    ],
}

CONTENT_TYPE_BY_EXT = {
    ".mp4": "video/mp4",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
}


@dataclass(frozen=True)
class TranscodeProfile:
    format: str
    container: str
    extension: str
    audio_codec: str
    audio_bitrate_k: Optional[int] = None
    video_codec: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def drops_video(self) -> bool:
        return self.video_codec is None

    @property
    def size(self) -> Optional[str]:
        if self.width is None or self.height is None:
            return None
        return f"{self.width}x{self.height}"


def available_formats(media_kind: str) -> List[Dict[str, str]]:
    return [dict(item) for item in FORMAT_LABELS.get(media_kind, [])]


def media_kind_from_mime(mime_type: Optional[str]) -> str:
    """Classify a generic document upload by its MIME type."""
    value = (mime_type or "").strip().lower()
    if value.startswith("video/"):
        return MEDIA_KIND_VIDEO
    if value.startswith("audio/"):
        return MEDIA_KIND_AUDIO
    raise UnsupportedMediaType()


def width_for_height(height: int) -> int:
    return (int(height) * ASPECT_WIDTH) // ASPECT_HEIGHT


def build_profile(media_kind: str, fmt: str) -> TranscodeProfile:
    fmt = (fmt or "").strip().lower()
    if media_kind not in MEDIA_KINDS:
        raise UnsupportedMediaType()
    if fmt not in {item["value"] for item in FORMAT_LABELS[media_kind]}:
        raise UnsupportedFormat(f"Format '{fmt}' is not available for {media_kind} files.")

    if fmt == "mp3":
        return TranscodeProfile(
            format=fmt,
            container="mp3",
            extension=".mp3",
            audio_codec="libmp3lame",
            audio_bitrate_k=LOSSY_AUDIO_BITRATE_K,
        )
    if fmt == "ogg":
        return TranscodeProfile(
            format=fmt,
            container="ogg",
            extension=".ogg",
            audio_codec="libvorbis",
            audio_bitrate_k=LOSSY_AUDIO_BITRATE_K,
        )
    if fmt == "wav":
        return TranscodeProfile(format=fmt, container="wav", extension=".wav", audio_codec="pcm_s16le")

    height = int(fmt.rstrip("p"))
    return TranscodeProfile(
        format=fmt,
        container="mp4",
        extension=".mp4",
        audio_codec="aac",
        audio_bitrate_k=VIDEO_AUDIO_BITRATE_K,
        video_codec="libx264",
        width=width_for_height(height),
        height=height,
    )


def content_type_for(extension: str) -> str:
    return CONTENT_TYPE_BY_EXT.get((extension or "").lower(), "application/octet-stream")


def format_file_size(num_bytes: int) -> str:
    """Human readable size, e.g. ``5.2 MB``."""
    num_bytes = int(num_bytes or 0)
    if num_bytes <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    index = 0
    value = float(num_bytes)
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"
