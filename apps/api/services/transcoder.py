"""ffmpeg-backed transcoder."""

import asyncio
import logging
from pathlib import Path

import ffmpeg

from services.errors import TranscodeFailed
from services.formats import TranscodeProfile

logger = logging.getLogger(__name__)


def output_path_for(input_path: Path, profile: TranscodeProfile, output_dir: Path) -> Path:
    return output_dir / f"{input_path.stem}_{profile.format}{profile.extension}"


class FfmpegTranscoder:
    def build_command(self, input_path: Path, profile: TranscodeProfile, output_path: Path):
        """Build the ffmpeg-python stream for one conversion without running it."""
        output_kwargs = {
            "format": profile.container,
            "acodec": profile.audio_codec,
        }
        if profile.audio_bitrate_k:
            output_kwargs["audio_bitrate"] = f"{profile.audio_bitrate_k}k"
        if profile.drops_video:
            output_kwargs["vn"] = None
        else:
            output_kwargs["vcodec"] = profile.video_codec
            output_kwargs["s"] = profile.size

        return (
            ffmpeg
            .input(str(input_path))
            .output(str(output_path), **output_kwargs)
            .overwrite_output()
        )

    def _start(self, input_path: Path, profile: TranscodeProfile, output_path: Path):
        command = self.build_command(input_path, profile, output_path)
        try:
            return command.run_async(quiet=True)
        except OSError as e:
            logger.error(f"Could not start ffmpeg for {input_path.name}: {e}")
            raise TranscodeFailed() from e

    @staticmethod
    def _kill(process, output_path: Path) -> None:
        # The encoder must be gone before its work dir is removed.
        if process.poll() is None:
            process.kill()
        process.wait()
        output_path.unlink(missing_ok=True)

    async def transcode(self, input_path: Path, profile: TranscodeProfile, output_path: Path) -> Path:
        """Run ffmpeg to completion; cancelling the caller kills the encoder."""
        process = self._start(input_path, profile, output_path)
        try:
            _, stderr = await asyncio.to_thread(process.communicate)
        except BaseException:
            self._kill(process, output_path)
            raise

        if process.returncode:
            output_path.unlink(missing_ok=True)
            message = stderr.decode(errors="replace") if stderr else f"exit code {process.returncode}"
            logger.error(f"Error converting {input_path.name} to {profile.format}: {message}")
            raise TranscodeFailed()
        if not output_path.exists():
            raise TranscodeFailed(f"ffmpeg produced no output for {profile.format}.")
        return output_path
