"""
Video Concatenation

Assembles an ordered list of completed clips into one playable file.

Clips from the video provider can disagree on resolution, frame rate and
audio layout, so they are never stream-copied directly:

1. Materialize every clip in a scratch directory
2. Probe each clip (width, height, frame rate, codec, pixel format)
3. Pick the target format: modal resolution and modal frame rate,
   always H.264 / yuv420p, dimensions rounded up to even numbers
4. Re-encode each clip to the target (letterbox scale+pad, fixed fps),
   falling back to a silent encode if the audio path fails
5. Concatenate the normalized clips with the concat demuxer (stream copy)
6. Probe the final duration and store the result

Scratch files are removed whether or not the run succeeds.
"""

import asyncio
import json
import shutil
import tempfile
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from storyreel.core.constants import VIDEO_MEDIA_DIR
from storyreel.core.exceptions import MediaDownloadError, MediaError, MediaProcessingError
from storyreel.core.logging_config import get_logger
from storyreel.storage.media_store import LocalMediaStore
from storyreel.video.ffmpeg import FfmpegRunner

logger = get_logger("video.concatenation")

DEFAULT_FPS = 30.0


# =============================================================================
# FORMAT DETECTION
# =============================================================================

@dataclass(frozen=True)
class ProbeResult:
    """Video stream properties of one clip."""
    width: int = 1280
    height: int = 720
    fps: float = DEFAULT_FPS
    codec: str = "unknown"
    pix_fmt: str = "yuv420p"


@dataclass(frozen=True)
class TargetFormat:
    """The uniform format every clip is re-encoded to."""
    width: int
    height: int
    fps: float
    codec: str = "libx264"
    pix_fmt: str = "yuv420p"


def parse_frame_rate(value: Optional[str]) -> float:
    """Parse ffprobe's ``r_frame_rate`` ("30/1", "24000/1001") to fps."""
    if not value:
        return DEFAULT_FPS
    parts = value.split("/")
    try:
        if len(parts) == 2:
            denominator = int(parts[1])
            if denominator > 0:
                return round(int(parts[0]) / denominator, 2)
            return DEFAULT_FPS
        return round(float(value), 2)
    except ValueError:
        return DEFAULT_FPS


def _even(value: int) -> int:
    return value + 1 if value % 2 else value


def determine_target_format(probes: List[ProbeResult]) -> TargetFormat:
    """
    Modal resolution and modal frame rate across ``probes``.

    Ties go to the value seen first.
    """
    if not probes:
        return TargetFormat(width=1280, height=720, fps=DEFAULT_FPS)

    resolution = Counter((p.width, p.height) for p in probes).most_common(1)[0][0]
    fps = Counter(p.fps for p in probes).most_common(1)[0][0]

    return TargetFormat(width=_even(resolution[0]), height=_even(resolution[1]), fps=fps)


def _format_fps(fps: float) -> str:
    return f"{fps:g}"


def normalize_filter(target: TargetFormat) -> str:
    w, h = target.width, target.height
    return (
        f"scale={w}:{h}:force_original_aspect_ratio=decrease,"
        f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2:color=black,"
        f"setsar=1,fps={_format_fps(target.fps)}"
    )


def concat_list_line(path: Path) -> str:
    escaped = str(path).replace("'", "'\\''")
    return f"file '{escaped}'"


# =============================================================================
# CONCATENATOR
# =============================================================================

@dataclass
class ClipSource:
    """A completed clip to include, in playback order."""
    path: Optional[str]
    url: Optional[str]
    duration_seconds: Optional[int] = None
    label: str = ""


@dataclass
class ConcatenationResult:
    """Stored location and duration of the assembled video."""
    path: str
    url: str
    duration_seconds: int


class VideoConcatenator:
    """
    Normalize-then-concatenate engine.

    Blocking; ``concatenate_async`` runs it on a worker thread.
    """

    def __init__(
        self,
        media_store: LocalMediaStore,
        runner: Optional[FfmpegRunner] = None,
        scratch_dir: Optional[Path] = None,
        probe_timeout: float = 30,
        encode_timeout: float = 120,
        concat_timeout: float = 300,
    ):
        self.media_store = media_store
        self.runner = runner or FfmpegRunner()
        self.scratch_dir = Path(scratch_dir) if scratch_dir else None
        self.probe_timeout = probe_timeout
        self.encode_timeout = encode_timeout
        self.concat_timeout = concat_timeout

    async def concatenate_async(self, story_id: int, clips: List[ClipSource]) -> ConcatenationResult:
        return await asyncio.to_thread(self.concatenate, story_id, clips)

    def concatenate(self, story_id: int, clips: List[ClipSource]) -> ConcatenationResult:
        if not clips:
            raise MediaError("No completed clips to concatenate.", {"story_id": story_id})

        if self.scratch_dir:
            self.scratch_dir.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix=f"concat_{story_id}_", dir=self.scratch_dir))

        try:
            if len(clips) == 1:
                return self._single_clip(story_id, clips[0], work_dir)

            logger.info(f"Concatenating {len(clips)} clips for story {story_id}")
            sources = [self._materialize(clip, work_dir / f"clip_{i}.mp4") for i, clip in enumerate(clips)]

            target = determine_target_format([self.probe(source) for source in sources])
            logger.info(
                f"Target format for story {story_id}: "
                f"{target.width}x{target.height} @ {_format_fps(target.fps)}fps"
            )

            normalized = []
            for i, source in enumerate(sources):
                output = work_dir / f"norm_{i}.mp4"
                self.normalize(source, output, target)
                normalized.append(output)

            output = work_dir / f"final_{story_id}.mp4"
            self.concat(normalized, output, work_dir / "concat_list.txt")

            duration = self.probe_duration(output)
            stored = self.media_store.store_file(output, VIDEO_MEDIA_DIR.format(story_id=story_id), "mp4")
            logger.info(f"Final video for story {story_id}: {stored.path} ({duration}s)")
            return ConcatenationResult(path=stored.path, url=stored.url, duration_seconds=duration)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    def _single_clip(self, story_id: int, clip: ClipSource, work_dir: Path) -> ConcatenationResult:
        source = self._materialize(clip, work_dir / f"single_{story_id}.mp4")
        duration = clip.duration_seconds if clip.duration_seconds is not None else self.probe_duration(source)
        stored = self.media_store.store_file(source, VIDEO_MEDIA_DIR.format(story_id=story_id), "mp4")
        logger.info(f"Single clip re-hosted as final video for story {story_id}: {stored.path}")
        return ConcatenationResult(path=stored.path, url=stored.url, duration_seconds=duration)

    def _materialize(self, clip: ClipSource, destination: Path) -> Path:
        path = self.media_store.fetch(clip.path, clip.url, destination)
        if path.stat().st_size == 0:
            raise MediaDownloadError(clip.url or str(clip.path), f"empty file for clip {clip.label}".strip())
        return path

    # =========================================================================
    # FFMPEG STEPS
    # =========================================================================

    def probe(self, source: Path) -> ProbeResult:
        """Stream properties, or defaults when ffprobe fails."""
        result = self.runner.ffprobe(
            [
                "-v", "error",
                "-select_streams", "v:0",
                "-show_entries", "stream=width,height,r_frame_rate,codec_name,pix_fmt",
                "-of", "json",
                str(source),
            ],
            timeout=self.probe_timeout,
        )
        if not result.success:
            logger.warning(f"ffprobe failed for {source.name}, using defaults: {result.stderr.strip()}")
            return ProbeResult()

        try:
            streams = json.loads(result.stdout or "{}").get("streams") or [{}]
        except json.JSONDecodeError:
            logger.warning(f"Unreadable ffprobe output for {source.name}, using defaults")
            return ProbeResult()

        stream = streams[0]
        return ProbeResult(
            width=int(stream.get("width") or 1280),
            height=int(stream.get("height") or 720),
            fps=parse_frame_rate(stream.get("r_frame_rate")),
            codec=stream.get("codec_name") or "unknown",
            pix_fmt=stream.get("pix_fmt") or "yuv420p",
        )

    def normalize(self, source: Path, output: Path, target: TargetFormat) -> None:
        video_args = [
            "-y",
            "-i", str(source),
            "-vf", normalize_filter(target),
            "-c:v", target.codec,
            "-preset", "fast",
            "-crf", "23",
            "-pix_fmt", target.pix_fmt,
        ]

        result = self.runner.ffmpeg(
            video_args + [
                "-c:a", "aac",
                "-b:a", "128k",
                "-ar", "44100",
                "-ac", "2",
                "-movflags", "+faststart",
                "-shortest",
                str(output),
            ],
            timeout=self.encode_timeout,
        )
        if result.success:
            return

        logger.warning(f"Encoding {source.name} with audio failed, retrying without audio")
        fallback = self.runner.ffmpeg(
            video_args + ["-an", "-movflags", "+faststart", str(output)],
            timeout=self.encode_timeout,
        )
        if not fallback.success:
            logger.error(f"ffmpeg normalization failed for {source.name}: {fallback.stderr.strip()}")
            raise MediaProcessingError("ffmpeg", fallback.stderr)

    def concat(self, sources: List[Path], output: Path, list_path: Path) -> None:
        list_path.write_text("".join(concat_list_line(source) + "\n" for source in sources))

        result = self.runner.ffmpeg(
            [
                "-y",
                "-f", "concat",
                "-safe", "0",
                "-i", str(list_path),
                "-c", "copy",
                "-movflags", "+faststart",
                str(output),
            ],
            timeout=self.concat_timeout,
        )
        if not result.success:
            logger.error(f"ffmpeg concat failed: {result.stderr.strip()}")
            raise MediaProcessingError("ffmpeg", result.stderr)

    def probe_duration(self, source: Path) -> int:
        """Whole seconds, or 0 when the duration cannot be read."""
        result = self.runner.ffprobe(
            [
                "-v", "error",
                "-show_entries", "format=duration",
                "-of", "default=noprint_wrappers=1:nokey=1",
                str(source),
            ],
            timeout=self.probe_timeout,
        )
        if not result.success:
            return 0
        try:
            return int(round(float(result.stdout.strip())))
        except ValueError:
            return 0
