"""
Storyreel Video

ffmpeg/ffprobe execution and the normalize-then-concatenate engine that
assembles completed clips into the final video.
"""

from storyreel.video.ffmpeg import CommandResult, FfmpegRunner
from storyreel.video.concatenation import (
    ClipSource,
    ConcatenationResult,
    ProbeResult,
    TargetFormat,
    VideoConcatenator,
    determine_target_format,
    parse_frame_rate,
)

__all__ = [
    "CommandResult",
    "FfmpegRunner",
    "ClipSource",
    "ConcatenationResult",
    "ProbeResult",
    "TargetFormat",
    "VideoConcatenator",
    "determine_target_format",
    "parse_frame_rate",
]
