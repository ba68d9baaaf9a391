"""
ffmpeg Runner

Executes ffmpeg and ffprobe as argument lists (never through a shell) and
reports every invocation as a ``CommandResult``. A missing binary is a
configuration problem and raises; a non-zero exit or timeout is reported
in the result and left to the caller.
"""

import subprocess
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from storyreel.core.exceptions import MediaProcessingError
from storyreel.core.logging_config import get_logger

logger = get_logger("video.ffmpeg")


@dataclass
class CommandResult:
    """Result of one ffmpeg/ffprobe invocation."""
    args: List[str]
    return_code: int
    stdout: str
    stderr: str
    duration_ms: float
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.return_code == 0

    @property
    def command(self) -> str:
        return " ".join(self.args)


class FfmpegRunner:
    """
    Thin wrapper over ``subprocess.run`` for the two media binaries.

    Example:
        runner = FfmpegRunner()
        result = runner.ffprobe(["-v", "error", "-of", "json", "clip.mp4"], timeout=30)
        if result.success:
            data = json.loads(result.stdout)
    """

    def __init__(self, ffmpeg_binary: str = "ffmpeg", ffprobe_binary: str = "ffprobe"):
        self.ffmpeg_binary = ffmpeg_binary
        self.ffprobe_binary = ffprobe_binary

    def run(self, args: List[str], timeout: Optional[float] = None) -> CommandResult:
        started_at = datetime.now()

        try:
            completed = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            duration = (datetime.now() - started_at).total_seconds() * 1000
            logger.warning(f"{args[0]} timed out after {timeout}s")
            return CommandResult(
                args=list(args),
                return_code=-1,
                stdout="",
                stderr="Process timed out",
                duration_ms=duration,
                timed_out=True,
            )
        except FileNotFoundError as e:
            raise MediaProcessingError(args[0], f"executable not found: {e}") from e

        duration = (datetime.now() - started_at).total_seconds() * 1000
        result = CommandResult(
            args=list(args),
            return_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            duration_ms=duration,
        )
        logger.debug(f"{args[0]} exited {result.return_code} in {duration:.0f}ms")
        return result

    def ffmpeg(self, args: List[str], timeout: Optional[float] = None) -> CommandResult:
        return self.run([self.ffmpeg_binary, *args], timeout=timeout)

    def ffprobe(self, args: List[str], timeout: Optional[float] = None) -> CommandResult:
        return self.run([self.ffprobe_binary, *args], timeout=timeout)
