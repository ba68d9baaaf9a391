"""
Storyreel Constants

Pipeline stages, story statuses and the other enumerations shared by every layer.
"""

from enum import Enum
from typing import Optional

# =============================================================================
# VERSION INFO
# =============================================================================
VERSION = "1.0.0"
PROJECT_NAME = "Storyreel"


# =============================================================================
# PIPELINE STAGES
# =============================================================================

class PipelineStage(str, Enum):
    """The four linear production stages."""
    SCRIPT = "script"
    CHARACTERS = "characters"
    STORYBOARD = "storyboard"
    VIDEO = "video"

    def next(self) -> Optional["PipelineStage"]:
        """Stage that follows this one, or None after Video."""
        order = list(PipelineStage)
        index = order.index(self)
        if index + 1 < len(order):
            return order[index + 1]
        return None

    def story_status(self) -> "StoryStatus":
        """Status a story carries while this stage is actively running."""
        return _ACTIVE_STATUS[self]

    def review_status(self) -> Optional["StoryStatus"]:
        """Review checkpoint reached when this stage completes, if any."""
        return _REVIEW_STATUS.get(self)

    @property
    def label(self) -> str:
        return self.value.capitalize()


class StoryStatus(str, Enum):
    """Cached projection of where a story is in the pipeline."""
    PENDING = "pending"
    SCRIPTING = "scripting"
    CHARACTERS = "characters"
    CHARACTER_REVIEW = "character_review"
    STORYBOARD = "storyboard"
    STORYBOARD_REVIEW = "storyboard_review"
    PRODUCING = "producing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def label(self) -> str:
        return _STATUS_LABELS[self]

    @property
    def is_review(self) -> bool:
        return self in (StoryStatus.CHARACTER_REVIEW, StoryStatus.STORYBOARD_REVIEW)


_ACTIVE_STATUS = {
    PipelineStage.SCRIPT: StoryStatus.SCRIPTING,
    PipelineStage.CHARACTERS: StoryStatus.CHARACTERS,
    PipelineStage.STORYBOARD: StoryStatus.STORYBOARD,
    PipelineStage.VIDEO: StoryStatus.PRODUCING,
}

_REVIEW_STATUS = {
    PipelineStage.CHARACTERS: StoryStatus.CHARACTER_REVIEW,
    PipelineStage.STORYBOARD: StoryStatus.STORYBOARD_REVIEW,
}

_STATUS_LABELS = {
    StoryStatus.PENDING: "Pending",
    StoryStatus.SCRIPTING: "Writing Script",
    StoryStatus.CHARACTERS: "Generating Characters",
    StoryStatus.CHARACTER_REVIEW: "Review Characters",
    StoryStatus.STORYBOARD: "Generating Storyboard",
    StoryStatus.STORYBOARD_REVIEW: "Review Storyboard",
    StoryStatus.PRODUCING: "Producing Video",
    StoryStatus.COMPLETED: "Completed",
    StoryStatus.FAILED: "Failed",
}


class StageState(str, Enum):
    """Derived display status of a single stage."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    COMPLETED = "completed"
    FAILED = "failed"


# =============================================================================
# GENERATION JOBS
# =============================================================================

class VideoStatus(str, Enum):
    """Lifecycle of a clip or final video row."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobState(str, Enum):
    """Provider-neutral state of an external generation job."""
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Provider(str, Enum):
    """External services whose credentials live in the vault."""
    ANTHROPIC = "anthropic"
    NANO_BANANA = "nano_banana"
    KLING = "kling"

    @property
    def label(self) -> str:
        return {"anthropic": "Anthropic", "nano_banana": "Nano Banana", "kling": "Kling"}[self.value]


# =============================================================================
# STORYBOARD & CLIP CONSTANTS
# =============================================================================

FRAME_INTERVAL_SECONDS = 5
MIN_SCENE_DURATION = 2
DEFAULT_SCENE_DURATION = 5

MIN_FRAMES_FOR_VIDEO = 2
MAX_REFERENCE_FRAMES = 3

# Reference URLs on these hosts are unreachable for remote providers
LOCAL_HOST_MARKERS = ("localhost", "127.0.0.1")

# Media store directories, relative to the story
CHARACTER_MEDIA_DIR = "stories/{story_id}/characters"
FRAME_MEDIA_DIR = "stories/{story_id}/storyboard-frames"
VIDEO_MEDIA_DIR = "stories/{story_id}/videos"
