"""Stage workers dispatched by the orchestrator."""

from storyreel.pipelines.workers.base import StageWorker
from storyreel.pipelines.workers.characters import CharacterWorker
from storyreel.pipelines.workers.production import VideoProductionWorker
from storyreel.pipelines.workers.storyboard import StoryboardWorker, calculate_frame_timestamps

__all__ = [
    "StageWorker",
    "CharacterWorker",
    "StoryboardWorker",
    "VideoProductionWorker",
    "calculate_frame_timestamps",
]
