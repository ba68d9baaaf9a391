"""
Pipeline Orchestrator

The stage machine: Script -> Characters -> Storyboard -> Video, with
mandatory review pauses after Characters and Storyboard. The orchestrator
is the only writer of ``Story.status``/``current_stage``; stage workers
talk back to it through ``complete_stage`` and ``fail_stage``.
"""

from functools import partial
from typing import TYPE_CHECKING, Dict, Optional

from storyreel.core.constants import PipelineStage, StageState, StoryStatus, VideoStatus
from storyreel.core.exceptions import InvalidStageTransitionError, PipelineError, PreconditionError
from storyreel.core.logging_config import get_logger
from storyreel.core.retry import RetryConfig
from storyreel.models.entities import Story
from storyreel.pipelines.events import EventBus, StageCompleted
from storyreel.pipelines.stage_status import StageFacts, derive_stage_statuses
from storyreel.pipelines.task_queue import TaskQueue
from storyreel.storage.media_store import LocalMediaStore
from storyreel.storage.repository import StoryRepository

if TYPE_CHECKING:
    from storyreel.pipelines.workers.base import StageWorker

logger = get_logger("pipelines.orchestrator")


class PipelineOrchestrator:
    """Owns stage transitions for every story."""

    def __init__(
        self,
        repository: StoryRepository,
        queue: TaskQueue,
        events: EventBus,
        media_store: Optional[LocalMediaStore] = None,
        stage_retry: Optional[RetryConfig] = None,
        stage_timeout: Optional[float] = None,
    ):
        self.repository = repository
        self.queue = queue
        self.events = events
        self.media_store = media_store
        self.stage_retry = stage_retry or RetryConfig.fixed(3, 30)
        self.stage_timeout = stage_timeout
        self._workers: Dict[PipelineStage, "StageWorker"] = {}

    def register_worker(self, worker: "StageWorker") -> None:
        self._workers[worker.stage] = worker

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def start_pipeline(self, story: Story) -> None:
        if not story.has_script:
            raise PreconditionError("Cannot start pipeline without a finalized script.")
        self.advance_to_stage(story, PipelineStage.CHARACTERS)

    def advance_to_stage(self, story: Story, stage: PipelineStage) -> None:
        """Enter ``stage`` and dispatch its worker. Script has no worker."""
        logger.info(f"Story {story.id}: advancing to stage {stage.value}")

        story.status = stage.story_status()
        story.current_stage = stage
        story.error_message = None
        self.repository.save_story(story)

        if stage == PipelineStage.SCRIPT:
            return

        worker = self._workers.get(stage)
        if worker is None:
            raise PipelineError(f"No worker registered for stage '{stage.value}'")

        self.queue.dispatch(
            f"{stage.value}-worker",
            worker.run,
            story.id,
            retry=self.stage_retry,
            timeout=self.stage_timeout,
            unique_key=worker.unique_key(story.id),
            on_failure=partial(worker.on_exhausted, story.id),
        )

    def complete_stage(self, story: Story, stage: PipelineStage) -> None:
        logger.info(f"Story {story.id}: stage {stage.value} completed")

        review = stage.review_status()
        if review is not None:
            story.status = review
            story.current_stage = stage
            self.repository.save_story(story)
            return

        if stage.next() is not None:
            self.events.emit(StageCompleted(story_id=story.id, stage=stage))
            return

        story.status = StoryStatus.COMPLETED
        story.current_stage = None
        self.repository.save_story(story)

    def fail_stage(self, story: Story, stage: PipelineStage, error: str) -> None:
        logger.error(f"Story {story.id}: stage {stage.value} failed: {error}")
        story.status = StoryStatus.FAILED
        story.current_stage = stage
        story.error_message = f"Failed at {stage.value}: {error}"
        self.repository.save_story(story)

    def revert_to_stage(self, story: Story, target: PipelineStage) -> None:
        """
        Roll back to ``target``, deleting everything strictly downstream.

        Callers check the in-progress and completed-target preconditions
        against ``get_stage_status`` first.
        """
        if target == PipelineStage.VIDEO:
            raise InvalidStageTransitionError(target.value, "the final stage cannot be reverted to")

        logger.info(f"Story {story.id}: reverting to stage {target.value}")

        if target == PipelineStage.SCRIPT:
            self.delete_characters(story)
        if target in (PipelineStage.SCRIPT, PipelineStage.CHARACTERS):
            self.delete_frames(story)
        self.delete_videos(story)

        if target == PipelineStage.SCRIPT:
            story.status = StoryStatus.SCRIPTING
            story.full_script = None
        else:
            story.status = target.review_status()
        story.current_stage = target
        story.error_message = None
        self.repository.save_story(story)

    # =========================================================================
    # CASCADES
    # =========================================================================

    def _discard_media(self, *paths) -> None:
        if self.media_store is None:
            return
        for path in paths:
            if path:
                self.media_store.delete(path)

    def delete_characters(self, story: Story) -> None:
        """Drop a story's characters together with their stored portraits."""
        for character in self.repository.list_characters(story.id):
            self._discard_media(character.image_path)
        count = self.repository.delete_characters(story.id)
        logger.debug(f"Story {story.id}: deleted {count} character(s)")

    def delete_frames(self, story: Story) -> None:
        for frame in self.repository.list_frames(story.id):
            self._discard_media(frame.image_path)
        count = self.repository.delete_frames(story.id)
        logger.debug(f"Story {story.id}: deleted {count} frame(s)")

    def delete_videos(self, story: Story) -> None:
        for clip in self.repository.list_clips(story.id):
            self._discard_media(clip.video_path)
        final = self.repository.get_final_video(story.id)
        if final is not None:
            self._discard_media(final.video_path)
        count = self.repository.delete_videos(story.id)
        logger.debug(f"Story {story.id}: deleted {count} video(s)")

    # =========================================================================
    # STATUS
    # =========================================================================

    def stage_facts(self, story: Story) -> StageFacts:
        final = self.repository.get_final_video(story.id)
        return StageFacts(
            has_script=story.has_script,
            has_characters=bool(self.repository.list_characters(story.id)),
            has_frames=bool(self.repository.list_frames(story.id)),
            has_final_video=final is not None and final.status == VideoStatus.COMPLETED,
        )

    def get_stage_status(self, story: Story) -> Dict[PipelineStage, StageState]:
        """Fresh, data-driven status of every stage."""
        return derive_stage_statuses(self.stage_facts(story), story.status, story.current_stage)


class AdvancePipelineListener:
    """Moves a story to the next stage when one completes."""

    def __init__(self, orchestrator: PipelineOrchestrator):
        self.orchestrator = orchestrator

    def __call__(self, event: StageCompleted) -> None:
        next_stage = event.stage.next()
        if next_stage is None:
            return
        story = self.orchestrator.repository.require_story(event.story_id)
        self.orchestrator.advance_to_stage(story, next_stage)

    def attach(self, events: EventBus) -> str:
        return events.subscribe(StageCompleted, self)

