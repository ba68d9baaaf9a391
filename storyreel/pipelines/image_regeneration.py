"""
Image Regeneration

Per-item portrait and storyboard-frame regeneration. These never touch
the story's stage; progress lives on the record's annotations
(``regenerating``, ``task_id``, ``error``) and the job is polled with
the same reschedule-based poller as clips.
"""

from abc import abstractmethod
from typing import List, Optional, Union

from storyreel.core.constants import (
    CHARACTER_MEDIA_DIR,
    FRAME_MEDIA_DIR,
    LOCAL_HOST_MARKERS,
    MAX_REFERENCE_FRAMES,
    Provider,
)
from storyreel.core.logging_config import get_logger
from storyreel.core.retry import PollPolicy, RetryConfig
from storyreel.llm.api_clients import CallContext, ImageGenerationClient, JobStatus
from storyreel.llm.prompts import character_image_prompt
from storyreel.models.entities import Character, Story, StoryboardFrame
from storyreel.pipelines.poller import JobPoller, PollTarget
from storyreel.pipelines.task_queue import TaskQueue
from storyreel.storage.credentials import CredentialVault
from storyreel.storage.media_store import LocalMediaStore
from storyreel.storage.repository import StoryRepository
from storyreel.storage.usage import UsageRecorder

logger = get_logger("pipelines.image_regeneration")

ImageRecord = Union[Character, StoryboardFrame]


def is_public_url(url: Optional[str]) -> bool:
    """Provider-reachable reference: local-only URLs are useless to a remote API."""
    return bool(url) and not any(marker in url for marker in LOCAL_HOST_MARKERS)


class ImageRegenerator:
    """Dispatches and tracks portrait and frame image jobs."""

    def __init__(
        self,
        repository: StoryRepository,
        queue: TaskQueue,
        poller: JobPoller,
        image_client: ImageGenerationClient,
        vault: CredentialVault,
        usage: UsageRecorder,
        media_store: LocalMediaStore,
        image_policy: Optional[PollPolicy] = None,
        retry: Optional[RetryConfig] = None,
        timeout: Optional[float] = None,
    ):
        self.repository = repository
        self.queue = queue
        self.poller = poller
        self.image_client = image_client
        self.vault = vault
        self.usage = usage
        self.media_store = media_store
        self.image_policy = image_policy or PollPolicy(interval=5, max_attempts=60, initial_delay=5)
        self.retry = retry or RetryConfig.fixed(3, 30)
        self.timeout = timeout

    def context_for(self, story: Story) -> CallContext:
        api_key = self.vault.require(Provider.NANO_BANANA, story.user_id)
        return CallContext(user_id=story.user_id, api_key=api_key)

    # =========================================================================
    # CHARACTERS
    # =========================================================================

    def regenerate_character(self, character: Character, prompt: str) -> bool:
        """Mark the portrait as regenerating and queue the job."""
        character.annotations.regenerating = True
        character.annotations.error = None
        self.repository.save_character(character)

        return self.queue.dispatch(
            "regenerate-character-image",
            self.generate_character_image,
            character.id,
            prompt,
            retry=self.retry,
            timeout=self.timeout,
            unique_key=f"character-image-{character.id}",
        )

    async def generate_character_image(self, character_id: int, prompt: str) -> None:
        character = self.repository.get_character(character_id)
        if character is None:
            logger.warning(f"Character {character_id} no longer exists, skipping image generation")
            return
        story = self.repository.require_story(character.story_id)

        try:
            task_id = await self.image_client.submit(
                self.context_for(story), character_image_prompt(character.name, prompt)
            )
        except Exception as e:
            logger.error(f"Character {character_id}: image generation failed: {e}")
            character.annotations.fail_job(str(e))
            self.repository.save_character(character)
            raise

        self.usage.record_call(story.id, Provider.NANO_BANANA.value, "generate_character_image", {
            "task_id": task_id,
            "character_id": character.id,
            "regeneration": True,
        })

        character.annotations.start_job(task_id)
        self.repository.save_character(character)
        self.poller.start(CharacterImagePollTarget(self, character.id), task_id, self.image_policy)

    # =========================================================================
    # STORYBOARD FRAMES
    # =========================================================================

    def regenerate_frame(self, frame: StoryboardFrame, prompt: str) -> bool:
        """Replace the frame prompt, mark it regenerating and queue the job."""
        frame.prompt = prompt
        frame.annotations.regenerating = True
        frame.annotations.error = None
        self.repository.save_frame(frame)

        return self.queue.dispatch(
            "regenerate-storyboard-frame",
            self.generate_frame_image,
            frame.id,
            prompt,
            retry=self.retry,
            timeout=self.timeout,
            unique_key=f"frame-image-{frame.id}",
        )

    def frame_reference_urls(self, frame: StoryboardFrame) -> List[str]:
        """
        Reference images for a frame: portraits of the characters it shows
        (every portrait if it names none), then the most recent other frames.
        """
        names = frame.annotations.characters
        portraits = [
            c.reference_url
            for c in self.repository.list_characters(frame.story_id)
            if c.image_url and (not names or c.name in names)
        ]

        others = [
            f for f in reversed(self.repository.list_frames(frame.story_id))
            if f.id != frame.id and f.image_url
        ][:MAX_REFERENCE_FRAMES]

        return [url for url in portraits + [f.reference_url for f in others] if is_public_url(url)]

    async def generate_frame_image(self, frame_id: int, prompt: str) -> None:
        frame = self.repository.get_frame(frame_id)
        if frame is None:
            logger.warning(f"Frame {frame_id} no longer exists, skipping image generation")
            return
        story = self.repository.require_story(frame.story_id)

        try:
            references = self.frame_reference_urls(frame)
            task_id = await self.image_client.submit(self.context_for(story), prompt, references)
        except Exception as e:
            logger.error(f"Frame {frame_id}: image generation failed: {e}")
            frame.annotations.fail_job(str(e))
            self.repository.save_frame(frame)
            raise

        self.usage.record_call(story.id, Provider.NANO_BANANA.value, "generate_storyboard_frame", {
            "task_id": task_id,
            "frame_sequence": frame.sequence_number,
            "regeneration": True,
        })

        frame.annotations.start_job(task_id)
        self.repository.save_frame(frame)
        self.poller.start(FrameImagePollTarget(self, frame.id), task_id, self.image_policy)

    # =========================================================================
    # RESTART
    # =========================================================================

    def resume_polling(self, story_id: int) -> int:
        """Re-arm polling for image jobs left running by a previous process."""
        resumed = 0
        targets = [
            (CharacterImagePollTarget(self, c.id), c) for c in self.repository.list_characters(story_id)
        ] + [
            (FrameImagePollTarget(self, f.id), f) for f in self.repository.list_frames(story_id)
        ]
        for target, record in targets:
            annotations = record.annotations
            if not annotations.regenerating or not annotations.task_id:
                continue
            if self.poller.start(
                target, annotations.task_id, self.image_policy, attempt=annotations.poll_attempts, delay=0
            ):
                resumed += 1
        return resumed


class _ImagePollTarget(PollTarget):
    """Shared completion handling for portrait and frame jobs."""

    label = "Generation"
    media_dir: str

    def __init__(self, regenerator: ImageRegenerator, record_id: int):
        self.regenerator = regenerator
        self.record_id = record_id

    @abstractmethod
    def _record(self) -> Optional[ImageRecord]:
        pass

    @abstractmethod
    def _save(self, record: ImageRecord) -> None:
        pass

    def is_active(self, job_id: str) -> bool:
        record = self._record()
        return (
            record is not None
            and record.annotations.regenerating
            and record.annotations.task_id == job_id
        )

    def record_attempt(self, attempt: int) -> None:
        record = self._record()
        if record is not None:
            record.annotations.poll_attempts = attempt
            self._save(record)

    async def check(self, job_id: str) -> JobStatus:
        record = self._record()
        story = self.regenerator.repository.require_story(record.story_id)
        return await self.regenerator.image_client.poll(self.regenerator.context_for(story), job_id)

    async def on_completed(self, job_id: str, status: JobStatus) -> None:
        record = self._record()
        if not status.result_url:
            raise ValueError("provider reported success without an image URL")

        media_store = self.regenerator.media_store
        stored = await media_store.download(status.result_url, self.media_dir.format(story_id=record.story_id))
        media_store.delete(record.image_path)

        record.image_path = stored.path
        record.image_url = stored.url
        record.annotations.finish_job(status.result_url)
        self._save(record)
        logger.info(f"{self.key}: new image stored at {stored.path}")

    async def on_failed(self, job_id: str, message: str) -> None:
        record = self._record()
        if record is None:
            return
        record.annotations.fail_job(message)
        self._save(record)


class CharacterImagePollTarget(_ImagePollTarget):
    media_dir = CHARACTER_MEDIA_DIR

    @property
    def key(self) -> str:
        return f"character-{self.record_id}"

    def _record(self) -> Optional[Character]:
        return self.regenerator.repository.get_character(self.record_id)

    def _save(self, record: Character) -> None:
        self.regenerator.repository.save_character(record)


class FrameImagePollTarget(_ImagePollTarget):
    media_dir = FRAME_MEDIA_DIR

    @property
    def key(self) -> str:
        return f"frame-{self.record_id}"

    def _record(self) -> Optional[StoryboardFrame]:
        return self.regenerator.repository.get_frame(self.record_id)

    def _save(self, record: StoryboardFrame) -> None:
        self.regenerator.repository.save_frame(record)
