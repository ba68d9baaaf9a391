"""
Stage Worker Base

Every stage worker follows the same shape: clear this stage's previous
output, check preconditions, call generation clients, persist, then report
to the orchestrator. Unexpected errors are routed through ``fail_stage`` and
re-raised so the task queue can log and retry the whole worker.
"""

from abc import ABC, abstractmethod
from typing import Optional

from storyreel.core.constants import PipelineStage, Provider
from storyreel.core.exceptions import MissingCredentialError
from storyreel.core.logging_config import get_logger
from storyreel.llm.api_clients import CallContext
from storyreel.models.entities import Story
from storyreel.pipelines.orchestrator import PipelineOrchestrator
from storyreel.pipelines.task_queue import TaskTimeoutError
from storyreel.storage.credentials import CredentialVault
from storyreel.storage.repository import StoryRepository
from storyreel.storage.usage import UsageRecorder

logger = get_logger("pipelines.workers")


class StageWorker(ABC):
    """Base class for the Characters, Storyboard and Video workers."""

    stage: PipelineStage

    def __init__(
        self,
        repository: StoryRepository,
        orchestrator: PipelineOrchestrator,
        vault: CredentialVault,
        usage: UsageRecorder,
    ):
        self.repository = repository
        self.orchestrator = orchestrator
        self.vault = vault
        self.usage = usage

    def unique_key(self, story_id: int) -> str:
        """At most one run of this stage per story is in flight."""
        return f"{self.stage.value}-{story_id}"

    async def run(self, story_id: int) -> None:
        story = self.repository.get_story(story_id)
        if story is None:
            logger.error(f"{self.stage.label} worker: story {story_id} not found")
            return

        try:
            await self.handle(story)
        except Exception as e:
            logger.error(f"{self.stage.label} worker failed for story {story.id}: {e}")
            self.orchestrator.fail_stage(story, self.stage, str(e))
            raise

    def on_exhausted(self, story_id: int, error: Exception) -> None:
        """Queue gave up on this worker; timeouts never reached ``run``'s handler."""
        if not isinstance(error, TaskTimeoutError):
            return
        story = self.repository.get_story(story_id)
        if story is not None:
            self.orchestrator.fail_stage(story, self.stage, str(error))

    @abstractmethod
    async def handle(self, story: Story) -> None:
        pass

    def context_for(self, story: Story, provider: Provider) -> Optional[CallContext]:
        """Call context for the story owner, or fail the stage if the key is missing."""
        try:
            api_key = self.vault.require(provider, story.user_id)
        except MissingCredentialError as e:
            self.orchestrator.fail_stage(story, self.stage, str(e))
            return None
        return CallContext(user_id=story.user_id, api_key=api_key)

    def require_script(self, story: Story) -> bool:
        if story.has_script:
            return True
        logger.warning(f"{self.stage.label} worker: story {story.id} has no script")
        self.orchestrator.fail_stage(story, self.stage, "No finalized script available.")
        return False
