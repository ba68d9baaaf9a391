"""Characters stage: extract the visual cast from the script."""

from storyreel.core.constants import PipelineStage, Provider
from storyreel.core.logging_config import get_logger
from storyreel.llm.script_analyst import ScriptAnalyst
from storyreel.models.entities import Character, Story
from storyreel.pipelines.workers.base import StageWorker

logger = get_logger("pipelines.workers.characters")


class CharacterWorker(StageWorker):
    """
    Extracts ``{name, description}`` pairs and stores one Character each.

    Zero characters is a valid outcome and still completes the stage.
    """

    stage = PipelineStage.CHARACTERS

    def __init__(self, *args, analyst: ScriptAnalyst, **kwargs):
        super().__init__(*args, **kwargs)
        self.analyst = analyst

    async def handle(self, story: Story) -> None:
        self.orchestrator.delete_characters(story)

        if not self.require_script(story):
            return
        ctx = self.context_for(story, Provider.ANTHROPIC)
        if ctx is None:
            return

        result = await self.analyst.extract_characters(ctx, story.full_script)
        self.usage.record_text(
            story.id, Provider.ANTHROPIC.value, "extract_characters",
            result.input_tokens, result.output_tokens,
        )

        if not result.items:
            logger.warning(f"No characters found in script for story {story.id}")

        for spec in result.items:
            self.repository.add_character(Character(
                story_id=story.id,
                name=spec.name,
                description=spec.description,
            ))

        logger.info(f"Story {story.id}: extracted {len(result.items)} character(s)")
        self.orchestrator.complete_stage(story, self.stage)
