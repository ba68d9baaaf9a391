"""
Tests for Pipeline Service

Tests for storyreel/pipelines/service.py
"""

import pytest

from storyreel.core.constants import PipelineStage, Provider, StoryStatus, VideoStatus
from storyreel.core.exceptions import PreconditionError, RecordNotFoundError
from storyreel.pipelines.service import clean_clip_params, create_pipeline
from storyreel.storage.json_repository import JsonStoryRepository


def overview(service, story_id):
    return {row["stage"]: row["status"] for row in service.stage_overview(story_id)}


class TestHappyPath:
    """Tests for a story run end to end."""

    @pytest.mark.asyncio
    async def test_full_run(self, driver):
        """Test a story goes from script to a completed final video."""
        story = await driver.to_completed()

        assert story.status == StoryStatus.COMPLETED
        assert overview(driver.service, story.id) == {
            "script": "completed",
            "characters": "completed",
            "storyboard": "completed",
            "video": "completed",
        }

    @pytest.mark.asyncio
    async def test_overview_during_review(self, driver):
        """Test the review stage reports review and later stages pending."""
        story = await driver.to_character_review()

        rows = driver.service.stage_overview(story.id)
        assert [row["label"] for row in rows] == ["Script", "Characters", "Storyboard", "Video"]
        assert overview(driver.service, story.id) == {
            "script": "completed",
            "characters": "review",
            "storyboard": "pending",
            "video": "pending",
        }

    @pytest.mark.asyncio
    async def test_auto_generate_clips(self, pipeline_factory):
        """Test clips start on their own when auto generation is enabled."""
        driver = pipeline_factory(auto_generate_clips=True)

        story = await driver.to_clips()

        assert story.status == StoryStatus.COMPLETED
        assert driver.repository.get_final_video(story.id) is not None


class TestScript:
    """Tests for script entry and pipeline start."""

    def test_unknown_story(self, service):
        """Test unknown ids raise RecordNotFoundError."""
        with pytest.raises(RecordNotFoundError, match="Story not found: 99"):
            service.get_story(99)

    def test_begin_scripting(self, driver):
        """Test a pending story enters scripting, repeatedly if asked."""
        story = driver.new_story(script=None)
        assert story.status == StoryStatus.PENDING

        driver.service.begin_scripting(story.id)
        driver.service.begin_scripting(story.id)

        assert story.status == StoryStatus.SCRIPTING
        assert story.current_stage == PipelineStage.SCRIPT

    def test_finalize_requires_text(self, driver):
        """Test a blank script is rejected."""
        story = driver.new_story(script=None)

        with pytest.raises(PreconditionError, match="Script cannot be empty."):
            driver.service.finalize_script(story.id, "   ")

    def test_start_requires_script(self, driver):
        """Test the pipeline cannot start without a script."""
        story = driver.new_story(script=None)

        with pytest.raises(PreconditionError, match="Script must be finalized first."):
            driver.service.start(story.id)

    @pytest.mark.asyncio
    async def test_script_locked_after_start(self, driver):
        """Test scripting operations are rejected once the pipeline runs."""
        story = await driver.to_character_review()

        with pytest.raises(PreconditionError, match="finalized before the pipeline starts"):
            driver.service.finalize_script(story.id, "New script")
        with pytest.raises(PreconditionError, match="can only begin on a pending story"):
            driver.service.begin_scripting(story.id)


class TestReviewGates:
    """Tests for the two human approval checkpoints."""

    @pytest.mark.asyncio
    async def test_approve_outside_review(self, driver):
        """Test approvals are only accepted at their checkpoint."""
        story = await driver.to_character_review()

        with pytest.raises(PreconditionError, match="Storyboard is not awaiting review."):
            driver.service.approve_storyboard(story.id)

        driver.expect_storyboard()
        driver.service.approve_characters(story.id)
        await driver.settle()

        with pytest.raises(PreconditionError, match="Characters are not awaiting review."):
            driver.service.approve_characters(story.id)

    @pytest.mark.asyncio
    async def test_approve_storyboard_requires_video_key(self, driver, vault):
        """Test video production needs the owner's video key."""
        story = await driver.to_storyboard_review()
        vault.remove(Provider.KLING, 1)

        with pytest.raises(PreconditionError, match="Kling API key not configured"):
            driver.service.approve_storyboard(story.id)
        assert story.status == StoryStatus.STORYBOARD_REVIEW

    @pytest.mark.asyncio
    async def test_generate_clips_requires_video_key(self, driver, vault):
        """Test clip generation needs the owner's video key."""
        story = await driver.to_clips()
        vault.remove(Provider.KLING, 1)

        with pytest.raises(PreconditionError, match="before generating video"):
            driver.service.generate_clips(story.id)

    @pytest.mark.asyncio
    async def test_edit_characters_during_review(self, driver):
        """Test characters can be renamed, deleted and given an uploaded image."""
        story = await driver.to_character_review()
        mara, tobin = driver.repository.list_characters(story.id)

        driver.service.update_character(story.id, mara.id, name="Mara Quill")
        driver.service.upload_character_image(story.id, mara.id, b"portrait", "png")
        driver.service.delete_character(story.id, tobin.id)

        assert [c.name for c in driver.repository.list_characters(story.id)] == ["Mara Quill"]
        assert driver.service.media_store.absolute_path(mara.image_path).read_bytes() == b"portrait"

    @pytest.mark.asyncio
    async def test_failed_stage_reported(self, driver):
        """Test a failed stage shows up in the overview."""
        story = await driver.to_character_review(characters="not json at all")

        assert story.status == StoryStatus.FAILED
        assert overview(driver.service, story.id)["characters"] == "failed"


class TestRevert:
    """Tests for revert preconditions and effects."""

    @pytest.mark.asyncio
    async def test_revert_to_characters(self, driver):
        """Test reverting from storyboard review deletes the frames."""
        story = await driver.to_storyboard_review()

        driver.service.revert(story.id, "characters")

        assert story.status == StoryStatus.CHARACTER_REVIEW
        assert story.current_stage == PipelineStage.CHARACTERS
        assert driver.repository.list_frames(story.id) == []
        assert len(driver.repository.list_characters(story.id)) == 2

    @pytest.mark.asyncio
    async def test_revert_to_script(self, driver):
        """Test reverting to the script clears everything downstream."""
        story = await driver.to_character_review()

        driver.service.revert(story.id, PipelineStage.SCRIPT)

        assert story.status == StoryStatus.SCRIPTING
        assert story.full_script is None
        assert driver.repository.list_characters(story.id) == []

    @pytest.mark.asyncio
    async def test_revert_completed_story(self, driver):
        """Test a completed story can go back to storyboard review."""
        story = await driver.to_completed()

        driver.service.revert(story.id, "storyboard")

        assert story.status == StoryStatus.STORYBOARD_REVIEW
        assert driver.repository.list_clips(story.id) == []
        assert driver.repository.get_final_video(story.id) is None
        assert len(driver.repository.list_frames(story.id)) == 3

    @pytest.mark.asyncio
    async def test_revert_after_failure(self, driver):
        """Test a failed stage can be rolled back to the last review."""
        story = await driver.to_character_review()
        driver.expect_storyboard(durations=[])
        driver.service.approve_characters(story.id)
        await driver.settle()
        assert story.status == StoryStatus.FAILED

        driver.service.revert(story.id, "characters")

        assert story.status == StoryStatus.CHARACTER_REVIEW
        assert story.error_message is None

    @pytest.mark.asyncio
    async def test_revert_rejections(self, driver):
        """Test invalid, final and not-yet-completed targets are rejected."""
        story = await driver.to_character_review()

        with pytest.raises(PreconditionError, match="Invalid pipeline stage."):
            driver.service.revert(story.id, "editing")
        with pytest.raises(PreconditionError, match="Cannot revert to the final stage."):
            driver.service.revert(story.id, "video")
        with pytest.raises(PreconditionError, match="Can only revert stages that have been completed."):
            driver.service.revert(story.id, "storyboard")

    @pytest.mark.asyncio
    async def test_revert_while_in_progress(self, driver):
        """Test nothing is reverted while a worker is running."""
        story = driver.new_story()
        driver.expect_characters()
        driver.service.start(story.id)

        with pytest.raises(PreconditionError, match="Cannot revert while a stage is in progress."):
            driver.service.revert(story.id, "script")

        await driver.settle()
        assert story.status == StoryStatus.CHARACTER_REVIEW


class TestFinalVideo:
    """Tests for concatenation and provider-rendered final videos."""

    @pytest.mark.asyncio
    async def test_concatenate_preconditions(self, driver):
        """Test concatenation needs every clip completed."""
        story = await driver.to_storyboard_review()
        with pytest.raises(PreconditionError, match="No mini-videos to concatenate."):
            driver.service.concatenate(story.id)

        driver.give_frames_images(story)
        driver.expect_clip_prompts()
        driver.service.approve_storyboard(story.id)
        await driver.settle()

        with pytest.raises(PreconditionError, match="All mini-videos must be completed before concatenation."):
            driver.service.concatenate(story.id)

    @pytest.mark.asyncio
    async def test_concatenation_failure_and_retry(self, driver, runner):
        """Test an encode failure fails the stage and a manual retry recovers."""
        runner.fail_encode = True
        story = await driver.to_completed()

        assert story.status == StoryStatus.FAILED
        assert story.error_message == (
            "Failed at video: Video concatenation failed: ffmpeg failed: encoder exploded"
        )
        assert driver.repository.get_final_video(story.id) is None

        runner.fail_encode = False
        assert driver.service.concatenate(story.id) is True
        await driver.settle()

        assert story.status == StoryStatus.COMPLETED
        assert driver.repository.get_final_video(story.id) is not None

    @pytest.mark.asyncio
    async def test_track_final_job(self, driver):
        """Test a provider-rendered final video is polled and stored by URL."""
        story = await driver.to_clips()

        video = driver.service.track_final_job(story.id, "render-1")
        assert video.status == VideoStatus.PROCESSING
        await driver.settle()

        assert video.status == VideoStatus.COMPLETED
        assert video.video_url == "https://cdn.example.com/render-1.mp4"
        assert video.video_path is None
        assert story.status == StoryStatus.COMPLETED


class TestResume:
    """Tests for re-arming work after a restart."""

    @pytest.mark.asyncio
    async def test_resume_interrupted_stage(self, driver):
        """Test a stage left running is dispatched again."""
        story = driver.new_story()
        story.status = StoryStatus.CHARACTERS
        story.current_stage = PipelineStage.CHARACTERS
        driver.repository.save_story(story)
        driver.expect_characters()

        assert driver.service.resume() == 1
        await driver.settle()

        assert story.status == StoryStatus.CHARACTER_REVIEW

    @pytest.mark.asyncio
    async def test_resume_skips_settled_stories(self, driver):
        """Test review, scripting and produced stories are left alone."""
        driver.new_story()
        await driver.to_character_review()
        await driver.to_clips()

        assert driver.service.resume() == 0


class TestWiring:
    """Tests for create_pipeline and clip parameter cleaning."""

    def test_json_repository_from_settings(self, settings, vault, text_client, image_client, video_client, runner,
                                           temp_dir):
        """Test a data file switches the repository to the JSON store."""
        service = create_pipeline(
            settings.model_copy(update={"data_file": str(temp_dir / "stories.json")}),
            vault=vault,
            text_client=text_client,
            image_client=image_client,
            video_client=video_client,
            runner=runner,
        )

        assert isinstance(service.repository, JsonStoryRepository)

    def test_clean_clip_params(self):
        """Test empty overrides are dropped and values stringified."""
        assert clean_clip_params({"duration": 10, "mode": "", "camera_control": None}) == {"duration": "10"}
