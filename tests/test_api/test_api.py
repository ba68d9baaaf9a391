"""
Tests for the HTTP API

Tests for storyreel/api/main.py and storyreel/api/routers/
"""

import httpx
import pytest

from storyreel.api.main import create_app
from storyreel.core.constants import VERSION


def api_client(service) -> httpx.AsyncClient:
    app = create_app(service, rate_limit=False)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


class TestHealth:
    """Tests for the health endpoint."""

    @pytest.mark.asyncio
    async def test_health(self, service):
        """Test the health check reports the version."""
        async with api_client(service) as client:
            response = await client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "version": VERSION}


class TestStoriesRouter:
    """Tests for story and stage endpoints."""

    @pytest.mark.asyncio
    async def test_create_and_fetch(self, service):
        """Test a created story can be read back with its stages."""
        async with api_client(service) as client:
            created = await client.post("/api/stories", json={"user_id": 1, "title": "The Lighthouse"})
            story_id = created.json()["id"]
            fetched = await client.get(f"/api/stories/{story_id}")

        assert created.status_code == 201
        assert created.json()["status"] == "pending"
        body = fetched.json()
        assert body["story"]["title"] == "The Lighthouse"
        assert [s["status"] for s in body["stages"]] == ["pending"] * 4
        assert body["characters"] == []
        assert body["final_video"] is None

    @pytest.mark.asyncio
    async def test_unknown_story(self, service):
        """Test unknown ids map to 404."""
        async with api_client(service) as client:
            response = await client.get("/api/stories/99")

        assert response.status_code == 404
        assert response.json() == {"detail": "Story not found: 99"}

    @pytest.mark.asyncio
    async def test_precondition_maps_to_422(self, driver):
        """Test rejected operations map to 422 with their message."""
        story = driver.new_story(script=None)

        async with api_client(driver.service) as client:
            start = await client.post(f"/api/stories/{story.id}/start")
            revert = await client.post(f"/api/stories/{story.id}/revert/editing")

        assert start.status_code == 422
        assert start.json() == {"detail": "Script must be finalized first."}
        assert revert.json() == {"detail": "Invalid pipeline stage."}

    @pytest.mark.asyncio
    async def test_pipeline_through_api(self, driver):
        """Test script, start and both approvals over HTTP."""
        service = driver.service
        async with api_client(service) as client:
            story_id = (await client.post("/api/stories", json={"user_id": 1, "title": "The Lighthouse"})).json()["id"]
            script = await client.post(f"/api/stories/{story_id}/script", json={"script": "INT. LIGHTHOUSE - NIGHT"})
            assert script.json()["status"] == "scripting"

            driver.expect_characters()
            started = await client.post(f"/api/stories/{story_id}/start")
            assert started.json()["message"] == "Pipeline started!"
            await service.queue.drain()

            stages = (await client.get(f"/api/stories/{story_id}/stages")).json()["stages"]
            assert stages[1] == {"stage": "characters", "label": "Characters", "status": "review"}

            driver.expect_storyboard()
            approved = await client.post(f"/api/stories/{story_id}/approve-characters")
            assert approved.status_code == 200
            await service.queue.drain()

            body = (await client.get(f"/api/stories/{story_id}")).json()

        assert body["story"]["status"] == "storyboard_review"
        assert len(body["frames"]) == 3

    @pytest.mark.asyncio
    async def test_revert(self, driver):
        """Test revert over HTTP."""
        story = await driver.to_storyboard_review()

        async with api_client(driver.service) as client:
            response = await client.post(f"/api/stories/{story.id}/revert/characters")

        assert response.status_code == 200
        assert response.json()["message"] == "Reverted to characters stage."
        assert response.json()["story"]["status"] == "character_review"


class TestPipelineRouter:
    """Tests for per-item endpoints."""

    @pytest.mark.asyncio
    async def test_character_crud(self, driver):
        """Test characters can be added, edited and removed during review."""
        story = await driver.to_character_review()
        base = f"/api/stories/{story.id}/characters"

        async with api_client(driver.service) as client:
            created = await client.post(base, json={"name": "Old Keeper", "description": "White beard"})
            character_id = created.json()["character"]["id"]
            patched = await client.patch(f"{base}/{character_id}", json={"name": "Keeper"})
            deleted = await client.delete(f"{base}/{character_id}")
            await driver.settle()

        assert created.status_code == 201
        assert patched.json()["character"]["name"] == "Keeper"
        assert deleted.json() == {"message": "Character deleted."}
        assert [c.name for c in driver.repository.list_characters(story.id)] == ["Mara", "Tobin"]

    @pytest.mark.asyncio
    async def test_delete_frame_reports_chain(self, driver):
        """Test the clip diff is returned when clips exist."""
        story = await driver.to_clips()
        first_clip, last_clip = driver.repository.list_clips(story.id)
        frame_id = driver.repository.list_frames(story.id)[-1].id

        async with api_client(driver.service) as client:
            response = await client.delete(f"/api/stories/{story.id}/frames/{frame_id}")

        body = response.json()
        assert body["message"] == "Frame deleted."
        assert body["clips"] == {"kept": [first_clip.id], "created": [], "deleted": [last_clip.id]}

    @pytest.mark.asyncio
    async def test_regenerate_frame(self, driver):
        """Test frame regeneration is accepted and queued."""
        story = await driver.to_storyboard_review()
        frame_id = driver.repository.list_frames(story.id)[0].id

        async with api_client(driver.service) as client:
            response = await client.post(
                f"/api/stories/{story.id}/frames/{frame_id}/regenerate", json={"prompt": "Mara at the door"}
            )
            await driver.settle()

        assert response.json() == {"message": "Frame regeneration started."}
        assert driver.repository.get_frame(frame_id).image_url is not None

    @pytest.mark.asyncio
    async def test_generate_clips_and_concatenate(self, driver):
        """Test the clip chain runs and concatenation is refused until clips exist."""
        story = await driver.to_clips()

        async with api_client(driver.service) as client:
            early = await client.post(f"/api/stories/{story.id}/concatenate")
            generated = await client.post(f"/api/stories/{story.id}/clips/generate")
            await driver.settle()
            body = (await client.get(f"/api/stories/{story.id}")).json()

        assert early.status_code == 422
        assert early.json() == {"detail": "All mini-videos must be completed before concatenation."}
        assert generated.json()["message"] == "Generating mini-video #1."
        assert body["story"]["status"] == "completed"
        assert body["final_video"]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_regenerate_clip_validation(self, driver):
        """Test invalid clip parameters are rejected with 422."""
        story = await driver.to_clips()
        clip_id = driver.repository.list_clips(story.id)[0].id

        async with api_client(driver.service) as client:
            response = await client.post(
                f"/api/stories/{story.id}/clips/{clip_id}/regenerate", json={"duration": "7"}
            )

        assert response.status_code == 422
        assert response.json() == {"detail": "Invalid duration: 7"}
