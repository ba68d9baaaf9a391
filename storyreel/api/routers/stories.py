"""Stories router: story records, the script, and the stage machine."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.util import get_remote_address

from storyreel.api.deps import get_service
from storyreel.core.logging_config import get_logger
from storyreel.models.entities import Story
from storyreel.pipelines.service import PipelineService

logger = get_logger("api.stories")

router = APIRouter()

# Rate limiter for pipeline starts
limiter = Limiter(key_func=get_remote_address)


class CreateStoryRequest(BaseModel):
    user_id: Any
    title: str = Field(..., max_length=255)
    synopsis: Optional[str] = None


class ScriptRequest(BaseModel):
    script: str


def story_payload(service: PipelineService, story: Story) -> Dict[str, Any]:
    """Story with its stage overview and child records."""
    repository = service.repository
    final = repository.get_final_video(story.id)
    return {
        "story": story.to_dict(),
        "stages": service.stage_overview(story.id),
        "characters": [c.to_dict() for c in repository.list_characters(story.id)],
        "frames": [f.to_dict() for f in repository.list_frames(story.id)],
        "clips": [v.to_dict() for v in repository.list_clips(story.id)],
        "final_video": final.to_dict() if final else None,
    }


@router.post("", status_code=201)
async def create_story(body: CreateStoryRequest, service: PipelineService = Depends(get_service)):
    story = service.create_story(body.user_id, body.title, body.synopsis)
    return story.to_dict()


@router.get("/{story_id}")
async def get_story(story_id: int, service: PipelineService = Depends(get_service)):
    return story_payload(service, service.get_story(story_id))


@router.post("/{story_id}/script")
async def finalize_script(story_id: int, body: ScriptRequest, service: PipelineService = Depends(get_service)):
    story = service.finalize_script(story_id, body.script)
    return story.to_dict()


@router.post("/{story_id}/start")
@limiter.limit("2/minute")
async def start_pipeline(request: Request, story_id: int, service: PipelineService = Depends(get_service)):
    """Start the pipeline at the Characters stage."""
    story = service.start(story_id)
    logger.info(f"Pipeline started for story {story_id}")
    return {"message": "Pipeline started!", "story": story.to_dict()}


@router.get("/{story_id}/stages")
async def stage_status(story_id: int, service: PipelineService = Depends(get_service)):
    return {"stages": service.stage_overview(story_id)}


@router.post("/{story_id}/approve-characters")
async def approve_characters(story_id: int, service: PipelineService = Depends(get_service)):
    story = service.approve_characters(story_id)
    return {"message": "Characters approved! Starting storyboard generation.", "story": story.to_dict()}


@router.post("/{story_id}/approve-storyboard")
async def approve_storyboard(story_id: int, service: PipelineService = Depends(get_service)):
    story = service.approve_storyboard(story_id)
    return {"message": "Storyboard approved! Starting video generation.", "story": story.to_dict()}


@router.post("/{story_id}/revert/{stage}")
async def revert_to_stage(story_id: int, stage: str, service: PipelineService = Depends(get_service)):
    story = service.revert(story_id, stage)
    return {"message": f"Reverted to {stage} stage.", "story": story.to_dict()}
