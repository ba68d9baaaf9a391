"""Pipeline router: per-item character, frame and clip operations."""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.util import get_remote_address

from storyreel.api.deps import get_service
from storyreel.core.logging_config import get_logger
from storyreel.pipelines.service import PipelineService

logger = get_logger("api.pipeline")

router = APIRouter()

# Rate limiter for expensive generation operations
limiter = Limiter(key_func=get_remote_address)


class CharacterRequest(BaseModel):
    name: str = Field(..., max_length=255)
    description: str = Field(..., max_length=1000)


class CharacterUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)


class RegenerateRequest(BaseModel):
    prompt: str = Field(..., max_length=2000)


class ClipRegenerateRequest(BaseModel):
    prompt: Optional[str] = Field(None, max_length=2000)
    duration: Optional[str] = None
    model_name: Optional[str] = None
    mode: Optional[str] = None
    camera_control: Optional[str] = None


# =============================================================================
# CHARACTERS
# =============================================================================

@router.post("/{story_id}/characters", status_code=201)
async def create_character(story_id: int, body: CharacterRequest, service: PipelineService = Depends(get_service)):
    character = service.create_character(story_id, body.name, body.description)
    return {"character": character.to_dict()}


@router.patch("/{story_id}/characters/{character_id}")
async def update_character(
    story_id: int,
    character_id: int,
    body: CharacterUpdateRequest,
    service: PipelineService = Depends(get_service),
):
    character = service.update_character(story_id, character_id, body.name, body.description)
    return {"character": character.to_dict()}


@router.delete("/{story_id}/characters/{character_id}")
async def delete_character(story_id: int, character_id: int, service: PipelineService = Depends(get_service)):
    service.delete_character(story_id, character_id)
    return {"message": "Character deleted."}


@router.post("/{story_id}/characters/{character_id}/regenerate")
@limiter.limit("10/minute")
async def regenerate_character(
    request: Request,
    story_id: int,
    character_id: int,
    body: RegenerateRequest,
    service: PipelineService = Depends(get_service),
):
    service.regenerate_character(story_id, character_id, body.prompt)
    return {"message": "Character regeneration started."}


# =============================================================================
# STORYBOARD FRAMES
# =============================================================================

@router.post("/{story_id}/frames/{frame_id}/regenerate")
@limiter.limit("10/minute")
async def regenerate_frame(
    request: Request,
    story_id: int,
    frame_id: int,
    body: RegenerateRequest,
    service: PipelineService = Depends(get_service),
):
    service.regenerate_frame(story_id, frame_id, body.prompt)
    return {"message": "Frame regeneration started."}


@router.delete("/{story_id}/frames/{frame_id}")
async def delete_frame(story_id: int, frame_id: int, service: PipelineService = Depends(get_service)):
    diff = service.delete_frame(story_id, frame_id)
    result = {"message": "Frame deleted."}
    if diff is not None:
        result["clips"] = {"kept": diff.kept, "created": diff.created, "deleted": diff.deleted}
    return result


# =============================================================================
# CLIPS & FINAL VIDEO
# =============================================================================

@router.post("/{story_id}/clips/generate")
@limiter.limit("2/minute")
async def generate_clips(request: Request, story_id: int, service: PipelineService = Depends(get_service)):
    clip = service.generate_clips(story_id)
    if clip is None:
        return {"message": "No queued mini-videos."}
    return {"message": f"Generating mini-video #{clip.sequence_number}.", "clip": clip.to_dict()}


@router.post("/{story_id}/clips/{clip_id}/regenerate")
@limiter.limit("10/minute")
async def regenerate_clip(
    request: Request,
    story_id: int,
    clip_id: int,
    body: ClipRegenerateRequest,
    service: PipelineService = Depends(get_service),
):
    service.regenerate_clip(
        story_id,
        clip_id,
        body.prompt,
        duration=body.duration,
        model_name=body.model_name,
        mode=body.mode,
        camera_control=body.camera_control,
    )
    return {"message": "Mini-video regeneration started."}


@router.post("/{story_id}/concatenate")
@limiter.limit("2/minute")
async def concatenate(request: Request, story_id: int, service: PipelineService = Depends(get_service)):
    service.concatenate(story_id)
    return {"message": "Video concatenation started."}
