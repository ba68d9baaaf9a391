"""
Script Analyst

Structured extraction over the text generation client: characters, scene
timing, per-frame visual descriptions and clip transition prompts.

Responses are expected to be strict JSON. Markdown code fences are
stripped; anything that still fails to parse, or an empty result where one
is required, raises ``LLMResponseError``.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field, ValidationError

from storyreel.core.exceptions import LLMResponseError
from storyreel.core.logging_config import get_logger
from storyreel.llm import prompts
from storyreel.llm.api_clients import CallContext, TextGenerationClient, TextResponse

logger = get_logger("llm.script_analyst")

T = TypeVar("T")

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*")
_FENCE_CLOSE = re.compile(r"\s*```$")


def strip_code_fences(text: str) -> str:
    text = _FENCE_OPEN.sub("", (text or "").strip())
    return _FENCE_CLOSE.sub("", text)


def parse_json_response(text: str, what: str) -> Any:
    """Parse a JSON payload, tolerating a surrounding code fence."""
    cleaned = strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse {what} JSON: {cleaned[:500]}")
        raise LLMResponseError(f"Failed to parse {what} from text generation response.", {"error": str(e)}) from e


# =============================================================================
# RESULT MODELS
# =============================================================================

class CharacterSpec(BaseModel):
    name: str
    description: str


class SceneEstimate(BaseModel):
    scene: int
    duration_seconds: Optional[float] = None
    summary: str = ""


class FramePanel(BaseModel):
    """One frame description, flattened out of its scene group."""
    panel_number: int
    description: str = ""
    scene: int = 0
    second: int = 0
    characters: List[str] = Field(default_factory=list)


@dataclass
class SceneFrames:
    """Scene timing plus the timestamps that need a frame."""
    scene: int
    duration_seconds: int
    summary: str
    frames: List[int] = field(default_factory=list)


@dataclass
class Transition:
    """A consecutive frame pair that will become one clip."""
    from_seq: int
    to_seq: int
    from_desc: str
    to_desc: str


@dataclass
class Extraction(Generic[T]):
    """Parsed items plus the token counts of the call that produced them."""
    items: List[T]
    input_tokens: int = 0
    output_tokens: int = 0

    @classmethod
    def of(cls, items: List[T], response: TextResponse) -> "Extraction[T]":
        return cls(items=items, input_tokens=response.input_tokens, output_tokens=response.output_tokens)


# =============================================================================
# ANALYST
# =============================================================================

class ScriptAnalyst:
    """Runs the structured extraction prompts against a text client."""

    def __init__(self, client: TextGenerationClient, max_tokens: int = 4096, long_max_tokens: int = 8192):
        self.client = client
        self.max_tokens = max_tokens
        self.long_max_tokens = long_max_tokens

    async def _ask(self, ctx: CallContext, system: str, user: str, max_tokens: int) -> TextResponse:
        return await self.client.complete(
            ctx,
            [{"role": "user", "content": user}],
            system=system,
            max_tokens=max_tokens,
        )

    async def extract_characters(self, ctx: CallContext, script: str) -> Extraction[CharacterSpec]:
        """Visual characters in the script. An empty list is a valid answer."""
        response = await self._ask(
            ctx,
            prompts.CHARACTER_EXTRACTION_SYSTEM,
            prompts.CHARACTER_EXTRACTION_USER.format(script=script),
            self.max_tokens,
        )
        data = parse_json_response(response.text, "characters")
        if not isinstance(data, list):
            raise LLMResponseError("Failed to parse characters from text generation response.")

        characters = []
        for entry in data:
            if not isinstance(entry, dict):
                continue
            name = str(entry.get("name") or "").strip()
            description = str(entry.get("description") or "").strip()
            if name and description:
                characters.append(CharacterSpec(name=name, description=description))

        return Extraction.of(characters, response)

    async def estimate_scene_durations(self, ctx: CallContext, script: str) -> Extraction[SceneEstimate]:
        response = await self._ask(
            ctx,
            prompts.SCENE_DURATION_SYSTEM,
            prompts.SCENE_DURATION_USER.format(script=script),
            self.max_tokens,
        )
        data = parse_json_response(response.text, "scene durations")
        if not isinstance(data, list) or not data:
            raise LLMResponseError("Failed to parse scene durations from text generation response.")

        scenes = []
        for index, entry in enumerate(data, start=1):
            if not isinstance(entry, dict):
                raise LLMResponseError(f"Scene entry {index} is not an object.")
            try:
                scenes.append(SceneEstimate.model_validate({"scene": index, **entry}))
            except ValidationError as e:
                raise LLMResponseError(f"Invalid scene entry {index}.", {"error": str(e)}) from e

        return Extraction.of(scenes, response)

    async def generate_frame_descriptions(
        self,
        ctx: CallContext,
        script: str,
        structure: List[SceneFrames],
        character_names: Optional[List[str]] = None,
    ) -> Extraction[FramePanel]:
        """
        One batched call for every timestamp of every scene.

        The scene-grouped answer is flattened into panels numbered from 1.
        """
        lines = []
        total = 0
        for scene in structure:
            total += len(scene.frames)
            stamps = ", ".join(f"{t}s" for t in scene.frames)
            lines.append(
                f"Scene {scene.scene} ({scene.duration_seconds}s, {len(scene.frames)} frames at: {stamps}): "
                f"{scene.summary}"
            )

        character_rules = ""
        if character_names:
            character_rules = prompts.FRAME_CHARACTER_RULES.format(names=", ".join(character_names))

        response = await self._ask(
            ctx,
            prompts.FRAME_DESCRIPTION_SYSTEM.format(character_rules=character_rules),
            prompts.FRAME_DESCRIPTION_USER.format(script=script, structure="\n".join(lines), total=total),
            self.long_max_tokens,
        )
        data = parse_json_response(response.text, "frame descriptions")
        if not isinstance(data, list) or not data:
            raise LLMResponseError("Failed to parse frame descriptions from text generation response.")

        panels = []
        for group in data:
            if not isinstance(group, dict):
                continue
            for frame in group.get("frames") or []:
                if not isinstance(frame, dict):
                    continue
                names = frame.get("characters") or []
                panels.append(FramePanel(
                    panel_number=len(panels) + 1,
                    description=str(frame.get("description") or ""),
                    scene=int(group.get("scene") or 0),
                    second=int(frame.get("second") or 0),
                    characters=[str(n) for n in names if isinstance(n, str)],
                ))

        if not panels:
            logger.error("No panels extracted from frame descriptions")
            raise LLMResponseError("Failed to extract panels from text generation response.")

        return Extraction.of(panels, response)

    async def generate_transition_prompts(
        self,
        ctx: CallContext,
        script: str,
        transitions: List[Transition],
    ) -> Extraction[str]:
        """
        One motion prompt per transition.

        A count mismatch is not fatal: usable prompts are kept in order and the
        rest are filled with the default transition prompt.
        """
        text = ""
        for number, t in enumerate(transitions, start=1):
            text += f"Transition {number} (Frame {t.from_seq} -> Frame {t.to_seq}):\n"
            text += f"  FROM: {t.from_desc}\n"
            text += f"  TO:   {t.to_desc}\n\n"

        response = await self._ask(
            ctx,
            prompts.TRANSITION_PROMPT_SYSTEM,
            prompts.TRANSITION_PROMPT_USER.format(script=script, transitions=text, count=len(transitions)),
            self.max_tokens,
        )

        try:
            data = parse_json_response(response.text, "transition prompts")
        except LLMResponseError:
            data = None

        if isinstance(data, list) and len(data) == len(transitions) and all(isinstance(p, str) for p in data):
            return Extraction.of(list(data), response)

        got = len(data) if isinstance(data, list) else 0
        logger.warning(f"Video prompt count mismatch (expected {len(transitions)}, got {got}), using fallback")

        usable = [p for p in data if isinstance(p, str)] if isinstance(data, list) else []
        result = []
        for index, t in enumerate(transitions):
            if index < len(usable) and usable[index].strip():
                result.append(usable[index])
            else:
                result.append(prompts.default_clip_prompt(t.from_seq, t.to_seq))

        return Extraction.of(result, response)
