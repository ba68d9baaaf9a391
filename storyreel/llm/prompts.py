"""
Prompt templates.

Provider prompts are opaque payloads to the pipeline; they live here so the
workers only deal with structure.
"""

CHARACTER_EXTRACTION_SYSTEM = """You are a script analyst. Extract all characters (people, creatures, named entities that appear visually) from the script.

Rules:
- Only include characters that appear visually in the story.
- Do NOT include camera directions, sound effects, locations, props, or abstract concepts.
- For each character, provide their name and a detailed visual description (appearance, clothing, distinguishing features).

Return ONLY a valid JSON array, no markdown fences, no extra text."""

CHARACTER_EXTRACTION_USER = """Here is the full script:

{script}

Extract all characters. Return a JSON array:
[
  {{"name": "Character Name", "description": "Detailed visual description of the character..."}}
]"""

SCENE_DURATION_SYSTEM = """You are a professional video director and timing expert. Break the script into its scenes and estimate a realistic duration in seconds for each, based on action, dialogue, pacing and emotional beats.

Rules:
- Each scene should be at least 5 seconds.
- Dialogue runs at roughly 3 words per second.
- Provide a 1-sentence summary of each scene.

Return ONLY a valid JSON array, no markdown fences, no extra text."""

SCENE_DURATION_USER = """Here is the full script:

{script}

Identify every scene, estimate its duration in seconds, and summarize it. Return JSON:
[
  {{"scene": 1, "duration_seconds": 12, "summary": "Brief scene summary..."}}
]"""

FRAME_DESCRIPTION_SYSTEM = """You are a professional storyboard artist. You receive a video script and a frame structure listing exactly which frames are needed (scene, timestamp). Write a detailed visual description for each frame.

Rules:
- Describe only what is VISIBLE: no dialogue, speech bubbles or text overlays.
- Each description is a self-contained snapshot: characters, poses, expressions, camera angle, lighting, background and mood.
- Stay faithful to the script and keep visual continuity between frames.
{character_rules}
Return ONLY a valid JSON array, no markdown fences, no extra text."""

FRAME_CHARACTER_RULES = """
Character identification:
The story has these characters: {names}.
For each frame, list which of these characters (by exact name) are visually present. Use only names from this list.
"""

FRAME_DESCRIPTION_USER = """FULL SCRIPT:
{script}

FRAME STRUCTURE (scene, duration, timestamps, summary):
{structure}

For each frame listed above, write a detailed visual description of that exact moment. Return a JSON array:
[
  {{
    "scene": 1,
    "frames": [
      {{"second": 0, "description": "Detailed visual description...", "characters": ["Name"]}}
    ]
  }}
]

Total frames expected: {total}"""

TRANSITION_PROMPT_SYSTEM = """You are a video director writing prompts for an image-to-video generator. For each transition between two consecutive storyboard frames, write a concise prompt describing the MOTION and ACTION between them.

Rules:
- Focus on movement, camera motion and character actions, not static descriptions.
- Keep each prompt to 1-3 direct, visual sentences.

Return ONLY a valid JSON array of strings, one prompt per transition, in order. No markdown fences."""

TRANSITION_PROMPT_USER = """SCRIPT:
{script}

TRANSITIONS:
{transitions}
Generate a video prompt for each transition above. Return a JSON array of {count} strings."""

FRAME_IMAGE_PROMPT = (
    "Comic book panel, sequential art style, no text or speech bubbles: {description}. "
    "Cinematic composition, vivid colors, detailed illustration."
)

CHARACTER_IMAGE_PROMPT = (
    "Professional character design, full body portrait: {name}. {description}. "
    "High quality, detailed, consistent art style, suitable for animation."
)

DEFAULT_CLIP_PROMPT = "Smooth cinematic transition from frame {from_seq} to frame {to_seq}"


def frame_image_prompt(description: str) -> str:
    return FRAME_IMAGE_PROMPT.format(description=description)


def character_image_prompt(name: str, description: str) -> str:
    return CHARACTER_IMAGE_PROMPT.format(name=name, description=description)


def default_clip_prompt(from_seq: int, to_seq: int) -> str:
    return DEFAULT_CLIP_PROMPT.format(from_seq=from_seq, to_seq=to_seq)
