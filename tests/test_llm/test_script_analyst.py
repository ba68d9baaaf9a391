"""
Tests for Script Analyst

Tests for storyreel/llm/script_analyst.py
"""

import pytest

from storyreel.core.exceptions import LLMResponseError
from storyreel.llm.api_clients import CallContext
from storyreel.llm.script_analyst import ScriptAnalyst, SceneFrames, Transition, strip_code_fences

CTX = CallContext(user_id=1, api_key="anthropic-test-key")


@pytest.fixture
def analyst(text_client):
    return ScriptAnalyst(text_client)


def _transitions(count):
    return [
        Transition(from_seq=n, to_seq=n + 1, from_desc=f"frame {n}", to_desc=f"frame {n + 1}")
        for n in range(1, count + 1)
    ]


class TestStripCodeFences:
    """Tests for fence stripping."""

    def test_json_fence(self):
        """Test a fenced payload is unwrapped."""
        assert strip_code_fences('```json\n[{"a": 1}]\n```') == '[{"a": 1}]'

    def test_plain_text_untouched(self):
        """Test unfenced text is only trimmed."""
        assert strip_code_fences("  [1, 2]  ") == "[1, 2]"


class TestExtractCharacters:
    """Tests for character extraction."""

    @pytest.mark.asyncio
    async def test_extracts_complete_entries(self, analyst, text_client):
        """Test entries missing a name or description are skipped."""
        text_client.add([
            {"name": "Mara", "description": "Keeper in a yellow raincoat"},
            {"name": "", "description": "Nameless"},
            {"name": "Tobin"},
            "not an object",
        ])

        result = await analyst.extract_characters(CTX, "script")

        assert [c.name for c in result.items] == ["Mara"]
        assert (result.input_tokens, result.output_tokens) == (100, 50)
        assert "script" in text_client.calls[0]["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_fenced_response(self, analyst, text_client):
        """Test a fenced answer is accepted."""
        text_client.add('```json\n[{"name": "Mara", "description": "Keeper"}]\n```')

        result = await analyst.extract_characters(CTX, "script")

        assert result.items[0].description == "Keeper"

    @pytest.mark.asyncio
    async def test_empty_list_is_valid(self, analyst, text_client):
        """Test a script without characters."""
        text_client.add([])

        result = await analyst.extract_characters(CTX, "script")

        assert result.items == []

    @pytest.mark.asyncio
    async def test_unparseable_response(self, analyst, text_client):
        """Test prose instead of JSON raises."""
        text_client.add("Here are the characters: Mara and Tobin.")

        with pytest.raises(LLMResponseError, match="Failed to parse characters"):
            await analyst.extract_characters(CTX, "script")

    @pytest.mark.asyncio
    async def test_object_instead_of_list(self, analyst, text_client):
        """Test a JSON object is rejected."""
        text_client.add({"characters": []})

        with pytest.raises(LLMResponseError):
            await analyst.extract_characters(CTX, "script")


class TestSceneDurations:
    """Tests for scene duration estimation."""

    @pytest.mark.asyncio
    async def test_scenes_numbered_when_missing(self, analyst, text_client):
        """Test scenes without a number are numbered by position."""
        text_client.add([
            {"duration_seconds": 12, "summary": "Climb"},
            {"duration_seconds": None, "summary": "Light"},
        ])

        result = await analyst.estimate_scene_durations(CTX, "script")

        assert [s.scene for s in result.items] == [1, 2]
        assert result.items[0].duration_seconds == 12
        assert result.items[1].duration_seconds is None

    @pytest.mark.asyncio
    async def test_empty_list_rejected(self, analyst, text_client):
        """Test no scenes is an error."""
        text_client.add([])

        with pytest.raises(LLMResponseError, match="scene durations"):
            await analyst.estimate_scene_durations(CTX, "script")


class TestFrameDescriptions:
    """Tests for batched frame descriptions."""

    @pytest.mark.asyncio
    async def test_panels_are_flattened(self, analyst, text_client):
        """Test scene groups flatten into panels numbered from 1."""
        structure = [
            SceneFrames(scene=1, duration_seconds=5, summary="Climb", frames=[0, 5]),
            SceneFrames(scene=2, duration_seconds=3, summary="Light", frames=[0, 3]),
        ]
        text_client.add([
            {"scene": 1, "frames": [
                {"second": 0, "description": "Stairs", "characters": ["Mara"]},
                {"second": 5, "description": "Landing", "characters": ["Mara", 7]},
            ]},
            {"scene": 2, "frames": [
                {"second": 0, "description": "Lamp room"},
                {"second": 3, "description": "Light"},
            ]},
        ])

        result = await analyst.generate_frame_descriptions(CTX, "script", structure, ["Mara", "Tobin"])

        assert [p.panel_number for p in result.items] == [1, 2, 3, 4]
        assert [(p.scene, p.second) for p in result.items] == [(1, 0), (1, 5), (2, 0), (2, 3)]
        assert result.items[1].characters == ["Mara"]
        assert result.items[2].characters == []

        call = text_client.calls[0]
        assert "Mara, Tobin" in call["system"]
        assert "Total frames expected: 4" in call["messages"][0]["content"]
        assert call["max_tokens"] == 8192

    @pytest.mark.asyncio
    async def test_no_panels_rejected(self, analyst, text_client):
        """Test groups without frames are an error."""
        text_client.add([{"scene": 1, "frames": []}])
        structure = [SceneFrames(scene=1, duration_seconds=5, summary="Climb", frames=[0, 5])]

        with pytest.raises(LLMResponseError):
            await analyst.generate_frame_descriptions(CTX, "script", structure)


class TestTransitionPrompts:
    """Tests for clip transition prompts."""

    @pytest.mark.asyncio
    async def test_exact_count(self, analyst, text_client):
        """Test prompts are used as returned."""
        text_client.add(["Pan up", "Zoom in"])

        result = await analyst.generate_transition_prompts(CTX, "script", _transitions(2))

        assert result.items == ["Pan up", "Zoom in"]

    @pytest.mark.asyncio
    async def test_short_answer_padded(self, analyst, text_client):
        """Test missing prompts fall back to the default transition prompt."""
        text_client.add(["Pan up"])

        result = await analyst.generate_transition_prompts(CTX, "script", _transitions(2))

        assert result.items == ["Pan up", "Smooth cinematic transition from frame 2 to frame 3"]

    @pytest.mark.asyncio
    async def test_unparseable_answer(self, analyst, text_client):
        """Test garbage output still yields one prompt per transition."""
        text_client.add("I cannot do that.")

        result = await analyst.generate_transition_prompts(CTX, "script", _transitions(2))

        assert result.items == [
            "Smooth cinematic transition from frame 1 to frame 2",
            "Smooth cinematic transition from frame 2 to frame 3",
        ]
