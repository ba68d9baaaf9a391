"""
Pytest Configuration and Fixtures

Shared fixtures for all tests: provider fakes, a fake ffmpeg runner and a
fully wired pipeline service that runs without network access.
"""

import json
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from storyreel.core.config import Settings
from storyreel.core.constants import JobState, Provider
from storyreel.llm.api_clients import (
    CallContext,
    ImageGenerationClient,
    JobStatus,
    TextGenerationClient,
    TextResponse,
    VideoGenerationClient,
)
from storyreel.models.entities import Story
from storyreel.pipelines.service import PipelineService, create_pipeline
from storyreel.storage.credentials import InMemoryCredentialVault
from storyreel.storage.media_store import LocalMediaStore, StoredMedia, guess_extension
from storyreel.storage.repository import StoryRepository
from storyreel.video.ffmpeg import CommandResult, FfmpegRunner


USER_ID = 1

SAMPLE_SCRIPT = """INT. LIGHTHOUSE - NIGHT

MARA, a weathered keeper in a yellow raincoat, climbs the spiral stairs.
TOBIN, her scruffy grey dog, follows one step behind.

At the top, Mara pulls the lever. The great lamp flares to life."""

SAMPLE_CHARACTERS = [
    {"name": "Mara", "description": "Weathered lighthouse keeper in a yellow raincoat"},
    {"name": "Tobin", "description": "Scruffy grey dog with one floppy ear"},
]

SAMPLE_DURATIONS = [
    {"scene": 1, "duration_seconds": 8, "summary": "Mara and Tobin climb the tower and light the lamp."},
]

SAMPLE_FRAMES = [
    {
        "scene": 1,
        "frames": [
            {"second": 0, "description": "Mara at the foot of the spiral stairs", "characters": ["Mara"]},
            {"second": 5, "description": "Mara and Tobin halfway up the tower", "characters": ["Mara", "Tobin"]},
            {"second": 8, "description": "The great lamp flares to life", "characters": []},
        ],
    },
]

SAMPLE_CLIP_PROMPTS = [
    "Mara climbs the stairs as the camera follows from below",
    "The camera tilts up as the lamp bursts into light",
]


# =============================================================================
# PROVIDER FAKES
# =============================================================================

class FakeTextClient(TextGenerationClient):
    """Returns queued response texts in order and records every call."""

    def __init__(self):
        self.responses: List[str] = []
        self.calls: List[Dict[str, Any]] = []

    def add(self, *payloads):
        for payload in payloads:
            self.responses.append(payload if isinstance(payload, str) else json.dumps(payload))

    async def complete(self, ctx, messages, system=None, max_tokens=None, timeout=None):
        self.calls.append({"ctx": ctx, "messages": messages, "system": system, "max_tokens": max_tokens})
        if not self.responses:
            raise RuntimeError("no scripted text response left")
        return TextResponse(text=self.responses.pop(0), input_tokens=100, output_tokens=50, model="fake-model")


class _FakeJobClient:
    """Submit/poll bookkeeping shared by the image and video fakes."""

    job_prefix = "job"
    result_extension = "bin"

    def __init__(self):
        self.submitted: List[Dict[str, Any]] = []
        self.polled: List[str] = []
        self.scripted: Dict[str, List[JobStatus]] = {}
        self.submit_error: Optional[Exception] = None
        self.poll_error: Optional[Exception] = None
        self._counter = 0

    def script(self, job_id: str, *statuses: JobStatus) -> None:
        """Statuses returned by successive polls of ``job_id``; success afterwards."""
        self.scripted.setdefault(job_id, []).extend(statuses)

    def _next_job_id(self, ctx: CallContext, record: Dict[str, Any]) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self._counter += 1
        job_id = f"{self.job_prefix}-{self._counter}"
        self.submitted.append({"job_id": job_id, "api_key": ctx.api_key, **record})
        return job_id

    def default_status(self, task_id: str) -> JobStatus:
        return JobStatus(
            state=JobState.SUCCEEDED,
            result_url=f"https://cdn.example.com/{task_id}.{self.result_extension}",
        )

    async def poll(self, ctx: CallContext, task_id: str) -> JobStatus:
        self.polled.append(task_id)
        if self.poll_error is not None:
            raise self.poll_error
        pending = self.scripted.get(task_id)
        if pending:
            return pending.pop(0)
        return self.default_status(task_id)


class FakeImageClient(_FakeJobClient, ImageGenerationClient):
    job_prefix = "image-job"
    result_extension = "png"

    async def submit(self, ctx, prompt, reference_urls=None):
        return self._next_job_id(ctx, {"prompt": prompt, "reference_urls": list(reference_urls or [])})


class FakeVideoClient(_FakeJobClient, VideoGenerationClient):
    job_prefix = "video-job"
    result_extension = "mp4"

    async def submit(self, ctx, start_image_url, end_image_url=None, params=None):
        return self._next_job_id(ctx, {
            "start_image_url": start_image_url,
            "end_image_url": end_image_url,
            "params": dict(params or {}),
        })

    def default_status(self, task_id: str) -> JobStatus:
        status = super().default_status(task_id)
        status.duration_seconds = 5
        return status


class FakeRunner(FfmpegRunner):
    """
    Records ffmpeg/ffprobe invocations instead of running them.

    ffmpeg "succeeds" by writing a small file at its output argument.
    """

    DEFAULT_STREAM = {
        "width": 1280,
        "height": 720,
        "r_frame_rate": "30/1",
        "codec_name": "h264",
        "pix_fmt": "yuv420p",
    }

    def __init__(
        self,
        probes: Optional[List[Dict[str, Any]]] = None,
        duration: str = "10.0",
        fail_audio: bool = False,
        fail_encode: bool = False,
        fail_concat: bool = False,
        fail_probe: bool = False,
    ):
        super().__init__()
        self.probes = list(probes or [])
        self.duration = duration
        self.fail_audio = fail_audio
        self.fail_encode = fail_encode
        self.fail_concat = fail_concat
        self.fail_probe = fail_probe
        self.calls: List[tuple] = []

    def _result(self, args, return_code=0, stdout="", stderr="") -> CommandResult:
        return CommandResult(args=list(args), return_code=return_code, stdout=stdout, stderr=stderr, duration_ms=1.0)

    def ffprobe(self, args, timeout=None):
        self.calls.append(("ffprobe", list(args)))
        if "format=duration" in args:
            return self._result(args, stdout=f"{self.duration}\n")
        if self.fail_probe:
            return self._result(args, return_code=1, stderr="Invalid data found when processing input")
        stream = self.probes.pop(0) if self.probes else dict(self.DEFAULT_STREAM)
        return self._result(args, stdout=json.dumps({"streams": [stream]}))

    def ffmpeg(self, args, timeout=None):
        self.calls.append(("ffmpeg", list(args)))
        if "concat" in args:
            if self.fail_concat:
                return self._result(args, return_code=1, stderr="concat demuxer error")
        elif self.fail_encode:
            return self._result(args, return_code=1, stderr="encoder exploded")
        elif self.fail_audio and "-c:a" in args:
            return self._result(args, return_code=1, stderr="audio stream not found")
        Path(args[-1]).write_bytes(b"fake-video")
        return self._result(args)

    def commands(self, binary: str) -> List[List[str]]:
        return [args for name, args in self.calls if name == binary]


async def _offline_download(self, remote_url: str, directory: str, extension: Optional[str] = None) -> StoredMedia:
    return self.store(f"downloaded:{remote_url}".encode(), directory, extension or guess_extension(remote_url))


# =============================================================================
# PIPELINE DRIVER
# =============================================================================

class PipelineDriver:
    """Walks a story through the stages with scripted text responses."""

    def __init__(self, service: PipelineService, text_client: FakeTextClient):
        self.service = service
        self.text_client = text_client

    @property
    def repository(self) -> StoryRepository:
        return self.service.repository

    async def settle(self) -> None:
        await self.service.queue.drain()

    def expect_characters(self, characters=None) -> None:
        self.text_client.add(SAMPLE_CHARACTERS if characters is None else characters)

    def expect_storyboard(self, durations=None, frames=None) -> None:
        self.text_client.add(
            SAMPLE_DURATIONS if durations is None else durations,
            SAMPLE_FRAMES if frames is None else frames,
        )

    def expect_clip_prompts(self, prompts=None) -> None:
        self.text_client.add(SAMPLE_CLIP_PROMPTS if prompts is None else prompts)

    def new_story(self, script: Optional[str] = SAMPLE_SCRIPT) -> Story:
        story = self.service.create_story(USER_ID, "The Lighthouse", "A keeper lights the lamp.")
        if script:
            self.service.finalize_script(story.id, script)
        return story

    async def to_character_review(self, characters=None) -> Story:
        story = self.new_story()
        self.expect_characters(characters)
        self.service.start(story.id)
        await self.settle()
        return story

    async def to_storyboard_review(self, frames=None) -> Story:
        story = await self.to_character_review()
        self.expect_storyboard(frames=frames)
        self.service.approve_characters(story.id)
        await self.settle()
        return story

    def give_frames_images(self, story: Story) -> None:
        for frame in self.repository.list_frames(story.id):
            self.service.upload_frame_image(story.id, frame.id, b"frame-image", "png")

    async def to_clips(self, with_images: bool = True, frames=None, prompts=None) -> Story:
        """Storyboard approved and the clip chain queued, nothing submitted."""
        story = await self.to_storyboard_review(frames=frames)
        if with_images:
            self.give_frames_images(story)
        self.expect_clip_prompts(prompts)
        self.service.approve_storyboard(story.id)
        await self.settle()
        return story

    async def to_completed(self) -> Story:
        story = await self.to_clips()
        self.service.generate_clips(story.id)
        await self.settle()
        return story


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_path = tempfile.mkdtemp()
    yield Path(temp_path)
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def settings(temp_dir) -> Settings:
    """Settings with every wait collapsed to zero."""
    return Settings(
        _env_file=None,
        media_root=temp_dir / "media",
        media_base_url="https://media.example.com",
        scratch_dir=temp_dir / "scratch",
        data_file="",
        worker_timeout=30,
        stage_worker_tries=1,
        stage_worker_backoff=0,
        clip_submit_tries=1,
        clip_submit_backoff=0,
        clip_poll_interval=0,
        clip_poll_initial_delay=0,
        clip_poll_max_attempts=3,
        final_poll_interval=0,
        final_poll_max_attempts=3,
        image_poll_interval=0,
        image_poll_max_attempts=3,
        auto_generate_clips=False,
    )


@pytest.fixture
def vault() -> InMemoryCredentialVault:
    """Vault holding a key for every provider for the test user."""
    vault = InMemoryCredentialVault()
    vault.set(Provider.ANTHROPIC, "anthropic-test-key", USER_ID)
    vault.set(Provider.NANO_BANANA, "banana-test-key", USER_ID)
    vault.set(Provider.KLING, "access-key:secret-key", USER_ID)
    return vault


@pytest.fixture
def text_client() -> FakeTextClient:
    return FakeTextClient()


@pytest.fixture
def image_client() -> FakeImageClient:
    return FakeImageClient()


@pytest.fixture
def video_client() -> FakeVideoClient:
    return FakeVideoClient()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def offline_media(monkeypatch):
    """Media downloads write a placeholder instead of fetching the URL."""
    monkeypatch.setattr(LocalMediaStore, "download", _offline_download)


@pytest.fixture
def pipeline_factory(settings, vault, text_client, image_client, video_client, runner, offline_media):
    """Build a driver around a freshly wired service; keyword args override settings."""

    def build(**overrides) -> PipelineDriver:
        service = create_pipeline(
            settings.model_copy(update=overrides) if overrides else settings,
            repository=StoryRepository(),
            vault=vault,
            text_client=text_client,
            image_client=image_client,
            video_client=video_client,
            runner=runner,
        )
        return PipelineDriver(service, text_client)

    return build


@pytest.fixture
def driver(pipeline_factory) -> PipelineDriver:
    return pipeline_factory()


@pytest.fixture
def service(driver) -> PipelineService:
    return driver.service


@pytest.fixture
def repository(service) -> StoryRepository:
    return service.repository
