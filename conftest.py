import io
import os
import sys
import asyncio

import pytest
from PIL import Image

# Add the backend to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "animation_studio_backend"))

from animation_studio.media import ImagePayload
from animation_studio.models import StructuredPrompt
from animation_studio.orchestrator import ScenePipeline
from animation_studio.storage import ProjectRepository
from animation_studio.video_client import StubVideoSynthesizer

SAMPLE_VIDEO = "https://videos.example.test/scene.mp4"


class FakeGenerator:
    """Deterministic stand-in for the Gemini client; records every call."""

    def __init__(self, title=None, author=None, error=None):
        self.title = title
        self.author = author
        self.error = error
        self.calls = []

    async def generate(self, instruction, schema, image=None):
        self.calls.append({"instruction": instruction, "schema": schema, "image": image})
        if self.error is not None:
            raise self.error
        page = 0 if "COVER scene" in instruction else len(self.calls)
        prompt = StructuredPrompt.model_validate({
            "page_number": page,
            "scene_summary": f"Scene built from {len(instruction)} chars",
            "animation_style": {"style": "watercolor", "color_palette": "pastel", "tone": "gentle"},
            "characters": [{"name": "Milo", "description": "a small fox"}],
            "camera": {"shot_type": "wide", "movement": "slow pan"},
            "action": {"primary_action": "Milo hops across the stones"},
        })
        if "COVER scene" in instruction:
            prompt.extracted_title = self.title
            prompt.extracted_author = self.author
        return prompt


class FailingSynthesizer:
    def __init__(self, error):
        self.error = error

    async def synthesize(self, prompt):
        raise self.error


def png_bytes(color=(200, 30, 30), mode="RGB", fmt="PNG") -> bytes:
    buf = io.BytesIO()
    Image.new(mode, (8, 8), color).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def repository(tmp_path):
    return ProjectRepository(data_dir=str(tmp_path), key="test-projects")


@pytest.fixture
def generator():
    return FakeGenerator(title="Foo", author="Jane Doe")


@pytest.fixture
def pipeline(repository, generator):
    return ScenePipeline(repository, generator=generator, synthesizer=StubVideoSynthesizer(SAMPLE_VIDEO))


@pytest.fixture
def illustration():
    return ImagePayload.from_bytes(png_bytes(), "image/png")


@pytest.fixture
def story_bytes():
    return b"Milo the fox woke up early.\n\nHe crossed the river on stepping stones.\n\n\n\nAt last he found his friends."


@pytest.fixture
def ingested_project(pipeline, repository, story_bytes):
    project = repository.create_project()
    asyncio.run(pipeline.ingest(project.id, "story.txt", story_bytes))
    return repository.get_project(project.id)

