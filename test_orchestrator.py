"""
Pipeline tests: the scene state machine end to end, with a fake generation
service and the stub video backend.
"""
import asyncio

import httpx
import pymupdf
import pytest

from conftest import SAMPLE_VIDEO, FailingSynthesizer, FakeGenerator
from animation_studio.errors import (
    AlreadyIngested,
    EmptyDocument,
    GenerationInProgress,
    MissingIllustration,
    NotIngested,
    SceneNotReachable,
    ServiceError,
    SynthesisError,
    UnknownScene,
    UnsupportedFormat,
)
from animation_studio.llm import GeminiClient
from animation_studio.models import CompletedScene, PendingScene, is_completed
from animation_studio.orchestrator import ScenePipeline
from animation_studio.video_client import StubVideoSynthesizer


def _complete(pipeline, project_id, scene_id, image, feedback=None):
    return asyncio.run(pipeline.generate_scene(project_id, scene_id, feedback=feedback, image=image))


def _assert_scene_invariant(project):
    for scene in project.scenes.values():
        completed = scene.status == "completed"
        has_both = getattr(scene, "prompt", None) is not None and getattr(scene, "video_url", None) is not None
        assert completed == has_both


def test_ingest_creates_pending_scenes(pipeline, repository):
    project = repository.create_project()
    result = asyncio.run(pipeline.ingest(project.id, "story.txt", b"Page1\n\nPage2"))
    assert result.cover_image is None
    stored = repository.get_project(project.id)
    assert stored.total_pages == 2
    assert list(stored.scenes) == ["cover", "1", "2", "end"]
    assert all(s.status == "pending" for s in stored.scenes.values())
    assert stored.name == "My Animation Project"
    assert stored.author == "Author Name"
    assert stored.story_text == "Page1\n\nPage2"


@pytest.mark.parametrize("filename, data, error", [
    ("story.txt", b"", EmptyDocument),
    ("story.docx", b"text", UnsupportedFormat),
])
def test_failed_ingest_commits_nothing(pipeline, repository, filename, data, error):
    project = repository.create_project()
    with pytest.raises(error):
        asyncio.run(pipeline.ingest_document(project.id, filename, data))
    stored = repository.get_project(project.id)
    assert stored == project


def test_reingest_is_refused(pipeline, ingested_project):
    with pytest.raises(AlreadyIngested):
        asyncio.run(pipeline.ingest(ingested_project.id, "story.txt", b"again"))


def test_generate_before_ingest_fails(pipeline, repository, illustration):
    project = repository.create_project()
    with pytest.raises(NotIngested):
        _complete(pipeline, project.id, "cover", illustration)


def test_cover_generation_sets_title_and_author(pipeline, ingested_project, illustration, generator):
    updated = _complete(pipeline, ingested_project.id, "cover", illustration)
    cover = updated.scenes["cover"]
    assert isinstance(cover, CompletedScene)
    assert cover.video_url == SAMPLE_VIDEO
    assert cover.prompt.extracted_title == "Foo"
    assert updated.name == "Foo"
    assert updated.author == "Jane Doe"
    assert generator.calls[0]["image"] == illustration


def test_cover_without_extracted_title_keeps_name(repository, illustration, story_bytes):
    pipeline = ScenePipeline(repository, generator=FakeGenerator(title="  ", author=None),
                             synthesizer=StubVideoSynthesizer(SAMPLE_VIDEO))
    project = repository.create_project()
    asyncio.run(pipeline.ingest(project.id, "story.txt", story_bytes))
    updated = _complete(pipeline, project.id, "cover", illustration)
    assert updated.name == "My Animation Project"
    assert updated.author == "Author Name"


def test_page_without_illustration_fails_and_stays_pending(pipeline, ingested_project, illustration):
    _complete(pipeline, ingested_project.id, "cover", illustration)
    with pytest.raises(MissingIllustration):
        _complete(pipeline, ingested_project.id, "1", None)
    assert pipeline.repository.get_project(ingested_project.id).scenes["1"].status == "pending"


def test_missing_illustration_reported_for_locked_page(pipeline, ingested_project):
    with pytest.raises(MissingIllustration):
        _complete(pipeline, ingested_project.id, "1", None)


def test_cannot_skip_ahead(pipeline, ingested_project, illustration):
    with pytest.raises(SceneNotReachable):
        _complete(pipeline, ingested_project.id, "2", illustration)


def test_unknown_scene(pipeline, ingested_project, illustration):
    with pytest.raises(UnknownScene):
        _complete(pipeline, ingested_project.id, "42", illustration)


def test_full_run_in_order(pipeline, ingested_project, illustration, generator):
    project_id = ingested_project.id
    for scene_id in ["cover", "1", "2", "3"]:
        _complete(pipeline, project_id, scene_id, illustration)
    # End scene needs no illustration and gets none
    final = _complete(pipeline, project_id, "end", None)
    assert all(is_completed(s) for s in final.scenes.values())
    assert final.scenes["2"].text == "He crossed the river on stepping stones."
    assert generator.calls[-1]["image"] is None
    assert "END scene" in generator.calls[-1]["instruction"]
    _assert_scene_invariant(final)


def test_service_error_leaves_scene_unchanged(repository, ingested_project, illustration):
    client = GeminiClient(api_key="k", api_base="https://gemini.test/v1beta",
                          transport=httpx.MockTransport(lambda r: httpx.Response(500, text="boom")))
    pipeline = ScenePipeline(repository, generator=client, synthesizer=StubVideoSynthesizer(SAMPLE_VIDEO))
    with pytest.raises(ServiceError) as exc:
        _complete(pipeline, ingested_project.id, "cover", illustration)
    assert exc.value.status == 500
    assert repository.get_project(ingested_project.id) == ingested_project
    activity = pipeline.scene_activity(ingested_project.id, "cover")
    assert activity.state == "failed"
    assert "500" in activity.error


def test_synthesis_failure_commits_nothing(repository, ingested_project, illustration):
    # Title is extracted but the video fails: neither name nor scene may change
    pipeline = ScenePipeline(repository, generator=FakeGenerator(title="Foo"),
                             synthesizer=FailingSynthesizer(SynthesisError("render farm down")))
    with pytest.raises(SynthesisError):
        _complete(pipeline, ingested_project.id, "cover", illustration)
    stored = repository.get_project(ingested_project.id)
    assert stored.name == "My Animation Project"
    assert isinstance(stored.scenes["cover"], PendingScene)


def test_failed_regeneration_keeps_previous_result(repository, ingested_project, illustration):
    good = ScenePipeline(repository, generator=FakeGenerator(title="Foo"),
                         synthesizer=StubVideoSynthesizer(SAMPLE_VIDEO))
    before = _complete(good, ingested_project.id, "cover", illustration)

    bad = ScenePipeline(repository, generator=FakeGenerator(error=ServiceError(503, "overloaded")),
                        synthesizer=StubVideoSynthesizer(SAMPLE_VIDEO))
    with pytest.raises(ServiceError):
        _complete(bad, ingested_project.id, "cover", None, feedback="brighter colors")
    after = repository.get_project(ingested_project.id)
    assert after.scenes["cover"] == before.scenes["cover"]


def test_regeneration_needs_no_new_illustration(pipeline, ingested_project, illustration, generator):
    first = _complete(pipeline, ingested_project.id, "cover", illustration)
    pipeline.synthesizer.video_url = "https://videos.example.test/v2.mp4"
    second = _complete(pipeline, ingested_project.id, "cover", None, feedback="Add falling leaves")
    assert second.scenes["cover"].status == "completed"
    assert second.scenes["cover"].video_url == "https://videos.example.test/v2.mp4"
    assert first.scenes["cover"].video_url == SAMPLE_VIDEO
    assert 'Add falling leaves' in generator.calls[-1]["instruction"]
    assert generator.calls[-1]["image"] is None


def test_generate_is_idempotent_with_deterministic_service(repository, story_bytes, illustration):
    results = []
    for _ in range(2):
        pipeline = ScenePipeline(repository, generator=FakeGenerator(title="Foo"),
                                 synthesizer=StubVideoSynthesizer(SAMPLE_VIDEO))
        project = repository.create_project()
        asyncio.run(pipeline.ingest(project.id, "story.txt", story_bytes))
        results.append(_complete(pipeline, project.id, "cover", illustration).scenes["cover"].prompt)
    assert results[0] == results[1]


def test_second_generate_while_in_flight_is_rejected(repository, ingested_project, illustration):
    pipeline = ScenePipeline(repository, generator=FakeGenerator(),
                             synthesizer=StubVideoSynthesizer(SAMPLE_VIDEO, delay_s=0.05))

    async def both():
        first = asyncio.create_task(pipeline.generate_scene(ingested_project.id, "cover", image=illustration))
        await asyncio.sleep(0.01)
        assert pipeline.scene_activity(ingested_project.id, "cover").state == "generating"
        with pytest.raises(GenerationInProgress):
            await pipeline.generate_scene(ingested_project.id, "cover", image=illustration)
        return await first

    project = asyncio.run(both())
    assert project.scenes["cover"].status == "completed"
    assert pipeline.scene_activity(ingested_project.id, "cover").state == "idle"


def test_cancelled_generation_can_be_retried(repository, ingested_project, illustration):
    synthesizer = StubVideoSynthesizer(SAMPLE_VIDEO, delay_s=0.5)
    pipeline = ScenePipeline(repository, generator=FakeGenerator(), synthesizer=synthesizer)
    project_id = ingested_project.id

    async def cancel_then_retry():
        task = asyncio.create_task(pipeline.generate_scene(project_id, "cover", image=illustration))
        await asyncio.sleep(0.05)
        assert pipeline.scene_activity(project_id, "cover").state == "generating"
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        activity = pipeline.scene_activity(project_id, "cover")
        assert activity.state == "failed"
        assert repository.get_project(project_id).scenes["cover"].status == "pending"

        synthesizer.delay_s = 0
        return await pipeline.generate_scene(project_id, "cover", image=illustration)

    project = asyncio.run(cancel_then_retry())
    assert project.scenes["cover"].status == "completed"
    assert pipeline.scene_activity(project_id, "cover").state == "idle"


def test_pdf_ingest_chains_cover_generation(pipeline, repository, generator):
    doc = pymupdf.open()
    for text in ("The Brave Little Fox", "Milo woke up early."):
        doc.new_page().insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()

    project = repository.create_project()
    updated = asyncio.run(pipeline.ingest_document(project.id, "book.pdf", data))
    assert updated.total_pages == 2
    assert updated.scenes["cover"].status == "completed"
    assert updated.name == "Foo"
    assert generator.calls[0]["image"].mime_type == "image/png"


def test_text_ingest_does_not_generate(pipeline, repository, generator, story_bytes):
    project = repository.create_project()
    updated = asyncio.run(pipeline.ingest_document(project.id, "story.txt", story_bytes))
    assert updated.scenes["cover"].status == "pending"
    assert generator.calls == []


def test_cover_failure_after_ingest_keeps_ingestion(repository):
    pipeline = ScenePipeline(repository, generator=FakeGenerator(error=ServiceError(500, "boom")),
                             synthesizer=StubVideoSynthesizer(SAMPLE_VIDEO))
    doc = pymupdf.open()
    doc.new_page().insert_text((72, 72), "Only page")
    data = doc.tobytes()
    doc.close()

    project = repository.create_project()
    with pytest.raises(ServiceError):
        asyncio.run(pipeline.ingest_document(project.id, "book.pdf", data))
    stored = repository.get_project(project.id)
    assert stored.total_pages == 1
    assert stored.scenes["cover"].status == "pending"
