import asyncio, logging, traceback
from typing import Dict, Literal, Optional, Tuple

from langgraph.graph import StateGraph, END as GRAPH_END
from pydantic import BaseModel

from .errors import AlreadyIngested, GenerationInProgress, MissingIllustration, NotIngested, UnknownScene
from .ingest import build_scene_map, ingest_document
from .llm import get_generation_client
from .media import ImagePayload
from .models import COVER, END, Project, ProjectPatch, StructuredPrompt, complete_scene, is_completed, nav_items
from .navigation import require_reachable
from .prompts import GenerationRequest, build_request
from .storage import ProjectRepository
from .video_client import get_video_synthesizer

logger = logging.getLogger(__name__)

DEFAULT_PROJECT_NAME = "My Animation Project"
DEFAULT_AUTHOR = "Author Name"


class SceneGenerationState(BaseModel):
    project: Project
    scene_id: str
    feedback: Optional[str] = None
    image: Optional[ImagePayload] = None
    request: Optional[GenerationRequest] = None
    prompt: Optional[StructuredPrompt] = None
    video_url: Optional[str] = None


class SceneActivity(BaseModel):
    """Transient per-scene UI state; never persisted."""
    state: Literal["idle", "generating", "failed"] = "idle"
    error: Optional[str] = None


class IngestResult(BaseModel):
    project: Project
    cover_image: Optional[ImagePayload] = None


def _state_value(final_state, key: str):
    # LangGraph returns a dict-like of channel values for pydantic state graphs
    if hasattr(final_state, "get"):
        return final_state.get(key)
    return getattr(final_state, key)


class ScenePipeline:
    """Drives scenes through pending -> generating -> completed.

    Every successful step commits exactly one ProjectPatch through the
    repository; a failed step commits nothing.
    """

    def __init__(self, repository: ProjectRepository, generator=None, synthesizer=None):
        self.repository = repository
        self._generator = generator
        self._synthesizer = synthesizer
        self._activity: Dict[Tuple[str, str], SceneActivity] = {}
        self.graph = self._build_graph()

    @property
    def generator(self):
        if self._generator is None:
            self._generator = get_generation_client()
        return self._generator

    @property
    def synthesizer(self):
        if self._synthesizer is None:
            self._synthesizer = get_video_synthesizer()
        return self._synthesizer

    # --- graph nodes ---

    async def node_prompt(self, state: SceneGenerationState) -> dict:
        request = build_request(state.project, state.scene_id, state.feedback, state.image)
        logger.info(f"Built instruction for scene {state.scene_id} ({len(request.instruction)} chars)")
        return {"request": request}

    async def node_generate(self, state: SceneGenerationState) -> dict:
        req = state.request
        prompt = await self.generator.generate(req.instruction, req.response_schema, req.image)
        return {"prompt": prompt}

    async def node_synthesize(self, state: SceneGenerationState) -> dict:
        video_url = await self.synthesizer.synthesize(state.prompt)
        logger.info(f"Synthesized video for scene {state.scene_id}: {video_url}")
        return {"video_url": video_url}

    def _build_graph(self):
        g = StateGraph(SceneGenerationState)
        g.add_node("build_prompt", self.node_prompt)
        g.add_node("generate", self.node_generate)
        g.add_node("synthesize", self.node_synthesize)
        g.set_entry_point("build_prompt")
        g.add_edge("build_prompt", "generate")
        g.add_edge("generate", "synthesize")
        g.add_edge("synthesize", GRAPH_END)
        return g.compile()

    # --- transient activity ---

    def scene_activity(self, project_id: str, scene_id: str) -> SceneActivity:
        return self._activity.get((project_id, scene_id), SceneActivity())

    def _set_activity(self, project_id: str, scene_id: str, state: str, error: Optional[str] = None):
        self._activity[(project_id, scene_id)] = SceneActivity(state=state, error=error)

    # --- stage 1: ingestion ---

    async def ingest(self, project_id: str, filename: str, data: bytes) -> IngestResult:
        project = self.repository.get_project(project_id)
        if project.is_ingested:
            raise AlreadyIngested(f"Project {project_id} already has a story")
        logger.info(f"Ingesting {filename} into project {project_id}")
        try:
            doc = await asyncio.to_thread(ingest_document, filename, data)
        except Exception as e:
            logger.error(f"Ingestion failed for project {project_id}: {e}")
            raise
        patch = ProjectPatch(
            story_text=doc.story_text,
            total_pages=doc.total_pages,
            scenes=build_scene_map(doc.pages),
            name=DEFAULT_PROJECT_NAME,
            author=DEFAULT_AUTHOR,
        )
        updated = self.repository.update_project(project_id, patch)
        logger.info(f"Project {project_id} ingested: {doc.total_pages} pages")
        return IngestResult(project=updated, cover_image=doc.cover_image)

    # --- stage 2: scene generation ---

    async def generate_scene(self, project_id: str, scene_id: str, feedback: Optional[str] = None,
                             image: Optional[ImagePayload] = None) -> Project:
        project = self.repository.get_project(project_id)
        if not project.is_ingested:
            raise NotIngested()
        if scene_id not in nav_items(project.total_pages):
            raise UnknownScene(f"Scene '{scene_id}' does not exist in this project")

        current = project.scenes.get(scene_id)
        regenerating = is_completed(current)
        if scene_id != END and not regenerating and image is None:
            raise MissingIllustration()
        require_reachable(project.total_pages, project.scenes, scene_id)

        if self.scene_activity(project_id, scene_id).state == "generating":
            raise GenerationInProgress()

        self._set_activity(project_id, scene_id, "generating")
        logger.info(f"{'Regenerating' if regenerating else 'Generating'} scene {scene_id} for project {project_id}")
        try:
            final_state = await self.graph.ainvoke(
                SceneGenerationState(project=project, scene_id=scene_id, feedback=feedback, image=image)
            )
            prompt = _state_value(final_state, "prompt")
            video_url = _state_value(final_state, "video_url")
            updated = self._commit_scene(project_id, scene_id, prompt, video_url)
            self._set_activity(project_id, scene_id, "idle")
            return updated
        except Exception as e:
            logger.error(f"Generation failed for scene {scene_id} of project {project_id}: {e}")
            logger.error(f"Full traceback: {traceback.format_exc()}")
            self._set_activity(project_id, scene_id, "failed", str(e))
            raise
        finally:
            # Cancellation skips the except clause; never leave the scene locked
            if self.scene_activity(project_id, scene_id).state == "generating":
                logger.warning(f"Generation of scene {scene_id} for project {project_id} was interrupted")
                self._set_activity(project_id, scene_id, "failed", "Generation was interrupted")

    def _commit_scene(self, project_id: str, scene_id: str, prompt: StructuredPrompt, video_url: str) -> Project:
        # Re-read so the patch carries the latest scene map (last writer wins per scene)
        latest = self.repository.get_project(project_id)
        scenes = dict(latest.scenes)
        scenes[scene_id] = complete_scene(latest.scenes.get(scene_id), prompt, video_url)
        patch = ProjectPatch(scenes=scenes)
        if scene_id == COVER:
            if prompt.extracted_title and prompt.extracted_title.strip():
                patch.name = prompt.extracted_title.strip()
            if prompt.extracted_author and prompt.extracted_author.strip():
                patch.author = prompt.extracted_author.strip()
        updated = self.repository.update_project(project_id, patch)
        logger.info(f"Scene {scene_id} of project {project_id} completed")
        return updated

    # --- both stages, explicitly sequenced ---

    async def ingest_document(self, project_id: str, filename: str, data: bytes) -> Project:
        """Ingest a story; when the document carries a cover image, generate the cover right away."""
        result = await self.ingest(project_id, filename, data)
        if result.cover_image is None:
            return result.project
        logger.info(f"Document for project {project_id} has a cover image; generating cover scene")
        return await self.generate_scene(project_id, COVER, image=result.cover_image)
