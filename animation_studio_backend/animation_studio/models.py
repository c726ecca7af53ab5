import time
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

COVER = "cover"
END = "end"


# --- Structured Prompt: the contract enforced on the generation service ---

class _PromptPart(BaseModel):
    # The response schema is advisory; keep whatever extra keys the model returns.
    model_config = ConfigDict(extra="allow")


class AnimationStyle(_PromptPart):
    style: Optional[str] = None
    color_palette: Optional[str] = None
    tone: Optional[str] = None


class SceneSetting(_PromptPart):
    location: Optional[str] = None
    time_of_day: Optional[str] = None
    environment: Optional[str] = None


class CharacterDescriptor(_PromptPart):
    name: Optional[str] = None
    description: Optional[str] = None
    expression: Optional[str] = None
    action: Optional[str] = None


class CameraDescriptor(_PromptPart):
    shot_type: Optional[str] = None
    movement: Optional[str] = None
    angle: Optional[str] = None


class ActionDescriptor(_PromptPart):
    primary_action: Optional[str] = None
    secondary_actions: List[str] = Field(default_factory=list)


class AudioDescriptor(_PromptPart):
    dialogue: Optional[str] = None
    sound_effects: List[str] = Field(default_factory=list)
    music_mood: Optional[str] = None


class PromptMetadata(_PromptPart):
    duration_seconds: Optional[float] = None
    notes: Optional[str] = None


class StructuredPrompt(_PromptPart):
    page_number: Optional[int] = None
    scene_summary: Optional[str] = None
    animation_style: Optional[AnimationStyle] = None
    setting: Optional[SceneSetting] = None
    characters: List[CharacterDescriptor] = Field(default_factory=list)
    camera: Optional[CameraDescriptor] = None
    action: Optional[ActionDescriptor] = None
    audio: Optional[AudioDescriptor] = None
    metadata: Optional[PromptMetadata] = None
    # Cover scene only
    extracted_title: Optional[str] = None
    extracted_author: Optional[str] = None

    def to_json(self) -> str:
        return self.model_dump_json(indent=2, exclude_unset=True)

    @classmethod
    def from_json(cls, text: str) -> "StructuredPrompt":
        return cls.model_validate_json(text)


# --- Scenes ---

class PendingScene(BaseModel):
    status: Literal["pending"] = "pending"
    text: Optional[str] = None


class CompletedScene(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: Literal["completed"] = "completed"
    text: Optional[str] = None
    prompt: StructuredPrompt
    video_url: str = Field(alias="videoUrl")


Scene = Annotated[Union[PendingScene, CompletedScene], Field(discriminator="status")]


def is_completed(scene: Optional[Any]) -> bool:
    return isinstance(scene, CompletedScene)


def complete_scene(scene: Optional[Any], prompt: StructuredPrompt, video_url: str) -> CompletedScene:
    """Build the completed form of a scene, keeping its source text."""
    text = scene.text if scene is not None else None
    return CompletedScene(text=text, prompt=prompt, video_url=video_url)


def scene_kind(scene_id: str) -> str:
    if scene_id == COVER:
        return "cover"
    if scene_id == END:
        return "end"
    return "page"


def scene_label(scene_id: str) -> str:
    if scene_id == COVER:
        return "Cover"
    if scene_id == END:
        return "End Scene"
    return f"Page {scene_id}"


def nav_items(total_pages: int) -> List[str]:
    """Ordered scene ids: cover, 1..N, end. Empty until a story is ingested."""
    if total_pages <= 0:
        return []
    return [COVER, *[str(i) for i in range(1, total_pages + 1)], END]


# --- Project ---

def _new_project_id() -> str:
    return f"proj_{int(time.time() * 1000)}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Project(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=_new_project_id)
    name: str = "Untitled Project"
    author: str = "Unknown Author"
    story_text: str = Field(default="", alias="storyText")
    total_pages: int = Field(default=0, alias="totalPages")
    scenes: Dict[str, Scene] = Field(default_factory=dict)
    created_at: str = Field(default_factory=_now_iso, alias="createdAt")

    @property
    def is_ingested(self) -> bool:
        return bool(self.story_text) and self.total_pages > 0


class ProjectPatch(BaseModel):
    """Partial update of top-level Project fields. Unset fields are left alone."""
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    author: Optional[str] = None
    story_text: Optional[str] = Field(default=None, alias="storyText")
    total_pages: Optional[int] = Field(default=None, alias="totalPages")
    scenes: Optional[Dict[str, Scene]] = None


def apply_patch(project: Project, patch: ProjectPatch) -> Project:
    """Return a new Project with the patch's set fields replaced."""
    updates = {}
    for field in patch.model_fields_set:
        value = getattr(patch, field)
        if value is not None:
            updates[field] = value
    if "scenes" in updates:
        updates["scenes"] = dict(updates["scenes"])
    else:
        updates["scenes"] = dict(project.scenes)
    return project.model_copy(update=updates)
