from typing import Optional

from pydantic import BaseModel

from .media import ImagePayload
from .models import END, Project, scene_kind

SYSTEM_PROMPT = """You are an expert animation director adapting an illustrated children's story into short animated scenes.
For each scene you describe exactly what an animator needs: style, setting, characters, camera, action and audio.
All content must be age-appropriate for young children: no violence, frightening imagery, or mature themes.
Stay faithful to the story and its illustrations; do not invent new characters.
Output ONLY valid JSON matching the provided schema."""


def _string(description: str) -> dict:
    return {"type": "STRING", "description": description}


def _string_list(description: str) -> dict:
    return {"type": "ARRAY", "items": {"type": "STRING"}, "description": description}


# Gemini responseSchema (OpenAPI subset). Mirrors models.StructuredPrompt.
SCENE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "page_number": {"type": "INTEGER", "description": "0 for the cover, N+1 for the end scene"},
        "scene_summary": _string("One or two sentences describing the scene"),
        "animation_style": {
            "type": "OBJECT",
            "properties": {
                "style": _string("e.g. soft 2D watercolor, cel-shaded cartoon"),
                "color_palette": _string("Dominant colors"),
                "tone": _string("Emotional tone"),
            },
        },
        "setting": {
            "type": "OBJECT",
            "properties": {
                "location": _string("Where the scene happens"),
                "time_of_day": _string("Time of day"),
                "environment": _string("Weather, lighting and background details"),
            },
        },
        "characters": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "name": _string("Character name"),
                    "description": _string("Appearance as shown in the illustration"),
                    "expression": _string("Facial expression"),
                    "action": _string("What the character does"),
                },
            },
        },
        "camera": {
            "type": "OBJECT",
            "properties": {
                "shot_type": _string("wide, medium, close-up"),
                "movement": _string("pan, zoom, static"),
                "angle": _string("eye level, low, high"),
            },
        },
        "action": {
            "type": "OBJECT",
            "properties": {
                "primary_action": _string("Main motion in the scene"),
                "secondary_actions": _string_list("Background motion"),
            },
        },
        "audio": {
            "type": "OBJECT",
            "properties": {
                "dialogue": _string("Narration or dialogue, quoted from the story where possible"),
                "sound_effects": _string_list("Sound effects"),
                "music_mood": _string("Background music mood"),
            },
        },
        "metadata": {
            "type": "OBJECT",
            "properties": {
                "duration_seconds": {"type": "NUMBER", "description": "Scene length, 4-10 seconds"},
                "notes": _string("Anything else the animator should know"),
            },
        },
        "extracted_title": _string("Cover only: the book title read from the cover image"),
        "extracted_author": _string("Cover only: the author name read from the cover image"),
    },
    "required": ["page_number", "scene_summary", "animation_style", "characters", "camera", "action"],
}


INSTRUCTION_TEMPLATE = """{system}

Full story (for context):
\"\"\"
{story}
\"\"\"

Task:
{task}
{feedback}
Return ONLY valid JSON for the response schema."""

COVER_TASK = """This is the COVER scene (page_number 0). The attached image is the book cover.
1. Read the title and the author's name from the cover image and put them in "extracted_title" and "extracted_author". Leave them empty if they are not legible.
2. Describe an opening title sequence that introduces the story's world and main characters, matching the cover art style."""

END_TASK = """This is the END scene (page_number {page_number}). There is no page text or illustration for it.
Using only the full story above, describe a short, gentle conclusion scene that wraps up the story and leaves the viewer with a warm final image."""

PAGE_TASK = """This is PAGE {page_number} of {total_pages}. The attached image is this page's illustration.
Page text:
\"\"\"
{page_text}
\"\"\"
Analyse the page text together with the illustration and describe one animated scene for this page. Keep characters and style consistent with the illustration."""

REGENERATION_TEMPLATE = """
Regeneration request: a previous version of this scene was rejected. Revise it according to this feedback from the user:
\"\"\"{feedback}\"\"\"
"""


class GenerationRequest(BaseModel):
    scene_id: str
    instruction: str
    response_schema: dict
    image: Optional[ImagePayload] = None


def _scene_task(project: Project, scene_id: str) -> str:
    kind = scene_kind(scene_id)
    if kind == "cover":
        return COVER_TASK
    if kind == "end":
        return END_TASK.format(page_number=project.total_pages + 1)
    scene = project.scenes.get(scene_id)
    return PAGE_TASK.format(
        page_number=int(scene_id),
        total_pages=project.total_pages,
        page_text=(scene.text if scene is not None else None) or "",
    )


def build_instruction(project: Project, scene_id: str, feedback: Optional[str] = None) -> str:
    """Deterministic: same project context, scene and feedback give the same text."""
    feedback_block = ""
    if feedback and feedback.strip():
        feedback_block = REGENERATION_TEMPLATE.format(feedback=feedback)
    return INSTRUCTION_TEMPLATE.format(
        system=SYSTEM_PROMPT,
        story=project.story_text,
        task=_scene_task(project, scene_id),
        feedback=feedback_block,
    )


def build_request(project: Project, scene_id: str, feedback: Optional[str] = None,
                  image: Optional[ImagePayload] = None) -> GenerationRequest:
    # The end scene is built from story context only
    if scene_id == END:
        image = None
    return GenerationRequest(
        scene_id=scene_id,
        instruction=build_instruction(project, scene_id, feedback),
        response_schema=SCENE_SCHEMA,
        image=image,
    )
