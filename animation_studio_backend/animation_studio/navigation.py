"""
Sequential gating over the scene list.

Nothing here is stored: the state is derived from total_pages and the scene
map on every call so it can never drift from the completion data.
"""
from typing import FrozenSet, List, Mapping, Optional

from pydantic import BaseModel

from .errors import NotIngested, SceneNotReachable, UnknownScene
from .models import is_completed, nav_items


class NavigationState(BaseModel):
    items: List[str]
    current_index: int
    first_pending_index: int
    reachable: FrozenSet[str]


def _first_pending_index(items: List[str], scenes: Mapping) -> int:
    for index, scene_id in enumerate(items):
        if not is_completed(scenes.get(scene_id)):
            return index
    return -1


def navigation_state(total_pages: int, scenes: Mapping, current_scene_id: Optional[str] = None) -> NavigationState:
    items = nav_items(total_pages)
    if not items:
        raise NotIngested()
    first_pending = _first_pending_index(items, scenes)
    last_reachable = len(items) - 1 if first_pending == -1 else first_pending
    current_index = items.index(current_scene_id) if current_scene_id in items else -1
    return NavigationState(
        items=items,
        current_index=current_index,
        first_pending_index=first_pending,
        reachable=frozenset(items[: last_reachable + 1]),
    )


def require_reachable(total_pages: int, scenes: Mapping, scene_id: str) -> NavigationState:
    state = navigation_state(total_pages, scenes, scene_id)
    if state.current_index == -1:
        raise UnknownScene(f"Scene '{scene_id}' does not exist in this project")
    if scene_id not in state.reachable:
        blocking = state.items[state.first_pending_index]
        raise SceneNotReachable(f"Scene '{scene_id}' is locked until scene '{blocking}' is completed")
    return state


def resolve_active_scene(total_pages: int, scenes: Mapping, current_scene_id: Optional[str]) -> Optional[str]:
    """Scene the workspace should show: a completed scene stays put for review,
    anything else advances to the first pending scene."""
    if total_pages <= 0:
        return None
    state = navigation_state(total_pages, scenes, current_scene_id)
    if state.current_index != -1 and is_completed(scenes.get(current_scene_id)):
        return current_scene_id
    if state.first_pending_index == -1:
        return current_scene_id if state.current_index != -1 else state.items[0]
    return state.items[state.first_pending_index]


def next_scene_id(total_pages: int, scene_id: str) -> Optional[str]:
    items = nav_items(total_pages)
    if scene_id not in items:
        return None
    index = items.index(scene_id)
    return items[index + 1] if index + 1 < len(items) else None
