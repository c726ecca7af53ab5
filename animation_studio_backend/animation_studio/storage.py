"""
Local JSON persistence for projects.
All projects for a key live in one file, mirroring the single browser-storage
entry the studio UI used. Reads never raise: a missing or corrupt file is an
empty project list.
"""
import os
import re
import json
import logging
import tempfile
from typing import List, Optional

from pydantic import TypeAdapter, ValidationError

from .errors import ProjectNotFound
from .models import Project, ProjectPatch, apply_patch
from .settings import DATA_DIR, PROJECTS_KEY

logger = logging.getLogger(__name__)

_PROJECT_LIST = TypeAdapter(List[Project])
_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class ProjectRepository:
    def __init__(self, data_dir: str = DATA_DIR, key: str = PROJECTS_KEY):
        if not _KEY_RE.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        self.data_dir = data_dir
        self.key = key

    def _path(self, key: str) -> str:
        if not _KEY_RE.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return os.path.join(self.data_dir, f"{key}.json")

    def load(self, key: Optional[str] = None) -> List[Project]:
        path = self._path(key or self.key)
        if not os.path.exists(path):
            return []
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            return _PROJECT_LIST.validate_python(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.error(f"Error loading projects from {path}: {e}")
            return []

    def save(self, key: Optional[str], projects: List[Project]) -> bool:
        path = self._path(key or self.key)
        tmp_path = None
        try:
            os.makedirs(self.data_dir, exist_ok=True)
            payload = _PROJECT_LIST.dump_python(projects, mode="json", by_alias=True)
            # Write-then-rename so a crash never leaves a half-written file
            fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, prefix=".projects-", suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
            tmp_path = None
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Error saving projects to {path}: {e}")
            return False
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError as e:
                    logger.warning(f"Could not remove temp file {tmp_path}: {e}")

    # --- project-level helpers used by the pipeline and the API ---

    def list_projects(self) -> List[Project]:
        return sorted(self.load(), key=lambda p: p.created_at, reverse=True)

    def get_project(self, project_id: str) -> Project:
        for project in self.load():
            if project.id == project_id:
                return project
        raise ProjectNotFound(f"Project {project_id} not found")

    def create_project(self) -> Project:
        projects = self.load()
        project = Project()
        # Ids are millisecond timestamps; bump on collision
        existing = {p.id for p in projects}
        while project.id in existing:
            project = project.model_copy(update={"id": f"{project.id}_1"})
        projects.append(project)
        self.save(self.key, projects)
        logger.info(f"Created project {project.id}")
        return project

    def delete_project(self, project_id: str) -> None:
        projects = self.load()
        remaining = [p for p in projects if p.id != project_id]
        if len(remaining) == len(projects):
            raise ProjectNotFound(f"Project {project_id} not found")
        self.save(self.key, remaining)
        logger.info(f"Deleted project {project_id}")

    def update_project(self, project_id: str, patch: ProjectPatch) -> Project:
        projects = self.load()
        for index, project in enumerate(projects):
            if project.id == project_id:
                updated = apply_patch(project, patch)
                projects[index] = updated
                self.save(self.key, projects)
                logger.info(f"Updated project {project_id}: {sorted(patch.model_fields_set)}")
                return updated
        raise ProjectNotFound(f"Project {project_id} not found")
