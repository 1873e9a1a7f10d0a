import logging

from backend import levels
from backend.errors import InvalidArgument, NotFound

logger = logging.getLogger(__name__)


def create_project(store, name, description=None):
    """New projects become the single active project."""
    name = name.strip() if isinstance(name, str) else ""
    if not name:
        raise InvalidArgument("Project name is required")
    description = description.strip() if isinstance(description, str) else ""
    store.deactivate_projects()
    project = store.create_project(name, description, is_active=True)
    levels.ensure_levels(store, project)
    logger.info(f"Created project {project['id']} ({name})")
    return project


def activate_project(store, project_id):
    project = store.require_project(project_id)
    store.deactivate_projects(except_id=project["id"])
    if not project["is_active"]:
        project["is_active"] = True
        store.save_project(project)
    return levels.ensure_levels(store, project)


def get_active_project(store):
    project = store.get_active_project()
    if project is None:
        raise NotFound("No active project set")
    return levels.ensure_levels(store, project)


def ensure_active_project(store):
    """If nothing is active, activate the most recently created project. Returns the active one or None."""
    active = store.get_active_project()
    if active is not None:
        return active
    remaining = store.list_projects()
    if not remaining:
        return None
    newest = remaining[0]
    store.deactivate_projects(except_id=newest["id"])
    newest["is_active"] = True
    store.save_project(newest)
    logger.info(f"Activated project {newest['id']} after delete")
    return newest
