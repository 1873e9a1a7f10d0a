"""
Project levels and start photo resolution.

Levels are stored inside the project row and normalised on load by
ensure_levels(). Start photos are resolved with the same rule for the
project and for every level: keep the stored choice while it is still a
valid candidate, otherwise fall back to the oldest candidate.
"""
import logging

from backend.errors import InvalidArgument, NotFound, StorageFailure
from backend.store import new_id

logger = logging.getLogger(__name__)

LEVEL_KEYS = ("background_image_url", "background_image_key", "start_panophoto")


def default_level_name(index):
    return f"Level {index + 1}"


def _index_of(level):
    value = level.get("index")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return value


def normalize_levels(project):
    """Apply the level invariants in memory. Returns True if anything changed."""
    mutated = False
    levels = project.get("levels")
    if not isinstance(levels, list) or not levels:
        project["levels"] = [
            {
                "id": new_id(),
                "name": default_level_name(0),
                "index": 0,
                "background_image_url": None,
                "background_image_key": None,
                "start_panophoto": None,
            }
        ]
        return True

    ordered = sorted(levels, key=_index_of)
    if ordered != levels:
        mutated = True
    for idx, level in enumerate(ordered):
        if not level.get("id"):
            level["id"] = new_id()
            mutated = True
        name = level.get("name")
        trimmed = name.strip() if isinstance(name, str) else ""
        if not trimmed:
            level["name"] = default_level_name(idx)
            mutated = True
        elif trimmed != name:
            level["name"] = trimmed
            mutated = True
        if level.get("index") != idx:
            level["index"] = idx
            mutated = True
        for key in LEVEL_KEYS:
            if key not in level:
                level[key] = None
                mutated = True
    project["levels"] = ordered
    return mutated


def ensure_levels(store, project):
    if project is None:
        return project
    if normalize_levels(project):
        store.save_project(project)
    return project


def find_level(project, level_id):
    if not level_id:
        return None
    for level in project.get("levels") or []:
        if level.get("id") == str(level_id):
            return level
    return None


def require_level(project, level_id):
    level = find_level(project, level_id)
    if level is None:
        raise NotFound(f"Project level not found: {level_id}")
    return level


def level_background(project, level):
    """Level 0 reads through to the project's single-canvas background until it has its own."""
    if level.get("background_image_url"):
        return level["background_image_url"], level.get("background_image_key")
    if level.get("index") == 0 and project.get("canvas_background_image_url"):
        return project["canvas_background_image_url"], project.get("canvas_background_image_key")
    return None, None


def load_project_level(store, project_id, level_id=None):
    project = store.require_project(project_id)
    ensure_levels(store, project)
    if level_id:
        return project, require_level(project, level_id)
    return project, project["levels"][0]


def validate_level_name(project, name, exclude_id=None):
    trimmed = name.strip() if isinstance(name, str) else ""
    if not trimmed:
        raise InvalidArgument("Level name is required")
    for level in project.get("levels") or []:
        if level.get("id") == exclude_id:
            continue
        if (level.get("name") or "").strip().casefold() == trimmed.casefold():
            raise InvalidArgument(f"A level named '{trimmed}' already exists")
    return trimmed


def add_level(store, project, name):
    ensure_levels(store, project)
    trimmed = validate_level_name(project, name)
    level = {
        "id": new_id(),
        "name": trimmed,
        "index": len(project["levels"]),
        "background_image_url": None,
        "background_image_key": None,
        "start_panophoto": None,
    }
    project["levels"].append(level)
    store.save_project(project)
    return level


def rename_level(store, project, level_id, name):
    ensure_levels(store, project)
    level = require_level(project, level_id)
    trimmed = validate_level_name(project, name, exclude_id=level["id"])
    if trimmed != level["name"]:
        level["name"] = trimmed
        store.save_project(project)
    return level


def set_level_background(store, project, level_id, url, key):
    """Returns the key of the background it replaced, if any."""
    ensure_levels(store, project)
    level = require_level(project, level_id)
    previous_key = level.get("background_image_key")
    level["background_image_url"] = url
    level["background_image_key"] = key
    store.save_project(project)
    return previous_key


def sort_oldest_first(photos):
    # sorted() is stable, so equal timestamps keep the store's insertion order.
    return sorted(photos, key=lambda p: p.get("created_at") or "")


def resolve_start(stored_id, candidates):
    """
    Shared fallback rule. candidates must already be ordered oldest first.
    Returns the stored id when it names a candidate, else the first
    candidate's id, else None.
    """
    ids = [c["id"] for c in candidates]
    if stored_id and str(stored_id) in ids:
        return str(stored_id)
    return ids[0] if ids else None


def resolve_level_start(level, photos):
    on_level = [p for p in photos if p.get("level_id") and p["level_id"] == level.get("id")]
    return resolve_start(level.get("start_panophoto"), sort_oldest_first(on_level))


def resolve_starts(project, photos):
    """Pure derivation of every start photo; project levels must already be ensured."""
    project_photos = [p for p in photos if p.get("project_id") == project["id"]]
    return {
        "project_start_id": resolve_start(project.get("start_panophoto"), sort_oldest_first(project_photos)),
        "level_start_ids": {
            level["id"]: resolve_level_start(level, project_photos) for level in project.get("levels") or []
        },
    }


def resolve_project_start(store, project, photos=None):
    if photos is None:
        photos = store.list_panophotos(project_id=project["id"])
    resolved = resolve_start(project.get("start_panophoto"), sort_oldest_first(photos))
    if resolved != project.get("start_panophoto"):
        project["start_panophoto"] = resolved
        store.save_project(project)
    return resolved


def set_project_start(store, project, photo_id):
    if photo_id:
        photo = store.require_panophoto(photo_id)
        if photo["project_id"] != project["id"]:
            raise InvalidArgument("Start panophoto must belong to the project")
        photo_id = photo["id"]
    project["start_panophoto"] = photo_id or None
    store.save_project(project)
    return project


def set_level_start(store, project, level_id, photo_id):
    ensure_levels(store, project)
    level = require_level(project, level_id)
    if photo_id:
        photo = store.require_panophoto(photo_id)
        if photo["project_id"] != project["id"] or photo.get("level_id") != level["id"]:
            raise InvalidArgument("Start panophoto must be placed on this level")
        photo_id = photo["id"]
    level["start_panophoto"] = photo_id or None
    store.save_project(project)
    return level


def clear_level_start_reference(store, project_id, photo_id, level_ids=None, warnings=None):
    """
    Best-effort: unset startPanophoto on levels that point at photo_id,
    limited to level_ids when given. Failures are logged, not raised.
    """
    try:
        project = store.get_project(project_id)
        if project is None or not project.get("levels"):
            return False
        limit = {str(i) for i in level_ids if i} if level_ids is not None else None
        mutated = False
        for level in project["levels"]:
            if limit is not None and level.get("id") not in limit:
                continue
            if level.get("start_panophoto") == str(photo_id):
                level["start_panophoto"] = None
                mutated = True
        if mutated:
            store.save_project(project)
        return mutated
    except StorageFailure as e:
        logger.warning(f"Failed to clear level start reference to {photo_id} in project {project_id}: {e}")
        if warnings is not None:
            warnings.append(f"level start for project {project_id} not cleared")
        return False
