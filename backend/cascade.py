"""
Unplace and delete cascades.

Each cascade writes its primary record first and lets a failure there
propagate. The follow-up steps (reverse links on neighbours, level and
project start references, blobs) run one by one afterwards. A failing
step is logged and reported in the result's "warnings" list; the rest of
the cascade still runs and nothing already written is rolled back.
"""
import logging

from backend import levels, projects
from backend.blobs import release_blobs
from backend.errors import StorageFailure
from backend.links import linked_target_ids, remove_link

logger = logging.getLogger(__name__)


def remove_reverse_links(store, photo_id, neighbor_ids, warnings):
    cleaned = []
    for neighbor_id in neighbor_ids:
        try:
            neighbor = store.get_panophoto(neighbor_id)
            if neighbor is None:
                continue
            remove_link(store, neighbor, photo_id)
            cleaned.append(neighbor_id)
        except StorageFailure as e:
            logger.warning(f"Failed to remove reverse link {neighbor_id} -> {photo_id}: {e}")
            warnings.append(f"reverse link on {neighbor_id} not removed")
    return cleaned


def unplace_photo(store, photo_id, reset_coordinates=True):
    photo = store.require_panophoto(photo_id)
    original_level_id = photo.get("level_id")
    neighbor_ids = [n for n in linked_target_ids(photo) if n != photo["id"]]

    at_origin = (photo.get("x_position"), photo.get("y_position")) == (0.0, 0.0)
    if not original_level_id and not photo.get("linked_photos") and (at_origin or not reset_coordinates):
        return {"photo": photo, "affected_neighbor_ids": [], "cleaned_neighbor_ids": [], "warnings": []}

    photo["level_id"] = None
    if reset_coordinates:
        photo["x_position"] = 0.0
        photo["y_position"] = 0.0
    photo["linked_photos"] = []
    try:
        store.save_panophoto(photo)
    except StorageFailure as e:
        logger.error(f"Failed to save panophoto {photo['id']} during unplace: {e}")
        raise

    warnings = []
    if original_level_id:
        levels.clear_level_start_reference(store, photo["project_id"], photo["id"], [original_level_id], warnings)
    cleaned = remove_reverse_links(store, photo["id"], neighbor_ids, warnings)
    return {
        "photo": photo,
        "affected_neighbor_ids": neighbor_ids,
        "cleaned_neighbor_ids": cleaned,
        "warnings": warnings,
    }


def delete_photo(store, blob_store, photo_id):
    photo = store.require_panophoto(photo_id)
    neighbor_ids = [n for n in linked_target_ids(photo) if n != photo["id"]]

    store.delete_panophoto(photo["id"])
    logger.info(f"Deleted panophoto {photo['id']}")

    warnings = []
    cleaned = remove_reverse_links(store, photo["id"], neighbor_ids, warnings)
    levels.clear_level_start_reference(store, photo["project_id"], photo["id"], None, warnings)
    try:
        project = store.get_project(photo["project_id"])
        if project is not None:
            levels.resolve_project_start(store, project)
    except StorageFailure as e:
        logger.warning(f"Failed to re-resolve start for project {photo['project_id']}: {e}")
        warnings.append(f"project start for {photo['project_id']} not re-resolved")
    release_blobs(blob_store, [photo.get("image_key"), photo.get("thumbnail_key")], warnings)
    return {
        "deleted_id": photo["id"],
        "affected_neighbor_ids": neighbor_ids,
        "cleaned_neighbor_ids": cleaned,
        "warnings": warnings,
    }


def delete_project(store, blob_store, project_id):
    project = store.require_project(project_id)
    warnings = []
    deleted_ids = []
    for photo in store.list_panophotos(project_id=project["id"]):
        store.delete_panophoto(photo["id"])
        deleted_ids.append(photo["id"])
        release_blobs(blob_store, [photo.get("image_key"), photo.get("thumbnail_key")], warnings)

    background_keys = [level.get("background_image_key") for level in project.get("levels") or []]
    background_keys.append(project.get("canvas_background_image_key"))
    release_blobs(blob_store, dict.fromkeys(k for k in background_keys if k), warnings)

    store.delete_project(project["id"])
    logger.info(f"Deleted project {project['id']} with {len(deleted_ids)} panophotos")

    activated = None
    try:
        active = projects.ensure_active_project(store)
        activated = active["id"] if active else None
    except StorageFailure as e:
        logger.warning(f"Failed to activate a project after deleting {project['id']}: {e}")
        warnings.append("no project activated")
    return {
        "deleted_id": project["id"],
        "deleted_panophoto_ids": deleted_ids,
        "active_project_id": activated,
        "warnings": warnings,
    }
