"""
Bidirectional links between panophotos.

A link lives in the owner's ``linked_photos`` list as
``{"target": <id>, "azimuth": <deg>, "azimuthOffset": <deg>}``. Older
records may still hold a bare target id string in that list; every
function here accepts both forms and rewrites the bare form into the
structured one whenever it writes the owner.

Links are kept symmetric: linking or unlinking always touches both
photos, each storing the bearing computed from its own position.
"""
import logging

from backend import levels
from backend.errors import InvalidArgument, NotFound, StorageFailure
from backend.geometry import (
    azimuth_between,
    normalize_degrees,
    normalize_offset_degrees,
    to_finite_or,
)

logger = logging.getLogger(__name__)


def extract_target_id(entry):
    if not entry:
        return ""
    if isinstance(entry, str):
        return entry
    if isinstance(entry, dict):
        target = entry.get("target")
        if isinstance(target, dict):
            return str(target.get("id") or "")
        return str(target) if target else ""
    return ""


def is_legacy_link(entry):
    return isinstance(entry, str)


def linked_target_ids(photo):
    """Distinct target ids in list order, whatever the entry form."""
    ids = []
    for entry in (photo or {}).get("linked_photos") or []:
        tid = extract_target_id(entry)
        if tid and tid not in ids:
            ids.append(tid)
    return ids


def find_link(photo, target_id):
    target_id = str(target_id)
    for entry in (photo or {}).get("linked_photos") or []:
        if isinstance(entry, dict) and extract_target_id(entry) == target_id:
            return entry
    return None


def has_legacy_link(photo, target_id):
    return str(target_id) in [e for e in (photo or {}).get("linked_photos") or [] if is_legacy_link(e)]


def make_link(target_id, azimuth, azimuth_offset=0.0):
    return {
        "target": str(target_id),
        "azimuth": normalize_degrees(azimuth),
        "azimuthOffset": normalize_offset_degrees(azimuth_offset),
    }


def apply_link(photo, target_id, azimuth):
    """
    Make photo hold exactly one structured entry for target_id with the
    given azimuth. The first existing structured entry's offset is kept.
    Legacy entries for the target are folded into that single entry.
    Returns True when the list changed.
    """
    target_id = str(target_id)
    entries = list(photo.get("linked_photos") or [])
    offset = None
    insert_at = None
    kept = []
    for entry in entries:
        if extract_target_id(entry) == target_id:
            if insert_at is None:
                insert_at = len(kept)
            if offset is None and isinstance(entry, dict):
                offset = to_finite_or(entry.get("azimuthOffset"), 0.0)
            continue
        kept.append(entry)
    link = make_link(target_id, azimuth, offset or 0.0)
    if insert_at is None:
        kept.append(link)
    else:
        kept.insert(insert_at, link)
    if kept == entries:
        return False
    photo["linked_photos"] = kept
    return True


def drop_link(photo, target_id):
    target_id = str(target_id)
    entries = list(photo.get("linked_photos") or [])
    kept = [e for e in entries if extract_target_id(e) != target_id]
    if len(kept) == len(entries):
        return False
    photo["linked_photos"] = kept
    return True


def upsert_link(store, owner, target_id, azimuth):
    """Persist owner -> target with a fresh azimuth. Repeating the call is a no-op."""
    if apply_link(owner, target_id, azimuth):
        store.save_panophoto(owner)
        return True
    return False


def remove_link(store, owner, target_id):
    """Drop every entry for target_id from owner. Missing links are not an error."""
    if drop_link(owner, target_id):
        store.save_panophoto(owner)
        return True
    return False


def _load_pair(store, source_id, target_id):
    source = store.require_panophoto(source_id)
    target = store.require_panophoto(target_id)
    return source, target


def link_photos(store, source_id, target_id):
    if not source_id or not target_id:
        raise InvalidArgument("Both source and target panophoto ids are required")
    if str(source_id) == str(target_id):
        raise InvalidArgument("Cannot link a panophoto to itself")
    source, target = _load_pair(store, source_id, target_id)
    if source["project_id"] != target["project_id"]:
        raise InvalidArgument("Linked panophotos must belong to the same project")

    upsert_link(store, source, target["id"], azimuth_between(source, target))
    upsert_link(store, target, source["id"], azimuth_between(target, source))
    logger.info(f"Linked panophotos {source['id']} <-> {target['id']}")
    return {"source": source, "target": target}


def unlink_photos(store, source_id, target_id):
    source, target = _load_pair(store, source_id, target_id)
    remove_link(store, source, target["id"])
    remove_link(store, target, source["id"])
    logger.info(f"Unlinked panophotos {source['id']} <-> {target['id']}")
    return {"source": source, "target": target}


def recalculate_neighbor_azimuths(store, photo, warnings=None):
    """
    Refresh bearings in both directions between photo and each neighbour
    after photo moved. Offsets are left alone. Failures are per neighbour:
    they are logged and recorded in warnings, the loop carries on.
    Returns the ids of neighbours that were brought up to date.
    """
    touched = []
    for neighbor_id in linked_target_ids(photo):
        if neighbor_id == photo["id"]:
            continue
        try:
            neighbor = store.get_panophoto(neighbor_id)
            if neighbor is None:
                logger.warning(f"Dropping dangling link {photo['id']} -> {neighbor_id}")
                remove_link(store, photo, neighbor_id)
                continue
            upsert_link(store, photo, neighbor_id, azimuth_between(photo, neighbor))
            upsert_link(store, neighbor, photo["id"], azimuth_between(neighbor, photo))
            touched.append(neighbor_id)
        except StorageFailure as e:
            logger.warning(f"Azimuth refresh failed for {photo['id']} <-> {neighbor_id}: {e}")
            if warnings is not None:
                warnings.append(f"neighbor {neighbor_id} not updated")
    return touched


def move_photo(store, photo_id, x, y, level_id=None):
    photo = store.require_panophoto(photo_id)
    x = to_finite_or(x, None)
    y = to_finite_or(y, None)
    if x is None or y is None:
        raise InvalidArgument("x and y must be valid numbers")

    project = None
    if level_id:
        project = store.require_project(photo["project_id"])
        levels.ensure_levels(store, project)
        level_id = levels.require_level(project, level_id)["id"]

    former_level_id = photo.get("level_id")
    photo["x_position"] = x
    photo["y_position"] = y
    if level_id:
        photo["level_id"] = level_id
    store.save_panophoto(photo)

    warnings = []
    if project is not None and former_level_id and former_level_id != level_id:
        levels.clear_level_start_reference(store, project["id"], photo["id"], [former_level_id], warnings)
    affected = recalculate_neighbor_azimuths(store, photo, warnings)
    return {"photo": photo, "affected_neighbor_ids": affected, "warnings": warnings}


def set_link_offset(store, source_id, target_id, offset):
    source = store.require_panophoto(source_id)
    value = to_finite_or(offset, None)
    if value is None:
        raise InvalidArgument("azimuth_offset must be a valid number")
    target_id = str(target_id)
    if target_id not in linked_target_ids(source):
        raise NotFound(f"Link not found: {source['id']} -> {target_id}")

    if find_link(source, target_id) is None:
        # Bare legacy entry: give it a structured form before setting the offset.
        target = store.get_panophoto(target_id)
        apply_link(source, target_id, azimuth_between(source, target))
    find_link(source, target_id)["azimuthOffset"] = normalize_offset_degrees(value)
    store.save_panophoto(source)
    return {"source": source}


def canonical_links(photo, neighbors_by_id):
    """
    Wire form of photo's links. Bare entries get the bearing computed
    from the neighbour's current position (0 if it is gone).
    """
    result = []
    for entry in photo.get("linked_photos") or []:
        tid = extract_target_id(entry)
        if not tid:
            continue
        if isinstance(entry, dict):
            azimuth = entry.get("azimuth")
            if azimuth is None:
                azimuth = azimuth_between(photo, neighbors_by_id.get(tid))
            result.append(make_link(tid, azimuth, entry.get("azimuthOffset")))
        else:
            result.append(make_link(tid, azimuth_between(photo, neighbors_by_id.get(tid))))
    return result


def upgrade_legacy_links(store, photo):
    """Rewrite bare entries whose target still exists. Returns how many were upgraded."""
    legacy_ids = [e for e in photo.get("linked_photos") or [] if is_legacy_link(e)]
    upgraded = 0
    for tid in dict.fromkeys(legacy_ids):
        neighbor = store.get_panophoto(tid)
        if neighbor is None:
            continue
        if apply_link(photo, tid, azimuth_between(photo, neighbor)):
            upgraded += 1
    if upgraded:
        store.save_panophoto(photo)
    return upgraded


def find_link_asymmetries(store, project_id):
    photos = store.list_panophotos(project_id=project_id)
    by_id = {p["id"]: p for p in photos}
    problems = []
    for photo in photos:
        for tid in linked_target_ids(photo):
            neighbor = by_id.get(tid)
            if neighbor is None or tid == photo["id"]:
                problems.append({"photo_id": photo["id"], "target_id": tid, "problem": "dangling_target"})
                continue
            if has_legacy_link(photo, tid):
                problems.append({"photo_id": photo["id"], "target_id": tid, "problem": "legacy_entry"})
            if photo["id"] not in linked_target_ids(neighbor):
                problems.append({"photo_id": photo["id"], "target_id": tid, "problem": "missing_reverse"})
    return problems


def repair_link_symmetry(store, project_id):
    """
    Bring every link in the project back to the symmetric structured form:
    bare entries are upgraded, missing reverse entries are added and
    entries pointing outside the project are dropped.
    """
    photos = store.list_panophotos(project_id=project_id)
    by_id = {p["id"]: p for p in photos}
    stats = {"upgraded": 0, "reverse_added": 0, "dangling_removed": 0, "warnings": []}
    for photo in photos:
        for tid in linked_target_ids(photo):
            try:
                neighbor = by_id.get(tid)
                if neighbor is None or tid == photo["id"]:
                    remove_link(store, photo, tid)
                    stats["dangling_removed"] += 1
                    continue
                if has_legacy_link(photo, tid):
                    upsert_link(store, photo, tid, azimuth_between(photo, neighbor))
                    stats["upgraded"] += 1
                if photo["id"] not in linked_target_ids(neighbor):
                    upsert_link(store, neighbor, photo["id"], azimuth_between(neighbor, photo))
                    stats["reverse_added"] += 1
            except StorageFailure as e:
                logger.warning(f"Link repair failed for {photo['id']} -> {tid}: {e}")
                stats["warnings"].append(f"link {photo['id']} -> {tid} not repaired")
    return stats
