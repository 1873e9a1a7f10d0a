"""
Viewer-side projections of stored links.

Markers sit at yaw = azimuth + azimuthOffset. The arithmetic must match
backend.geometry exactly; the viewer posts clicked yaws back through
compute_click_offset() to redefine an offset.
"""
from backend.errors import InvalidArgument, NotFound
from backend.geometry import (
    azimuth_between,
    normalize_degrees,
    normalize_offset_degrees,
    radians_to_degrees,
    to_finite_or,
)
from backend.links import extract_target_id

MARKER_IMAGE = "link-marker.png"
MARKER_SIZE = {"width": 64, "height": 64}
MARKER_PITCH = "-0.1deg"
MIN_OFFSET_CHANGE_DEGREES = 0.1


def _entry_for(photo, target_id):
    for entry in photo.get("linked_photos") or []:
        if extract_target_id(entry) == target_id:
            return entry
    return None


def _stored_azimuth(entry):
    if isinstance(entry, dict):
        return to_finite_or(entry.get("azimuth"), None)
    return None


def _stored_offset(entry):
    if isinstance(entry, dict):
        return to_finite_or(entry.get("azimuthOffset"), 0.0)
    return 0.0


def build_markers_from_links(photo, neighbors_by_id=None, highlight_target_id=None, is_adjust_mode=False):
    if not photo or not photo.get("linked_photos"):
        return []
    neighbors_by_id = neighbors_by_id or {}
    markers = []
    for index, entry in enumerate(photo["linked_photos"]):
        target_id = extract_target_id(entry)
        if not target_id or target_id == photo.get("id"):
            continue
        neighbor = neighbors_by_id.get(target_id)
        azimuth = _stored_azimuth(entry)
        if azimuth is None:
            azimuth = azimuth_between(photo, neighbor)
        offset = _stored_offset(entry)
        yaw = normalize_degrees(azimuth + offset)
        label = (neighbor or {}).get("name") or "View linked photo"
        marker = {
            "id": f"link-{target_id}-{index}",
            "image": MARKER_IMAGE,
            "size": dict(MARKER_SIZE),
            "position": {"yaw": f"{yaw}deg", "pitch": MARKER_PITCH},
            "tooltip": label,
            "data": {
                "targetId": target_id,
                "azimuth": azimuth,
                "azimuthOffset": offset,
                "yaw": yaw,
                "label": label,
            },
        }
        if is_adjust_mode:
            highlighted = bool(highlight_target_id) and highlight_target_id == target_id
            marker["style"] = {"cursor": "pointer", "opacity": 1 if highlighted else 0.65}
            if highlighted:
                marker["style"]["filter"] = "drop-shadow(0 0 12px #10b981)"
        markers.append(marker)
    return markers


def compute_click_offset(photo, target_id, yaw, unit="radians", neighbor=None):
    """
    Offset that puts the marker for target_id where the user clicked.
    Returns the new signed offset, or None if it moves the marker by
    less than MIN_OFFSET_CHANGE_DEGREES.
    """
    target_id = str(target_id or "")
    if not target_id:
        raise InvalidArgument("A linked target is required")
    if target_id == photo.get("id"):
        raise InvalidArgument("Cannot adjust a link pointing to this photo")
    if unit not in ("radians", "degrees"):
        raise InvalidArgument("unit must be 'radians' or 'degrees'")
    value = to_finite_or(yaw, None)
    if value is None:
        raise InvalidArgument("Unable to determine the clicked direction")

    entry = _entry_for(photo, target_id)
    if entry is None:
        raise NotFound(f"Link not found: {photo.get('id')} -> {target_id}")

    yaw_degrees = normalize_degrees(value if unit == "degrees" else radians_to_degrees(value))
    base = _stored_azimuth(entry)
    if base is None:
        base = azimuth_between(photo, neighbor)
    base = normalize_degrees(base)
    current = normalize_offset_degrees(_stored_offset(entry))
    new_offset = normalize_offset_degrees(yaw_degrees - base)
    if abs(normalize_offset_degrees(new_offset - current)) < MIN_OFFSET_CHANGE_DEGREES:
        return None
    return new_offset


def build_link_lines(visible_photos):
    """One segment per linked pair whose both ends are visible, in canvas percent."""
    by_id = {p["id"]: p for p in visible_photos or []}
    segments = []
    seen = set()
    for photo in visible_photos or []:
        for entry in photo.get("linked_photos") or []:
            partner = by_id.get(extract_target_id(entry))
            if partner is None or partner["id"] == photo["id"]:
                continue
            key = "::".join(sorted((photo["id"], partner["id"])))
            if key in seen:
                continue
            seen.add(key)
            segments.append(
                {
                    "id": key,
                    "x1": to_finite_or(photo.get("x_position")) * 100,
                    "y1": to_finite_or(photo.get("y_position")) * 100,
                    "x2": to_finite_or(partner.get("x_position")) * 100,
                    "y2": to_finite_or(partner.get("y_position")) * 100,
                }
            )
    return segments
