from flask import Flask, request, jsonify, send_from_directory, g
import os
import logging
from werkzeug.utils import secure_filename
from flask_cors import CORS

from backend import cascade, levels, links, projects
from backend.blobs import BlobStore, blob_url, make_thumbnail, new_blob_key, release_blobs
from backend.errors import InvalidArgument, PanoCanvasError, StorageFailure
from backend.markers import build_link_lines, build_markers_from_links, compute_click_offset
from backend.store import Store, now_iso

app = Flask(__name__)
CORS(app)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.path.join(BASE_DIR, '..', 'data')
DB_PATH = os.getenv("PANOCANVAS_DB_PATH") or os.path.join(DATA_DIR, 'app.db')
BLOB_FOLDER = os.getenv("PANOCANVAS_BLOB_DIR") or os.path.join(DATA_DIR, 'blobs')
LOG_FILE = os.getenv("PANOCANVAS_LOG_FILE") or os.path.join(BASE_DIR, 'flask_app.log')

app.config['DB_PATH'] = DB_PATH
app.config['BLOB_FOLDER'] = BLOB_FOLDER
app.config['MAX_CONTENT_LENGTH'] = 20 * 1024 * 1024

# Setup Logging. Core modules log under "backend.*".
handler = logging.FileHandler(LOG_FILE)
handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s: %(message)s'))
core_logger = logging.getLogger("backend")
core_logger.addHandler(handler)
core_logger.setLevel(logging.DEBUG)
if not app.logger.name.startswith("backend"):
    app.logger.addHandler(handler)
app.logger.setLevel(logging.DEBUG)

ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'webp'}


def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def get_store():
    if "store" not in g:
        g.store = Store.connect(app.config["DB_PATH"])
    return g.store


def get_blob_store():
    return BlobStore(app.config["BLOB_FOLDER"])


@app.teardown_appcontext
def close_db(_error):
    store = g.pop("store", None)
    if store is not None:
        store.close()


def init_db():
    db_path = app.config["DB_PATH"]
    os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
    os.makedirs(app.config["BLOB_FOLDER"], exist_ok=True)
    store = Store.connect(db_path)
    try:
        store.init_schema()
    finally:
        store.close()


@app.errorhandler(PanoCanvasError)
def handle_core_error(error):
    if isinstance(error, StorageFailure):
        app.logger.error(f"Storage failure: {error.message}", exc_info=True)
    return jsonify({"error": error.message}), error.status_code


@app.errorhandler(413)
def request_entity_too_large(error):
    return jsonify({'error': 'File too large', 'details': 'Image exceeds 20 MB upload limit'}), 413


def neighbors_by_id(store, photo):
    return {p["id"]: p for p in store.find_panophotos(links.linked_target_ids(photo))}


def serialize_panophoto(photo, neighbors=None):
    return {
        "id": photo["id"],
        "project_id": photo["project_id"],
        "name": photo["name"],
        "level_id": photo["level_id"],
        "x_position": photo["x_position"],
        "y_position": photo["y_position"],
        "image_url": photo["image_url"],
        "thumbnail_url": photo["thumbnail_url"],
        "linked_photos": links.canonical_links(photo, neighbors or {}),
        "created_at": photo["created_at"],
        "updated_at": photo["updated_at"],
    }


def serialize_panophotos(photos):
    by_id = {p["id"]: p for p in photos}
    return [serialize_panophoto(p, by_id) for p in photos]


def serialize_level(project, level, resolved_start_id=None):
    bg_url, _bg_key = levels.level_background(project, level)
    return {
        "id": level["id"],
        "name": level["name"],
        "index": level["index"],
        "background_image_url": bg_url,
        "start_panophoto": level.get("start_panophoto"),
        "resolved_start_panophoto": resolved_start_id,
    }


def serialize_project(store, project, photos=None):
    if photos is None:
        photos = store.list_panophotos(project_id=project["id"])
    levels.resolve_project_start(store, project, photos)
    starts = levels.resolve_starts(project, photos)
    return {
        "id": project["id"],
        "name": project["name"],
        "description": project["description"],
        "is_active": project["is_active"],
        "start_panophoto": project["start_panophoto"],
        "resolved_start_panophoto": starts["project_start_id"],
        "canvas_background_image_url": project["canvas_background_image_url"],
        "levels": [
            serialize_level(project, level, starts["level_start_ids"].get(level["id"]))
            for level in project["levels"]
        ],
        "panophoto_count": len(photos),
        "created_at": project["created_at"],
        "updated_at": project["updated_at"],
    }


def load_project(store, project_id):
    return levels.ensure_levels(store, store.require_project(project_id))


@app.route("/api/health")
def health():
    return jsonify({"message": "Server is running!", "timestamp": now_iso()}), 200


# Projects

@app.route("/api/projects", methods=["GET"])
def projects_list():
    store = get_store()
    items = [serialize_project(store, levels.ensure_levels(store, p)) for p in store.list_projects()]
    return jsonify({"projects": items}), 200


@app.route("/api/projects", methods=["POST"])
def projects_create():
    data = request.get_json(silent=True) or {}
    store = get_store()
    project = projects.create_project(store, data.get("name"), data.get("description"))
    return jsonify({"message": "Project created and set as active", "project": serialize_project(store, project)}), 201


@app.route("/api/projects/active", methods=["GET"])
def projects_active():
    store = get_store()
    project = projects.get_active_project(store)
    return jsonify({"project": serialize_project(store, project)}), 200


@app.route("/api/projects/<project_id>", methods=["GET"])
def projects_get(project_id):
    store = get_store()
    project = load_project(store, project_id)
    photos = store.list_panophotos(project_id=project["id"])
    payload = serialize_project(store, project, photos)
    payload["panophotos"] = serialize_panophotos(photos)
    return jsonify({"project": payload}), 200


@app.route("/api/projects/<project_id>/activate", methods=["PATCH"])
def projects_activate(project_id):
    store = get_store()
    project = projects.activate_project(store, project_id)
    return jsonify({"message": "Project activated", "project": serialize_project(store, project)}), 200


@app.route("/api/projects/<project_id>", methods=["DELETE"])
def projects_delete(project_id):
    result = cascade.delete_project(get_store(), get_blob_store(), project_id)
    return jsonify({"message": "Project deleted", **result}), 200


@app.route("/api/projects/<project_id>/start", methods=["PUT"])
def projects_set_start(project_id):
    data = request.get_json(silent=True) or {}
    store = get_store()
    project = load_project(store, project_id)
    levels.set_project_start(store, project, data.get("panophoto_id"))
    return jsonify({"project": serialize_project(store, project)}), 200


# Levels

@app.route("/api/projects/<project_id>/levels", methods=["POST"])
def levels_create(project_id):
    data = request.get_json(silent=True) or {}
    store = get_store()
    project = load_project(store, project_id)
    level = levels.add_level(store, project, data.get("name"))
    return jsonify({"level": serialize_level(project, level)}), 201


@app.route("/api/projects/<project_id>/levels/<level_id>", methods=["PATCH"])
def levels_rename(project_id, level_id):
    data = request.get_json(silent=True) or {}
    store = get_store()
    project = load_project(store, project_id)
    level = levels.rename_level(store, project, level_id, data.get("name"))
    return jsonify({"level": serialize_level(project, level)}), 200


@app.route("/api/projects/<project_id>/levels/<level_id>", methods=["GET"])
def levels_get(project_id, level_id):
    store = get_store()
    project, level = levels.load_project_level(store, project_id, level_id)
    photos = store.list_panophotos(project_id=project["id"], level_id=level["id"])
    start_id = levels.resolve_level_start(level, photos)
    return jsonify(
        {
            "project_id": project["id"],
            "level": serialize_level(project, level, start_id),
            "panophotos": serialize_panophotos(photos),
            "link_lines": build_link_lines(photos),
        }
    ), 200


@app.route("/api/projects/<project_id>/levels/<level_id>/start", methods=["PUT"])
def levels_set_start(project_id, level_id):
    data = request.get_json(silent=True) or {}
    store = get_store()
    project = load_project(store, project_id)
    level = levels.set_level_start(store, project, level_id, data.get("panophoto_id"))
    photos = store.list_panophotos(project_id=project["id"], level_id=level["id"])
    return jsonify({"level": serialize_level(project, level, levels.resolve_level_start(level, photos))}), 200


@app.route("/api/projects/<project_id>/levels/<level_id>/background", methods=["POST"])
def levels_set_background(project_id, level_id):
    store = get_store()
    project = load_project(store, project_id)
    levels.require_level(project, level_id)
    file = request.files.get("image")
    if file is None or not file.filename:
        raise InvalidArgument("Image file is required")
    if not allowed_file(file.filename):
        raise InvalidArgument("Unsupported image type")
    data = file.read()
    make_thumbnail(data)
    blob_store = get_blob_store()
    key = blob_store.put(new_blob_key("levels", secure_filename(file.filename)), data)
    previous_key = levels.set_level_background(store, project, level_id, blob_url(key), key)
    if previous_key and previous_key != key:
        release_blobs(blob_store, [previous_key])
    level = levels.require_level(project, level_id)
    return jsonify({"level": serialize_level(project, level)}), 200


# Panophotos

@app.route("/api/panophotos", methods=["GET"])
def panophotos_list():
    store = get_store()
    project_id = request.args.get("project") or None
    photos = list(reversed(store.list_panophotos(project_id=project_id)))
    return jsonify({"panophotos": serialize_panophotos(photos)}), 200


@app.route("/api/panophotos", methods=["POST"])
def panophotos_create():
    name = (request.form.get("name") or "").strip()
    project_id = (request.form.get("project") or "").strip()
    if not name or not project_id:
        raise InvalidArgument("Name and project are required")
    file = request.files.get("image")
    if file is None or not file.filename:
        raise InvalidArgument("Image file is required")
    if not allowed_file(file.filename):
        raise InvalidArgument("Uploaded file must be an image")
    try:
        x = float(request.form.get("x_position", 0) or 0)
        y = float(request.form.get("y_position", 0) or 0)
    except ValueError:
        raise InvalidArgument("x_position and y_position must be valid numbers")

    store = get_store()
    project = store.require_project(project_id)
    data = file.read()
    thumb = make_thumbnail(data)
    blob_store = get_blob_store()
    image_key = blob_store.put(new_blob_key("panophotos", secure_filename(file.filename)), data)
    thumb_key = blob_store.put(image_key.rsplit('.', 1)[0] + "_thumb.jpg", thumb)
    try:
        photo = store.create_panophoto(
            project["id"], name, blob_url(image_key), image_key,
            thumbnail_url=blob_url(thumb_key), thumbnail_key=thumb_key,
            x_position=x, y_position=y,
        )
    except StorageFailure:
        release_blobs(blob_store, [image_key, thumb_key])
        raise
    return jsonify({"message": "Pano photo stored successfully", "panophoto": serialize_panophoto(photo)}), 201


@app.route("/api/panophotos/<photo_id>", methods=["GET"])
def panophotos_get(photo_id):
    store = get_store()
    photo = store.require_panophoto(photo_id)
    neighbors = neighbors_by_id(store, photo)
    markers = build_markers_from_links(
        photo,
        neighbors,
        highlight_target_id=request.args.get("highlight") or None,
        is_adjust_mode=request.args.get("adjust") in ("1", "true"),
    )
    return jsonify(
        {
            "panophoto": serialize_panophoto(photo, neighbors),
            "neighbors": serialize_panophotos(list(neighbors.values())),
            "markers": markers,
        }
    ), 200


@app.route("/api/panophotos/<photo_id>", methods=["DELETE"])
def panophotos_delete(photo_id):
    result = cascade.delete_photo(get_store(), get_blob_store(), photo_id)
    return jsonify({"message": "Panophoto deleted successfully", **result}), 200


@app.route("/api/panophotos/<photo_id>/position", methods=["PATCH"])
def panophotos_move(photo_id):
    data = request.get_json(silent=True) or {}
    store = get_store()
    result = links.move_photo(store, photo_id, data.get("x_position"), data.get("y_position"), data.get("level_id"))
    photo = result["photo"]
    return jsonify(
        {
            "panophoto": serialize_panophoto(photo, neighbors_by_id(store, photo)),
            "affected_neighbor_ids": result["affected_neighbor_ids"],
            "warnings": result["warnings"],
        }
    ), 200


@app.route("/api/panophotos/<photo_id>/unplace", methods=["POST"])
def panophotos_unplace(photo_id):
    result = cascade.unplace_photo(get_store(), photo_id)
    return jsonify(
        {
            "message": "Panophoto unplaced",
            "panophoto": serialize_panophoto(result["photo"]),
            "affected_neighbor_ids": result["affected_neighbor_ids"],
            "cleaned_neighbor_ids": result["cleaned_neighbor_ids"],
            "warnings": result["warnings"],
        }
    ), 200


@app.route("/api/panophotos/<photo_id>/links", methods=["POST"])
def panophotos_link(photo_id):
    data = request.get_json(silent=True) or {}
    result = links.link_photos(get_store(), photo_id, data.get("target_id"))
    source, target = result["source"], result["target"]
    return jsonify(
        {
            "source": serialize_panophoto(source, {target["id"]: target}),
            "target": serialize_panophoto(target, {source["id"]: source}),
        }
    ), 200


@app.route("/api/panophotos/<photo_id>/links/<target_id>", methods=["DELETE"])
def panophotos_unlink(photo_id, target_id):
    result = links.unlink_photos(get_store(), photo_id, target_id)
    return jsonify({"source": serialize_panophoto(result["source"]), "target": serialize_panophoto(result["target"])}), 200


@app.route("/api/panophotos/<photo_id>/links/<target_id>/offset", methods=["PATCH"])
def panophotos_link_offset(photo_id, target_id):
    data = request.get_json(silent=True) or {}
    store = get_store()
    if "yaw" in data:
        photo = store.require_panophoto(photo_id)
        offset = compute_click_offset(
            photo, target_id, data.get("yaw"), unit=data.get("unit") or "radians",
            neighbor=store.get_panophoto(target_id),
        )
        if offset is None:
            return jsonify({"message": "Marker offset unchanged", "source": serialize_panophoto(photo, neighbors_by_id(store, photo))}), 200
    else:
        offset = data.get("azimuth_offset")
    result = links.set_link_offset(store, photo_id, target_id, offset)
    source = result["source"]
    return jsonify({"message": "Marker offset updated", "source": serialize_panophoto(source, neighbors_by_id(store, source))}), 200


@app.route("/blobs/<path:key>")
def serve_blob(key):
    return send_from_directory(app.config["BLOB_FOLDER"], key)


init_db()

if __name__ == '__main__':
    app.run(debug=True, host='0.0.0.0', port=5000)
