import datetime
import functools
import json
import sqlite3
import uuid

from backend.errors import NotFound, StorageFailure

SCHEMA = """
PRAGMA foreign_keys = ON;
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    is_active INTEGER NOT NULL DEFAULT 0,
    start_panophoto TEXT,
    canvas_background_image_url TEXT,
    canvas_background_image_key TEXT,
    levels_json TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS panophotos (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    name TEXT NOT NULL,
    level_id TEXT,
    x_position REAL NOT NULL DEFAULT 0,
    y_position REAL NOT NULL DEFAULT 0,
    image_url TEXT NOT NULL,
    image_key TEXT NOT NULL,
    thumbnail_url TEXT,
    thumbnail_key TEXT,
    linked_photos_json TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (project_id) REFERENCES projects(id)
);
CREATE INDEX IF NOT EXISTS idx_panophotos_project ON panophotos(project_id, created_at);
CREATE INDEX IF NOT EXISTS idx_panophotos_level ON panophotos(level_id);
"""


def now_iso():
    # Microseconds are kept: created_at drives oldest-first start fallback.
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None).isoformat(timespec="microseconds") + "Z"


def new_id():
    return uuid.uuid4().hex


def storage_call(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except sqlite3.Error as e:
            raise StorageFailure(f"Record store error in {fn.__name__}: {e}") from e
    return wrapper


def row_to_panophoto(row):
    return {
        "id": row["id"],
        "project_id": row["project_id"],
        "name": row["name"],
        "level_id": row["level_id"],
        "x_position": row["x_position"],
        "y_position": row["y_position"],
        "image_url": row["image_url"],
        "image_key": row["image_key"],
        "thumbnail_url": row["thumbnail_url"],
        "thumbnail_key": row["thumbnail_key"],
        "linked_photos": json.loads(row["linked_photos_json"] or "[]"),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def row_to_project(row):
    return {
        "id": row["id"],
        "name": row["name"],
        "description": row["description"],
        "is_active": bool(row["is_active"]),
        "start_panophoto": row["start_panophoto"],
        "canvas_background_image_url": row["canvas_background_image_url"],
        "canvas_background_image_key": row["canvas_background_image_key"],
        "levels": json.loads(row["levels_json"] or "[]"),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


class Store:
    """
    Record store for projects and panophotos on a sqlite3 connection.

    Links and levels are embedded JSON documents owned by their parent
    row; they are only ever written through save_panophoto/save_project.
    Every write commits on its own, there is no multi-record transaction.
    """

    def __init__(self, db):
        self.db = db
        self.db.row_factory = sqlite3.Row

    @classmethod
    def connect(cls, path):
        return cls(sqlite3.connect(path))

    def close(self):
        self.db.close()

    @storage_call
    def init_schema(self):
        self.db.executescript(SCHEMA)
        cols = [r[1] for r in self.db.execute("PRAGMA table_info(panophotos)").fetchall()]
        if "thumbnail_key" not in cols:
            self.db.execute("ALTER TABLE panophotos ADD COLUMN thumbnail_key TEXT")
        project_cols = [r[1] for r in self.db.execute("PRAGMA table_info(projects)").fetchall()]
        if "canvas_background_image_key" not in project_cols:
            self.db.execute("ALTER TABLE projects ADD COLUMN canvas_background_image_key TEXT")
        self.db.commit()

    # Panophotos

    @storage_call
    def create_panophoto(self, project_id, name, image_url, image_key, thumbnail_url=None, thumbnail_key=None,
                         x_position=0.0, y_position=0.0, level_id=None, linked_photos=None, created_at=None):
        pid = new_id()
        ts = now_iso()
        self.db.execute(
            """
            INSERT INTO panophotos (id, project_id, name, level_id, x_position, y_position, image_url, image_key,
                                    thumbnail_url, thumbnail_key, linked_photos_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                pid, project_id, name, level_id, float(x_position), float(y_position), image_url, image_key,
                thumbnail_url, thumbnail_key, json.dumps(linked_photos or []), created_at or ts, ts,
            ),
        )
        self.db.commit()
        return self.get_panophoto(pid)

    @storage_call
    def get_panophoto(self, photo_id):
        if not photo_id:
            return None
        row = self.db.execute("SELECT * FROM panophotos WHERE id = ?", (str(photo_id),)).fetchone()
        return row_to_panophoto(row) if row is not None else None

    def require_panophoto(self, photo_id):
        photo = self.get_panophoto(photo_id)
        if photo is None:
            raise NotFound(f"Panophoto not found: {photo_id}")
        return photo

    @storage_call
    def list_panophotos(self, project_id=None, level_id=None):
        where, params = [], []
        if project_id is not None:
            where.append("project_id = ?")
            params.append(project_id)
        if level_id is not None:
            where.append("level_id = ?")
            params.append(level_id)
        sql = "SELECT * FROM panophotos"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at ASC, rowid ASC"
        return [row_to_panophoto(r) for r in self.db.execute(sql, params).fetchall()]

    @storage_call
    def find_panophotos(self, photo_ids):
        ids = [str(i) for i in photo_ids if i]
        if not ids:
            return []
        ph = ",".join("?" for _ in ids)
        rows = self.db.execute(
            f"SELECT * FROM panophotos WHERE id IN ({ph}) ORDER BY created_at ASC, rowid ASC",
            ids,
        ).fetchall()
        return [row_to_panophoto(r) for r in rows]

    @storage_call
    def save_panophoto(self, photo):
        photo["updated_at"] = now_iso()
        self.db.execute(
            """
            UPDATE panophotos
            SET name = ?, level_id = ?, x_position = ?, y_position = ?, image_url = ?, image_key = ?,
                thumbnail_url = ?, thumbnail_key = ?, linked_photos_json = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                photo["name"], photo.get("level_id"), float(photo.get("x_position") or 0.0),
                float(photo.get("y_position") or 0.0), photo["image_url"], photo["image_key"],
                photo.get("thumbnail_url"), photo.get("thumbnail_key"),
                json.dumps(photo.get("linked_photos") or []), photo["updated_at"], photo["id"],
            ),
        )
        self.db.commit()
        return photo

    @storage_call
    def delete_panophoto(self, photo_id):
        self.db.execute("DELETE FROM panophotos WHERE id = ?", (photo_id,))
        self.db.commit()

    # Projects

    @storage_call
    def create_project(self, name, description="", is_active=False, levels=None,
                       canvas_background_image_url=None, canvas_background_image_key=None, created_at=None):
        pid = new_id()
        ts = now_iso()
        self.db.execute(
            """
            INSERT INTO projects (id, name, description, is_active, start_panophoto, canvas_background_image_url,
                                  canvas_background_image_key, levels_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, NULL, ?, ?, ?, ?, ?)
            """,
            (
                pid, name, description or "", 1 if is_active else 0, canvas_background_image_url,
                canvas_background_image_key, json.dumps(levels or []), created_at or ts, ts,
            ),
        )
        self.db.commit()
        return self.get_project(pid)

    @storage_call
    def get_project(self, project_id):
        if not project_id:
            return None
        row = self.db.execute("SELECT * FROM projects WHERE id = ?", (str(project_id),)).fetchone()
        return row_to_project(row) if row is not None else None

    def require_project(self, project_id):
        project = self.get_project(project_id)
        if project is None:
            raise NotFound(f"Project not found: {project_id}")
        return project

    @storage_call
    def list_projects(self):
        rows = self.db.execute("SELECT * FROM projects ORDER BY created_at DESC, rowid DESC").fetchall()
        return [row_to_project(r) for r in rows]

    @storage_call
    def get_active_project(self):
        row = self.db.execute(
            "SELECT * FROM projects WHERE is_active = 1 ORDER BY created_at DESC, rowid DESC LIMIT 1"
        ).fetchone()
        return row_to_project(row) if row is not None else None

    @storage_call
    def deactivate_projects(self, except_id=None):
        if except_id:
            self.db.execute("UPDATE projects SET is_active = 0 WHERE is_active = 1 AND id != ?", (except_id,))
        else:
            self.db.execute("UPDATE projects SET is_active = 0 WHERE is_active = 1")
        self.db.commit()

    @storage_call
    def save_project(self, project):
        project["updated_at"] = now_iso()
        self.db.execute(
            """
            UPDATE projects
            SET name = ?, description = ?, is_active = ?, start_panophoto = ?, canvas_background_image_url = ?,
                canvas_background_image_key = ?, levels_json = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                project["name"], project.get("description") or "", 1 if project.get("is_active") else 0,
                project.get("start_panophoto"), project.get("canvas_background_image_url"),
                project.get("canvas_background_image_key"), json.dumps(project.get("levels") or []),
                project["updated_at"], project["id"],
            ),
        )
        self.db.commit()
        return project

    @storage_call
    def delete_project(self, project_id):
        self.db.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        self.db.commit()
