import os
import tempfile
import unittest
from io import BytesIO

from PIL import Image

from backend.app import app, init_db


def jpeg_bytes(size=(64, 32)):
    out = BytesIO()
    Image.new("RGB", size, (40, 90, 160)).save(out, "JPEG")
    return out.getvalue()


class ApiTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self._old_db = app.config["DB_PATH"]
        self._old_blobs = app.config["BLOB_FOLDER"]
        app.config["DB_PATH"] = os.path.join(self.tmp.name, "app.db")
        app.config["BLOB_FOLDER"] = os.path.join(self.tmp.name, "blobs")
        init_db()
        self.client = app.test_client()

    def tearDown(self):
        app.config["DB_PATH"] = self._old_db
        app.config["BLOB_FOLDER"] = self._old_blobs
        self.tmp.cleanup()

    def create_project(self, name="Office"):
        res = self.client.post("/api/projects", json={"name": name, "description": "qa"})
        self.assertEqual(res.status_code, 201)
        return res.get_json()["project"]

    def upload(self, project_id, name, x=0.0, y=0.0):
        res = self.client.post(
            "/api/panophotos",
            data={
                "name": name,
                "project": project_id,
                "x_position": str(x),
                "y_position": str(y),
                "image": (BytesIO(jpeg_bytes()), f"{name}.jpg"),
            },
            content_type="multipart/form-data",
        )
        self.assertEqual(res.status_code, 201)
        return res.get_json()["panophoto"]

    def place(self, photo_id, x, y, level_id=None):
        res = self.client.patch(
            f"/api/panophotos/{photo_id}/position",
            json={"x_position": x, "y_position": y, "level_id": level_id},
        )
        self.assertEqual(res.status_code, 200)
        return res.get_json()

    def test_link_move_offset_and_unplace(self):
        project = self.create_project()
        level_id = project["levels"][0]["id"]
        x = self.upload(project["id"], "X")
        y = self.upload(project["id"], "Y")
        self.assertIsNone(x["level_id"])
        self.place(x["id"], 0.0, 0.0, level_id)
        self.place(y["id"], 1.0, 0.0, level_id)

        res = self.client.post(f"/api/panophotos/{x['id']}/links", json={"target_id": y["id"]})
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertEqual(body["source"]["linked_photos"], [{"target": y["id"], "azimuth": 90.0, "azimuthOffset": 0.0}])
        self.assertEqual(body["target"]["linked_photos"], [{"target": x["id"], "azimuth": 270.0, "azimuthOffset": 0.0}])

        moved = self.place(x["id"], 0.0, -1.0)
        self.assertEqual(moved["affected_neighbor_ids"], [y["id"]])
        self.assertAlmostEqual(moved["panophoto"]["linked_photos"][0]["azimuth"], 135.0)
        got_y = self.client.get(f"/api/panophotos/{y['id']}").get_json()
        self.assertAlmostEqual(got_y["panophoto"]["linked_photos"][0]["azimuth"], 315.0)

        res = self.client.patch(
            f"/api/panophotos/{x['id']}/links/{y['id']}/offset", json={"yaw": 145, "unit": "degrees"}
        )
        self.assertEqual(res.status_code, 200)
        self.assertAlmostEqual(res.get_json()["source"]["linked_photos"][0]["azimuthOffset"], 10.0)

        viewer = self.client.get(f"/api/panophotos/{x['id']}?adjust=1&highlight={y['id']}").get_json()
        self.assertEqual(len(viewer["markers"]), 1)
        self.assertAlmostEqual(viewer["markers"][0]["data"]["yaw"], 145.0)
        self.assertEqual(viewer["markers"][0]["tooltip"], "Y")

        res = self.client.post(f"/api/panophotos/{y['id']}/unplace")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["affected_neighbor_ids"], [x["id"]])
        got_x = self.client.get(f"/api/panophotos/{x['id']}").get_json()
        self.assertEqual(got_x["panophoto"]["linked_photos"], [])
        self.assertEqual(got_x["markers"], [])

    def test_link_validation(self):
        project = self.create_project()
        other = self.create_project("Other")
        a = self.upload(project["id"], "A")
        b = self.upload(other["id"], "B")
        self.assertEqual(self.client.post(f"/api/panophotos/{a['id']}/links", json={"target_id": a["id"]}).status_code, 400)
        self.assertEqual(self.client.post(f"/api/panophotos/{a['id']}/links", json={"target_id": b["id"]}).status_code, 400)
        self.assertEqual(self.client.post(f"/api/panophotos/{a['id']}/links", json={"target_id": "nope"}).status_code, 404)
        self.assertEqual(self.client.delete(f"/api/panophotos/{a['id']}/links/nope").status_code, 404)
        res = self.client.patch(f"/api/panophotos/{a['id']}/links/{b['id']}/offset", json={"azimuth_offset": 5})
        self.assertEqual(res.status_code, 404)
        self.assertIn("error", res.get_json())

    def test_upload_rejects_non_images(self):
        project = self.create_project()
        res = self.client.post(
            "/api/panophotos",
            data={"name": "bad", "project": project["id"], "image": (BytesIO(b"not an image"), "bad.jpg")},
            content_type="multipart/form-data",
        )
        self.assertEqual(res.status_code, 400)
        res = self.client.post("/api/panophotos", data={"name": "missing"}, content_type="multipart/form-data")
        self.assertEqual(res.status_code, 400)

    def test_levels_and_starts(self):
        project = self.create_project()
        first_level = project["levels"][0]
        self.assertEqual(first_level["name"], "Level 1")
        res = self.client.post(f"/api/projects/{project['id']}/levels", json={"name": "Upper"})
        self.assertEqual(res.status_code, 201)
        upper = res.get_json()["level"]
        self.assertEqual(upper["index"], 1)
        dup = self.client.post(f"/api/projects/{project['id']}/levels", json={"name": "upper"})
        self.assertEqual(dup.status_code, 400)

        a = self.upload(project["id"], "A")
        b = self.upload(project["id"], "B")
        self.place(a["id"], 0.2, 0.2, first_level["id"])
        self.place(b["id"], 0.6, 0.2, first_level["id"])
        self.client.post(f"/api/panophotos/{a['id']}/links", json={"target_id": b["id"]})

        view = self.client.get(f"/api/projects/{project['id']}/levels/{first_level['id']}").get_json()
        self.assertEqual(view["level"]["resolved_start_panophoto"], a["id"])
        self.assertEqual(len(view["link_lines"]), 1)

        res = self.client.put(
            f"/api/projects/{project['id']}/levels/{first_level['id']}/start", json={"panophoto_id": b["id"]}
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["level"]["resolved_start_panophoto"], b["id"])
        res = self.client.put(
            f"/api/projects/{project['id']}/levels/{upper['id']}/start", json={"panophoto_id": b["id"]}
        )
        self.assertEqual(res.status_code, 400)

        got = self.client.get(f"/api/projects/{project['id']}").get_json()["project"]
        self.assertEqual(got["resolved_start_panophoto"], a["id"])
        self.assertEqual(got["start_panophoto"], a["id"])
        self.assertEqual(len(got["panophotos"]), 2)

        self.assertEqual(self.client.delete(f"/api/panophotos/{a['id']}").status_code, 200)
        got = self.client.get(f"/api/projects/{project['id']}").get_json()["project"]
        self.assertEqual(got["start_panophoto"], b["id"])
        b_now = self.client.get(f"/api/panophotos/{b['id']}").get_json()["panophoto"]
        self.assertEqual(b_now["linked_photos"], [])

    def test_project_activation_and_delete(self):
        first = self.create_project("First")
        second = self.create_project("Second")
        active = self.client.get("/api/projects/active").get_json()["project"]
        self.assertEqual(active["id"], second["id"])
        photo = self.upload(second["id"], "P")
        blob_path = os.path.join(app.config["BLOB_FOLDER"], photo["image_url"][len("/blobs/"):])
        self.assertTrue(os.path.exists(blob_path))
        self.assertEqual(self.client.get(photo["image_url"]).status_code, 200)

        res = self.client.delete(f"/api/projects/{second['id']}")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["active_project_id"], first["id"])
        self.assertFalse(os.path.exists(blob_path))
        self.assertEqual(self.client.get(f"/api/panophotos/{photo['id']}").status_code, 404)

        self.client.delete(f"/api/projects/{first['id']}")
        self.assertEqual(self.client.get("/api/projects/active").status_code, 404)


if __name__ == "__main__":
    unittest.main()
