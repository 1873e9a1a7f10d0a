import logging
import os
import uuid
from io import BytesIO

from PIL import Image, ImageOps, UnidentifiedImageError

from backend.errors import InvalidArgument, StorageFailure

logger = logging.getLogger(__name__)

THUMBNAIL_SIZE = (1024, 512)


class BlobStore:
    """Binary objects kept on local disk under a root folder, addressed by key."""

    def __init__(self, root):
        self.root = os.path.abspath(root)

    def path_for(self, key):
        path = os.path.abspath(os.path.join(self.root, key))
        if os.path.commonpath([self.root, path]) != self.root:
            raise InvalidArgument(f"Invalid blob key: {key}")
        return path

    def put(self, key, data):
        path = self.path_for(key)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)
        except OSError as e:
            raise StorageFailure(f"Failed to store blob {key}: {e}") from e
        return key

    def exists(self, key):
        return bool(key) and os.path.isfile(self.path_for(key))

    def delete(self, key):
        if not key:
            return
        path = self.path_for(key)
        try:
            os.remove(path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageFailure(f"Failed to delete blob {key}: {e}") from e


def blob_url(key):
    return f"/blobs/{key}" if key else None


def new_blob_key(prefix, filename):
    ext = os.path.splitext(filename or "")[1].lower() or ".bin"
    return f"{prefix}/{uuid.uuid4().hex}{ext}"


def make_thumbnail(data, max_size=THUMBNAIL_SIZE, quality=82):
    """
    Decode an uploaded image and return a JPEG thumbnail as bytes.
    Raises InvalidArgument when the payload is not an image.
    """
    try:
        with Image.open(BytesIO(data)) as im:
            im = ImageOps.exif_transpose(im)
            if im.mode in ("RGBA", "P", "LA", "L"):
                im = im.convert("RGB")
            im.thumbnail(max_size, Image.Resampling.LANCZOS)
            out = BytesIO()
            im.save(out, "JPEG", quality=int(quality), optimize=True, progressive=True)
            return out.getvalue()
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidArgument(f"Uploaded file must be an image: {e}") from e


def release_blobs(blob_store, keys, warnings=None):
    """Delete every key, logging failures instead of raising."""
    released = 0
    for key in keys:
        if not key:
            continue
        try:
            blob_store.delete(key)
            released += 1
        except StorageFailure as e:
            logger.warning(f"Blob removal failed for {key}: {e}")
            if warnings is not None:
                warnings.append(f"blob {key} not removed")
    return released
