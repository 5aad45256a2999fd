"""
CivicLens
Image store — the object-storage boundary.

Blobs are write-once and addressed by reference:

    ref = store.save(data, "image/jpeg", owner_id)     # "/media/<owner>/<uuid>.jpg"
    img = store.load(ref)                              # StoredImage(data, mime_type)

Local refs (``/media/…``) live under ``IMAGE_STORAGE_DIR`` and are served by
the ``media`` route.  ``http(s)://`` refs (images held by an external
bucket) are fetched with ``requests`` under ``IMAGE_FETCH_TIMEOUT``, and only
from hosts listed in ``IMAGE_REMOTE_HOSTS``; redirects are not followed.

Testability: pass a custom ``session`` to ImageStore() to intercept remote
fetches.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import uuid
from dataclasses import dataclass
from urllib.parse import urlsplit

import requests
from flask import current_app
from werkzeug.utils import safe_join, secure_filename

from civiclens.core.exceptions import ImageFetchError, ValidationError

logger = logging.getLogger(__name__)

MEDIA_PREFIX = "/media/"

ALLOWED_MIME_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/heic": ".heic",
}

_EXTENSION_MIME = {ext: mime for mime, ext in ALLOWED_MIME_TYPES.items()}
_EXTENSION_MIME[".jpeg"] = "image/jpeg"


@dataclass(frozen=True)
class StoredImage:
    data: bytes
    mime_type: str


class ImageStore:
    """Local-disk object store with read-through for remote references."""

    def __init__(
        self,
        root: str,
        *,
        max_bytes: int = 10 * 1024 * 1024,
        fetch_timeout: float = 15.0,
        session: requests.Session | None = None,
        remote_hosts=(),
    ) -> None:
        self.root = root
        self.max_bytes = max_bytes
        self.fetch_timeout = fetch_timeout
        self._session = session
        # Buckets whose http(s) refs may be fetched; anything else is refused
        self.remote_hosts = frozenset(h.strip().lower() for h in remote_hosts if h and h.strip())

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    # ── Validation ───────────────────────────────────────────────────────────

    def validate_upload(self, data: bytes, content_type: str | None) -> str:
        """Return the normalised MIME type or raise ValidationError."""
        mime = (content_type or "").split(";")[0].strip().lower()
        if mime == "image/jpg":
            mime = "image/jpeg"
        if mime not in ALLOWED_MIME_TYPES:
            raise ValidationError(
                f"Unsupported image type '{content_type}'",
                details={"image": f"must be one of {', '.join(sorted(ALLOWED_MIME_TYPES))}"},
            )
        if not data:
            raise ValidationError("image is empty", details={"image": "empty"})
        if len(data) > self.max_bytes:
            raise ValidationError(
                f"image exceeds {self.max_bytes // (1024 * 1024)} MB",
                details={"image": "too large"},
            )
        return mime

    # ── Write ────────────────────────────────────────────────────────────────

    def save(self, data: bytes, content_type: str | None, owner_id: str) -> str:
        """Persist a new blob and return its reference.  Never overwrites."""
        mime = self.validate_upload(data, content_type)
        owner_dir = secure_filename(str(owner_id)) or "anonymous"
        filename = f"{uuid.uuid4().hex}{ALLOWED_MIME_TYPES[mime]}"
        directory = os.path.join(self.root, owner_dir)
        os.makedirs(directory, exist_ok=True)
        with open(os.path.join(directory, filename), "xb") as fh:
            fh.write(data)
        ref = f"{MEDIA_PREFIX}{owner_dir}/{filename}"
        logger.debug("Stored image %s (%d bytes, %s)", ref, len(data), mime)
        return ref

    # ── Read ─────────────────────────────────────────────────────────────────

    def local_path(self, relative: str) -> str | None:
        """Absolute path for a ``/media/`` relative path, or None if it escapes the root."""
        return safe_join(self.root, relative)

    def is_remote_allowed(self, ref: str) -> bool:
        parts = urlsplit(ref)
        return parts.scheme in ("http", "https") and (parts.hostname or "") in self.remote_hosts

    def is_stored_ref(self, ref: str | None) -> bool:
        """True for refs this store can read: local media or an allowed bucket URL."""
        if not ref:
            return False
        return ref.startswith(MEDIA_PREFIX) or self.is_remote_allowed(ref)

    def load(self, ref: str) -> StoredImage:
        """Read a blob back.  Raises ImageFetchError on any failure."""
        if not ref:
            raise ImageFetchError("empty image reference")
        if ref.startswith(MEDIA_PREFIX):
            return self._load_local(ref[len(MEDIA_PREFIX):])
        if ref.startswith(("http://", "https://")):
            return self._load_remote(ref)
        raise ImageFetchError(f"unsupported image reference: {ref}")

    def _load_local(self, relative: str) -> StoredImage:
        path = self.local_path(relative)
        if path is None or not os.path.isfile(path):
            raise ImageFetchError(f"image not found: {relative}")
        ext = os.path.splitext(path)[1].lower()
        with open(path, "rb") as fh:
            data = fh.read()
        return StoredImage(data=data, mime_type=_EXTENSION_MIME.get(ext, "image/jpeg"))

    def _load_remote(self, url: str) -> StoredImage:
        if not self.is_remote_allowed(url):
            raise ImageFetchError(f"remote image host not allowed: {urlsplit(url).hostname}")
        try:
            resp = self.session.get(url, timeout=self.fetch_timeout, allow_redirects=False)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise ImageFetchError(f"image fetch failed for {url}: {exc}") from exc
        if 300 <= resp.status_code < 400:
            raise ImageFetchError(f"image fetch for {url} was redirected")
        mime = (resp.headers.get("Content-Type") or "").split(";")[0].strip().lower()
        if mime not in ALLOWED_MIME_TYPES:
            mime = mimetypes.guess_type(url)[0] or "image/jpeg"
        return StoredImage(data=resp.content, mime_type=mime)


# ── App wiring ───────────────────────────────────────────────────────────────

def init_image_store(app, store: ImageStore | None = None) -> ImageStore:
    store = store or ImageStore(
        app.config["IMAGE_STORAGE_DIR"],
        max_bytes=app.config.get("MAX_IMAGE_BYTES", 10 * 1024 * 1024),
        fetch_timeout=app.config.get("IMAGE_FETCH_TIMEOUT", 15.0),
        remote_hosts=app.config.get("IMAGE_REMOTE_HOSTS", ()),
    )
    os.makedirs(store.root, exist_ok=True)
    app.extensions["civiclens.image_store"] = store
    return store


def get_image_store() -> ImageStore:
    return current_app.extensions["civiclens.image_store"]
