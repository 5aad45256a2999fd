"""
Read-only access to stored images.

Endpoints:
    GET /media/<path>  — blobs written by the local image store
"""

from flask import Blueprint, abort, send_from_directory

from civiclens.services.image_store import get_image_store

media_bp = Blueprint("media", __name__, url_prefix="/media")


@media_bp.route("/<path:filename>", methods=["GET"])
def serve(filename):
    store = get_image_store()
    if store.local_path(filename) is None:
        abort(404)
    response = send_from_directory(store.root, filename, max_age=86400)
    response.headers["Cache-Control"] = "public, max-age=86400, immutable"
    return response
