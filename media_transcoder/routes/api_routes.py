"""API routes: one POST endpoint per recipe."""

from flask import Blueprint

from media_transcoder.engine import RECIPES
from media_transcoder.services import transcode_service

api_bp = Blueprint("api", __name__, url_prefix="/api")

for _key in RECIPES:
    api_bp.add_url_rule(
        f"/{_key}",
        endpoint=_key.replace("/", "_").replace("-", "_"),
        view_func=transcode_service.make_transcode_view(_key),
        methods=["POST"],
    )
