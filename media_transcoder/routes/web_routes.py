"""Health routes."""

from flask import Blueprint

from media_transcoder.services import transcode_service

web_bp = Blueprint("web", __name__)


@web_bp.get("/health")
def health():
    return transcode_service.health()
