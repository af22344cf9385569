"""Flask views for the transcoding endpoints.

Every endpoint goes through one flow: parse the request into ``InputFile``
objects and a parameter mapping, let the recipe build a ``JobSpec``, run it
through the orchestrator and send back the result. ``JobFailure`` subclasses
are rendered by the registered error handler.
"""

import base64
import binascii
import io
import logging
import mimetypes
import os
import sys
import time
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import unquote, urlparse

from flask import jsonify, request, send_file
from werkzeug.exceptions import HTTPException, NotFound, RequestEntityTooLarge
from werkzeug.utils import secure_filename

from media_transcoder.config import RuntimeConfig
from media_transcoder.core.exceptions import (
    JobFailure,
    ResourceError,
    ToolError,
    ValidationError,
)
from media_transcoder.core.settings import get_pipeline_settings
from media_transcoder.core import utils
from media_transcoder.engine import MULTI_UPLOAD, RECIPES
from media_transcoder.engine.ffmpeg import FFMPEG
from media_transcoder.engine.ghostscript import get_ghostscript_command
from media_transcoder.pipeline.invoker import resolve_executable
from media_transcoder.pipeline.models import InputFile
from media_transcoder.pipeline.orchestrator import JobResult, get_orchestrator

# Config
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

API_TOKEN = os.environ.get('API_TOKEN')
DEFAULT_UPLOAD_NAME = "upload"

# JSON body keys that describe the upload rather than recipe parameters
_UPLOAD_KEYS = frozenset({
    "file_download_link", "file_content_base64", "filename", "mime_type", "files", "params",
})


def configure_app(app, runtime_config: RuntimeConfig) -> None:
    """Apply Flask app config values required by this service layer."""
    global API_TOKEN
    app.config["MAX_CONTENT_LENGTH"] = runtime_config.max_content_length
    if runtime_config.api_token:
        API_TOKEN = runtime_config.api_token
    logger.info("[settings] Effective pipeline settings: %s", get_pipeline_settings().as_dict())


def register_error_handlers(app) -> None:
    """Register job, HTTP and framework error handlers."""
    app.register_error_handler(JobFailure, handle_job_failure)
    app.register_error_handler(RequestEntityTooLarge, handle_large_file)
    app.register_error_handler(HTTPException, handle_http_exception)
    app.register_error_handler(Exception, handle_error)


def require_auth(f):
    """Decorator to require Bearer token authentication."""
    @wraps(f)
    def decorated(*args, **kwargs):
        if not API_TOKEN:
            return f(*args, **kwargs)  # No token configured = open access

        auth_header = request.headers.get('Authorization')

        if not auth_header:
            logger.warning(f"Missing Authorization header on {request.path} (content_type: {request.content_type})")
            return jsonify({"success": False, "error": "Missing Authorization header"}), 401

        if not auth_header.startswith('Bearer '):
            logger.warning(f"Invalid Authorization format on {request.path}: {auth_header[:30]}...")
            return jsonify({"success": False, "error": "Authorization must use Bearer token format"}), 401

        if auth_header[7:] != API_TOKEN:
            logger.warning(f"Invalid token on {request.path}")
            return jsonify({"success": False, "error": "Invalid token"}), 403

        return f(*args, **kwargs)
    return decorated


def create_error_response(error: Exception, status_code: int = 500):
    """Create standardized error response.

    Returns both 'error' (short form) and 'error_type'/'error_message'.
    Tool output never reaches the client; it is logged by the invoker.
    """
    if isinstance(error, JobFailure):
        body = {
            "success": False,
            "error": error.message,
            "error_type": error.error_type,
            "error_message": error.message,
        }
        if error.stage:
            body["stage"] = error.stage
        return jsonify(body), status_code

    return jsonify({
        "success": False,
        "error": str(error),
        "error_type": "UnknownError",
        "error_message": str(error),
    }), status_code


# Upload parsing
def _clean_name(raw: Optional[str]) -> str:
    return secure_filename(raw or "") or DEFAULT_UPLOAD_NAME


def _guess_mime(filename: str, declared: Optional[str] = None) -> Optional[str]:
    if declared and declared != "application/octet-stream":
        return declared
    return mimetypes.guess_type(filename)[0] or declared


def _name_from_url(url: str) -> str:
    return unquote(os.path.basename(urlparse(url).path))


def _scalar_params(data: Mapping[str, Any]) -> Dict[str, str]:
    params = {}
    for key, value in data.items():
        if key in _UPLOAD_KEYS or isinstance(value, (dict, list)) or value is None:
            continue
        params[key] = str(value).lower() if isinstance(value, bool) else str(value)
    nested = data.get("params")
    if isinstance(nested, dict):
        params.update({k: str(v) for k, v in nested.items() if v is not None})
    return params


def _json_upload(item: Mapping[str, Any], max_bytes: int) -> InputFile:
    url = item.get("file_download_link")
    if url:
        if not isinstance(url, str):
            raise ValidationError("Invalid file_download_link")
        logger.info("Transcode request with URL: %s", utils.redact_url_for_log(url, max_len=120))
        data = utils.download_bytes(url, max_bytes)
        filename = _clean_name(item.get("filename") or _name_from_url(url))
    elif "file_content_base64" in item:
        try:
            data = base64.b64decode(item["file_content_base64"], validate=True)
        except (binascii.Error, TypeError, ValueError):
            raise ValidationError("Invalid base64")
        filename = _clean_name(item.get("filename"))
    else:
        raise ValidationError("Missing file_download_link or file_content_base64")

    mime_type = item.get("mime_type") if isinstance(item.get("mime_type"), str) else None
    return InputFile(name=filename, data=data, mime_type=_guess_mime(filename, mime_type), filename=filename)


def parse_request(multi: bool) -> Tuple[List[InputFile], Dict[str, str]]:
    """Extract uploads and recipe parameters from JSON or multipart requests.

    Accepts:
    - application/json with 'file_download_link' (URL to download)
    - application/json with 'file_content_base64' (base64-encoded file)
    - application/json with 'files': [{...}, ...] for multi-image recipes
    - multipart/form-data with 'file' (or 'files' for multi-image recipes)
    """
    max_bytes = get_pipeline_settings().max_input_bytes

    if request.is_json:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("Invalid JSON body")
        if not data:
            raise ValidationError("Empty request body")
        items = data.get("files") if multi and isinstance(data.get("files"), list) else [data]
        uploads = [_json_upload(item, max_bytes) for item in items if isinstance(item, dict)]
        return uploads, _scalar_params(data)

    files = request.files.getlist("files") if multi else []
    if not files:
        files = request.files.getlist("file")
    files = [f for f in files if f and f.filename]
    if not files:
        raise ValidationError("Missing 'files' field" if multi else "Missing 'file' field")

    uploads = []
    for upload in files:
        filename = _clean_name(upload.filename)
        uploads.append(InputFile(
            name=filename,
            data=upload.read(),
            mime_type=_guess_mime(filename, upload.mimetype),
            filename=filename,
        ))
    params = {key: value for key, value in request.form.items()}
    return uploads, params


# Responses
def _download_name(uploads: List[InputFile], output_name: str) -> str:
    stem = os.path.splitext(uploads[0].declared_name)[0] if uploads else ""
    if not stem or stem == DEFAULT_UPLOAD_NAME or len(uploads) > 1:
        return output_name
    ext = os.path.splitext(output_name)[1]
    return f"{stem}{ext}"


def build_response(key: str, uploads: List[InputFile], result: JobResult):
    original_size = sum(len(u.data) for u in uploads)

    if len(result.outputs) == 1:
        output = result.primary
        response = send_file(
            io.BytesIO(output.data),
            mimetype=output.content_type,
            as_attachment=True,
            download_name=_download_name(uploads, output.name),
        )
        response.headers["X-Original-Size"] = str(original_size)
        response.headers["X-Output-Size"] = str(output.size)
        response.headers["X-Job-Id"] = result.job_id
        return response

    stem = os.path.splitext(uploads[0].declared_name)[0] if uploads else key.split("/")[-1]
    files = [
        {
            "filename": f"{stem}-{output.name}",
            "mime": output.content_type,
            "size": output.size,
            "base64": base64.b64encode(output.data).decode("ascii"),
        }
        for output in result.outputs.values()
    ]
    return jsonify({
        "success": True,
        "job_id": result.job_id,
        "original_size": original_size,
        "output_size": result.total_bytes,
        "files": files,
    })


def transcode(key: str):
    """Run the recipe registered under ``key`` for the current request."""
    recipe = RECIPES[key]
    started = time.time()
    uploads, params = parse_request(key in MULTI_UPLOAD)
    logger.info(
        "Transcode request %s: %d file(s), %s",
        key, len(uploads), utils.format_size_mb(sum(len(u.data) for u in uploads)),
    )

    spec = recipe(uploads, params)
    result = get_orchestrator().run(spec)

    logger.info(
        "[%s] %s finished in %.2fs: %s -> %s",
        result.job_id,
        key,
        time.time() - started,
        utils.format_size_mb(sum(len(u.data) for u in uploads)),
        utils.format_size_mb(result.total_bytes),
    )
    return build_response(key, uploads, result)


def make_transcode_view(key: str):
    """Build the authenticated Flask view for one recipe."""
    @require_auth
    def view():
        return transcode(key)

    view.__name__ = f"transcode_{key.replace('/', '_').replace('-', '_')}"
    return view


# Health
def build_health_snapshot() -> Dict[str, Any]:
    """Build a lightweight snapshot of tool availability and limits."""
    settings = get_pipeline_settings()
    gs_cmd = get_ghostscript_command()
    ffmpeg_path = resolve_executable(FFMPEG)
    try:
        workspace_count = len([p for p in settings.workspace_root.glob("job-*") if p.is_dir()])
    except OSError:
        workspace_count = -1

    return {
        "status": "healthy" if gs_cmd and ffmpeg_path else "degraded",
        "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "instance_id": os.environ.get("WEBSITE_INSTANCE_ID", "local"),
        "tools": {
            "ghostscript": {"available": gs_cmd is not None, "command": gs_cmd or "missing"},
            "ffmpeg": {"available": ffmpeg_path is not None, "command": ffmpeg_path or "missing"},
        },
        "workspaces": {
            "root": str(settings.workspace_root),
            "active": workspace_count,
            "max_age_seconds": settings.workspace_max_age_seconds,
        },
        "limits": {
            "max_input_mb": settings.max_input_bytes // (1024 * 1024),
            "max_output_mb": settings.max_output_bytes // (1024 * 1024),
            "stage_timeout_seconds": settings.stage_timeout_seconds,
        },
        "recipes": sorted(RECIPES),
    }


def health():
    """Health check endpoint with tool availability for debugging."""
    return jsonify(build_health_snapshot())


def cleanup_daemon():
    """Background cleanup - removes workspaces orphaned by crashed workers."""
    settings = get_pipeline_settings()
    workspaces = get_orchestrator().workspaces
    while True:
        time.sleep(settings.workspace_sweep_interval_seconds)
        try:
            workspaces.sweep_stale(settings.workspace_max_age_seconds)
        except Exception as e:
            logger.error(f"[sweep] Cleanup error: {e}")


# Error handlers
def handle_job_failure(e: JobFailure):
    if isinstance(e, ResourceError):
        logger.error("Job failed (%s) in %s: %s", e.error_type, e.stage or "setup", e.message)
    elif isinstance(e, ToolError):
        logger.warning("Job failed (%s) in %s: %s", e.error_type, e.stage or "setup", e.message)
    else:
        logger.info("Rejected request on %s (%s): %s", request.path, e.error_type, e.message)
    return create_error_response(e, e.status_code)


def handle_large_file(e):
    max_mb = int(get_pipeline_settings().max_input_bytes / (1024 * 1024))
    message = f"File too large (max {max_mb}MB)"
    return jsonify({
        "success": False,
        "error": message,
        "error_type": "FileTooLarge",
        "error_message": message,
    }), 413


def handle_http_exception(e):
    if isinstance(e, NotFound):
        logger.info("404 %s %s", request.method, request.path)
    else:
        logger.warning("HTTP %s on %s %s: %s", e.code, request.method, request.path, e.description)
    return create_error_response(e, e.code or 400)


def handle_error(e):
    logger.exception("Unhandled error")
    return create_error_response(e, 500)
