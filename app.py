"""Flask routes serving thumbnails, re-encoded media and raw files by content key."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from flask import Blueprint, Flask, Response, current_app, jsonify, request, send_file
from werkzeug.http import http_date

from config_manager import ServiceSettings
from media_errors import MediaManagerError
from media_manager import SizePreset, load_image, resolve_key, stat_source
from thumbnail_renderer import RenderedImage, render_thumbnail

logger = logging.getLogger(__name__)

SETTINGS_KEY = "MEDIATHUMB_SETTINGS"
CACHE_CONTROL_VALUE = "public, max-age=2592000"

_bp = Blueprint("media", __name__)


def create_app(settings: ServiceSettings) -> Flask:
    app = Flask(__name__)
    app.config[SETTINGS_KEY] = settings
    register_media_routes(app)
    return app


def register_media_routes(app: Flask) -> None:
    """Register the media blueprint and its error handler with the Flask app."""
    if "media" not in app.blueprints:
        app.register_blueprint(_bp)
    app.register_error_handler(MediaManagerError, _media_error_response)


def _settings() -> ServiceSettings:
    return current_app.config[SETTINGS_KEY]


def _media_error_response(exc: MediaManagerError):
    status = getattr(exc, "status", 500) or 500
    if status >= 500:
        logger.warning("%s %s failed: code=%s %s", request.method, request.path, exc.code, exc.message)
    else:
        logger.debug("%s %s rejected: code=%s %s", request.method, request.path, exc.code, exc.message)
    payload = {"error": exc.message, "code": exc.code}
    return jsonify(payload), status


def _is_not_modified(last_modified: int) -> bool:
    since = request.if_modified_since
    if since is None:
        return False
    return datetime.fromtimestamp(last_modified, tz=timezone.utc) <= since


def build_image_response(rendered: RenderedImage, last_modified: int) -> Response:
    response = Response(rendered.data, status=200, mimetype=rendered.mime_type)
    response.headers["Cache-Control"] = CACHE_CONTROL_VALUE
    response.headers["Last-Modified"] = http_date(last_modified)
    return response


def _not_modified_response() -> Response:
    response = Response(status=304)
    response.headers["Cache-Control"] = CACHE_CONTROL_VALUE
    return response


def _render_response(key: str, *, preset: Optional[SizePreset], quality: int, event: str) -> Response:
    settings = _settings()
    path = resolve_key(settings.base_path, key)
    source = stat_source(path)
    # HTTP dates carry whole seconds only
    last_modified = int(source.mtime)
    if _is_not_modified(last_modified):
        return _not_modified_response()

    started = time.perf_counter()
    image = load_image(
        path,
        settings.load_options,
        ffmpeg_path=settings.ffmpeg_path,
        ffprobe_path=settings.ffprobe_path,
    )
    rendered = render_thumbnail(image, preset, quality)
    logger.info(
        "%s key=%s size=%s out=%dx%d bytes=%d elapsed=%.3fs",
        event,
        key,
        preset.value if preset else "full",
        rendered.width,
        rendered.height,
        len(rendered.data),
        time.perf_counter() - started,
    )
    return build_image_response(rendered, last_modified)


@_bp.route("/thumbnail/<path:key>", methods=["GET"])
def thumbnail(key: str):
    preset = SizePreset.from_query(request.args.get("size"))
    return _render_response(key, preset=preset, quality=_settings().thumbnail_quality, event="thumbnail.render")


@_bp.route("/media/<path:key>", methods=["GET"])
def media(key: str):
    return _render_response(key, preset=None, quality=_settings().media_quality, event="media.render")


@_bp.route("/raw/<path:key>", methods=["GET"])
def original(key: str):
    settings = _settings()
    path = resolve_key(settings.base_path, key)
    source = stat_source(path)
    logger.debug("raw.send key=%s bytes=%d", key, source.size)
    return send_file(
        path,
        as_attachment=True,
        download_name=key,
        conditional=True,
        etag=False,
        last_modified=int(source.mtime),
    )
