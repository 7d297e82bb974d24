import os
import shutil
import time
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List

from flask import Flask, Response, current_app, g, jsonify, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import HTTPException, TooManyRequests

from .errors import ErrorKind, UploadAPIError
from .lifecycle import configure_logging, lifecycle_logger, sanitize_log_value
from .storage import (
    BYTES_PER_MB,
    DOWNLOAD_RATE_LIMIT_PER_MINUTE,
    LOGS_DIR,
    MAX_REQUEST_SIZE_MB,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_STORAGE_URI,
    UPLOAD_RATE_LIMIT_PER_HOUR,
    BlobStorage,
    FilesystemStorage,
    KeyGenerator,
    build_storage,
    ensure_directories,
)
from .uploads import (
    IncomingFilePart,
    guess_content_type,
    handle_retrieval,
    handle_upload,
)

STORAGE_EXTENSION = "uploadhost.storage"
KEY_GENERATOR_EXTENSION = "uploadhost.key_generator"

ensure_directories()
APP_LOG_PATH = configure_logging(LOGS_DIR)

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = MAX_REQUEST_SIZE_MB * BYTES_PER_MB
app.config["RATELIMIT_ENABLED"] = RATE_LIMIT_ENABLED
app.extensions[STORAGE_EXTENSION] = build_storage()
app.extensions[KEY_GENERATOR_EXTENSION] = KeyGenerator()

limiter = Limiter(
    get_remote_address,
    app=app,
    storage_uri=RATE_LIMIT_STORAGE_URI,
)


def upload_rate_limit_string() -> str:
    return f"{UPLOAD_RATE_LIMIT_PER_HOUR} per hour"


def download_rate_limit_string() -> str:
    return f"{DOWNLOAD_RATE_LIMIT_PER_MINUTE} per minute"


def get_storage() -> BlobStorage:
    return current_app.extensions[STORAGE_EXTENSION]


def get_key_generator() -> KeyGenerator:
    return current_app.extensions[KEY_GENERATOR_EXTENSION]


def _close_stream_safely(stream: Any, context: str) -> None:
    """Close an upload/input stream while logging failures."""

    if stream is None or not hasattr(stream, "close"):
        return

    try:
        stream.close()
    except OSError as error:
        lifecycle_logger.warning(
            "stream_close_failed context=%s error=%s",
            context,
            sanitize_log_value(str(error)),
        )


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        _close_stream_safely(
            getattr(file_storage, "stream", None),
            f"upload_stream_handler filename={getattr(file_storage, 'filename', 'unknown')}",
        )


def collect_upload_parts() -> List[IncomingFilePart]:
    """Read every part of the current multipart request.

    Plain form fields become parts with neither filename nor type and come
    before the file parts; werkzeug does not keep their interleaving.
    """

    parts: List[IncomingFilePart] = []
    if request.mimetype != "multipart/form-data":
        return parts

    for _field, value in request.form.items(multi=True):
        parts.append(IncomingFilePart(filename=None, mime_type=None, data=value.encode("utf-8")))

    for _field, file_storage in request.files.items(multi=True):
        with upload_stream_handler(file_storage) as upload:
            data = upload.stream.read()
            parts.append(
                IncomingFilePart(
                    filename=upload.filename or None,
                    mime_type=upload.mimetype or None,
                    data=data,
                )
            )
    return parts


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d size=%s",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
        response.content_length or 0,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


@app.after_request
def add_request_id_header(response: Response):
    """Expose the current request identifier to clients."""

    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(UploadAPIError)
def handle_upload_api_error(error: UploadAPIError):
    if error.status_code >= 500:
        lifecycle_logger.error(
            "request_failed path=%s status=%d",
            sanitize_log_value(request.path),
            error.status_code,
        )
    else:
        lifecycle_logger.warning(
            "request_rejected path=%s status=%d message=%s",
            sanitize_log_value(request.path),
            error.status_code,
            sanitize_log_value(error.status_message),
        )
    return jsonify(error.to_payload()), error.status_code


@app.errorhandler(TooManyRequests)
def handle_rate_limit(error: TooManyRequests):
    description = getattr(error, "description", "Too many requests")
    lifecycle_logger.warning(
        "rate_limited path=%s limit=%s",
        sanitize_log_value(request.path),
        description,
    )
    return (
        jsonify({"statusCode": 429, "statusMessage": f"Rate limit exceeded: {description}"}),
        429,
    )


@app.errorhandler(HTTPException)
def handle_http_exception(error: HTTPException):
    return jsonify({"statusCode": error.code, "statusMessage": error.name}), error.code


@app.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True
    storage = get_storage()

    probe_key = f".health_check_{uuid.uuid4().hex}"
    try:
        storage.set_item_raw(probe_key, b"health_check")
        if storage.get_item_raw(probe_key) != b"health_check":
            raise RuntimeError("probe read mismatch")
        storage.remove_item(probe_key)
        checks["storage_writable"] = "ok"
        checks["stored_objects"] = len(storage.get_keys())
    except Exception as error:
        checks["storage_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    if isinstance(storage, FilesystemStorage):
        try:
            usage = shutil.disk_usage(storage.base)
            disk_free_gb = usage.free / (1024 ** 3)
            checks["disk_space_gb"] = round(disk_free_gb, 2)
            if disk_free_gb < 1:
                checks["disk_space_status"] = "critical"
                healthy = False
            elif disk_free_gb < 5:
                checks["disk_space_status"] = "warning"
            else:
                checks["disk_space_status"] = "ok"
        except OSError as error:
            checks["disk_space_gb"] = 0
            checks["disk_space_status"] = f"error: {str(error)[:100]}"
            healthy = False

    status = "healthy" if healthy else "unhealthy"
    code = 200 if healthy else 503
    return jsonify({"status": status, "timestamp": time.time(), "checks": checks}), code


@app.route("/api/upload", methods=["POST"])
@limiter.limit(lambda: upload_rate_limit_string())
def upload_files():
    try:
        parts = collect_upload_parts()
    except HTTPException:
        raise
    except Exception as error:
        lifecycle_logger.exception("upload_read_failed")
        raise UploadAPIError(ErrorKind.UPLOAD_FAILED) from error

    results = handle_upload(parts, get_storage(), get_key_generator())
    lifecycle_logger.info("upload_completed files=%d", len(results))
    return jsonify({"success": True, "files": [result.to_dict() for result in results]})


@app.route("/uploads/", defaults={"path": ""})
@app.route("/uploads/<path:path>")
@limiter.limit(lambda: download_rate_limit_string())
def serve_upload(path: str):
    data = handle_retrieval(path, get_storage())
    lifecycle_logger.info("file_served path=%s size=%d", sanitize_log_value(path), len(data))
    return Response(data, mimetype=guess_content_type(path))


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "8000")), debug=False)
