"""Upload validation/storage and retrieval, independent of the HTTP layer."""

import mimetypes
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from werkzeug.exceptions import HTTPException

from .errors import ErrorKind, UploadAPIError
from .lifecycle import lifecycle_logger, sanitize_log_value
from .storage import BlobStorage, InvalidKeyError, KeyGenerator


MAX_FILE_SIZE_MB = 5
MAX_FILE_SIZE = MAX_FILE_SIZE_MB * 1024 * 1024
ALLOWED_MIME_TYPES = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "application/pdf",
    "application/msword",
    "text/plain",
)
UPLOADS_URL_PREFIX = "/uploads/"
DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class IncomingFilePart:
    filename: Optional[str]
    mime_type: Optional[str]
    data: bytes


@dataclass(frozen=True)
class UploadResult:
    filename: str
    url: str
    success: bool = True

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def validate_part(part: IncomingFilePart) -> bool:
    """Validate one part, returning ``False`` when it should be skipped.

    Raises :class:`UploadAPIError` for oversize parts and disallowed types.
    Both checks run before the filename check.
    """

    if len(part.data) > MAX_FILE_SIZE:
        raise UploadAPIError(
            ErrorKind.FILE_TOO_LARGE,
            filename=part.filename or "unknown",
            limit_mb=MAX_FILE_SIZE_MB,
        )

    if not part.mime_type or part.mime_type not in ALLOWED_MIME_TYPES:
        raise UploadAPIError(
            ErrorKind.TYPE_NOT_ALLOWED,
            mime_type=part.mime_type or "unknown",
            allowed=", ".join(ALLOWED_MIME_TYPES),
        )

    if not part.filename:
        lifecycle_logger.warning("upload_part_skipped reason=missing_filename")
        return False

    return True


def rollback_stored_items(storage: BlobStorage, keys: Iterable[str]) -> List[str]:
    """Remove *keys* from storage, returning the ones that could not be removed."""

    failed: List[str] = []
    for key in keys:
        try:
            storage.remove_item(key)
        except Exception:
            lifecycle_logger.warning(
                "rollback_delete_failed key=%s", sanitize_log_value(key)
            )
            failed.append(key)
    return failed


def handle_upload(
    parts: Sequence[IncomingFilePart],
    storage: BlobStorage,
    key_generator: KeyGenerator,
) -> List[UploadResult]:
    """Validate every part, then store the accepted ones in arrival order."""

    if not parts:
        raise UploadAPIError(ErrorKind.NO_FILES)

    results: List[UploadResult] = []
    stored_keys: List[str] = []
    try:
        accepted = [part for part in parts if validate_part(part)]

        for part in accepted:
            key = key_generator.generate(part.filename)
            storage.set_item_raw(key, part.data)
            stored_keys.append(key)
            lifecycle_logger.info(
                "file_stored key=%s size=%d content_type=%s",
                sanitize_log_value(key),
                len(part.data),
                part.mime_type,
            )
            results.append(UploadResult(filename=key, url=f"{UPLOADS_URL_PREFIX}{key}"))
    except (UploadAPIError, HTTPException):
        raise
    except Exception as error:
        lifecycle_logger.exception("upload_failed stored_before_failure=%d", len(stored_keys))
        failed_rollbacks = rollback_stored_items(storage, stored_keys)
        if failed_rollbacks:
            lifecycle_logger.error(
                "rollback_incomplete keys=%s",
                [sanitize_log_value(key) for key in failed_rollbacks],
            )
        raise UploadAPIError(ErrorKind.UPLOAD_FAILED) from error

    return results


def handle_retrieval(path: Optional[str], storage: BlobStorage) -> bytes:
    if not path:
        raise UploadAPIError(ErrorKind.PATH_REQUIRED)

    try:
        data = storage.get_item_raw(path)
    except InvalidKeyError:
        lifecycle_logger.warning("file_invalid_key path=%s", sanitize_log_value(path))
        raise UploadAPIError(ErrorKind.NOT_FOUND)

    if data is None:
        lifecycle_logger.warning("file_missing path=%s", sanitize_log_value(path))
        raise UploadAPIError(ErrorKind.NOT_FOUND)
    return data


def guess_content_type(key: str) -> str:
    """Content type to serve *key* with.

    Only allowlisted types are ever derived from the extension; anything else
    (``.html``, ``.svg``, unknown) is served as opaque bytes.
    """

    guessed, _ = mimetypes.guess_type(key)
    if guessed in ALLOWED_MIME_TYPES:
        return guessed
    return DEFAULT_CONTENT_TYPE
