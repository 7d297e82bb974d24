from enum import Enum
from typing import Any, Dict


class ErrorKind(Enum):
    """Structured request failures and the HTTP status each one maps to."""

    NO_FILES = (400, "No files uploaded")
    FILE_TOO_LARGE = (400, "File {filename} exceeds maximum size of {limit_mb}MB")
    TYPE_NOT_ALLOWED = (400, "File type {mime_type} not allowed. Allowed types: {allowed}")
    PATH_REQUIRED = (400, "Path is required")
    NOT_FOUND = (404, "File not found")
    UPLOAD_FAILED = (500, "Error uploading files")

    def __init__(self, status_code: int, template: str) -> None:
        self.status_code = status_code
        self.template = template


class UploadAPIError(Exception):
    """An error that already carries its HTTP status and client-facing message."""

    def __init__(self, kind: ErrorKind, **params: Any) -> None:
        self.kind = kind
        self.status_code = kind.status_code
        self.status_message = kind.template.format(**params)
        super().__init__(self.status_message)

    def to_payload(self) -> Dict[str, Any]:
        return {"statusCode": self.status_code, "statusMessage": self.status_message}
