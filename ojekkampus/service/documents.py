from __future__ import annotations

import os
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from ojekkampus.logging import get_logger
from ojekkampus.service.errors import (
    ForbiddenError,
    InvalidDocumentError,
    NotFoundError,
    ValidationError,
)
from ojekkampus.service.fs import PathTraversalError, remove_empty_parents, safe_join
from ojekkampus.storage.models import DOCUMENT_TYPES, UserRole

logger = get_logger(__name__)

MAX_DOCUMENT_BYTES = 5 * 1024 * 1024

_MAGIC_SIGNATURES = (
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG", "image/png"),
    (b"%PDF-", "application/pdf"),
)

_EXTENSION_BY_MIME = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "application/pdf": ".pdf",
}

_CONTENT_TYPE_BY_EXTENSION = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".pdf": "application/pdf",
}


@dataclass
class UploadedDocument:
    filename: str
    content: bytes


def sniff_content_type(content: bytes) -> Optional[str]:
    for signature, mime in _MAGIC_SIGNATURES:
        if content.startswith(signature):
            return mime
    return None


def content_type_for(filename: str) -> str:
    return _CONTENT_TYPE_BY_EXTENSION.get(
        Path(filename).suffix.lower(), "application/octet-stream"
    )


class DocumentStorage:
    """Driver identity documents on the local upload volume.

    Files live at ``drivers/{user_id}/{doc_type}/{unix_ts}_{uuid}{ext}``
    relative to the upload root; that relative path is what the driver
    profile stores.
    """

    def __init__(self, upload_dir: str) -> None:
        self.root = Path(upload_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    def validate(self, doc_type: str, content: bytes) -> str:
        if doc_type not in DOCUMENT_TYPES:
            raise ValidationError("invalid document type", detail={"doc_type": doc_type})
        if len(content) > MAX_DOCUMENT_BYTES:
            raise InvalidDocumentError(
                "file size exceeds maximum limit",
                detail={"doc_type": doc_type, "max_bytes": MAX_DOCUMENT_BYTES},
            )
        mime = sniff_content_type(content)
        if mime is None:
            raise InvalidDocumentError(
                "invalid file type",
                detail={"doc_type": doc_type, "allowed": ["jpg", "png", "pdf"]},
            )
        return mime

    def save(self, user_id: int, doc_type: str, filename: str, content: bytes) -> str:
        mime = self.validate(doc_type, content)
        ext = Path(filename or "").suffix.lower()
        if ext not in _CONTENT_TYPE_BY_EXTENSION:
            ext = _EXTENSION_BY_MIME[mime]
        stored_name = f"{int(time.time())}_{uuid.uuid4()}{ext}"
        relative = Path("drivers") / str(user_id) / doc_type / stored_name
        target = safe_join(self.root, str(relative))
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_name(f".{stored_name}.tmp")
        tmp_path.write_bytes(content)
        os.replace(tmp_path, target)
        logger.info(
            "document_stored",
            user_id=user_id,
            doc_type=doc_type,
            path=str(relative),
            size=len(content),
        )
        return relative.as_posix()

    def delete(self, relative_path: str) -> None:
        """Remove a stored document; missing files are ignored."""

        try:
            target = safe_join(self.root, relative_path)
            target.unlink(missing_ok=True)
            remove_empty_parents(target, self.root / "drivers")
        except (OSError, PathTraversalError) as exc:
            logger.warning("document_delete_failed", path=relative_path, error=str(exc))

    def resolve(
        self, requester_id: int, role: str, doc_type: str, filename: str
    ) -> Tuple[Path, str]:
        """Locate a document the requester may read.

        Drivers only see their own directory, admins may read any driver's
        files, passengers are refused outright.
        """

        doc_type = doc_type.lower()
        if doc_type not in DOCUMENT_TYPES:
            raise ValidationError("invalid document type", detail={"doc_type": doc_type})
        if not filename or ".." in filename or "/" in filename or "\\" in filename:
            logger.warning(
                "document_traversal_attempt", user_id=requester_id, filename=filename
            )
            raise ValidationError("invalid filename")

        if role == UserRole.ADMIN.value:
            path = self._find_any(doc_type, filename)
        elif role == UserRole.DRIVER.value:
            path = safe_join(
                self.root, f"drivers/{requester_id}/{doc_type}/{filename}"
            )
        else:
            logger.warning("document_access_denied", user_id=requester_id, role=role)
            raise ForbiddenError("unauthorized access to document")

        if path is None or not path.is_file():
            logger.warning(
                "document_not_found",
                user_id=requester_id,
                doc_type=doc_type,
                filename=filename,
            )
            raise NotFoundError("document not found")
        logger.info(
            "document_accessed",
            user_id=requester_id,
            role=role,
            doc_type=doc_type,
            filename=filename,
        )
        return path, content_type_for(filename)

    def _find_any(self, doc_type: str, filename: str) -> Optional[Path]:
        drivers_dir = self.root / "drivers"
        if not drivers_dir.is_dir():
            return None
        for driver_dir in sorted(drivers_dir.iterdir()):
            candidate = driver_dir / doc_type / filename
            if driver_dir.is_dir() and candidate.is_file():
                return candidate
        return None
