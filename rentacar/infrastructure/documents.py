"""
Renter document storage (identity card + driving license).

Pipeline
--------
1. **validate**  -- field name, extension, MIME type and size limit.
2. **stage**     -- bytes are written to a private temp directory.
3. **promote**   -- once the renter row exists, files move to
   ``{root}/users/{renter_id}/{field}.{ext}``.
4. **discard**   -- if the owning request fails, every promoted file is
   deleted again.

``DocumentStore.stage`` is an async context manager: the temp directory is
removed on every exit path, and an exception escaping the block discards
promoted files before it propagates.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Mapping

from rentacar.domain.errors import ValidationError

logger = logging.getLogger(__name__)

DOCUMENT_FIELDS = ("identity", "license")
VALID_EXTENSIONS = {"jpeg", "jpg", "png", "pdf"}
VALID_MIME_TYPES = {"image/jpeg", "image/jpg", "image/png", "application/pdf"}


@dataclass(frozen=True)
class UploadedDocument:
    field: str
    filename: str
    content_type: str
    data: bytes

    @property
    def extension(self) -> str:
        return self.filename.rsplit(".", 1)[-1].lower() if "." in self.filename else ""


class StagedDocuments:
    """Documents written to temp storage, waiting for their owner's id."""

    def __init__(self, temp_dir: Path, users_dir: Path, files: dict[str, Path]):
        self.temp_dir = temp_dir
        self.users_dir = users_dir
        self.files = files
        self.promoted: list[Path] = []

    def __contains__(self, field: str) -> bool:
        return field in self.files

    @property
    def complete(self) -> bool:
        return all(field in self.files for field in DOCUMENT_FIELDS)

    async def promote(self, renter_id: int) -> dict[str, str]:
        """Move staged files under the renter's directory; returns public URLs."""
        return await asyncio.to_thread(self._promote, renter_id)

    def _promote(self, renter_id: int) -> dict[str, str]:
        target_dir = self.users_dir / str(renter_id)
        target_dir.mkdir(parents=True, exist_ok=True)
        urls: dict[str, str] = {}
        for field, staged in self.files.items():
            target = target_dir / f"{field}{staged.suffix}"
            shutil.move(str(staged), target)
            self.promoted.append(target)
            urls[field] = f"/users/{renter_id}/{target.name}"
        return urls

    def discard(self) -> None:
        for path in self.promoted:
            try:
                path.unlink(missing_ok=True)
                if path.parent.exists() and not any(path.parent.iterdir()):
                    path.parent.rmdir()
            except OSError as exc:
                logger.error("Failed to clean up document %s: %s", path, exc)
        self.promoted.clear()

    def release(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class DocumentStore:
    def __init__(self, root: str | Path, max_bytes: int = 2 * 1024 * 1024):
        self.root = Path(root)
        self.max_bytes = max_bytes

    @property
    def users_dir(self) -> Path:
        return self.root / "users"

    def validate(self, document: UploadedDocument) -> None:
        if document.field not in DOCUMENT_FIELDS:
            raise ValidationError(f"Unexpected document field: {document.field}")
        if (
            document.extension not in VALID_EXTENSIONS
            or document.content_type not in VALID_MIME_TYPES
        ):
            raise ValidationError("Invalid field name, file type, or extension")
        if not document.data:
            raise ValidationError(f"Empty {document.field} document")
        if len(document.data) > self.max_bytes:
            raise ValidationError(
                f"File too large. Maximum size allowed is "
                f"{self.max_bytes // (1024 * 1024)}MB per document"
            )

    @asynccontextmanager
    async def stage(
        self, documents: Mapping[str, UploadedDocument]
    ) -> AsyncIterator[StagedDocuments]:
        for document in documents.values():
            self.validate(document)

        staged = await asyncio.to_thread(self._write_temp, documents)
        try:
            yield staged
        except BaseException:
            await asyncio.to_thread(staged.discard)
            raise
        finally:
            await asyncio.to_thread(staged.release)

    def _write_temp(self, documents: Mapping[str, UploadedDocument]) -> StagedDocuments:
        tmp_root = self.root / "tmp"
        tmp_root.mkdir(parents=True, exist_ok=True)
        temp_dir = Path(tempfile.mkdtemp(prefix="upload_", dir=tmp_root))
        files: dict[str, Path] = {}
        for field, document in documents.items():
            path = temp_dir / f"{field}.{document.extension}"
            path.write_bytes(document.data)
            files[field] = path
        return StagedDocuments(temp_dir, self.users_dir, files)
