"""Tests for the renter document staging pipeline."""

from __future__ import annotations

import pytest

from rentacar.domain.errors import ValidationError
from rentacar.infrastructure.documents import DocumentStore, UploadedDocument
from tests.conftest import PDF_BYTES, uploads


class TestValidation:
    def setup_method(self):
        self.store = DocumentStore("/unused", max_bytes=64)

    def test_accepts_pdf_and_png(self):
        for document in uploads().values():
            self.store.validate(document)

    def test_rejects_wrong_extension(self):
        with pytest.raises(ValidationError, match="file type"):
            self.store.validate(
                UploadedDocument("identity", "cin.exe", "image/png", b"x")
            )

    def test_rejects_wrong_mime_type(self):
        with pytest.raises(ValidationError, match="file type"):
            self.store.validate(
                UploadedDocument("license", "permis.pdf", "text/html", PDF_BYTES)
            )

    def test_rejects_unknown_field(self):
        with pytest.raises(ValidationError, match="Unexpected document field"):
            self.store.validate(
                UploadedDocument("passport", "p.pdf", "application/pdf", PDF_BYTES)
            )

    def test_rejects_oversized_file(self):
        with pytest.raises(ValidationError, match="too large"):
            self.store.validate(
                UploadedDocument("license", "p.pdf", "application/pdf", b"x" * 65)
            )


class TestStaging:
    @pytest.mark.asyncio
    async def test_promote_moves_files_under_renter(self, tmp_path):
        store = DocumentStore(tmp_path)
        async with store.stage(uploads()) as staged:
            assert staged.complete
            urls = await staged.promote(42)

        assert urls == {
            "identity": "/users/42/identity.png",
            "license": "/users/42/license.pdf",
        }
        assert (tmp_path / "users" / "42" / "license.pdf").read_bytes() == PDF_BYTES
        assert list((tmp_path / "tmp").iterdir()) == []

    @pytest.mark.asyncio
    async def test_failure_discards_promoted_files(self, tmp_path):
        store = DocumentStore(tmp_path)
        with pytest.raises(RuntimeError):
            async with store.stage(uploads()) as staged:
                await staged.promote(42)
                raise RuntimeError("transaction failed")

        assert not (tmp_path / "users" / "42").exists()
        assert list((tmp_path / "tmp").iterdir()) == []

    @pytest.mark.asyncio
    async def test_incomplete_set(self, tmp_path):
        store = DocumentStore(tmp_path)
        only_identity = {"identity": uploads()["identity"]}
        async with store.stage(only_identity) as staged:
            assert "identity" in staged
            assert not staged.complete
