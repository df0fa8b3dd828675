"""Best-effort companion store for uploaded PDFs, keyed by paper id.

Not part of the entity store's atomicity: a paper may exist without a PDF
and a PDF may briefly exist under a temporary id before the paper is saved.
"""

from __future__ import annotations

import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_PDF_DIR = Path("data/pdfs")
MAX_PDF_SIZE = 50 * 1024 * 1024  # 50 MB
PDF_MAGIC = b"%PDF"

_SAFE_KEY = re.compile(r"^[\w\-.]+$")


class PDFFile(BaseModel):
    paper_id: str
    filename: str
    file_size: int
    added_at: datetime
    last_opened_at: datetime


class PDFBlobStore:
    """Stores one PDF (plus a small JSON metadata file) per paper id."""

    def __init__(self, directory: Path | str = DEFAULT_PDF_DIR):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _paths(self, paper_id: str) -> tuple[Path, Path]:
        if not _SAFE_KEY.match(paper_id) or paper_id in (".", ".."):
            raise ValueError(f"Unsafe paper id for blob storage: {paper_id!r}")
        return self.directory / f"{paper_id}.pdf", self.directory / f"{paper_id}.json"

    @staticmethod
    def _write_atomic(dest: Path, data: bytes) -> None:
        tmp = dest.with_name(dest.name + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, dest)

    def store(self, paper_id: str, data: bytes, filename: str = "document.pdf") -> PDFFile:
        """Store PDF bytes for a paper, replacing any previous file."""
        if len(data) > MAX_PDF_SIZE:
            raise ValueError(f"PDF too large ({len(data)} bytes)")
        if not data[:4].startswith(PDF_MAGIC):
            raise ValueError("Data is not a PDF")
        pdf_path, meta_path = self._paths(paper_id)
        now = datetime.now(timezone.utc)
        meta = PDFFile(
            paper_id=paper_id,
            filename=filename,
            file_size=len(data),
            added_at=now,
            last_opened_at=now,
        )
        self._write_atomic(pdf_path, data)
        self._write_atomic(meta_path, meta.model_dump_json().encode("utf-8"))
        logger.info("Stored PDF for %s (%d bytes)", paper_id, len(data))
        return meta

    def store_from_url(
        self,
        paper_id: str,
        url: str,
        client: Optional[httpx.Client] = None,
    ) -> Optional[PDFFile]:
        """Download a PDF and store it. Returns None when the download fails."""
        owns_client = client is None
        client = client or httpx.Client(timeout=60.0, follow_redirects=True)
        try:
            response = client.get(url, headers={"Accept": "application/pdf,*/*"})
            if response.status_code != 200:
                logger.warning("HTTP %d for %s", response.status_code, url)
                return None
            filename = url.rstrip("/").rsplit("/", 1)[-1] or "document.pdf"
            return self.store(paper_id, response.content, filename=filename)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Failed to store PDF from %s: %s", url, e)
            return None
        finally:
            if owns_client:
                client.close()

    def get(self, paper_id: str) -> Optional[bytes]:
        pdf_path, meta_path = self._paths(paper_id)
        if not pdf_path.exists():
            return None
        meta = self.metadata(paper_id)
        if meta is not None:
            touched = meta.model_copy(update={"last_opened_at": datetime.now(timezone.utc)})
            self._write_atomic(meta_path, touched.model_dump_json().encode("utf-8"))
        return pdf_path.read_bytes()

    def has(self, paper_id: str) -> bool:
        return self._paths(paper_id)[0].exists()

    def metadata(self, paper_id: str) -> Optional[PDFFile]:
        _, meta_path = self._paths(paper_id)
        if not meta_path.exists():
            return None
        return PDFFile.model_validate_json(meta_path.read_text(encoding="utf-8"))

    def delete(self, paper_id: str) -> bool:
        removed = False
        for path in self._paths(paper_id):
            if path.exists():
                path.unlink()
                removed = True
        return removed

    def reassign(self, temp_id: str, paper_id: str) -> bool:
        """Move a PDF stored under a temporary id to its final paper id."""
        src_pdf, src_meta = self._paths(temp_id)
        dst_pdf, dst_meta = self._paths(paper_id)
        if not src_pdf.exists():
            return False
        os.replace(src_pdf, dst_pdf)
        meta = self.metadata(temp_id) if src_meta.exists() else None
        if meta is not None:
            moved = meta.model_copy(update={"paper_id": paper_id})
            self._write_atomic(dst_meta, moved.model_dump_json().encode("utf-8"))
            src_meta.unlink()
        logger.debug("Reassigned PDF %s -> %s", temp_id, paper_id)
        return True

    def stats(self) -> dict[str, int]:
        files = list(self.directory.glob("*.pdf"))
        return {"total_files": len(files), "total_size": sum(f.stat().st_size for f in files)}
