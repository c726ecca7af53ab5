"""
Document ingestion: uploaded story file -> ordered page segments (+ optional cover image).

Text files are read as UTF-8. PDFs are read with PyMuPDF; their first page is
rendered to PNG and returned as the cover image.
"""
import os
import re
import logging
from typing import Dict, List, Optional

import pymupdf
from pydantic import BaseModel

from .errors import EmptyDocument, UnsupportedFormat
from .media import ImagePayload
from .models import COVER, END, PendingScene
from .settings import PDF_COVER_DPI

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = (".txt", ".text", ".md")
PDF_EXTENSIONS = (".pdf",)
SUPPORTED_EXTENSIONS = TEXT_EXTENSIONS + PDF_EXTENSIONS

# One or more blank lines separate pages
_PAGE_BREAK_RE = re.compile(r"\n\s*\n")


class IngestedDocument(BaseModel):
    story_text: str
    pages: List[str]
    total_pages: int
    cover_image: Optional[ImagePayload] = None


def _extension(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lower()


def _read_text(data: bytes) -> str:
    return data.decode("utf-8-sig", errors="replace")


def _read_pdf(data: bytes) -> tuple:
    try:
        doc = pymupdf.open(stream=data, filetype="pdf")
    except (RuntimeError, ValueError) as e:
        # A corrupt PDF yields no text, which is what EmptyDocument reports
        logger.warning(f"PDF could not be opened: {e}")
        raise EmptyDocument("PDF could not be read; no text was extracted.")
    with doc:
        page_texts = [page.get_text().strip() for page in doc]
        cover = None
        if doc.page_count > 0:
            pix = doc[0].get_pixmap(dpi=PDF_COVER_DPI)
            cover = ImagePayload.from_bytes(pix.tobytes("png"), "image/png")
            logger.info(f"Rendered PDF cover page ({pix.width}x{pix.height})")
    return "\n\n".join(t for t in page_texts if t), cover


def split_pages(text: str) -> List[str]:
    """Split on blank lines, dropping empty segments. Never returns an empty list for non-blank text."""
    pages = [p.strip() for p in _PAGE_BREAK_RE.split(text) if p.strip()]
    if not pages:
        return [text.strip()]
    return pages


def ingest_document(filename: str, data: bytes) -> IngestedDocument:
    ext = _extension(filename)
    if ext not in SUPPORTED_EXTENSIONS:
        raise UnsupportedFormat(
            f"Unsupported file type '{ext or filename}'. Please upload one of: {', '.join(SUPPORTED_EXTENSIONS)}"
        )

    logger.info(f"Parsing document text from {filename} ({len(data)} bytes)")
    cover = None
    if ext in PDF_EXTENSIONS:
        text, cover = _read_pdf(data)
    else:
        text = _read_text(data)
    text = text.replace("\r\n", "\n").replace("\r", "\n")

    if not text.strip():
        raise EmptyDocument()

    pages = split_pages(text)
    logger.info(f"Document split into {len(pages)} pages (cover image: {cover is not None})")
    return IngestedDocument(story_text=text, pages=pages, total_pages=len(pages), cover_image=cover)


def build_scene_map(pages: List[str]) -> Dict[str, PendingScene]:
    scenes: Dict[str, PendingScene] = {COVER: PendingScene()}
    for i, page_text in enumerate(pages, start=1):
        scenes[str(i)] = PendingScene(text=page_text)
    scenes[END] = PendingScene()
    return scenes
