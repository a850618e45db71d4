"""Document processing pipeline.

Stages:
1. Classify - Route each uploaded file as image, PDF or word-like
2. OCR - Recognize text in page images
3. Extract - Pull dates, amounts, emails, phones and keywords
4. Persist - Store pages and mark the document ready
"""

from .extract import EntityExtractor, ExtractedEntities
from .ingest import DocumentIngester, FileKind, IncomingFile, IngestResult, PageOutcome, classify
from .ocr import OCREngine, OCRResult, OCRWord

__all__ = [
    "DocumentIngester",
    "EntityExtractor",
    "ExtractedEntities",
    "FileKind",
    "IncomingFile",
    "IngestResult",
    "OCREngine",
    "OCRResult",
    "OCRWord",
    "PageOutcome",
    "classify",
]
