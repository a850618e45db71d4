"""OCR engine for scanned page images."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Callable

from ..exceptions import OCRFailure

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


@dataclass
class OCRWord:
    """A single recognized word."""

    text: str
    confidence: float
    bbox: dict[str, int] = field(default_factory=dict)


@dataclass
class OCRResult:
    """Result of recognizing one image."""

    text: str
    confidence: float  # 0.0 - 1.0, mean over recognized words
    words: list[OCRWord]
    metadata: dict[str, Any] = field(default_factory=dict)


class _Progress:
    """Forward percentages to a callback, never going backwards."""

    def __init__(self, callback: ProgressCallback | None):
        self.callback = callback
        self.last = -1

    def __call__(self, percent: float) -> None:
        value = max(0, min(100, int(round(percent))))
        if self.callback is None or value < self.last:
            return
        self.last = value
        try:
            self.callback(value)
        except Exception as e:  # a broken progress sink must not fail recognition
            logger.debug("Progress callback raised: %s", e)


class OCREngine:
    """Text recognition over page images.

    Backends:
    - Tesseract (local, free), via pytesseract

    The language set comes from configuration and is applied to every call,
    e.g. ``["eng", "rus"]`` recognizes English and Russian together. At most
    ``max_workers`` recognitions run at once; each holds one engine session
    for its duration.
    """

    def __init__(
        self,
        backend: str = "tesseract",
        languages: list[str] | None = None,
        tesseract_cmd: str | None = None,
        max_workers: int | None = None,
    ):
        self.backend = backend
        self.languages = list(languages or ["eng", "rus"])
        self.tesseract_cmd = tesseract_cmd
        self.max_workers = max_workers or os.cpu_count() or 1
        self._sessions: asyncio.Semaphore | None = None
        self._active = 0

    @property
    def language_spec(self) -> str:
        return "+".join(self.languages)

    @property
    def active_sessions(self) -> int:
        return self._active

    @classmethod
    def from_config(cls, config) -> "OCREngine":
        return cls(
            backend=config.backend,
            languages=config.languages,
            tesseract_cmd=config.tesseract_cmd,
            max_workers=config.max_workers,
        )

    async def recognize(
        self,
        image_path: Path | str,
        on_progress: ProgressCallback | None = None,
    ) -> OCRResult:
        """Recognize text in an image file.

        Raises ``OCRFailure`` for a missing file, an unreadable image or an
        engine error.
        """
        image_path = Path(image_path)
        if not image_path.is_file():
            raise OCRFailure(f"File not found: {image_path}")

        if self.backend != "tesseract":
            raise OCRFailure(f"Unknown OCR backend: {self.backend}")

        progress = _Progress(on_progress)
        progress(0)
        async with self._session():
            result = await asyncio.to_thread(self._process_tesseract, image_path)
        progress(100)
        return result

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[None]:
        """Hold one engine session, released even when recognition fails."""
        if self._sessions is None:
            self._sessions = asyncio.Semaphore(self.max_workers)
        async with self._sessions:
            self._active += 1
            try:
                yield
            finally:
                self._active -= 1

    def _process_tesseract(self, image_path: Path) -> OCRResult:
        """Process using Tesseract OCR."""
        import pytesseract
        from PIL import Image, UnidentifiedImageError

        if self.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self.tesseract_cmd

        try:
            with Image.open(image_path) as image:
                image.load()
                data = pytesseract.image_to_data(
                    image, lang=self.language_spec, output_type=pytesseract.Output.DICT
                )
                text = pytesseract.image_to_string(image, lang=self.language_spec)
        # TesseractNotFoundError is an OSError, so it goes first
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError) as e:
            raise OCRFailure(f"Tesseract failed on {image_path.name}: {e}") from e
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise OCRFailure(f"Cannot read image {image_path.name}: {e}") from e

        words: list[OCRWord] = []
        for i, raw in enumerate(data.get("text", [])):
            word_text = (raw or "").strip()
            conf = float(data["conf"][i])
            if conf < 0 or not word_text:
                continue
            words.append(OCRWord(
                text=word_text,
                confidence=conf / 100.0,
                bbox={
                    "x": data["left"][i],
                    "y": data["top"][i],
                    "width": data["width"][i],
                    "height": data["height"][i],
                },
            ))

        confidence = sum(w.confidence for w in words) / len(words) if words else 0.0

        logger.debug("OCR of %s: %d words, confidence %.2f", image_path.name, len(words), confidence)
        return OCRResult(
            text=text,
            confidence=confidence,
            words=words,
            metadata={
                "backend": "tesseract",
                "languages": self.language_spec,
                "source_file": str(image_path),
            },
        )
