import asyncio
import io
import logging

import easyocr
import numpy as np
from PIL import Image, UnidentifiedImageError

import config
from errors import OCRFailure
from models import ExtractedText

logger = logging.getLogger(__name__)

# OCR concurrency limiter (important under load)
OCR_SEMAPHORE = asyncio.Semaphore(config.OCR_CONCURRENCY)

# Note: EasyOCR uses PyTorch under the hood.
# Keep reader global so models are loaded once.
_reader = None


def get_reader():
    global _reader
    if _reader is None:
        logger.info("Loading EasyOCR models (gpu=%s)...", config.OCR_GPU)
        _reader = easyocr.Reader(["en"], gpu=config.OCR_GPU, verbose=False)
    return _reader


def _decode(image_bytes: bytes) -> np.ndarray:
    try:
        img = Image.open(io.BytesIO(image_bytes)).convert("RGB")
    # DecompressionBombError is not an OSError
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise OCRFailure(f"Not a readable image: {e}") from e
    return np.array(img)


def _reading_order(results):
    # easyocr returns (bbox, text, prob); bbox[0] is the top-left corner
    return sorted(results, key=lambda r: (round(r[0][0][1] / 10), r[0][0][0]))


def to_extracted_text(results) -> ExtractedText:
    """Join easyocr lines top-to-bottom and average their confidence (0-100)."""
    lines = [(text.strip(), float(prob)) for (_bbox, text, prob) in _reading_order(results) if text and text.strip()]
    if not lines:
        return ExtractedText(raw_text="", confidence=0.0)
    text = "\n".join(t for t, _ in lines)
    confidence = sum(p for _, p in lines) / len(lines) * 100.0
    return ExtractedText(raw_text=text, confidence=round(confidence, 2))


async def extract_text(image_bytes: bytes) -> ExtractedText:
    def _run(arr):
        return get_reader().readtext(arr)

    async with OCR_SEMAPHORE:
        # large screenshots take a while to decode; keep that off the event loop too
        arr = await asyncio.to_thread(_decode, image_bytes)
        try:
            results = await asyncio.to_thread(_run, arr)
        except Exception as e:
            # easyocr/torch raise a wide range of types; all mean "engine failed"
            raise OCRFailure(f"OCR engine failed: {e}") from e

    extracted = to_extracted_text(results)
    logger.info(
        "OCR extracted %d chars (confidence: %.1f): %r",
        len(extracted.raw_text), extracted.confidence, extracted.raw_text[:200],
    )
    return extracted


async def warm_up():
    """Run one tiny recognition so the first real screenshot doesn't pay model load time."""
    dummy = np.array(Image.new("RGB", (320, 240), color=(0, 0, 0)))
    try:
        await asyncio.to_thread(lambda: get_reader().readtext(dummy, detail=0))
    except Exception as e:
        logger.warning("OCR warm-up failed: %s", e)
