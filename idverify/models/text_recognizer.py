"""Text recognition over an ID card image.

Primary engine: Tesseract (via pytesseract), one call per OCR configuration.
Alternative engine: EasyOCR (language set + allowlist; page segmentation
is not configurable there and is ignored).

``DocumentReader`` runs the ordered configuration list through
``best_of`` and keeps the best-scoring field extraction. Each attempt gets
the configured time budget: Tesseract enforces it by killing its process,
other engines are abandoned by ``asyncio.wait_for`` when it runs out.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import cv2
import numpy as np
import pytesseract

try:
    import easyocr
except ImportError:
    easyocr = None

from idverify.models.best_attempt import Attempt, ProgressCallback, best_of
from idverify.models.extraction_scorer import HIGH_CONFIDENCE_SCORE, score_extraction
from idverify.models.field_extractor import ExtractionCandidate, FieldExtractor

logger = logging.getLogger("idverify.ocr")


class OcrEngineUnavailable(RuntimeError):
    """The OCR library or binary is missing."""


# ------------------------------------------------------------ whitelists ---

def _chars(first: int, last: int) -> str:
    return "".join(chr(c) for c in range(first, last + 1))


DEVANAGARI_WHITELIST = (
    _chars(0x0901, 0x0903)      # candrabindu, anusvara, visarga
    + _chars(0x0905, 0x0914)    # independent vowels
    + _chars(0x0915, 0x0939)    # consonants
    + _chars(0x093E, 0x094D)    # vowel signs, virama
    + _chars(0x0966, 0x096F)    # digits
    + " "
)
LATIN_WHITELIST = (
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789/: "
)

# Tesseract page segmentation / engine modes
PSM_AUTO = 3
PSM_SINGLE_BLOCK = 6
PSM_SINGLE_LINE = 7
OEM_LSTM_ONLY = 1


# ---------------------------------------------------------------- config ---

@dataclass(frozen=True)
class OcrConfiguration:
    """One recognition attempt: languages + segmentation + optional whitelist."""
    name: str
    languages: str
    psm: int = PSM_AUTO
    whitelist: Optional[str] = None
    oem: Optional[int] = None


def default_configurations() -> List[OcrConfiguration]:
    return [
        OcrConfiguration("Devanagari auto", "hin", PSM_AUTO,
                         DEVANAGARI_WHITELIST, OEM_LSTM_ONLY),
        OcrConfiguration("Devanagari block", "hin", PSM_SINGLE_BLOCK,
                         DEVANAGARI_WHITELIST),
        OcrConfiguration("Devanagari line", "hin", PSM_SINGLE_LINE,
                         DEVANAGARI_WHITELIST),
        OcrConfiguration("Dual language", "hin+eng", PSM_AUTO,
                         LATIN_WHITELIST + "।" + DEVANAGARI_WHITELIST),
        OcrConfiguration("Latin", "eng", PSM_AUTO, LATIN_WHITELIST),
    ]


def _env_timeout() -> Optional[float]:
    raw = os.getenv("OCR_ATTEMPT_TIMEOUT", "60").strip()
    value = float(raw) if raw else 0.0
    return value or None


@dataclass
class TextRecognizerConfig:
    """Tunable parameters for the recognition module."""
    engine: str = field(default_factory=lambda: os.getenv("OCR_ENGINE", "tesseract"))
    configurations: List[OcrConfiguration] = field(default_factory=default_configurations)
    early_stop_score: int = HIGH_CONFIDENCE_SCORE
    attempt_timeout_s: Optional[float] = field(default_factory=_env_timeout)
    enhance: bool = True
    easyocr_gpu: bool = False
    tesseract_cmd: Optional[str] = field(default_factory=lambda: os.getenv("TESSERACT_CMD"))


# ----------------------------------------------------- image helpers ---

def enhance_for_ocr(image_bgr: np.ndarray) -> np.ndarray:
    """CLAHE on the L channel plus light sharpening."""
    lab = cv2.cvtColor(image_bgr, cv2.COLOR_BGR2LAB)
    l_ch, a_ch, b_ch = cv2.split(lab)
    clahe = cv2.createCLAHE(clipLimit=2.5, tileGridSize=(8, 8))
    l_ch = clahe.apply(l_ch)
    enhanced = cv2.cvtColor(cv2.merge([l_ch, a_ch, b_ch]), cv2.COLOR_LAB2BGR)

    kernel = np.array([[0, -0.5, 0],
                       [-0.5, 3, -0.5],
                       [0, -0.5, 0]], dtype=np.float32)
    return cv2.filter2D(enhanced, -1, kernel)


# ------------------------------------------------------------ recognizer ---

class OcrEngine(Protocol):
    def recognize(self, image: np.ndarray, configuration: OcrConfiguration,
                  timeout: Optional[float] = None) -> str:
        ...


# Tesseract language codes -> EasyOCR language codes
_EASYOCR_LANGS = {"hin": "hi", "eng": "en", "nep": "ne", "mar": "mr"}


class TextRecognizer:
    """Thin wrapper around the OCR backends."""

    def __init__(self, cfg: Optional[TextRecognizerConfig] = None):
        self.cfg = cfg or TextRecognizerConfig()
        self._readers: Dict[Tuple[str, ...], "easyocr.Reader"] = {}
        if self.cfg.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self.cfg.tesseract_cmd

    def check_engine(self) -> None:
        """Raise OcrEngineUnavailable if the selected backend cannot run."""
        if self.cfg.engine == "tesseract":
            try:
                pytesseract.get_tesseract_version()
            except pytesseract.TesseractNotFoundError as exc:
                raise OcrEngineUnavailable(f"tesseract binary not found: {exc}") from exc
        elif self.cfg.engine == "easyocr":
            if easyocr is None:
                raise OcrEngineUnavailable("easyocr is not installed")
        else:
            raise OcrEngineUnavailable(f"Unknown OCR engine: {self.cfg.engine}")

    # ---- Tesseract -------------------------------------------------

    @staticmethod
    def tesseract_config(configuration: OcrConfiguration) -> str:
        parts = [f"--psm {configuration.psm}"]
        if configuration.oem is not None:
            parts.append(f"--oem {configuration.oem}")
        parts.append("-c preserve_interword_spaces=1")
        if configuration.whitelist:
            parts.append("-c " + shlex.quote(
                f"tessedit_char_whitelist={configuration.whitelist}"))
        return " ".join(parts)

    def _tesseract_recognize(self, image: np.ndarray, configuration: OcrConfiguration,
                             timeout: Optional[float] = None) -> str:
        rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
        # pytesseract kills the tesseract process and raises RuntimeError
        # once the timeout passes; 0 means no limit
        return pytesseract.image_to_string(
            rgb,
            lang=configuration.languages,
            config=self.tesseract_config(configuration),
            timeout=timeout or 0,
        )

    # ---- EasyOCR ---------------------------------------------------

    def _get_easyocr_reader(self, languages: str) -> "easyocr.Reader":
        if easyocr is None:
            raise OcrEngineUnavailable("easyocr is not installed")
        key = tuple(_EASYOCR_LANGS.get(lang, lang) for lang in languages.split("+"))
        if key not in self._readers:
            self._readers[key] = easyocr.Reader(list(key), gpu=self.cfg.easyocr_gpu)
        return self._readers[key]

    def _easyocr_recognize(self, image: np.ndarray,
                           configuration: OcrConfiguration) -> str:
        reader = self._get_easyocr_reader(configuration.languages)
        rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
        lines = reader.readtext(rgb, detail=0, allowlist=configuration.whitelist)
        return "\n".join(lines)

    # ---- public API ------------------------------------------------

    @property
    def enforces_timeout(self) -> bool:
        """True when recognize() stops on its own once *timeout* passes.

        EasyOCR runs in-process and cannot be interrupted.
        """
        return self.cfg.engine == "tesseract"

    def recognize(self, image: np.ndarray, configuration: OcrConfiguration,
                  timeout: Optional[float] = None) -> str:
        """Recognise text in *image* with one configuration."""
        if self.cfg.engine == "tesseract":
            return self._tesseract_recognize(image, configuration, timeout)
        elif self.cfg.engine == "easyocr":
            return self._easyocr_recognize(image, configuration)
        else:
            raise ValueError(f"Unknown OCR engine: {self.cfg.engine}")


# -------------------------------------------------------- document reader ---

@dataclass
class DocumentReading:
    """Outcome of the multi-configuration OCR pass over one document."""
    text: str = ""
    candidate: ExtractionCandidate = field(default_factory=ExtractionCandidate)
    score: int = 0
    configuration: Optional[str] = None
    tried: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.text)


@dataclass
class _Recognized:
    text: str
    candidate: ExtractionCandidate


class DocumentReader:
    """Runs every configuration over a document and keeps the best extraction."""

    def __init__(self,
                 engine: Optional[OcrEngine] = None,
                 extractor: Optional[FieldExtractor] = None,
                 cfg: Optional[TextRecognizerConfig] = None):
        self.cfg = cfg or TextRecognizerConfig()
        self.engine = engine or TextRecognizer(self.cfg)
        self.extractor = extractor or FieldExtractor()

    def _attempt(self, image: np.ndarray,
                 configuration: OcrConfiguration) -> Callable[[ProgressCallback], object]:
        async def run(progress: ProgressCallback) -> Optional[_Recognized]:
            progress(0.0)
            text = await asyncio.to_thread(self.engine.recognize, image, configuration,
                                           timeout=self.cfg.attempt_timeout_s)
            progress(1.0)
            if not text or not text.strip():
                return None
            logger.debug("%s extracted text: %r", configuration.name, text)
            return _Recognized(text, self.extractor.extract(text, configuration.name))
        return run

    async def read(self, image: np.ndarray,
                   on_progress: Optional[ProgressCallback] = None) -> DocumentReading:
        """Never raises for recognition failures; an empty text means
        every configuration failed and the fields must be entered by hand."""
        if self.cfg.enhance:
            try:
                image = await asyncio.to_thread(enhance_for_ocr, image)
            except cv2.error:
                logger.warning("Enhancement failed, using the original image", exc_info=True)

        attempts = [Attempt(c.name, self._attempt(image, c))
                    for c in self.cfg.configurations]
        # wait_for only abandons the worker thread; it is the guard for
        # engines that cannot stop themselves
        outer_timeout = None
        if not getattr(self.engine, "enforces_timeout", False):
            outer_timeout = self.cfg.attempt_timeout_s
        outcome = await best_of(
            attempts,
            score=lambda r: score_extraction(r.candidate),
            threshold=self.cfg.early_stop_score,
            timeout=outer_timeout,
            on_progress=on_progress,
        )

        reading = DocumentReading(tried=outcome.tried, failures=outcome.failures)
        if outcome.best is None:
            logger.warning("No usable OCR text after %d configurations", len(outcome.tried))
            return reading

        reading.text = outcome.best.text
        reading.candidate = self.extractor.postprocess(outcome.best.candidate)
        reading.score = int(outcome.best_score)
        reading.configuration = outcome.best_attempt
        logger.info("Best OCR result from %s (score %d): %s",
                    reading.configuration, reading.score, reading.candidate)
        return reading
