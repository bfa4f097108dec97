"""
Captcha solving strategies for the bank login.

All solvers implement one capability: ``solve(image) -> text or None``.
``None`` is a soft failure: the login flow throws away the challenge and
requests a fresh captcha instead of re-reading the same image.

Variants:
  - ModelCaptchaSolver: local ONNX model (CTC output), length-6 check
  - TesseractCaptchaSolver: Tesseract OCR engine, output returned verbatim
  - CallbackCaptchaSolver: caller-supplied function, length-6 check

The strategy is chosen once, at construction, by ``build_captcha_solver``.
"""

import asyncio
import importlib
import inspect
import io
import logging
import string
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Union

import numpy as np
import pytesseract
from PIL import Image

logger = logging.getLogger("p2p_settlement.captcha")

CAPTCHA_LENGTH = 6
DEFAULT_CHARSET = string.digits + string.ascii_letters

CaptchaCallback = Callable[[bytes], Union[Optional[str], Awaitable[Optional[str]]]]


def _accept(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    text = text.strip()
    if len(text) != CAPTCHA_LENGTH:
        logger.debug("Rejecting captcha guess %r (length %d)", text, len(text))
        return None
    return text


class CaptchaSolver(ABC):
    """Abstract base class for captcha solvers."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def solve(self, image: bytes) -> Optional[str]:
        """Return the captcha text, or None if the image could not be read."""
        ...


class ModelCaptchaSolver(CaptchaSolver):
    """
    Runs a pre-trained ONNX model over the captcha image.

    The model takes a (1, 1, height, width) float32 grayscale tensor scaled to
    [0, 1] and emits per-timestep class scores; index ``blank_index`` is the
    CTC blank and the remaining indices map onto ``charset`` in order.
    """

    def __init__(
        self,
        model_path: str,
        charset: str = DEFAULT_CHARSET,
        height: int = 50,
        width: int = 160,
        blank_index: int = 0,
        session: Any = None,
    ):
        self.model_path = model_path
        self.charset = charset
        self.height = height
        self.width = width
        self.blank_index = blank_index
        self._session = session

    @property
    def name(self) -> str:
        return "model"

    def _load_session(self):
        if self._session is None:
            import onnxruntime

            logger.info("Loading captcha model from %s", self.model_path)
            self._session = onnxruntime.InferenceSession(
                self.model_path, providers=["CPUExecutionProvider"]
            )
        return self._session

    def preprocess(self, image: bytes) -> np.ndarray:
        img = Image.open(io.BytesIO(image)).convert("L").resize((self.width, self.height))
        pixels = np.asarray(img, dtype=np.float32) / 255.0
        return pixels.reshape(1, 1, self.height, self.width)

    def decode(self, scores: np.ndarray) -> str:
        """Greedy CTC decode: best class per step, collapse repeats, drop blanks."""
        scores = np.squeeze(scores)
        if scores.ndim != 2:
            raise ValueError(f"Unexpected model output shape: {scores.shape}")
        best = scores.argmax(axis=-1)

        chars = []
        previous = None
        for index in best.tolist():
            if index != previous and index != self.blank_index:
                offset = index - 1 if index > self.blank_index else index
                if 0 <= offset < len(self.charset):
                    chars.append(self.charset[offset])
            previous = index
        return "".join(chars)

    def _predict(self, image: bytes) -> str:
        session = self._load_session()
        input_name = session.get_inputs()[0].name
        outputs = session.run(None, {input_name: self.preprocess(image)})
        return self.decode(outputs[0])

    async def solve(self, image: bytes) -> Optional[str]:
        return _accept(await asyncio.to_thread(self._predict, image))


class TesseractCaptchaSolver(CaptchaSolver):
    """Runs the Tesseract OCR engine; output is returned as-is (stripped)."""

    def __init__(self, config: str = "--psm 7", tesseract_cmd: Optional[str] = None):
        self.config = config
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    @property
    def name(self) -> str:
        return "tesseract"

    def _recognize(self, image: bytes) -> str:
        img = Image.open(io.BytesIO(image))
        return pytesseract.image_to_string(img, config=self.config)

    async def solve(self, image: bytes) -> Optional[str]:
        text = await asyncio.to_thread(self._recognize, image)
        text = text.strip()
        return text or None


class CallbackCaptchaSolver(CaptchaSolver):
    """Delegates to a caller-supplied function (sync or async)."""

    def __init__(self, callback: CaptchaCallback):
        self._callback = callback

    @property
    def name(self) -> str:
        return "custom"

    async def solve(self, image: bytes) -> Optional[str]:
        result = self._callback(image)
        if inspect.isawaitable(result):
            result = await result
        return _accept(result)


def import_entrypoint(entrypoint: str) -> Callable[..., Any]:
    """Resolve a ``"package.module:attribute"`` string to the object it names."""
    module_name, _, attr = entrypoint.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Entrypoint must look like 'module:function', got {entrypoint!r}")
    return getattr(importlib.import_module(module_name), attr)


def build_captcha_solver(
    method: str,
    model_path: Optional[str] = None,
    callback: Optional[CaptchaCallback] = None,
    callback_entrypoint: Optional[str] = None,
) -> CaptchaSolver:
    """
    Select the captcha strategy.

    Args:
        method: "model", "tesseract" or "custom".
        model_path: ONNX model file for the "model" strategy.
        callback: Function for the "custom" strategy.
        callback_entrypoint: "module:function" to import when no callback is given.
    """
    if method == "model":
        if not model_path:
            raise ValueError("captcha method 'model' requires a model path")
        return ModelCaptchaSolver(model_path)
    if method == "tesseract":
        return TesseractCaptchaSolver()
    if method == "custom":
        if callback is None and callback_entrypoint:
            callback = import_entrypoint(callback_entrypoint)
        if callback is None:
            raise ValueError("captcha method 'custom' requires a callback")
        return CallbackCaptchaSolver(callback)
    raise ValueError(f"Unknown captcha method: {method}")
