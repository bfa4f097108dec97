"""Tests for captcha solving strategies."""

import io
from types import SimpleNamespace

import numpy as np
import pytest
import pytesseract
from PIL import Image

from p2p_settlement.bank.captcha import (
    CallbackCaptchaSolver,
    ModelCaptchaSolver,
    TesseractCaptchaSolver,
    build_captcha_solver,
    import_entrypoint,
)


def png_bytes(size=(200, 80)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, "white").save(buffer, format="PNG")
    return buffer.getvalue()


def one_hot(classes, num_classes=11):
    scores = np.zeros((1, len(classes), num_classes), dtype=np.float32)
    for step, index in enumerate(classes):
        scores[0, step, index] = 1.0
    return scores


class FakeSession:
    def __init__(self, output):
        self.output = output
        self.feeds = []

    def get_inputs(self):
        return [SimpleNamespace(name="image")]

    def run(self, output_names, feed):
        self.feeds.append(feed)
        return [self.output]


class TestModelSolver:
    def test_preprocess_shape_and_scale(self):
        solver = ModelCaptchaSolver("model.onnx", session=FakeSession(None))
        tensor = solver.preprocess(png_bytes())
        assert tensor.shape == (1, 1, 50, 160)
        assert tensor.dtype == np.float32
        assert float(tensor.max()) == pytest.approx(1.0)

    def test_ctc_decode_collapses_repeats_and_drops_blanks(self):
        solver = ModelCaptchaSolver("model.onnx", charset="0123456789")
        # classes are digit + 1, class 0 is blank
        assert solver.decode(one_hot([2, 2, 3, 1, 0, 1, 4, 5])) == "120034"

    def test_decode_rejects_unexpected_shape(self):
        solver = ModelCaptchaSolver("model.onnx")
        with pytest.raises(ValueError):
            solver.decode(np.zeros((2, 3, 4)))

    @pytest.mark.asyncio
    async def test_solve_runs_the_model(self):
        session = FakeSession(one_hot([2, 3, 4, 5, 6, 7]))
        solver = ModelCaptchaSolver("model.onnx", charset="0123456789", session=session)

        assert await solver.solve(png_bytes()) == "123456"
        assert session.feeds[0]["image"].shape == (1, 1, 50, 160)

    @pytest.mark.asyncio
    async def test_wrong_length_is_a_soft_failure(self):
        solver = ModelCaptchaSolver("model.onnx", charset="0123456789", session=FakeSession(one_hot([2, 3, 4])))
        assert await solver.solve(png_bytes()) is None


class TestTesseractSolver:
    @pytest.mark.asyncio
    async def test_output_is_stripped(self, monkeypatch):
        monkeypatch.setattr(pytesseract, "image_to_string", lambda img, config="": " AB12\n")
        assert await TesseractCaptchaSolver().solve(png_bytes()) == "AB12"

    @pytest.mark.asyncio
    async def test_empty_output(self, monkeypatch):
        monkeypatch.setattr(pytesseract, "image_to_string", lambda img, config="": "\n")
        assert await TesseractCaptchaSolver().solve(png_bytes()) is None


class TestCallbackSolver:
    @pytest.mark.asyncio
    async def test_sync_callback(self):
        assert await CallbackCaptchaSolver(lambda image: " XY98zz ").solve(b"img") == "XY98zz"

    @pytest.mark.asyncio
    async def test_async_callback(self):
        async def solve(image):
            return "XY98zz"

        assert await CallbackCaptchaSolver(solve).solve(b"img") == "XY98zz"

    @pytest.mark.asyncio
    async def test_length_check(self):
        assert await CallbackCaptchaSolver(lambda image: "short").solve(b"img") is None
        assert await CallbackCaptchaSolver(lambda image: None).solve(b"img") is None


class TestBuildSolver:
    def test_strategies(self):
        assert build_captcha_solver("model", model_path="m.onnx").name == "model"
        assert build_captcha_solver("tesseract").name == "tesseract"
        assert build_captcha_solver("custom", callback=lambda image: None).name == "custom"

    def test_custom_from_entrypoint(self):
        solver = build_captcha_solver("custom", callback_entrypoint="os.path:basename")
        assert isinstance(solver, CallbackCaptchaSolver)

    def test_misconfiguration(self):
        with pytest.raises(ValueError):
            build_captcha_solver("model")
        with pytest.raises(ValueError):
            build_captcha_solver("custom")
        with pytest.raises(ValueError):
            build_captcha_solver("guess")
        with pytest.raises(ValueError):
            import_entrypoint("no_colon_here")
