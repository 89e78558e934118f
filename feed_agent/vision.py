import io
import logging
import re
from typing import Optional, Tuple

import numpy as np
from PIL import Image

MAX_UPLOAD_WIDTH = 720

# Mean absolute pixel difference (0-255) below which two frames count as "the same screen".
SAME_FRAME_THRESHOLD = 4.0


def downscale_png(png: bytes, max_width: int = MAX_UPLOAD_WIDTH) -> Tuple[bytes, float]:
    """Shrink a screenshot for upload. Returns (png, scale) where scale maps back to device pixels."""
    img = Image.open(io.BytesIO(png)).convert("RGB")
    w, h = img.size
    if w <= max_width:
        scale = 1.0
    else:
        scale = w / float(max_width)
        img = img.resize((max_width, int(round(h / scale))), Image.Resampling.BILINEAR)
    out = io.BytesIO()
    img.save(out, format="PNG")
    return out.getvalue(), scale


def frame_difference(png_a: bytes, png_b: bytes, size: Tuple[int, int] = (96, 160)) -> float:
    """Mean absolute difference between two screenshots on a small grayscale thumbnail."""
    a = np.asarray(Image.open(io.BytesIO(png_a)).convert("L").resize(size), dtype=np.float32)
    b = np.asarray(Image.open(io.BytesIO(png_b)).convert("L").resize(size), dtype=np.float32)
    return float(np.abs(a - b).mean())


def frames_differ(png_a: bytes, png_b: bytes, threshold: float = SAME_FRAME_THRESHOLD) -> bool:
    return frame_difference(png_a, png_b) >= threshold


def parse_point(text: str) -> Optional[Tuple[int, int]]:
    # Accept "123,456" or "x=123 y=456" style outputs.
    text = (text or "").strip()
    if not text or text.lower().startswith("none"):
        return None
    m = re.search(r"(-?\d+(?:\.\d+)?)\s*,\s*(-?\d+(?:\.\d+)?)", text)
    if not m:
        m = re.search(r"x\s*=?\s*(-?\d+(?:\.\d+)?).+?y\s*=?\s*(-?\d+(?:\.\d+)?)", text, re.IGNORECASE | re.DOTALL)
    if not m:
        return None
    x, y = int(float(m.group(1))), int(float(m.group(2)))
    if x < 0 or y < 0:
        return None
    return x, y


class ScreenAnalyzer:
    """Vision helper behind the analyze_screen / locate_element tools."""

    def __init__(self, llm, device, max_width: int = MAX_UPLOAD_WIDTH):
        self.llm = llm
        self.device = device
        self.max_width = max_width

    def _shot(self) -> Tuple[bytes, float]:
        return downscale_png(self.device.capture(), self.max_width)

    def answer(self, question: str) -> str:
        png, _ = self._shot()
        prompt = (
            "You are looking at a screenshot of an Android phone running a short-video app. "
            f"Answer this question concisely and factually: {question}"
        )
        text = self.llm.ask_about_image(png, prompt)
        return text or "(no answer)"

    def locate(self, description: str) -> Optional[Tuple[int, int]]:
        if not description:
            return None
        png, scale = self._shot()
        prompt = (
            "Given the screenshot, find the UI element that best matches this description: "
            f"'{description}'. "
            "Respond ONLY with two integers 'x,y' for the approximate center pixel coordinates "
            "in this image. If you truly cannot find it, reply with 'NONE'."
        )
        text = self.llm.ask_about_image(png, prompt)
        logging.debug(f"[VISION] locate '{description}' -> {text!r}")
        pt = parse_point(text)
        if pt is None:
            return None
        return int(pt[0] * scale), int(pt[1] * scale)
