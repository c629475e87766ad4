import pathlib
import sys
import types

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

import rendering
from utils import ClockReading


class FakeCanvas:
    def __init__(self, width=64, height=32):
        self.width = width
        self.height = height
        self.pixels = {}
        self.set_calls = []
        self.clears = 0

    def SetPixel(self, x, y, r, g, b):
        self.set_calls.append((x, y))
        self.pixels[(x, y)] = (r, g, b)

    def Clear(self):
        self.clears += 1
        self.pixels.clear()

    def get(self, x, y):
        return self.pixels.get((x, y), (0, 0, 0))


class FakeMatrix:
    """Double-buffered matrix: SwapOnVSync hands back the other canvas."""

    def __init__(self, width=64, height=32):
        self.width = width
        self.height = height
        self._spare = FakeCanvas(width, height)
        self.presented = []
        self.brightness_writes = []
        self._brightness = 100
        self.cleared = False

    def CreateFrameCanvas(self):
        return FakeCanvas(self.width, self.height)

    def SwapOnVSync(self, canvas):
        self.presented.append(dict(canvas.pixels))
        spare, self._spare = self._spare, canvas
        return spare

    @property
    def brightness(self):
        return self._brightness

    @brightness.setter
    def brightness(self, value):
        self.brightness_writes.append(value)
        self._brightness = value

    def Clear(self):
        self.cleared = True


class FakeFont:
    def __init__(self, advance=6, missing=()):
        self.advance = advance
        self.missing = set(missing)

    def CharacterWidth(self, code):
        if code in self.missing:
            return -1
        return self.advance


class FakeGraphics:
    """Stands in for rgbmatrix.graphics and records every DrawText call."""

    def __init__(self):
        self.calls = []
        self.fonts_ok = set()

    def Color(self, r, g, b):
        return (r, g, b)

    def DrawText(self, canvas, font, x, y, color, text):
        self.calls.append(types.SimpleNamespace(canvas=canvas, font=font, x=x, y=y,
                                                color=color, text=text))
        return len(text) * getattr(font, "advance", 0)

    def Font(self):
        graphics = self

        class _Font(FakeFont):
            def LoadFont(self, path):
                if path not in graphics.fonts_ok:
                    raise Exception("Couldn't load font " + path)
        return _Font()


@pytest.fixture
def fake_graphics(monkeypatch):
    g = FakeGraphics()
    monkeypatch.setattr(rendering, "graphics", g)
    return g


def reading(hour=12, minute=0, year=2024, month=5, day=7):
    return ClockReading(year, month, day, hour, minute, f"{year:04d}-{month:02d}-{day:02d}")
