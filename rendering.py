#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# Property of solutions reseaux chromatel
"""
Cats Display - Rendering & Display Functions
=============================================
Matrix bring-up, fonts, image tracks, and the drawing helpers used by the render loop.
Drives the panel through rpi-rgb-led-matrix (HUB75).
"""
import os
import logging
from datetime import time as dtime

from PIL import Image, ImageSequence

try:
    from rgbmatrix import graphics
except ImportError:
    graphics = None

log = logging.getLogger("RGB Matrix")
log_fonts = logging.getLogger("FONTS")
log_images = logging.getLogger("IMAGES")
log_brightness = logging.getLogger("BRIGHTNESS")

# -------------------- LAYOUT (64x32 panel) --------------------
MATRIX_WIDTH = 64
MATRIX_HEIGHT = 32
LEFT_IMAGE_X = 0
LEFT_IMAGE_WIDTH = 18
RIGHT_IMAGE_X = 46
RIGHT_IMAGE_WIDTH = 18
IMAGE_Y = 1
IMAGE_HEIGHT = 21
CLOCK_X = 18
CLOCK_WIDTH = 28
CLOCK_TIME_Y = 10
CLOCK_DATE_Y = 18
SCROLL_TOP = 20
FACT_BASELINE_Y = 30
GLYPH_ADVANCE = 4  # nominal, used only to center the clock strings

BLACK = (0, 0, 0)
WHITE = (255, 255, 255)
LIGHT_GREY = (180, 180, 180)
FACT_GREEN = (100, 255, 100)

REPLACEMENT_CHAR = 0xFFFD

# -------------------- RGB MATRIX FUNCTIONS --------------------

def init_rgb_matrix(rows=32, cols=64, chain_length=1, parallel=1, brightness=100,
                    hardware_mapping='regular', gpio_slowdown=1, pwm_bits=11,
                    pwm_lsb_nanoseconds=130, led_rgb_sequence='RGB', pixel_mapper='',
                    panel_type='', disable_hardware_pulsing=False):
    """
    Initialize the RGB Matrix using rpi-rgb-led-matrix library.

    Returns the RGBMatrix, or None if the library is missing or the hardware
    could not be opened.
    """
    log.info("Initializing %dx%d (chain=%d parallel=%d) brightness=%d hw=%s",
             cols, rows, chain_length, parallel, brightness, hardware_mapping)
    try:
        from rgbmatrix import RGBMatrix, RGBMatrixOptions

        options = RGBMatrixOptions()
        options.rows = rows
        options.cols = cols
        options.chain_length = chain_length
        options.parallel = parallel
        options.brightness = brightness
        options.hardware_mapping = hardware_mapping
        options.gpio_slowdown = gpio_slowdown
        options.pwm_bits = pwm_bits
        options.pwm_lsb_nanoseconds = pwm_lsb_nanoseconds
        options.disable_hardware_pulsing = disable_hardware_pulsing
        options.show_refresh_rate = False
        options.drop_privileges = False
        if led_rgb_sequence:
            options.led_rgb_sequence = led_rgb_sequence
        if pixel_mapper:
            options.pixel_mapper_config = pixel_mapper
        if panel_type:
            options.panel_type = panel_type

        matrix = RGBMatrix(options=options)
    except ImportError as e:
        log.error("rpi-rgb-led-matrix library not found: %s", e)
        log.error("Install the Python bindings from the rpi-rgb-led-matrix repository")
        return None
    except Exception:
        log.exception("Failed to initialize matrix")
        return None

    if (matrix.width, matrix.height) != (MATRIX_WIDTH, MATRIX_HEIGHT):
        log.warning("Expected %dx%d matrix, got %dx%d",
                    MATRIX_WIDTH, MATRIX_HEIGHT, matrix.width, matrix.height)
    log.info("Ready: %dx%d", matrix.width, matrix.height)
    return matrix

# ------------------------------ FONTS -------------------------------------------------------------

def load_font(path: str):
    """Load a BDF font; None if it cannot be read."""
    if graphics is None:
        log_fonts.error("rgbmatrix.graphics unavailable; cannot load %s", path)
        return None
    font = graphics.Font()
    try:
        font.LoadFont(path)
    except Exception as e:
        log_fonts.warning("Could not load font %s: %s", path, e)
        return None
    return font


def load_fonts(font_dir: str, clock_font_name: str, fact_font_names):
    """
    Return (clock_font, fact_font). The clock font is required; the fact font walks
    fact_font_names in order and finally falls back to the clock font.
    clock_font is None when it could not be loaded.
    """
    clock_font = load_font(os.path.join(font_dir, clock_font_name))
    if clock_font is None:
        return None, None
    for name in fact_font_names:
        fact_font = load_font(os.path.join(font_dir, name))
        if fact_font is not None:
            log_fonts.info("Fact font: %s", name)
            return clock_font, fact_font
    log_fonts.warning("No fact font loaded; using the clock font")
    return clock_font, clock_font


def string_width(font, text: str) -> int:
    """Pixel advance of text in font, counting the replacement glyph for unknown characters."""
    width = 0
    for ch in text or "":
        w = font.CharacterWidth(ord(ch))
        if w < 0:
            w = max(0, font.CharacterWidth(REPLACEMENT_CHAR))
        width += w
    return width


def draw_text(canvas, font, x: int, y: int, color, text: str):
    return graphics.DrawText(canvas, font, x, y, graphics.Color(*color), text)

# ------------------------------ IMAGE TRACKS ------------------------------------------------------

def _fit_size(src_w, src_h, box_w, box_h):
    """Largest size with the source aspect ratio that fits the box."""
    ratio = min(box_w / float(src_w), box_h / float(src_h))
    return max(1, int(round(src_w * ratio))), max(1, int(round(src_h * ratio)))


class ImageTrack:
    """Decoded frames of one image, each with its delay in 1/100 s. Immutable after load."""

    def __init__(self, frames=None):
        self._frames = []
        self._delays = []
        self._pixels = []
        for img, delay in frames or []:
            img = img.convert("RGBA")
            px = img.load()
            self._frames.append(img)
            self._delays.append(max(0, int(delay or 0)))
            self._pixels.append(tuple(
                (x, y) + tuple(px[x, y])
                for y in range(img.height) for x in range(img.width)
            ))

    def __len__(self):
        return len(self._frames)

    @property
    def size(self):
        """(width, height) of the frames; (0, 0) for an empty track."""
        if not self._frames:
            return 0, 0
        return self._frames[0].size

    @property
    def animated(self) -> bool:
        return len(self._frames) > 1

    def frame(self, index: int):
        return self._frames[index % len(self._frames)]

    def delay(self, index: int) -> int:
        return self._delays[index % len(self._delays)]

    def pixel(self, index: int, x: int, y: int):
        """(r, g, b, a) at x, y of frame index."""
        return self.frame(index).getpixel((x, y))

    def pixels(self, index: int):
        """Every pixel of frame index as (x, y, r, g, b, a)."""
        return self._pixels[index % len(self._pixels)]


def load_image_track(path: str, width: int, height: int) -> ImageTrack:
    """
    Decode every frame of path and scale it to fit width x height.

    Pillow hands back animation frames already composited over the previous ones
    (disposal applied), so each frame is self-contained. Returns an empty track
    when the file cannot be decoded.
    """
    frames = []
    try:
        with Image.open(path) as img:
            for frame in ImageSequence.Iterator(img):
                delay = int(frame.info.get("duration", 0) or 0) // 10
                rgba = frame.convert("RGBA")
                rgba = rgba.resize(_fit_size(rgba.width, rgba.height, width, height),
                                   Image.Resampling.BOX)
                frames.append((rgba, delay))
    except Exception as e:
        log_images.error("Error loading %s: %s", path, e)
        return ImageTrack()

    if not frames:
        log_images.error("No image found in %s", path)
        return ImageTrack()
    if len(frames) == 1:
        frames = [(frames[0][0], 0)]

    track = ImageTrack(frames)
    log_images.info("Loaded %s: %d frame(s), scaled to %dx%d", path, len(track), *track.size)
    return track

# ------------------------------ DRAWING -----------------------------------------------------------

def copy_image_to_canvas(track: ImageTrack, index: int, canvas, offset_x: int, offset_y: int):
    """Copy frame index onto canvas; fully transparent pixels leave the canvas untouched."""
    bottom = IMAGE_Y + IMAGE_HEIGHT
    for x, y, r, g, b, a in track.pixels(index):
        if y + offset_y >= bottom:
            continue
        if a > 0:
            canvas.SetPixel(x + offset_x, y + offset_y, r, g, b)


def clear_rows(canvas, top: int, bottom: int, width: int):
    """Blank rows top..bottom-1 across the full width."""
    for y in range(top, bottom):
        for x in range(width):
            canvas.SetPixel(x, y, *BLACK)


def clock_strings(reading):
    """('HH:MM', 'M/D') for a ClockReading."""
    return f"{reading.hour:02d}:{reading.minute:02d}", f"{reading.month}/{reading.day}"


def _centered_x(text: str) -> int:
    return CLOCK_X + (CLOCK_WIDTH - len(text) * GLYPH_ADVANCE) // 2 - 2


def draw_clock(canvas, font, reading):
    """Time in white over the date in light grey, centered in the middle gap."""
    time_str, date_str = clock_strings(reading)
    draw_text(canvas, font, _centered_x(time_str), CLOCK_TIME_Y, WHITE, time_str)
    draw_text(canvas, font, _centered_x(date_str), CLOCK_DATE_Y, LIGHT_GREY, date_str)


def draw_fact_text(canvas, font, fact_text: str, scroll_offset: int):
    draw_text(canvas, font, scroll_offset, FACT_BASELINE_Y, FACT_GREEN, fact_text)

# ------------------------------ BRIGHTNESS --------------------------------------------------------

def parse_hhmm(s: str):
    try: hh, mm = s.strip().split(":"); return max(0, min(23, int(hh))), max(0, min(59, int(mm)))
    except Exception: return 0, 0


def time_in_range(now_t: dtime, start_t: dtime, end_t: dtime) -> bool:
    return (start_t <= end_t and start_t <= now_t < end_t) or (start_t > end_t and (now_t >= start_t or now_t < end_t))


def is_dim_time(hour: int, minute: int, start: str = "23:30", end: str = "08:00") -> bool:
    """True inside the [start, end) night window; the window may wrap past midnight."""
    sh, sm = parse_hhmm(start); eh, em = parse_hhmm(end)
    return time_in_range(dtime(hour, minute), dtime(sh, sm), dtime(eh, em))


class BrightnessGate:
    """Re-evaluate the dim window at most once per interval; write the panel only on change."""

    def __init__(self, matrix, interval_sec: float, dim_start="23:30", dim_end="08:00",
                 dim_level=10, bright_level=100):
        self.matrix = matrix
        self.interval_sec = interval_sec
        self.dim_start = dim_start
        self.dim_end = dim_end
        self.dim_level = dim_level
        self.bright_level = bright_level
        self.last_check = None
        self.last_level = None

    def level_for(self, hour: int, minute: int) -> int:
        if is_dim_time(hour, minute, self.dim_start, self.dim_end):
            return self.dim_level
        return self.bright_level

    def update(self, now_ts: float, reading) -> bool:
        """Return True when the panel brightness was written."""
        if self.last_check is not None and now_ts - self.last_check < self.interval_sec:
            return False
        self.last_check = now_ts
        level = self.level_for(reading.hour, reading.minute)
        if level == self.last_level:
            return False
        self.matrix.brightness = level
        self.last_level = level
        log_brightness.info("Brightness set to %d at %02d:%02d", level, reading.hour, reading.minute)
        return True
