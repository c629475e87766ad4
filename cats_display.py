#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# Property of solutions reseaux chromatel
"""
Cats Display - Main
====================
Two images side by side on a 64x32 panel, a clock in the middle gap, and the fact of
the day scrolling along the bottom. The panel dims itself overnight.

    cats-display [--led-* options] <left-image> <right-image>
"""
# =================================================================================================
# ================================== CONFIG (env defaults) ========================================
# =================================================================================================
import os, sys, time, json
import signal
import logging
import argparse
import threading

import utils
from utils import (
    FactStore, FACT_PLACEHOLDER, fetch_fact_with_retry, read_clock, resolve_tz,
    set_globals as set_utils_globals
)
from workers import FactSlot, start_fact_worker
from rendering import (
    MATRIX_WIDTH, MATRIX_HEIGHT, LEFT_IMAGE_X, LEFT_IMAGE_WIDTH, RIGHT_IMAGE_X,
    RIGHT_IMAGE_WIDTH, IMAGE_Y, IMAGE_HEIGHT, SCROLL_TOP,
    BrightnessGate, clock_strings, clear_rows, copy_image_to_canvas, draw_clock,
    draw_fact_text, init_rgb_matrix, load_fonts, load_image_track, string_width
)

log = logging.getLogger("MAIN")

def _env_int(name, default):
    try: return int(os.environ.get(name, str(default)) or default)
    except ValueError: return default

def _env_float(name, default):
    try: return float(os.environ.get(name, str(default)) or default)
    except ValueError: return default

# --------------------------------------------------------------------------------
# RGB MATRIX HARDWARE SETTINGS (defaults for the --led-* flags)
# --------------------------------------------------------------------------------
RGB_ROWS = _env_int("RGB_ROWS", MATRIX_HEIGHT)
RGB_COLS = _env_int("RGB_COLS", MATRIX_WIDTH)
RGB_CHAIN_LENGTH = max(1, _env_int("RGB_CHAIN_LENGTH", 1))
RGB_PARALLEL = max(1, _env_int("RGB_PARALLEL", 1))
RGB_BRIGHTNESS = max(0, min(100, _env_int("RGB_BRIGHTNESS", 100)))
RGB_HARDWARE_MAPPING = (os.environ.get("RGB_HARDWARE_MAPPING", "regular") or "regular").strip()
RGB_GPIO_SLOWDOWN = max(0, min(4, _env_int("RGB_GPIO_SLOWDOWN", 1)))
RGB_PWM_BITS = max(1, min(11, _env_int("RGB_PWM_BITS", 11)))
RGB_PWM_LSB_NANOSECONDS = max(50, min(3000, _env_int("RGB_PWM_LSB_NANOSECONDS", 130)))
RGB_LED_RGB_SEQUENCE = (os.environ.get("RGB_LED_RGB_SEQUENCE", "RGB") or "RGB").strip().upper()
RGB_PIXEL_MAPPER = (os.environ.get("RGB_PIXEL_MAPPER", "") or "").strip()
RGB_PANEL_TYPE = (os.environ.get("RGB_PANEL_TYPE", "") or "").strip()

# --------------------------------------------------------------------------------
# FACT OF THE DAY
# --------------------------------------------------------------------------------
FACT_URL = (os.environ.get("FACT_URL", utils.FACT_URL) or utils.FACT_URL).strip()
FACT_USER_AGENT = (os.environ.get("FACT_USER_AGENT", utils.FACT_USER_AGENT) or utils.FACT_USER_AGENT)
FACT_TIMEOUT = _env_float("FACT_TIMEOUT", utils.FACT_TIMEOUT)
FACT_RETRIES = max(1, _env_int("FACT_RETRIES", 6))
FACT_RETRY_WAIT_SEC = max(0, _env_int("FACT_RETRY_WAIT_SEC", 10))
FACT_POLL_SEC = max(1, _env_int("FACT_POLL_SEC", 30 * 60))
FACT_CACHE_DIR = (os.environ.get("FACT_CACHE_DIR", utils.FACT_CACHE_DIR) or utils.FACT_CACHE_DIR)

# --------------------------------------------------------------------------------
# FONTS
# --------------------------------------------------------------------------------
FONT_DIR = (os.environ.get("FONT_DIR", "/opt/cats-display/fonts") or "/opt/cats-display/fonts")
CLOCK_FONT = (os.environ.get("CLOCK_FONT", "5x7.bdf") or "5x7.bdf")
FACT_FONTS = [s.strip() for s in (os.environ.get("FACT_FONTS", "6x13.bdf,6x9.bdf,5x8.bdf") or "").split(",") if s.strip()]

# --------------------------------------------------------------------------------
# TIMEZONE / NIGHT DIMMING
# --------------------------------------------------------------------------------
DISPLAY_TZ = (os.environ.get("DISPLAY_TZ", "") or "").strip()  # empty = host local time
DIM_START = (os.environ.get("DIM_START", "23:30") or "23:30").strip()
DIM_END = (os.environ.get("DIM_END", "08:00") or "08:00").strip()
DIM_BRIGHTNESS = max(0, min(100, _env_int("DIM_BRIGHTNESS", 10)))
BRIGHT_BRIGHTNESS = max(0, min(100, _env_int("BRIGHT_BRIGHTNESS", 100)))

# --------------------------------------------------------------------------------
# RENDER LOOP TIMING
# --------------------------------------------------------------------------------
STATIC_TICK_SEC = 0.008
STATIC_BRIGHTNESS_CHECK_SEC = 1800
ANIMATED_BRIGHTNESS_CHECK_SEC = 60
DEFAULT_FRAME_DELAY = 10  # 1/100 s

LOG_LEVEL = (os.environ.get("LOG_LEVEL", "INFO") or "INFO").upper()

# =================================================================================================
# ==================================== config.json overrides ======================================
# =================================================================================================
CONFIG_PATH = os.environ.get("CATS_DISPLAY_CONFIG") or os.path.join(
    os.path.dirname(os.path.abspath(__file__)), "config.json")

CONFIG_KEYS = [
    "RGB_ROWS", "RGB_COLS", "RGB_CHAIN_LENGTH", "RGB_PARALLEL", "RGB_BRIGHTNESS",
    "RGB_HARDWARE_MAPPING", "RGB_GPIO_SLOWDOWN", "RGB_PWM_BITS", "RGB_PWM_LSB_NANOSECONDS",
    "RGB_LED_RGB_SEQUENCE", "RGB_PIXEL_MAPPER", "RGB_PANEL_TYPE",
    "FACT_URL", "FACT_USER_AGENT", "FACT_TIMEOUT", "FACT_RETRIES", "FACT_RETRY_WAIT_SEC",
    "FACT_POLL_SEC", "FACT_CACHE_DIR",
    "FONT_DIR", "CLOCK_FONT", "FACT_FONTS",
    "DISPLAY_TZ", "DIM_START", "DIM_END", "DIM_BRIGHTNESS", "BRIGHT_BRIGHTNESS",
    "LOG_LEVEL",
]

def _atomic_load_json(path: str) -> dict:
    """Load JSON safely ({} on error)."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f) or {}
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}

def _apply_config(cfg: dict) -> list:
    """Apply known config.json keys onto the module globals; return the keys that changed."""
    g = globals()
    changed = []
    for key in CONFIG_KEYS:
        if key not in cfg:
            continue
        new = cfg[key]
        if key == "FACT_FONTS" and isinstance(new, str):
            new = [s.strip() for s in new.split(",") if s.strip()]
        if g.get(key) != new:
            g[key] = new
            changed.append(key)
    return changed

def load_config(path: str = None) -> list:
    """Load config.json once at startup."""
    path = path or CONFIG_PATH
    cfg = _atomic_load_json(path)
    if not cfg:
        log.info("No config.json overrides found at %s", path)
        return []
    changed = _apply_config(cfg)
    log.info("Loaded %s (changes: %s)", path, ", ".join(changed) or "none")
    return changed

# =================================================================================================
# ========================================= COMPOSITOR ============================================
# =================================================================================================

class Compositor:
    """
    Owns the offscreen canvas and presents one vsynced frame per tick.

    A still image is a one-frame track. With two still tracks the loop runs at a fixed
    8 ms tick and redraws images and clock every tick. It clears fully only when the
    minute changes (once per swap buffer) and clears the scroll rows every tick.

    When either track is animated each tick shows frame f of both tracks (modulo their
    lengths) and sleeps for the frame delay. The whole canvas is redrawn only when the
    time, the fact or the scroll offset changed.
    """

    def __init__(self, matrix, clock_font, fact_font, left, right, fact_slot, interrupt,
                 clock=read_clock, sleep=time.sleep, monotonic=time.monotonic,
                 dim_start="23:30", dim_end="08:00", dim_level=10, bright_level=100):
        self.matrix = matrix
        self.clock_font = clock_font
        self.fact_font = fact_font
        self.left = left
        self.right = right
        self.fact_slot = fact_slot
        self.interrupt = interrupt
        self.clock = clock
        self.sleep = sleep
        self.monotonic = monotonic

        self.width = matrix.width
        self.animated = left.animated or right.animated
        self.cycle_length = max(len(left), len(right))
        self.brightness = BrightnessGate(
            matrix, ANIMATED_BRIGHTNESS_CHECK_SEC if self.animated else STATIC_BRIGHTNESS_CHECK_SEC,
            dim_start=dim_start, dim_end=dim_end, dim_level=dim_level, bright_level=bright_level)

        self.canvas = matrix.CreateFrameCanvas()
        self.frame_index = 0
        self.scroll_offset = self.width
        self.fact_text = None
        self.fact_width = 0
        self.last_time_str = None
        self.pending_clears = 0
        self.last_drawn = None

    def run(self):
        log.info("Entering %s render loop (%d frame cycle)",
                 "animated" if self.animated else "static", self.cycle_length)
        while not self.interrupt.is_set():
            self.tick()

    def tick(self):
        """One loop iteration, ending with the sleep until the next one."""
        reading = self.clock()
        self.brightness.update(self.monotonic(), reading)
        time_str, _ = clock_strings(reading)

        fact_text, fact_width = self.fact_slot.snapshot()
        if fact_text != self.fact_text:
            self.fact_text = fact_text
            self.fact_width = fact_width
            self.scroll_offset = self.width

        if self.animated:
            self._draw_animated(reading, time_str)
        else:
            self._draw_static(reading, time_str)

        self.scroll_offset -= 1
        if self.scroll_offset < -self.fact_width:
            self.scroll_offset = self.width

        delay = self.frame_delay(self.frame_index) / 100.0 if self.animated else STATIC_TICK_SEC
        self.frame_index = (self.frame_index + 1) % self.cycle_length
        self.sleep(delay)

    def _draw_static(self, reading, time_str):
        if time_str != self.last_time_str:
            # both swap buffers hold the old clock digits
            self.pending_clears = 2
            self.last_time_str = time_str
        if self.pending_clears:
            self.canvas.Clear()
            self.pending_clears -= 1
        copy_image_to_canvas(self.left, 0, self.canvas, LEFT_IMAGE_X, IMAGE_Y)
        copy_image_to_canvas(self.right, 0, self.canvas, RIGHT_IMAGE_X, IMAGE_Y)
        draw_clock(self.canvas, self.clock_font, reading)
        clear_rows(self.canvas, SCROLL_TOP, MATRIX_HEIGHT, self.width)
        draw_fact_text(self.canvas, self.fact_font, self.fact_text, self.scroll_offset)
        self.canvas = self.matrix.SwapOnVSync(self.canvas)

    def _draw_animated(self, reading, time_str):
        state = (time_str, self.fact_text, self.scroll_offset)
        if state == self.last_drawn:
            return
        f = self.frame_index
        self.canvas.Clear()
        copy_image_to_canvas(self.left, f, self.canvas, LEFT_IMAGE_X, IMAGE_Y)
        copy_image_to_canvas(self.right, f, self.canvas, RIGHT_IMAGE_X, IMAGE_Y)
        draw_clock(self.canvas, self.clock_font, reading)
        draw_fact_text(self.canvas, self.fact_font, self.fact_text, self.scroll_offset)
        self.canvas = self.matrix.SwapOnVSync(self.canvas)
        self.last_drawn = state

    def frame_delay(self, frame: int) -> int:
        """
        Delay in 1/100 s after frame: the mean of the positive delays of the tracks that
        have a frame at this index, DEFAULT_FRAME_DELAY when there are none.
        """
        delays = [t.delay(frame) for t in (self.left, self.right) if frame < len(t)]
        delays = [d for d in delays if d > 0]
        if not delays:
            return DEFAULT_FRAME_DELAY
        return sum(delays) // len(delays)

# =================================================================================================
# =========================================== MAIN ================================================
# =================================================================================================

def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="cats-display",
        description="Two images side by side on a 64x32 LED matrix, with a clock in the "
                    "middle and the fact of the day scrolling along the bottom.")
    p.add_argument("left_image", help="image for columns 0-17 (still or animated)")
    p.add_argument("right_image", help="image for columns 46-63 (still or animated)")
    p.add_argument("--led-rows", type=int, default=RGB_ROWS)
    p.add_argument("--led-cols", type=int, default=RGB_COLS)
    p.add_argument("--led-chain", type=int, default=RGB_CHAIN_LENGTH)
    p.add_argument("--led-parallel", type=int, default=RGB_PARALLEL)
    p.add_argument("--led-gpio-mapping", default=RGB_HARDWARE_MAPPING)
    p.add_argument("--led-slowdown-gpio", type=int, default=RGB_GPIO_SLOWDOWN)
    p.add_argument("--led-pwm-bits", type=int, default=RGB_PWM_BITS)
    p.add_argument("--led-pwm-lsb-nanoseconds", type=int, default=RGB_PWM_LSB_NANOSECONDS)
    p.add_argument("--led-rgb-sequence", default=RGB_LED_RGB_SEQUENCE)
    p.add_argument("--led-pixel-mapper", default=RGB_PIXEL_MAPPER)
    p.add_argument("--led-panel-type", default=RGB_PANEL_TYPE)
    p.add_argument("--led-brightness", type=int, default=RGB_BRIGHTNESS)
    p.add_argument("--led-no-hardware-pulse", action="store_true")
    p.add_argument("--log-level", default=LOG_LEVEL)
    return p


def setup_logging(level: str):
    logging.basicConfig(
        stream=sys.stdout,
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def install_signal_handlers(interrupt: threading.Event):
    """SIGINT/SIGTERM set interrupt; the render loop stops at its next tick."""
    def _handler(signum, frame):
        sig_name = "SIGTERM" if signum == signal.SIGTERM else "SIGINT"
        logging.getLogger("SIGNAL").info("Received %s, initiating clean shutdown...", sig_name)
        interrupt.set()
    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)


def run(args, interrupt: threading.Event) -> int:
    """Bring up the panel, run the render loop until interrupted, then shut down."""
    set_utils_globals(TZINFO=resolve_tz(DISPLAY_TZ))

    matrix = init_rgb_matrix(
        rows=args.led_rows, cols=args.led_cols, chain_length=args.led_chain,
        parallel=args.led_parallel, brightness=args.led_brightness,
        hardware_mapping=args.led_gpio_mapping, gpio_slowdown=args.led_slowdown_gpio,
        pwm_bits=args.led_pwm_bits, pwm_lsb_nanoseconds=args.led_pwm_lsb_nanoseconds,
        led_rgb_sequence=args.led_rgb_sequence, pixel_mapper=args.led_pixel_mapper,
        panel_type=args.led_panel_type, disable_hardware_pulsing=args.led_no_hardware_pulse)
    if matrix is None:
        log.critical("Failed to create matrix")
        return 1

    clock_font, fact_font = load_fonts(FONT_DIR, CLOCK_FONT, FACT_FONTS)
    if clock_font is None:
        log.critical("Could not load font for clock: %s", os.path.join(FONT_DIR, CLOCK_FONT))
        return 1

    left = load_image_track(args.left_image, LEFT_IMAGE_WIDTH, IMAGE_HEIGHT)
    if not len(left):
        log.critical("Failed to load left image: %s", args.left_image)
        return 1
    right = load_image_track(args.right_image, RIGHT_IMAGE_WIDTH, IMAGE_HEIGHT)
    if not len(right):
        log.critical("Failed to load right image: %s", args.right_image)
        return 1

    log.info("=" * 60)
    log.info("Matrix: %dx%d, Left: %d frames, Right: %d frames",
             matrix.width, matrix.height, len(left), len(right))
    log.info("Timezone: %s, dim %s-%s (%d/%d)", DISPLAY_TZ or "local", DIM_START, DIM_END,
             DIM_BRIGHTNESS, BRIGHT_BRIGHTNESS)
    log.info("Fact source: %s (cache=%s)", FACT_URL, FACT_CACHE_DIR)

    slot = FactSlot(FACT_PLACEHOLDER, measure=lambda text: string_width(fact_font, text))
    store = FactStore(FACT_CACHE_DIR)
    stop_event = threading.Event()

    def fetch(store, date_str, **kwargs):
        return fetch_fact_with_retry(
            store, date_str,
            fetch=lambda: utils.fetch_fact_of_the_day(FACT_URL, FACT_TIMEOUT, FACT_USER_AGENT),
            **kwargs)

    fact_thread = start_fact_worker(slot, store, stop_event, fetch=fetch, poll_sec=FACT_POLL_SEC,
                                    max_retries=FACT_RETRIES, wait_seconds=FACT_RETRY_WAIT_SEC)

    compositor = Compositor(matrix, clock_font, fact_font, left, right, slot, interrupt,
                            dim_start=DIM_START, dim_end=DIM_END,
                            dim_level=DIM_BRIGHTNESS, bright_level=BRIGHT_BRIGHTNESS)
    try:
        compositor.run()
    finally:
        shutdown_log = logging.getLogger("SHUTDOWN")
        shutdown_log.info("Shutting down...")
        stop_event.set()
        fact_thread.join()
        matrix.Clear()
        shutdown_log.info("Done")
    return 0


def main(argv=None) -> int:
    setup_logging(LOG_LEVEL)
    load_config()
    parser = build_arg_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return 0 if e.code == 0 else 1
    logging.getLogger().setLevel(getattr(logging, args.log_level.upper(), logging.INFO))

    interrupt = threading.Event()
    install_signal_handlers(interrupt)
    return run(args, interrupt)


if __name__ == "__main__":
    sys.exit(main())
