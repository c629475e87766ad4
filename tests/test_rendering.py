import pytest
from PIL import Image

import rendering
from rendering import (
    BrightnessGate, ImageTrack, clear_rows, copy_image_to_canvas, draw_clock, draw_fact_text,
    is_dim_time, load_fonts, load_image_track, string_width
)

from conftest import FakeCanvas, FakeFont, FakeMatrix, reading


def solid(color, size=(18, 21)):
    return Image.new("RGBA", size, color)


# ---------------------------------------------------------------- image tracks

def test_load_still_png_is_single_frame_with_zero_delay(tmp_path):
    path = tmp_path / "cat.png"
    Image.new("RGB", (36, 42), (200, 10, 10)).save(path)
    track = load_image_track(str(path), 18, 21)
    assert len(track) == 1
    assert not track.animated
    assert track.size == (18, 21)
    assert track.delay(0) == 0
    assert track.pixel(0, 5, 5) == (200, 10, 10, 255)


def test_load_preserves_aspect_ratio(tmp_path):
    path = tmp_path / "square.png"
    Image.new("RGB", (100, 100), (1, 2, 3)).save(path)
    assert load_image_track(str(path), 18, 21).size == (18, 18)


def test_load_animated_gif_keeps_frames_and_delays(tmp_path):
    path = tmp_path / "anim.gif"
    frames = [Image.new("RGB", (20, 20), c) for c in ((255, 0, 0), (0, 255, 0), (0, 0, 255))]
    frames[0].save(path, save_all=True, append_images=frames[1:], duration=[50, 120, 70], loop=0)
    track = load_image_track(str(path), 18, 21)
    assert len(track) == 3
    assert track.animated
    assert [track.delay(i) for i in range(3)] == [5, 12, 7]
    assert track.pixel(1, 3, 3)[:3] == (0, 255, 0)
    assert track.frame(4) is track.frame(1)


def test_load_failure_returns_empty_track(tmp_path, caplog):
    bad = tmp_path / "bad.png"
    bad.write_bytes(b"not an image")
    assert len(load_image_track(str(bad), 18, 21)) == 0
    assert len(load_image_track(str(tmp_path / "missing.gif"), 18, 21)) == 0
    assert "Error loading" in caplog.text


# ---------------------------------------------------------------- drawing

def test_copy_image_offsets_pixels():
    canvas = FakeCanvas()
    copy_image_to_canvas(ImageTrack([(solid((9, 8, 7, 255)), 0)]), 0, canvas, 46, 1)
    assert canvas.get(46, 1) == (9, 8, 7)
    assert canvas.get(63, 21) == (9, 8, 7)
    assert canvas.get(45, 1) == (0, 0, 0)
    assert min(y for _, y in canvas.set_calls) == 1
    assert max(y for _, y in canvas.set_calls) == 21


def test_copy_image_skips_fully_transparent_pixels():
    img = solid((50, 60, 70, 255))
    img.putpixel((0, 0), (255, 255, 255, 0))
    canvas = FakeCanvas()
    canvas.SetPixel(0, 1, 1, 2, 3)
    copy_image_to_canvas(ImageTrack([(img, 0)]), 0, canvas, 0, 1)
    assert canvas.get(0, 1) == (1, 2, 3)
    assert canvas.get(1, 1) == (50, 60, 70)


def test_copy_image_clips_below_image_area():
    canvas = FakeCanvas()
    copy_image_to_canvas(ImageTrack([(solid((1, 1, 1, 255), (18, 30)), 0)]), 0, canvas, 0, 1)
    assert max(y for _, y in canvas.set_calls) == rendering.IMAGE_Y + rendering.IMAGE_HEIGHT - 1


def test_clear_rows_only_touches_requested_rows():
    canvas = FakeCanvas()
    canvas.SetPixel(5, 19, 9, 9, 9)
    canvas.SetPixel(5, 25, 9, 9, 9)
    clear_rows(canvas, 20, 32, 64)
    assert canvas.get(5, 19) == (9, 9, 9)
    assert canvas.get(5, 25) == (0, 0, 0)
    assert canvas.pixels[(5, 25)] == rendering.BLACK


def test_draw_clock_positions_and_colors(fake_graphics):
    font = FakeFont()
    draw_clock(FakeCanvas(), font, reading(hour=9, minute=5, month=3, day=7))
    time_call, date_call = fake_graphics.calls
    assert (time_call.text, time_call.x, time_call.y, time_call.color) == ("09:05", 20, 10, (255, 255, 255))
    assert (date_call.text, date_call.x, date_call.y, date_call.color) == ("3/7", 24, 18, (180, 180, 180))


def test_draw_fact_text_green_on_baseline(fake_graphics):
    draw_fact_text(FakeCanvas(), FakeFont(), "Today's fact: x", 12)
    call = fake_graphics.calls[0]
    assert (call.x, call.y, call.color) == (12, 30, (100, 255, 100))


def test_string_width_uses_replacement_width_for_unknown_glyphs():
    font = FakeFont(advance=5, missing={ord("☃")})
    assert string_width(font, "ab☃") == 15
    assert string_width(font, "") == 0


# ---------------------------------------------------------------- fonts

def test_load_fonts_walks_fallback_chain(fake_graphics):
    fake_graphics.fonts_ok = {"/f/5x7.bdf", "/f/5x8.bdf"}
    clock_font, fact_font = load_fonts("/f", "5x7.bdf", ["6x13.bdf", "6x9.bdf", "5x8.bdf"])
    assert clock_font is not None
    assert fact_font is not None and fact_font is not clock_font


def test_load_fonts_falls_back_to_clock_font(fake_graphics):
    fake_graphics.fonts_ok = {"/f/5x7.bdf"}
    clock_font, fact_font = load_fonts("/f", "5x7.bdf", ["6x13.bdf"])
    assert fact_font is clock_font


def test_load_fonts_requires_clock_font(fake_graphics):
    fake_graphics.fonts_ok = {"/f/6x13.bdf"}
    assert load_fonts("/f", "5x7.bdf", ["6x13.bdf"]) == (None, None)


# ---------------------------------------------------------------- brightness

@pytest.mark.parametrize("hour, minute, dim", [
    (0, 0, True), (7, 59, True), (8, 0, False), (12, 0, False),
    (23, 29, False), (23, 30, True), (23, 59, True),
])
def test_dim_window(hour, minute, dim):
    assert is_dim_time(hour, minute) is dim


def test_dim_window_is_configurable():
    assert is_dim_time(21, 0, "21:00", "06:30")
    assert not is_dim_time(6, 30, "21:00", "06:30")


def test_brightness_written_only_on_change():
    matrix = FakeMatrix()
    gate = BrightnessGate(matrix, 60)
    assert gate.update(0, reading(hour=12)) is True
    assert gate.update(60, reading(hour=13)) is False
    assert gate.update(120, reading(hour=14)) is False
    assert matrix.brightness_writes == [100]


def test_brightness_check_is_time_gated():
    matrix = FakeMatrix()
    gate = BrightnessGate(matrix, 1800)
    gate.update(0, reading(hour=23, minute=29))
    assert gate.update(10, reading(hour=23, minute=30)) is False
    assert gate.update(1800, reading(hour=23, minute=59)) is True
    assert matrix.brightness_writes == [100, 10]
