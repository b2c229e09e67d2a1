from types import SimpleNamespace

import numpy as np
import pytest

from camstages.preview import (
    NullPreview,
    PreviewOptions,
    RgbPreview,
    make_preview,
    resample_yuv420_to_rgb,
)


def _frame(width, height, y, u=128, v=128, colour_space=None):
    stride = width
    y_plane = np.broadcast_to(np.asarray(y, dtype=np.uint8), (height, width)).reshape(-1)
    uv_size = (height // 2) * (stride // 2)
    data = np.concatenate(
        [y_plane, np.full(uv_size, u, np.uint8), np.full(uv_size, v, np.uint8)]
    )
    info = SimpleNamespace(width=width, height=height, stride=stride, colour_space=colour_space)
    return bytearray(data.tobytes()), info


def test_identity_resample_neutral_chroma_gives_grey():
    ramp = (np.arange(8 * 4) * 7 % 256).astype(np.uint8).reshape(4, 8)
    span, info = _frame(8, 4, ramp, colour_space="sycc")
    out = resample_yuv420_to_rgb(span, info, 8, 4)
    assert out.shape == (4, 8, 3)
    for c in range(3):
        assert np.array_equal(out[:, :, c], ramp)


def test_extremes_clamped():
    span, info = _frame(4, 4, 255, u=255, v=255)
    out = resample_yuv420_to_rgb(span, info, 4, 4)
    assert out[..., 0].max() == 255
    span, info = _frame(4, 4, 0, u=0, v=0)
    out = resample_yuv420_to_rgb(span, info, 4, 4)
    assert out[..., 0].min() == 0


def test_limited_range_black():
    span, info = _frame(4, 4, 16, colour_space="smpte170m")
    out = resample_yuv420_to_rgb(span, info, 4, 4)
    assert out.shape == (4, 4, 3)
    assert out.tolist() == [[[0, 0, 0]] * 4] * 4


def test_downscale_shape():
    span, info = _frame(16, 8, 100)
    out = resample_yuv420_to_rgb(span, info, 4, 2)
    assert out.shape == (2, 4, 3)
    assert np.all(out == 100)


def test_odd_width_rejected():
    span, info = _frame(4, 4, 0)
    with pytest.raises(ValueError):
        resample_yuv420_to_rgb(span, info, 3, 4)


def test_null_preview_returns_buffer():
    preview = NullPreview(PreviewOptions())
    returned = []
    preview.set_done_callback(returned.append)
    span, info = _frame(4, 4, 0)
    preview.show(7, span, info)
    assert returned == [7]
    assert preview.max_image_size() == (0, 0)
    assert preview.quit() is False


def test_rgb_preview_default_size():
    preview = RgbPreview(PreviewOptions(qt_preview=True))
    assert (preview.width, preview.height) == (512, 384)
    assert preview.image.shape == (384, 512, 3)


def test_rgb_preview_odd_dimensions():
    with pytest.raises(ValueError):
        RgbPreview(PreviewOptions(preview_width=5, preview_height=4))


def test_rgb_preview_show_and_close():
    preview = RgbPreview(PreviewOptions(preview_width=4, preview_height=4))
    returned = []
    preview.set_done_callback(returned.append)
    span, info = _frame(8, 8, 200)
    preview.show(3, span, info)
    assert returned == [3]
    assert np.all(preview.image == 200)
    preview.set_info_text("status")
    assert preview.title == "status"
    assert preview.quit() is False
    preview.close()
    assert preview.quit() is True


def test_make_preview_choices():
    null_preview = make_preview(PreviewOptions(nopreview=True, qt_preview=True))
    assert type(null_preview) is NullPreview
    assert null_preview.max_image_size() == (0, 0)

    rgb_preview = make_preview(PreviewOptions(qt_preview=True))
    assert type(rgb_preview) is RgbPreview
    assert (rgb_preview.width, rgb_preview.height) == (512, 384)
    rgb_preview.close()

    fallback = make_preview(PreviewOptions())
    assert type(fallback) is NullPreview
    returned = []
    fallback.set_done_callback(returned.append)
    span, info = _frame(4, 4, 0)
    fallback.show(9, span, info)
    assert returned == [9]