import pytest

from camstages.motion_detect import MotionDetectConfig, MotionDetectStage
from camstages.stage import (
    CameraContext,
    CompletedRequest,
    StreamInfo,
    create_stage,
    get_post_processing_stages,
)


def make_stage(params=None, width=8, height=8):
    app = CameraContext(lores_stream=StreamInfo(width=width, height=height, stride=width))
    stage = MotionDetectStage(app)
    stage.read(params or {"frame_period": 1, "region_threshold": 0.1})
    stage.configure()
    return stage


def frame(value=100, width=8, height=8):
    buf = bytearray([value] * (width * height))
    buf.extend([128] * (width * height // 2))
    return buf


def request(buf, seq=0):
    return CompletedRequest(sequence=seq, buffers={"lores": buf})


def test_defaults_from_empty_params():
    cfg = MotionDetectConfig.from_params({})
    assert cfg == MotionDetectConfig()
    assert cfg.frame_period == 5
    assert cfg.verbose is False


def test_first_frame_reports_no_motion():
    stage = make_stage()
    req = request(frame())
    assert stage.process(req) is False
    assert req.post_process_metadata["motion_detect.result"] is False


def test_identical_frames_no_motion():
    stage = make_stage()
    stage.process(request(frame(), 0))
    req = request(frame(), 1)
    stage.process(req)
    assert req.post_process_metadata["motion_detect.result"] is False
    assert stage.motion_detected is False


def test_large_change_is_motion():
    stage = make_stage()
    stage.process(request(frame(100), 0))
    req = request(frame(125), 1)
    stage.process(req)
    assert req.post_process_metadata["motion_detect.result"] is True


def test_change_within_tolerance_is_not_motion():
    stage = make_stage()
    stage.process(request(frame(100), 0))
    req = request(frame(115), 1)
    stage.process(req)
    assert req.post_process_metadata["motion_detect.result"] is False


def test_motion_stops_when_scene_settles():
    stage = make_stage()
    stage.process(request(frame(100), 0))
    stage.process(request(frame(200), 1))
    assert stage.motion_detected is True
    req = request(frame(200), 2)
    stage.process(req)
    assert req.post_process_metadata["motion_detect.result"] is False


def test_frame_period_skips_frames():
    stage = make_stage({"frame_period": 5})
    req = request(frame(), 3)
    assert stage.process(req) is False
    assert "motion_detect.result" not in req.post_process_metadata


def test_no_lores_stream_does_nothing():
    stage = MotionDetectStage(CameraContext())
    stage.read({})
    stage.configure()
    req = request(frame(), 0)
    assert stage.process(req) is False
    assert req.post_process_metadata == {}


def test_roi_is_clamped_to_image():
    stage = make_stage({"roi_x": 0.5, "roi_width": 1.0, "frame_period": 1})
    x, y, w, h = stage.roi
    assert x + w == 8
    assert (y, h) == (0, 8)


def test_region_threshold_not_above_roi_area():
    stage = make_stage({"region_threshold": 5.0, "frame_period": 1})
    _, _, w, h = stage.roi
    assert stage.region_threshold == w * h


def test_hskip_ignores_skipped_columns():
    stage = make_stage({"hskip": 2, "region_threshold": 0.1, "frame_period": 1})
    assert stage.roi[2] == 4
    stage.process(request(frame(100), 0))
    changed = frame(100)
    for row in range(8):
        for col in range(1, 8, 2):
            changed[row * 8 + col] = 250
    req = request(changed, 1)
    stage.process(req)
    assert req.post_process_metadata["motion_detect.result"] is False


def test_registered_in_registry():
    assert get_post_processing_stages()["motion_detect"] is MotionDetectStage
    app = CameraContext()
    stage = create_stage("motion_detect", app)
    assert stage.app is app
    stage.read({})
    stage.configure()
    req = request(frame(), 0)
    assert stage.process(req) is False
    assert req.post_process_metadata == {}