import numpy as np
import pytest

from camstages.stage import CameraContext, CompletedRequest, StreamInfo
from camstages.tf_stage import Model, TensorType, TfConfig, TfStage


class FakeModel(Model):
    def __init__(self, input_type=TensorType.UINT8, input_bytes=4 * 4 * 3, outputs=None):
        self._type = input_type
        self._bytes = input_bytes
        self.outputs = outputs if outputs is not None else [np.array([1.0, 2.0])]
        self.inputs = []
        self.threads = None

    @property
    def input_type(self):
        return self._type

    @property
    def input_bytes(self):
        return self._bytes

    @property
    def output_shapes(self):
        return [o.shape for o in self.outputs]

    def set_num_threads(self, num_threads):
        self.threads = num_threads

    def invoke(self, tensor):
        self.inputs.append(np.array(tensor))
        return self.outputs


class RecordingStage(TfStage):
    name = "recording"

    def __init__(self, app, model):
        super().__init__(app, 4, 4, model)
        self.interpreted = []
        self.checked = 0

    def check_configuration(self):
        self.checked += 1

    def interpret_outputs(self, outputs):
        self.interpreted.append(outputs)

    def apply_results(self, request):
        request.post_process_metadata["count"] = len(self.interpreted)


def lores_frame(width=8, height=8, value=128):
    return bytearray([value] * (width * height * 3 // 2))


def make_app(lores_size=8):
    return CameraContext(
        lores_stream=StreamInfo(width=lores_size, height=lores_size, stride=lores_size),
        main_stream=StreamInfo(width=64, height=64, stride=64),
    )


def test_bad_dimensions():
    with pytest.raises(ValueError):
        TfStage(None, 0, 4)


def test_missing_model_fails_to_load():
    stage = TfStage(None, 4, 4)
    with pytest.raises(RuntimeError, match="Failed to load model"):
        stage.read({})


def test_input_size_mismatch():
    stage = TfStage(None, 4, 4, FakeModel(input_bytes=10))
    with pytest.raises(RuntimeError, match="size mismatch"):
        stage.read({})


def test_float_model_needs_four_bytes_per_element():
    stage = TfStage(None, 4, 4, FakeModel(TensorType.FLOAT32, 4 * 4 * 3))
    with pytest.raises(RuntimeError, match="size mismatch"):
        stage.read({})


def test_read_defaults_and_threads():
    model = FakeModel()
    stage = TfStage(None, 4, 4, model)
    stage.read({})
    assert stage.config == TfConfig(number_of_threads=2)
    assert model.threads == 2


def test_threads_minus_one_not_set():
    model = FakeModel()
    stage = TfStage(None, 4, 4, model)
    stage.read({"number_of_threads": -1})
    assert model.threads is None


def test_loader_receives_model_file():
    seen = []
    created = FakeModel()

    def loader(path):
        seen.append(path)
        return created

    stage = TfStage(None, 4, 4, loader)
    stage.read({"model_file": "net.tflite"})
    assert seen == ["net.tflite"]
    assert stage.model is created
    assert stage.config.model_file == "net.tflite"
    assert created.threads == 2


def test_configure_calls_check():
    stage = RecordingStage(make_app(), FakeModel())
    stage.read({})
    stage.configure()
    assert stage.checked == 1
    assert stage.main_stream_info.width == 64


def test_lores_too_small_disables_inference():
    model = FakeModel()
    stage = RecordingStage(make_app(lores_size=2), model)
    stage.read({})
    stage.configure()
    req = CompletedRequest(sequence=0, buffers={"lores": lores_frame(2, 2)})
    assert stage.process(req) is False
    stage.stop()
    assert model.inputs == []
    assert "count" not in req.post_process_metadata


def test_inference_results_applied():
    model = FakeModel()
    stage = RecordingStage(make_app(), model)
    stage.read({})
    stage.configure()
    stage.process(CompletedRequest(sequence=0, buffers={"lores": lores_frame()}))
    stage.stop()
    req = CompletedRequest(sequence=1, buffers={"lores": lores_frame()})
    stage.process(req)
    stage.teardown()
    assert req.post_process_metadata["count"] == 1
    assert len(model.inputs) == 1
    assert model.inputs[0].shape == (1, 4, 4, 3)
    assert model.inputs[0].dtype == np.uint8
    assert np.all(model.inputs[0] == 128)
    np.testing.assert_array_equal(stage.interpreted[0][0], model.outputs[0])


def test_refresh_rate_skips_sequences():
    model = FakeModel()
    stage = RecordingStage(make_app(), model)
    stage.read({"refresh_rate": 5})
    stage.configure()
    req = CompletedRequest(sequence=3, buffers={"lores": lores_frame()})
    assert stage.process(req) is False
    stage.stop()
    assert req.post_process_metadata["count"] == 0
    assert model.inputs == []


def test_float_normalisation():
    model = FakeModel(TensorType.FLOAT32, 4 * 4 * 3 * 4)
    stage = RecordingStage(make_app(), model)
    stage.read({"normalisation_offset": 0, "normalisation_scale": 1})
    stage.configure()
    stage.process(CompletedRequest(sequence=0, buffers={"lores": lores_frame()}))
    stage.stop()
    req = CompletedRequest(sequence=1, buffers={"lores": lores_frame()})
    stage.process(req)
    stage.teardown()
    assert req.post_process_metadata["count"] == 1
    assert stage.config.normalisation_scale == 1
    assert model.inputs[0].dtype == np.float32
    assert np.all(model.inputs[0] == 128.0)