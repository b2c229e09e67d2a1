# camstages

Post-processing stages for camera frames in planar YUV420 layout, the
numeric building blocks they use, and a small preview abstraction.

numpy is the only runtime dependency.

## Installation

```
pip install camstages
```

## Modules

- `camstages.pwl`: piecewise linear functions. `Pwl` holds control points
  with increasing x and can be evaluated (`eval`), composed (`compose`),
  combined (`Pwl.combine`, `Pwl.map2`), inverted (`invert`, returning a
  `PerpType`), extended (`match_domain`) and turned into a lookup table
  (`generate_lut`). `Point` and `Interval` are small value types.
- `camstages.histogram`: `Histogram` built from a list of bin counts, with
  `quantile`, `cumulative_freq` and `inter_quantile_mean`.
- `camstages.stage`: the `PostProcessingStage` base class, the stage
  registry (`register_stage`, `get_post_processing_stages`,
  `create_stage`), the frame descriptions `StreamInfo`,
  `StreamConfiguration`, `CompletedRequest` and `CameraContext`, and the
  helpers `yuv420_to_rgb` (centre crop into packed RGB) and
  `execution_time` (microseconds taken by a call).
- `camstages.hdr`: `HdrStage` (registered as `"hdr"`) accumulates
  `num_frames` still frames into an `HdrImage`, low-pass filters it, tone
  maps it and writes the result into the last frame. Its configuration is
  `HdrConfig.from_params(...)`. Saving each constituent frame is delegated
  to an optional `frame_saver` callback.
- `camstages.motion_detect`: `MotionDetectStage` (`"motion_detect"`)
  compares a region of the lores frame with the previous one and sets
  `post_process_metadata["motion_detect.result"]`.
- `camstages.negate`: `NegateStage` (`"negate"`) inverts every byte of the
  main buffer.
- `camstages.tf_stage`: `TfStage`, a base for stages that run a model on
  the lores stream every `refresh_rate` frames in a background thread. You
  supply the model as a `Model` object (or a callable taking the
  `model_file` parameter and returning one).
- `camstages.object_classify`: `ObjectClassifyTfStage`
  (`"object_classify_tf"`), plus the plain functions `read_padded_labels`,
  `top_results` and `format_annotation`. Results go to
  `"object_classify.results"` and, optionally, `"annotate.text"`.
- `camstages.pose_estimation`: `PoseEstimationTfStage`
  (`"pose_estimation_tf"`) and `decode_pose`. Results go to
  `"pose_estimation.locations"` and `"pose_estimation.confidences"`.
- `camstages.preview`: `make_preview(PreviewOptions(...))` returns a
  `NullPreview`, which hands every buffer straight back, or, with
  `qt_preview=True`, an `RgbPreview`, which keeps an RGB rendering of the
  latest frame in `image` (made by `resample_yuv420_to_rgb`).

## Example

```python
from camstages.pwl import Pwl
from camstages.histogram import Histogram

curve = Pwl([(0, 0), (10, 20)])
print(curve.eval(5))            # 10.0

hist = Histogram([1, 2, 3, 4])
print(hist.quantile(0.5))
print(hist.inter_quantile_mean(0.25, 0.75))
```

A stage is registered when its module is imported, and can then be
created by name:

```python
import camstages.negate
from camstages.stage import (
    CameraContext, CompletedRequest, StreamInfo, create_stage,
)

app = CameraContext(main_stream=StreamInfo(width=4, height=2, stride=4))
stage = create_stage("negate", app)
stage.configure()

request = CompletedRequest(buffers={"main": bytearray(12)})
stage.process(request)
print(request.buffers["main"][:4])   # bytearray(b'\xff\xff\xff\xff')
```

Buffers in a `CompletedRequest` are keyed by stream role: `"main"`,
`"lores"` or `"still"`.

## What this package does not do

- It does not talk to a camera. You describe the streams with
  `CameraContext` and pass frames in as `CompletedRequest` objects.
- It does not contain an inference runtime; neural-network stages need a
  `Model` you provide.
- It does not open any window on screen. `RgbPreview` only keeps the
  rendered image for you to display.
- It does not write JPEG files; `HdrStage` calls your `frame_saver` if one
  is given.
- There are no object detection, segmentation or drawing stages, and no
  command-line program.

## Running the tests

```
pip install camstages[test]
pytest
```