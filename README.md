# framestages

Frame-by-frame post-processing for camera pipelines. The stages work on plain
`bytes`, `bytearray` or numpy arrays, so they can sit behind any capture loop.

## Installation

```
pip install framestages
```

## Modules

- `framestages.hdr`: accumulates several YUV420 frames into a wide-range
  image, smooths it with an edge-preserving low-pass filter, applies a global
  tone curve and adds local contrast back (`HdrConfig`, `HdrImage`,
  `HdrAccumulator`, `ToneCurve`).
- `framestages.histogram`: `Histogram` with `quantile()` and
  `inter_quantile_mean()`.
- `framestages.negate`: `negate()` inverts every bit of a buffer whose length
  is a multiple of four bytes.
- `framestages.classify`: keeps the top-N classes of a uint8 prediction
  vector, with a low and a high threshold, and builds a `"Detected: ..."`
  annotation line (`ClassifyConfig`, `ObjectClassifier`, `read_labels`,
  `format_annotation`).
- `framestages.geometry`: integer `Point`, `Size` and `Rectangle`, with
  scaling, bounding, translation and centring.
- `framestages.imx500_stage`: de-normalisation of saved input tensors
  (`TensorNormalisation`, `convert_input_tensor`), mapping of inference
  co-ordinates to ISP output co-ordinates (`InferenceMapper`), choice of an
  inference region with a given aspect ratio (`inference_roi_auto`) and
  parsing of firmware upload progress text (`parse_progress`).
- `framestages.object_detection`: turns a detection output tensor into
  `Detection` objects (`ObjectDetector`, `parse_detection_tensor`) and smooths
  them over frames with `TemporalFilter`.
- `framestages.posenet_decode` and `framestages.posenet`: decode multi-person
  poses from heatmaps and short- and mid-range offset maps (`PoseNet`,
  `PoseNetConfig`, `PoseTemporalFilter`).
- `framestages.hailo_stage`: a reusable buffer pool (`Allocator`), a
  thread-safe `MessageQueue` of display messages, co-ordinate conversion with
  main and low-resolution crops, network file selection (`select_hef`) and RGB
  repacking (`pack_rgb`, `swap_rb`).

## Example: HDR from several frames

```python
from framestages.hdr import HdrConfig, HdrAccumulator

config = HdrConfig.from_dict(params)         # params: a dict, e.g. loaded from JSON
hdr = HdrAccumulator(config, width, height, stride)

for frame in frames:                         # YUV420 bytes, one per capture
    result = hdr.process(frame)
    if result is not None:
        save(result)
```

`process` returns `None` while frames are being accumulated, the merged 8-bit
YUV420 frame as `bytes` when the last of `num_frames` frames arrives, and any
later frame unchanged.

## Example: object detection

```python
from framestages.geometry import Rectangle, Size
from framestages.imx500_stage import InferenceMapper
from framestages.object_detection import ObjectDetector

mapper = InferenceMapper(Size(1920, 1080), Size(2028, 1520))
detector = ObjectDetector(["person", "car"], max_detections=10, threshold=0.5, mapper=mapper)

detections = detector.detect(tensor, num_tensors=4, tensor_data_num=4 * n,
                             scaler_crop=Rectangle(0, 0, 4056, 3040))
for d in detections:
    print(d.name, d.confidence, d.box)
```

`detect` raises `ValueError` when the tensor count or size does not match.

## What the package does not do

- It does not capture frames, talk to a camera or to an inference device, or
  run a neural network: it works on frames and output tensors you pass in.
- It has no motion detector.
- It writes no image files; `HdrAccumulator` only logs when a
  `jpeg_filename` is configured.
- It opens no windows: `MessageQueue` holds display messages for whatever
  thread shows them.

## Running the tests

```
pip install framestages[test]
pytest
```