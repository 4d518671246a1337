"""Object detection results from a sensor-side network, with temporal filtering."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Any, List, Mapping, Sequence, Tuple

import numpy as np

from framestages.geometry import Rectangle, Size
from framestages.imx500_stage import InferenceMapper

log = logging.getLogger(__name__)

_UINT32 = 1 << 32


@dataclass
class Detection:
    """A detected object in ISP output co-ordinates."""

    category: int
    name: str
    confidence: float
    box: Rectangle


@dataclass
class TemporalFilterConfig:
    """How long objects stay hidden or visible, and how they are matched."""

    tolerance: float = 0.05
    factor: float = 0.2
    visible_frames: int = 5
    hidden_frames: int = 2

    @classmethod
    def from_dict(cls, params: Mapping[str, Any]) -> "TemporalFilterConfig":
        """Build from the ``temporal_filter`` section of a stage's parameters."""
        visible = int(params.get("visible_frames", 5))
        hidden = int(params.get("hidden_frames", 2))
        if visible < 0 or hidden < 0:
            raise ValueError("frame counts must not be negative")
        return cls(
            tolerance=float(params.get("tolerance", 0.05)),
            factor=float(params.get("factor", 0.2)),
            visible_frames=visible,
            hidden_frames=hidden,
        )


@dataclass
class _LtObject:
    params: Detection
    visible: int
    hidden: int
    matched: bool


class TemporalFilter:
    """Long term list of objects smoothing detections across frames.

    A new object stays hidden for ``hidden_frames`` matched frames and an
    object that disappears stays visible for ``visible_frames`` frames. With
    ``reveal_when_empty`` objects found while the list is empty show at once.
    """

    def __init__(self, config: TemporalFilterConfig, output_size: Size, reveal_when_empty: bool = True):
        self.config = config
        self.output_size = output_size
        self.reveal_when_empty = reveal_when_empty
        self._objects: List[_LtObject] = []
        self._lock = threading.Lock()

    def _matches(self, obj: Detection, lt: Detection) -> bool:
        tol = np.float32(self.config.tolerance)
        tol_w = float(tol * np.float32(self.output_size.width))
        tol_h = float(tol * np.float32(self.output_size.height))
        return (
            obj.category == lt.category
            and abs(obj.box.x - lt.box.x) < tol_w
            and abs(obj.box.y - lt.box.y) < tol_h
            and abs(obj.box.width - lt.box.width) < tol_w
            and abs(obj.box.height - lt.box.height) < tol_h
        )

    def _blend(self, new: int, old: int) -> int:
        f = np.float32(self.config.factor)
        return int(f * np.float32(new) + (np.float32(1) - f) * np.float32(old))

    def update(self, objects: Sequence[Detection]) -> List[Detection]:
        """Merge this frame's detections and return the objects now visible."""
        cfg = self.config
        with self._lock:
            empty = not self._objects
            for lt in self._objects:
                lt.matched = False

            for obj in objects:
                matched = False
                for lt in self._objects:
                    if not self._matches(obj, lt.params):
                        continue
                    lt.matched = matched = True
                    box = lt.params.box
                    lt.params = replace(
                        lt.params,
                        confidence=obj.confidence,
                        box=Rectangle(
                            self._blend(obj.box.x, box.x),
                            self._blend(obj.box.y, box.y),
                            max(self._blend(obj.box.width, box.width), 0),
                            max(self._blend(obj.box.height, box.height), 0),
                        ),
                    )
                    lt.visible = cfg.visible_frames
                    lt.hidden = max(0, lt.hidden - 1)
                    break
                if not matched:
                    hidden = 0 if (empty and self.reveal_when_empty) else cfg.hidden_frames
                    self._objects.append(_LtObject(replace(obj), cfg.visible_frames, hidden, True))

            for lt in self._objects:
                if not lt.matched:
                    if lt.hidden:
                        lt.visible = 0
                    else:
                        lt.visible = (lt.visible - 1) % _UINT32

            self._objects = [lt for lt in self._objects if lt.matched or lt.visible]
            return self._visible_locked()

    def _visible_locked(self) -> List[Detection]:
        return [replace(lt.params) for lt in self._objects if not lt.hidden]

    def visible(self) -> List[Detection]:
        """Objects in the long term list that are not hidden."""
        with self._lock:
            return self._visible_locked()


@dataclass
class ObjectDetectionOutput:
    """Decoded output tensor: boxes as (x0, y0, x1, y1), scores and classes."""

    num_detections: int = 0
    bboxes: List[Tuple[float, float, float, float]] = field(default_factory=list)
    scores: List[float] = field(default_factory=list)
    classes: List[float] = field(default_factory=list)


def parse_detection_tensor(data: Sequence[float], total_detections: int) -> ObjectDetectionOutput:
    """Split the flat output tensor into boxes, scores, classes and the detection count."""
    values = [float(np.float32(v)) for v in data]
    t = int(total_detections)
    if t < 0:
        raise ValueError("total_detections must not be negative")
    if len(values) < 6 * t + 1:
        raise ValueError(f"tensor holds {len(values)} values, needs {6 * t + 1}")

    bboxes = [
        (values[i + t], values[i], values[i + 3 * t], values[i + 2 * t])
        for i in range(t)
    ]
    scores = values[4 * t:5 * t]
    classes = values[5 * t:6 * t]
    num = max(int(values[6 * t]), 0)
    if num > t:
        log.info("Unexpected value for num_detections: %d, setting it to %d", num, t)
        num = t
    return ObjectDetectionOutput(num, bboxes, scores, classes)


class ObjectDetector:
    """Turns the detection output tensor into labelled detections."""

    def __init__(self, classes: Sequence[str], max_detections: int, threshold: float, mapper: InferenceMapper):
        if max_detections < 0:
            raise ValueError("max_detections must not be negative")
        self.classes = list(classes)
        self.max_detections = int(max_detections)
        self.threshold = float(threshold)
        self.mapper = mapper

    def detect(
        self, tensor: Sequence[float], num_tensors: int, tensor_data_num: int, scaler_crop: Rectangle
    ) -> List[Detection]:
        """Decode one output tensor.

        ``num_tensors`` and ``tensor_data_num`` come from the tensor info; the
        first tensor's element count holds four co-ordinates per detection.
        """
        if num_tensors != 4:
            raise ValueError(f"Invalid number of tensors {num_tensors}, expected 4")
        total = int(tensor_data_num) // 4
        tensor = list(tensor)
        if len(tensor) != 6 * total + 1:
            raise ValueError(f"Invalid tensor size {len(tensor)}, expected {6 * total + 1}")

        output = parse_detection_tensor(tensor, total)
        threshold = np.float32(self.threshold)
        objects: List[Detection] = []
        for i in range(min(output.num_detections, self.max_detections)):
            class_index = int(output.classes[i]) & 0xFF
            score = output.scores[i]
            if np.float32(score) < threshold or class_index >= len(self.classes):
                continue
            x0, y0, x1, y1 = (np.float32(v) for v in output.bboxes[i])
            box = self.mapper.convert([x0, y0, x1 - x0, y1 - y0], scaler_crop)
            objects.append(Detection(class_index, self.classes[class_index], score, box))

        log.debug("Number of objects detected: %d", len(objects))
        for i, obj in enumerate(objects):
            log.debug("[%d] : %s", i, obj)
        return objects