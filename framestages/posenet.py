"""Pose estimation from a PoseNet style network output tensor."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from framestages.geometry import Point, Rectangle, Size
from framestages.imx500_stage import InferenceMapper
from framestages.object_detection import TemporalFilterConfig
from framestages.posenet_decode import (
    INPUT_TENSOR_SIZE,
    MAP_SIZE,
    NUM_HEATMAPS,
    NUM_KEYPOINTS,
    NUM_MID_OFFSETS,
    NUM_SHORT_OFFSETS,
    STRIDE,
    PointF,
    backtrack_decode_pose,
    build_adjacency_list,
    build_keypoint_queue,
    decreasing_arg_sort,
    format_tensor,
    log_odds,
    perform_soft_keypoint_nms,
    sigmoid,
    squared_distance,
)

log = logging.getLogger(__name__)

_UINT32 = 1 << 32
_MAP_CELLS = MAP_SIZE.width * MAP_SIZE.height


def _non_negative(params: Mapping[str, Any], key: str, default: int) -> int:
    value = int(params.get(key, default))
    if value < 0:
        raise ValueError(f"{key} must not be negative")
    return value


@dataclass
class PoseNetConfig:
    """Decoder settings; ``nms_radius`` is in map units (pixels / STRIDE)."""

    threshold: float = 0.5
    max_detections: int = 10
    offset_refinement_steps: int = 5
    nms_radius: float = 10 / STRIDE
    temporal_filter: Optional[TemporalFilterConfig] = None

    @classmethod
    def from_dict(cls, params: Mapping[str, Any]) -> "PoseNetConfig":
        temporal = params.get("temporal_filter")
        return cls(
            threshold=float(params.get("threshold", 0.5)),
            max_detections=_non_negative(params, "max_detections", 10),
            offset_refinement_steps=_non_negative(params, "offset_refinement_steps", 5),
            nms_radius=float(params.get("nms_radius", 10)) / STRIDE,
            temporal_filter=None if temporal is None else TemporalFilterConfig.from_dict(temporal),
        )


@dataclass
class PoseResult:
    """One decoded pose: overall score, keypoint positions and keypoint scores."""

    pose_score: float
    keypoints: List[PointF] = field(default_factory=list)
    keypoint_scores: List[float] = field(default_factory=list)


@dataclass
class _LtResult:
    result: PoseResult
    visible: int
    hidden: int
    matched: bool


class PoseTemporalFilter:
    """Long term list of poses smoothing results across frames.

    A new pose stays hidden for ``hidden_frames`` matched frames and a pose
    that disappears stays visible for ``visible_frames`` frames.
    """

    def __init__(self, config: TemporalFilterConfig, output_size: Size):
        self.config = config
        self.output_size = output_size
        self._results: List[_LtResult] = []
        self._lock = threading.Lock()

    def _matches(self, old: PoseResult, new: PoseResult) -> bool:
        tol_w = self.config.tolerance * self.output_size.width
        tol_h = self.config.tolerance * self.output_size.height
        return all(
            abs(a.x - b.x) <= tol_w and abs(a.y - b.y) <= tol_h
            for a, b in zip(old.keypoints, new.keypoints)
        )

    def update(self, results: Sequence[PoseResult]) -> List[PoseResult]:
        """Merge this frame's poses and return the poses now visible."""
        cfg = self.config
        f = cfg.factor
        with self._lock:
            for lt in self._results:
                lt.matched = False

            for r in results:
                matched = False
                for lt in self._results:
                    if not self._matches(lt.result, r):
                        continue
                    lt.matched = matched = True
                    old = lt.result
                    lt.result = PoseResult(
                        pose_score=r.pose_score,
                        keypoints=[
                            PointF(f * n.y + (1 - f) * o.y, f * n.x + (1 - f) * o.x)
                            for n, o in zip(r.keypoints, old.keypoints)
                        ],
                        keypoint_scores=[
                            f * n + (1 - f) * o for n, o in zip(r.keypoint_scores, old.keypoint_scores)
                        ],
                    )
                    lt.visible = cfg.visible_frames
                    lt.hidden = max(0, lt.hidden - 1)
                    break
                if not matched:
                    copy = PoseResult(r.pose_score, list(r.keypoints), list(r.keypoint_scores))
                    self._results.append(_LtResult(copy, cfg.visible_frames, cfg.hidden_frames, True))

            for lt in self._results:
                if not lt.matched:
                    if lt.hidden:
                        lt.visible = 0
                    else:
                        lt.visible = (lt.visible - 1) % _UINT32

            self._results = [lt for lt in self._results if lt.matched or lt.visible]
            return self._visible_locked()

    def _visible_locked(self) -> List[PoseResult]:
        return [
            PoseResult(lt.result.pose_score, list(lt.result.keypoints), list(lt.result.keypoint_scores))
            for lt in self._results
            if not lt.hidden
        ]

    def visible(self) -> List[PoseResult]:
        """Poses in the long term list that are not hidden."""
        with self._lock:
            return self._visible_locked()


class PoseNet:
    """Decodes poses and maps them into ISP output co-ordinates."""

    def __init__(self, config: PoseNetConfig, mapper: InferenceMapper):
        self.config = config
        self.mapper = mapper
        self.filter: Optional[PoseTemporalFilter] = None
        if config.temporal_filter is not None:
            self.filter = PoseTemporalFilter(config.temporal_filter, mapper.isp_output_size)

    def decode_all_poses(self, scores, short_offsets, mid_offsets) -> List[PoseResult]:
        """Decode poses from formatted heatmaps and offsets.

        Results are in decreasing score order with keypoints in inference
        image pixels.
        """
        cfg = self.config
        scores_arr = np.asarray(scores, dtype=np.float32).ravel()
        short_arr = np.asarray(short_offsets, dtype=np.float32).ravel()
        mid_arr = np.asarray(mid_offsets, dtype=np.float32).ravel()

        queue = build_keypoint_queue(scores_arr, short_arr, log_odds(cfg.threshold))
        adjacency = build_adjacency_list()
        scores_list = scores_arr.tolist()
        short_list = short_arr.tolist()
        mid_list = mid_arr.tolist()
        squared_radius = cfg.nms_radius * cfg.nms_radius

        poses: List[List[PointF]] = []
        pose_scores: List[List[float]] = []
        instance_scores: List[float] = []
        for root in queue:
            if len(poses) >= cfg.max_detections:
                break
            # Reject roots close to the same keypoint of an earlier pose.
            if any(squared_distance(root.point, pose[root.id]) <= squared_radius for pose in poses):
                continue
            keypoints, logits = backtrack_decode_pose(
                scores_list, short_list, mid_list, root, adjacency, cfg.offset_refinement_steps
            )
            probabilities = [sigmoid(v) for v in logits]
            instance = sum(probabilities) / NUM_KEYPOINTS
            if instance >= cfg.threshold:
                poses.append(keypoints)
                pose_scores.append(probabilities)
                instance_scores.append(instance)

        order = decreasing_arg_sort(instance_scores)
        rescored = perform_soft_keypoint_nms(order, poses, pose_scores, squared_radius)
        order = decreasing_arg_sort(rescored)

        results = []
        for index in order:
            if rescored[index] < cfg.threshold:
                break
            results.append(
                PoseResult(
                    pose_score=rescored[index],
                    keypoints=[PointF(p.y * STRIDE, p.x * STRIDE) for p in poses[index]],
                    keypoint_scores=list(pose_scores[index]),
                )
            )
        return results

    def translate(self, results: Sequence[PoseResult], scaler_crop: Rectangle) -> List[PoseResult]:
        """Map keypoints from inference image pixels to ISP output co-ordinates."""
        w = np.float32(INPUT_TENSOR_SIZE.width - 1)
        h = np.float32(INPUT_TENSOR_SIZE.height - 1)
        translated = []
        for r in results:
            points = []
            for k in r.keypoints:
                rect = self.mapper.convert([np.float32(k.x) / w, np.float32(k.y) / h, 0, 0], scaler_crop)
                points.append(PointF(rect.y, rect.x))
            translated.append(PoseResult(r.pose_score, points, list(r.keypoint_scores)))
        return translated

    def process(
        self, tensor, scaler_crop: Optional[Rectangle]
    ) -> Tuple[List[List[Point]], List[List[float]]]:
        """Decode one raw output tensor.

        Returns the keypoint locations and confidences of each visible pose.
        """
        if scaler_crop is None:
            raise ValueError("scaler crop is needed to get the sensor dimensions")
        data = np.asarray(tensor, dtype=np.float32).ravel()
        needed = NUM_HEATMAPS + NUM_SHORT_OFFSETS + NUM_MID_OFFSETS
        if data.size < needed:
            raise ValueError(f"Unexpected output tensor size: {data.size}")

        scores = format_tensor(data[:NUM_HEATMAPS], NUM_HEATMAPS // _MAP_CELLS, 1)
        short = format_tensor(
            data[NUM_HEATMAPS:NUM_HEATMAPS + NUM_SHORT_OFFSETS], NUM_SHORT_OFFSETS // _MAP_CELLS, STRIDE
        )
        mid = format_tensor(data[NUM_HEATMAPS + NUM_SHORT_OFFSETS:needed], NUM_MID_OFFSETS // _MAP_CELLS, STRIDE)

        results = self.translate(self.decode_all_poses(scores, short, mid), scaler_crop)
        if self.filter is not None:
            results = self.filter.update(results)

        locations = [[Point(int(k.x), int(k.y)) for k in r.keypoints] for r in results]
        confidences = [list(r.keypoint_scores) for r in results]
        return locations, confidences