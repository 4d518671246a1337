"""Pose decoding helpers for a PoseNet style network.

The network produces, on a MAP_SIZE grid, a heatmap per keypoint, short-range
offsets refining each keypoint position and mid-range offsets leading from a
keypoint to its neighbours in the pose graph.
"""

from __future__ import annotations

import heapq
import itertools
import math
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Sequence, Tuple

import numpy as np

from framestages.geometry import Size

INPUT_TENSOR_SIZE = Size(481, 353)
MAP_SIZE = Size(31, 23)
NUM_KEYPOINTS = 17
NUM_EDGES = 16
STRIDE = 16
NUM_HEATMAPS = NUM_KEYPOINTS * MAP_SIZE.width * MAP_SIZE.height
NUM_SHORT_OFFSETS = 2 * NUM_KEYPOINTS * MAP_SIZE.width * MAP_SIZE.height
NUM_MID_OFFSETS = 64 * MAP_SIZE.width * MAP_SIZE.height


class KeypointType(IntEnum):
    NOSE = 0
    LEFT_EYE = 1
    RIGHT_EYE = 2
    LEFT_EAR = 3
    RIGHT_EAR = 4
    LEFT_SHOULDER = 5
    RIGHT_SHOULDER = 6
    LEFT_ELBOW = 7
    RIGHT_ELBOW = 8
    LEFT_WRIST = 9
    RIGHT_WRIST = 10
    LEFT_HIP = 11
    RIGHT_HIP = 12
    LEFT_KNEE = 13
    RIGHT_KNEE = 14
    LEFT_ANKLE = 15
    RIGHT_ANKLE = 16


_K = KeypointType
_FORWARD_EDGES = [
    (_K.NOSE, _K.LEFT_EYE),
    (_K.LEFT_EYE, _K.LEFT_EAR),
    (_K.NOSE, _K.RIGHT_EYE),
    (_K.RIGHT_EYE, _K.RIGHT_EAR),
    (_K.NOSE, _K.LEFT_SHOULDER),
    (_K.LEFT_SHOULDER, _K.LEFT_ELBOW),
    (_K.LEFT_ELBOW, _K.LEFT_WRIST),
    (_K.LEFT_SHOULDER, _K.LEFT_HIP),
    (_K.LEFT_HIP, _K.LEFT_KNEE),
    (_K.LEFT_KNEE, _K.LEFT_ANKLE),
    (_K.NOSE, _K.RIGHT_SHOULDER),
    (_K.RIGHT_SHOULDER, _K.RIGHT_ELBOW),
    (_K.RIGHT_ELBOW, _K.RIGHT_WRIST),
    (_K.RIGHT_SHOULDER, _K.RIGHT_HIP),
    (_K.RIGHT_HIP, _K.RIGHT_KNEE),
    (_K.RIGHT_KNEE, _K.RIGHT_ANKLE),
]
# Forward edges first, then the same edges reversed.
EDGE_LIST: List[Tuple[KeypointType, KeypointType]] = _FORWARD_EDGES + [(b, a) for a, b in _FORWARD_EDGES]


@dataclass(frozen=True)
class PointF:
    """A point in map (or pixel) co-ordinates."""

    y: float
    x: float


@dataclass(frozen=True)
class KeypointWithScore:
    """A keypoint position, its type id and its score."""

    point: PointF
    id: int
    score: float


def sigmoid(x: float) -> float:
    """Logistic function."""
    x = float(x)
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    e = math.exp(x)
    return e / (1.0 + e)


def log_odds(x: float) -> float:
    """Inverse of the logistic function, with a small guard against x == 0."""
    return -math.log(1.0 / (float(x) + 1e-6) - 1.0)


def squared_distance(a: PointF, b: PointF) -> float:
    """Squared distance between two points."""
    dy = b.y - a.y
    dx = b.x - a.x
    return dy * dy + dx * dx


def format_tensor(data, size: int, div: float) -> np.ndarray:
    """Reorder ``size`` planes of (width, height) values into a flat (height, width, size) tensor.

    Every value is divided by ``div``.
    """
    w, h = MAP_SIZE.width, MAP_SIZE.height
    count = size * w * h
    arr = np.asarray(data, dtype=np.float32).ravel()
    if arr.size < count:
        raise ValueError(f"tensor holds {arr.size} values, needs {count}")
    planes = arr[:count].reshape(size, w, h)
    return (planes.transpose(2, 1, 0).ravel() / np.float32(div)).astype(np.float32)


def build_adjacency_list() -> List[List[Tuple[int, int]]]:
    """For each keypoint, the (child id, edge id) pairs of edges leaving it."""
    adjacency: List[List[Tuple[int, int]]] = [[] for _ in range(NUM_KEYPOINTS)]
    for edge_id, (parent, child) in enumerate(EDGE_LIST):
        adjacency[int(parent)].append((int(child), edge_id))
    return adjacency


def decreasing_arg_sort(scores: Sequence[float]) -> List[int]:
    """Indices of ``scores`` in order of decreasing score."""
    scores = list(scores)
    return sorted(range(len(scores)), key=lambda i: -scores[i])


def build_linear_interpolation(x: float, n: int) -> Tuple[int, int, float]:
    """Floor, ceiling and weight for interpolating at ``x`` over ``n`` samples.

    The floor and ceiling are clamped to the samples; the weight is taken from
    the unclamped ``x``.
    """
    x = float(x)
    x_proj = min(max(x, 0.0), n - 1.0)
    x_floor = int(math.floor(x_proj))
    x_ceil = int(math.ceil(x_proj))
    return x_floor, x_ceil, x - x_floor


def sample_tensor(tensor, point: PointF, channels: Sequence[int], num_channels: int) -> List[float]:
    """Bilinearly sample a (height, width, num_channels) tensor at ``point`` for each channel."""
    y_floor, y_ceil, y_lerp = build_linear_interpolation(point.y, MAP_SIZE.height)
    x_floor, x_ceil, x_lerp = build_linear_interpolation(point.x, MAP_SIZE.width)
    w = MAP_SIZE.width
    top_left = (y_floor * w + x_floor) * num_channels
    top_right = (y_floor * w + x_ceil) * num_channels
    bottom_left = (y_ceil * w + x_floor) * num_channels
    bottom_right = (y_ceil * w + x_ceil) * num_channels
    result = []
    for c in channels:
        top = (1 - x_lerp) * float(tensor[top_left + c]) + x_lerp * float(tensor[top_right + c])
        bottom = (1 - x_lerp) * float(tensor[bottom_left + c]) + x_lerp * float(tensor[bottom_right + c])
        result.append((1 - y_lerp) * top + y_lerp * bottom)
    return result


def build_keypoint_queue(scores, short_offsets, score_threshold: float) -> List[KeypointWithScore]:
    """Local maxima of the heatmaps above the threshold, highest score first.

    Positions are refined by the short-range offsets and clamped to the map.
    """
    h, w, k = MAP_SIZE.height, MAP_SIZE.width, NUM_KEYPOINTS
    flat = np.asarray(scores, dtype=np.float32).ravel()
    if flat.size < h * w * k:
        raise ValueError(f"scores hold {flat.size} values, need {h * w * k}")
    offsets = np.asarray(short_offsets, dtype=np.float32).ravel()
    if offsets.size < 2 * h * w * k:
        raise ValueError(f"short offsets hold {offsets.size} values, need {2 * h * w * k}")
    s = flat[: h * w * k].reshape(h, w, k)

    padded = np.full((h + 2, w + 2, k), -np.inf, dtype=np.float32)
    padded[1:-1, 1:-1] = s
    neighbourhood = np.max(
        np.stack([padded[dy:dy + h, dx:dx + w] for dy in range(3) for dx in range(3)]), axis=0
    )
    candidates = (s >= score_threshold) & (s >= neighbourhood)

    queue = []
    for y, x, j in np.argwhere(candidates):
        y, x, j = int(y), int(x), int(j)
        offset_index = 2 * (y * w + x) * k + j
        dy = float(offsets[offset_index])
        dx = float(offsets[offset_index + k])
        y_refined = min(max(y + dy, 0.0), h - 1.0)
        x_refined = min(max(x + dx, 0.0), w - 1.0)
        queue.append(KeypointWithScore(PointF(y_refined, x_refined), j, float(s[y, x, j])))
    queue.sort(key=lambda kp: -kp.score)
    return queue


def find_displaced_position(
    short_offsets, mid_offsets, source: PointF, edge_id: int, target_id: int, steps: int
) -> PointF:
    """Follow the mid-range offsets along an edge, then refine with short-range offsets."""
    h_max = MAP_SIZE.height - 1.0
    w_max = MAP_SIZE.width - 1.0
    dy, dx = sample_tensor(mid_offsets, source, [edge_id, NUM_EDGES + edge_id], 2 * 2 * NUM_EDGES)
    y = min(max(source.y + dy, 0.0), h_max)
    x = min(max(source.x + dx, 0.0), w_max)
    channels = [target_id, NUM_KEYPOINTS + target_id]
    for _ in range(steps):
        dy, dx = sample_tensor(short_offsets, PointF(y, x), channels, 2 * NUM_KEYPOINTS)
        y = min(max(y + dy, 0.0), h_max)
        x = min(max(x + dx, 0.0), w_max)
    return PointF(y, x)


def backtrack_decode_pose(
    scores, short_offsets, mid_offsets, root: KeypointWithScore, adjacency, steps: int
) -> Tuple[List[PointF], List[float]]:
    """Decode a whole pose starting from a root keypoint.

    Returns the keypoint positions and their (log-odds) scores; keypoints that
    cannot be reached keep position (-1, -1) and score -1e5.
    """
    keypoints = [PointF(-1.0, -1.0)] * NUM_KEYPOINTS
    keypoint_scores = [-1e5] * NUM_KEYPOINTS

    root_score = sample_tensor(scores, root.point, [NUM_KEYPOINTS], root.id)[0]
    counter = itertools.count()
    heap = [(-root_score, next(counter), KeypointWithScore(root.point, root.id, root_score))]
    decoded = [False] * NUM_KEYPOINTS

    while heap:
        _, _, current = heapq.heappop(heap)
        if decoded[current.id]:
            continue
        keypoints[current.id] = current.point
        keypoint_scores[current.id] = current.score
        decoded[current.id] = True

        for child_id, edge_id in adjacency[current.id]:
            if decoded[child_id]:
                continue
            # Mid offsets are laid out as [fwd y][fwd x][bwd y][bwd x] blocks.
            if edge_id > NUM_EDGES:
                edge_id += NUM_EDGES
            child_point = find_displaced_position(
                short_offsets, mid_offsets, current.point, edge_id, child_id, steps
            )
            child_score = sample_tensor(scores, child_point, [child_id], NUM_KEYPOINTS)[0]
            heapq.heappush(
                heap, (-child_score, next(counter), KeypointWithScore(child_point, child_id, child_score))
            )

    return keypoints, keypoint_scores


def perform_soft_keypoint_nms(
    decreasing_indices: Sequence[int],
    all_keypoints: Sequence[Sequence[PointF]],
    all_scores: Sequence[Sequence[float]],
    squared_nms_radius: float,
) -> List[float]:
    """Rescore instances, ignoring keypoints that overlap higher-scoring instances.

    Returns one score per instance, indexed as the instances are.
    """
    num_instances = len(decreasing_indices)
    instance_scores = [0.0] * num_instances
    for i, current in enumerate(decreasing_indices):
        occluded = [False] * NUM_KEYPOINTS
        for previous in decreasing_indices[:i]:
            for k in range(NUM_KEYPOINTS):
                if squared_distance(all_keypoints[current][k], all_keypoints[previous][k]) <= squared_nms_radius:
                    occluded[k] = True
        current_scores = list(all_scores[current])[:NUM_KEYPOINTS]
        total = sum(current_scores[k] for k in decreasing_arg_sort(current_scores) if not occluded[k])
        instance_scores[current] = total / NUM_KEYPOINTS
    return instance_scores