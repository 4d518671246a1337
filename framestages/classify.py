"""Top-N object classification results with hysteresis on the confidence threshold."""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

log = logging.getLogger(__name__)

DEFAULT_LABELS_FILE = "/home/pi/models/labels.txt"


def _f32(value: float) -> float:
    return float(np.float32(value))


@dataclass
class ClassifyConfig:
    """Classifier settings."""

    number_of_results: int = 3
    threshold_high: float = 0.2
    threshold_low: float = 0.1
    display_labels: bool = True
    labels_file: str = DEFAULT_LABELS_FILE

    @classmethod
    def from_dict(cls, params: Mapping[str, Any]) -> "ClassifyConfig":
        return cls(
            number_of_results=int(params.get("number_of_results", 3)),
            threshold_high=float(params.get("threshold_high", 0.2)),
            threshold_low=float(params.get("threshold_low", 0.1)),
            display_labels=bool(int(params.get("display_labels", 1))),
            labels_file=str(params.get("labels_file", DEFAULT_LABELS_FILE)),
        )


def read_labels(path) -> List[str]:
    """Read one label per line from a labels file."""
    with open(path, encoding="utf-8") as f:
        lines = f.read().split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def _short_label(label: str) -> str:
    start = label.find(":") + 1
    end = label.find(",")
    if end < start:
        return label[start:]
    return label[start:end]


def format_annotation(results: Iterable[Tuple[str, float]]) -> str:
    """Build the "Detected: ..." annotation text from (label, confidence) pairs."""
    parts = [f"{_short_label(label)} {confidence:.2g}" for label, confidence in results]
    return "Detected: " + ", ".join(parts)


class ObjectClassifier:
    """Keeps the most likely classes across frames."""

    def __init__(self, config: ClassifyConfig, labels: Sequence[str]):
        self.config = config
        self.labels = list(labels)
        self._top: List[Tuple[float, int]] = []
        self.results: List[Tuple[str, float]] = []

    def top_results(self, prediction: Iterable[int]) -> List[Tuple[float, int]]:
        """Return (confidence, index) pairs of the best classes, most likely first.

        Classes between the low and high thresholds are kept only if they were
        among the previous results.
        """
        previous = {index for _, index in self._top}
        low = _f32(self.config.threshold_low)
        high = _f32(self.config.threshold_high)
        n = self.config.number_of_results
        heap: List[Tuple[float, int]] = []
        for index, value in enumerate(prediction):
            confidence = _f32(int(value) / 255.0)
            if confidence < low:
                continue
            if confidence >= high or index in previous:
                heapq.heappush(heap, (confidence, index))
                if n >= 0 and len(heap) > n:
                    heapq.heappop(heap)
        self._top = sorted(heap, reverse=True)
        return list(self._top)

    def interpret(self, prediction: Iterable[int]) -> List[Tuple[str, float]]:
        """Turn a uint8 prediction vector into (label, confidence) results."""
        prediction = list(prediction)
        if len(prediction) != len(self.labels):
            raise ValueError("label count mismatch")
        top = self.top_results(prediction)
        self.results = [(self.labels[index], confidence) for confidence, index in top]
        for label, confidence in self.results:
            log.debug("%s : %f", label, confidence)
        return list(self.results)

    def annotation(self) -> Optional[str]:
        """Annotation text for the latest results, or None if labels are not displayed."""
        if not self.config.display_labels:
            return None
        return format_annotation(self.results)