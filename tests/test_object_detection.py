import pytest

from framestages.geometry import Rectangle, Size
from framestages.imx500_stage import FULL_SENSOR_RESOLUTION, InferenceMapper
from framestages.object_detection import (
    Detection,
    ObjectDetector,
    TemporalFilter,
    TemporalFilterConfig,
    parse_detection_tensor,
)

CLASSES = ["person", "bicycle", "car"]
OUTPUT = Size(1000, 1000)


def _tensor(boxes, scores, classes, num):
    y0 = [b[1] for b in boxes]
    x0 = [b[0] for b in boxes]
    y1 = [b[3] for b in boxes]
    x1 = [b[2] for b in boxes]
    return y0 + x0 + y1 + x1 + list(scores) + list(classes) + [num]


def _mapper():
    size = FULL_SENSOR_RESOLUTION.size()
    return InferenceMapper(size, size)


def test_parse_tensor_layout():
    boxes = [(0.25, 0.5, 0.75, 1.0), (0.125, 0.25, 0.5, 0.625)]
    data = _tensor(boxes, [0.5, 0.75], [1.0, 2.0], 2)
    out = parse_detection_tensor(data, 2)
    assert out.bboxes == boxes
    assert out.scores == [0.5, 0.75]
    assert out.classes == [1.0, 2.0]
    assert out.num_detections == 2


def test_parse_tensor_clamps_count():
    data = _tensor([(0, 0, 0.5, 0.5)], [0.5], [0.0], 7)
    assert parse_detection_tensor(data, 1).num_detections == 1


def test_parse_tensor_too_short():
    with pytest.raises(ValueError):
        parse_detection_tensor([0.0] * 6, 1)


def test_temporal_config_defaults():
    cfg = TemporalFilterConfig.from_dict({})
    assert cfg == TemporalFilterConfig(0.05, 0.2, 5, 2)


def test_detect_maps_boxes():
    detector = ObjectDetector(CLASSES, 10, 0.5, _mapper())
    data = _tensor([(0.0, 0.0, 1.0, 1.0)], [0.875], [1.0], 1)
    result = detector.detect(data, 4, 4, FULL_SENSOR_RESOLUTION)
    expected_box = _mapper().convert([0.0, 0.0, 1.0, 1.0], FULL_SENSOR_RESOLUTION)
    assert len(result) == 1
    assert result[0].category == 1
    assert result[0].name == CLASSES[1]
    assert result[0].confidence == pytest.approx(0.875)
    assert result[0].box == expected_box


def test_detect_filters_threshold_and_unknown_classes():
    detector = ObjectDetector(CLASSES, 10, 0.5, _mapper())
    boxes = [(0.0, 0.0, 0.5, 0.5)] * 3
    data = _tensor(boxes, [0.25, 0.75, 0.75], [0.0, 2.0, 9.0], 3)
    result = detector.detect(data, 4, 12, FULL_SENSOR_RESOLUTION)
    assert [d.name for d in result] == [CLASSES[2]]


def test_detect_respects_max_detections():
    detector = ObjectDetector(CLASSES, 2, 0.5, _mapper())
    boxes = [(0.0, 0.0, 0.5, 0.5)] * 3
    data = _tensor(boxes, [0.75] * 3, [0.0, 1.0, 2.0], 3)
    result = detector.detect(data, 4, 12, FULL_SENSOR_RESOLUTION)
    assert [d.category for d in result] == [0, 1]


def test_detect_rejects_wrong_tensor_count():
    detector = ObjectDetector(CLASSES, 10, 0.5, _mapper())
    data = _tensor([(0, 0, 1, 1)], [0.75], [0.0], 1)
    with pytest.raises(ValueError):
        detector.detect(data, 3, 4, FULL_SENSOR_RESOLUTION)


def test_detect_rejects_wrong_size():
    detector = ObjectDetector(CLASSES, 10, 0.5, _mapper())
    data = _tensor([(0, 0, 1, 1)], [0.75], [0.0], 1)
    with pytest.raises(ValueError):
        detector.detect(data, 4, 8, FULL_SENSOR_RESOLUTION)


def _det(x=100, y=100, category=0):
    return Detection(category, CLASSES[category], 0.9, Rectangle(x, y, 50, 50))


def test_first_objects_shown_at_once_when_empty():
    filt = TemporalFilter(TemporalFilterConfig(), OUTPUT)
    visible = filt.update([_det()])
    assert visible == [_det()]


def test_new_objects_hidden_without_reveal():
    cfg = TemporalFilterConfig()
    filt = TemporalFilter(cfg, OUTPUT, reveal_when_empty=False)
    for _ in range(cfg.hidden_frames):
        assert filt.update([_det()]) == []
    assert filt.update([_det()]) == [_det()]


def test_object_persists_then_disappears():
    cfg = TemporalFilterConfig()
    filt = TemporalFilter(cfg, OUTPUT)
    filt.update([_det()])
    for _ in range(cfg.visible_frames - 1):
        assert len(filt.update([])) == 1
    assert filt.update([]) == []
    assert filt.visible() == []


def test_hidden_object_dropped_when_lost():
    filt = TemporalFilter(TemporalFilterConfig(), OUTPUT, reveal_when_empty=False)
    filt.update([_det()])
    assert filt.update([]) == []
    # It starts hidden again rather than continuing its countdown.
    assert filt.update([_det()]) == []


def test_matched_object_is_smoothed():
    filt = TemporalFilter(TemporalFilterConfig(), OUTPUT)
    filt.update([_det(x=100)])
    visible = filt.update([_det(x=110)])
    assert len(visible) == 1
    assert 100 <= visible[0].box.x <= 110


def test_distant_or_other_class_objects_not_matched():
    filt = TemporalFilter(TemporalFilterConfig(), OUTPUT)
    filt.update([_det(x=100)])
    filt.update([_det(x=100), _det(x=600), _det(x=100, category=1)])
    visible = filt.visible()
    assert [d.box.x for d in visible] == [100]
    assert visible[0].category == 0