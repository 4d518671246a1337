import pytest

from framestages.classify import (
    ClassifyConfig,
    ObjectClassifier,
    format_annotation,
    read_labels,
)

LABELS = ["0:zero", "1:one, uno", "2:two", "3:three"]


def test_config_defaults():
    cfg = ClassifyConfig.from_dict({})
    assert cfg.number_of_results == 3
    assert cfg.threshold_high == pytest.approx(0.2)
    assert cfg.threshold_low == pytest.approx(0.1)
    assert cfg.display_labels is True
    assert cfg.labels_file == "/home/pi/models/labels.txt"


def test_config_from_dict_values():
    cfg = ClassifyConfig.from_dict({"number_of_results": 5, "display_labels": 0})
    assert cfg.number_of_results == 5
    assert cfg.display_labels is False


def test_read_labels(tmp_path):
    path = tmp_path / "labels.txt"
    path.write_text("a\nb\nc\n")
    assert read_labels(path) == ["a", "b", "c"]


def test_read_labels_missing_file(tmp_path):
    with pytest.raises(OSError):
        read_labels(tmp_path / "missing.txt")


def test_top_results_ordered_descending():
    clf = ObjectClassifier(ClassifyConfig(), LABELS)
    top = clf.top_results([10, 200, 100, 250])
    assert [i for _, i in top] == [3, 1, 2]
    assert top[0][0] == pytest.approx(250 / 255)


def test_top_results_limited_by_number():
    clf = ObjectClassifier(ClassifyConfig(number_of_results=2), LABELS)
    assert [i for _, i in clf.top_results([10, 200, 100, 250])] == [3, 1]


def test_hysteresis_keeps_previous_class():
    clf = ObjectClassifier(ClassifyConfig(), LABELS)
    clf.top_results([0, 128, 0, 0])
    assert [i for _, i in clf.top_results([0, 39, 0, 0])] == [1]


def test_middle_value_dropped_without_history():
    clf = ObjectClassifier(ClassifyConfig(), LABELS)
    assert clf.top_results([0, 39, 0, 0]) == []


def test_below_low_threshold_dropped_even_with_history():
    clf = ObjectClassifier(ClassifyConfig(), LABELS)
    clf.top_results([0, 128, 0, 0])
    assert clf.top_results([0, 20, 0, 0]) == []


def test_interpret_maps_labels():
    clf = ObjectClassifier(ClassifyConfig(), LABELS)
    results = clf.interpret([0, 255, 0, 128])
    assert [label for label, _ in results] == [LABELS[1], LABELS[3]]
    assert results[0][1] == pytest.approx(1.0)


def test_interpret_label_count_mismatch():
    clf = ObjectClassifier(ClassifyConfig(), LABELS)
    with pytest.raises(ValueError):
        clf.interpret([1, 2, 3])


def test_annotation_from_results():
    clf = ObjectClassifier(ClassifyConfig(), LABELS)
    clf.interpret([0, 255, 0, 0])
    assert clf.annotation() == "Detected: one 1"


def test_annotation_disabled():
    clf = ObjectClassifier(ClassifyConfig(display_labels=False), LABELS)
    clf.interpret([0, 255, 0, 0])
    assert clf.annotation() is None


def test_format_annotation_extracts_short_labels():
    text = format_annotation([("0:tench, Tinca", 0.5), ("goldfish", 0.25)])
    assert text == "Detected: tench 0.5, goldfish 0.25"


def test_format_annotation_empty():
    assert format_annotation([]) == "Detected: "