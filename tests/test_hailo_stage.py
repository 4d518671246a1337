import threading

import pytest

from framestages.geometry import Rectangle, Size
from framestages.hailo_stage import (
    Allocator,
    MessageQueue,
    Msg,
    MsgType,
    convert_inference_coordinates,
    pack_rgb,
    select_hef,
    swap_rb,
)


def _fields(r):
    return (r.x, r.y, r.width, r.height)


def test_allocator_returns_buffer_of_requested_size():
    alloc = Allocator()
    assert len(alloc.allocate(16)) == 16


def test_allocator_reuses_released_buffer():
    alloc = Allocator()
    first = alloc.allocate(16)
    alloc.release(first)
    assert alloc.allocate(16) is first


def test_allocator_does_not_hand_out_buffer_in_use():
    alloc = Allocator()
    first = alloc.allocate(16)
    second = alloc.allocate(16)
    assert first is not second
    assert len(second) == 16


def test_allocator_does_not_reuse_other_size():
    alloc = Allocator()
    first = alloc.allocate(16)
    alloc.release(first)
    other = alloc.allocate(8)
    assert other is not first
    assert len(other) == 8


def test_allocator_reset_forgets_buffers():
    alloc = Allocator()
    first = alloc.allocate(16)
    alloc.release(first)
    alloc.reset()
    assert alloc.allocate(16) is not first


def test_allocator_rejects_negative_size():
    with pytest.raises(ValueError):
        Allocator().allocate(-1)


def test_queue_is_fifo():
    q = MessageQueue()
    a = Msg(MsgType.DISPLAY, b"a", Size(1, 1), "one")
    b = Msg(MsgType.QUIT)
    q.post(a)
    q.post(b)
    assert q.wait(1) is a
    assert q.wait(1) is b


def test_queue_wait_times_out():
    with pytest.raises(TimeoutError):
        MessageQueue().wait(0.01)


def test_queue_clear_by_title():
    q = MessageQueue()
    q.post(Msg(MsgType.DISPLAY, b"", Size(0, 0), "Pose"))
    keep = Msg(MsgType.DISPLAY, b"", Size(0, 0), "scrfd")
    q.post(keep)
    q.clear("Pose")
    assert len(q) == 1
    assert q.wait(1) is keep


def test_queue_clear_all():
    q = MessageQueue()
    q.post(Msg(MsgType.QUIT))
    q.post(Msg(MsgType.QUIT))
    q.clear()
    assert len(q) == 0


def test_queue_wakes_waiting_thread():
    q = MessageQueue()
    received = []
    t = threading.Thread(target=lambda: received.append(q.wait(5)))
    t.start()
    msg = Msg(MsgType.QUIT)
    q.post(msg)
    t.join(5)
    assert received == [msg]


def test_convert_identity_mapping():
    crop = Rectangle(0, 0, 101, 51)
    r = convert_inference_coordinates([0.0, 0.0, 1.0, 1.0], [crop, crop], Size(101, 51))
    assert _fields(r) == (0, 0, 100, 50)


def test_convert_scales_with_output_size():
    crop = Rectangle(0, 0, 101, 51)
    coords = [0.0, 0.0, 1.0, 1.0]
    base = convert_inference_coordinates(coords, [crop, crop], Size(101, 51))
    doubled = convert_inference_coordinates(coords, [crop, crop], Size(202, 102))
    assert doubled.width == 2 * base.width
    assert doubled.height == 2 * base.height


def test_convert_result_inside_output():
    crop = Rectangle(10, 20, 101, 51)
    r = convert_inference_coordinates([0.2, 0.3, 0.5, 0.4], [crop, crop], Size(101, 51))
    assert r.x >= 0 and r.y >= 0
    assert r.x + r.width <= 101
    assert r.y + r.height <= 51


@pytest.mark.parametrize(
    "coords, crops",
    [
        ([0.0, 0.0, 1.0], [Rectangle(0, 0, 10, 10)] * 2),
        ([0.0, 0.0, 1.0, 1.0], [Rectangle(0, 0, 10, 10)]),
    ],
)
def test_convert_bad_input_gives_empty_rectangle(coords, crops):
    r = convert_inference_coordinates(coords, crops, Size(10, 10))
    assert _fields(r) == (0, 0, 0, 0)


def test_convert_empty_main_crop_raises():
    with pytest.raises(ValueError):
        convert_inference_coordinates(
            [0.0, 0.0, 1.0, 1.0], [Rectangle(0, 0, 0, 0), Rectangle(0, 0, 10, 10)], Size(10, 10)
        )


def test_select_hef_prefers_hailo8_file_on_hailo8():
    assert select_hef(True, "generic.hef", "h8.hef", "h8l.hef") == "h8.hef"


def test_select_hef_uses_8l_file_elsewhere():
    assert select_hef(False, "generic.hef", "h8.hef", "h8l.hef") == "h8l.hef"


def test_select_hef_falls_back_to_generic():
    assert select_hef(True, "generic.hef", "", "") == "generic.hef"


def test_select_hef_without_files_raises():
    with pytest.raises(ValueError):
        select_hef(False, "", "h8.hef", "")


def test_pack_rgb_drops_padding():
    buf = bytes(range(16))
    assert pack_rgb(buf, 2, 2, 8) == bytes([0, 1, 2, 3, 4, 5, 8, 9, 10, 11, 12, 13])


def test_pack_rgb_without_padding_is_identity():
    buf = bytes(range(12))
    assert pack_rgb(buf, 2, 2, 6) == buf


def test_pack_rgb_small_stride_raises():
    with pytest.raises(ValueError):
        pack_rgb(bytes(16), 2, 2, 5)


def test_pack_rgb_small_buffer_raises():
    with pytest.raises(ValueError):
        pack_rgb(bytes(10), 2, 2, 8)


def test_swap_rb_swaps_channels():
    assert swap_rb(bytes([1, 2, 3, 4, 5, 6]), 2, 1) == bytes([3, 2, 1, 6, 5, 4])


def test_swap_rb_twice_is_identity():
    data = bytes(range(24))
    assert swap_rb(swap_rb(data, 4, 2), 4, 2) == data


def test_swap_rb_small_image_raises():
    with pytest.raises(ValueError):
        swap_rb(bytes(5), 2, 1)