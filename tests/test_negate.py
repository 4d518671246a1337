import pytest

from framestages.negate import negate


def test_zero_word_becomes_all_ones():
    assert negate(bytes(4)) == b"\xff" * 4


def test_round_trip():
    data = bytes(range(256))
    assert negate(negate(data)) == data


def test_each_byte_complemented():
    data = bytes(range(0, 256, 3))[:80]
    out = negate(data)
    assert len(out) == len(data)
    assert all(a + b == 255 for a, b in zip(data, out))


def test_accepts_bytearray():
    assert negate(bytearray(b"\xff\x00\xff\x00")) == b"\x00\xff\x00\xff"


def test_rejects_unaligned_length():
    with pytest.raises(ValueError):
        negate(b"abc")