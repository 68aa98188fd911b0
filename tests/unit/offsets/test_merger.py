import pytest

from cubestream.errors import ConsistencyError
from cubestream.offsets.merger import merge_segment_offsets
from cubestream.offsets.types import SegmentOffsets


def seg(**ranges: tuple[int, int]) -> SegmentOffsets:
    starts = {int(p[1:]): r[0] for p, r in ranges.items()}
    ends = {int(p[1:]): r[1] for p, r in ranges.items()}
    return SegmentOffsets.from_bounds(starts, ends)


def test_merge_contiguous_segments():
    merged = merge_segment_offsets([seg(p0=(0, 100)), seg(p0=(100, 250))])
    assert merged.to_json() == "[[0,0,250]]"


def test_merge_is_order_independent():
    a = seg(p0=(0, 100), p1=(0, 40))
    b = seg(p0=(100, 250), p1=(40, 41))
    c = seg(p0=(250, 250), p1=(41, 90))
    expected = seg(p0=(0, 250), p1=(0, 90))
    assert merge_segment_offsets([a, b, c]) == expected
    assert merge_segment_offsets([c, a, b]) == expected


def test_merge_rejects_gap():
    with pytest.raises(ConsistencyError, match="gap"):
        merge_segment_offsets([seg(p0=(0, 100)), seg(p0=(150, 200))])


def test_merge_rejects_overlap():
    with pytest.raises(ConsistencyError, match="overlap"):
        merge_segment_offsets([seg(p0=(0, 100)), seg(p0=(90, 200))])


def test_merge_single_segment_is_identity():
    only = seg(p0=(5, 9), p3=(0, 2))
    assert merge_segment_offsets([only]) == only


def test_merge_nothing_raises():
    with pytest.raises(ConsistencyError):
        merge_segment_offsets([])


def test_merge_partition_only_in_later_segment():
    merged = merge_segment_offsets([seg(p0=(0, 10)), seg(p0=(10, 20), p1=(0, 5))])
    assert merged == seg(p0=(0, 20), p1=(0, 5))
