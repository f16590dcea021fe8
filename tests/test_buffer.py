"""Tests for buffered-range analysis and heal-point search."""

import pytest

from streamheal.core.buffer import (
    BufferRange,
    HealPoint,
    buffer_ahead,
    calculate_safe_target,
    find_heal_point,
    get_ranges,
    is_buffer_exhausted,
    validate_seek_target,
)


def ranges(*pairs):
    return [BufferRange(s, e) for s, e in pairs]


class TestFindHealPoint:
    def test_nudge_inside_current_range(self):
        point = find_heal_point(ranges((0, 30)), 10.0, 0.5)
        assert point.is_nudge is True
        assert point.start == pytest.approx(10.5)
        assert point.end == 30
        assert point.headroom == pytest.approx(19.5)
        assert point.gap_size == pytest.approx(0.5)
        assert point.range_index == 0

    def test_nudge_into_range_starting_just_ahead(self):
        point = find_heal_point(ranges((0, 10), (10.3, 20)), 10.0, 0.5)
        assert point.is_nudge is True
        assert point.range_index == 1
        assert point.start == pytest.approx(10.5)

    def test_gap_jump_to_later_range(self):
        point = find_heal_point(ranges((0, 10.2), (12, 20)), 10.0, 0.5)
        assert point.is_nudge is False
        assert point.start == 12
        assert point.end == 20
        assert point.gap_size == pytest.approx(2.0)
        assert point.headroom == pytest.approx(8.0)
        assert point.range_index == 1

    def test_nudge_preferred_over_gap(self):
        point = find_heal_point(ranges((0, 15), (20, 40)), 10.0, 0.5)
        assert point.is_nudge is True
        assert point.range_index == 0

    def test_nudge_across_adjacent_range_beats_gap(self):
        point = find_heal_point(ranges((0, 5), (5.2, 12)), 4.9, 1.0)
        assert point.is_nudge is True
        assert point.range_index == 1
        assert point.start == pytest.approx(5.4)

    def test_none_when_parked_at_range_end(self):
        assert find_heal_point(ranges((0, 10.2)), 10.0, 0.5) is None

    def test_later_range_too_small(self):
        assert find_heal_point(ranges((0, 10.1), (12, 12.3)), 10.0, 0.5) is None

    def test_empty_ranges(self):
        assert find_heal_point([], 10.0) is None

    def test_key_identifies_range(self):
        point = find_heal_point(ranges((0, 30)), 10.0, 0.5)
        assert point.key == "10.50-30.00"


class TestExhaustion:
    def test_plenty_of_buffer(self, make_handle):
        assert is_buffer_exhausted(make_handle(current_time=10.0)) is False

    def test_near_range_end(self, make_handle):
        assert is_buffer_exhausted(make_handle(current_time=29.8)) is True

    def test_no_buffer(self, make_handle):
        assert is_buffer_exhausted(make_handle(buffered=[])) is True

    def test_playhead_in_gap(self, make_handle):
        assert is_buffer_exhausted(make_handle(current_time=35.0)) is True

    def test_buffer_ahead(self, make_handle):
        info = buffer_ahead(make_handle(current_time=10.0))
        assert info.has_buffer is True
        assert info.buffer_ahead == pytest.approx(20.0)
        assert info.range_start == 0

    def test_buffer_ahead_in_gap(self, make_handle):
        info = buffer_ahead(make_handle(current_time=35.0))
        assert info.has_buffer is True
        assert info.buffer_ahead is None


class TestSeekTargets:
    def test_large_window_entered_by_half_second(self):
        point = HealPoint(10.5, 30.0, 0.5, 19.5, True, 0)
        assert calculate_safe_target(point, 0.35) == pytest.approx(11.0)

    def test_small_window_uses_midpoint(self):
        point = HealPoint(12.0, 12.8, 2.0, 0.8, False, 1)
        assert calculate_safe_target(point, 0.35) == pytest.approx(12.4)

    def test_validate_inside_buffer(self, make_handle):
        result = validate_seek_target(make_handle(), 11.0)
        assert result.valid is True
        assert result.headroom == pytest.approx(19.0)
        assert result.buffer_range == BufferRange(0.0, 30.0)

    def test_validate_outside_buffer(self, make_handle):
        result = validate_seek_target(make_handle(), 31.0)
        assert result.valid is False
        assert result.reason == "target_not_in_buffer"

    def test_validate_without_buffer(self, make_handle):
        result = validate_seek_target(make_handle(buffered=[]), 11.0)
        assert result.valid is False
        assert result.reason == "no_buffer"

    def test_validate_at_range_end(self, make_handle):
        result = validate_seek_target(make_handle(), 30.0)
        assert result.valid is False


class TestGetRanges:
    def test_reads_tuples(self, make_handle):
        assert get_ranges(make_handle(buffered=[(0, 5), (8, 9)])) == ranges((0, 5), (8, 9))

    def test_malformed_ranges_are_empty(self, make_handle):
        assert get_ranges(make_handle(buffered=[(1,)])) == []
