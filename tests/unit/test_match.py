"""
Unit tests for cross-side via matching and boundary fusion (via.match, via.fusion)
"""

import itertools
import os
import sys

import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.geometry import Point2D, circle_points
from common.types import Side, Via
from via.fusion import (
    FusionParams,
    confirm_via,
    find_confirmed_at,
    fuse_boundaries,
    fused_confidence,
    refine_confirmed_via,
)
from via.match import (
    average_matched_center,
    boost_matched_confidence,
    confirmed_for,
    filter_unmatched,
    match_vias_across_sides,
    separate_by_side,
    unmatched_vias,
    validate_alignment_with_vias,
)


def _via(vid, x, y, side, r=5.0, conf=0.8, boundary=None):
    return Via(id=vid, center=Point2D(x, y), radius=r, side=side, confidence=conf, pad_boundary=boundary)


def _clustered_scene(seed, clusters=3, per_cluster=2, tolerance=10.0):
    """Clusters far apart (> 2x tolerance); back = front + small jitter, shuffled."""
    rng = np.random.default_rng(seed)
    front, back = [], []
    for c in range(clusters):
        base = np.array([100.0 + 200.0 * c, 100.0])
        for k in range(per_cluster):
            p = base + np.array([14.0 * k, rng.uniform(-2, 2)])
            q = p + rng.uniform(-3, 3, size=2)
            front.append(_via(f"f{len(front)}", p[0], p[1], Side.FRONT))
            back.append(_via(f"b{len(back)}", q[0], q[1], Side.BACK))
    order = rng.permutation(len(back))
    return front, [back[i] for i in order], tolerance


def _brute_force(front, back, tolerance):
    """Max-cardinality, then min-weight assignment over all permutations."""
    best = None
    for perm in itertools.permutations(range(len(back))):
        pairs = []
        for i, j in enumerate(perm):
            d = front[i].center.distance_to(back[j].center)
            if d <= tolerance:
                pairs.append((i, j, d))
        key = (-len(pairs), sum(d for _, _, d in pairs))
        if best is None or key < best[0]:
            best = (key, {(front[i].id, back[j].id) for i, j, _ in pairs})
    return best[1]


class TestMatching:
    """Greedy nearest-first matching"""

    def test_references_are_symmetric(self):
        """Matched vias point at each other and nothing is matched twice"""
        front, back, tol = _clustered_scene(seed=1, clusters=4, per_cluster=3)
        result = match_vias_across_sides(front, back, tol, workers=3)

        assert result.matched == len(front)
        front_by_id = {v.id: v for v in result.front_vias}
        back_by_id = {v.id: v for v in result.back_vias}
        for f in result.front_vias:
            assert f.both_sides_confirmed
            assert back_by_id[f.matched_via_id].matched_via_id == f.id
        for b in result.back_vias:
            assert front_by_id[b.matched_via_id].matched_via_id == b.id
        pairs = result.pairs()
        assert len({f for f, _ in pairs}) == len(pairs)
        assert len({b for _, b in pairs}) == len(pairs)

    def test_inputs_are_not_modified(self):
        """The result carries copies; the caller's vias keep their state"""
        front, back, tol = _clustered_scene(seed=2)
        match_vias_across_sides(front, back, tol)
        assert all(v.matched_via_id is None and not v.both_sides_confirmed for v in front + back)

    @pytest.mark.parametrize("seed", range(5))
    def test_greedy_equals_exact_assignment(self, seed):
        """On well-separated clusters greedy matching equals the optimal assignment"""
        front, back, tol = _clustered_scene(seed=seed)
        result = match_vias_across_sides(front, back, tol)
        assert set(result.pairs()) == _brute_force(front, back, tol)

    def test_rematch_against_fewer_vias_clears_stale_partners(self):
        """A second run only references vias of its own lists"""
        front = [_via("f1", 0, 0, Side.FRONT), _via("f2", 100, 0, Side.FRONT)]
        b1 = _via("b1", 1, 0, Side.BACK)
        first = match_vias_across_sides(front, [b1, _via("b2", 101, 0, Side.BACK)], 5.0)
        assert first.matched == 2

        second = match_vias_across_sides(first.front_vias, [b1], 5.0)
        by_id = {v.id: v for v in second.front_vias}
        assert by_id["f1"].matched_via_id == "b1"
        assert by_id["f2"].matched_via_id is None
        assert not by_id["f2"].both_sides_confirmed
        assert second.unmatched == 1
        assert [v.id for v in filter_unmatched(second.front_vias)] == ["f1"]
        assert validate_alignment_with_vias(second.front_vias, second.back_vias) == pytest.approx(1.0)

    def test_statistics(self):
        """Average and maximum pair distance, unmatched count"""
        front = [_via("f1", 0, 0, Side.FRONT), _via("f2", 100, 0, Side.FRONT), _via("f3", 300, 0, Side.FRONT)]
        back = [_via("b1", 3, 4, Side.BACK), _via("b2", 101, 0, Side.BACK)]
        result = match_vias_across_sides(front, back, 9.0)
        assert result.matched == 2
        assert result.unmatched == 1
        assert result.avg_error == pytest.approx(3.0)
        assert result.max_error == pytest.approx(5.0)
        assert [v.id for v in unmatched_vias(result.front_vias)] == ["f3"]
        assert len(filter_unmatched(result.front_vias)) == 2

    def test_empty_side(self):
        """Nothing on one side leaves everything unmatched"""
        front = [_via("f1", 0, 0, Side.FRONT)]
        result = match_vias_across_sides(front, [], 10.0)
        assert result.matched == 0
        assert result.unmatched == 1
        assert result.confirmed == []

    def test_confirmed_lookup_map(self):
        """Every matched via maps to its ConfirmedVia"""
        front = [_via("f1", 10, 10, Side.FRONT)]
        back = [_via("b1", 11, 10, Side.BACK)]
        result = match_vias_across_sides(front, back, 5.0)
        cv = confirmed_for(result, "f1")
        assert cv is not None
        assert cv.id == "cvia-001"
        assert confirmed_for(result, "b1") is cv
        assert confirmed_for(result, "missing") is None

    def test_rms_and_boost(self):
        """RMS over matched pairs and confidence boost for confirmed vias"""
        front = [_via("f1", 0, 0, Side.FRONT, conf=0.5)]
        back = [_via("b1", 3, 4, Side.BACK)]
        result = match_vias_across_sides(front, back, 10.0)
        assert validate_alignment_with_vias(result.front_vias, result.back_vias) == pytest.approx(5.0)
        boosted = boost_matched_confidence(result.front_vias, 0.5)
        assert boosted[0].confidence == pytest.approx(0.75)

    def test_matched_center_and_sides(self):
        """Centroid over confirmed vias of both sides; side split keeps order"""
        front = [_via("f1", 0, 0, Side.FRONT), _via("f2", 500, 500, Side.FRONT)]
        back = [_via("b1", 2, 4, Side.BACK)]
        result = match_vias_across_sides(front, back, 10.0)
        center, n = average_matched_center(result.front_vias, result.back_vias)
        assert n == 2
        assert (center.x, center.y) == pytest.approx((1.0, 2.0))
        assert average_matched_center(front, back) == (None, 0)
        f, b = separate_by_side(result.back_vias + result.front_vias)
        assert [v.id for v in f] == ["f1", "f2"]
        assert [v.id for v in b] == ["b1"]


class TestFusion:
    """Merging two per-side observations"""

    def test_self_fusion_is_identity(self):
        """Fusing a boundary with itself keeps the shape and boosts confidence"""
        boundary = circle_points(Point2D(50, 40), 10.0, 32)
        v = _via("f1", 50, 40, Side.FRONT, r=10.0, conf=0.7, boundary=boundary)

        center, radius, fused = fuse_boundaries(v, v)
        assert center.x == pytest.approx(50.0, abs=1e-6)
        assert center.y == pytest.approx(40.0, abs=1e-6)
        assert radius == pytest.approx(9.5, abs=1e-3)
        assert radius <= v.radius
        assert len(fused) == 32

        cv = confirm_via(v, v, "cvia-001")
        assert cv.confidence == pytest.approx(min(1.0, 0.7 * 1.2))

    def test_confidence_is_capped(self):
        """The boost never exceeds 1"""
        assert fused_confidence(0.9, 0.95) == 1.0
        assert fused_confidence(0.5, 0.3) == pytest.approx(0.48)

    def test_radius_clamped_to_larger_side(self):
        """A union wider than either pad is clamped to the larger radius"""
        f = _via("f", 0, 0, Side.FRONT, r=5.0, boundary=circle_points(Point2D(0, 0), 5.0))
        b = _via("b", 8, 0, Side.BACK, r=6.0, boundary=circle_points(Point2D(8, 0), 6.0))
        center, radius, _ = fuse_boundaries(f, b)
        assert radius == pytest.approx(6.0)
        assert 0.0 < center.x < 8.0

    def test_single_boundary(self):
        """Only one side with a boundary is fitted from that side"""
        f = _via("f", 20, 20, Side.FRONT, r=8.0, boundary=circle_points(Point2D(20, 20), 8.0))
        b = _via("b", 22, 20, Side.BACK, r=8.0)
        center, radius, _ = fuse_boundaries(f, b)
        assert center.x == pytest.approx(20.0, abs=1e-6)
        assert radius == pytest.approx(7.6, abs=1e-3)

    def test_no_boundaries_averages(self):
        """Without boundaries the result is the midpoint and mean radius"""
        f = _via("f", 0, 0, Side.FRONT, r=4.0)
        b = _via("b", 2, 2, Side.BACK, r=6.0)
        center, radius, boundary = fuse_boundaries(f, b, FusionParams(boundary_points=16))
        assert (center.x, center.y) == (1.0, 1.0)
        assert radius == 5.0
        assert len(boundary) == 16

    def test_refine_keeps_identity(self):
        """Refining after a boundary edit recomputes geometry under the same id"""
        f = _via("f", 0, 0, Side.FRONT, r=4.0)
        b = _via("b", 2, 0, Side.BACK, r=4.0)
        cv = confirm_via(f, b, "cvia-007")
        edited = Via(id="f", center=Point2D(0, 0), radius=4.0, side=Side.FRONT,
                     pad_boundary=circle_points(Point2D(0, 0), 4.0))
        refined = refine_confirmed_via(cv, edited, b)
        assert refined.id == "cvia-007"
        assert refined.center.x == pytest.approx(0.0, abs=1e-6)
        with pytest.raises(ValueError, match="cvia-007"):
            refine_confirmed_via(cv, _via("other", 0, 0, Side.FRONT), b)

    def test_hit_test_lookup(self):
        """Confirmed vias are found by point inside their boundary"""
        cv = confirm_via(_via("f", 10, 10, Side.FRONT), _via("b", 10, 10, Side.BACK), "cvia-001")
        assert find_confirmed_at([cv], 11, 10) is cv
        assert find_confirmed_at([cv], 30, 30) is None
