"""
Unit tests for DIP pin-grid reconstruction (component.pins, component.packages)
"""

import os
import sys

import cv2
import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.events import EventRecorder, FALLBACK, REJECTED
from common.geometry import Point2D, RectInt
from component.packages import (
    STANDARD_PACKAGES,
    ComponentPlacement,
    PackageSpec,
    lookup_package,
    parse_dip_pin_count,
)
from component.pins import (
    NO_PAD,
    SolderSideView,
    consensus_radius,
    corner_indices,
    detect_pins,
    expected_dip_pin_positions,
    fit_rigid_grid,
    identify_pin1_corner,
    pin_numbers_for_corner,
    radial_scan_to_green,
    validate_pad_center,
)

DPI = 600
MASK_BGR = (40, 140, 40)
SOLDER_BGR = (200, 200, 200)
HOLE_BGR = (30, 30, 30)
PAD_R = 14
OFFSET = (3, -2)


def _dip8():
    return ComponentPlacement(id="U1", package="DIP-8", bounds=RectInt(100, 80, 120, 260))


def _solder_side(square_index=4, skip=()):
    """DIP-8 pads at the expected positions shifted by OFFSET; one square pad."""
    comp = _dip8()
    img = np.full((420, 340, 3), MASK_BGR, dtype=np.uint8)
    expected = expected_dip_pin_positions(comp, STANDARD_PACKAGES["DIP-8"], DPI)
    for i, ep in enumerate(expected):
        if i in skip:
            continue
        x, y = int(round(ep.position.x)) + OFFSET[0], int(round(ep.position.y)) + OFFSET[1]
        if i == square_index:
            cv2.rectangle(img, (x - PAD_R, y - PAD_R), (x + PAD_R, y + PAD_R), SOLDER_BGR, thickness=-1)
        else:
            cv2.circle(img, (x, y), PAD_R, SOLDER_BGR, thickness=-1)
        cv2.circle(img, (x, y), 6, HOLE_BGR, thickness=-1)
    return img, comp, expected


class TestPackages:
    """Package catalogue and name parsing"""

    def test_parse_dip_pin_count(self):
        """Only even DIP counts of at least 4 parse"""
        assert parse_dip_pin_count("DIP-16") == 16
        assert parse_dip_pin_count(" dip-8 ") == 8
        assert parse_dip_pin_count("DIP-7") is None
        assert parse_dip_pin_count("DIP-2") is None
        assert parse_dip_pin_count("SOIC-8") is None
        assert parse_dip_pin_count("DIP-x") is None

    def test_catalogue(self):
        """DIP-40 is the wide package"""
        assert STANDARD_PACKAGES["DIP-40"].row_spacing_mm == 15.24
        assert STANDARD_PACKAGES["DIP-16"].row_spacing_mm == 7.62
        assert lookup_package(STANDARD_PACKAGES, "dip-14").pin_count == 14
        assert lookup_package(STANDARD_PACKAGES, "QFP-44") is None
        assert STANDARD_PACKAGES["DIP-8"].pitch_px(DPI) == pytest.approx(60.0)

    def test_placement_from_dict(self):
        """Placements load from plain mappings"""
        comp = ComponentPlacement.from_dict(
            {"id": "U7", "package": "DIP-14", "bounds": {"x": 1, "y": 2, "width": 30, "height": 90}, "rotation": 90}
        )
        assert comp.center == Point2D(16.0, 47.0)
        assert comp.rotation_deg == 90.0


class TestExpectedPositions:
    """Nominal pin centres from the body geometry"""

    def test_vertical_dip8(self):
        """Row 1 runs down the left, row 2 comes back up the right"""
        pins = expected_dip_pin_positions(_dip8(), STANDARD_PACKAGES["DIP-8"], DPI)
        assert [p.number for p in pins] == list(range(1, 9))
        assert [p.row for p in pins] == [1, 1, 1, 1, 2, 2, 2, 2]
        assert pins[0].position.x == pytest.approx(70.0)
        assert pins[0].position.y == pytest.approx(120.0)
        assert pins[3].position.y == pytest.approx(300.0)
        assert pins[4].position.x == pytest.approx(250.0)
        assert pins[4].position.y == pytest.approx(300.0)
        assert pins[7].position.y == pytest.approx(120.0)

    def test_horizontal_body(self):
        """A wide body puts the pin rows along x"""
        comp = ComponentPlacement(id="U2", package="DIP-8", bounds=RectInt(0, 0, 260, 120))
        pins = expected_dip_pin_positions(comp, STANDARD_PACKAGES["DIP-8"], DPI)
        assert pins[0].position.x == pytest.approx(130.0 - 90.0)
        assert pins[0].position.y == pytest.approx(60.0 - 90.0)
        assert pins[1].position.x == pytest.approx(130.0 - 30.0)

    def test_rotation(self):
        """Rotation turns both axes"""
        comp = ComponentPlacement(id="U3", package="DIP-8", bounds=RectInt(100, 80, 120, 260), rotation_deg=90.0)
        pins = expected_dip_pin_positions(comp, STANDARD_PACKAGES["DIP-8"], DPI)
        assert pins[0].position.x == pytest.approx(160.0 + 90.0)
        assert pins[0].position.y == pytest.approx(210.0 - 90.0)

    def test_not_a_grid(self):
        """Odd pin counts have no DIP grid"""
        pkg = PackageSpec(name="ODD-3", width_mm=5, height_mm=5, pin_count=3)
        assert expected_dip_pin_positions(_dip8(), pkg, DPI) == []


class TestRigidGridFit:
    """Translation-only fit with outlier rejection"""

    def _grid(self, pitch=30.0):
        return [Point2D(x, 50.0 + pitch * k) for x in (0.0, 90.0) for k in range(8)]

    def test_recovers_offset_and_flags_perturbed_pads(self):
        """16 pads shifted by (dx, dy), 2 perturbed beyond 0.3 x pitch"""
        expected = self._grid()
        dx, dy = 4.3, -2.7
        detected = [p.offset(dx, dy) for p in expected]
        for i in (3, 11):
            detected[i] = detected[i].offset(15.0, 12.0)

        fit = fit_rigid_grid(expected, detected, pitch=30.0)

        assert fit.offset.x == pytest.approx(dx, abs=0.1)
        assert fit.offset.y == pytest.approx(dy, abs=0.1)
        assert fit.outliers == [3, 11]
        assert len(fit.inliers) == 14
        for e, p in zip(expected, fit.positions):
            assert p.x == pytest.approx(e.x + dx, abs=0.1)
            assert p.y == pytest.approx(e.y + dy, abs=0.1)

    def test_missing_measurements_are_skipped(self):
        """None entries do not take part in the fit"""
        expected = self._grid()
        detected = [None] * 16
        detected[0] = expected[0].offset(2.0, 1.0)
        detected[9] = expected[9].offset(2.0, 1.0)
        fit = fit_rigid_grid(expected, detected, pitch=30.0)
        assert (fit.offset.x, fit.offset.y) == pytest.approx((2.0, 1.0))
        assert fit.inliers == [0, 9]

    def test_no_measurements(self):
        """No usable pads: expected positions and a zero offset"""
        expected = self._grid()
        fit = fit_rigid_grid(expected, [None] * 16, pitch=30.0)
        assert fit.positions == expected
        assert fit.offset == Point2D(0.0, 0.0)

    def test_length_mismatch(self):
        """Expected and detected lists must line up"""
        with pytest.raises(ValueError, match="length mismatch"):
            fit_rigid_grid(self._grid(), [None], pitch=30.0)


class TestPinOne:
    """Square-pad corner selection and numbering"""

    def test_marked_corner_always_wins(self):
        """One corner with 4 bright diagonals beats 0-2 elsewhere in every trial"""
        rng = np.random.default_rng(0)
        for trial in range(200):
            marked = trial % 4
            counts = [int(c) for c in rng.integers(0, 3, size=4)]
            counts[marked] = 4
            assert identify_pin1_corner(counts) == (marked, True)

    def test_fallback_to_first_valid_corner(self):
        """No corner reaches 3 bright diagonals"""
        assert identify_pin1_corner([None, 2, 1, None]) == (1, False)
        assert identify_pin1_corner([None, None, None, None]) == (0, False)
        assert identify_pin1_corner([0, 0, 0, 0]) == (0, False)

    @pytest.mark.parametrize("corner", range(4))
    def test_numbering_is_a_permutation_with_pin1_at_corner(self, corner):
        """Every rotational case numbers 1..N once with pin 1 at the chosen corner"""
        for n in (8, 16, 40):
            numbers = pin_numbers_for_corner(corner, n)
            assert sorted(numbers) == list(range(1, n + 1))
            assert numbers[corner_indices(n)[corner]] == 1

    def test_numbering_cases(self):
        """Serpentine order for DIP-8"""
        assert pin_numbers_for_corner(0, 8) == [1, 2, 3, 4, 5, 6, 7, 8]
        assert pin_numbers_for_corner(1, 8) == [4, 3, 2, 1, 8, 7, 6, 5]
        assert pin_numbers_for_corner(2, 8) == [5, 6, 7, 8, 1, 2, 3, 4]
        assert pin_numbers_for_corner(3, 8) == [8, 7, 6, 5, 4, 3, 2, 1]
        with pytest.raises(ValueError):
            pin_numbers_for_corner(4, 8)


class TestPadMeasurement:
    """Radial profiling and validation on a synthetic pad"""

    def _pad(self):
        img = np.full((100, 100, 3), MASK_BGR, dtype=np.uint8)
        cv2.circle(img, (50, 50), PAD_R, SOLDER_BGR, thickness=-1)
        cv2.circle(img, (50, 50), 6, HOLE_BGR, thickness=-1)
        return SolderSideView.from_bgr(img)

    def test_rays_stop_at_mask(self):
        """Every ray ends at the solder-mask edge around the pad"""
        dist = radial_scan_to_green(self._pad(), Point2D(50, 50), 42.0)
        assert len(dist) == 16
        assert np.all(np.abs(dist - PAD_R) <= 2.0)

    def test_validation(self):
        """Metallic centre passes, solder mask fails"""
        view = self._pad()
        assert validate_pad_center(view, Point2D(50, 50), 20.0)
        assert not validate_pad_center(view, Point2D(10, 10), 20.0)

    def test_consensus_radius_floor(self):
        """Low percentile of the radii, never below the floor"""
        assert consensus_radius([20, 21, 19, 30, 35, 22, 20, 19], 9.0) == 20
        assert consensus_radius([3.0, 4.0], 9.0) == 9.0
        assert consensus_radius([], 9.0) == 9.0


class TestDetectPins:
    """End-to-end on a synthetic solder side"""

    def test_full_dip8(self):
        """All 8 pins found, offset recovered, pin 1 is the square pad"""
        img, comp, expected = _solder_side(square_index=4)
        recorder = EventRecorder()

        result = detect_pins(img, comp, STANDARD_PACKAGES["DIP-8"], DPI, on_event=recorder)

        assert [p.pin_number for p in result.pins] == list(range(1, 9))
        assert result.pin1_corner == 2
        assert result.pin1_reliable
        assert result.offset.x == pytest.approx(OFFSET[0], abs=1.5)
        assert result.offset.y == pytest.approx(OFFSET[1], abs=1.5)
        assert 12.0 <= result.consensus_radius <= 18.0
        assert result.rejected == []
        assert result.profiles_pristine >= 3

        pin1 = result.pins[0]
        assert len(pin1.boundary) == 4
        assert pin1.center.distance_to(expected[4].position.offset(*OFFSET)) < 2.0
        assert all(len(p.boundary) == 32 for p in result.pins[1:])
        assert all(p.component_id == "U1" and p.confidence == pytest.approx(0.9) for p in result.pins)
        assert not recorder.of_kind(FALLBACK)

    def test_missing_pad_is_absent_not_fatal(self):
        """A pad that is not there is rejected and the rest are still numbered"""
        img, comp, _ = _solder_side(square_index=4, skip=(2,))
        recorder = EventRecorder()

        result = detect_pins(img, comp, STANDARD_PACKAGES["DIP-8"], DPI, on_event=recorder)

        assert [p.pin_number for p in result.pins] == [1, 2, 3, 4, 5, 6, 8]
        assert (2, NO_PAD) in result.rejected
        assert result.pin1_reliable
        assert recorder.of_kind(REJECTED)

    def test_round_pads_only_defaults_pin1(self):
        """Without a square pad pin 1 falls back to the first corner, flagged unreliable"""
        img, comp, _ = _solder_side(square_index=None)
        recorder = EventRecorder()

        result = detect_pins(img, comp, STANDARD_PACKAGES["DIP-8"], DPI, on_event=recorder)

        assert len(result.pins) == 8
        assert result.pin1_corner == 0
        assert not result.pin1_reliable
        assert recorder.of_kind(FALLBACK)

    def test_metal_free_position_fails_validation(self):
        """Solder mask at the fitted centre is rejected with its reason"""
        img, comp, expected = _solder_side(square_index=4)
        view = SolderSideView.from_bgr(img)
        empty = expected[0].position.offset(30.0, 0.0)
        assert not validate_pad_center(view, empty, 15.0)

    def test_unknown_grid(self):
        """A package without a DIP grid returns an empty result"""
        img, comp, _ = _solder_side()
        pkg = PackageSpec(name="ODD-3", width_mm=5, height_mm=5, pin_count=3)
        result = detect_pins(img, comp, pkg, DPI)
        assert result.pins == []
        assert result.expected_count == 0
