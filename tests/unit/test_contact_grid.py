"""
Unit tests for edge-connector contact row reconstruction (alignment.contact_grid)
"""

import os
import sys

import cv2
import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from alignment.contact_grid import (
    ContactLine,
    best_anchor_index,
    estimate_pitch,
    fit_contact_line,
    fit_contact_row,
    project_grid,
    score_candidates,
)
from common.events import EventRecorder, FAILURE
from common.geometry import RectInt
from common.types import Contact, ContactSpec, DetectionPass

GREEN_BGR = (40, 120, 40)
GOLD_BGR = (40, 180, 220)

PITCH = 20
CONTACTS = 50
MISSING = {5, 17, 33}


def _contact_rect(i):
    # centre x = 25 + 20 i, 10 px wide, 40 px tall
    return RectInt(20 + PITCH * i, 40, 10, 40)


def _edge_image():
    img = np.full((120, 1040, 3), GREEN_BGR, dtype=np.uint8)
    for i in range(CONTACTS):
        r = _contact_rect(i)
        cv2.rectangle(img, (r.x, r.y), (r.x + r.width - 1, r.y + r.height - 1), GOLD_BGR, thickness=-1)
    return img


class TestPitchEstimation:
    """Pairwise-interval histogram voting"""

    def test_pitch_within_one_percent_with_gaps_and_jitter(self):
        """Two missing seeds and +/-0.5 px jitter still give the pitch within 1%"""
        rng = np.random.default_rng(42)
        true_pitch = 23.7
        positions = 15.0 + true_pitch * np.arange(30)
        keep = np.delete(np.arange(30), rng.choice(30, size=2, replace=False))
        positions = positions[keep] + rng.uniform(-0.5, 0.5, size=len(keep))

        pitch = estimate_pitch(positions, min_pitch=15.0)

        assert pitch == pytest.approx(true_pitch, rel=0.01)

    def test_exact_grid(self):
        """Noise-free seeds reproduce the pitch"""
        positions = [25 + PITCH * i for i in range(CONTACTS) if i not in MISSING]
        assert estimate_pitch(positions, min_pitch=15.0) == pytest.approx(20.0, abs=0.1)

    def test_long_row_with_low_minimum(self):
        """Long intervals cut into short candidates do not outvote the true pitch"""
        positions = [7.0 + 20.0 * i for i in range(60) if i not in (9, 41)]
        assert estimate_pitch(positions, min_pitch=12.0) == pytest.approx(20.0, abs=0.1)

    def test_degenerate_inputs(self):
        """Fewer than two positions or coincident positions"""
        assert estimate_pitch([10.0], min_pitch=5.0) == 0.0
        assert estimate_pitch([10.0, 10.0, 10.0], min_pitch=5.0) == 5.0
        assert estimate_pitch([10.0, 12.0], min_pitch=5.0) == 0.0


class TestAnchorAndLine:
    """Grid phase and tilt"""

    def test_anchor_avoids_off_grid_seed(self):
        """The seed sitting between grid positions is never the anchor"""
        positions = [10.0, 30.0, 50.0, 77.0, 90.0]
        assert best_anchor_index(positions, 20.0) == 0

    def test_line_fit(self):
        """OLS recovers slope and intercept"""
        x = np.arange(0, 200, 20, dtype=float)
        line = fit_contact_line(x, 0.1 * x + 5.0)
        assert not line.degenerate
        assert line.slope == pytest.approx(0.1)
        assert line.intercept == pytest.approx(5.0)

    def test_degenerate_line_falls_back_to_median(self):
        """Zero variance along the row gives slope 0 at the median"""
        line = fit_contact_line([50.0, 50.0, 50.0], [10.0, 30.0, 12.0])
        assert line.degenerate
        assert line.slope == 0.0
        assert line.intercept == 12.0


class TestProjection:
    """Candidate rectangles from margin to margin"""

    def test_projection_covers_extent_in_order(self):
        """Rects run from the left margin to the right margin in order"""
        rects = project_grid(105.0, 20.0, 10, 40, ContactLine(0.0, 60.0), extent=200.0)
        xs = [r.x for r in rects]
        assert xs == sorted(xs)
        assert xs[0] <= 0
        assert xs[-1] + 10 >= 190
        assert all(r.y == 40 and r.width == 10 and r.height == 40 for r in rects)
        assert any(r.center.x == pytest.approx(105.0) for r in rects)

    def test_vertical_rows_swap_axes(self):
        """Vertical rows place the along size on the y axis"""
        rects = project_grid(50.0, 20.0, 10, 40, ContactLine(0.0, 30.0), extent=100.0, horizontal=False)
        assert all(r.width == 40 and r.height == 10 and r.x == 10 for r in rects)

    def test_scores_are_mask_fractions(self):
        """Score is the fraction of in-image pixels set in the mask"""
        mask = np.zeros((20, 20), dtype=bool)
        mask[:, :10] = True
        rects = [RectInt(0, 0, 10, 10), RectInt(5, 0, 10, 10), RectInt(15, 0, 10, 10), RectInt(40, 40, 5, 5)]
        assert score_candidates(mask, rects, workers=2) == pytest.approx([1.0, 0.5, 0.0, 0.0])


class TestContactRow:
    """Full row reconstruction"""

    def test_reconstructs_fifty_contacts(self):
        """50 contacts with 5, 17 and 33 missing are all recovered at the true positions"""
        img = _edge_image()
        seeds = [Contact.from_rect(_contact_rect(i)) for i in range(CONTACTS) if i not in MISSING]

        fit = fit_contact_row(img, seeds, CONTACTS, workers=4)

        assert fit.ok
        assert fit.pitch == pytest.approx(20.0, abs=0.1)
        assert len(fit.contacts) == CONTACTS
        xs = [c.center.x for c in fit.contacts]
        assert xs == sorted(xs)
        for i, c in enumerate(fit.contacts):
            assert c.center.x == pytest.approx(25 + PITCH * i, abs=1.5)
            assert c.center.y == pytest.approx(60.0, abs=1.0)
            assert c.confidence >= 0.8
        rescued = [i for i, c in enumerate(fit.contacts) if c.pass_ is DetectionPass.RESCUE]
        assert rescued == sorted(MISSING)

    def test_physical_spec_overrides_histogram(self):
        """Pitch and size come from the ContactSpec when a DPI is given"""
        img = _edge_image()
        seeds = [Contact.from_rect(_contact_rect(i)) for i in (0, 3, 7)]
        spec = ContactSpec(count=CONTACTS, pitch_in=20 / 600, width_in=10 / 600, height_in=40 / 600)

        fit = fit_contact_row(img, seeds, CONTACTS, dpi=600, spec=spec)

        assert fit.pitch_source == "spec"
        assert fit.pitch == pytest.approx(20.0)
        assert len(fit.contacts) == CONTACTS
        assert all(c.bounds.width == 10 and c.bounds.height == 40 for c in fit.contacts)

    def test_single_seed_returned_unchanged(self):
        """With one seed there is no pitch; seeds come back with a reason"""
        recorder = EventRecorder()
        seed = Contact.from_rect(_contact_rect(0))
        fit = fit_contact_row(_edge_image(), [seed], CONTACTS, on_event=recorder)
        assert not fit.ok
        assert fit.reason == "insufficient_seeds"
        assert fit.contacts == [seed]
        assert recorder.of_kind(FAILURE)
