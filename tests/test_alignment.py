"""
Tests for median threshold bitmap alignment.
"""

import cv2
import numpy as np
import pytest

from api.services.alignment import align_store, compute_offsets, estimate_translation_mtb
from api.services.image_utils import shift_frame


@pytest.fixture
def blobs():
    """Smooth random texture spanning most of [0, 1]."""
    rng = np.random.default_rng(7)
    plane = cv2.GaussianBlur(rng.random((128, 128)).astype(np.float32), (0, 0), 2.0)
    plane = (plane - plane.min()) / (plane.max() - plane.min())
    plane = 0.05 + 0.9 * plane
    return np.repeat(plane[..., np.newaxis], 3, axis=2).astype(np.float32)


class TestMtb:
    def test_identity(self, blobs):
        gray = blobs[..., 0]
        shift = estimate_translation_mtb(gray, gray)
        assert (shift.dx, shift.dy) == (0, 0)
        assert shift.overlap_ratio == 1.0

    def test_recovers_translation(self, blobs):
        gray = blobs[..., 0]
        moved = shift_frame(gray, -3, 2)
        shift = estimate_translation_mtb(moved, gray)
        assert (shift.dx, shift.dy) == (-3, 2)

    def test_tone_change_does_not_matter(self, blobs):
        gray = blobs[..., 0]
        brighter = np.sqrt(shift_frame(gray, -3, 2))
        shift = estimate_translation_mtb(brighter, gray)
        assert (shift.dx, shift.dy) == (-3, 2)

    def test_one_cost_per_level(self, blobs):
        gray = blobs[..., 0]
        # 128, 64 and 32 pixel levels
        shift = estimate_translation_mtb(gray, gray, min_size=32)
        assert len(shift.level_costs) == 3
        assert shift.level_costs[-1] == 0


class TestOffsets:
    def test_middle_exposure_is_reference(self, blobs, make_item):
        items = [
            make_item(blobs, 0.0, source="a"),
            make_item(shift_frame(blobs, -3, 2), 0.0, source="b"),
        ]
        assert compute_offsets(items) == [(-3, 2), (0, 0)]
        assert compute_offsets(items, reference_index=0) == [(0, 0), (3, -2)]
        assert compute_offsets([]) == []

    def test_align_store_registers_frames(self, blobs, make_item, dict_store):
        a = make_item(blobs, 0.0, source="a")
        b = make_item(shift_frame(blobs, -3, 2), 0.0, source="b")
        store = dict_store({"a": a, "b": b})
        store.load(["a"]).result(timeout=10)
        store.load(["b"]).result(timeout=10)

        offsets = align_store(store)

        assert offsets == [(-3, 2), (0, 0)]
        np.testing.assert_array_equal(store[0].frame[2:, :-3], store[1].frame[2:, :-3])
        assert store[0].thumbnail is not None
