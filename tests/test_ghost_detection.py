"""
Tests for patch based ghost detection.
"""

import cv2
import numpy as np
import pytest
from PIL import Image

from api.services.errors import InsufficientExposuresError, SizeMismatchError
from api.services.ghost_detection import (
    GhostDetector,
    cell_index,
    compensated_difference,
    expand_patches,
    hue_energy,
    log2_luminances,
    mask_from_image,
    select_reference,
)
from api.services.image_utils import shift_frame


def _hue_frame(hue_deg, height=16, width=16):
    hsv = np.zeros((height, width, 3), dtype=np.float32)
    hsv[..., 0] = hue_deg
    hsv[..., 1] = 0.8
    hsv[..., 2] = 0.6
    return cv2.cvtColor(hsv, cv2.COLOR_HSV2RGB)


def _moving_object(gray_scene, make_item):
    scene = gray_scene(128, 128)
    moved = scene.copy()
    moved[32:48, 64:80] = 0.4
    return [make_item(scene, 0.0, source="a"), make_item(moved, 1.0, source="b")]


class TestGrid:
    """Cell geometry helpers."""

    def test_last_cell_takes_remainder(self):
        idx = cell_index(10, 3)
        assert idx.tolist() == [0, 0, 0, 1, 1, 1, 2, 2, 2, 2]

    def test_image_smaller_than_grid(self):
        with pytest.raises(ValueError):
            cell_index(10, 16)

    def test_expand_patches_is_row_major(self):
        grid = np.zeros((2, 4), dtype=bool)
        grid[1, 3] = True
        pixels = expand_patches(grid, width=8, height=4)
        assert pixels.shape == (4, 8)
        assert pixels[2:, 6:].all()
        assert np.count_nonzero(pixels) == 4


class TestHueEnergy:
    """Reference exposure selection."""

    def test_middle_hue_has_lowest_energy(self):
        energy = hue_energy([_hue_frame(0.0), _hue_frame(10.0), _hue_frame(20.0)])
        assert int(np.argmin(energy)) == 1
        assert energy[0] == pytest.approx(energy[2], rel=1e-3)

    def test_gray_frames_have_no_hue(self, gray_scene):
        scene = gray_scene(16, 16)
        np.testing.assert_array_equal(hue_energy([scene, scene * 2]), [0.0, 0.0])

    def test_detect_picks_lowest_energy_reference(self, make_item):
        items = [make_item(_hue_frame(h, 32, 32), 0.0, source=str(h)) for h in (0.0, 10.0, 20.0)]
        result = GhostDetector(grid_size=4).detect(items, threshold=3.0)
        assert result.reference_index == 1

    @pytest.mark.parametrize("hues", [(0.0, 20.0), (20.0, 0.0)])
    def test_two_frame_tie_goes_to_first(self, make_item, hues):
        items = [make_item(_hue_frame(h, 32, 32), 0.0, source=str(h)) for h in hues]
        assert GhostDetector(grid_size=4).detect(items, threshold=3.0).reference_index == 0

    def test_select_reference_ignores_rounding(self):
        assert select_reference(np.array([0.5, 0.5 - 1e-15, 0.7])) == 0
        assert select_reference(np.array([0.7, 0.2, 0.1])) == 2


class TestCompensatedDifference:
    def test_offset_and_valid_region(self, textured_scene):
        ref = textured_scene(32, 32)
        cand = shift_frame(ref, 3, 2)
        diff, valid = compensated_difference(ref, cand, 0.0, 3, 2)
        assert valid[:30, :29].all()
        assert not valid[30:, :].any() and not valid[:, 29:].any()
        assert np.all(diff[valid] == 0.0)

    def test_exposure_is_compensated(self, gray_scene):
        ref = gray_scene(8, 8)
        diff, valid = compensated_difference(ref, ref * 4.0, -2.0, 0, 0)
        assert valid.all()
        np.testing.assert_allclose(diff, 0.0, atol=1e-7)


class TestDetect:
    """Ghost masks on synthetic brackets."""

    def test_static_scene_has_no_ghosts(self, bracket):
        _, items = bracket
        result = GhostDetector(grid_size=8).detect(items, threshold=3.0)
        assert result.mask.shape == (8, 8)
        assert not result.mask.any()
        assert result.ghosted_percent == 0.0

    def test_moving_object_is_flagged(self, gray_scene, make_item):
        items = _moving_object(gray_scene, make_item)

        result = GhostDetector(grid_size=16).detect(items, threshold=3.0)

        expected = np.zeros((16, 16), dtype=bool)
        expected[4:6, 8:10] = True
        np.testing.assert_array_equal(result.mask, expected)
        assert result.ghosted_percent == pytest.approx(400.0 / 256.0)

    def test_offsets_compensate_camera_shake(self, textured_scene, make_item):
        scene = textured_scene(64, 64)
        items = [make_item(scene, 0.0, source="a"), make_item(shift_frame(scene, 3, 2), 0.0, source="b")]
        detector = GhostDetector(grid_size=8)

        assert detector.detect(items, threshold=1.0).mask.any()
        assert not detector.detect(items, threshold=1.0, offsets=[(0, 0), (-3, -2)]).mask.any()

    def test_missing_metadata_uses_frame_luminance(self, gray_scene, make_item):
        scene = gray_scene(32, 32)
        items = [
            make_item(scene, 0.0, with_metadata=False, source="a"),
            make_item(scene, 1.0, with_metadata=False, source="b"),
        ]
        assert not GhostDetector(grid_size=4).detect(items, threshold=3.0).mask.any()

    def test_partial_metadata_uses_frame_luminance_for_all(self, gray_scene, make_item):
        scene = gray_scene(32, 32)
        items = [
            make_item(scene, 0.0, source="a"),
            make_item(scene, 1.0, with_metadata=False, source="b"),
        ]
        levels = log2_luminances(items)
        assert levels[1] - levels[0] == pytest.approx(1.0)
        assert not GhostDetector(grid_size=4).detect(items, threshold=3.0).mask.any()

    def test_levels_prefer_exif_luminance(self, gray_scene, make_item):
        items = [make_item(gray_scene(8, 8), ev) for ev in (-1.0, 2.0)]
        assert log2_luminances(items) == pytest.approx([-1.0, 2.0])

    def test_detection_is_deterministic(self, gray_scene, make_item):
        items = _moving_object(gray_scene, make_item)
        first = GhostDetector(grid_size=16).detect(items, threshold=2.0)
        second = GhostDetector(grid_size=16).detect(items, threshold=2.0)
        np.testing.assert_array_equal(first.mask, second.mask)
        assert first.reference_index == second.reference_index
        assert first.ghosted_percent == second.ghosted_percent

    def test_higher_threshold_never_flags_more(self, gray_scene, make_item):
        items = _moving_object(gray_scene, make_item)
        detector = GhostDetector(grid_size=16)
        masks = [detector.detect(items, threshold=t).mask for t in (0.1, 0.5, 1.0, 2.0, 5.0, 50.0)]
        for looser, stricter in zip(masks, masks[1:]):
            assert not (stricter & ~looser).any()
        assert masks[0][4:6, 8:10].all()
        assert not masks[-1].any()

    def test_needs_two_exposures(self, bracket):
        _, items = bracket
        with pytest.raises(InsufficientExposuresError):
            GhostDetector(grid_size=8).detect(items[:1], threshold=3.0)

    def test_size_mismatch(self, gray_scene, make_item):
        items = [make_item(gray_scene(32, 32), 0.0), make_item(gray_scene(32, 40), 1.0)]
        with pytest.raises(SizeMismatchError):
            GhostDetector(grid_size=4).detect(items, threshold=3.0)

    def test_offsets_length_checked(self, bracket):
        _, items = bracket
        with pytest.raises(ValueError):
            GhostDetector(grid_size=8).detect(items, threshold=3.0, offsets=[(0, 0)])

    def test_image_smaller_than_grid(self, gray_scene, make_item):
        items = [make_item(gray_scene(16, 16), 0.0), make_item(gray_scene(16, 16), 1.0)]
        with pytest.raises(ValueError):
            GhostDetector(grid_size=64).detect(items, threshold=3.0)


class TestMaskFromImage:
    def test_alpha_channel_is_used(self):
        rgba = np.zeros((4, 4, 4), dtype=np.uint8)
        rgba[..., :3] = 255
        rgba[1, 2, 3] = 200
        mask = mask_from_image(Image.fromarray(rgba))
        assert mask.shape == (4, 4)
        assert mask[1, 2] and np.count_nonzero(mask) == 1

    def test_gray_image_nonzero_pixels(self):
        gray = np.zeros((4, 4), dtype=np.uint8)
        gray[0, 0] = 1
        mask = mask_from_image(Image.fromarray(gray))
        assert mask[0, 0] and np.count_nonzero(mask) == 1

    def test_rgb_array(self):
        rgb = np.zeros((3, 3, 3), dtype=np.uint8)
        rgb[2, 1, 0] = 10
        mask = mask_from_image(rgb)
        assert mask[2, 1] and np.count_nonzero(mask) == 1
