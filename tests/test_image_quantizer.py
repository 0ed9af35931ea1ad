"""Tests for ImageQuantizer and QuantizeSession"""

import numpy as np

from quantize_lib import (
    DitherMode,
    EdgePolicy,
    ImageQuantizer,
    QuantizeSession,
    TreeVariant,
)


class TestImageQuantizer:
    """Test image-level quantization"""

    def test_rgb_in_rgb_out(self, gradient_image):
        result = ImageQuantizer(num_colors=4).apply(gradient_image)

        assert result.mode == 'RGB'
        assert result.size == gradient_image.size

    def test_palette_is_generated_and_kept(self, gradient_image):
        quantizer = ImageQuantizer(num_colors=4, dither_mode=DitherMode.NONE)
        result = quantizer.apply(gradient_image)

        assert quantizer.palette is not None
        assert 1 <= len(quantizer.palette) <= 4
        colors = {tuple(c) for c in np.array(result).reshape(-1, 3).tolist()}
        assert colors <= set(quantizer.palette)

    def test_given_palette_is_used(self, gradient_image):
        palette = [(0, 0, 0), (255, 255, 255)]
        quantizer = ImageQuantizer(num_colors=16, dither_mode="none", palette=palette)
        result = quantizer.apply(gradient_image)

        assert quantizer.palette == palette
        assert set(np.unique(np.array(result)).tolist()) <= {0, 255}

    def test_alpha_is_preserved(self, rgba_image):
        result = ImageQuantizer(num_colors=3, tree_variant=TreeVariant.MODIFIED).apply(rgba_image)

        assert result.mode == 'RGBA'
        assert np.array_equal(np.array(result)[..., 3], np.array(rgba_image)[..., 3])

    def test_accepts_string_options(self):
        quantizer = ImageQuantizer(5, "floyd_steinberg", "modified", "wrap")
        assert quantizer.dither_mode is DitherMode.FLOYD_STEINBERG
        assert quantizer.tree_variant is TreeVariant.MODIFIED
        assert quantizer.edge_policy is EdgePolicy.WRAP

    def test_palette_image_converts(self, gradient_image):
        indexed = gradient_image.convert('P')
        result = ImageQuantizer(num_colors=2).apply(indexed)
        assert result.size == indexed.size


class TestQuantizeSession:
    """Renders are only recomputed when a parameter changes"""

    def test_same_parameters_reuse_result(self, gradient_image):
        session = QuantizeSession(gradient_image)
        first = session.render(5)
        second = session.render(5)

        assert first is second
        assert session.recompute_count == 1

    def test_changed_parameters_recompute(self, gradient_image):
        session = QuantizeSession(gradient_image)
        session.render(5)
        session.render(6)
        session.render(6, tree_variant=TreeVariant.MODIFIED)
        session.render(6, tree_variant="modified")
        session.render(5)

        assert session.recompute_count == 4

    def test_palette_follows_last_render(self, gradient_image):
        session = QuantizeSession(gradient_image)
        assert session.palette is None
        session.render(2, dither_mode=DitherMode.NONE)
        assert 1 <= len(session.palette) <= 2

    def test_source_image_is_copied(self, gradient_image):
        session = QuantizeSession(gradient_image)
        gradient_image.paste((1, 2, 3), (0, 0, gradient_image.width, gradient_image.height))
        assert session.original.getpixel((0, 0)) != (1, 2, 3)

    def test_original_is_not_modified(self, gradient_image):
        before = np.array(gradient_image)
        QuantizeSession(gradient_image).render(3)
        assert np.array_equal(np.array(gradient_image), before)
