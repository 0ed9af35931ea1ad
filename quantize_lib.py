"""
A Python library providing median-cut palette generation, nearest-color
palette matching, flat quantization and Floyd-Steinberg error diffusion.
Use this as a standalone library or import it from your application.
"""

import math
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
from PIL import Image
from scipy.spatial.distance import cdist

logger = logging.getLogger(__name__)

Color = Tuple[int, int, int]
PointSet = np.ndarray  # (N, 3) int64, buffer order

# Rows per cdist call when matching a whole buffer.
MATCH_CHUNK_ROWS = 65536


# -------------------- Errors --------------------

class QuantizeError(ValueError):
    """Base class for precondition failures in the quantization core."""


class EmptyInputError(QuantizeError):
    """Raised when a partition tree is built from zero points."""


class EmptyPaletteError(QuantizeError):
    """Raised when a pixel is matched against a palette with no entries."""


class InvalidPaletteSizeError(QuantizeError):
    """Raised when the requested palette size is below 1."""


# -------------------- Enumerations --------------------

class DitherMode(Enum):
    NONE = "none"
    FLOYD_STEINBERG = "floyd_steinberg"


class TreeVariant(Enum):
    STANDARD = "standard"
    MODIFIED = "modified"


class EdgePolicy(Enum):
    """
    What happens to diffused error whose target lies outside the image.

    SKIP drops it. WRAP addresses neighbours by flat index, so the right
    neighbour of the last column is the first pixel of the next row and the
    lower-left neighbour of the first column is the last pixel of the current
    row; only indices past the end of the buffer are dropped.
    """
    SKIP = "skip"
    WRAP = "wrap"


# -------------------- Pixel Buffer --------------------

@dataclass
class PixelBuffer:
    """
    Flat RGBA channel buffer, row-major, 4 values per pixel.

    Channels are held as signed 64-bit integers so that error diffusion can
    push them below 0 or above 255 while a buffer is being processed.
    """
    width: int
    height: int
    data: np.ndarray

    def __post_init__(self):
        if self.width < 0 or self.height < 0:
            raise ValueError(f"Invalid buffer size {self.width}x{self.height}")
        self.data = np.ascontiguousarray(self.data, dtype=np.int64).reshape(-1)
        expected = self.width * self.height * 4
        if self.data.size != expected:
            raise ValueError(
                f"Buffer holds {self.data.size} channels, expected {expected} "
                f"for a {self.width}x{self.height} RGBA image"
            )

    @classmethod
    def from_image(cls, image: Image.Image) -> "PixelBuffer":
        arr = np.array(image.convert('RGBA'), dtype=np.int64)
        return cls(image.width, image.height, arr.reshape(-1))

    def to_image(self) -> Image.Image:
        """Clip channels to 0..255 and return an RGBA image."""
        arr = np.clip(self.data, 0, 255).astype(np.uint8)
        return Image.fromarray(arr.reshape(self.height, self.width, 4))

    def copy(self) -> "PixelBuffer":
        return PixelBuffer(self.width, self.height, self.data.copy())

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    def pixels(self) -> np.ndarray:
        """Writable (width*height, 4) view of the channel data."""
        return self.data.reshape(-1, 4)

    def point_set(self) -> PointSet:
        """RGB samples of every pixel, in buffer order."""
        return self.pixels()[:, :3].copy()


# -------------------- Partition Tree --------------------

@dataclass(frozen=True, eq=False)
class LeafNode:
    points: PointSet


@dataclass(frozen=True, eq=False)
class SplitNode:
    axis: int
    pivot: Color
    left: "PartitionNode"
    right: "PartitionNode"


PartitionNode = Union[LeafNode, SplitNode]


class MedianCut:
    """
    Median-cut partitioning of color samples and palette derivation.

    A tree splits its points on the channel with the widest range, at the
    median of that channel (or, for the modified variant, at a cut shifted
    towards the side whose mean lies closer to the median value). Each leaf
    is averaged into one palette color.
    """

    @staticmethod
    def as_point_set(points: Union[Sequence[Sequence[int]], np.ndarray]) -> PointSet:
        arr = np.asarray(points, dtype=np.int64)
        if arr.size == 0:
            return arr.reshape(0, 3)
        if arr.ndim != 2 or arr.shape[1] != 3:
            raise ValueError(f"Expected (N, 3) color samples, got shape {arr.shape}")
        return arr

    @staticmethod
    def find_split_axis(points: PointSet) -> int:
        """Channel with the strictly largest range; the first channel wins ties."""
        ranges = points.max(axis=0) - points.min(axis=0)
        return int(np.argmax(ranges))

    @staticmethod
    def sort_on_axis(points: PointSet, axis: int) -> PointSet:
        order = np.argsort(points[:, axis], kind='stable')
        return points[order]

    @staticmethod
    def _median_cut(points: PointSet, axis: int, median: int) -> int:
        return median

    @staticmethod
    def _modified_cut(points: PointSet, axis: int, median: int) -> int:
        # The right mean includes the median sample, the left mean does not.
        values = points[:, axis]
        pivot_value = values[median]
        avg_left = values[:median].mean()
        avg_right = values[median:].mean()
        if abs(avg_left - pivot_value) > abs(avg_right - pivot_value):
            return median // 2
        return (3 * median) // 2

    @staticmethod
    def _build(points: PointSet, max_depth: int, depth: int, choose_cut) -> PartitionNode:
        # build() rejects an empty root and empty children become leaves below,
        # so this only fires on direct calls.
        if len(points) == 0:
            raise EmptyInputError("Cannot partition an empty point set")
        if depth >= max_depth or len(points) == 1:
            return LeafNode(points)

        axis = MedianCut.find_split_axis(points)
        points = MedianCut.sort_on_axis(points, axis)
        median = len(points) // 2
        cut = choose_cut(points, axis, median)

        # The sample at `cut` belongs to neither side.
        left, right = points[:cut], points[cut + 1:]
        if len(left) == 0 or len(right) == 0:
            return LeafNode(points)

        pivot = tuple(int(c) for c in points[median])
        return SplitNode(
            axis,
            pivot,
            MedianCut._build(left, max_depth, depth + 1, choose_cut),
            MedianCut._build(right, max_depth, depth + 1, choose_cut),
        )

    @staticmethod
    def build(points, max_depth: int) -> PartitionNode:
        """
        Build a standard median-cut tree.

        Args:
            points: (N, 3) color samples. Never modified.
            max_depth: Maximum number of splits from the root to any leaf.

        Returns:
            Root node of the tree.

        Raises:
            EmptyInputError: If no points are given.
        """
        point_set = MedianCut.as_point_set(points)
        if len(point_set) == 0:
            raise EmptyInputError("Cannot build a partition tree from zero points")
        return MedianCut._build(point_set, max_depth, 0, MedianCut._median_cut)

    @staticmethod
    def build_modified(points, max_depth: int) -> PartitionNode:
        """
        Build a variance-aware median-cut tree.

        Same as build(), except that the cut index moves to median // 2 when
        the left half's mean lies further from the median value than the
        right half's mean, and to 3 * median // 2 otherwise.
        """
        point_set = MedianCut.as_point_set(points)
        if len(point_set) == 0:
            raise EmptyInputError("Cannot build a partition tree from zero points")
        return MedianCut._build(point_set, max_depth, 0, MedianCut._modified_cut)

    @staticmethod
    def iter_leaves(node: PartitionNode) -> Iterator[LeafNode]:
        """Yield leaves left to right."""
        if isinstance(node, LeafNode):
            yield node
        elif isinstance(node, SplitNode):
            yield from MedianCut.iter_leaves(node.left)
            yield from MedianCut.iter_leaves(node.right)
        else:
            raise TypeError(f"Unknown partition node: {type(node).__name__}")

    @staticmethod
    def count_splits(node: PartitionNode) -> int:
        if isinstance(node, LeafNode):
            return 0
        if isinstance(node, SplitNode):
            return 1 + MedianCut.count_splits(node.left) + MedianCut.count_splits(node.right)
        raise TypeError(f"Unknown partition node: {type(node).__name__}")

    @staticmethod
    def average_leaves(node: PartitionNode) -> List[Color]:
        """
        Average every leaf into one color, in left-to-right leaf order.
        Channel means use floor division.
        """
        if isinstance(node, LeafNode):
            mean = node.points.sum(axis=0) // len(node.points)
            return [tuple(int(c) for c in mean)]
        if isinstance(node, SplitNode):
            return MedianCut.average_leaves(node.left) + MedianCut.average_leaves(node.right)
        raise TypeError(f"Unknown partition node: {type(node).__name__}")

    @staticmethod
    def palette_depth(palette_size: int) -> int:
        """Tree depth for a palette of palette_size colors: ceil(log2(palette_size))."""
        if palette_size < 1:
            raise InvalidPaletteSizeError(f"Palette size must be >= 1, got {palette_size}")
        return int(math.ceil(math.log2(palette_size)))

    @staticmethod
    def generate_palette(buffer: PixelBuffer, palette_size: int,
                         use_modified_tree: bool = False) -> List[Color]:
        """
        Generate a palette of at most 2 ** ceil(log2(palette_size)) colors
        from the RGB samples of a buffer.
        """
        depth = MedianCut.palette_depth(palette_size)
        points = buffer.point_set()
        if use_modified_tree:
            tree = MedianCut.build_modified(points, depth)
        else:
            tree = MedianCut.build(points, depth)
        palette = MedianCut.average_leaves(tree)
        logger.debug("Median cut (%s, depth %d): %d samples -> %d colors",
                     "modified" if use_modified_tree else "standard",
                     depth, len(points), len(palette))
        return palette


# -------------------- Palette Matching --------------------

class PaletteMatcher:
    """Nearest palette color by Euclidean distance in RGB space."""

    @staticmethod
    def color_distance(c1: Sequence[int], c2: Sequence[int]) -> float:
        return math.sqrt(
            (int(c1[0]) - int(c2[0])) ** 2 +
            (int(c1[1]) - int(c2[1])) ** 2 +
            (int(c1[2]) - int(c2[2])) ** 2)

    @staticmethod
    def closest(pixel: Sequence[int], palette: Sequence[Color]) -> Color:
        """
        Return the palette entry closest to pixel.
        On equal distances the entry that comes first in the palette wins.
        """
        if len(palette) == 0:
            raise EmptyPaletteError("Cannot match a pixel against an empty palette")
        minimum = math.inf
        closest_col = None
        for col in palette:
            d = PaletteMatcher.color_distance(pixel, col)
            if d < minimum:
                closest_col = col
                minimum = d
        return closest_col

    @staticmethod
    def closest_indices(pixels: np.ndarray, palette: Sequence[Color]) -> np.ndarray:
        """
        Vectorised closest(): palette index for every row of an (N, 3) array.
        argmin returns the first minimum, so ties resolve like closest().
        """
        if len(palette) == 0:
            raise EmptyPaletteError("Cannot match pixels against an empty palette")
        palette_arr = np.asarray(palette, dtype=np.float64)
        rgb = np.asarray(pixels, dtype=np.float64)[:, :3]
        out = np.empty(len(rgb), dtype=np.intp)
        for start in range(0, len(rgb), MATCH_CHUNK_ROWS):
            chunk = rgb[start:start + MATCH_CHUNK_ROWS]
            out[start:start + len(chunk)] = cdist(chunk, palette_arr).argmin(axis=1)
        return out


# -------------------- Strategies --------------------

class BaseDitherStrategy:
    """
    Base class for rendering strategies.
    Each strategy implements .apply(buffer, palette) and returns a new
    PixelBuffer of the same size with alpha untouched.
    """
    def apply(self, buffer: PixelBuffer, palette: Sequence[Color]) -> PixelBuffer:
        raise NotImplementedError


class NoDitherStrategy(BaseDitherStrategy):
    """
    No dithering at all; simply replace each pixel with its nearest palette color.
    """
    def apply(self, buffer: PixelBuffer, palette: Sequence[Color]) -> PixelBuffer:
        out = buffer.copy()
        pixels = out.pixels()
        if len(pixels) == 0:
            return out
        palette_arr = np.asarray(palette, dtype=np.int64)
        idx = PaletteMatcher.closest_indices(pixels, palette)
        pixels[:, :3] = palette_arr[idx]
        return out


class FloydSteinbergDitherStrategy(BaseDitherStrategy):
    """
    Floyd-Steinberg error diffusion against an arbitrary palette.

    Pixels are visited row-major. Each pixel is replaced by its nearest
    palette color and the per-channel error is added to the four unvisited
    neighbours, each share floored on its own:

           *   7
        3  5   1      (/16)
    """

    # (dx, dy, weight in sixteenths)
    KERNEL = ((1, 0, 7), (-1, 1, 3), (0, 1, 5), (1, 1, 1))

    def __init__(self, edge_policy: EdgePolicy = EdgePolicy.SKIP):
        self.edge_policy = EdgePolicy(edge_policy)

    def _target_index(self, x: int, y: int, width: int, height: int) -> Optional[int]:
        if self.edge_policy is EdgePolicy.SKIP:
            if 0 <= x < width and 0 <= y < height:
                return x + y * width
            return None
        index = x + y * width
        if 0 <= index < width * height:
            return index
        return None

    def _diffuse(self, pixels: np.ndarray, x: int, y: int, width: int, height: int,
                 quant_error: np.ndarray):
        for dx, dy, weight in self.KERNEL:
            j = self._target_index(x + dx, y + dy, width, height)
            if j is not None:
                pixels[j, :3] += (quant_error * weight) // 16

    def apply(self, buffer: PixelBuffer, palette: Sequence[Color]) -> PixelBuffer:
        if len(palette) == 0:
            raise EmptyPaletteError("Cannot dither against an empty palette")
        out = buffer.copy()
        pixels = out.pixels()
        palette_arr = np.asarray(palette, dtype=np.int64)
        w, h = out.width, out.height

        for y in range(h):
            for x in range(w):
                i = x + y * w
                oldpix = pixels[i, :3].copy()
                # Squared distance orders entries the same way as Euclidean distance.
                k = int(np.argmin(((palette_arr - oldpix) ** 2).sum(axis=1)))
                closest_col = palette_arr[k]
                pixels[i, :3] = closest_col
                self._diffuse(pixels, x, y, w, h, oldpix - closest_col)
        return out


# -------------------- Core Operations --------------------

def quantize(buffer: PixelBuffer, palette_size: int,
             use_modified_tree: bool = False) -> PixelBuffer:
    """
    Reduce a buffer to a median-cut palette of palette_size colors
    without error correction.
    """
    palette = MedianCut.generate_palette(buffer, palette_size, use_modified_tree)
    return NoDitherStrategy().apply(buffer, palette)


def dither(buffer: PixelBuffer, palette_size: int, use_modified_tree: bool = False,
           edge_policy: EdgePolicy = EdgePolicy.SKIP) -> PixelBuffer:
    """
    Reduce a buffer to a median-cut palette of palette_size colors,
    correcting for quantization error with Floyd-Steinberg diffusion.
    """
    palette = MedianCut.generate_palette(buffer, palette_size, use_modified_tree)
    return FloydSteinbergDitherStrategy(edge_policy).apply(buffer, palette)


# -------------------- Image Quantizer --------------------

class ImageQuantizer:
    """
    Orchestrates palette generation plus rendering (using a chosen strategy)
    for Pillow images.
    """
    def __init__(self,
                 num_colors: int = 5,
                 dither_mode: DitherMode = DitherMode.FLOYD_STEINBERG,
                 tree_variant: TreeVariant = TreeVariant.STANDARD,
                 edge_policy: EdgePolicy = EdgePolicy.SKIP,
                 palette: Optional[List[Color]] = None):
        self.num_colors = num_colors
        self.dither_mode = DitherMode(dither_mode)
        self.tree_variant = TreeVariant(tree_variant)
        self.edge_policy = EdgePolicy(edge_policy)
        self.palette = palette

    def _get_strategy(self) -> BaseDitherStrategy:
        if self.dither_mode == DitherMode.NONE:
            return NoDitherStrategy()
        elif self.dither_mode == DitherMode.FLOYD_STEINBERG:
            return FloydSteinbergDitherStrategy(self.edge_policy)
        else:
            raise ValueError(f"Unrecognized DitherMode: {self.dither_mode}")

    def build_palette(self, buffer: PixelBuffer) -> List[Color]:
        return MedianCut.generate_palette(
            buffer, self.num_colors,
            use_modified_tree=self.tree_variant == TreeVariant.MODIFIED)

    def apply(self, image: Image.Image) -> Image.Image:
        """
        Quantize an image. The palette is generated from the image on first
        use and kept on self.palette.

        Images without transparency come back as RGB, all others as RGBA.
        """
        has_alpha = 'A' in image.getbands() or 'transparency' in image.info
        buffer = PixelBuffer.from_image(image)
        if self.palette is None:
            self.palette = self.build_palette(buffer)
        result = self._get_strategy().apply(buffer, self.palette).to_image()
        return result if has_alpha else result.convert('RGB')


class QuantizeSession:
    """
    Holds one source image and re-renders it on demand. Work is only redone
    when one of the render parameters differs from the previous call.
    """
    def __init__(self, image: Image.Image):
        self.original = image.copy()
        self.recompute_count = 0
        self._last_key = None
        self._last_result: Optional[Image.Image] = None
        self._last_palette: Optional[List[Color]] = None

    @property
    def palette(self) -> Optional[List[Color]]:
        return self._last_palette

    def render(self, num_colors: int,
               dither_mode: DitherMode = DitherMode.FLOYD_STEINBERG,
               tree_variant: TreeVariant = TreeVariant.STANDARD,
               edge_policy: EdgePolicy = EdgePolicy.SKIP) -> Image.Image:
        key = (num_colors, DitherMode(dither_mode), TreeVariant(tree_variant),
               EdgePolicy(edge_policy))
        if key != self._last_key:
            quantizer = ImageQuantizer(*key)
            self._last_result = quantizer.apply(self.original)
            self._last_palette = quantizer.palette
            self._last_key = key
            self.recompute_count += 1
        return self._last_result
