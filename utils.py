"""
Utility functions for the quantization application.
"""

import json
import logging
import os
from pathlib import Path
from typing import List, Tuple, Dict, Optional
from PIL import Image

__all__ = [
    # Functions
    'load_palettes_from_file',
    'save_palettes_to_file',
    'hex_to_rgb',
    'rgb_to_hex',
    'palette_from_hex_list',
    'palette_to_hex_list',
    'validate_image_file',
    'list_image_files',
    'compose_side_by_side',
    'resize_nearest',
    'sized_output_path',
    'prepare_for_save',
    # Classes
    'PaletteManager',
]

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {'.png', '.jpg', '.jpeg', '.gif', '.bmp', '.tiff', '.webp'}

# Formats that cannot store an alpha channel.
NO_ALPHA_EXTENSIONS = {'.jpg', '.jpeg', '.bmp'}


def load_palettes_from_file(filepath: str = "palette.json") -> List[Dict]:
    """
    Load saved palettes from JSON file.

    Args:
        filepath: Path to palette JSON file

    Returns:
        List of palette dictionaries with 'name' and 'colors' keys
    """
    if not os.path.exists(filepath):
        return []

    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            palettes = json.load(f)
        return palettes if isinstance(palettes, list) else []
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Error loading palettes from {filepath}: {e}")
        return []


def save_palettes_to_file(palettes: List[Dict], filepath: str = "palette.json"):
    """
    Save palettes to JSON file.

    Args:
        palettes: List of palette dictionaries
        filepath: Path to save JSON file
    """
    try:
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(palettes, f, indent=4)
    except OSError as e:
        logger.warning(f"Error saving palettes to {filepath}: {e}")


def hex_to_rgb(hex_color: str) -> Tuple[int, int, int]:
    """
    Convert hex color string to RGB tuple.

    Args:
        hex_color: Hex string like "#FF0000" or "FF0000"

    Returns:
        RGB tuple (r, g, b)
    """
    hex_color = hex_color.lstrip('#')
    if len(hex_color) != 6:
        raise ValueError(f"Invalid hex color: {hex_color}")
    return tuple(int(hex_color[i:i+2], 16) for i in (0, 2, 4))


def rgb_to_hex(rgb: Tuple[int, int, int]) -> str:
    """
    Convert RGB tuple to hex color string.

    Args:
        rgb: RGB tuple (r, g, b)

    Returns:
        Hex string like "#ff0000"
    """
    return f'#{rgb[0]:02x}{rgb[1]:02x}{rgb[2]:02x}'


def palette_from_hex_list(hex_list: List[str]) -> List[Tuple[int, int, int]]:
    """Convert list of hex colors to palette (list of RGB tuples)."""
    return [hex_to_rgb(h) for h in hex_list]


def palette_to_hex_list(palette: List[Tuple[int, int, int]]) -> List[str]:
    return [rgb_to_hex(c) for c in palette]


def validate_image_file(filepath: str) -> bool:
    """
    Check if file is a valid image file.

    Args:
        filepath: Path to image file

    Returns:
        True if valid image file
    """
    ext = os.path.splitext(filepath)[1].lower()
    return ext in IMAGE_EXTENSIONS and os.path.exists(filepath)


def list_image_files(folder: str) -> List[Path]:
    """Image files directly inside folder, sorted by name."""
    return sorted(
        p for p in Path(folder).iterdir()
        if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS
    )


def compose_side_by_side(original: Image.Image, processed: Image.Image) -> Image.Image:
    """
    Place the original on the left and the processed image on the right
    of one canvas, twice as wide as the original.
    """
    mode = 'RGBA' if 'A' in processed.getbands() else 'RGB'
    canvas = Image.new(mode, (original.width * 2, original.height))
    canvas.paste(original.convert(mode), (0, 0))
    canvas.paste(processed.convert(mode), (original.width, 0))
    return canvas


def resize_nearest(image: Image.Image, multiplier: int) -> Image.Image:
    """Scale up by an integer factor without smoothing."""
    w, h = image.size
    return image.resize((w * multiplier, h * multiplier), Image.Resampling.NEAREST)


def sized_output_path(output_path: Path, num_colors: int) -> Path:
    """'out.png' -> 'out_5.png' for a 5-color render."""
    return output_path.with_name(f"{output_path.stem}_{num_colors}{output_path.suffix}")


def prepare_for_save(image: Image.Image, output_path: Path) -> Image.Image:
    """Drop the alpha channel when the target format cannot store it."""
    if output_path.suffix.lower() in NO_ALPHA_EXTENSIONS and image.mode != 'RGB':
        return image.convert('RGB')
    return image


class PaletteManager:
    """
    Manages saved palettes with loading, saving, and lookup.
    """

    def __init__(self, filepath: str = "palette.json"):
        self.filepath = filepath
        self.palettes = []
        self.load()

    def load(self):
        """Load palettes from file."""
        self.palettes = load_palettes_from_file(self.filepath)

    def save(self):
        """Save palettes to file."""
        save_palettes_to_file(self.palettes, self.filepath)

    def add_palette(self, name: str, colors: List[str]):
        """Add a new palette, replacing any palette with the same name."""
        for pal in self.palettes:
            if pal['name'] == name:
                pal['colors'] = colors
                self.save()
                return

        self.palettes.append({'name': name, 'colors': colors})
        self.save()

    def get_palette(self, name: str) -> Optional[Dict]:
        """Get palette by name."""
        for pal in self.palettes:
            if pal['name'] == name:
                return pal
        return None

    def get_palette_colors_rgb(self, name: str) -> Optional[List[Tuple[int, int, int]]]:
        """Get palette colors as RGB tuples."""
        pal = self.get_palette(name)
        if pal:
            return palette_from_hex_list(pal['colors'])
        return None

    def list_palette_names(self) -> List[str]:
        """Get list of all palette names."""
        return [p['name'] for p in self.palettes]
