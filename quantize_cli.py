#!/usr/bin/env python3
"""
CLI module for Mediancut Pie - Command-Line Interface

Reduces images to a median-cut palette, optionally with Floyd-Steinberg
dithering, driven by a JSON job file. Uses Rich for terminal output.
"""

import sys
import logging
import argparse
import json
from pathlib import Path
from typing import Optional, List, Dict, Any, Tuple

# Rich imports for terminal output
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn
from rich.panel import Panel

# Local imports
from quantize_lib import (
    DitherMode,
    EdgePolicy,
    ImageQuantizer,
    QuantizeSession,
    TreeVariant,
)
from utils import (
    PaletteManager,
    compose_side_by_side,
    list_image_files,
    palette_to_hex_list,
    prepare_for_save,
    resize_nearest,
    sized_output_path,
    validate_image_file,
)
from config_manager import ConfigManager
from PIL import Image


# Initialize Rich console
console = Console()

logger = logging.getLogger('mediancut_pie')


def setup_logging(verbose: bool = False, quiet: bool = False, log_file: Optional[str] = None):
    """
    Setup logging with Rich handler for terminal output.

    Args:
        verbose: Enable verbose (DEBUG) logging
        quiet: Suppress all but ERROR messages
        log_file: Optional path to log file
    """
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    handlers = []

    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        markup=True,
        rich_tracebacks=True
    )
    handlers.append(rich_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True
    )

    logger.setLevel(level)
    return logger


class CLIProgress:
    """
    Rich progress bar for jobs that produce several outputs (folders, sweeps).
    """

    def __init__(self, total: int, description: str = "Processing..."):
        self.total = total
        self.description = description
        self.progress = None
        self.task = None

    def __enter__(self):
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console
        )
        self.progress.__enter__()
        self.task = self.progress.add_task(self.description, total=self.total)
        return self

    def __exit__(self, *args):
        if self.progress:
            self.progress.__exit__(*args)

    def advance(self, message: str):
        """Mark one item done and show what was just finished."""
        if self.progress and self.task is not None:
            self.progress.update(self.task, advance=1, description=message)

    def finish(self):
        if self.progress and self.task is not None:
            self.progress.update(self.task, completed=self.total, description="Complete!")


# ==================== Config Schema & Validation ====================

VALID_MODES = ["image", "folder"]
VALID_TREES = [variant.value for variant in TreeVariant]
VALID_DITHER_MODES = [mode.value for mode in DitherMode]
VALID_EDGE_POLICIES = [policy.value for policy in EdgePolicy]


class ConfigValidationError(Exception):
    """Raised when config validation fails."""
    pass


def _check_int(section: Dict[str, Any], key: str, label: str, minimum: int, errors: List[str]):
    if key not in section:
        return
    value = section[key]
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        errors.append(f"'{label}' must be an integer")
        return
    if value < minimum:
        errors.append(f"'{label}' must be >= {minimum}")


def _check_bool(section: Dict[str, Any], key: str, label: str, errors: List[str]):
    if key in section and not isinstance(section[key], bool):
        errors.append(f"'{label}' must be true or false")


def _check_name(section: Dict[str, Any], key: str, label: str, errors: List[str]):
    if key in section and section[key] is not None:
        if not isinstance(section[key], str) or not section[key].strip():
            errors.append(f"'{label}' must be a non-empty string")


def validate_config(config: Dict[str, Any], config_path: Path,
                    defaults: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Validate configuration and return normalized config.

    Args:
        config: Raw config dictionary
        config_path: Path to config file (for resolving relative paths)
        defaults: Preference defaults for fields the job leaves out

    Returns:
        Validated and normalized config

    Raises:
        ConfigValidationError: If validation fails
    """
    if not isinstance(config, dict):
        raise ConfigValidationError("Configuration must be a JSON object")

    prefs = dict(ConfigManager.DEFAULT_CONFIG["defaults"])
    prefs.update(defaults or {})

    errors = []

    # Required fields
    if "input" not in config:
        errors.append("Missing required field: 'input'")

    if "output" not in config:
        errors.append("Missing required field: 'output'")

    mode = config.get("mode")
    if mode and mode not in VALID_MODES:
        errors.append(f"Invalid mode: '{mode}'. Must be one of: {VALID_MODES}")

    sections = ["palette", "dithering", "preview", "sweep", "final_resize"]
    for name in sections:
        if name in config and not isinstance(config[name], dict):
            errors.append(f"'{name}' must be an object/dictionary")

    pal = config.get("palette")
    if isinstance(pal, dict):
        _check_int(pal, "num_colors", "palette.num_colors", 1, errors)
        if "tree" in pal and pal["tree"] not in VALID_TREES:
            errors.append(f"Invalid tree variant: '{pal['tree']}'. Must be one of: {VALID_TREES}")
        _check_name(pal, "save_as", "palette.save_as", errors)
        _check_name(pal, "use", "palette.use", errors)

    dith = config.get("dithering")
    if isinstance(dith, dict):
        _check_bool(dith, "enabled", "dithering.enabled", errors)
        if "mode" in dith and dith["mode"] not in VALID_DITHER_MODES:
            errors.append(f"Invalid dither mode: '{dith['mode']}'. Must be one of: {VALID_DITHER_MODES}")
        if "edge_policy" in dith and dith["edge_policy"] not in VALID_EDGE_POLICIES:
            errors.append(f"Invalid edge policy: '{dith['edge_policy']}'. Must be one of: {VALID_EDGE_POLICIES}")

    preview = config.get("preview")
    if isinstance(preview, dict):
        _check_bool(preview, "side_by_side", "preview.side_by_side", errors)

    sweep = config.get("sweep")
    if isinstance(sweep, dict):
        _check_bool(sweep, "enabled", "sweep.enabled", errors)
        _check_int(sweep, "min", "sweep.min", 1, errors)
        _check_int(sweep, "max", "sweep.max", 1, errors)
        try:
            if int(sweep.get("min", prefs["sweep_min"])) > int(sweep.get("max", prefs["sweep_max"])):
                errors.append("'sweep.min' must not exceed 'sweep.max'")
        except (ValueError, TypeError):
            pass  # already reported above
        if sweep.get("enabled") is True and isinstance(pal, dict) and pal.get("use"):
            errors.append("'palette.use' cannot be combined with a sweep")

    resize = config.get("final_resize")
    if isinstance(resize, dict):
        _check_bool(resize, "enabled", "final_resize.enabled", errors)
        _check_int(resize, "multiplier", "final_resize.multiplier", 1, errors)

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  • {e}" for e in errors)
        raise ConfigValidationError(error_msg)

    # Normalize paths (resolve relative to config file)
    config_dir = config_path.parent

    input_path = Path(config["input"])
    if not input_path.is_absolute():
        input_path = (config_dir / input_path).resolve()
    config["input"] = str(input_path)

    output_path = Path(config["output"])
    if not output_path.is_absolute():
        output_path = (config_dir / output_path).resolve()
    config["output"] = str(output_path)

    if not Path(config["input"]).exists():
        raise ConfigValidationError(f"Input file/directory not found: {config['input']}")

    # Set defaults for optional fields
    config.setdefault("mode", None)  # Will be auto-detected
    config.setdefault("palette", {})
    config.setdefault("dithering", {})
    config.setdefault("preview", {})
    config.setdefault("sweep", {})
    config.setdefault("final_resize", {})

    config["palette"].setdefault("num_colors", prefs["num_colors"])
    config["palette"].setdefault("tree", prefs["tree"])
    config["palette"].setdefault("save_as", None)
    config["palette"].setdefault("use", None)
    config["palette"]["num_colors"] = int(config["palette"]["num_colors"])

    config["dithering"].setdefault("enabled", True)
    config["dithering"].setdefault("mode", prefs["dither_mode"])
    config["dithering"].setdefault("edge_policy", prefs["edge_policy"])

    config["preview"].setdefault("side_by_side", False)

    config["sweep"].setdefault("enabled", False)
    config["sweep"].setdefault("min", prefs["sweep_min"])
    config["sweep"].setdefault("max", prefs["sweep_max"])
    config["sweep"]["min"] = int(config["sweep"]["min"])
    config["sweep"]["max"] = int(config["sweep"]["max"])

    config["final_resize"].setdefault("enabled", False)
    config["final_resize"].setdefault("multiplier", 2)
    config["final_resize"]["multiplier"] = int(config["final_resize"]["multiplier"])

    return config


def load_config(config_path: Path, defaults: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Load and validate configuration from JSON file.

    Raises:
        ConfigValidationError: If validation fails
    """
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigValidationError(f"Invalid JSON in config file:\n  Line {e.lineno}: {e.msg}")
    except OSError as e:
        raise ConfigValidationError(f"Failed to load config file: {e}")

    return validate_config(config, config_path, defaults)


def detect_mode(input_path: Path) -> str:
    """
    Auto-detect processing mode based on input path.

    Returns:
        Mode string: "image" or "folder"
    """
    if input_path.is_dir():
        return "folder"

    if validate_image_file(str(input_path)):
        return "image"
    raise ConfigValidationError(f"Cannot determine mode for file extension: {input_path.suffix.lower()}")


def load_saved_palette(name: str, palette_file: str) -> List[Tuple[int, int, int]]:
    """
    Look up a palette stored in the palette library.

    Raises:
        ConfigValidationError: If the palette is missing, empty or malformed
    """
    manager = PaletteManager(palette_file)
    try:
        colors = manager.get_palette_colors_rgb(name)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise ConfigValidationError(f"Saved palette '{name}' is malformed: {e}")
    if colors is None:
        available = ", ".join(manager.list_palette_names()) or "none"
        raise ConfigValidationError(
            f"Unknown palette '{name}' in {palette_file}. Saved palettes: {available}")
    if not colors:
        raise ConfigValidationError(f"Saved palette '{name}' has no colors")
    return colors



# ==================== Rendering ====================

def make_quantizer(config: Dict[str, Any], num_colors: Optional[int] = None) -> ImageQuantizer:
    """Build an ImageQuantizer from the palette and dithering sections."""
    dithering = config["dithering"]
    dither_mode = DitherMode(dithering["mode"]) if dithering["enabled"] else DitherMode.NONE
    return ImageQuantizer(
        num_colors=num_colors if num_colors is not None else config["palette"]["num_colors"],
        dither_mode=dither_mode,
        tree_variant=TreeVariant(config["palette"]["tree"]),
        edge_policy=EdgePolicy(dithering["edge_policy"]),
        palette=config["palette"].get("colors")
    )


def finish_image(original: Image.Image, result: Image.Image, config: Dict[str, Any]) -> Image.Image:
    """Apply the preview layout and final resize to a rendered image."""
    if config["preview"]["side_by_side"]:
        result = compose_side_by_side(original, result)
    if config["final_resize"]["enabled"]:
        multiplier = config["final_resize"]["multiplier"]
        result = resize_nearest(result, multiplier)
        logger.debug(f"Resized ×{multiplier} to {result.size[0]}x{result.size[1]}")
    return result


def save_image(image: Image.Image, output_path: Path):
    output_path.parent.mkdir(parents=True, exist_ok=True)
    prepare_for_save(image, output_path).save(output_path)


def store_palette(name: str, palette, palette_file: str):
    """Record a generated palette in the palette library."""
    manager = PaletteManager(palette_file)
    manager.add_palette(name, palette_to_hex_list(palette))
    logger.info(f"Saved palette [cyan]{name}[/] to {palette_file}")


def _load_image(path: Path) -> Image.Image:
    with Image.open(path) as img:
        img.load()
        return img.copy()


# ==================== Image Processing ====================

def process_single_image(config: Dict[str, Any], palette_file: str = "palette.json") -> bool:
    """
    Quantize a single image.

    Args:
        config: Validated configuration dictionary
        palette_file: Palette library used by 'palette.save_as'

    Returns:
        True if successful, False otherwise
    """
    try:
        input_path = Path(config["input"])
        output_path = Path(config["output"])

        logger.info(f"Loading image: [cyan]{input_path.name}[/]")
        image = _load_image(input_path)
        logger.info(f"Image size: [cyan]{image.size[0]}x{image.size[1]}[/]")

        quantizer = make_quantizer(config)
        if quantizer.palette is None:
            logger.info(f"Generating palette: [cyan]{quantizer.tree_variant.value}[/] median cut "
                        f"({quantizer.num_colors} colors)")
        else:
            logger.info(f"Using saved palette: [cyan]{config['palette']['use']}[/]")
        result = quantizer.apply(image)
        logger.info(f"[green]✓[/] Palette ready with {len(quantizer.palette)} colors, "
                    f"rendered with [cyan]{quantizer.dither_mode.value}[/]")

        if config["palette"]["save_as"]:
            store_palette(config["palette"]["save_as"], quantizer.palette, palette_file)

        result = finish_image(image, result, config)

        logger.info(f"Saving to: [cyan]{output_path}[/]")
        save_image(result, output_path)

        size_kb = output_path.stat().st_size / 1024
        logger.info(f"[bold green]✓ Image saved successfully![/] ({size_kb:.1f} KB)")
        return True

    except Exception as e:
        logger.error(f"Failed to process image: {e}", exc_info=True)
        return False


def process_sweep(config: Dict[str, Any], palette_file: str = "palette.json") -> bool:
    """
    Render one image at every palette size in the sweep range, writing
    '<stem>_<n><suffix>' next to the configured output. With
    'palette.save_as', each size's palette is stored as '<name>:<n>'.
    """
    try:
        input_path = Path(config["input"])
        output_path = Path(config["output"])
        lo, hi = config["sweep"]["min"], config["sweep"]["max"]
        save_as = config["palette"]["save_as"]

        logger.info(f"Sweeping [cyan]{input_path.name}[/] over {lo}..{hi} colors")
        image = _load_image(input_path)
        session = QuantizeSession(image)
        template = make_quantizer(config)

        with CLIProgress(hi - lo + 1, "Rendering palette sizes...") as progress:
            for num_colors in range(lo, hi + 1):
                result = session.render(num_colors, template.dither_mode,
                                        template.tree_variant, template.edge_policy)
                target = sized_output_path(output_path, num_colors)
                save_image(finish_image(image, result, config), target)
                if save_as:
                    store_palette(f"{save_as}:{num_colors}", session.palette, palette_file)
                progress.advance(f"{num_colors} colors → {target.name}")
            progress.finish()


        logger.info(f"[bold green]✓ Wrote {session.recompute_count} renders[/]")
        return True

    except Exception as e:
        logger.error(f"Failed to sweep image: {e}", exc_info=True)
        return False


def process_folder(config: Dict[str, Any], palette_file: str = "palette.json") -> bool:
    """
    Quantize every image in the input folder into the output folder.
    Each image gets its own palette.
    """
    input_dir = Path(config["input"])
    output_dir = Path(config["output"])

    files = list_image_files(str(input_dir))
    if not files:
        logger.error(f"No supported images found in: {input_dir}")
        return False
    if config["sweep"]["enabled"]:
        logger.warning("Sweep is ignored in folder mode")

    failed = []
    with CLIProgress(len(files), "Processing folder...") as progress:
        for path in files:
            item = dict(config, input=str(path), output=str(output_dir / path.name))
            item["palette"] = dict(config["palette"])
            if item["palette"]["save_as"]:
                item["palette"]["save_as"] = f"{config['palette']['save_as']}:{path.stem}"
            if not process_single_image(item, palette_file):
                failed.append(path.name)
            progress.advance(path.name)
        progress.finish()

    if failed:
        logger.error(f"{len(failed)} of {len(files)} images failed: {', '.join(failed)}")
        return False
    logger.info(f"[bold green]✓ Processed {len(files)} images[/]")
    return True


def show_banner():
    """Display application banner."""
    banner = """
[bold cyan]╔═══════════════════════════════════════╗[/]
[bold cyan]║[/]     [bold white]Mediancut Pie CLI[/] [dim]- v1.0[/]        [bold cyan]║[/]
[bold cyan]║[/]  Palette Quantization & Dithering     [bold cyan]║[/]
[bold cyan]╚═══════════════════════════════════════╝[/]
"""
    console.print(banner)


def show_help():
    """Display detailed help information."""
    help_text = """
[bold cyan]Mediancut Pie CLI - Usage[/]

[bold]Basic Usage:[/]
  mediancut-pie <job.json>            Process with JSON config
  mediancut-pie --help                Show this help
  mediancut-pie --example-config      Generate example config

[bold]Options:[/]
  --verbose, -v     Enable verbose output
  --quiet, -q       Suppress all but error messages
  --log-file FILE   Write log to file
  --prefs FILE      Preferences file (default: quantizer_prefs.json)

[bold]Examples:[/]
  # Quantize one image
  mediancut-pie jobs/cat.json

  # Quantize a folder with verbose output
  mediancut-pie -v jobs/folder.json
"""
    console.print(help_text)

    console.print("  [bold]Rendering modes:[/]")
    for mode in DitherMode:
        console.print(f"    • [cyan]{mode.value}[/]")
    console.print("  [bold]Tree variants:[/]")
    for variant in TreeVariant:
        console.print(f"    • [cyan]{variant.value}[/]")
    console.print("  [bold]Edge policies:[/]")
    for policy in EdgePolicy:
        console.print(f"    • [cyan]{policy.value}[/]")
    console.print()


def example_config() -> Dict[str, Any]:
    return {
        "_comment": "Mediancut Pie CLI Configuration",
        "input": "path/to/input.png",
        "output": "path/to/output.png",
        "mode": "image",
        "palette": {
            "_comment_tree": "Options: standard, modified",
            "num_colors": 5,
            "tree": "standard",
            "save_as": "my_palette",
            "_comment_use": "Name of a saved palette to render with instead of generating one",
            "use": None
        },
        "dithering": {
            "enabled": True,
            "mode": "floyd_steinberg",
            "_comment_edge_policy": "Options: skip, wrap",
            "edge_policy": "skip"
        },
        "preview": {
            "side_by_side": False
        },
        "sweep": {
            "enabled": False,
            "min": 2,
            "max": 8
        },
        "final_resize": {
            "enabled": False,
            "multiplier": 2
        }
    }


def generate_example_config():
    """Print an example configuration file."""
    example_json = json.dumps(example_config(), indent=4)

    console.print("\n[bold cyan]Example Configuration:[/]\n")
    console.print(Panel(example_json, title="job.json", border_style="cyan"))
    console.print("\n[dim]Save this to a .json file and modify as needed.[/]\n")


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Mediancut Pie CLI - Palette Quantization & Dithering",
        add_help=False  # We'll handle help ourselves
    )

    parser.add_argument('config', nargs='?', help='Path to JSON configuration file')
    parser.add_argument('--help', '-h', action='store_true', help='Show help')
    parser.add_argument('--example-config', action='store_true', help='Generate example config')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    parser.add_argument('--quiet', '-q', action='store_true', help='Quiet mode (errors only)')
    parser.add_argument('--log-file', type=str, help='Log to file')
    parser.add_argument('--prefs', type=str, default='quantizer_prefs.json', help='Preferences file')

    args = parser.parse_args(argv)

    # Handle special commands first (before logging setup)
    if args.help:
        show_banner()
        show_help()
        sys.exit(0)

    if args.example_config:
        show_banner()
        generate_example_config()
        sys.exit(0)

    setup_logging(verbose=args.verbose, quiet=args.quiet, log_file=args.log_file)

    if not args.quiet:
        show_banner()

    if not args.config:
        console.print("[bold red]Error:[/] No configuration file specified.\n")
        console.print("Usage: mediancut-pie <job.json>")
        console.print("       mediancut-pie --help\n")
        sys.exit(1)

    config_path = Path(args.config)
    if not config_path.exists():
        logger.error(f"Configuration file not found: {config_path}")
        sys.exit(1)

    prefs = ConfigManager(args.prefs)

    logger.info(f"Loading configuration from: [cyan]{config_path}[/]")
    try:
        config = load_config(config_path, prefs.get("defaults", default={}))
    except ConfigValidationError as e:
        logger.error(f"[bold red]{e}[/]")
        sys.exit(1)

    logger.info("[green]✓[/] Configuration validated")

    if not config["mode"]:
        try:
            config["mode"] = detect_mode(Path(config["input"]))
            logger.info(f"Auto-detected mode: [cyan]{config['mode']}[/]")
        except ConfigValidationError as e:
            logger.error(f"{e}")
            sys.exit(1)

    logger.info(f"Input:  [cyan]{config['input']}[/]")
    logger.info(f"Output: [cyan]{config['output']}[/]")
    logger.info(f"Mode:   [cyan]{config['mode']}[/]")
    palette_file = prefs.get("palette_file", default="palette.json")
    if config["palette"]["use"]:
        try:
            config["palette"]["colors"] = load_saved_palette(config["palette"]["use"], palette_file)
        except ConfigValidationError as e:
            logger.error(f"{e}")
            sys.exit(1)
        logger.info(f"Palette: saved [yellow]{config['palette']['use']}[/] "
                    f"({len(config['palette']['colors'])} colors)")
    else:
        logger.info(f"Palette: [yellow]{config['palette']['tree']}[/] ({config['palette']['num_colors']} colors)")
    if config["dithering"]["enabled"]:
        logger.info(f"Dithering: [yellow]{config['dithering']['mode']}[/] "
                    f"(edges: {config['dithering']['edge_policy']})")
    else:
        logger.info("Dithering: [dim]disabled[/]")

    logger.info("")

    mode = config["mode"]
    if mode == "folder":
        success = process_folder(config, palette_file)
    elif config["sweep"]["enabled"]:
        success = process_sweep(config, palette_file)
    else:
        success = process_single_image(config, palette_file)

    if success:
        prefs.update_last_path("input", config["input"])
        prefs.update_last_path("output", config["output"])
        prefs.add_recent_file(config["output"])
        prefs.save()
        logger.info("")
        logger.info("[bold green]✓ Processing complete![/]")
        sys.exit(0)
    else:
        logger.error("")
        logger.error("[bold red]✗ Processing failed![/]")
        sys.exit(1)


if __name__ == "__main__":
    main()
