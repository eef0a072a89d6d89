from __future__ import annotations

import os
import random
import logging
import tempfile
import functools
from typing import Any, Callable, List, Optional, Tuple


logger = logging.getLogger(__name__)


def get_callable_name(func: Callable) -> str:
    """Return the name of the underlying callable."""
    try:
        # If it's a functools.partial
        if isinstance(func, functools.partial):
            return get_callable_name(func.func)

        # If it's a named function
        if hasattr(func, '__name__') and func.__name__ != "<lambda>":
            return func.__name__

        # If it's a class/instance
        if hasattr(func, '__class__'):
            return f"{func.__class__.__name__} instance"

    except Exception:
        pass

    return repr(func)


def atomic_save(
    filepath: str,
    write_func: Callable[[Any], None],
    mode: str = "w",
    encoding: str = "utf-8",
    suffix: str = ".tmp",
    success_message: str = "",
    error_message: str = ""
) -> bool:
    """
    Atomically write to a file by first writing to a temp file and then replacing the target.

    Args:
        filepath: Final path to save the file to.
        write_func: A function that accepts a writable file object and writes the content.
        mode: File open mode ('w' for text, 'wb' for binary).
        encoding: Encoding for text mode.
        suffix: Suffix to use for the temporary file.
        success_message: Message to log if the file is saved successfully.
        error_message: Message to log if an error occurs.

    Returns:
        True if saved successfully, False otherwise.
    """
    directory = os.path.dirname(filepath) or "."
    temp_path = None

    try:
        os.makedirs(directory, exist_ok=True)
        with tempfile.NamedTemporaryFile(mode=mode, dir=directory, delete=False, suffix=suffix, encoding=encoding if "b" not in mode else None) as tmp_file:
            temp_path = tmp_file.name
            write_func(tmp_file)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())

        os.replace(temp_path, filepath)
        if success_message:
            logger.info(success_message)
        return True
    except Exception:
        if temp_path and os.path.exists(temp_path):
            try:
                os.remove(temp_path)
            except OSError:
                pass
        if error_message:
            logger.exception(error_message, exc_info=True, stack_info=True)
        else:
            logger.exception(f"Failed to save file '{filepath}'.", exc_info=True, stack_info=True)
        return False


def get_source_dir() -> str:
    """Return the source directory of the project."""
    this_fpath = os.path.abspath(__file__)
    utils_dir = os.path.dirname(this_fpath)
    rtc_app_dir = os.path.dirname(utils_dir)
    source_dir = os.path.dirname(rtc_app_dir)
    return source_dir


def normalize_rgb_color(color_data: Any, default: Optional[List[int]] = None) -> List[int]:
    """
    Normalize color data to valid RGB values [0-255].

    Args:
        color_data: Input color (list/tuple of 3 ints or numeric strings)
        default: Fallback color if invalid. If None, generates random.

    Returns:
        List of 3 integers in range [0, 255]
    """
    # Try to parse as integers
    try:
        if color_data is None or len(color_data) != 3:
            raise ValueError("Color must have exactly 3 components")

        color = [int(float(c)) for c in color_data]

    except (ValueError, TypeError, AttributeError):
        # Use default or generate random
        return list(default) if default else [random.randint(0, 255) for _ in range(3)]

    # Clamp to valid range
    return [min(max(c, 0), 255) for c in color]


def to_rgba(color_data: Any, alpha: int, default: Optional[List[int]] = None) -> Tuple[int, int, int, int]:
    """Normalize an RGB triplet and attach an alpha channel."""
    red, green, blue = normalize_rgb_color(color_data, default=default)
    return red, green, blue, min(max(int(alpha), 0), 255)
