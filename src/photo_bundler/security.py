"""
Name sanitization for archive entries and object keys.

File names arrive from browser uploads and end up as entries in a ZIP that a
customer extracts on their own machine, so every entry name is reduced to a
flat, portable name. The same rules keep event ids safe inside object keys.

The primary focus is preventing:
- Path traversal on extraction (../../../etc/passwd)
- Entries that land in a directory other than the extraction root
- Cross-platform surprises from reserved or non-printable characters
"""

import re

from .exceptions import ValidationError

# Module-level constants for improved performance
_UNSAFE_ENTRY_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_ONLY_DOTS = re.compile(r"^\.*$")

# Windows reserved device names (case-insensitive)
_WINDOWS_DEVICE_NAMES: set[str] = {
    "CON", "PRN", "AUX", "NUL",
    "COM1", "COM2", "COM3", "COM4", "COM5", "COM6", "COM7", "COM8", "COM9",
    "LPT1", "LPT2", "LPT3", "LPT4", "LPT5", "LPT6", "LPT7", "LPT8", "LPT9"
}

# Archive entries and key components stay well inside filesystem limits
_MAX_NAME_LENGTH = 200


def default_entry_name(position: int) -> str:
    """Name used for an item without a usable file name (position is 1-based)."""
    return f"photo_{position}.jpg"


def sanitize_entry_name(name: str | None, position: int) -> str:
    """
    Reduce a user-supplied file name to a safe, flat archive entry name.

    Every character other than ASCII letters, digits, ``.``, ``_`` and ``-`` is
    replaced by ``_``. Because ``/`` and ``\\`` are replaced as well, the result
    never contains a directory component. Names that end up empty or made only
    of dots fall back to :func:`default_entry_name`.

    Examples:
        >>> sanitize_entry_name("IMG 7149 (1).jpg", 1)
        'IMG_7149__1_.jpg'

        >>> sanitize_entry_name("../../etc/passwd", 2)
        '.._.._etc_passwd'

        >>> sanitize_entry_name("..", 3)
        'photo_3.jpg'
    """
    if not name or not isinstance(name, str):
        return default_entry_name(position)

    safe = _UNSAFE_ENTRY_CHARS.sub("_", name.strip())
    if _ONLY_DOTS.match(safe):
        return default_entry_name(position)

    stem, dot, extension = safe.rpartition(".")
    if not dot:
        stem, extension = safe, ""
    if stem.upper() in _WINDOWS_DEVICE_NAMES:
        safe = f"_{safe}"

    if len(safe) > _MAX_NAME_LENGTH:
        suffix = f".{extension}" if dot and len(extension) < 16 else ""
        safe = safe[: _MAX_NAME_LENGTH - len(suffix)] + suffix

    return safe


def disambiguate_entry_name(name: str, taken: set[str]) -> str:
    """
    Return ``name`` or, if already used in this archive, ``stem_{k}.ext``
    with the smallest free k starting at 2.
    """
    if name not in taken:
        return name

    stem, dot, extension = name.rpartition(".")
    if not dot or not stem:
        stem, extension = name, ""
    suffix = f".{extension}" if extension else ""

    k = 2
    while f"{stem}_{k}{suffix}" in taken:
        k += 1
    return f"{stem}_{k}{suffix}"


def sanitize_key_component(value: str) -> str:
    """
    Validate a value (e.g. an event id) that is embedded in an object key.

    Raises:
        ValidationError: If nothing safe remains after sanitization.
    """
    if not isinstance(value, str):
        raise ValidationError(
            "Key component is not a valid string",
            error_code="INVALID_KEY_COMPONENT_TYPE",
            context={"value": value, "type": type(value).__name__},
        )

    safe = _UNSAFE_ENTRY_CHARS.sub("_", value.strip())[:_MAX_NAME_LENGTH]
    if _ONLY_DOTS.match(safe):
        raise ValidationError(
            "Key component is empty after sanitization",
            error_code="INVALID_KEY_COMPONENT",
            context={"value": value},
        )
    return safe
