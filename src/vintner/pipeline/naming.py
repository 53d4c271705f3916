"""
Filename keys and publish names.

Remote stages identify items by filename and are free to rename them, so every
cross-stage match goes through ``normalize``.
"""

from __future__ import annotations

import re


_PATH_SEP = re.compile(r"[\\/]")
_NON_ALNUM = re.compile(r"[^a-z0-9]", re.IGNORECASE)
_UNDERSCORES = re.compile(r"_+")


def normalize(name: str | None) -> str:
    """
    Return the correlation key for a filename.

    Takes the last path segment (splitting on ``/`` or ``\\``) and lower-cases
    it. Two files with the same basename in different folders share a key.

    Parameters:
        name: Filename, possibly with directories; ``None`` is treated as empty

    Returns:
        Lower-cased basename

    Example:
        >>> normalize("Shelf\\\\Left/Chateau_Margaux.JPG")
        'chateau_margaux.jpg'
    """
    if not name:
        return ""
    return _PATH_SEP.split(name)[-1].lower()


def safe_output_name(chosen: str | None, *, suffix: str = ".jpg") -> str:
    """
    Build the file name a published label is stored under.

    Every character outside ``[A-Za-z0-9]`` becomes ``_``, runs of ``_``
    collapse, and leading/trailing ``_`` are dropped.

    Example:
        >>> safe_output_name("Château Latour, 2010")
        'Ch_teau_Latour_2010.jpg'
    """
    cleaned = _UNDERSCORES.sub("_", _NON_ALNUM.sub("_", chosen or "unnamed")).strip("_")
    return (cleaned or "unnamed") + suffix
