"""Object key legality and remediation.

Local paths are untrusted: they may contain spaces, punctuation and
non-Latin scripts that cloud providers either reject or mangle. These
helpers turn any path into a conservative ASCII key that is legal on
both S3 and Cloud Storage.

A legal key:
    - is relative (no leading ``/``) and has no empty segments
    - has directory segments made of ``[-A-Za-z0-9_]`` only
    - has a filename of the form ``[.]base[.ext]`` built from the same
      characters, so it never ends in ``.`` and has at most one extension
"""

from __future__ import annotations

import logging
import re
from typing import Collection, List, Optional, Tuple

from unidecode import unidecode

logger = logging.getLogger(__name__)

__all__ = ["is_legal_key", "remediate_key", "split_filename"]

RESERVED_KEYS = ("", ".", "..", "/")

_ILLEGAL_CHARS = re.compile(r"[^-a-zA-Z0-9_]")
_LEGAL_SEGMENT = re.compile(r"^[-a-zA-Z0-9_]+$")
_LEGAL_FILENAME = re.compile(r"^\.?[-a-zA-Z0-9_]+(\.[-a-zA-Z0-9_]+)?$")


def is_legal_key(key: str) -> bool:
    """Return True if ``key`` can be stored as-is with every provider.

    Example:
        >>> is_legal_key("top_dir/sub_dir/.hidden_file.txt")
        True
        >>> is_legal_key("top_dir/sub.dir/file.txt")
        False
    """
    if key in RESERVED_KEYS or key.startswith("/"):
        return False

    *directories, filename = key.split("/")
    if not _LEGAL_FILENAME.match(filename):
        return False
    return all(_LEGAL_SEGMENT.match(segment) for segment in directories)


def split_filename(filename: str) -> Tuple[str, str, Optional[str]]:
    """Split a filename into (hidden prefix, base, extension).

    The extension follows the last dot. A leading dot marks a hidden file
    and is never treated as an extension separator; a trailing dot does not
    start an extension.

    Example:
        >>> split_filename(".file.tar.gz")
        ('.', 'file.tar', 'gz')
    """
    hidden = "." if filename.startswith(".") else ""
    core = filename[len(hidden):]
    if "." in core and not core.endswith("."):
        base, extension = core.rsplit(".", 1)
        return hidden, base, extension
    return hidden, core, None


def _clean(value: str) -> str:
    cleaned = _ILLEGAL_CHARS.sub("_", unidecode(value, errors="preserve"))
    return cleaned or "_"


def _remediate_filename(filename: str) -> str:
    hidden, base, extension = split_filename(filename)
    remediated = f"{hidden}{_clean(base)}"
    if extension is not None:
        remediated = f"{remediated}.{_clean(extension)}"
    return remediated


def _with_suffix(key: str, suffix_num: int) -> str:
    directory, _, filename = key.rpartition("/")
    hidden, base, extension = split_filename(filename)
    filename = f"{hidden}{base}_{suffix_num}"
    if extension is not None:
        filename = f"{filename}.{extension}"
    return f"{directory}/{filename}" if directory else filename


def remediate_key(path: str, used_keys: Collection[str] = ()) -> str:
    """Map an arbitrary path to a legal, unused object key.

    Directory segments and the filename base/extension are transliterated
    to ASCII (best effort) and any remaining illegal characters become
    ``_``. Leading separators and empty segments are dropped. If the result
    is in ``used_keys``, ``_1``, ``_2``, ... is inserted before the extension
    until an unused key is found.

    Args:
        path: Proposed key or local path
        used_keys: Keys that must not be returned

    Returns:
        A key for which ``is_legal_key`` holds

    Raises:
        ValueError: If ``path`` has no usable segments

    Example:
        >>> remediate_key("/top_dîr/ça_sub dir/file .txt.txt")
        'top_dir/ca_sub_dir/file__txt.txt'
        >>> remediate_key("a.txt", {"a.txt", "a_1.txt"})
        'a_2.txt'
    """
    if path in RESERVED_KEYS:
        raise ValueError(f"Cannot remediate key: {path!r}")

    segments = [segment for segment in path.split("/") if segment]
    if not segments:
        raise ValueError(f"Cannot remediate key: {path!r}")

    *directories, filename = segments
    remediated: List[str] = [_clean(segment) for segment in directories]
    remediated.append(_remediate_filename(filename))
    key = "/".join(remediated)

    if key not in used_keys:
        return key

    suffix_num = 1
    candidate = _with_suffix(key, suffix_num)
    while candidate in used_keys:
        suffix_num += 1
        candidate = _with_suffix(key, suffix_num)

    logger.debug("Key %s already used, remediated to %s", key, candidate)
    return candidate
