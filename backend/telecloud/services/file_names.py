"""Display-name and chunk-name normalization."""
import re
import unicodedata
from typing import Optional

_COMBINING_MARKS = re.compile(r"[\u0300-\u036f]")
_DISALLOWED = re.compile(r"[^a-zA-Z0-9\s-]")
_WHITESPACE = re.compile(r"\s+")
_HYPHENS = re.compile(r"-+")


def split_extension(filename: str) -> tuple[str, str]:
    """Split on the last dot. Names without a dot have an empty extension."""
    if "." not in filename:
        return filename, ""
    base, _, extension = filename.rpartition(".")
    return base, extension


def format_file_name(filename: str, chunk_index: Optional[int] = None) -> str:
    """Normalize ``filename`` to a kebab-case ASCII base name.

    Diacritics are stripped, everything outside letters, digits, spaces and
    hyphens is dropped, whitespace runs become single hyphens and the result
    is lowercased. The extension is kept verbatim. With ``chunk_index`` the
    index is appended to the base name, which is how chunk objects are named
    on the backend::

        >>> format_file_name("Tệp tin (final)v2.PDF")
        'tep-tin-finalv2.PDF'
        >>> format_file_name("Tệp tin (final)v2.PDF", chunk_index=3)
        'tep-tin-finalv2-3.PDF'
    """
    base, extension = split_extension(filename)

    cleaned = unicodedata.normalize("NFD", base)
    cleaned = _COMBINING_MARKS.sub("", cleaned)
    cleaned = _DISALLOWED.sub("", cleaned).strip()

    kebab = _WHITESPACE.sub("-", cleaned.lower())
    kebab = _HYPHENS.sub("-", kebab)

    if chunk_index is not None:
        kebab = f"{kebab}-{chunk_index}"
    return f"{kebab}.{extension}" if extension else kebab
