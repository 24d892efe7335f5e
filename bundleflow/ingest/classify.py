"""
Bundleflow - Bundle Classification

Decides how an arriving object is handled: as an archive of members, as a
single spreadsheet, or not at all. The file suffix decides first; objects
with an unknown suffix fall back to their leading bytes.

Note that .xlsx/.xlsm files are ZIP containers themselves, so a ZIP
signature alone does not mean "archive": a container holding an OOXML
workbook ([Content_Types].xml plus an xl/ part) is a single spreadsheet.
"""

from __future__ import annotations

import io
import posixpath
import re
import zipfile
from enum import Enum

from bundleflow.core.config import Settings

ZIP_SIGNATURE = b"PK\x03\x04"
OLE2_SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"  # legacy .xls


class BundleKind(str, Enum):
    ARCHIVE = "archive"
    SINGLE_FILE = "single_file"
    UNSUPPORTED = "unsupported"


def suffix_of(name: str) -> str:
    return posixpath.splitext(name)[1].lower()


def member_basename(member_name: str) -> str:
    """Final path component of an archive member ('dir/a.xlsx' -> 'a.xlsx')."""
    return posixpath.basename(member_name.replace("\\", "/"))


def is_supported_file(name: str, settings: Settings) -> bool:
    return suffix_of(name) in settings.supported_extensions


def _looks_like_workbook(content: bytes) -> bool:
    try:
        with zipfile.ZipFile(io.BytesIO(content)) as zf:
            names = zf.namelist()
    except zipfile.BadZipFile:
        return False
    return "[Content_Types].xml" in names and any(n.startswith("xl/") for n in names)


def classify_bundle(name: str, content: bytes | None, settings: Settings) -> BundleKind:
    """
    Classify an arriving object.

    Args:
        name: Object name in incoming/.
        content: Object bytes, used only when the suffix is not recognised.
        settings: Supplies the archive and single-file extension lists.
    """
    suffix = suffix_of(name)
    if suffix in settings.archive_extensions:
        return BundleKind.ARCHIVE
    if suffix in settings.supported_extensions:
        return BundleKind.SINGLE_FILE

    if not content:
        return BundleKind.UNSUPPORTED
    if content.startswith(OLE2_SIGNATURE):
        return BundleKind.SINGLE_FILE
    if content.startswith(ZIP_SIGNATURE):
        return BundleKind.SINGLE_FILE if _looks_like_workbook(content) else BundleKind.ARCHIVE
    return BundleKind.UNSUPPORTED


_TYPE_KEY_SPLIT = re.compile(r"[_\-\s]")


def template_key(file_name: str) -> str:
    """
    Type key used to find a file's template.

    The first token of the stem, split on '_', '-' or whitespace, lowercased:
    'Payroll_2026-03.xlsx' -> 'payroll'.
    """
    stem = posixpath.splitext(member_basename(file_name))[0]
    token = _TYPE_KEY_SPLIT.split(stem.strip(), maxsplit=1)[0]
    return (token or stem).lower()


def template_name(file_name: str, settings: Settings) -> str:
    return f"{template_key(file_name)}{settings.TEMPLATE_EXTENSION}"
