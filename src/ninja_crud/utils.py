"""Text and query-parameter helpers shared by the service layer."""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Mapping

SortSpec = dict[str, int]

_NON_WORD_RE = re.compile(r"[^\w\s-]")
_SEPARATOR_RE = re.compile(r"[-\s_]+")


def slugify(text: str) -> str:
    """Convert *text* to a lower-case, URL-safe slug.

    >>> slugify("Hello, World!")
    'hello-world'
    >>> slugify("Crème brûlée")
    'creme-brulee'
    """
    normalized = unicodedata.normalize("NFKD", str(text)).encode("ascii", "ignore").decode("ascii")
    slug = _NON_WORD_RE.sub("", normalized.lower())
    slug = _SEPARATOR_RE.sub("-", slug)
    return slug.strip("-")


def numbered_slug(base_slug: str, count: int) -> str:
    """Default collision resolver: ``alpha`` -> ``alpha-1``, ``alpha-2``, ..."""
    return f"{base_slug}-{count}"


def escape_regex(term: str) -> str:
    """Escape *term* so it matches literally inside a ``$regex`` condition."""
    return re.escape(term)


def parse_sort_param(sort_param: str | None) -> SortSpec:
    """Parse a ``"-created_at,name"`` style sort string.

    A leading ``-`` sorts descending.  Empty segments are ignored.

    >>> parse_sort_param("-created_at,name")
    {'created_at': -1, 'name': 1}
    """
    if not sort_param:
        return {}
    spec: SortSpec = {}
    for raw in sort_param.split(","):
        field = raw.strip()
        if not field:
            continue
        if field.startswith("-"):
            spec[field[1:]] = -1
        else:
            spec[field.lstrip("+")] = 1
    return spec


def normalize_sort(sort: Mapping[str, int] | str | None) -> SortSpec | None:
    """Accept either a mapping or a sort string and return a mapping (or None)."""
    if sort is None:
        return None
    if isinstance(sort, str):
        return parse_sort_param(sort) or None
    return {str(k): -1 if int(v) < 0 else 1 for k, v in sort.items()}
