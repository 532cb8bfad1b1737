"""Mapping of catalog payloads into CanonicalSearchResult.

Pure functions, one per provider schema. Missing optional data maps to None;
the only error raised for a well-formed call is ``UnknownProviderError`` from
the dispatcher.

See:
    https://developers.google.com/books/docs/v1/reference/volumes
    https://openlibrary.org/dev/docs/api/search
"""

import re
from collections.abc import Callable, Iterable
from typing import Any

from bookbuddy.core.exceptions import UnknownProviderError, ValidationError
from bookbuddy.services.book_search.results import (
    UNKNOWN_AUTHOR,
    UNKNOWN_TITLE,
    BookProvider,
    CanonicalSearchResult,
)

MAX_CATEGORIES = 5

GOOGLE_COVER_SIZES = (
    "extraLarge",
    "large",
    "medium",
    "small",
    "thumbnail",
    "smallThumbnail",
)

OPEN_LIBRARY_COVER_URL = "https://covers.openlibrary.org/b/id/{cover_id}-L.jpg"

_YEAR = re.compile(r"^\d{4}$")
_YEAR_MONTH = re.compile(r"^\d{4}-\d{2}$")


# -----------------------------------------------------------------------------
# Field helpers
# -----------------------------------------------------------------------------


def _first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def join_names(value: Any, placeholder: str | None = None) -> str | None:
    """Collapse a list or scalar name field into one display string."""
    if isinstance(value, list):
        names = [str(name) for name in value if name]
        return ", ".join(names) if names else placeholder
    return value or placeholder


def cap_categories(values: Any) -> list[str] | None:
    if not values or not isinstance(values, list):
        return None
    return [str(value) for value in values[:MAX_CATEGORIES]]


def normalize_date(value: Any) -> str | None:
    """Expand partial dates to YYYY-MM-DD.

    ``1937`` becomes ``1937-01-01`` and ``1937-09`` becomes ``1937-09-01``.
    Anything else is returned unchanged.
    """
    if value is None or value == "":
        return None
    text = str(value).strip()
    if _YEAR.match(text):
        return f"{text}-01-01"
    if _YEAR_MONTH.match(text):
        return f"{text}-01"
    return text


def _positive_int(value: Any) -> int | None:
    if isinstance(value, int) and value > 0:
        return value
    return None


def pick_google_cover(image_links: dict[str, Any] | None) -> str | None:
    """Largest available cover URL from a Google ``imageLinks`` map."""
    if not image_links:
        return None
    for size in GOOGLE_COVER_SIZES:
        url = image_links.get(size)
        if url:
            return url
    return None


def open_library_cover(cover_id: Any) -> str | None:
    if not cover_id:
        return None
    return OPEN_LIBRARY_COVER_URL.format(cover_id=cover_id)


def _isbns_by_type(identifiers: Iterable[dict[str, Any]]) -> tuple[str | None, str | None]:
    isbn10 = isbn13 = None
    for identifier in identifiers:
        if not isinstance(identifier, dict):
            continue
        kind = identifier.get("type")
        if kind == "ISBN_10" and isbn10 is None:
            isbn10 = identifier.get("identifier")
        elif kind == "ISBN_13" and isbn13 is None:
            isbn13 = identifier.get("identifier")
    return isbn10, isbn13


def _isbns_by_length(isbns: Iterable[Any]) -> tuple[str | None, str | None]:
    isbn10 = isbn13 = None
    for isbn in isbns:
        value = str(isbn)
        if len(value) == 10 and isbn10 is None:
            isbn10 = value
        elif len(value) == 13 and isbn13 is None:
            isbn13 = value
    return isbn10, isbn13


def _work_id(key: str | None) -> str | None:
    if not key:
        return None
    return key.rsplit("/", 1)[-1]


# -----------------------------------------------------------------------------
# Provider mappings
# -----------------------------------------------------------------------------


def normalize_google_books(item: dict[str, Any]) -> CanonicalSearchResult:
    """Map one Google Books volume."""
    info = item.get("volumeInfo") or {}
    isbn10, isbn13 = _isbns_by_type(info.get("industryIdentifiers") or [])

    return CanonicalSearchResult(
        provider_id=item.get("id") or "",
        provider=BookProvider.GOOGLE_BOOKS,
        title=info.get("title") or UNKNOWN_TITLE,
        author=join_names(info.get("authors"), UNKNOWN_AUTHOR),
        subtitle=info.get("subtitle") or None,
        isbn10=isbn10,
        isbn13=isbn13,
        publisher=join_names(info.get("publisher")),
        published_date=normalize_date(info.get("publishedDate")),
        page_count=_positive_int(info.get("pageCount")),
        description=info.get("description") or None,
        categories=cap_categories(info.get("categories")),
        language=info.get("language") or None,
        cover_image_url=pick_google_cover(info.get("imageLinks")),
        format=None,
        raw=item,
    )


def normalize_open_library(doc: dict[str, Any]) -> CanonicalSearchResult:
    """Map one Open Library search document."""
    isbn10, isbn13 = _isbns_by_length(doc.get("isbn") or [])

    return CanonicalSearchResult(
        provider_id=_work_id(doc.get("key")) or doc.get("cover_edition_key") or "",
        provider=BookProvider.OPEN_LIBRARY,
        title=doc.get("title") or UNKNOWN_TITLE,
        author=join_names(doc.get("author_name"), UNKNOWN_AUTHOR),
        subtitle=doc.get("subtitle") or None,
        isbn10=isbn10,
        isbn13=isbn13,
        publisher=join_names(doc.get("publisher")),
        published_date=normalize_date(doc.get("first_publish_year")),
        page_count=_positive_int(doc.get("number_of_pages_median")),
        description=None,
        categories=cap_categories(doc.get("subject")),
        language=_first(doc.get("language")) or None,
        cover_image_url=open_library_cover(doc.get("cover_i")),
        format=None,
        raw=doc,
    )


def normalize_open_library_work(
    work: dict[str, Any],
    author_names: list[str] | None = None,
) -> CanonicalSearchResult:
    """Map an Open Library work record (``/works/{id}.json``).

    Work records reference authors by key only, so resolved names are passed
    in by the caller.
    """
    description = work.get("description")
    if isinstance(description, dict):
        description = description.get("value")

    subjects = work.get("subjects")
    if isinstance(subjects, list) and subjects and isinstance(subjects[0], dict):
        subjects = [subject.get("name", "") for subject in subjects]

    return CanonicalSearchResult(
        provider_id=_work_id(work.get("key")) or "",
        provider=BookProvider.OPEN_LIBRARY,
        title=work.get("title") or UNKNOWN_TITLE,
        author=join_names(author_names, UNKNOWN_AUTHOR),
        subtitle=work.get("subtitle") or None,
        published_date=normalize_date(work.get("first_publish_date")),
        description=description or None,
        categories=cap_categories(subjects),
        cover_image_url=open_library_cover(_first(work.get("covers"))),
        raw=work,
    )


_NORMALIZERS: dict[BookProvider, Callable[[dict[str, Any]], CanonicalSearchResult]] = {
    BookProvider.GOOGLE_BOOKS: normalize_google_books,
    BookProvider.OPEN_LIBRARY: normalize_open_library,
}


def normalize_search_results(
    results: Any, provider: BookProvider | str
) -> list[CanonicalSearchResult]:
    """Normalize a page of raw records for the given provider.

    Raises:
        ValidationError: If results is not a list
        UnknownProviderError: If no mapping exists for the provider
    """
    if not isinstance(results, list):
        raise ValidationError("Results must be a list", field="results")

    try:
        normalizer = _NORMALIZERS[BookProvider(provider)]
    except ValueError:
        raise UnknownProviderError(str(provider)) from None

    return [normalizer(item) for item in results]
