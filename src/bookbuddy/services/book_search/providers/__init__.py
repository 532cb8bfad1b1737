"""Catalog providers and the registry that selects them by name."""

from collections.abc import Iterator

from bookbuddy.config import Settings
from bookbuddy.core.exceptions import UnsupportedProviderError
from bookbuddy.services.book_search.providers.base import (
    BookSearchProvider,
    validate_query,
)
from bookbuddy.services.book_search.providers.google_books import GoogleBooksProvider
from bookbuddy.services.book_search.providers.open_library import OpenLibraryProvider
from bookbuddy.services.book_search.results import BookProvider


class ProviderRegistry:
    """Explicit name -> provider map."""

    def __init__(self, providers: list[BookSearchProvider] | None = None) -> None:
        self._providers: dict[BookProvider, BookSearchProvider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: BookSearchProvider) -> None:
        self._providers[BookProvider(provider.name)] = provider

    def get(self, name: BookProvider | str) -> BookSearchProvider:
        """Look up a provider by name.

        Raises:
            UnsupportedProviderError: If the name is unknown or unregistered
        """
        try:
            return self._providers[BookProvider(name)]
        except (ValueError, KeyError):
            raise UnsupportedProviderError(str(getattr(name, "value", name))) from None

    def names(self) -> list[BookProvider]:
        return list(self._providers)

    def __iter__(self) -> Iterator[BookSearchProvider]:
        return iter(self._providers.values())

    def __contains__(self, name: object) -> bool:
        try:
            return BookProvider(name) in self._providers
        except ValueError:
            return False

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()


def build_default_registry(settings: Settings) -> ProviderRegistry:
    """Registry with every built-in catalog configured from settings."""
    return ProviderRegistry(
        [
            GoogleBooksProvider.from_settings(settings),
            OpenLibraryProvider.from_settings(settings),
        ]
    )


__all__ = [
    "BookSearchProvider",
    "GoogleBooksProvider",
    "OpenLibraryProvider",
    "ProviderRegistry",
    "build_default_registry",
    "validate_query",
]
