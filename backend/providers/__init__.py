"""
Provider framework: capability contracts, HTTP plumbing, registry and
concrete adapters.
"""
from .capabilities import (
    AuthorBiography,
    AuthorBiographyProvider,
    BookGenerator,
    BookMetadata,
    CoverFetcher,
    CoverResult,
    GeneratedBook,
    ISBNResolver,
    MetadataFetcher,
    ResolutionResult,
    SubjectProvider,
)
from .base import BaseProvider
from .registry import ProviderRegistry, get_global_registry
