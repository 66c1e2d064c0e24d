"""
Provider capability contracts.

Each provider implements zero or more of these narrow interfaces. The
registry discovers capabilities from the classes a provider inherits, so
a provider cannot claim a capability it does not implement.

    class GoogleBooksProvider(BaseProvider, ISBNResolver, MetadataFetcher, CoverFetcher):
        ...
"""
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from constants import (
    BOOK_FORMATS,
    CAPABILITY_AUTHOR_BIOGRAPHY,
    CAPABILITY_BOOK_GENERATION,
    CAPABILITY_COVERS,
    CAPABILITY_ISBN_RESOLUTION,
    CAPABILITY_METADATA,
    CAPABILITY_SUBJECTS,
    HIGH_CONFIDENCE,
    MEDIUM_CONFIDENCE,
)


# =============================================================================
# Result types
# =============================================================================

def confidence_bucket(confidence: Optional[int]) -> str:
    """high >= 80, medium >= 60, low otherwise, not_found when unresolved."""
    if confidence is None:
        return 'not_found'
    if confidence >= HIGH_CONFIDENCE:
        return 'high'
    if confidence >= MEDIUM_CONFIDENCE:
        return 'medium'
    return 'low'


@dataclass
class ResolutionResult:
    """An ISBN found for a title/author query."""
    isbn: str
    confidence: int
    source: str
    title: Optional[str] = None
    authors: List[str] = field(default_factory=list)

    @property
    def confidence_level(self) -> str:
        return confidence_bucket(self.confidence)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['confidence_level'] = self.confidence_level
        return data


@dataclass
class BookMetadata:
    """Edition-level metadata as one provider reports it."""
    isbn: str
    source: str
    title: Optional[str] = None
    subtitle: Optional[str] = None
    authors: List[str] = field(default_factory=list)
    publisher: Optional[str] = None
    publication_date: Optional[str] = None
    page_count: Optional[int] = None
    format: Optional[str] = None
    language: Optional[str] = None
    description: Optional[str] = None
    subjects: List[str] = field(default_factory=list)
    cover_urls: Dict[str, str] = field(default_factory=dict)  # large/medium/small
    alternate_isbns: List[str] = field(default_factory=list)
    related_isbns: Dict[str, str] = field(default_factory=dict)  # isbn -> format
    external_ids: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CoverResult:
    url: str
    source: str
    size: str = 'large'


@dataclass
class AuthorBiography:
    """
    Explicitly sourced author facts.

    Only fields present here are ever written; field_sources maps each
    populated field to the provider that stated it.
    """
    name: str
    source: str
    bio: Optional[str] = None
    birth_year: Optional[int] = None
    death_year: Optional[int] = None
    nationality: Optional[str] = None
    gender: Optional[str] = None
    birth_place: Optional[str] = None
    photo_url: Optional[str] = None
    external_ids: Dict[str, Any] = field(default_factory=dict)

    def field_sources(self) -> Dict[str, str]:
        fields = ('bio', 'birth_year', 'death_year', 'nationality', 'gender', 'birth_place', 'photo_url')
        return {f: self.source for f in fields if getattr(self, f) not in (None, '')}


class GeneratedBook(BaseModel):
    """A candidate book proposed by a generative provider."""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        extra='ignore',
    )

    title: str = Field(..., min_length=1, max_length=500)
    author: str = Field(..., min_length=1, max_length=300)
    publisher: Optional[str] = None
    publication_year: Optional[int] = Field(None, ge=1900, le=2100)
    format: str = 'Unknown'
    significance: Optional[str] = None
    isbn: Optional[str] = None
    source: Optional[str] = None

    @field_validator('format', mode='before')
    @classmethod
    def normalize_format(cls, v):
        """Map loose format labels onto the known set; reject the rest."""
        if v in (None, ''):
            return 'Unknown'
        for known in BOOK_FORMATS:
            if str(v).strip().lower() == known.lower():
                return known
        raise ValueError(f"format must be one of {', '.join(BOOK_FORMATS)}")


# =============================================================================
# Contracts
# =============================================================================

class ISBNResolver(ABC):
    """Find the ISBN of a book from its title and author."""

    @abstractmethod
    def resolve_isbn(self, title: str, author: Optional[str] = None) -> Optional[ResolutionResult]:
        pass


class MetadataFetcher(ABC):
    """Edition metadata by ISBN."""

    @abstractmethod
    def fetch_metadata(self, isbn: str) -> Optional[BookMetadata]:
        pass

    def fetch_metadata_batch(self, isbns: List[str]) -> Dict[str, BookMetadata]:
        """Default: one call per key. Providers with a batch endpoint override."""
        results = {}
        for isbn in isbns:
            metadata = self.fetch_metadata(isbn)
            if metadata is not None:
                results[isbn] = metadata
        return results


class CoverFetcher(ABC):

    @abstractmethod
    def fetch_cover(self, isbn: str) -> Optional[CoverResult]:
        pass


class SubjectProvider(ABC):

    @abstractmethod
    def fetch_subjects(self, isbn: str) -> Optional[List[str]]:
        pass


class AuthorBiographyProvider(ABC):

    @abstractmethod
    def fetch_author_bio(self, name: str) -> Optional[AuthorBiography]:
        pass


class BookGenerator(ABC):
    """Propose candidate books for a prompt."""

    @abstractmethod
    def generate_books(self, prompt: str, count: int) -> List[GeneratedBook]:
        """
        Raises:
            ProviderRefusal: the model declined (insufficient verifiable data)
        """
        pass


CAPABILITY_CONTRACTS = {
    CAPABILITY_ISBN_RESOLUTION: ISBNResolver,
    CAPABILITY_METADATA: MetadataFetcher,
    CAPABILITY_COVERS: CoverFetcher,
    CAPABILITY_SUBJECTS: SubjectProvider,
    CAPABILITY_AUTHOR_BIOGRAPHY: AuthorBiographyProvider,
    CAPABILITY_BOOK_GENERATION: BookGenerator,
}

# Method the resolution orchestrator calls for each single-item capability
CAPABILITY_METHODS = {
    CAPABILITY_ISBN_RESOLUTION: 'resolve_isbn',
    CAPABILITY_METADATA: 'fetch_metadata',
    CAPABILITY_COVERS: 'fetch_cover',
    CAPABILITY_SUBJECTS: 'fetch_subjects',
    CAPABILITY_AUTHOR_BIOGRAPHY: 'fetch_author_bio',
}


def capabilities_of(provider: Any) -> List[str]:
    """Capabilities a provider object implements, in a fixed order."""
    return [cap for cap, contract in CAPABILITY_CONTRACTS.items() if isinstance(provider, contract)]
