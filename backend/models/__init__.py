"""
Models package - SQLAlchemy models
"""
from models.database import db
from models.work import EnrichedWork
from models.edition import EnrichedEdition
from models.author import EnrichedAuthor, WorkAuthor
from models.enrichment_log import EnrichmentLogEntry
from models.enrichment_unit import EnrichmentUnit

__all__ = [
    'db',
    'EnrichedWork',
    'EnrichedEdition',
    'EnrichedAuthor',
    'WorkAuthor',
    'EnrichmentLogEntry',
    'EnrichmentUnit',
]
