"""
EnrichedAuthor Model - people credited on works

normalized_name comes from utils.normalize.normalize_author_name and is
the duplicate-detection key. Biographical facts are written only from
explicit sources; field_sources records which provider supplied each one:

    {"birth_year": "wikidata", "bio": "wikidata", "nationality": "wikidata"}
"""
import hashlib
from datetime import datetime

from sqlalchemy.dialects.postgresql import ARRAY, JSONB

from models.database import db

# Cleared on privacy erasure; the row itself is kept
BIOGRAPHICAL_FIELDS = (
    'gender',
    'nationality',
    'birth_year',
    'death_year',
    'birth_place',
    'bio',
    'bio_source',
    'author_photo_url',
)


def build_author_key(normalized_name: str) -> str:
    """Deterministic author key for a normalized name."""
    digest = hashlib.sha256(normalized_name.encode('utf-8')).hexdigest()[:16]
    return f"/authors/syn-{digest}"


class EnrichedAuthor(db.Model):
    __tablename__ = 'enriched_authors'

    author_key = db.Column(db.Text, primary_key=True)
    name = db.Column(db.Text, nullable=False)
    normalized_name = db.Column(db.Text, nullable=False, index=True)

    # Biographical facts (explicitly sourced only)
    gender = db.Column(db.Text)
    nationality = db.Column(db.Text)
    birth_year = db.Column(db.Integer)
    death_year = db.Column(db.Integer)
    birth_place = db.Column(db.Text)
    bio = db.Column(db.Text)
    bio_source = db.Column(db.Text)
    author_photo_url = db.Column(db.Text)
    field_sources = db.Column(JSONB, default=dict)

    # External identifier systems
    wikidata_id = db.Column(db.Text, index=True)
    openlibrary_author_id = db.Column(db.Text)
    viaf_id = db.Column(db.Text)
    isni = db.Column(db.Text)
    goodreads_author_ids = db.Column(ARRAY(db.Text))

    # Denormalized from work_authors_enriched
    book_count = db.Column(db.Integer, nullable=False, default=0)

    primary_provider = db.Column(db.Text)
    contributors = db.Column(ARRAY(db.Text))

    privacy_erased_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=datetime.utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    def external_ids(self):
        """Known cross-references, keyed by system."""
        ids = {
            'wikidata': self.wikidata_id,
            'openlibrary': self.openlibrary_author_id,
            'viaf': self.viaf_id,
            'isni': self.isni,
            'goodreads': list(self.goodreads_author_ids or []) or None,
        }
        return {k: v for k, v in ids.items() if v}

    def to_dict(self):
        """Convert to dictionary for JSON serialization."""
        return {
            'author_key': self.author_key,
            'name': self.name,
            'normalized_name': self.normalized_name,
            'gender': self.gender,
            'nationality': self.nationality,
            'birth_year': self.birth_year,
            'death_year': self.death_year,
            'bio': self.bio,
            'bio_source': self.bio_source,
            'field_sources': dict(self.field_sources or {}),
            'external_ids': self.external_ids(),
            'book_count': self.book_count,
        }


class WorkAuthor(db.Model):
    __tablename__ = 'work_authors_enriched'

    work_key = db.Column(
        db.Text, db.ForeignKey('enriched_works.work_key', ondelete='CASCADE'), primary_key=True
    )
    author_key = db.Column(
        db.Text, db.ForeignKey('enriched_authors.author_key', ondelete='CASCADE'), primary_key=True
    )
    author_order = db.Column(db.Integer, nullable=False, default=0)
