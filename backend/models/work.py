"""
EnrichedWork Model - one abstract book, many editions

Identity:
- work_key is deterministic: derived from the normalized title and the
  normalized first author, so a replayed discovery unit reuses the same row

Provider tracking:
- contributors only grows (set-union on every merge)
- synthetic is true while no external key resolution has touched the work
"""
import hashlib
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.dialects.postgresql import ARRAY, JSONB

from models.database import db
from utils.normalize import normalize_author_name, normalize_title


def build_work_key(title: str, first_author: Optional[str] = None) -> str:
    """
    Deterministic work key for a title/author pair.

    >>> build_work_key("The Overstory", "Richard Powers") == build_work_key("Overstory", "richard  powers")
    True
    """
    basis = f"{normalize_title(title)}|{normalize_author_name(first_author)}"
    digest = hashlib.sha256(basis.encode('utf-8')).hexdigest()[:16]
    return f"/works/syn-{digest}"


class EnrichedWork(db.Model):
    __tablename__ = 'enriched_works'

    work_key = db.Column(db.Text, primary_key=True)

    # ==========================================================================
    # CORE METADATA
    # ==========================================================================
    title = db.Column(db.Text, nullable=False)
    subtitle = db.Column(db.Text)
    description = db.Column(db.Text)
    original_language = db.Column(db.Text)
    first_publication_year = db.Column(db.Integer)
    subject_tags = db.Column(ARRAY(db.Text))  # lowercase, deduplicated

    # ==========================================================================
    # COVERS
    # ==========================================================================
    cover_url_large = db.Column(db.Text)
    cover_url_medium = db.Column(db.Text)
    cover_url_small = db.Column(db.Text)
    cover_source = db.Column(db.Text)

    # ==========================================================================
    # EXTERNAL IDS
    # ==========================================================================
    openlibrary_work_id = db.Column(db.Text)
    goodreads_work_ids = db.Column(ARRAY(db.Text))
    google_books_volume_ids = db.Column(ARRAY(db.Text))
    isbndb_id = db.Column(db.Text)

    # ==========================================================================
    # PROVIDER TRACKING
    # ==========================================================================
    primary_provider = db.Column(db.Text)
    contributors = db.Column(ARRAY(db.Text))
    synthetic = db.Column(db.Boolean, nullable=False, default=False, index=True)
    quality_score = db.Column(db.Integer, nullable=False, default=0)
    completeness_score = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=datetime.utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    metadata_ = db.Column('metadata', JSONB, default=dict)

    editions = db.relationship(
        'EnrichedEdition',
        backref='work',
        lazy='dynamic',
        foreign_keys='EnrichedEdition.work_key'
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'work_key': self.work_key,
            'title': self.title,
            'subtitle': self.subtitle,
            'description': self.description,
            'original_language': self.original_language,
            'first_publication_year': self.first_publication_year,
            'subject_tags': list(self.subject_tags or []),
            'cover_urls': {
                'large': self.cover_url_large,
                'medium': self.cover_url_medium,
                'small': self.cover_url_small,
            },
            'primary_provider': self.primary_provider,
            'contributors': list(self.contributors or []),
            'synthetic': bool(self.synthetic),
            'quality_score': self.quality_score,
            'completeness_score': self.completeness_score,
        }
