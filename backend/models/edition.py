"""
EnrichedEdition Model - one published format of a work

The natural key is the ISBN-13 and never changes once written. ISBN-10
and other formats reached through the paid provider's related-format map
are kept in alternate_isbns / related_isbns so deduplication can match
them.
"""
from datetime import datetime

from sqlalchemy.dialects.postgresql import ARRAY, JSONB

from models.database import db


class EnrichedEdition(db.Model):
    __tablename__ = 'enriched_editions'

    isbn = db.Column(db.String(13), primary_key=True)
    alternate_isbns = db.Column(ARRAY(db.Text))

    # Soft reference: an edition can exist before its work is linked
    work_key = db.Column(db.Text, db.ForeignKey('enriched_works.work_key'), index=True)

    # === Core metadata ===
    title = db.Column(db.Text)
    subtitle = db.Column(db.Text)
    publisher = db.Column(db.Text)
    publication_date = db.Column(db.Text)  # provider format: '2019', '2019-05-01'
    page_count = db.Column(db.Integer)
    format = db.Column(db.Text)
    language = db.Column(db.Text)
    edition_description = db.Column(db.Text)
    subject_tags = db.Column(ARRAY(db.Text))

    # === Covers (provider URLs until harvested, then our own) ===
    cover_url_large = db.Column(db.Text)
    cover_url_medium = db.Column(db.Text)
    cover_url_small = db.Column(db.Text)
    cover_source = db.Column(db.Text)

    # {"9780804139021": "paperback", "9780804139038": "ebook"}
    related_isbns = db.Column(JSONB)

    # === External ids ===
    openlibrary_edition_id = db.Column(db.Text)
    google_books_volume_ids = db.Column(ARRAY(db.Text))
    goodreads_edition_ids = db.Column(ARRAY(db.Text))
    amazon_asins = db.Column(ARRAY(db.Text))

    # === Provider tracking ===
    primary_provider = db.Column(db.Text)
    contributors = db.Column(ARRAY(db.Text))
    quality_score = db.Column(db.Integer, nullable=False, default=0)
    completeness_score = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=datetime.utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    metadata_ = db.Column('metadata', JSONB, default=dict)

    __table_args__ = (
        db.Index('idx_enriched_editions_alternate_isbns', 'alternate_isbns', postgresql_using='gin'),
        db.Index('idx_enriched_editions_related_isbns', 'related_isbns', postgresql_using='gin'),
    )

    def to_dict(self):
        """Convert to dictionary for JSON serialization."""
        return {
            'isbn': self.isbn,
            'alternate_isbns': list(self.alternate_isbns or []),
            'work_key': self.work_key,
            'title': self.title,
            'subtitle': self.subtitle,
            'publisher': self.publisher,
            'publication_date': self.publication_date,
            'page_count': self.page_count,
            'format': self.format,
            'language': self.language,
            'cover_urls': {
                'large': self.cover_url_large,
                'medium': self.cover_url_medium,
                'small': self.cover_url_small,
            },
            'related_isbns': dict(self.related_isbns or {}),
            'primary_provider': self.primary_provider,
            'contributors': list(self.contributors or []),
            'quality_score': self.quality_score,
        }
