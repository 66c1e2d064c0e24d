"""
EnrichmentLogEntry Model - append-only audit trail

One row per persist attempt: which entity, which provider, create/update,
success, which fields the incoming record carried and how long it took.
"""
import uuid
from datetime import datetime

from sqlalchemy.dialects.postgresql import ARRAY

from models.database import db


class EnrichmentLogEntry(db.Model):
    __tablename__ = 'enrichment_log'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    entity_type = db.Column(db.Text, nullable=False)  # edition | work | author
    entity_key = db.Column(db.Text, nullable=False)
    provider = db.Column(db.Text, nullable=False)
    operation = db.Column(db.Text, nullable=False)  # create | update | upsert | erase
    success = db.Column(db.Boolean, nullable=False)
    fields_updated = db.Column(ARRAY(db.Text))
    error_message = db.Column(db.Text)
    response_time_ms = db.Column(db.Integer)
    created_at = db.Column(db.DateTime(timezone=True), default=datetime.utcnow, index=True)

    __table_args__ = (
        db.Index('idx_enrichment_log_entity', 'entity_type', 'entity_key', 'created_at'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'entity_type': self.entity_type,
            'entity_key': self.entity_key,
            'provider': self.provider,
            'operation': self.operation,
            'success': self.success,
            'fields_updated': list(self.fields_updated or []),
            'error_message': self.error_message,
            'response_time_ms': self.response_time_ms,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
