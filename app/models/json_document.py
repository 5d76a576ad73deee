"""
JsonDocument: durable key/value JSON store table.

Backs ``DatabaseBackend``: every domain collection (submissions, approval
requests, board cards, change-management aggregate, ...) is one row keyed by
``json-store:<collection>``.  Rows are upserted as a whole; there is no
row-level locking, so concurrent writers on the same key are last-write-wins.
"""

from datetime import datetime, timezone

from app.models import db


def _utcnow():
    return datetime.now(timezone.utc)


class JsonDocument(db.Model):
    """One persisted JSON collection."""

    __tablename__ = "json_documents"

    key = db.Column(db.String(200), primary_key=True)
    payload = db.Column(db.JSON, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False,
    )

    def to_dict(self):
        return {
            "key": self.key,
            "payload": self.payload,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<JsonDocument {self.key}>"
