"""
SiteMetrics — Counter document tables for the sql store backend.

A Firestore-style document is split into one ``counter_documents`` row and
one ``counter_fields`` row per field, so a counter can be bumped with a
single ``INSERT … ON CONFLICT DO UPDATE`` and timestamps stay range-queryable.
"""

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
)

from sitemetrics.database import Base


class CounterDocument(Base):
    """One row per document path, e.g. ``analytics/site1/pagesDaily/2026-01-15_home``."""
    __tablename__ = "counter_documents"

    path = Column(String(512), primary_key=True)

    # Parent collection path ("analytics/site1/pagesDaily") and last segment
    collection = Column(String(400), nullable=False, index=True)
    doc_id = Column(String(200), nullable=False)

    # Bumped on every write; transactions commit only if it is unchanged
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<CounterDocument {self.path}>"


class CounterField(Base):
    """One typed value of a document. Exactly one of the value columns is set."""
    __tablename__ = "counter_fields"

    path = Column(
        String(512),
        ForeignKey("counter_documents.path", ondelete="CASCADE"),
        primary_key=True,
    )
    name = Column(String(100), primary_key=True)

    # Counters and other integers ("count", "totalSeconds", "hour")
    int_value = Column(BigInteger, nullable=True)

    # Timestamps, stored as UTC ("day", "accessedAt", "updatedAt")
    time_value = Column(DateTime(timezone=True), nullable=True)

    # Everything else ("pageId", "host", "lastCountedDate")
    json_value = Column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_counter_fields_name_time", "name", "time_value"),
    )

    def __repr__(self):
        return f"<CounterField {self.path}#{self.name}>"
