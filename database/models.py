"""SQLAlchemy models."""

from sqlalchemy import Column, Float, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class KVEntry(Base):
    __tablename__ = "keeper_kv"

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)
    # Unix seconds; NULL means the row never expires.
    expires_at = Column(Float, nullable=True, index=True)

    def is_expired(self, now_ts: float) -> bool:
        return self.expires_at is not None and float(self.expires_at) <= now_ts
