"""Database module."""

from app.db.base import Base, TenantMixin, TimestampMixin, as_utc, utcnow

__all__ = ["Base", "TenantMixin", "TimestampMixin", "as_utc", "utcnow"]
