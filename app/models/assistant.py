"""Local projection of the assistant catalog."""

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TenantMixin, TimestampMixin


class Assistant(Base, TenantMixin, TimestampMixin):
    """Assistant reference used to validate inbound routing.

    The assistant itself (prompts, knowledge, model) is managed by the
    assistant service; only identity and ownership are mirrored here.
    """

    __tablename__ = "assistants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
