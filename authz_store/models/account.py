"""Account ORM model."""

from __future__ import annotations

from sqlalchemy import Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from authz_store.db.base import Base, SoftDeleteMixin

ACCOUNT_STATUS_ACTIVE = "ACTIVE"


class Account(Base, SoftDeleteMixin):
    """Durable identity record referenced by stored authorization principals."""

    __tablename__ = "accounts"
    __table_args__ = (
        Index("ix_accounts_client_id_email", "client_id", "email"),
        Index("ix_accounts_login_id_deleted_at", "login_id", "deleted_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    login_id: Mapped[str] = mapped_column(String(320), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ACCOUNT_STATUS_ACTIVE
    )
    is_email_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return f"Account(id={self.id!r}, client_id={self.client_id!r}, status={self.status!r})"
