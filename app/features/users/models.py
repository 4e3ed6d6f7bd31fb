"""
Principal records linked to Appwrite accounts.

The access-control core only needs a stable principal id and the tenant
the principal belongs to; everything else here is profile data.
"""
from datetime import datetime
from sqlalchemy import String, Boolean
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from app.core.database.base import Base, TimestampMixin, UTCDateTime


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ulid.new())


class User(Base, TimestampMixin):
    """
    Authenticated principal.

    ``id`` is the principal id used in role assignments and overrides.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Appwrite user ID (for linking with Appwrite authentication)
    appwrite_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Dealer the principal works for; taken from the Appwrite "tenantId" preference
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    # Status flags
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email!r}, tenant_id={self.tenant_id})>"
