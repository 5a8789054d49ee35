"""
auth/schema.py -- SQLAlchemy table definitions for the credential store.

The store issues hand-written SQL through the executor; these Table objects
exist so local databases and tests can be created with create_schema().
Production PostgreSQL schemas are managed by external migrations and must
match the columns below.

Timestamps are fixed-width ISO-8601 UTC strings (see auth/store.py), so a
plain string comparison orders them correctly.

The CHECK on users enforces "at least one credential method" at the
database level as well as in AuthStore.create_user().

Layer rule: no imports from db/ or core/.
"""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    MetaData,
    String,
    Table,
    Text,
    false,
)
from sqlalchemy.engine import Engine

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),  # uuid4, generated in code
    Column("email", String(255), nullable=False, unique=True),
    Column("email_verified", Boolean, nullable=False, server_default=false()),
    Column("password_hash", Text),  # NULL for OAuth-only users
    Column("github_id", String(255), unique=True),
    Column("google_id", String(255), unique=True),
    Column("name", Text),
    Column("avatar_url", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    CheckConstraint(
        "password_hash IS NOT NULL OR github_id IS NOT NULL OR google_id IS NOT NULL",
        name="users_has_credential",
    ),
)

sessions = Table(
    "sessions",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
    Index("idx_sessions_user_id", "user_id"),
    Index("idx_sessions_expires_at", "expires_at"),
)

email_verification_tokens = Table(
    "email_verification_tokens",
    metadata,
    Column("token", String(64), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("email", String(255), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Index("idx_email_verification_tokens_user_id", "user_id"),
    Index("idx_email_verification_tokens_expires_at", "expires_at"),
)

password_reset_tokens = Table(
    "password_reset_tokens",
    metadata,
    Column("token", String(64), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Index("idx_password_reset_tokens_user_id", "user_id"),
    Index("idx_password_reset_tokens_expires_at", "expires_at"),
)


def create_schema(engine: Engine) -> None:
    """Create all credential-store tables. Idempotent."""
    metadata.create_all(engine)
