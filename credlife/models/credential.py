from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, UniqueConstraint

from credlife.database import Base


class CredentialEntry(Base):
    __tablename__ = "credentials"

    id = Column(Integer, primary_key=True)
    identity_id = Column(Integer, nullable=False)
    purpose = Column(String(32), nullable=False)
    secret_hash = Column(String(128), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    used_at = Column(DateTime(timezone=True), nullable=True)
    # "metadata" is reserved on declarative classes.
    meta = Column("metadata", JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("purpose", "secret_hash", name="uq_credential_purpose_hash"),
        Index("ix_credential_identity_purpose", "identity_id", "purpose"),
        Index("ix_credential_expires_at", "expires_at"),
    )
