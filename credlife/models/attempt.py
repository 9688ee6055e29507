from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String

from credlife.database import Base


class AttemptEntry(Base):
    __tablename__ = "credential_attempts"

    id = Column(Integer, primary_key=True)
    identity_id = Column(Integer, nullable=False)
    purpose = Column(String(32), nullable=False)
    kind = Column(String(16), nullable=False)
    success = Column(Boolean, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index(
            "ix_attempt_identity_purpose_kind",
            "identity_id",
            "purpose",
            "kind",
            "created_at",
        ),
    )
