# backend/app/db/models.py

import datetime

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON on SQLite.
JSONList = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class DrugSnapshot(Base):
    __tablename__ = "drug_snapshots"

    rxcui = Column(String, primary_key=True)
    drug_name = Column(String, nullable=False)
    ingredient_base_names = Column(JSONList)
    dosage_forms = Column(JSONList)
    last_synced_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    medications = relationship(
        "UserMedication", back_populates="snapshot", passive_deletes=True
    )

    def __repr__(self):
        return f"<DrugSnapshot(rxcui='{self.rxcui}', drug_name='{self.drug_name}')>"


class UserMedication(Base):
    __tablename__ = "user_medications"
    __table_args__ = (
        UniqueConstraint("owner_id", "rxcui", name="uq_user_medications_owner_rxcui"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False, index=True)
    rxcui = Column(
        String,
        ForeignKey("drug_snapshots.rxcui", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    snapshot = relationship("DrugSnapshot", back_populates="medications")

    def __repr__(self):
        return f"<UserMedication(owner_id={self.owner_id}, rxcui='{self.rxcui}')>"
