from __future__ import annotations

from sqlalchemy import JSON, BigInteger, Float, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from contentgen.core.database import Base

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONVariant = JSON().with_variant(JSONB(), "postgresql")


class Job(Base):
  __tablename__ = "generation_jobs"
  __table_args__ = (
    Index("ix_generation_jobs_dispatch", "state", "priority", "enqueued_ns"),
    Index("ix_generation_jobs_retention", "state", "completed_at"),
    Index("ix_generation_jobs_lease", "state", "lease_expires_at"),
  )

  job_id: Mapped[str] = mapped_column(String, primary_key=True)
  kind: Mapped[str] = mapped_column(String, nullable=False, index=True)
  payload_json: Mapped[dict] = mapped_column(JSONVariant, nullable=False)
  state: Mapped[str] = mapped_column(String, nullable=False)
  priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
  enqueued_ns: Mapped[int] = mapped_column(BigInteger, nullable=False)
  progress: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
  attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
  result_json: Mapped[dict | None] = mapped_column(JSONVariant, nullable=True)
  error_json: Mapped[dict | None] = mapped_column(JSONVariant, nullable=True)
  logs_json: Mapped[list] = mapped_column(JSONVariant, nullable=False, default=list)
  created_at: Mapped[str] = mapped_column(String, nullable=False)
  updated_at: Mapped[str] = mapped_column(String, nullable=False)
  started_at: Mapped[str | None] = mapped_column(String, nullable=True)
  completed_at: Mapped[str | None] = mapped_column(String, nullable=True)
  owner_id: Mapped[str | None] = mapped_column(String, nullable=True)
  lease_expires_at: Mapped[str | None] = mapped_column(String, nullable=True)
