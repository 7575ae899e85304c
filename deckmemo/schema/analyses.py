from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from deckmemo.core.database import Base


class Document(Base):
  __tablename__ = "documents"

  document_id: Mapped[str] = mapped_column(String, primary_key=True)
  user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  job_key: Mapped[str] = mapped_column(String, nullable=False, index=True)
  file_name: Mapped[str] = mapped_column(String, nullable=False)
  storage_path: Mapped[str] = mapped_column(String, nullable=False)
  content_type: Mapped[str] = mapped_column(String, nullable=False)
  size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
  extracted_text: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Analysis(Base):
  __tablename__ = "analyses"
  __table_args__ = (
    # At most one active run per job key; terminal rows are history.
    Index("ux_analyses_active_job_key", "job_key", unique=True, postgresql_where=text("status IN ('pending', 'processing', 'context_ready')")),
    Index("ix_analyses_job_key_created_at", "job_key", "created_at"),
  )

  job_id: Mapped[str] = mapped_column(String, primary_key=True)
  job_key: Mapped[str] = mapped_column(String, nullable=False)
  document_ref: Mapped[str] = mapped_column(ForeignKey("documents.document_id"), nullable=False, index=True)
  user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  status: Mapped[str] = mapped_column(String, nullable=False)
  progress_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  current_step: Mapped[str | None] = mapped_column(String, nullable=True)
  quick_facts: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  result: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class WorkflowLog(Base):
  __tablename__ = "workflow_logs"
  __table_args__ = (Index("ix_workflow_logs_job_started", "job_id", "started_at"),)

  id: Mapped[str] = mapped_column(String, primary_key=True)
  job_id: Mapped[str] = mapped_column(ForeignKey("analyses.job_id", ondelete="CASCADE"), nullable=False)
  job_key: Mapped[str] = mapped_column(String, nullable=False, index=True)
  step_name: Mapped[str] = mapped_column(String, nullable=False)
  attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
  status: Mapped[str] = mapped_column(String, nullable=False)
  input: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  output: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
  completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
