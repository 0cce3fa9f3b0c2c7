from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class Program(Base):
  __tablename__ = "programs"
  __table_args__ = (UniqueConstraint("user_id", "name", name="ux_programs_user_name"),)

  id: Mapped[str] = mapped_column(String, primary_key=True)
  user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ProgramLesson(Base):
  __tablename__ = "program_lessons"
  __table_args__ = (UniqueConstraint("program_id", "source_url", name="ux_program_lessons_program_source_url"),)

  id: Mapped[str] = mapped_column(String, primary_key=True)
  program_id: Mapped[str] = mapped_column(ForeignKey("programs.id", ondelete="CASCADE"), nullable=False, index=True)
  title: Mapped[str] = mapped_column(String, nullable=False)
  source_url: Mapped[str | None] = mapped_column(String, nullable=True)
  content_text: Mapped[str | None] = mapped_column(Text, nullable=True)
  content_hash: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
