"""Relational storage for applications and their evaluations.

The tables mirror the hiring CRM's schema; the worker only reads
``jobs``/``job_applications`` and writes ``candidate_evaluations``.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, create_engine, func, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .exceptions import ApplicationNotFoundError, ConfigurationError
from .models import ApplicationSnapshot, CandidateEvaluation, Enrichment

logger = logging.getLogger(__name__)

EVALUATION_MODEL = "gemini"

# Dialects with INSERT ... ON CONFLICT DO UPDATE
UPSERT_INSERTS = {
    "postgresql": postgresql_insert,
    "sqlite": sqlite_insert,
}


def _uuid() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    organization_id: Mapped[str] = mapped_column(Text, index=True, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="draft")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class JobApplication(Base):
    __tablename__ = "job_applications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    job_id: Mapped[str] = mapped_column(ForeignKey("jobs.id", ondelete="CASCADE"), index=True, nullable=False)
    organization_id: Mapped[str] = mapped_column(Text, index=True, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(Text, nullable=False)
    resume_url: Mapped[str] = mapped_column(Text, nullable=False)
    github_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    portfolio_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cover_letter: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="applied")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class CandidateEvaluationRow(Base):
    __tablename__ = "candidate_evaluations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    application_id: Mapped[str] = mapped_column(
        ForeignKey("job_applications.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    job_id: Mapped[str] = mapped_column(ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    organization_id: Mapped[str] = mapped_column(Text, index=True, nullable=False)
    model: Mapped[str] = mapped_column(Text, nullable=False, default=EVALUATION_MODEL)
    score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    skills_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resume_text_excerpt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    strengths_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    weaknesses_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    recommendation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    evidence_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_response_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<CandidateEvaluationRow application_id={self.application_id} score={self.score}>"


def create_db_engine(database_url: str) -> Engine:
    """Engine for the worker process; built once at startup."""
    return create_engine(database_url, pool_pre_ping=True)


class ApplicationStore:
    """Reads applications and upserts evaluations.

    Thread-safe: each call opens its own session from the shared engine.
    """

    def __init__(self, engine: Engine) -> None:
        if engine.dialect.name not in UPSERT_INSERTS:
            raise ConfigurationError(f"Unsupported database dialect: {engine.dialect.name}")
        self.engine = engine
        self._insert = UPSERT_INSERTS[engine.dialect.name]
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def load_application(self, application_id: str, organization_id: str, job_id: str) -> ApplicationSnapshot:
        """Load an application with its job posting.

        Raises:
            ApplicationNotFoundError: If no application matches all three ids
        """
        stmt = (
            select(JobApplication, Job)
            .join(Job, JobApplication.job_id == Job.id)
            .where(
                JobApplication.id == application_id,
                JobApplication.organization_id == organization_id,
                JobApplication.job_id == job_id,
            )
        )
        with self._sessions() as session:
            row = session.execute(stmt).first()

        if row is None:
            raise ApplicationNotFoundError(application_id)

        application, job = row
        return ApplicationSnapshot(
            id=application.id,
            organization_id=application.organization_id,
            job_id=application.job_id,
            name=application.name,
            email=application.email,
            resume_url=application.resume_url,
            github_url=application.github_url,
            portfolio_url=application.portfolio_url,
            cover_letter=application.cover_letter,
            job_title=job.title,
            job_description=job.description,
        )

    def save_evaluation(
        self,
        application: ApplicationSnapshot,
        evaluation: CandidateEvaluation,
        enrichment: Enrichment,
        model: str = EVALUATION_MODEL,
    ) -> CandidateEvaluationRow:
        """Insert or replace the evaluation for an application.

        A single upsert keyed on ``application_id``, so concurrent deliveries
        of the same job leave one row.
        """
        evidence = enrichment.model_dump(mode="json")
        evidence["evaluation_meta"] = {
            "role_family": evaluation.role_family,
            "rubric_version": evaluation.rubric_version,
        }
        values = {
            "job_id": application.job_id,
            "organization_id": application.organization_id,
            "model": model,
            "score": evaluation.score,
            "skills_json": json.dumps(evaluation.skills),
            "resume_text_excerpt": enrichment.resume_text_excerpt,
            "summary": evaluation.summary,
            "strengths_json": json.dumps(evaluation.strengths),
            "weaknesses_json": json.dumps(evaluation.weaknesses),
            "recommendation": evaluation.recommendation,
            "evidence_json": json.dumps(evidence),
            "ai_response_json": evaluation.model_dump_json(),
            "updated_at": _utcnow(),
        }

        stmt = self._insert(CandidateEvaluationRow).values(application_id=application.id, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["application_id"], set_=values)

        with self._sessions.begin() as session:
            session.execute(stmt)
            row = session.scalars(
                select(CandidateEvaluationRow).where(CandidateEvaluationRow.application_id == application.id)
            ).one()

        logger.info(f"Saved evaluation for application {application.id} (score={evaluation.score})")
        return row

    def get_evaluation(self, application_id: str) -> Optional[CandidateEvaluationRow]:
        with self._sessions() as session:
            return session.scalars(
                select(CandidateEvaluationRow).where(CandidateEvaluationRow.application_id == application_id)
            ).first()

    def session(self) -> Session:
        return self._sessions()
