from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Program(Base):
    __tablename__ = "Programs"

    id: Mapped[int] = mapped_column("Program_ID", Integer, primary_key=True)
    name: Mapped[str] = mapped_column("Program_Name", Text, nullable=False)

    projects: Mapped[list[Project]] = relationship("Project", back_populates="program")


class Project(Base):
    __tablename__ = "Projects"

    id: Mapped[int] = mapped_column("Project_ID", Integer, primary_key=True)
    name: Mapped[str] = mapped_column("Project_Name", Text, nullable=False)
    program_id: Mapped[int | None] = mapped_column("Program_ID", Integer, ForeignKey("Programs.Program_ID"))

    program: Mapped[Program | None] = relationship("Program", back_populates="projects")
    benefit_profile: Mapped[BenefitProfile | None] = relationship(
        "BenefitProfile", back_populates="project", uselist=False, cascade="all, delete-orphan",
    )
    risk_register: Mapped[RiskRegister | None] = relationship(
        "RiskRegister", back_populates="project", uselist=False, cascade="all, delete-orphan",
    )


class BenefitProfile(Base):
    __tablename__ = "Benefit_Profiles"

    project_id: Mapped[int] = mapped_column(
        "Project_ID", Integer, ForeignKey("Projects.Project_ID"), primary_key=True,
    )
    planned_benefit_value: Mapped[float | None] = mapped_column("Planned_Benefit_Value", Float)

    project: Mapped[Project] = relationship("Project", back_populates="benefit_profile")


class RiskRegister(Base):
    __tablename__ = "Risk_Registers"

    project_id: Mapped[int] = mapped_column(
        "Project_ID", Integer, ForeignKey("Projects.Project_ID"), primary_key=True,
    )
    risk_severity: Mapped[str | None] = mapped_column("Risk_Severity", String(50))

    project: Mapped[Project] = relationship("Project", back_populates="risk_register")


class BoardDecision(Base):
    """Append-only ledger entry. Rows are inserted once and never mutated."""
    __tablename__ = "Board_Decisions"

    decision_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    initiative_id: Mapped[str] = mapped_column(String(300), default="")
    composite_score: Mapped[float] = mapped_column(Float, nullable=False)
    decision_outcome: Mapped[str] = mapped_column(String(50), nullable=False)
    board_rationale: Mapped[str] = mapped_column(Text, default="")
    timestamp: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
