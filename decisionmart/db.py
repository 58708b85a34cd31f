from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from sqlalchemy import create_engine, inspect as sa_inspect, select, text
from sqlalchemy.orm import Session, sessionmaker

from decisionmart.config import Settings
from decisionmart.models import Base, BenefitProfile, Program, Project, RiskRegister

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine = None
_SessionLocal = None
_current_db_path: Path | None = None

# (program_id, program_name, [(project_id, project_name, planned_benefit, risk_severity)])
SAMPLE_PORTFOLIO: list[tuple[int, str, list[tuple[int, str, float, str]]]] = [
    (1, "Customer Experience Transformation", [
        (101, "Omnichannel Claims Portal", 2_400_000.0, "Medium"),
        (102, "Policyholder Self-Service App", 1_150_000.0, "Low"),
        (103, "Contact Centre Modernisation", 900_000.0, "High"),
    ]),
    (2, "Core Platform Renewal", [
        (201, "Policy Administration Replatforming", 5_800_000.0, "Critical"),
        (202, "Data Warehouse Consolidation", 1_700_000.0, "Medium"),
    ]),
    (3, "Regulatory & Compliance", [
        (301, "Solvency II Reporting Automation", 650_000.0, "Low"),
        (302, "DORA Operational Resilience", 400_000.0, "High"),
    ]),
    (4, "Operational Excellence", [
        (401, "Finance Close Acceleration", 780_000.0, "Medium"),
        (402, "Vendor Management Consolidation", 520_000.0, "Low"),
    ]),
]


def init_db(db_path: str | Path | None = None, seed: bool = True) -> None:
    global _engine, _SessionLocal, _current_db_path
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            db_path = Settings.from_env().db_path
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{db_path}"
        _engine = create_engine(url, connect_args={"check_same_thread": False})
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _current_db_path = db_path
        if seed:
            seed_sample_portfolio(_engine)
    log.info("Decision Mart database ready at %s", db_path)


def seed_sample_portfolio(engine) -> int:
    """Seed the sample portfolio if the Projects table is empty. Returns rows added."""
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with factory() as session:
        if session.execute(select(Project.id).limit(1)).first() is not None:
            return 0
        added = 0
        for program_id, program_name, projects in SAMPLE_PORTFOLIO:
            session.add(Program(id=program_id, name=program_name))
            for project_id, project_name, benefit, severity in projects:
                session.add(Project(id=project_id, name=project_name, program_id=program_id))
                session.add(BenefitProfile(project_id=project_id, planned_benefit_value=benefit))
                session.add(RiskRegister(project_id=project_id, risk_severity=severity))
                added += 1
        session.commit()
    log.info("Seeded sample portfolio with %d projects", added)
    return added


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (MCP server, scripts, etc.)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``."""
    with session_scope() as session:
        yield session


def current_db_path() -> Path | None:
    return _current_db_path


def inspect_tables(session: Session, limit: int = 5) -> dict[str, list[dict[str, Any]]]:
    """Return up to *limit* rows of every table in the database, keyed by table name."""
    bind = session.get_bind()
    tables: dict[str, list[dict[str, Any]]] = {}
    for name in sa_inspect(bind).get_table_names():
        try:
            rows = session.execute(text(f'SELECT * FROM "{name}" LIMIT :limit'), {"limit": limit})
            tables[name] = [dict(r._mapping) for r in rows]
        except Exception as exc:
            log.warning("Could not read table %s: %s", name, exc)
            tables[name] = []
    return tables


def main() -> None:
    """Print a preview of every table in the configured database."""
    logging.basicConfig(level=logging.WARNING)
    init_db(seed=False)
    with session_scope() as session:
        tables = inspect_tables(session)
    print(f"--- Database Tables ({current_db_path()}) ---")
    for name, rows in tables.items():
        print(f"\nTable: {name}")
        if not rows:
            print("  (no rows)")
            continue
        for row in rows:
            print("  " + ", ".join(f"{k}={v}" for k, v in row.items()))


if __name__ == "__main__":
    main()
