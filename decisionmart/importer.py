from __future__ import annotations

import logging
from pathlib import Path

import openpyxl
from sqlalchemy import select
from sqlalchemy.orm import Session

from decisionmart.models import BenefitProfile, Program, Project, RiskRegister
from decisionmart.schemas import ImportResult

log = logging.getLogger(__name__)

REQUIRED_HEADERS = ("project_id", "project_name")


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _i(value: object) -> int | None:
    """Safely coerce cell value to int, None if missing or invalid."""
    if value is None or value == "":
        return None
    try:
        return int(float(value))  # type: ignore[arg-type]
    except (ValueError, TypeError):
        return None


def _f(value: object) -> float | None:
    """Safely coerce cell value to float, None if missing."""
    if value is None or value == "":
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (ValueError, TypeError):
        return None


def _header_map(header_row: tuple) -> dict[str, int]:
    return {_s(v).casefold(): idx for idx, v in enumerate(header_row) if _s(v)}


def _cell(row: tuple, headers: dict[str, int], key: str) -> object:
    idx = headers.get(key)
    if idx is None or idx >= len(row):
        return None
    return row[idx]


def _parse_portfolio_sheet(ws) -> tuple[list[dict], int]:
    """Parse a sheet whose first row holds Decision Mart column names."""
    rows = ws.iter_rows(values_only=True)
    header_row = next(rows, None)
    if not header_row:
        return [], 0
    headers = _header_map(header_row)
    if not all(h in headers for h in REQUIRED_HEADERS):
        return [], 0

    out: list[dict] = []
    skipped = 0
    for row in rows:
        if not row:
            continue
        project_id = _i(_cell(row, headers, "project_id"))
        name = _s(_cell(row, headers, "project_name"))
        if project_id is None or not name:
            skipped += 1
            continue
        out.append({
            "project_id": project_id,
            "project_name": name,
            "program_id": _i(_cell(row, headers, "program_id")),
            "program_name": _s(_cell(row, headers, "program_name")),
            "planned_benefit_value": _f(_cell(row, headers, "planned_benefit_value")),
            "risk_severity": _s(_cell(row, headers, "risk_severity")) or None,
        })
    return out, skipped


def _resolve_program(session: Session, data: dict, programs: dict[str, Program]) -> int | None:
    """Find or create the row's program. Returns its id."""
    name = data["program_name"]
    if not name:
        return data["program_id"]
    key = name.casefold()
    if key not in programs:
        program = session.get(Program, data["program_id"]) if data["program_id"] else None
        if program is None:
            program = Program(id=data["program_id"], name=name) if data["program_id"] else Program(name=name)
            session.add(program)
            session.flush()
        programs[key] = program
    return programs[key].id


def _upsert(session: Session, data: dict, program_id: int | None) -> bool:
    """Insert or update one project with its benefit profile and risk register. Returns is_new."""
    project = session.get(Project, data["project_id"])
    is_new = project is None
    if is_new:
        project = Project(id=data["project_id"], name=data["project_name"], program_id=program_id)
        session.add(project)
    else:
        project.name = data["project_name"]
        if program_id is not None:
            project.program_id = program_id

    if data["planned_benefit_value"] is not None:
        profile = session.get(BenefitProfile, data["project_id"])
        if profile is None:
            session.add(BenefitProfile(project_id=data["project_id"],
                                       planned_benefit_value=data["planned_benefit_value"]))
        else:
            profile.planned_benefit_value = data["planned_benefit_value"]
    if data["risk_severity"] is not None:
        register = session.get(RiskRegister, data["project_id"])
        if register is None:
            session.add(RiskRegister(project_id=data["project_id"], risk_severity=data["risk_severity"]))
        else:
            register.risk_severity = data["risk_severity"]
    return is_new


def import_xlsx(file_path: str | Path, session: Session) -> ImportResult:
    """Import every portfolio sheet of a workbook. Upserts projects by Project_ID."""
    file_path = Path(file_path)
    wb = openpyxl.load_workbook(file_path, read_only=True, data_only=True)

    parsed: list[dict] = []
    skipped = 0
    try:
        for sheet_name in wb.sheetnames:
            rows, sheet_skipped = _parse_portfolio_sheet(wb[sheet_name])
            if not rows and not sheet_skipped:
                log.debug("Sheet %s has no portfolio columns, ignoring", sheet_name)
            parsed.extend(rows)
            skipped += sheet_skipped
    finally:
        wb.close()

    programs = {p.name.casefold(): p for p in session.execute(select(Program)).scalars().all()}
    programs_before = len(programs)
    created = updated = 0
    for data in parsed:
        program_id = _resolve_program(session, data, programs)
        if _upsert(session, data, program_id):
            created += 1
        else:
            updated += 1
        session.flush()

    session.commit()
    log.info("Imported %d projects (%d new, %d updated, %d skipped)",
             created + updated, created, updated, skipped)

    return ImportResult(
        programs=len(programs) - programs_before,
        projects_created=created,
        projects_updated=updated,
        skipped_rows=skipped,
    )
