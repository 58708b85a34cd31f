from __future__ import annotations

import logging
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Generator

from fastapi import Depends, FastAPI, File, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from decisionmart import assistant, services
from decisionmart.config import STATIC_DIR, Settings
from decisionmart.db import init_db, session_generator
from decisionmart.funding import ContractViolation, ScoreProvider, ValidationError, evaluate
from decisionmart.importer import import_xlsx
from decisionmart.schemas import (
    BoardDecisionCreate,
    BoardDecisionOut,
    ChatRequest,
    ChatResponse,
    EvaluateRequest,
    EvaluationOut,
    ImportResult,
    Initiative,
    PortfolioRow,
    SimulationOut,
)
from decisionmart.scorer import LLMCallError, LLMClient, LLMScoreProvider
from decisionmart.utils import json_parse

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Decision Mart",
    version="0.1.0",
    description=(
        "Portfolio decision API: sample portfolio data, a weighted funding decision model, "
        "an LLM-backed investment board simulation, a portfolio assistant and an append-only "
        "board decision ledger. All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Portfolio", "description": "Projects with benefit profiles and risk registers."},
        {"name": "Ledger", "description": "Append-only board decision ledger."},
        {"name": "Funding", "description": "Deterministic weighted funding decision model."},
        {"name": "Simulation", "description": "LLM-rated investment board simulation. Requires an LLM API key."},
        {"name": "Assistant", "description": "Portfolio chat assistant with ledger tools."},
        {"name": "Governance", "description": "Static governance pack content."},
        {"name": "Import", "description": "Bulk import portfolio data from XLSX spreadsheets."},
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Origin", "X-Requested-With", "Content-Type", "Accept"],
)

app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------


def _error(status: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error(422, str(exc), dimension=exc.dimension)


@app.exception_handler(ContractViolation)
async def contract_violation_handler(request: Request, exc: ContractViolation):
    log.error("Funding model contract violation on %s: %s", request.url.path, exc)
    return _error(500, f"Internal consistency error: {exc}")


@app.exception_handler(services.DuplicateDecisionError)
async def duplicate_decision_handler(request: Request, exc: services.DuplicateDecisionError):
    return _error(409, str(exc))


@app.exception_handler(LLMCallError)
async def llm_error_handler(request: Request, exc: LLMCallError):
    log.warning("LLM call failed on %s: %s", request.url.path, exc)
    return _error(502, str(exc), retryable=exc.retryable)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def score_provider() -> ScoreProvider:
    return LLMScoreProvider()


def llm_client() -> LLMClient:
    return LLMClient()


# ---------------------------------------------------------------------------
# Routes: Static
# ---------------------------------------------------------------------------


@app.get("/", response_class=HTMLResponse)
async def root():
    html_path = STATIC_DIR / "index.html"
    if not html_path.exists():
        return HTMLResponse("<h1>Decision Mart</h1><p>index.html not found</p>", status_code=500)
    return HTMLResponse(html_path.read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# Routes: Portfolio & ledger
# ---------------------------------------------------------------------------


def _query_portfolio(session: Session, body: dict[str, Any]) -> Any:
    return services.query_portfolio(session)


def _write_board_decision(session: Session, body: dict[str, Any]) -> Any:
    try:
        payload = BoardDecisionCreate.model_validate(body).model_dump()
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid board decision: {exc.error_count()} field error(s)") from exc
    decision = services.record_board_decision(session, payload)
    return {"status": "saved", "decision_id": decision.decision_id}


def _get_board_decisions(session: Session, body: dict[str, Any]) -> Any:
    return services.list_board_decisions(session)


PROXY_ROUTES: dict[str, Callable[[Session, dict[str, Any]], Any]] = {
    "queryPortfolio": _query_portfolio,
    "writeBoardDecision": _write_board_decision,
    "getBoardDecisions": _get_board_decisions,
}


@app.post("/api/queryPortfolio", response_model=list[PortfolioRow],
          tags=["Portfolio"], summary="Projects joined with benefit profiles and risk registers")
async def query_portfolio(session: Session = Depends(db_session)):
    return _query_portfolio(session, {})


@app.post("/api/writeBoardDecision", tags=["Ledger"], summary="Append a board decision to the ledger")
async def write_board_decision(body: BoardDecisionCreate, session: Session = Depends(db_session)):
    return _write_board_decision(session, body.model_dump())


@app.api_route("/api/getBoardDecisions", methods=["GET", "POST"], response_model=list[BoardDecisionOut],
               tags=["Ledger"], summary="List all board decisions, newest first")
async def get_board_decisions(session: Session = Depends(db_session)):
    return _get_board_decisions(session, {})


@app.post("/api/proxy/{route}", tags=["Portfolio", "Ledger"],
          summary="Forward to queryPortfolio, writeBoardDecision or getBoardDecisions")
async def proxy(route: str, request: Request, session: Session = Depends(db_session)):
    handler = PROXY_ROUTES.get(route)
    if handler is None:
        return _error(404, "API route not found")
    raw = await request.body()
    body = json_parse(raw.decode("utf-8", errors="replace"), None) if raw else {}
    if not isinstance(body, dict):
        return _error(400, "Request body must be a JSON object")
    return handler(session, body)


# ---------------------------------------------------------------------------
# Routes: Funding model & simulation
# ---------------------------------------------------------------------------


@app.get("/api/funding-model", tags=["Funding"], summary="Weights, thresholds and monitoring triggers")
async def get_funding_model():
    return services.funding_model()


@app.post("/api/evaluate", response_model=EvaluationOut,
          tags=["Funding"], summary="Evaluate criterion scores with the weighted funding model")
async def evaluate_scores(body: EvaluateRequest):
    return evaluate(body.initiative, body.criterion_scores, body.weights).as_dict()


@app.post("/api/simulate", response_model=SimulationOut,
          tags=["Simulation"], summary="Run an investment board simulation for an initiative")
async def simulate(
    body: Initiative,
    persist: bool = Query(False, description="Append the result to the board decision ledger"),
    session: Session = Depends(db_session),
    provider: ScoreProvider = Depends(score_provider),
):
    if not body.initiative_name.strip():
        return _error(400, "Initiative name is required.")
    log.info("Starting board simulation for %s", body.initiative_name)
    return await services.run_board_simulation(session, body, provider, persist=persist)


# ---------------------------------------------------------------------------
# Routes: Assistant
# ---------------------------------------------------------------------------


@app.post("/api/assistant/chat", response_model=ChatResponse,
          tags=["Assistant"], summary="Ask the portfolio assistant a question")
async def assistant_chat(
    body: ChatRequest,
    session: Session = Depends(db_session),
    client: LLMClient = Depends(llm_client),
):
    if not body.message.strip():
        return _error(400, "Message is required")
    result = await assistant.chat(
        session, body.message, [m.model_dump() for m in body.history], client,
    )
    return {"reply": result.reply, "tool_calls": result.tool_calls}


# ---------------------------------------------------------------------------
# Routes: Governance
# ---------------------------------------------------------------------------


@app.get("/api/governance", tags=["Governance"], summary="Static governance pack")
async def get_governance():
    return services.governance_pack()


# ---------------------------------------------------------------------------
# Routes: Import
# ---------------------------------------------------------------------------


@app.post("/api/import", response_model=ImportResult,
          tags=["Import"], summary="Import portfolio data from an XLSX spreadsheet")
async def import_file(file: UploadFile = File(...), session: Session = Depends(db_session)):
    if not file.filename or not file.filename.endswith(".xlsx"):
        return _error(400, "Only .xlsx files are supported")
    content = await file.read()
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(content)
        return import_xlsx(tmp_path, session)
    finally:
        if tmp_path:
            tmp_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Routes: Fallbacks (registered last)
# ---------------------------------------------------------------------------


@app.api_route("/api/{path:path}", methods=["GET", "POST", "PUT", "DELETE"], include_in_schema=False)
async def api_not_found(path: str):
    return _error(404, "API route not found")


@app.get("/{path:path}", response_class=HTMLResponse, include_in_schema=False)
async def spa_fallback(path: str):
    return await root()


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log.info("Server running on %s:%d", settings.host, settings.port)
    uvicorn.run("decisionmart.app:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
