"""Environment-driven settings for the Decision Mart server."""
from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel

PACKAGE_DIR = Path(__file__).parent
DATA_DIR = PACKAGE_DIR / "data"
STATIC_DIR = PACKAGE_DIR / "static"
GOVERNANCE_PATH = PACKAGE_DIR / "governance.json"


class LLMSettings(BaseModel):
    provider: str = "gemini"
    model: str = ""
    gemini_api_key: str = ""
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    openai_base_url: str = ""


class Settings(BaseModel):
    db_path: Path = DATA_DIR / "decision_mart.db"
    host: str = "127.0.0.1"
    port: int = 3000
    log_level: str = "INFO"
    llm: LLMSettings = LLMSettings()

    @classmethod
    def from_env(cls) -> Settings:
        """Build settings from environment variables, falling back to defaults."""
        env = os.environ
        return cls(
            db_path=Path(env.get("DECISIONMART_DB_PATH") or DATA_DIR / "decision_mart.db"),
            host=env.get("DECISIONMART_HOST", "127.0.0.1"),
            port=int(env.get("PORT", "3000")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            llm=LLMSettings(
                provider=env.get("LLM_PROVIDER", "gemini"),
                model=env.get("LLM_MODEL", ""),
                gemini_api_key=env.get("GEMINI_API_KEY", ""),
                anthropic_api_key=env.get("ANTHROPIC_API_KEY", ""),
                openai_api_key=env.get("OPENAI_API_KEY", ""),
                openai_base_url=env.get("OPENAI_BASE_URL", ""),
            ),
        )
