from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


def _load_dotenv_file() -> None:
    base_dir = Path(__file__).resolve().parents[1]
    candidates = [
        base_dir / ".env",
        Path.cwd() / ".env",
    ]
    env_path: Path | None = None
    for candidate in candidates:
        if candidate.exists():
            env_path = candidate
            break

    if env_path is None:
        logger.warning(
            "No .env file found. Tried: %s, %s",
            base_dir / ".env",
            Path.cwd() / ".env",
        )
        return

    logger.info("Loading environment variables from %s", env_path)

    loaded_keys: list[str] = []
    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if key.startswith("export "):
            key = key.removeprefix("export ").strip()
        if value.startswith(("'", '"')) and value.endswith(("'", '"')) and len(value) >= 2:
            value = value[1:-1]
        if key and key not in os.environ:
            os.environ[key] = value
            loaded_keys.append(key)

    if loaded_keys:
        logger.debug("Loaded %d variables from %s: %s", len(loaded_keys), env_path, ", ".join(sorted(loaded_keys)))
    else:
        logger.debug("No new variables were loaded from %s", env_path)


def _log_llm_key_status() -> None:
    if os.getenv("LABELEVAL_LLM_API_KEY"):
        logger.info("Resolved LLM key from LABELEVAL_LLM_API_KEY.")
        return
    if os.getenv("OPENAI_API_KEY"):
        logger.info("Resolved LLM key from OPENAI_API_KEY.")
        return
    logger.warning(
        "LLM API key is not configured. Set LABELEVAL_LLM_API_KEY or OPENAI_API_KEY in environment/.env.",
    )


_load_dotenv_file()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from labeleval.api.routes.config import router as config_router
from labeleval.api.routes.evaluations import router as evaluations_router
from labeleval.core.db import Base, _ENGINE, get_db_path
from labeleval.services.evaluation_service import get_evaluation_service

# Register tables on Base.metadata before create_all().
from labeleval.models import dataset, evaluation, evaluation_result, prompt  # noqa: F401

app = FastAPI(title="Label Evaluation API", version="0.1.0")
APP_VERSION = os.getenv("LABELEVAL_VERSION", "0.1.0")


def _resolve_allowed_origins() -> list[str]:
    defaults = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:4173",
        "http://127.0.0.1:4173",
    ]
    raw_value = str(os.getenv("LABELEVAL_ALLOWED_ORIGINS", "")).strip()
    if not raw_value:
        return defaults
    values = [item.strip() for item in raw_value.split(",") if item.strip()]
    filtered = [value for value in values if value != "*"]
    return filtered or defaults


_ALLOWED_ORIGINS = _resolve_allowed_origins()
logger.info("Resolved CORS allowed origins: %s", ", ".join(_ALLOWED_ORIGINS))
app.add_middleware(
    CORSMiddleware,
    allow_origins=_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup() -> None:
    logger.info("Resolved LABELEVAL_DB_PATH=%s", get_db_path())
    _log_llm_key_status()
    Base.metadata.create_all(_ENGINE)
    get_evaluation_service().recover_interrupted_runs()


@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.get("/api/v1/version")
def version():
    return {"version": APP_VERSION}


app.include_router(config_router, prefix="/api/v1")
app.include_router(evaluations_router, prefix="/api/v1")
