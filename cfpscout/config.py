from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field


def _resolve_project_root() -> Path:
    override = os.getenv("CFPSCOUT_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def _resolve_database_path() -> Path:
    override = os.getenv("CFPSCOUT_DB", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return _resolve_project_root() / "sessions.db"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Settings(BaseModel):
    project_root: Path = Field(default_factory=_resolve_project_root)
    exports_dir: Path = Field(default_factory=_resolve_project_root)

    database_path: Path = Field(default_factory=_resolve_database_path)

    sessions_feed: Path = Field(default_factory=lambda: _resolve_project_root() / "__fixtures__" / "db.json")
    speakers_feed: Path = Field(default_factory=lambda: _resolve_project_root() / "__fixtures__" / "speakers.json")
    results_path: Path = Field(default_factory=lambda: _resolve_project_root() / "processed-sessions.json")

    session_concurrency: int = Field(default_factory=lambda: _env_int("CFPSCOUT_SESSION_CONCURRENCY", 1), ge=1)
    speaker_concurrency: int = Field(default_factory=lambda: _env_int("CFPSCOUT_SPEAKER_CONCURRENCY", 2), ge=1)

    conference_name: str = Field(default_factory=lambda: os.getenv("CFPSCOUT_CONFERENCE", "JSDev World"))
    llm_provider: str = Field(default_factory=lambda: os.getenv("LLM_PROVIDER", "anthropic"))
    llm_model: str = Field(default_factory=lambda: os.getenv("LLM_MODEL", ""))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
