"""
Configuration de l'application.

Toutes les valeurs peuvent être surchargées par variables d'environnement
préfixées par AGILE_POKER_ (ou par un fichier .env).
"""

from __future__ import annotations

import os
import uuid
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="AGILE_POKER_",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str = Field(
        default="sqlite:///data/agile_poker.db",
        description="SQLAlchemy URL of the relational store (SQLite or PostgreSQL)",
    )
    email_domain: str = Field(default="metalab.com", description="Allowed sign-in email domain")
    secret_key: str = Field(default_factory=lambda: str(uuid.uuid4()))
    host: str = "0.0.0.0"
    port: int = Field(default_factory=lambda: int(os.environ.get("PORT", 5000)))
    debug: bool = False
    log_level: str = Field(default="INFO", description="DEBUG, INFO, WARNING, ERROR")
    auto_advance_delay_ms: int = Field(default=500, ge=0)
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])


@lru_cache
def get_settings() -> Settings:
    return Settings()
