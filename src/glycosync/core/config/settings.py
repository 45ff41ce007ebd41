"""Application settings loaded from environment variables."""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """GlycoSync configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Loopback by default: the tool server has no auth layer of its own.
    glyco_host: str = "127.0.0.1"
    glyco_port: int = 8001
    glyco_log_level: str = "info"
    glyco_allow_insecure_bind: bool = False
    glyco_transport: Literal["streamable-http", "stdio"] = "streamable-http"

    # Local store (measurement cache, sync state, key record, audit log)
    db_path: str = "~/.glycosync/glycosync.db"

    # Remote sync
    sync_backend: Literal["none", "http", "document"] = "none"
    sync_api_url: str = ""
    sync_request_timeout: float = 15.0
    sync_auth_token: str = ""
    sync_user_id: str = ""

    # Document backend (Firestore REST)
    firestore_project_id: str = ""
    firestore_base_url: str = "https://firestore.googleapis.com/v1"
    firestore_collection: str = "encrypted_measurements"

    # Encryption
    legacy_key_limit: int = 5

    # Corruption detection
    envelope_min_length: int = 20
    known_corrupted_doc_ids: list[str] = []

    # Entry-time validation
    glucose_unit: Literal["mgdl", "mmoll"] = "mgdl"


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
