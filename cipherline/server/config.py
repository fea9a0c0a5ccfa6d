from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from cipherline.core.bus import DEFAULT_CHANNEL
from cipherline.core.directory import DEFAULT_ROUTE_TTL
from cipherline.core.queue import DEFAULT_QUEUE

log = logging.getLogger("cipherline.server.config")

ENV_REDIS_URL = "CIPHERLINE_REDIS_URL"
ENV_AUTH_SECRET = "CIPHERLINE_AUTH_SECRET"


def parse_listen(value: str) -> tuple[str, int]:
    host, port = value.rsplit(":", 1)
    return host, int(port)


class AuthSettings(BaseModel):
    secret: str = ""
    token_ttl_secs: int = 86400


class ApiSettings(BaseModel):
    enabled: bool = True
    listen: str = "0.0.0.0:8000"
    allow_login: bool = True


class WorkerSettings(BaseModel):
    embedded: bool = False
    max_attempts: int = Field(default=5, ge=1)
    backoff_base_secs: float = Field(default=0.5, ge=0)
    backoff_max_secs: float = Field(default=30.0, ge=0)
    poll_timeout_secs: float = Field(default=1.0, gt=0)
    visibility_timeout_secs: float = Field(default=30.0, gt=0)


class Settings(BaseModel):
    instance_id: str = Field(default_factory=lambda: f"relay-{uuid.uuid4().hex[:8]}")
    listen: str = "0.0.0.0:3000"
    redis_url: Optional[str] = None
    db_path: str = "data/cipherline.db"
    channel: str = DEFAULT_CHANNEL
    queue_name: str = DEFAULT_QUEUE
    route_ttl_secs: int = Field(default=DEFAULT_ROUTE_TTL, ge=1)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)

    @field_validator("listen")
    @classmethod
    def _listen_has_port(cls, value: str) -> str:
        parse_listen(value)
        return value

    @property
    def in_memory(self) -> bool:
        return not self.redis_url


def load_settings(path: Optional[Path] = None, *, env: Optional[Dict[str, str]] = None) -> Settings:
    env = os.environ if env is None else env
    raw: Dict[str, Any] = {}
    if path is not None:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    settings = Settings.model_validate(raw)

    if env.get(ENV_REDIS_URL):
        settings.redis_url = env[ENV_REDIS_URL]
    if env.get(ENV_AUTH_SECRET):
        settings.auth.secret = env[ENV_AUTH_SECRET]
    if not settings.auth.secret:
        raise ValueError(f"auth.secret is not configured (set it in the config file or {ENV_AUTH_SECRET})")

    # without a shared queue the worker can only live in this process
    if settings.in_memory:
        settings.worker.embedded = True
    else:
        # presence, bus and queue are shared through Redis, the SQLite store is not
        log.warning(
            "Message store %s is a local SQLite file: every relay and worker on %s must run on this host and share it",
            settings.db_path, settings.redis_url,
        )
    return settings


__all__ = ["Settings", "AuthSettings", "ApiSettings", "WorkerSettings", "load_settings", "parse_listen"]
