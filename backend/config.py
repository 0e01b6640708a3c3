"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the Relay backend.
All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
import os
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        anthropic_api_key: API key for Anthropic models (exported for LiteLLM).
        worker_model: Model used by the worker agent to build and publish code.
        supervisor_model: Vision-capable model used to score deployments.
        worker_max_tokens: Output token ceiling for a worker turn.
        supervisor_max_tokens: Output token ceiling for an evaluation.
        llm_request_timeout_seconds: Timeout for a single model API call.
        llm_max_retries: Retries on transient model failures before giving up.
        llm_fallback_model: Optional model tried once after retries are exhausted.
        llm_max_context_tokens: Estimated request size above which a call is rejected.
        deployment_check_delay_seconds: Delay between a publish/push and the status poll.
        reevaluate_on_repeated_ready: If False, a ready signal for a URL that was
            already evaluated does not start another evaluation.
        max_feedback_cycles: Upper bound on automatic feedback turns per session
            (0 disables the bound).
        batch_max_attempts: Conversion attempts per design page in batch generation.
        github_token: Token for the GitHub REST API.
        github_webhook_secret: Secret used to verify GitHub push webhooks.
        vercel_api_token: Token for the Vercel REST API.
        vercel_team_id: Optional Vercel team scope.
        vercel_webhook_secret: Secret used to verify Vercel deployment webhooks.
        figma_api_token: Token for the Figma REST API.
        http_timeout_seconds: Timeout for collaborator REST calls.
        browser_navigation_timeout_seconds: Page load timeout for live captures.
        browser_settle_ms: Extra wait after load for client-side rendering.
        capture_timeout_seconds: Hard ceiling for one whole browser capture.
        interpreter_timeout_seconds: Timeout for execute_code runs.
        interpreter_max_output_chars: Output captured from execute_code runs.
        database_path: SQLite file for the session archive.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # LLM Configuration
    anthropic_api_key: str = ""
    # Model names must include provider prefix for LiteLLM (e.g., anthropic/)
    worker_model: str = "anthropic/claude-sonnet-4-5-20250929"
    supervisor_model: str = "anthropic/claude-sonnet-4-20250514"
    worker_max_tokens: int = 16384
    supervisor_max_tokens: int = 4096
    llm_request_timeout_seconds: int = 120
    llm_max_retries: int = 2
    llm_fallback_model: str | None = None
    llm_max_context_tokens: int = 180000

    # Pipeline
    deployment_check_delay_seconds: float = 10.0
    reevaluate_on_repeated_ready: bool = True
    max_feedback_cycles: int = 5
    batch_max_attempts: int = 3

    # Collaborators
    github_token: str = ""
    github_api_base: str = "https://api.github.com"
    github_branch: str = "main"
    github_webhook_secret: str = ""
    vercel_api_token: str = ""
    vercel_team_id: str | None = None
    vercel_api_base: str = "https://api.vercel.com"
    vercel_webhook_secret: str = ""
    figma_api_token: str = ""
    figma_api_base: str = "https://api.figma.com"
    http_timeout_seconds: float = 30.0

    # Browser capture
    browser_navigation_timeout_seconds: int = 60
    browser_settle_ms: int = 3000
    browser_viewport_width: int = 1920
    browser_viewport_height: int = 1080
    capture_timeout_seconds: int = 90

    # Code interpreter
    interpreter_timeout_seconds: int = 10
    interpreter_max_output_chars: int = 20000

    # Database Configuration
    database_path: str = "./data/relay.db"

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from a JSON array, comma-separated string or list."""
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def model_post_init(self, __context: Any) -> None:
        """Export the Anthropic key to os.environ for LiteLLM discovery."""
        if self.anthropic_api_key:
            os.environ.setdefault("ANTHROPIC_API_KEY", self.anthropic_api_key)


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


settings = Settings()

configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
