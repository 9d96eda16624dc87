from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    model: str = "gpt-4o-mini"
    temperature: float = 0.0
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    request_timeout_seconds: float = 60.0

    draft_model: str = "gpt-4o-mini"
    draft_api_key: str | None = None
    draft_base_url: str | None = None

    max_tool_calls_per_turn: int = 10
    turn_timeout_seconds: float = 120.0

    # "review" gates send_email behind human approval, "direct" sends at once.
    send_mode: Literal["review", "direct"] = "review"
    gate_drafts: bool = True
    rejection_message: str = "User rejected this action."

    redis_url: str | None = None
    session_ttl_seconds: int = 86400  # 24 hours
    session_lock_timeout_seconds: float = 300.0

    emails_path: Path = Path("data/emails.json")
    outbox_path: Path | None = None
    search_top_k: int = Field(default=5, ge=1, le=20)

    agent_system_prompt: str = (
        "You are an Email Assistant.\n"
        "You help the user find emails in their inbox, draft replies, and send them.\n"
        "Use search_inbox to look up prior correspondence before drafting.\n"
        "When the user asks to draft an email, generate the subject and body and "
        "call save_draft or send_email. These actions are reviewed by the user "
        "before they take effect, so call them directly instead of asking for "
        "permission in text.\n"
        "If the user rejects an action, acknowledge it briefly and ask how to proceed."
    )
    draft_system_prompt: str = (
        "You write clear, polite, concise emails. Return only the email body, "
        "without a subject line or commentary."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _lock_outlives_turn(self) -> "Settings":
        # the Redis lock is renewed while held; its TTL still has to cover one turn
        if self.session_lock_timeout_seconds <= self.turn_timeout_seconds:
            raise ValueError(
                "session_lock_timeout_seconds must be greater than turn_timeout_seconds"
            )
        return self


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
