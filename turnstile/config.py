"""Settings via pydantic-settings with TURNSTILE_ env prefix.

Provider credentials use validation_alias to read the same unprefixed
env vars (ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN) that the provider
SDKs and tooling use, so one .env file serves everything.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_PROMPT = """\
You are a helpful assistant with access to tools.

### Procedure when you are not 100% sure about something:
- Use the tools available to you to look up current information.
- Read the content of a webpage when the user references one.
- Never stay with uncertainty. Prefer checking over guessing.

### General rules:
- If a tool returns an error, read it carefully and retry with corrected arguments.
- All the links you provide to the user must be complete URLs.
"""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TURNSTILE_", env_file=".env")

    # Provider credentials -- unprefixed aliases
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")

    # LLM
    model: str = "claude-sonnet-4-5-20250514"
    max_tokens: int = 4096
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # Turn budgets
    input_token_budget: int = 20000
    reasoning_token_budget: int = 0  # thinking budget_tokens, 0 disables
    max_steps: int = 25  # Max AGENT -> TOOLS transitions per turn

    # Sanitization
    tool_call_check: Literal["full_history", "last_assistant"] = "full_history"

    # Direct API settings
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"
    max_conversations: int = 100

    # Built-in tools
    web_fetch_max_chars: int = 10000

    @model_validator(mode="after")
    def _validate_budgets(self) -> "Settings":
        if self.max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        if self.input_token_budget < 0:
            raise ValueError("input_token_budget must be >= 0")
        if self.reasoning_token_budget:
            if self.reasoning_token_budget < 1024:
                raise ValueError("reasoning_token_budget must be 0 or >= 1024 (API minimum)")
            if self.reasoning_token_budget >= self.max_tokens:
                raise ValueError(
                    f"reasoning_token_budget ({self.reasoning_token_budget}) must be < "
                    f"max_tokens ({self.max_tokens}). Increase max_tokens."
                )
        return self
