"""Runtime settings — read from a .env file and the process environment.

Every variable is prefixed ``STORYFORGE_``. Values are validated by the
Settings model, so a bad value fails at startup rather than mid-turn.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from storyforge.llm import HttpLLM

ROOT = Path(__file__).parent.parent
DEFAULT_DB_PATH = Path("data") / "storyforge.db"


class Settings(BaseModel):
    db_path: Path = DEFAULT_DB_PATH
    llm_url: str = "https://api.anthropic.com"
    llm_api_key: str = ""
    llm_format: Literal["anthropic", "openai"] = "anthropic"
    llm_model: str = "claude-sonnet-4-20250514"
    llm_max_tokens: int = Field(default=1024, gt=0)
    llm_timeout: float = Field(default=60.0, gt=0)
    max_save_slots: int = Field(default=5, ge=1)
    ledger_create_if_missing: bool = False
    starting_gems: int = Field(default=100, ge=0)
    choice_reward: int = Field(default=5, ge=0)
    completion_reward: int = Field(default=100, ge=0)
    sqlite_busy_timeout_ms: int = Field(default=5000, ge=0)
    log_level: str = "INFO"

    def build_llm(self) -> HttpLLM:
        return HttpLLM(
            provider_url=self.llm_url,
            api_key=self.llm_api_key,
            provider_format=self.llm_format,
            model=self.llm_model,
            max_tokens=self.llm_max_tokens,
            timeout=self.llm_timeout,
        )


def load_settings(env_file: Path | None = None) -> Settings:
    """Load ``env_file`` (default ./.env next to the project) then read the environment.

    Variables already set in the environment win over the file.
    """
    load_dotenv(env_file or ROOT / ".env")

    values: dict[str, str] = {}
    for name in Settings.model_fields:
        raw = os.getenv(f"STORYFORGE_{name.upper()}")
        if raw is not None and raw != "":
            values[name] = raw
    # api key may legitimately be set to an empty string
    if "STORYFORGE_LLM_API_KEY" in os.environ:
        values["llm_api_key"] = os.environ["STORYFORGE_LLM_API_KEY"]
    return Settings.model_validate(values)
