from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).parent.parent


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    anthropic_api_key: str = Field(default="", alias="ANTHROPIC_API_KEY")
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    default_model: str = Field(default="claude-sonnet-4-6", alias="DEFAULT_MODEL")
    judge_model: str = Field(default="claude-haiku-4-5", alias="JUDGE_MODEL")
    openai_model: str = Field(default="gpt-4o-mini", alias="OPENAI_MODEL")
    max_concurrent_tests: int = Field(default=5, ge=1, alias="MAX_CONCURRENT_TESTS")
    heartbeat_interval_s: float = Field(default=15.0, gt=0, alias="HEARTBEAT_INTERVAL_S")
    webhook_timeout_s: float = Field(default=30.0, gt=0, alias="WEBHOOK_TIMEOUT_S")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    db_path: Path = Field(default=ROOT_DIR / "suite_runner.db", alias="DB_PATH")
    results_dir: Path = Field(default=ROOT_DIR / "results", alias="RESULTS_DIR")
    cors_origins: list[str] = Field(default=["http://localhost:3000"], alias="CORS_ORIGINS")


settings = Settings()
