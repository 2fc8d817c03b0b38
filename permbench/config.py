import logging

from functools import lru_cache
from enum import Enum
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class Settings(BaseSettings):
    db_url: str = "sqlite:///permbench.db"
    db_echo: bool = False
    log_level: LogLevel = LogLevel.INFO

    # Corpus generation
    num_users: int = Field(gt=0, default=10_000)
    num_departments: int = Field(gt=0, default=2_000)
    num_customers: int = Field(gt=0, default=100_000)
    num_documents: int = Field(gt=0, default=500_000)
    max_dept_levels: int = Field(ge=1, default=5, description="Maximum department tree depth")
    max_dept_members: int = Field(gt=0, default=50)
    max_customer_followers: int = Field(ge=0, default=10)
    batch_size: int = Field(gt=0, default=1_000, description="Rows per load transaction")
    seed: int = 42

    # Benchmark
    warmup_rounds: int = Field(ge=0, default=100)
    measured_rounds: int = Field(gt=0, default=1_000)
    concurrency: int = Field(gt=0, default=10)
    timeout_seconds: float = Field(gt=0, default=300.0)
    request_corpus_size: int = Field(gt=0, default=500)
    allowed_ratio: float = Field(ge=0, le=1, default=0.5, description="Share of requests drawn from viewable pairs")
    cross_check_sample: int = Field(ge=0, default=200)
    mutation_rounds: int = Field(ge=0, default=20, description="Change/undo pairs per change kind in the mutation scenario")
    check_batch_size: int = Field(gt=0, default=50, description="Documents per batch check")
    output_dir: Path = Path("./benchmark-results")

    # Mutation retry (checks never retry)
    retry_attempts: int = Field(ge=1, default=3)
    retry_backoff_seconds: float = Field(ge=0, default=0.05)

    model_config = SettingsConfigDict(env_prefix='pb_')

    @property
    def max_check_depth(self) -> int:
        return check_depth_for(self.max_dept_levels)


def check_depth_for(max_dept_levels: int) -> int:
    # document -> department chain -> user, plus a userset hop of slack
    return max_dept_levels + 3


@lru_cache()
def get_settings():
    return Settings()
