# (c) Copyright Datacraft, 2026
import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Protocol

from pydantic import BaseModel, ConfigDict, Field

from permbench.changes import EntityChange
from permbench.config import Settings


class Scenario(str, Enum):
    CHECK = "check"
    BATCH = "batch"
    LIST = "list"
    MUTATION = "mutation"
    ALL = "all"

    def expand(self) -> list["Scenario"]:
        if self == Scenario.ALL:
            return [Scenario.CHECK, Scenario.BATCH, Scenario.LIST, Scenario.MUTATION]
        return [self]


class PermissionEngine(Protocol):
    """What the harness needs from an engine."""
    name: str

    def check(self, user_id: int, document_id: int) -> bool:
        ...

    def check_batch(self, user_id: int, document_ids: Iterable[int]) -> dict[int, bool]:
        ...

    def list_viewable_documents(self, user_id: int) -> set[int]:
        ...

    def apply(self, change: EntityChange) -> int:
        ...

    def count(self) -> int:
        ...

    def storage_stats(self) -> dict:
        ...


class BenchmarkConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    scenario: Scenario = Scenario.CHECK
    warmup_rounds: int = Field(ge=0, default=100)
    measured_rounds: int = Field(gt=0, default=1_000)
    concurrency: int = Field(gt=0, default=10)
    timeout_seconds: float = Field(gt=0, default=300.0, description="Deadline per engine")
    seed: int = 42
    corpus_size: int = Field(gt=0, default=500, description="Distinct check requests")
    allowed_ratio: float = Field(ge=0, le=1, default=0.5)
    cross_check_sample: int = Field(ge=0, default=200)
    mutation_rounds: int = Field(ge=0, default=20)
    check_batch_size: int = Field(gt=0, default=50, description="Documents per batch check")

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> "BenchmarkConfig":
        values = {
            'warmup_rounds': settings.warmup_rounds,
            'measured_rounds': settings.measured_rounds,
            'concurrency': settings.concurrency,
            'timeout_seconds': settings.timeout_seconds,
            'seed': settings.seed,
            'corpus_size': settings.request_corpus_size,
            'allowed_ratio': settings.allowed_ratio,
            'cross_check_sample': settings.cross_check_sample,
            'mutation_rounds': settings.mutation_rounds,
            'check_batch_size': settings.check_batch_size,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass(frozen=True)
class CheckRequest:
    user_id: int
    document_id: int


@dataclass(frozen=True)
class BatchRequest:
    user_id: int
    document_ids: tuple[int, ...]


@dataclass(frozen=True)
class Mismatch:
    """Engines disagreeing on one check, or on one user's document listing (no document)."""
    user_id: int
    document_id: int | None
    answers: dict[str, bool | frozenset[int]]

    def __str__(self):
        answers = ", ".join(
            f"{k}={sorted(v) if isinstance(v, frozenset) else v}"
            for k, v in sorted(self.answers.items())
        )
        target = "listing" if self.document_id is None else f"document={self.document_id}"
        return f"user={self.user_id} {target}: {answers}"


class LatencyStats(BaseModel):
    """Latencies in milliseconds; percentiles use the nearest-rank method."""
    count: int = 0
    mean: float = 0.0
    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    min: float = 0.0
    max: float = 0.0
    throughput: float = Field(0.0, description="Successful requests per second")

    @classmethod
    def from_samples(cls, samples_ms: list[float], wall_seconds: float) -> "LatencyStats":
        if not samples_ms:
            return cls()
        ordered = sorted(samples_ms)
        return cls(
            count=len(ordered),
            mean=sum(ordered) / len(ordered),
            p50=percentile(ordered, 50),
            p95=percentile(ordered, 95),
            p99=percentile(ordered, 99),
            min=ordered[0],
            max=ordered[-1],
            throughput=len(ordered) / wall_seconds if wall_seconds > 0 else 0.0,
        )


def percentile(ordered: list[float], pct: float) -> float:
    """Nearest-rank percentile of an ascending list."""
    if not ordered:
        return 0.0
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[min(rank, len(ordered)) - 1]


class EngineReport(BaseModel):
    """One engine in one scenario."""
    engine: str
    scenario: Scenario
    operation: str = "check"
    warmup_rounds: int
    measured_rounds: int
    concurrency: int
    completed: int = 0
    errors: int = 0
    deadline_exceeded: bool = False
    latency: LatencyStats = Field(default_factory=LatencyStats)
    mismatches: int = 0
    mismatch_samples: list[str] = Field(default_factory=list)
    rows_touched: int | None = None
    stored_records: int | None = Field(None, description="Tuples or flat rows after the run")
    storage: dict = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=datetime.now)
    wall_seconds: float = 0.0
