from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BUCKET_LABELS = ("excellent", "good", "fair", "slow")


class ConfigurationError(ValueError):
    """Raised when the engine cannot start with the given configuration."""


def parse_thresholds(raw: str | Sequence[int], *, name: str) -> tuple[int, ...]:
    if isinstance(raw, str):
        parts = [part.strip() for part in raw.split(",") if part.strip()]
        try:
            values = tuple(int(part) for part in parts)
        except ValueError as exc:
            raise ConfigurationError(f"{name}: thresholds must be integers, got {raw!r}") from exc
    else:
        values = tuple(int(value) for value in raw)

    if not values:
        raise ConfigurationError(f"{name}: at least one threshold is required")
    if values[0] <= 0:
        raise ConfigurationError(f"{name}: thresholds must be positive, got {values}")
    if any(later <= earlier for earlier, later in zip(values, values[1:])):
        raise ConfigurationError(f"{name}: thresholds must be strictly increasing, got {values}")
    return values


def default_bucket_labels(thresholds: Sequence[int]) -> tuple[str, ...]:
    if len(thresholds) + 1 == len(DEFAULT_BUCKET_LABELS):
        return DEFAULT_BUCKET_LABELS
    return (*(f"lt_{value}" for value in thresholds), f"gte_{thresholds[-1]}")


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Explicit configuration handed to the measurement engine at construction."""

    sources: tuple[str, ...]
    retention_ms: int = 180_000
    max_plausible_ms: int = 10_000
    progress_every: int = 10
    quality_thresholds: tuple[int, int, int] = (900, 1200, 2000)
    bucket_thresholds: tuple[int, ...] = (500, 1000, 2000)
    bucket_labels: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        if not self.sources:
            raise ConfigurationError("at least one source must be configured")
        if any(not isinstance(source, str) or not source.strip() for source in self.sources):
            raise ConfigurationError(f"source ids must be non-empty strings, got {self.sources}")
        if len(set(self.sources)) != len(self.sources):
            raise ConfigurationError(f"source ids must be unique, got {self.sources}")
        if self.retention_ms <= 0:
            raise ConfigurationError("retention_ms must be > 0")
        if self.max_plausible_ms <= 0:
            raise ConfigurationError("max_plausible_ms must be > 0")
        if self.progress_every < 0:
            raise ConfigurationError("progress_every must be >= 0")

        quality = parse_thresholds(self.quality_thresholds, name="quality_thresholds")
        if len(quality) != 3:
            raise ConfigurationError(
                f"quality_thresholds needs exactly 3 values (excellent, good, fair), got {quality}"
            )
        buckets = parse_thresholds(self.bucket_thresholds, name="bucket_thresholds")
        labels = self.bucket_labels or default_bucket_labels(buckets)
        if len(labels) != len(buckets) + 1:
            raise ConfigurationError(
                f"bucket_labels needs {len(buckets) + 1} entries for {len(buckets)} thresholds"
            )
        object.__setattr__(self, "quality_thresholds", quality)
        object.__setattr__(self, "bucket_thresholds", buckets)
        object.__setattr__(self, "bucket_labels", tuple(labels))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BFR_", env_file=".env", extra="ignore")

    log_level: str = "INFO"
    root_dir: Path = Path("data")
    state_db: Path = Path("state/state.sqlite")

    rpc_url: str = "https://api.mainnet-beta.solana.com"
    ws_url: str = "wss://api.mainnet-beta.solana.com"
    provider_config: Path | None = None
    api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("BFR_API_KEY", "HELIUS_API_KEY"),
    )

    duration_seconds: int = Field(default=180, ge=1)
    poll_interval_ms: int = Field(default=500, ge=50)
    request_timeout_seconds: float = Field(default=10.0, gt=0)
    retention_seconds: int = Field(default=180, ge=1)
    sweep_interval_seconds: float = Field(default=1.0, gt=0)
    max_plausible_ms: int = Field(default=10_000, gt=0)
    progress_every: int = Field(default=10, ge=0)
    quality_thresholds: str = "900,1200,2000"
    bucket_thresholds: str = "500,1000,2000"

    @model_validator(mode="after")
    def _check_thresholds(self) -> Settings:
        parse_thresholds(self.quality_thresholds, name="quality_thresholds")
        parse_thresholds(self.bucket_thresholds, name="bucket_thresholds")
        return self

    def engine_config(self, sources: Sequence[str]) -> EngineConfig:
        return EngineConfig(
            sources=tuple(sources),
            retention_ms=self.retention_seconds * 1000,
            max_plausible_ms=self.max_plausible_ms,
            progress_every=self.progress_every,
            quality_thresholds=parse_thresholds(self.quality_thresholds, name="quality_thresholds"),  # type: ignore[arg-type]
            bucket_thresholds=parse_thresholds(self.bucket_thresholds, name="bucket_thresholds"),
        )
