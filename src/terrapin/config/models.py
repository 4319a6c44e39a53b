"""Pydantic models for configuration schema."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from terrapin.utils.retry import RetryPolicy


class StateConfig(BaseModel):
    """State file configuration."""

    model_config = ConfigDict(extra="forbid")

    path: str = Field(".terrapin/state.json", min_length=1, description="State file path")
    backup: bool = Field(True, description="Keep the previous document as <path>.backup")


class ExecutorConfig(BaseModel):
    """Executor configuration."""

    model_config = ConfigDict(extra="forbid")

    max_workers: int = Field(4, ge=1, le=64, description="Operations running at once")
    timeout: Optional[float] = Field(None, gt=0, description="Seconds before an apply is cancelled")
    cancel_grace: float = Field(30.0, ge=0, description="Seconds in-flight calls get after cancellation")


class RetryConfig(BaseModel):
    """Retry policy for provider calls."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(5, ge=1, le=20)
    base_delay: float = Field(1.0, ge=0)
    max_delay: float = Field(60.0, ge=0)
    exponential_base: float = Field(2.0, ge=1)
    jitter: bool = True

    @model_validator(mode="after")
    def validate_delays(self):
        """Validate max_delay is not below base_delay."""
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be greater than or equal to base_delay")
        return self

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            exponential_base=self.exponential_base,
            jitter=self.jitter,
        )


class ProviderConfig(BaseModel):
    """Provider selection and connection settings."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field("memory", pattern="^(memory|aws)$")
    region: Optional[str] = Field(None, pattern="^[a-z]{2}-[a-z]+-[0-9]$")
    profile: Optional[str] = None
    path: Optional[str] = Field(
        ".terrapin/memory-provider.json", description="Persistence file for the memory provider"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")

    level: str = Field("warning", pattern="^(debug|info|warning|error|critical)$")
    dir: Optional[str] = Field(".terrapin/logs", description="Directory for JSON log files")


class TerrapinConfig(BaseModel):
    """Root configuration (terrapin.yaml)."""

    model_config = ConfigDict(extra="forbid")

    project: str = Field("default", min_length=1, max_length=64, pattern="^[a-z0-9][a-z0-9-]*$")
    declarations: List[str] = Field(default_factory=lambda: ["."], description="Declaration files or directories")
    state: StateConfig = Field(default_factory=StateConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("declarations")
    @classmethod
    def validate_declarations(cls, v: List[str]) -> List[str]:
        """Validate at least one declaration path is given."""
        if not v:
            raise ValueError("At least one declaration path must be given")
        return v
