from pydantic import BaseModel, ConfigDict, Field, field_validator


class CorrelationConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    # Scoring constants are empirical; keep them tunable.
    threshold: float = 2.0
    exact_weight: float = 1.0
    phrase_weight: float = 0.3
    mtime_window_s: float = Field(default=120.0, ge=0)
    min_message_length: int = Field(default=15, ge=1)
    recent_messages: int = Field(default=20, ge=1)
    history_tail: int = Field(default=100, ge=1)
    candidate_history_tail: int = Field(default=1000, ge=1)

    @field_validator("threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        """Threshold must be positive or every transcript would match."""
        if v <= 0:
            raise ValueError(f"Correlation threshold must be > 0, got: {v}")
        return v


class ImmortermSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    restore_on_startup: bool = True
    restore_delay_ms: int = Field(default=800, ge=0)
    close_grace_period_ms: int = Field(default=60_000, ge=0)
    max_log_size_mb: int = Field(default=300, ge=1)
    log_retain_lines: int = Field(default=50_000, ge=100)
    auto_cleanup_stale: bool = True
    conversation_sync_interval_ms: int = Field(default=30_000, ge=0)
    conversation_auto_resume: bool = True
    naming_pattern: str = "${project}-${n}"
    command_timeout_s: float = Field(default=5.0, gt=0)
    stale_cleanup_interval_s: float = Field(default=3600.0, gt=0)
    log_cleanup_interval_s: float = Field(default=3600.0, gt=0)
    title_sync_interval_s: float = Field(default=5.0, gt=0)
    tmux_binary: str = "tmux"
    correlation: CorrelationConfig = Field(default_factory=CorrelationConfig)

    @field_validator("naming_pattern")
    @classmethod
    def validate_naming_pattern(cls, v: str) -> str:
        """The pattern needs a counter slot to produce unique names."""
        if "${n}" not in v:
            raise ValueError(f"naming_pattern must contain '${{n}}', got: {v}")
        return v

    @property
    def restore_delay_s(self) -> float:
        return self.restore_delay_ms / 1000

    @property
    def close_grace_period_s(self) -> float:
        return self.close_grace_period_ms / 1000

    @property
    def conversation_sync_interval_s(self) -> float:
        return self.conversation_sync_interval_ms / 1000

    @property
    def max_log_size_bytes(self) -> int:
        return self.max_log_size_mb * 1024 * 1024
