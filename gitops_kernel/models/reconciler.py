"""Reconciler configuration and backoff state."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ReconcilerConfig(BaseModel):
    """Configuration for the Reconciler Loop."""

    poll_interval_seconds: float = Field(default=180.0, gt=0)
    operation_timeout_seconds: float = Field(default=30.0, gt=0)
    apply_retries: int = Field(default=2, ge=0)         # Extra attempts per operation
    apply_retry_delay_seconds: float = Field(default=0.5, ge=0)
    backoff_base_seconds: float = Field(default=5.0, ge=0)
    backoff_max_seconds: float = Field(default=300.0, ge=0)
    max_retries: int = Field(default=5, ge=1)           # Before operator attention is required


class BackoffState(BaseModel):
    """Tracks consecutive failed passes for one application."""

    consecutive_failures: int = 0
    next_attempt_at: Optional[datetime] = None
    attention_required: bool = False
