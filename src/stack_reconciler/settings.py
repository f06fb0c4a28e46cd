from __future__ import annotations

import math
import os
from dataclasses import dataclass
from pathlib import Path

from .backoff import BackoffPolicy

SECURITY_POLICIES = ("passthrough", "warn", "enforce")


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_root: str = "state"
    stack_name: str = "default"
    parallelism: int = 4
    fail_fast: bool = False
    poll_base_delay: float = 0.5
    poll_max_delay: float = 15.0
    poll_timeout: float = 600.0
    transient_retries: int = 3
    history_limit: int = 20
    security_policy: str = "passthrough"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_root=os.getenv("RECONCILER_STATE_ROOT", "state"),
            stack_name=os.getenv("RECONCILER_STACK_NAME", "default"),
            parallelism=_get_env_int("RECONCILER_PARALLELISM", default=4, minimum=1, maximum=256),
            fail_fast=_get_env_bool("RECONCILER_FAIL_FAST", default=False),
            poll_base_delay=_get_env_float("RECONCILER_POLL_BASE_DELAY", default=0.5, minimum=0.0),
            poll_max_delay=_get_env_float("RECONCILER_POLL_MAX_DELAY", default=15.0, minimum=0.0),
            poll_timeout=_get_env_float("RECONCILER_POLL_TIMEOUT", default=600.0, minimum=0.0),
            transient_retries=_get_env_int("RECONCILER_TRANSIENT_RETRIES", default=3, minimum=0, maximum=100),
            history_limit=_get_env_int("RECONCILER_HISTORY_LIMIT", default=20, minimum=1),
            security_policy=os.getenv("RECONCILER_SECURITY_POLICY", "passthrough"),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        stack_name = self.stack_name.strip()
        if not stack_name:
            raise ValueError("RECONCILER_STACK_NAME must be non-empty")
        if not self.state_root.strip():
            raise ValueError("RECONCILER_STATE_ROOT must be non-empty")

        # -- Numeric bounds validation --
        if self.parallelism < 1:
            raise ValueError(f"RECONCILER_PARALLELISM must be >= 1, got: {self.parallelism}")
        if self.transient_retries < 0:
            raise ValueError(f"RECONCILER_TRANSIENT_RETRIES must be >= 0, got: {self.transient_retries}")
        if self.history_limit < 1:
            raise ValueError(f"RECONCILER_HISTORY_LIMIT must be >= 1, got: {self.history_limit}")
        if self.poll_timeout <= 0:
            raise ValueError(f"RECONCILER_POLL_TIMEOUT must be > 0, got: {self.poll_timeout}")
        if self.poll_max_delay < self.poll_base_delay:
            raise ValueError(
                "RECONCILER_POLL_MAX_DELAY must be >= RECONCILER_POLL_BASE_DELAY, "
                f"got: {self.poll_max_delay} < {self.poll_base_delay}"
            )

        # -- Policy validation --
        security_policy = self.security_policy.strip().lower()
        if security_policy not in SECURITY_POLICIES:
            raise ValueError("RECONCILER_SECURITY_POLICY must be one of: " + ", ".join(SECURITY_POLICIES))
        return RuntimeSettings(
            state_root=self.state_root,
            stack_name=stack_name,
            parallelism=self.parallelism,
            fail_fast=self.fail_fast,
            poll_base_delay=self.poll_base_delay,
            poll_max_delay=self.poll_max_delay,
            poll_timeout=self.poll_timeout,
            transient_retries=self.transient_retries,
            history_limit=self.history_limit,
            security_policy=security_policy,
        )

    def backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            base_delay=self.poll_base_delay,
            max_delay=self.poll_max_delay,
            max_wait=self.poll_timeout,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 86_400.0) -> float:
    """Parse a finite float (seconds) from an environment variable with bounds checking."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not math.isfinite(parsed):
        raise ValueError(f"{name} must be finite, got: {raw!r}")
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ValueError(f"{name} must be a boolean (1/0, true/false, yes/no, on/off), got: {raw!r}")
