from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_store_root: str = "state_store"
    lock_ttl_seconds: int = 60
    log_max_entries: int = 200
    undo_window_seconds: int = 300
    lever_default_limit: int = 10
    lever_max_limit: int = 50
    pending_list_limit: int = 25
    queue_list_limit: int = 200
    close_after_fallback: bool = True
    adapter_base_url: str = ""
    adapter_timeout_seconds: int = 30

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_store_root=os.getenv("AUTOPILOT_STATE_STORE_ROOT", "state_store"),
            lock_ttl_seconds=_get_env_int("AUTOPILOT_LOCK_TTL_SECONDS", default=60, minimum=1, maximum=3_600),
            log_max_entries=_get_env_int("AUTOPILOT_LOG_MAX_ENTRIES", default=200, minimum=1, maximum=100_000),
            undo_window_seconds=_get_env_int("AUTOPILOT_UNDO_WINDOW_SECONDS", default=300, minimum=1, maximum=86_400),
            lever_default_limit=_get_env_int("AUTOPILOT_LEVER_DEFAULT_LIMIT", default=10, minimum=1),
            lever_max_limit=_get_env_int("AUTOPILOT_LEVER_MAX_LIMIT", default=50, minimum=1, maximum=10_000),
            pending_list_limit=_get_env_int("AUTOPILOT_PENDING_LIST_LIMIT", default=25, minimum=1),
            queue_list_limit=_get_env_int("AUTOPILOT_QUEUE_LIST_LIMIT", default=200, minimum=1),
            close_after_fallback=_get_env_bool("AUTOPILOT_CLOSE_AFTER_FALLBACK", default=True),
            adapter_base_url=os.getenv("AUTOPILOT_ADAPTER_BASE_URL", ""),
            adapter_timeout_seconds=_get_env_int("AUTOPILOT_ADAPTER_TIMEOUT_SECONDS", default=30, minimum=1, maximum=600),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if not self.state_store_root.strip():
            raise ValueError("AUTOPILOT_STATE_STORE_ROOT must be non-empty")

        # -- Numeric bounds validation --
        if self.lock_ttl_seconds <= 0:
            raise ValueError(f"AUTOPILOT_LOCK_TTL_SECONDS must be > 0, got: {self.lock_ttl_seconds}")
        if self.log_max_entries <= 0:
            raise ValueError(f"AUTOPILOT_LOG_MAX_ENTRIES must be > 0, got: {self.log_max_entries}")
        if self.undo_window_seconds <= 0:
            raise ValueError(f"AUTOPILOT_UNDO_WINDOW_SECONDS must be > 0, got: {self.undo_window_seconds}")
        if self.lever_max_limit <= 0:
            raise ValueError(f"AUTOPILOT_LEVER_MAX_LIMIT must be > 0, got: {self.lever_max_limit}")

        # -- Adapter URL validation --
        base_url = self.adapter_base_url.strip().rstrip("/")
        if base_url and not base_url.startswith(("http://", "https://")):
            raise ValueError(f"AUTOPILOT_ADAPTER_BASE_URL must be an http(s) URL, got: {base_url!r}")

        return RuntimeSettings(
            state_store_root=self.state_store_root.strip(),
            lock_ttl_seconds=self.lock_ttl_seconds,
            log_max_entries=self.log_max_entries,
            undo_window_seconds=self.undo_window_seconds,
            lever_default_limit=min(max(self.lever_default_limit, 1), self.lever_max_limit),
            lever_max_limit=self.lever_max_limit,
            pending_list_limit=self.pending_list_limit,
            queue_list_limit=self.queue_list_limit,
            close_after_fallback=self.close_after_fallback,
            adapter_base_url=base_url,
            adapter_timeout_seconds=self.adapter_timeout_seconds,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path

    def clamp_lever_limit(self, limit: int | None) -> int:
        if limit is None:
            return self.lever_default_limit
        return max(1, min(int(limit), self.lever_max_limit))


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


_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got: {raw!r}")
