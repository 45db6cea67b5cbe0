"""Timing defaults and engine configuration."""

from __future__ import annotations

from dataclasses import dataclass

from mashumaro.mixins.orjson import DataClassORJSONMixin

# Minutes before the scheduled start at which viewers are let in.
EARLY_ACCESS_MINUTES = 5
PROGRESS_UPDATE_INTERVAL_SECONDS = 15.0
PROGRESS_JITTER_MAX_SECONDS = 15.0
INTERACTION_DEFAULT_DURATION_SECONDS = 30
CHAT_HISTORY_LIMIT = 50
POLL_RESULTS_INTERVAL_SECONDS = 5.0
AUTOPLAY_DELAY_SECONDS = 0.1
# Consecutive stream recoveries without progress before giving up.
MAX_RECOVERY_ATTEMPTS = 3
BEACON_TIMEOUT_SECONDS = 2.0
KEEPALIVE_TIMEOUT_SECONDS = 10.0
REQUEST_TIMEOUT_SECONDS = 15.0
CHANNEL_MAX_BACKOFF_SECONDS = 60.0


@dataclass
class EngineConfig(DataClassORJSONMixin):
    """Tunable parameters of a watch session.

    Every field defaults to the matching module constant, so a JSON file only
    needs to name the values it overrides.
    """

    early_access_minutes: float = EARLY_ACCESS_MINUTES
    progress_interval: float = PROGRESS_UPDATE_INTERVAL_SECONDS
    progress_jitter_max: float = PROGRESS_JITTER_MAX_SECONDS
    interaction_default_duration: int = INTERACTION_DEFAULT_DURATION_SECONDS
    chat_history_limit: int = CHAT_HISTORY_LIMIT
    poll_results_interval: float = POLL_RESULTS_INTERVAL_SECONDS
    autoplay_delay: float = AUTOPLAY_DELAY_SECONDS
    max_recovery_attempts: int = MAX_RECOVERY_ATTEMPTS
    beacon_timeout: float = BEACON_TIMEOUT_SECONDS
    keepalive_timeout: float = KEEPALIVE_TIMEOUT_SECONDS
    request_timeout: float = REQUEST_TIMEOUT_SECONDS
    channel_max_backoff: float = CHANNEL_MAX_BACKOFF_SECONDS

    def __post_init__(self) -> None:
        """Validate the configured values."""
        if self.progress_interval <= 0:
            raise ValueError("progress_interval must be positive")
        if self.progress_jitter_max < 0:
            raise ValueError("progress_jitter_max must not be negative")
        if self.interaction_default_duration <= 0:
            raise ValueError("interaction_default_duration must be positive")
        if self.poll_results_interval <= 0:
            raise ValueError("poll_results_interval must be positive")
        if self.chat_history_limit < 0:
            raise ValueError("chat_history_limit must not be negative")
