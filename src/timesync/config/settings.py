from __future__ import annotations

from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncConfiguration(BaseModel):
    """Tuning knobs of the synchronization server. All durations are in ms.

    Both snake_case names and the camelCase wire-style names are accepted,
    e.g. ``SyncConfiguration(maxSampleCount=3)``.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    max_sample_count: int = Field(10, ge=1, description="Samples collected per round")
    time_delay_between_requests: int = Field(0, ge=0, description="Pause between samples, 0 = immediately")
    sync_interval: int = Field(60000, gt=0, description="Period of the population-wide resync")
    sync_session_groups_count: int = Field(20, ge=1, description="Max sessions resynced per staggered group")
    initial_sync_delay: int = Field(10000, ge=0, description="Delay before the first round of a new connection")
    max_skip: int = Field(1, ge=0, description="Resync requests coalesced into a running round")


ConfigLike = Union[SyncConfiguration, Mapping[str, Any], None]


def merge_configuration(config: ConfigLike = None, **overrides: Any) -> SyncConfiguration:
    """Lay ``config`` and keyword ``overrides`` over the defaults."""
    if isinstance(config, SyncConfiguration):
        values: dict[str, Any] = config.model_dump()
    else:
        values = dict(config or {})
    values.update(overrides)
    return SyncConfiguration.model_validate(values)


class Settings(BaseSettings):
    """Process settings with environment variable support (``TIMESYNC_*``)."""

    model_config = SettingsConfigDict(env_prefix="TIMESYNC_", env_file=".env", extra="ignore")

    HOST: str = "127.0.0.1"
    PORT: int = 9300
    LOG_LEVEL: str = "INFO"
    LOG_PATH: Optional[str] = None

    MAX_SAMPLE_COUNT: int = 10
    TIME_DELAY_BETWEEN_REQUESTS: int = 0
    SYNC_INTERVAL: int = 60000
    SYNC_SESSION_GROUPS_COUNT: int = 20
    INITIAL_SYNC_DELAY: int = 10000
    MAX_SKIP: int = 1

    # Client side drift detection
    TIME_CHANGE_INTERVAL: int = 60000
    TIME_CHANGE_THRESHOLD: float = 15.0

    def sync_configuration(self) -> SyncConfiguration:
        return SyncConfiguration(
            max_sample_count=self.MAX_SAMPLE_COUNT,
            time_delay_between_requests=self.TIME_DELAY_BETWEEN_REQUESTS,
            sync_interval=self.SYNC_INTERVAL,
            sync_session_groups_count=self.SYNC_SESSION_GROUPS_COUNT,
            initial_sync_delay=self.INITIAL_SYNC_DELAY,
            max_skip=self.MAX_SKIP,
        )
