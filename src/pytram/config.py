"""Client configuration for pytram."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from pytram._constants import (
    BASE_HEIGHT,
    DEFAULT_SERVER_ADDRESS,
    DEFAULT_TRAM_ID,
    MODEL_FORWARD_OFFSET,
    SCENE_SCALE,
)
from pytram.exceptions import TramConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class TramConfig:
    """Channel and reconciler configuration.

    Parameters
    ----------
    server_address : str
        WebSocket URL of the location push server.
    reconnect_enabled : bool
        Retry automatically after an unexpected disconnect.
    max_reconnect_attempts : int
        Failed attempts tolerated before automatic reconnection stops.
    reconnect_delay_ms : int
        Fixed delay between reconnect attempts.
    server_disconnect_retry_delay_ms : int
        Delay of the single retry scheduled after a server-initiated close.
    connect_timeout_ms : int
        Timeout for establishing the WebSocket connection.
    keepalive_seconds : float
        WebSocket heartbeat interval. ``0`` disables the heartbeat.
    change_tolerance_degrees : float
        Per-axis coordinate delta below which an update counts as unchanged
        (about 0.5 m).
    stale_threshold_ms : int
        Maximum age of a location before it is considered stale.
    stale_log_interval_ms : int
        Minimum interval between two staleness warnings.
    linear_speed : float
        Translation speed in scene units per second.
    rotation_speed : float
        Rotation speed in radians per second.
    min_motion_units : float
        Projected displacement below which an update is treated as noise.
    rotation_epsilon : float
        Heading delta (radians) below which no rotation step is issued.
    max_rotation_duration : float
        Upper bound of the rotation step, in seconds.
    min_translation_duration : float
        Lower bound of the translation step, in seconds.
    scene_scale : float
        Scene units per degree.
    base_height : float
        Scene ``y`` coordinate of the tracked entity.
    model_forward_offset : float
        Heading offset (radians) aligning the model's forward axis.
    center_latitude, center_longitude : float or None
        Projection origin. When unset, the midpoint of the fallback route (or
        the campus default) is used.
    tram_id : str
        Identifier reported in consumer status snapshots.
    """

    server_address: str = DEFAULT_SERVER_ADDRESS
    reconnect_enabled: bool = True
    max_reconnect_attempts: int = 5
    reconnect_delay_ms: int = 1000
    server_disconnect_retry_delay_ms: int = 1000
    connect_timeout_ms: int = 5000
    keepalive_seconds: float = 20.0
    change_tolerance_degrees: float = 5e-6
    stale_threshold_ms: int = 60_000
    stale_log_interval_ms: int = 30_000
    linear_speed: float = 10.0
    rotation_speed: float = 1.0
    min_motion_units: float = 0.5
    rotation_epsilon: float = 0.05
    max_rotation_duration: float = 1.0
    min_translation_duration: float = 1.0
    scene_scale: float = SCENE_SCALE
    base_height: float = BASE_HEIGHT
    model_forward_offset: float = MODEL_FORWARD_OFFSET
    center_latitude: float | None = None
    center_longitude: float | None = None
    tram_id: str = DEFAULT_TRAM_ID

    def __post_init__(self) -> None:
        if not self.server_address.strip():
            raise TramConfigError("server_address must be non-empty")
        if self.max_reconnect_attempts < 0:
            raise TramConfigError(f"max_reconnect_attempts must be >= 0, got {self.max_reconnect_attempts}")
        for name in ("reconnect_delay_ms", "server_disconnect_retry_delay_ms", "connect_timeout_ms"):
            if getattr(self, name) < 0:
                raise TramConfigError(f"{name} must be >= 0, got {getattr(self, name)}")
        # Speeds are divisors in duration computations.
        if self.linear_speed <= 0 or self.rotation_speed <= 0:
            raise TramConfigError("linear_speed and rotation_speed must be positive")
        if self.scene_scale <= 0:
            raise TramConfigError(f"scene_scale must be positive, got {self.scene_scale}")
        if (self.center_latitude is None) != (self.center_longitude is None):
            raise TramConfigError("center_latitude and center_longitude must be set together")

    @property
    def reconnect_delay(self) -> float:
        """Reconnect delay in seconds."""
        return self.reconnect_delay_ms / 1000.0

    @property
    def server_disconnect_retry_delay(self) -> float:
        return self.server_disconnect_retry_delay_ms / 1000.0

    @property
    def connect_timeout(self) -> float:
        return self.connect_timeout_ms / 1000.0

    @classmethod
    def from_env(cls, **overrides: Any) -> TramConfig:
        """Create configuration from environment variables.

        Reads optional ``TRAM_*`` variables. Explicit keyword arguments
        override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        TramConfig
            Populated configuration.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "TRAM_SERVER_ADDRESS": "server_address",
            "TRAM_ID": "tram_id",
        }
        _ENV_INT_MAP = {
            "TRAM_MAX_RECONNECT_ATTEMPTS": "max_reconnect_attempts",
            "TRAM_RECONNECT_DELAY_MS": "reconnect_delay_ms",
            "TRAM_SERVER_DISCONNECT_RETRY_DELAY_MS": "server_disconnect_retry_delay_ms",
            "TRAM_CONNECT_TIMEOUT_MS": "connect_timeout_ms",
            "TRAM_STALE_THRESHOLD_MS": "stale_threshold_ms",
            "TRAM_STALE_LOG_INTERVAL_MS": "stale_log_interval_ms",
        }
        _ENV_FLOAT_MAP = {
            "TRAM_KEEPALIVE_SECONDS": "keepalive_seconds",
            "TRAM_CHANGE_TOLERANCE_DEGREES": "change_tolerance_degrees",
            "TRAM_LINEAR_SPEED": "linear_speed",
            "TRAM_ROTATION_SPEED": "rotation_speed",
            "TRAM_CENTER_LATITUDE": "center_latitude",
            "TRAM_CENTER_LONGITUDE": "center_longitude",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        try:
            for env_key, field_name in _ENV_INT_MAP.items():
                val = env.get(env_key)
                if val is not None and field_name not in overrides:
                    config_kwargs[field_name] = int(val)

            for env_key, field_name in _ENV_FLOAT_MAP.items():
                val = env.get(env_key)
                if val is not None and field_name not in overrides:
                    config_kwargs[field_name] = float(val)
        except ValueError as exc:
            raise TramConfigError(f"Invalid numeric environment value: {exc}") from exc

        if "reconnect_enabled" not in overrides:
            config_kwargs["reconnect_enabled"] = _env_bool(env.get("TRAM_RECONNECT_ENABLED"), True)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
