"""Engine and transport configuration for crowdstock."""

from __future__ import annotations

import dataclasses
import math
import os
from enum import StrEnum
from typing import Any

from crowdstock._constants import (
    DECAY_RATE_PER_HOUR,
    DUPLICATE_COOLDOWN_SECONDS,
    INCOMING_WEIGHT,
    PRIOR_WEIGHT,
    RECENT_REPORTS_LIMIT,
    SUBSCRIBER_BUFFER_SIZE,
    VISIBILITY_THRESHOLD,
)
from crowdstock.exceptions import CrowdStockConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


class OverflowPolicy(StrEnum):
    """What a full subscriber buffer does with a newly published event."""

    DROP_OLDEST = "drop_oldest"
    REJECT = "reject"


@dataclasses.dataclass(frozen=True)
class EngineConfig:
    """Confidence engine configuration.

    Parameters
    ----------
    decay_rate_per_hour : float
        Confidence lost per hour since the last contributing report.
        Defaults to ``0.15 / 24`` (15% per day).
    visibility_threshold : float
        Minimum confidence before a status is surfaced to consumers
        rather than reported as ``unknown``.
    prior_weight : float
        Weight of the current (decayed) belief when blending with a new
        report.
    incoming_weight : float
        Weight of the incoming report.  ``prior_weight + incoming_weight``
        must equal 1.0.
    duplicate_cooldown_seconds : float
        Window during which a submitter token may contribute only one
        report per entity.  Set to ``0`` to disable de-duplication.
    subscriber_buffer_size : int
        Default bounded buffer size for each subscription.
    overflow_policy : OverflowPolicy
        Default policy applied when a subscription buffer is full.
    recent_reports_limit : int
        Size of the cross-entity recent reports feed kept by the ledger.
    history_path : str or None
        Optional JSON-lines file that accepted reports are written
        through to, and replayed from on startup.
    """

    decay_rate_per_hour: float = DECAY_RATE_PER_HOUR
    visibility_threshold: float = VISIBILITY_THRESHOLD
    prior_weight: float = PRIOR_WEIGHT
    incoming_weight: float = INCOMING_WEIGHT
    duplicate_cooldown_seconds: float = DUPLICATE_COOLDOWN_SECONDS
    subscriber_buffer_size: int = SUBSCRIBER_BUFFER_SIZE
    overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST
    recent_reports_limit: int = RECENT_REPORTS_LIMIT
    history_path: str | None = None

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise :class:`CrowdStockConfigError` when a value is out of range."""
        if self.decay_rate_per_hour < 0:
            raise CrowdStockConfigError("decay_rate_per_hour must be >= 0")
        if not 0.0 <= self.visibility_threshold <= 1.0:
            raise CrowdStockConfigError("visibility_threshold must be within [0, 1]")
        if self.prior_weight < 0 or self.incoming_weight < 0:
            raise CrowdStockConfigError("blend weights must be >= 0")
        if not math.isclose(self.prior_weight + self.incoming_weight, 1.0, abs_tol=1e-9):
            raise CrowdStockConfigError(
                f"prior_weight + incoming_weight must equal 1.0, got {self.prior_weight + self.incoming_weight}"
            )
        if self.duplicate_cooldown_seconds < 0:
            raise CrowdStockConfigError("duplicate_cooldown_seconds must be >= 0")
        if self.subscriber_buffer_size < 1:
            raise CrowdStockConfigError("subscriber_buffer_size must be >= 1")
        if self.recent_reports_limit < 0:
            raise CrowdStockConfigError("recent_reports_limit must be >= 0")

    @classmethod
    def from_env(cls, **overrides: Any) -> EngineConfig:
        """Create configuration from ``CROWDSTOCK_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ

        _ENV_FLOAT_MAP = {
            "CROWDSTOCK_DECAY_RATE_PER_HOUR": "decay_rate_per_hour",
            "CROWDSTOCK_VISIBILITY_THRESHOLD": "visibility_threshold",
            "CROWDSTOCK_PRIOR_WEIGHT": "prior_weight",
            "CROWDSTOCK_INCOMING_WEIGHT": "incoming_weight",
            "CROWDSTOCK_DUPLICATE_COOLDOWN_SECONDS": "duplicate_cooldown_seconds",
        }
        _ENV_INT_MAP = {
            "CROWDSTOCK_SUBSCRIBER_BUFFER_SIZE": "subscriber_buffer_size",
            "CROWDSTOCK_RECENT_REPORTS_LIMIT": "recent_reports_limit",
        }

        config_kwargs: dict[str, Any] = {}
        try:
            for env_key, field_name in _ENV_FLOAT_MAP.items():
                val = env.get(env_key)
                if val is not None and field_name not in overrides:
                    config_kwargs[field_name] = float(val)
            for env_key, field_name in _ENV_INT_MAP.items():
                val = env.get(env_key)
                if val is not None and field_name not in overrides:
                    config_kwargs[field_name] = int(val)
            policy_env = env.get("CROWDSTOCK_OVERFLOW_POLICY")
            if policy_env is not None and "overflow_policy" not in overrides:
                config_kwargs["overflow_policy"] = OverflowPolicy(policy_env.strip().lower())
        except ValueError as exc:
            raise CrowdStockConfigError(f"Invalid CROWDSTOCK_* environment value: {exc}") from exc

        history_env = env.get("CROWDSTOCK_HISTORY_PATH")
        if history_env and "history_path" not in overrides:
            config_kwargs["history_path"] = history_env

        config_kwargs.update(overrides)

        return cls(**config_kwargs)


@dataclasses.dataclass(frozen=True)
class MqttConfig:
    """Broker settings for forwarding change events over MQTT.

    Events are published to ``<topic_prefix>/<location_id>/<item_id>``.
    """

    host: str = "localhost"
    port: int = 1883
    topic_prefix: str = "crowdstock/status"
    client_id: str = "crowdstock-forwarder"
    username: str | None = None
    password: str | None = None
    tls: bool = False
    keepalive: int = 120
    qos: int = 1
    retain: bool = True

    @classmethod
    def from_env(cls, **overrides: Any) -> MqttConfig:
        """Create configuration from ``CROWDSTOCK_MQTT_*`` environment variables."""
        env = os.environ

        _ENV_CONFIG_MAP = {
            "CROWDSTOCK_MQTT_HOST": "host",
            "CROWDSTOCK_MQTT_TOPIC_PREFIX": "topic_prefix",
            "CROWDSTOCK_MQTT_CLIENT_ID": "client_id",
            "CROWDSTOCK_MQTT_USERNAME": "username",
            "CROWDSTOCK_MQTT_PASSWORD": "password",
        }
        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        port_env = env.get("CROWDSTOCK_MQTT_PORT")
        if port_env is not None and "port" not in overrides:
            config_kwargs["port"] = int(port_env)

        keepalive_env = env.get("CROWDSTOCK_MQTT_KEEPALIVE")
        if keepalive_env is not None and "keepalive" not in overrides:
            config_kwargs["keepalive"] = int(keepalive_env)

        qos_env = env.get("CROWDSTOCK_MQTT_QOS")
        if qos_env is not None and "qos" not in overrides:
            config_kwargs["qos"] = int(qos_env)

        if "tls" not in overrides:
            config_kwargs["tls"] = _env_bool(env.get("CROWDSTOCK_MQTT_TLS"), False)
        if "retain" not in overrides:
            config_kwargs["retain"] = _env_bool(env.get("CROWDSTOCK_MQTT_RETAIN"), True)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
