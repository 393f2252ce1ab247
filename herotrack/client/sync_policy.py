"""Adaptive upload policy.

Batch size and upload frequency come from a small table of named
strategies. Device conditions (network class, metering, battery) select
the strategy; there is no continuous tuning.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict


class NetworkQuality(Enum):
    """Bandwidth class reported by the platform, ordered worst to best."""
    NONE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3


class BatteryLevel(Enum):
    CRITICAL = 0
    LOW = 1
    NORMAL = 2
    HIGH = 3


class SyncStrategy(Enum):
    AGGRESSIVE = "aggressive"
    MODERATE = "moderate"
    CONSERVATIVE = "conservative"
    MINIMAL = "minimal"
    DISABLED = "disabled"


@dataclass(frozen=True)
class DeviceConditions:
    """Snapshot of the signals the policy gate looks at."""
    connected: bool
    quality: NetworkQuality = NetworkQuality.NONE
    wifi: bool = False
    metered: bool = True
    battery: BatteryLevel = BatteryLevel.NORMAL
    charging: bool = False

    @classmethod
    def offline(cls) -> "DeviceConditions":
        return cls(connected=False)


@dataclass(frozen=True)
class BatchProfile:
    """Limits applied by one strategy.

    Attributes:
        max_events: Events per batch
        max_bytes: Serialized bytes per batch
        interval_seconds: Pause between upload windows when idle
        max_attempts: Uploads of one batch before its events are requeued
        base_retry_seconds: First retry delay (doubles per attempt)
    """
    max_events: int
    max_bytes: int
    interval_seconds: float
    max_attempts: int
    base_retry_seconds: float

    @property
    def allows_upload(self) -> bool:
        return self.max_events > 0


STRATEGY_PROFILES: Dict[SyncStrategy, BatchProfile] = {
    SyncStrategy.AGGRESSIVE: BatchProfile(
        max_events=100, max_bytes=256 * 1024, interval_seconds=30,
        max_attempts=5, base_retry_seconds=30,
    ),
    SyncStrategy.MODERATE: BatchProfile(
        max_events=50, max_bytes=128 * 1024, interval_seconds=60,
        max_attempts=5, base_retry_seconds=30,
    ),
    SyncStrategy.CONSERVATIVE: BatchProfile(
        max_events=20, max_bytes=32 * 1024, interval_seconds=300,
        max_attempts=4, base_retry_seconds=60,
    ),
    SyncStrategy.MINIMAL: BatchProfile(
        max_events=10, max_bytes=16 * 1024, interval_seconds=900,
        max_attempts=3, base_retry_seconds=120,
    ),
    SyncStrategy.DISABLED: BatchProfile(
        max_events=0, max_bytes=0, interval_seconds=1800,
        max_attempts=0, base_retry_seconds=0,
    ),
}


def select_strategy(conditions: DeviceConditions) -> SyncStrategy:
    """Pick the upload strategy for the current device conditions.

    Rules, first match wins:
        offline, or critical battery while not charging -> DISABLED
        low battery on a metered link                   -> MINIMAL
        fast Wi-Fi with charge to spare                 -> AGGRESSIVE
        medium or better, unmetered                     -> MODERATE
        any other usable link                           -> CONSERVATIVE
    """
    quality = conditions.quality.value
    battery = conditions.battery.value

    if not conditions.connected or quality == NetworkQuality.NONE.value:
        return SyncStrategy.DISABLED
    if conditions.battery is BatteryLevel.CRITICAL and not conditions.charging:
        return SyncStrategy.DISABLED
    if conditions.battery is BatteryLevel.LOW and conditions.metered and not conditions.charging:
        return SyncStrategy.MINIMAL
    if (
        conditions.quality is NetworkQuality.HIGH
        and conditions.wifi
        and (conditions.charging or battery >= BatteryLevel.NORMAL.value)
    ):
        return SyncStrategy.AGGRESSIVE
    if quality >= NetworkQuality.MEDIUM.value and not conditions.metered:
        return SyncStrategy.MODERATE
    return SyncStrategy.CONSERVATIVE


def profile_for(conditions: DeviceConditions) -> BatchProfile:
    return STRATEGY_PROFILES[select_strategy(conditions)]
