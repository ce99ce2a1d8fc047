"""Adaptive position sampling for a beaconing device.

Raw fixes arrive from the device's positioning capability at whatever rate
it produces them. The sampler retains only the latest fix and re-emits it on
its own ticker, whose interval widens while the device is stationary, when
the battery runs low, or when the app is backgrounded.
"""

import asyncio
import enum
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Protocol

from busbeacon.core.geomath import distance_meters, validate_coordinate
from busbeacon.errors import AcquisitionFailure, InvalidCoordinate
from busbeacon.schemas.beacon import PositionFix

logger = logging.getLogger(__name__)

# Stationary updates tolerated before the interval starts to grow
STATIONARY_UPDATES_BEFORE_BACKOFF = 3
BACKOFF_FACTOR = 1.5
LOW_BATTERY_LEVEL = 0.2
MEDIUM_BATTERY_LEVEL = 0.5


class SamplerState(str, enum.Enum):
    IDLE = "idle"
    TRACKING = "tracking"
    STOPPED = "stopped"


@dataclass
class SamplerConfig:
    base_interval_ms: int = 10_000
    min_interval_ms: int = 5_000
    max_interval_ms: int = 30_000
    stationary_threshold_meters: float = 10.0
    high_accuracy: bool = True
    maximum_age_ms: int = 5_000  # cached fix age accepted from the device
    timeout_ms: int = 10_000

    def __post_init__(self) -> None:
        if not 0 < self.min_interval_ms <= self.max_interval_ms:
            raise ValueError("interval bounds must satisfy 0 < min <= max")

    @classmethod
    def from_settings(cls, settings) -> "SamplerConfig":
        return cls(
            base_interval_ms=settings.sampler_base_interval_ms,
            min_interval_ms=settings.sampler_min_interval_ms,
            max_interval_ms=settings.sampler_max_interval_ms,
            stationary_threshold_meters=settings.sampler_stationary_threshold_m,
        )


@dataclass
class PowerState:
    battery_level: float | None = None  # 0.0-1.0, None when unknown


class Subscription(Protocol):
    def cancel(self) -> None: ...


class PositionSource(Protocol):
    """Positioning capability of the device (GPS, platform location API...)."""

    def watch(
        self,
        on_fix: Callable[[PositionFix], None],
        on_error: Callable[[BaseException], None],
        *,
        high_accuracy: bool,
        maximum_age_ms: int,
        timeout_ms: int,
    ) -> Subscription: ...


class SamplerHandle:
    """Returned by start(); stopping it ends the session it was issued for."""

    def __init__(self, sampler: "AdaptiveSampler", session: int) -> None:
        self._sampler = sampler
        self._session = session

    @property
    def active(self) -> bool:
        return (
            self._sampler.state is SamplerState.TRACKING
            and self._sampler._session == self._session
        )

    def stop(self) -> None:
        if self._sampler._session == self._session:
            self._sampler.stop()


class AdaptiveSampler:
    def __init__(
        self,
        source: PositionSource,
        on_sample: Callable[[PositionFix], None] | None = None,
        on_error: Callable[[AcquisitionFailure], None] | None = None,
        config: SamplerConfig | None = None,
        power_state: Callable[[], PowerState] | None = None,
    ) -> None:
        self.source = source
        self.on_sample = on_sample
        self.on_error = on_error
        self.config = config or SamplerConfig()
        self.power_state = power_state

        self._state = SamplerState.IDLE
        self._session = 0
        self._handle: SamplerHandle | None = None
        self._subscription: Subscription | None = None
        self._ticker: asyncio.Task | None = None
        self._listeners: set[asyncio.Queue] = set()

        self._background = False
        self._last_fix: PositionFix | None = None
        self._stationary_count = 0
        self._movement_interval_ms = float(self.config.base_interval_ms)

    @property
    def state(self) -> SamplerState:
        return self._state

    @property
    def last_fix(self) -> PositionFix | None:
        return self._last_fix

    @property
    def stationary_count(self) -> int:
        return self._stationary_count

    @property
    def current_interval_ms(self) -> int:
        """Emission interval after movement, battery and background policies."""
        cfg = self.config
        if self._background:
            return cfg.max_interval_ms

        interval = self._movement_interval_ms
        battery = self._battery_interval_ms()
        if battery is not None:
            interval = max(interval, battery)
        return int(min(max(interval, cfg.min_interval_ms), cfg.max_interval_ms))

    def _battery_interval_ms(self) -> float | None:
        if self.power_state is None:
            return None
        level = self.power_state().battery_level
        if level is None:
            return None
        if level < LOW_BATTERY_LEVEL:
            return self.config.max_interval_ms
        if level < MEDIUM_BATTERY_LEVEL:
            return self.config.base_interval_ms * 2
        return None

    def set_background_mode(self, background: bool) -> None:
        self._background = background
        logger.debug("Sampler background mode %s", "on" if background else "off")

    def start(self) -> SamplerHandle:
        """Begin tracking. Must be called from a running event loop; no-op while tracking."""
        if self._state is SamplerState.TRACKING and self._handle is not None:
            return self._handle

        loop = asyncio.get_running_loop()
        self._reset()
        self._session += 1
        self._state = SamplerState.TRACKING
        cfg = self.config
        self._subscription = self.source.watch(
            self.handle_fix,
            self.handle_error,
            high_accuracy=cfg.high_accuracy,
            maximum_age_ms=cfg.maximum_age_ms,
            timeout_ms=cfg.timeout_ms,
        )
        self._ticker = loop.create_task(self._tick())
        self._handle = SamplerHandle(self, self._session)
        logger.info("Sampler started (base interval %dms)", cfg.base_interval_ms)
        return self._handle

    def stop(self) -> None:
        """Release the subscription and the ticker; nothing is emitted afterwards."""
        self._state = SamplerState.STOPPED
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        self._handle = None
        self._reset()
        for q in self._listeners:
            q.put_nowait(None)

    def _reset(self) -> None:
        self._last_fix = None
        self._stationary_count = 0
        self._movement_interval_ms = float(self.config.base_interval_ms)

    def handle_fix(self, fix: PositionFix) -> None:
        """Raw fix from the positioning capability."""
        if self._state is not SamplerState.TRACKING:
            return

        try:
            validate_coordinate(fix.position.lat, fix.position.lon)
        except InvalidCoordinate as e:
            self.handle_error(e)
            return

        if self._last_fix is not None:
            moved = distance_meters(self._last_fix.position, fix.position)
            cfg = self.config
            if moved < cfg.stationary_threshold_meters:
                self._stationary_count += 1
                if self._stationary_count > STATIONARY_UPDATES_BEFORE_BACKOFF:
                    self._movement_interval_ms = min(
                        self._movement_interval_ms * BACKOFF_FACTOR,
                        cfg.max_interval_ms,
                    )
            else:
                self._stationary_count = 0
                self._movement_interval_ms = float(cfg.base_interval_ms)

        self._last_fix = fix

    def handle_error(self, error: BaseException) -> None:
        """Acquisition error: reported, tracking continues."""
        if self._state is not SamplerState.TRACKING:
            return
        if isinstance(error, AcquisitionFailure):
            failure = error
        else:
            failure = AcquisitionFailure(f"Position acquisition failed: {error}", cause=error)
        logger.warning("%s", failure)
        if self.on_error is not None:
            self.on_error(failure)

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self.current_interval_ms / 1000)
            if self._state is not SamplerState.TRACKING:
                return
            if self._last_fix is not None:
                self._emit(self._last_fix)

    def _emit(self, fix: PositionFix) -> None:
        if self.on_sample is not None:
            try:
                self.on_sample(fix)
            except Exception:
                logger.exception("Sample callback failed")
        for q in self._listeners:
            q.put_nowait(fix)

    async def samples(self) -> AsyncIterator[PositionFix]:
        """Emitted samples as an async iterator; ends when the sampler stops."""
        q: asyncio.Queue = asyncio.Queue()
        self._listeners.add(q)
        try:
            while True:
                fix = await q.get()
                if fix is None:
                    return
                yield fix
        finally:
            self._listeners.discard(q)
