"""Background device monitor built on the prober."""

import asyncio
from typing import Optional, Union
import logging

from flasher.config import Settings
from flasher.models.device import DeviceIdentity, DeviceSnapshot
from flasher.models.events import DeviceAppeared, DeviceChanged, DeviceRemoved
from flasher.services.prober import DeviceProber

DeviceEvent = Union[DeviceAppeared, DeviceChanged, DeviceRemoved]


class Subscription:
    """Bounded event queue for one consumer. Drops the oldest event when full."""

    def __init__(self, maxsize: int):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def deliver(self, event: DeviceEvent) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(event)

    async def get(self) -> DeviceEvent:
        return await self.queue.get()

    def get_nowait(self) -> DeviceEvent:
        return self.queue.get_nowait()

    def empty(self) -> bool:
        return self.queue.empty()


class DeviceMonitor:
    """Polls the prober on a fixed interval and emits device events.

    Per cycle at most one of Appeared / Changed / Removed is emitted.
    Removed needs ``removal_misses`` consecutive polls without the device.
    """

    def __init__(self, prober: DeviceProber, settings: Optional[Settings] = None):
        self.logger = logging.getLogger("flasher.monitor")
        self.prober = prober
        self.settings = settings or prober.settings
        self.poll_interval = self.settings.poll_interval
        self.removal_misses = self.settings.removal_misses

        self._current: Optional[DeviceIdentity] = None
        self._misses = 0
        self._sequence = 0
        self._subscribers: list[Subscription] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def current(self) -> Optional[DeviceIdentity]:
        """Last confirmed device (still set during the removal window)."""
        return self._current

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
        subscription = Subscription(maxsize or self.settings.subscriber_queue_size)
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def start(self) -> None:
        if self.running:
            return
        self.logger.info(
            f"Device monitor started (interval={self.poll_interval}s, "
            f"removal after {self.removal_misses} misses)"
        )
        self._task = asyncio.create_task(self._poll_loop(), name="device-monitor")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.logger.info("Device monitor stopped")

    async def poll_once(self) -> Optional[DeviceEvent]:
        """Run one probe cycle and emit the resulting event, if any."""
        snapshot = await self.prober.probe()
        event = self._diff(snapshot)
        if event is not None:
            self._emit(event)
        return event

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # A broken cycle must not end detection for the session
                self.logger.error(f"Device poll failed: {e}", exc_info=True)
            await asyncio.sleep(self.poll_interval)

    def _diff(self, snapshot: DeviceSnapshot) -> Optional[DeviceEvent]:
        new = snapshot.device if snapshot.ok else None
        old = self._current

        if new is None:
            if old is None:
                return None
            self._misses += 1
            if self._misses < self.removal_misses:
                self.logger.debug(
                    f"Device {old.serial} missing ({self._misses}/{self.removal_misses})"
                )
                return None
            self.logger.info(f"Device disconnected: {old.serial}")
            self._current = None
            self._misses = 0
            return DeviceRemoved(last=old, sequence=self._next_sequence())

        self._misses = 0
        self._current = new
        if old is None:
            self.logger.info(f"Device appeared: {new.serial} ({new.mode.value})")
            return DeviceAppeared(device=new, sequence=self._next_sequence())
        if not new.same_device(old):
            self.logger.info(
                f"Device changed: {old.serial} ({old.mode.value}) -> "
                f"{new.serial} ({new.mode.value})"
            )
            return DeviceChanged(old=old, new=new, sequence=self._next_sequence())
        return None

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def _emit(self, event: DeviceEvent) -> None:
        for subscription in self._subscribers:
            subscription.deliver(event)
