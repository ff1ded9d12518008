"""Host-driven queue drain through image beacons.

Some pages block every transport except image loads. For those, the host
periodically evaluates a small drain routine inside each surface that only
empties the page agent's queue. The beacons, one per message, are then fired
from the drainer thread.
"""

import threading
from collections.abc import Callable

from chat_capture.agent.channels import ImageBeaconChannel
from chat_capture.agent.page import PageAgent
from chat_capture.logging import get_logger
from chat_capture.models import CapturedMessage
from chat_capture.session import SurfaceRegistry

logger = get_logger("collector.drain")


Drained = tuple[str, list[CapturedMessage]]


def drain_routine(limit: int | None = None) -> Callable[[PageAgent], Drained]:
    """Build the routine evaluated inside a surface.

    The routine performs no I/O.

    Returns:
        Callable taking the surface's page agent and returning its service id
        with the messages removed from its queue
    """

    def run(agent: PageAgent) -> Drained:
        return agent.service_id, agent.drain(limit)

    return run


class BeaconDrainer:
    """Periodic drain across every registered surface."""

    def __init__(
        self,
        surfaces: SurfaceRegistry,
        beacon: ImageBeaconChannel,
        interval_seconds: float = 5.0,
        limit: int | None = None,
    ) -> None:
        self._surfaces = surfaces
        self._beacon = beacon
        self._routine = drain_routine(limit)
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def drain_once(self) -> int:
        """Drain every surface once.

        A surface that fails (hidden mid-navigation, recreated, no agent yet)
        is skipped until the next cycle.

        Returns:
            Total number of beacons fired
        """
        total = 0
        for surface in self._surfaces.snapshot():
            try:
                service_id, messages = surface.evaluate(self._routine)
            except Exception as e:
                logger.warning("Drain skipped surface: label=%s error=%s", surface.label, e)
                continue
            for message in messages:
                self._beacon.fire(service_id, message)
            total += len(messages)
        if total:
            logger.info("Drained messages via beacon: count=%d", total)
        return total

    def run(self) -> None:
        """Drain on a fixed interval until stop() is called."""
        logger.info("Beacon drainer started: interval=%.1fs", self._interval)
        while not self._stop.wait(self._interval):
            self.drain_once()
        logger.info("Beacon drainer stopped")

    def start(self) -> threading.Thread:
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="beacon-drainer", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
