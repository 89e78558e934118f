"""Runs one StageEngine per device and keeps an eye on them."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from feed_agent.config import Presets
from feed_agent.errors import FatalStartupError
from feed_agent.models import Device, EngineSnapshot, RunStats


@dataclass
class PoolStats:
    devices: int = 0
    running: int = 0
    videos: int = 0
    likes: int = 0
    comments: int = 0
    errors: int = 0
    engines: list = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"{self.running}/{self.devices} running | videos={self.videos} likes={self.likes} "
            f"comments={self.comments} errors={self.errors}"
        )


class WorkerPool:
    """Fan-out over devices.

    Engines never share state; the pool only reads their snapshots and sends
    stop requests. A restarted engine inherits the counters of the one it
    replaces, so daily limits hold for the whole process. A device that keeps
    asking for a restart is given up on after `max_restarts`.
    """

    def __init__(
        self,
        presets: Presets,
        discover: Callable[[], list],
        engine_factory: Callable[..., object],
        find_device: Optional[Callable[[str], Optional[Device]]] = None,
    ):
        self.presets = presets
        self._discover = discover
        self._engine_factory = engine_factory
        self._find_device = find_device
        self.engines: Dict[str, object] = {}
        self.devices: Dict[str, Device] = {}
        self.restarts: Dict[str, int] = {}
        self.abandoned: set = set()
        self._lock = threading.Lock()

    def discover(self) -> list[Device]:
        devices = self._discover()
        if not devices:
            raise FatalStartupError("no usable Android devices found")
        return devices

    def spawn(self, device: Device, stats: Optional[RunStats] = None):
        """Create and start an engine for one device. Failures stay with that device."""
        try:
            engine = self._engine_factory(device, stats=stats)
            engine.start()
        except Exception as e:
            logging.error(f"[POOL] could not start engine for {device.name} ({device.id}): {e!r}")
            return None

        with self._lock:
            self.engines[device.id] = engine
            self.devices[device.id] = device
        logging.info(f"[POOL] engine started for {device.name} ({device.id})")
        return engine

    def start(self, devices: list[Device]) -> int:
        started = sum(1 for d in devices if self.spawn(d) is not None)
        if started == 0:
            raise FatalStartupError("no device engine could be started")
        logging.info(f"[POOL] {started}/{len(devices)} engine(s) running")
        return started

    def snapshots(self) -> list[EngineSnapshot]:
        with self._lock:
            engines = list(self.engines.values())
        return [e.snapshot() for e in engines]

    def stats(self) -> PoolStats:
        snaps = self.snapshots()
        out = PoolStats(devices=len(snaps), engines=snaps)
        for s in snaps:
            out.running += int(s.running)
            out.videos += s.stats.videos_processed
            out.likes += s.stats.likes_given
            out.comments += s.stats.comments_posted
            out.errors += s.stats.error_count
        return out

    def restart(self, device_id: str, reason: str = "") -> bool:
        with self._lock:
            engine = self.engines.get(device_id)
            device = self.devices.get(device_id)
            used = self.restarts.get(device_id, 0)
        if engine is None or device is None:
            return False

        name = device.name
        limit = self.presets.control.max_restarts
        if used >= limit:
            logging.error(f"[POOL] {name}: restart limit ({limit}) reached, giving up on this device")
            engine.stop()
            with self._lock:
                self.abandoned.add(device_id)
            return False

        logging.warning(f"[POOL] restarting {name} ({used + 1}/{limit}): {reason or 'unhealthy'}")
        engine.stop()
        if not engine.wait(self.presets.control.drain_grace):
            # Never run two engines on one device; try again next round.
            logging.warning(f"[POOL] {name}: engine did not stop within {self.presets.control.drain_grace}s")
            return False

        if self._find_device is not None:
            fresh = self._find_device(device_id)
            if fresh is None:
                logging.error(f"[POOL] {name} is no longer connected, dropping it")
                with self._lock:
                    self.abandoned.add(device_id)
                return False
            device = fresh

        with self._lock:
            self.restarts[device_id] = used + 1
        carried = engine.snapshot().stats
        if self.spawn(device, stats=carried) is None:
            with self._lock:
                self.abandoned.add(device_id)
            return False
        return True

    def check_engines(self):
        """One monitoring round: restart whoever asks for it, then log totals."""
        with self._lock:
            items = list(self.engines.items())
        for device_id, engine in items:
            if device_id in self.abandoned:
                continue
            status = engine.health_status()
            if status.needs_restart:
                self.restart(device_id, status.reason or "")

        s = self.stats()
        logging.info(f"[POOL] {s.summary()}")
        for snap in s.engines:
            logging.debug(f"[POOL]   {snap.device_name}: {snap.stage.value} {snap.stats.as_dict()}")

    def any_running(self) -> bool:
        return any(s.running for s in self.snapshots())

    def monitor(self, stop_event: threading.Event):
        """Check in every `monitor_interval` seconds until stopped or nothing runs anymore."""
        interval = self.presets.control.monitor_interval
        while not stop_event.wait(interval):
            self.check_engines()
            if not self.any_running():
                logging.info("[POOL] no engine is running anymore")
                return

    def shutdown(self):
        with self._lock:
            items = list(self.engines.items())
        logging.info(f"[POOL] stopping {len(items)} engine(s)...")
        for _, engine in items:
            engine.stop()

        grace = self.presets.control.drain_grace
        for device_id, engine in items:
            if not engine.wait(grace):
                logging.warning(f"[POOL] {device_id}: engine still busy after {grace}s, leaving it")

        s = self.stats()
        logging.info(f"[POOL] final: {s.summary()}")
