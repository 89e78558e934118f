"""Device discovery: which handsets are plugged in and usable."""

import logging
import os
import subprocess
from typing import Optional

from adb.device import ADB, ADB_TEXT_KW, AndroidDevice
from feed_agent.errors import FatalStartupError, TransportError
from feed_agent.models import Device, DeviceStatus


def verify_adb():
    """Fail fast (and loudly) when adb isn't installed."""
    candidates = [ADB, "/opt/homebrew/bin/adb", "/usr/local/bin/adb"]
    if os.environ.get("ANDROID_HOME"):
        candidates.append(os.path.join(os.environ["ANDROID_HOME"], "platform-tools", "adb"))

    for path in candidates:
        try:
            p = subprocess.run([path, "version"], capture_output=True, timeout=10, **ADB_TEXT_KW)
        except (OSError, subprocess.TimeoutExpired):
            logging.debug(f"[ADB] not found at {path}")
            continue
        if "Android Debug Bridge" in (p.stdout or "") + (p.stderr or ""):
            logging.debug(f"[ADB] verified at {path}")
            return

    raise FatalStartupError(
        "adb (Android Debug Bridge) is not installed or not on PATH. "
        f"Install platform-tools. Tried: {', '.join(candidates)}"
    )


def parse_devices_output(output: str) -> list[tuple[str, DeviceStatus, dict]]:
    """Parse `adb devices -l` into (serial, status, properties)."""
    rows = []
    for line in (output or "").splitlines():
        line = line.strip()
        if not line or line.startswith("List of devices") or line.startswith("*"):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        serial, state = parts[0], parts[1]
        props = {}
        for token in parts[2:]:
            if ":" in token:
                k, v = token.split(":", 1)
                props[k] = v
        rows.append((serial, DeviceStatus.from_adb(state), props))
    return rows


def _enrich(serial: str, status: DeviceStatus, props: dict) -> Device:
    if status != DeviceStatus.CONNECTED:
        return Device(id=serial, name=serial, status=status, model=props.get("model", ""))

    dev = AndroidDevice(serial)
    try:
        model = dev.getprop("ro.product.model")
        manufacturer = dev.getprop("ro.product.manufacturer")
        screen = dev.screen_size()
    except TransportError as e:
        logging.warning(f"[ADB] failed to enrich {serial}: {e}")
        return Device(id=serial, name=serial, status=status, model=props.get("model", "Unknown"))

    name = f"{manufacturer} {model}".strip() or serial
    return Device(id=serial, name=name, status=status, model=model, screen=screen)


def list_devices() -> list[Device]:
    """Every device adb knows about, connected or not."""
    try:
        p = subprocess.run([ADB, "devices", "-l"], capture_output=True, timeout=15, check=True, **ADB_TEXT_KW)
    except (OSError, subprocess.TimeoutExpired, subprocess.CalledProcessError) as e:
        raise TransportError(f"Failed to list adb devices: {e}") from e

    devices = [_enrich(serial, status, props) for serial, status, props in parse_devices_output(p.stdout)]
    logging.info(f"[ADB] found {len(devices)} device(s): {', '.join(f'{d.name} ({d.status.value})' for d in devices) or '-'}")
    return devices


def find_device(device_id: str) -> Optional[Device]:
    """Fresh scan for one device; None when it's gone or not connected."""
    for d in list_devices():
        if d.id == device_id:
            return d if d.connected else None
    return None


def filter_devices(devices: list[Device], target: Optional[str] = None, max_devices: Optional[int] = None) -> list[Device]:
    usable = [d for d in devices if d.connected]
    skipped = [d for d in devices if not d.connected]
    for d in skipped:
        logging.warning(f"[ADB] skipping {d.id}: {d.status.value}")

    if target:
        usable = [d for d in usable if d.id == target or target in d.name]
    if max_devices:
        usable = usable[:max_devices]
    return usable
