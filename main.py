"""
Entry point for the feed agent.

Discovers the Android devices attached over adb, starts one Initiate -> Learn
-> Work engine per device and monitors them until the work is done or the
process is asked to stop (Ctrl+C / SIGTERM).

The same run can be started from Google ADK (see feed_agent_adk/agent.py).
"""

import argparse
import json
import logging
import os
import signal
import sys
import threading
from datetime import datetime
from typing import Optional

from dotenv import load_dotenv

from adb.device import AndroidDevice
from adb.discovery import filter_devices, find_device, list_devices, verify_adb
from feed_agent.config import Presets, _bool_env, _int_env, load_presets
from feed_agent.engine import StageEngine
from feed_agent.errors import FatalStartupError, MissingApiKey, TransportError
from feed_agent.gemini_llm import GeminiLLM
from feed_agent.models import Device, RunStats
from feed_agent.pool import WorkerPool

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_NO_KEY = 2

DEFAULT_MODEL = "gemini-2.0-flash"


def setup_logging(debug: bool = False):
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(threadName)s %(message)s", datefmt="%H:%M:%S")
    if debug or _bool_env("VERBOSE_LOGS", False):
        logging.getLogger().setLevel(logging.DEBUG)


def gemini_api_key() -> Optional[str]:
    # ADK tooling uses GOOGLE_API_KEY; accept either.
    return os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")


def build_engine_factory(presets: Presets, api_key: str):
    # Model swapping should stay a config change, not a code change.
    model = os.environ.get("GEMINI_MODEL", DEFAULT_MODEL)
    rpm = _int_env("GEMINI_RPM", 10)
    timeout_s = _int_env("GEMINI_TIMEOUT_S", 60)
    logging.info(f"[LLM] Gemini model={model} rpm_limit={rpm} (per device)")

    def factory(device: Device, stats: Optional[RunStats] = None) -> StageEngine:
        # One cancel token per engine; the model client shares it so backoff sleeps stop too.
        cancel = threading.Event()
        llm = GeminiLLM(api_key=api_key, model_name=model, rpm_limit=rpm, timeout_s=timeout_s, cancel=cancel)
        return StageEngine(device, AndroidDevice(device.id), llm, presets, cancel=cancel, stats=stats)

    return factory


def write_stats(pool: WorkerPool, run_dir: str) -> str:
    s = pool.stats()
    path = os.path.join(run_dir, "stats.json")
    data = {
        "totals": {"videos": s.videos, "likes": s.likes, "comments": s.comments, "errors": s.errors},
        "devices": [
            {
                "id": snap.device_id,
                "name": snap.device_name,
                "stage": snap.stage.value,
                "stats": snap.stats.as_dict(),
                "outcome": snap.outcome.reason if snap.outcome else None,
                "failure": snap.failure,
            }
            for snap in s.engines
        ],
        "restarts": dict(pool.restarts),
    }
    os.makedirs(run_dir, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    return path


def run_fleet(device: Optional[str] = None, max_devices: Optional[int] = None, stop_event: Optional[threading.Event] = None) -> dict:
    """Run engines on the selected devices until done or stopped. Returns the final stats."""
    logging.info("=== Feed Agent Run ===")
    logging.info(f"Time: {datetime.now().isoformat(timespec='seconds')}")

    api_key = gemini_api_key()
    if not api_key:
        raise MissingApiKey('GEMINI_API_KEY is not set. Example:\n  export GEMINI_API_KEY="YOUR_KEY_HERE"\n')

    presets = load_presets()
    verify_adb()

    stop_event = stop_event or threading.Event()
    pool = WorkerPool(
        presets,
        discover=lambda: filter_devices(list_devices(), device, max_devices),
        engine_factory=build_engine_factory(presets, api_key),
        find_device=find_device,
    )

    devices = pool.discover()
    pool.start(devices)
    try:
        pool.monitor(stop_event)
    finally:
        pool.shutdown()

    run_dir = os.path.join("runs", datetime.now().strftime("%Y%m%d_%H%M%S"))
    path = write_stats(pool, run_dir)
    logging.info(f"\nDone. Stats saved under: {path}")

    s = pool.stats()
    return {"videos": s.videos, "likes": s.likes, "comments": s.comments, "errors": s.errors, "stats_file": path}


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Runs the short-video feed agent on connected Android devices.")
    parser.add_argument("--device", help="only use this device (adb serial or part of its name)")
    parser.add_argument("--max-devices", type=int, default=None, help="use at most this many devices")
    parser.add_argument("--debug", action="store_true", help="verbose logging")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    load_dotenv()
    args = parse_args(argv)
    setup_logging(args.debug)

    stop_event = threading.Event()

    def _on_signal(signum, _frame):
        logging.info(f"[MAIN] received {signal.Signals(signum).name}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    try:
        run_fleet(args.device, args.max_devices, stop_event)
    except MissingApiKey as e:
        logging.error(str(e))
        return EXIT_NO_KEY
    except (FatalStartupError, TransportError) as e:
        logging.error(f"[MAIN] {e}")
        return EXIT_FATAL
    except ValueError as e:
        # Invalid presets from the environment.
        logging.error(f"[MAIN] configuration error: {e}")
        return EXIT_FATAL
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
