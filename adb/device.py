import logging
import re
import subprocess
import time
from typing import Optional, Tuple, Union

from feed_agent.errors import TransportError

# Name of the adb executable (assumes adb is on PATH)
ADB = "adb"

ADB_TEXT_KW = dict(text=True, encoding="utf-8", errors="ignore")

# Every adb call is bounded so a wedged device can't hang its worker forever.
DEFAULT_TIMEOUT_S = 20

FALLBACK_SCREEN = (1080, 1920)

KEYCODES = {
    "home": "KEYCODE_HOME",
    "back": "KEYCODE_BACK",
    "menu": "KEYCODE_MENU",
    "search": "KEYCODE_SEARCH",
    "power": "KEYCODE_POWER",
    "enter": "KEYCODE_ENTER",
    "delete": "KEYCODE_DEL",
    "space": "KEYCODE_SPACE",
    "volume_up": "KEYCODE_VOLUME_UP",
    "volume_down": "KEYCODE_VOLUME_DOWN",
    "mute": "KEYCODE_VOLUME_MUTE",
    "play_pause": "KEYCODE_MEDIA_PLAY_PAUSE",
}

# Characters `input text` hands to the device shell unescaped.
_SHELL_SPECIAL = re.compile(r"""([\\"'`$&|;<>()\[\]{}*?!~#])""")


class AndroidDevice:
    """Very small wrapper around adb for ONE device.

    I'm keeping this class dumb on purpose:
    - It *only* does actions (tap, type, swipe, etc.) and reads screen state
    - It does NOT do any reasoning / decision making
    The stage engine and the model sessions are where the "thinking" happens.

    Every failure (non-zero exit, timeout, adb missing) comes out as
    TransportError so callers only have one thing to catch.
    """

    def __init__(self, serial: str, timeout_s: float = DEFAULT_TIMEOUT_S):
        self.serial = serial
        self.timeout_s = timeout_s
        self._screen: Optional[Tuple[int, int]] = None

    def _cmd(self, *args: str) -> list[str]:
        return [ADB, "-s", self.serial, *args]

    def _run(self, cmd: list[str], check: bool = True, timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        logging.debug(f"[ADB] {' '.join(cmd)}")
        try:
            return subprocess.run(
                cmd,
                check=check,
                capture_output=True,
                timeout=timeout or self.timeout_s,
                **ADB_TEXT_KW,
            )
        except subprocess.TimeoutExpired as e:
            raise TransportError(f"adb timed out on {self.serial}: {' '.join(cmd)}") from e
        except subprocess.CalledProcessError as e:
            out = ((e.stdout or "") + (e.stderr or "")).strip()
            raise TransportError(f"adb failed on {self.serial} (exit {e.returncode}): {out[:300]}") from e
        except OSError as e:
            raise TransportError(f"adb not runnable: {e}") from e

    def _shell(self, *args: str, check: bool = True) -> str:
        p = self._run(self._cmd("shell", *args), check=check)
        return ((p.stdout or "") + (p.stderr or "")).strip()

    # Connectivity

    def is_reachable(self) -> bool:
        try:
            p = self._run(self._cmd("get-state"), check=False, timeout=10)
        except TransportError:
            return False
        return (p.stdout or "").strip() == "device"

    def getprop(self, prop: str) -> str:
        try:
            return self._shell("getprop", prop, check=False)
        except TransportError:
            return ""

    # App lifecycle helpers

    def launch_app(self, package: str, activity: Optional[str] = None):
        """Launch an app reliably.

        With an explicit activity we just `am start -n` it. Otherwise:
        1) Try monkey with the LAUNCHER category (fast).
        2) If it fails, resolve the LAUNCHER activity via `cmd package resolve-activity`
           and start it explicitly with `am start`.
        """
        if activity:
            self._shell("am", "start", "-n", f"{package}/{activity}")
            return

        p = self._run(self._cmd(
            "shell", "monkey",
            "-p", package,
            "-c", "android.intent.category.LAUNCHER",
            "1",
        ), check=False)
        out = (p.stdout or "") + (p.stderr or "")
        if p.returncode == 0 and "No activities found" not in out:
            return

        resolved = self._run(self._cmd(
            "shell", "cmd", "package", "resolve-activity", "--brief",
            "-c", "android.intent.category.LAUNCHER",
            package,
        ), check=False)

        # Typical output contains a line like: com.example.app/.MainActivity
        lines = ((resolved.stdout or "") + "\n" + (resolved.stderr or "")).splitlines()
        target = None
        for line in lines:
            line = line.strip()
            if "/" in line and package in line:
                target = line
                break

        if not target:
            raise TransportError(
                f"Failed to launch {package}. Could not resolve launcher activity. Output: {lines[-10:]}"
            )

        self._shell(
            "am", "start", "-W",
            "-n", target,
            "-a", "android.intent.action.MAIN",
            "-c", "android.intent.category.LAUNCHER",
        )

    def terminate_app(self, package: str):
        self._shell("am", "force-stop", package)
        time.sleep(0.5)

    # Basic input

    def tap(self, x: int, y: int):
        if x < 0 or y < 0:
            raise ValueError(f"Invalid coordinates ({x}, {y}). Coordinates must be positive.")
        w, h = self.screen_size()
        if x > w or y > h:
            logging.warning(f"[ADB] {self.serial}: tap ({x}, {y}) is outside screen {w}x{h}")
        self._shell("input", "tap", str(int(x)), str(int(y)))
        time.sleep(0.4)

    def swipe(self, x1: int, y1: int, x2: int, y2: int, duration_ms: int = 300):
        if duration_ms < 0:
            raise ValueError("Duration must be a positive value")
        self._shell("input", "swipe", *(str(int(v)) for v in (x1, y1, x2, y2, duration_ms)))
        time.sleep(0.5)

    def long_press(self, x: int, y: int, duration_ms: int = 1000):
        # A long press is a swipe that doesn't move.
        self.swipe(x, y, x, y, duration_ms)

    def scroll(self, direction: str = "up", distance: Optional[int] = None):
        """Swipe through the centre of the screen. "up" moves the feed to the next item."""
        w, h = self.screen_size()
        cx, cy = w // 2, h // 2
        d = distance or int(h * 0.4)
        half = d // 2
        vectors = {
            "up": (cx, cy + half, cx, cy - half),
            "down": (cx, cy - half, cx, cy + half),
            "left": (cx + half, cy, cx - half, cy),
            "right": (cx - half, cy, cx + half, cy),
        }
        if direction not in vectors:
            raise ValueError(f"Invalid direction: {direction}")
        self.swipe(*vectors[direction], 300)

    def type_text(self, text: str):
        # adb input text treats spaces weirdly unless you escape them as %s.
        safe = _SHELL_SPECIAL.sub(r"\\\1", text).replace(" ", "%s")
        self._shell("input", "text", safe)
        time.sleep(0.4)

    def press_key(self, keycode: Union[int, str]):
        if isinstance(keycode, str) and not keycode.isdigit():
            code = KEYCODES.get(keycode.strip().lower(), keycode)
        else:
            code = str(keycode)
        self._shell("input", "keyevent", code)
        time.sleep(0.3)

    # Screens + UI hierarchy

    def capture(self) -> bytes:
        """PNG bytes of the current screen."""
        logging.debug(f"[ADB] {self.serial}: screencap")
        try:
            # exec-out avoids line ending corruption
            p = subprocess.run(
                self._cmd("exec-out", "screencap", "-p"),
                capture_output=True,
                check=True,
                timeout=self.timeout_s,
            )
        except subprocess.TimeoutExpired as e:
            raise TransportError(f"screencap timed out on {self.serial}") from e
        except subprocess.CalledProcessError as e:
            raise TransportError(f"screencap failed on {self.serial}: {e.stderr!r}") from e
        except OSError as e:
            raise TransportError(f"adb not runnable: {e}") from e
        if not p.stdout.startswith(b"\x89PNG"):
            raise TransportError(f"screencap on {self.serial} did not return a PNG")
        return p.stdout

    def screen_size(self) -> Tuple[int, int]:
        if self._screen is not None:
            return self._screen

        out = self._shell("wm", "size", check=False)
        # Prefer an override size if one is set, it's what input uses.
        m = re.search(r"Override size:\s*(\d+)\s*x\s*(\d+)", out) or re.search(r"(\d+)\s*x\s*(\d+)", out)
        if not m:
            out = self._shell("dumpsys", "window", "displays", check=False)
            m = re.search(r"init=(\d+)x(\d+)", out)
        if not m:
            logging.warning(f"[ADB] {self.serial}: screen size unknown, assuming {FALLBACK_SCREEN}")
            return FALLBACK_SCREEN

        self._screen = (int(m.group(1)), int(m.group(2)))
        return self._screen

    def ui_dump(self) -> str:
        remote = "/sdcard/window_dump.xml"
        try:
            self._run(self._cmd("shell", "uiautomator", "dump", remote), check=False, timeout=8)
            p = self._run(self._cmd("shell", "cat", remote), check=False, timeout=5)
            return (p.stdout or "").strip()
        except TransportError:
            return ""

    def current_focus(self) -> str:
        try:
            text = self._shell("dumpsys", "window", check=False)
        except TransportError:
            return ""
        for line in text.splitlines():
            if "mCurrentFocus" in line:
                return line.strip()
        return ""

    def is_foreground(self, package: str) -> bool:
        return package in self.current_focus()
