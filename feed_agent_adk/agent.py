import os

try:
    from google.adk.agents import Agent
except Exception:
    # Compatibility with older ADK versions
    from google.adk.agents.llm_agent import Agent


def _ensure_gemini_key():
    if not os.environ.get("GEMINI_API_KEY") and os.environ.get("GOOGLE_API_KEY"):
        os.environ["GEMINI_API_KEY"] = os.environ["GOOGLE_API_KEY"]


def list_devices() -> dict:
    """ADK tool: list the Android devices adb can see and whether they are usable."""
    from adb.discovery import list_devices as adb_devices, verify_adb

    verify_adb()
    return {
        "devices": [
            {"id": d.id, "name": d.name, "status": d.status.value, "model": d.model}
            for d in adb_devices()
        ]
    }


def run_fleet(device: str = "", max_devices: int = 0) -> dict:
    """ADK tool: run the feed agent on the connected devices until every engine is done.

    Leave `device` empty to use every connected device; `max_devices` 0 means no limit.
    """
    _ensure_gemini_key()
    import main  # existing entrypoint

    stats = main.run_fleet(device or None, max_devices or None)
    return {"status": "completed", "stats": stats}


root_agent = Agent(
    name="feed_agent_root_agent",
    description=(
        "ADK orchestration agent for the short-video feed agent. "
        "Delegates device control and per-device Initiate/Learn/Work automation "
        "to the feed agent engines running on Android devices."
    ),
    instruction=(
        "You operate the feed agent. Use list_devices to show which Android devices are "
        "connected. When asked to start work, invoke run_fleet (optionally limited to one "
        "device or a maximum number of devices) and report the returned statistics."
    ),
    tools=[list_devices, run_fleet],
)
