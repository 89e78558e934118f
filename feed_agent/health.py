import logging
import threading
from typing import Optional

from feed_agent.config import Presets
from feed_agent.errors import SchemaViolation, StepBudgetExceeded, TransportError
from feed_agent.models import HealthReport
from feed_agent.prompts import health_goal
from feed_agent.schemas import HealthResult
from feed_agent.steps import Step, run_steps, wait_step
from feed_agent.tools import ToolKind, catalogue

HEALTH_TOOLS = catalogue(
    ToolKind.ANALYZE_SCREEN,
    ToolKind.DESCRIBE_UI,
    ToolKind.TAP,
    ToolKind.PRESS_KEY,
    ToolKind.SWIPE,
    ToolKind.LAUNCH_APP,
    ToolKind.WAIT,
)


class HealthSupervisor:
    """Is the app still showing its normal feed? Always answers with a HealthReport.

    The check itself may fix small problems (popups, stray panels) through its
    session. A budget overrun means the model could not get the app back, so
    that asks for a restart; transport errors only do once they repeat.
    """

    def __init__(self, session, device, presets: Presets, cancel: Optional[threading.Event] = None, name: str = ""):
        self.session = session
        self.device = device
        self.presets = presets
        self.cancel = cancel or threading.Event()
        self.name = name
        self.consecutive_transport_errors = 0

    def check(self) -> HealthReport:
        logging.info(f"[HEALTH][{self.name}] running health check...")
        try:
            result = self.session.run(
                health_goal(self.presets.app_package),
                HEALTH_TOOLS,
                HealthResult,
                self.presets.control.health_steps,
            )
        except StepBudgetExceeded as e:
            self.consecutive_transport_errors = 0
            logging.error(f"[HEALTH][{self.name}] no verdict within budget: {e}")
            return HealthReport(healthy=False, reason=f"health check ran out of steps: {e}", needs_restart=True)
        except TransportError as e:
            self.consecutive_transport_errors += 1
            limit = self.presets.control.transport_failure_limit
            restart = self.consecutive_transport_errors >= limit
            logging.error(
                f"[HEALTH][{self.name}] transport error "
                f"({self.consecutive_transport_errors}/{limit}): {e}"
            )
            return HealthReport(healthy=False, reason=f"transport error: {e}", needs_restart=restart)
        except SchemaViolation as e:
            self.consecutive_transport_errors = 0
            logging.error(f"[HEALTH][{self.name}] malformed verdict: {e}")
            return HealthReport(healthy=False, reason=f"malformed health verdict: {e}")

        self.consecutive_transport_errors = 0
        if result.actions_performed:
            logging.info(f"[HEALTH][{self.name}] actions: {', '.join(result.actions_performed)}")
        if result.success:
            logging.info(f"[HEALTH][{self.name}] passed: {result.message or result.current_state}")
            return HealthReport(healthy=True)

        problems = ", ".join(result.problems_detected) or result.current_state or "unknown"
        logging.error(f"[HEALTH][{self.name}] failed: {result.message} (problems: {problems})")
        return HealthReport(healthy=False, reason=problems)

    def recover(self) -> bool:
        """Scripted recovery: back out of whatever is open and bring the app to the front."""
        p = self.presets
        steps = [
            Step("press back", lambda: self.device.press_key("back")),
            wait_step(self.cancel, 0.5 * p.control.ui_settle),
            Step("relaunch app", lambda: self.device.launch_app(p.app_package)),
            wait_step(self.cancel, p.app_load_time, "wait for app"),
            Step("app in foreground", lambda: self.device.is_foreground(p.app_package)),
        ]
        report = run_steps(steps, self.cancel, label=f"[{self.name}]")
        if report.ok:
            logging.info(f"[HEALTH][{self.name}] scripted recovery done")
        else:
            logging.warning(f"[HEALTH][{self.name}] scripted recovery failed at '{report.failed_step}': {report.error!r}")
        return report.ok
