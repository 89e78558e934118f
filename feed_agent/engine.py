"""Per-device automation engine: Initiate -> Learn -> Work -> Stopped.

One engine owns one device. Everything that mutates engine state runs on the
engine's own thread; the pool only ever calls snapshot(), health_status()
and stop().
"""

import logging
import random
import threading
from dataclasses import dataclass, field
from typing import Optional

from feed_agent.config import Presets
from feed_agent.errors import Cancelled, PreconditionError, SessionError, TransportError
from feed_agent.health import HealthSupervisor
from feed_agent.models import (
    ROLES,
    Device,
    EngineSnapshot,
    HealthReport,
    IterationTally,
    LearnedCoordinates,
    RunStats,
    Stage,
    WorkOutcome,
)
from feed_agent.policy import COMMENT, LIKE, ActionPolicy, CommentWriter, Decision
from feed_agent.prompts import comment_visible_question, learn_goal, ready_goal
from feed_agent.schemas import LearnResult, ReadyResult
from feed_agent.session import ToolCallingSession
from feed_agent.steps import Step, StepReport, pause, run_steps, wait_step
from feed_agent.tools import ToolDispatcher, ToolKind, catalogue
from feed_agent.vision import ScreenAnalyzer, frames_differ

READY_TOOLS = catalogue(
    ToolKind.ANALYZE_SCREEN,
    ToolKind.DESCRIBE_UI,
    ToolKind.LAUNCH_APP,
    ToolKind.TAP,
    ToolKind.PRESS_KEY,
    ToolKind.WAIT,
)

LEARN_TOOLS = catalogue(
    ToolKind.ANALYZE_SCREEN,
    ToolKind.LOCATE_ELEMENT,
    ToolKind.DESCRIBE_UI,
    ToolKind.SCREEN_SIZE,
    ToolKind.TAP,
    ToolKind.PRESS_KEY,
    ToolKind.SWIPE,
    ToolKind.LAUNCH_APP,
    ToolKind.WAIT,
)

PROGRESS_EVERY = 10


@dataclass(frozen=True)
class WorkLimits:
    """When the Work loop has to end. Pure data, testable without a device."""

    daily_limit: int
    max_consecutive_errors: int
    max_health_failures: int

    @classmethod
    def from_presets(cls, presets: Presets) -> "WorkLimits":
        return cls(
            daily_limit=presets.interactions.daily_limit,
            max_consecutive_errors=presets.control.max_consecutive_errors,
            max_health_failures=presets.control.max_health_failures,
        )

    def evaluate(self, stats: RunStats, consecutive_errors: int, health_failures: int) -> Optional[WorkOutcome]:
        total = stats.total_actions
        if total >= self.daily_limit:
            return WorkOutcome(True, False, f"daily limit reached ({total}/{self.daily_limit})", stats.snapshot())
        if consecutive_errors >= self.max_consecutive_errors:
            return WorkOutcome(False, False, f"{consecutive_errors} consecutive errors", stats.snapshot())
        if health_failures >= self.max_health_failures:
            return WorkOutcome(False, False, f"{health_failures} failed health checks in a row", stats.snapshot())
        return None


@dataclass
class WorkCounters:
    consecutive_errors: int = 0
    health_failures: int = 0


@dataclass
class LearnReport:
    ok: bool
    coords: LearnedCoordinates = field(default_factory=LearnedCoordinates)
    missing: list = field(default_factory=list)
    reason: str = ""


class StageEngine:
    def __init__(
        self,
        info: Device,
        device,
        llm,
        presets: Presets,
        rng: Optional[random.Random] = None,
        cancel: Optional[threading.Event] = None,
        stats: Optional[RunStats] = None,
    ):
        self.info = info
        self.name = info.name or info.id
        self.device = device
        self.presets = presets
        self.cancel = cancel or threading.Event()

        self.analyzer = ScreenAnalyzer(llm, device)
        self.session = ToolCallingSession(
            llm,
            ToolDispatcher(device, self.analyzer, self.cancel),
            self.cancel,
            label=f"[{self.name}]",
        )
        self.policy = ActionPolicy(presets, rng, CommentWriter(self.session, presets))
        self.health = HealthSupervisor(self.session, device, presets, self.cancel, self.name)

        self.learned = LearnedCoordinates()
        # A restarted engine keeps counting where its predecessor stopped.
        self.stats = stats.snapshot() if stats is not None else RunStats()
        self.stage = Stage.INITIATE
        self.running = False
        self.last_health: Optional[HealthReport] = None
        self.outcome: Optional[WorkOutcome] = None
        self.failure: Optional[str] = None

        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    # Outside view

    def snapshot(self) -> EngineSnapshot:
        with self._lock:
            return EngineSnapshot(
                device_id=self.info.id,
                device_name=self.name,
                stage=self.stage,
                running=self.running,
                stats=self.stats.snapshot(),
                last_health=self.last_health,
                outcome=self.outcome,
                failure=self.failure,
            )

    def health_status(self) -> HealthReport:
        """What the pool needs to decide on a restart, derived from a snapshot."""
        snap = self.snapshot()
        if snap.running:
            if snap.last_health is not None and not snap.last_health.healthy:
                return snap.last_health
            return HealthReport(healthy=True)
        if snap.outcome is not None and snap.outcome.completed:
            return HealthReport(healthy=True, reason=snap.outcome.reason)
        if snap.failure is not None:
            return HealthReport(healthy=False, reason=snap.failure, needs_restart=True)
        if snap.outcome is not None:
            return HealthReport(healthy=False, reason=snap.outcome.reason, needs_restart=True)
        return HealthReport(healthy=False, reason="stopped")

    def start(self):
        with self._lock:
            self.running = True
        self._thread = threading.Thread(target=self.run, name=f"engine-{self.info.id}", daemon=True)
        self._thread.start()

    def stop(self):
        self.cancel.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """True once the engine thread has finished."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    # State changes (engine thread only)

    def _set_stage(self, stage: Stage):
        with self._lock:
            prev, self.stage = self.stage, stage
        if prev != stage:
            logging.info(f"[ENGINE][{self.name}] stage {prev.value} -> {stage.value}")

    def _fail(self, reason: str):
        with self._lock:
            self.failure = reason
        logging.error(f"[ENGINE][{self.name}] {reason}")

    # Lifecycle

    def run(self) -> Optional[WorkOutcome]:
        with self._lock:
            self.running = True
        try:
            if not self.initiate():
                return None
            if not self.learn():
                return None
            return self.work()
        except Cancelled:
            logging.info(f"[ENGINE][{self.name}] stop requested")
            return None
        except Exception as e:
            # Last line of defence: one broken device must not take the thread down silently.
            logging.exception(f"[ENGINE][{self.name}] crashed")
            self._fail(f"unexpected error in {self.stage.value}: {e!r}")
            return None
        finally:
            self._set_stage(Stage.STOPPED)
            with self._lock:
                self.running = False

    # Initiate

    def initiate(self) -> bool:
        self._set_stage(Stage.INITIATE)
        p = self.presets
        attempts = p.control.initiate_attempts
        reason = ""
        for attempt in range(1, attempts + 1):
            try:
                if not self.device.is_reachable():
                    raise TransportError("device is not reachable over adb")
                if not self.device.is_foreground(p.app_package):
                    logging.info(f"[INIT][{self.name}] launching {p.app_package}")
                    self.device.launch_app(p.app_package)
                    pause(self.cancel, p.app_load_time)

                result = self.session.run(ready_goal(p.app_package), READY_TOOLS, ReadyResult, p.control.ready_steps)
                if result.success:
                    logging.info(f"[INIT][{self.name}] app ready: {result.message}")
                    return True
                reason = result.message or "app not ready"
            except SessionError as e:
                reason = str(e)
            logging.warning(f"[INIT][{self.name}] attempt {attempt}/{attempts} failed: {reason}")
            if attempt < attempts:
                pause(self.cancel, p.control.ui_settle)

        self._fail(f"initiate failed after {attempts} attempts: {reason}")
        return False

    # Learn

    def learn(self) -> bool:
        self._set_stage(Stage.LEARN)
        attempts = self.presets.control.learn_attempts
        report = LearnReport(ok=False)
        for attempt in range(1, attempts + 1):
            report = self.learn_once()
            if report.ok:
                self.learned = report.coords
                logging.info(f"[LEARN][{self.name}] learned {', '.join(f'{r}={self.learned.get(r)}' for r in ROLES)}")
                return True
            logging.warning(f"[LEARN][{self.name}] attempt {attempt}/{attempts} failed: {report.reason}")

        self._fail(f"learn failed after {attempts} attempts: {report.reason}")
        return False

    def learn_once(self) -> LearnReport:
        p = self.presets
        try:
            result = self.session.run(learn_goal(p.app_package), LEARN_TOOLS, LearnResult, p.control.learn_steps)
        except SessionError as e:
            return LearnReport(ok=False, missing=list(ROLES), reason=f"learn session failed: {e}")

        coords = LearnedCoordinates.from_learn_result(result)
        missing = coords.missing()
        if missing:
            return LearnReport(ok=False, coords=coords, missing=missing, reason=f"missing UI roles: {', '.join(missing)}")
        if not result.success:
            logging.debug(f"[LEARN][{self.name}] model reported success=false but all roles were found")

        # Practise the comment flow once with the learned coordinates.
        try:
            steps = self.comment_steps(coords, p.comments.probe_text, strict=True)
        except PreconditionError as e:
            return LearnReport(ok=False, coords=coords, reason=str(e))
        practice = run_steps(steps, self.cancel, label=f"[{self.name}][practice]")
        if not practice.ok:
            return LearnReport(
                ok=False,
                coords=coords,
                reason=f"comment practice failed at '{practice.failed_step}': {practice.error!r}",
            )
        return LearnReport(ok=True, coords=coords)

    # Scripted flows

    def comment_visible(self, text: str) -> bool:
        answer = self.analyzer.answer(comment_visible_question(text))
        return answer.strip().upper().startswith("YES")

    def comment_steps(self, coords: LearnedCoordinates, text: str, strict: bool) -> list[Step]:
        """Open the comment sheet, type, send, (verify), close.

        All coordinates are resolved first so a missing role fails before any tap.
        With strict=False an unverified comment is only logged.
        """
        if not text:
            raise PreconditionError("empty comment text")
        button = coords.require("comment")
        field_ = coords.require("comment_input")
        send = coords.require("comment_send")
        close = coords.require("comment_close")
        d = self.device
        settle = self.presets.control.ui_settle

        def verify():
            if self.comment_visible(text):
                return True
            logging.warning(f"[WORK][{self.name}] comment '{text}' not visible after sending")
            return not strict

        return [
            Step("open comments", lambda: d.tap(button.x, button.y)),
            wait_step(self.cancel, settle),
            Step("focus input", lambda: d.tap(field_.x, field_.y)),
            wait_step(self.cancel, 0.5 * settle),
            Step("type comment", lambda: d.type_text(text)),
            wait_step(self.cancel, 0.5 * settle),
            Step("send", lambda: d.tap(send.x, send.y)),
            wait_step(self.cancel, 2 * settle),
            Step("verify comment", verify),
            Step("close comments", lambda: d.tap(close.x, close.y)),
            wait_step(self.cancel, settle),
        ]

    # Work

    def work(self) -> WorkOutcome:
        self._set_stage(Stage.WORK)
        limits = WorkLimits.from_presets(self.presets)
        counters = WorkCounters()
        logging.info(f"[WORK][{self.name}] starting feed loop")

        outcome = limits.evaluate(self.stats, 0, 0)
        while outcome is None:
            outcome = self.work_once(limits, counters)

        with self._lock:
            self.outcome = outcome
        log = logging.info if outcome.completed else logging.error
        log(f"[WORK][{self.name}] stopped: {outcome.reason} ({outcome.stats.as_dict()})")
        return outcome

    def work_once(self, limits: WorkLimits, counters: WorkCounters) -> Optional[WorkOutcome]:
        """One video: watch -> health check (every Nth) -> decide -> act -> advance.

        Counters only change once the whole iteration went through, so a stop
        in the middle leaves RunStats untouched.
        """
        tally = IterationTally()
        n = self.stats.videos_processed
        logging.info(f"[WORK][{self.name}] video #{n + 1}")

        if n == 0:
            logging.info(f"[WORK][{self.name}] first video, deciding immediately")
        else:
            pause(self.cancel, self.policy.watch_duration())

        if n > 0 and n % self.presets.control.health_check_interval == 0:
            self._health_round(counters)

        decision = self.policy.decide()
        logging.info(f"[WORK][{self.name}] decision: {decision.action} ({decision.reason})")

        try:
            self.perform(decision, tally)
        except (PreconditionError, TransportError) as e:
            tally.errors += 1
            logging.error(f"[WORK][{self.name}] {decision.action} failed: {e}")

        try:
            if not self.advance():
                tally.errors += 1
        except TransportError as e:
            tally.errors += 1
            logging.error(f"[WORK][{self.name}] scroll failed: {e}")

        tally.videos = 1
        with self._lock:
            self.stats.commit(tally)
        counters.consecutive_errors = counters.consecutive_errors + 1 if tally.errors else 0

        s = self.stats
        if s.videos_processed % PROGRESS_EVERY == 0:
            logging.info(
                f"[WORK][{self.name}] progress: {s.videos_processed} videos, "
                f"{s.likes_given} likes, {s.comments_posted} comments, {s.error_count} errors"
            )
        return limits.evaluate(s, counters.consecutive_errors, counters.health_failures)

    def _health_round(self, counters: WorkCounters):
        report = self.health.check()
        with self._lock:
            self.last_health = report
        if report.healthy:
            counters.health_failures = 0
            return
        counters.health_failures += 1
        # Recovery outcome doesn't stop the loop; repeated failures do (WorkLimits).
        if not self.health.recover():
            logging.warning(f"[WORK][{self.name}] recovery failed, continuing anyway")

    def perform(self, decision: Decision, tally: IterationTally):
        if decision.action == LIKE:
            pt = self.learned.require("like")
            logging.info(f"[WORK][{self.name}] liking at ({pt.x}, {pt.y})")
            self.device.tap(pt.x, pt.y)
            pause(self.cancel, 0.5 * self.presets.control.ui_settle)
            tally.likes += 1
            return

        if decision.action == COMMENT:
            steps = self.comment_steps(self.learned, decision.comment_text or "", strict=False)
            logging.info(f"[WORK][{self.name}] commenting: '{decision.comment_text}'")
            report: StepReport = run_steps(steps, self.cancel, label=f"[{self.name}][comment]")
            if not report.ok:
                raise TransportError(f"comment flow failed at '{report.failed_step}': {report.error!r}")
            tally.comments += 1
            return

        logging.debug(f"[WORK][{self.name}] skipping this video")

    def advance(self) -> bool:
        """Swipe to the next video. False when the screen visibly didn't change."""
        w, h = self.device.screen_size()
        verify = self.presets.control.verify_advance
        before = self.device.capture() if verify else None

        self.device.swipe(w // 2, h * 7 // 10, w // 2, h * 3 // 10, 300)
        pause(self.cancel, self.policy.scroll_delay())

        if before is None:
            return True
        if frames_differ(before, self.device.capture()):
            return True
        logging.warning(f"[WORK][{self.name}] feed did not advance after swipe")
        return False
