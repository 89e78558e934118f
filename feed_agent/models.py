from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Optional, Tuple

from feed_agent.errors import PreconditionError


class DeviceStatus(str, Enum):
    CONNECTED = "connected"
    OFFLINE = "offline"
    UNAUTHORIZED = "unauthorized"

    @classmethod
    def from_adb(cls, state: str) -> "DeviceStatus":
        # `adb devices` says "device" for a usable handset.
        s = (state or "").strip().lower()
        if s == "device":
            return cls.CONNECTED
        if s == "unauthorized":
            return cls.UNAUTHORIZED
        return cls.OFFLINE


@dataclass(frozen=True)
class Device:
    id: str
    name: str
    status: DeviceStatus
    model: str = ""
    screen: Tuple[int, int] = (0, 0)

    @property
    def connected(self) -> bool:
        return self.status == DeviceStatus.CONNECTED


class Stage(str, Enum):
    INITIATE = "initiate"
    LEARN = "learn"
    WORK = "work"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Point:
    x: int
    y: int


# Semantic UI roles the Learn stage must find. Order matters for reporting.
ROLES = ("like", "comment", "comment_input", "comment_send", "comment_close")

# Field names used by the learn result schema, per role.
ROLE_FIELDS = {
    "like": "like_button",
    "comment": "comment_button",
    "comment_input": "comment_input_field",
    "comment_send": "comment_send_button",
    "comment_close": "comment_close_button",
}


@dataclass
class LearnedCoordinates:
    """Device-specific screen positions for the fixed UI roles."""

    points: Dict[str, Point] = field(default_factory=dict)
    confidence: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_learn_result(cls, result) -> "LearnedCoordinates":
        points: Dict[str, Point] = {}
        confidence: Dict[str, float] = {}
        for role, attr in ROLE_FIELDS.items():
            finding = getattr(result.ui_elements, attr)
            if not finding.found or finding.coordinates is None:
                continue
            points[role] = Point(int(finding.coordinates.x), int(finding.coordinates.y))
            confidence[role] = float(finding.confidence if finding.confidence is not None else 0.0)
        return cls(points=points, confidence=confidence)

    def get(self, role: str) -> Optional[Point]:
        return self.points.get(role)

    def require(self, role: str) -> Point:
        p = self.points.get(role)
        if p is None:
            raise PreconditionError(f"UI role '{role}' has no learned coordinates")
        return p

    def missing(self) -> list[str]:
        return [r for r in ROLES if r not in self.points]

    def complete(self) -> bool:
        return not self.missing()


@dataclass
class RunStats:
    """Monotonic counters. Only the owning engine writes them."""

    videos_processed: int = 0
    likes_given: int = 0
    comments_posted: int = 0
    error_count: int = 0

    @property
    def total_actions(self) -> int:
        return self.likes_given + self.comments_posted

    def commit(self, tally: "IterationTally"):
        self.videos_processed += tally.videos
        self.likes_given += tally.likes
        self.comments_posted += tally.comments
        self.error_count += tally.errors

    def snapshot(self) -> "RunStats":
        return replace(self)

    def as_dict(self) -> dict:
        return {
            "videos": self.videos_processed,
            "likes": self.likes_given,
            "comments": self.comments_posted,
            "errors": self.error_count,
        }


@dataclass
class IterationTally:
    """What one Work iteration did; committed to RunStats only once it finishes."""

    videos: int = 0
    likes: int = 0
    comments: int = 0
    errors: int = 0


@dataclass(frozen=True)
class HealthReport:
    healthy: bool
    reason: Optional[str] = None
    needs_restart: bool = False


@dataclass(frozen=True)
class WorkOutcome:
    completed: bool
    should_continue: bool
    reason: str
    stats: RunStats


@dataclass(frozen=True)
class EngineSnapshot:
    device_id: str
    device_name: str
    stage: Stage
    running: bool
    stats: RunStats
    last_health: Optional[HealthReport]
    outcome: Optional[WorkOutcome]
    failure: Optional[str]
