"""Per-video decisions: how long to watch, and whether to like, comment or skip."""

import logging
import random
import re
from dataclasses import dataclass
from typing import Optional

from feed_agent.config import Presets
from feed_agent.errors import SessionError
from feed_agent.prompts import comment_goal
from feed_agent.schemas import CommentResult
from feed_agent.tools import ToolKind, catalogue

LIKE = "like"
COMMENT = "comment"
SKIP = "skip"

_NOT_LETTER = re.compile(r"[^a-z ]+")
_SPACES = re.compile(r"\s+")


def sanitize_comment(text: str, max_length: Optional[int] = None) -> str:
    """Make text safe for `adb shell input text`.

    The device text primitive mangles anything outside plain ASCII, so we keep
    lowercase letters and single spaces only. Idempotent.
    """
    s = (text or "").lower()
    s = _NOT_LETTER.sub(" ", s)
    s = _SPACES.sub(" ", s).strip()
    if max_length is not None and len(s) > max_length:
        s = s[:max_length].rstrip()
    return s


@dataclass(frozen=True)
class Decision:
    action: str
    reason: str
    comment_text: Optional[str] = None


class CommentWriter:
    """Asks the model for a comment about the current video."""

    def __init__(self, session, presets: Presets):
        self.session = session
        self.presets = presets

    def write(self) -> str:
        c = self.presets.comments
        result = self.session.run(
            comment_goal(c.max_length),
            catalogue(ToolKind.ANALYZE_SCREEN, ToolKind.FINISH),
            CommentResult,
            self.presets.control.comment_steps,
        )
        text = sanitize_comment(result.comment_text, c.max_length)
        logging.info(f"[POLICY] AI comment: '{text}' (confidence: {result.confidence})")
        return text


class ActionPolicy:
    def __init__(self, presets: Presets, rng: Optional[random.Random] = None, comment_writer: Optional[CommentWriter] = None):
        self.presets = presets
        self.rng = rng or random.Random()
        self.comment_writer = comment_writer

    def template_comment(self) -> str:
        c = self.presets.comments
        return sanitize_comment(self.rng.choice(c.templates), c.max_length)

    def comment_text(self) -> str:
        if self.presets.comments.use_ai and self.comment_writer is not None:
            try:
                text = self.comment_writer.write()
                if text:
                    return text
                logging.warning("[POLICY] AI comment was empty after sanitizing, using a template")
            except SessionError as e:
                logging.warning(f"[POLICY] AI comment generation failed, using a template: {e}")
        return self.template_comment()

    def roll(self) -> Decision:
        """The dice only: no comment text yet, no model calls."""
        i = self.presets.interactions
        comment_roll = self.rng.random()
        like_roll = self.rng.random()

        if comment_roll < i.comment_chance:
            return Decision(COMMENT, f"comment roll {comment_roll:.3f} < {i.comment_chance}")
        if like_roll < i.like_chance:
            return Decision(LIKE, f"like roll {like_roll:.3f} < {i.like_chance}")
        return Decision(SKIP, f"no action triggered (like {like_roll:.3f}, comment {comment_roll:.3f})")

    def decide(self) -> Decision:
        d = self.roll()
        if d.action == COMMENT:
            return Decision(COMMENT, d.reason, self.comment_text())
        return d

    def watch_duration(self) -> float:
        v = self.presets.video
        if self.rng.random() < v.quick_skip_chance:
            return v.quick_skip_duration
        lo, hi = v.watch_duration
        return self.rng.uniform(lo, hi)

    def scroll_delay(self) -> float:
        lo, hi = self.presets.video.scroll_delay
        return self.rng.uniform(lo, hi)
