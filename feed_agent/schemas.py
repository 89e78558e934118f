"""Result schemas for the finish tool of each kind of session."""

from typing import Optional

from pydantic import BaseModel, Field


class ReadyResult(BaseModel):
    success: bool
    message: str = ""


class Coordinates(BaseModel):
    x: float
    y: float


class ElementFinding(BaseModel):
    found: bool
    coordinates: Optional[Coordinates] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    label: Optional[str] = None


class UiElements(BaseModel):
    like_button: ElementFinding
    comment_button: ElementFinding
    comment_input_field: ElementFinding
    comment_send_button: ElementFinding
    comment_close_button: ElementFinding


class LearnResult(BaseModel):
    success: bool
    ui_elements: UiElements
    message: str = ""


class HealthResult(BaseModel):
    success: bool
    current_state: str = Field(default="", description="What was found on screen")
    problems_detected: list[str] = Field(default_factory=list)
    actions_performed: list[str] = Field(default_factory=list)
    message: str = ""


class CommentResult(BaseModel):
    comment_text: str = Field(description="Short comment, lowercase letters and spaces only")
    confidence: str = Field(default="medium", description="high/medium/low")
    reasoning: str = ""
