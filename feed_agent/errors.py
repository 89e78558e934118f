"""Error taxonomy shared by the device layer, sessions and stages."""


class SessionError(Exception):
    """Base class for the ways a tool-calling session can fail."""


class TransportError(SessionError):
    """Device or model unreachable. Retryable by the caller."""


class SchemaViolation(SessionError):
    """The model finished, but its result did not match the expected schema."""


class StepBudgetExceeded(SessionError):
    """The model never called the finish tool within the step budget."""


class PreconditionError(Exception):
    """An action was attempted without what it needs (e.g. an unlearned coordinate)."""


class FatalStartupError(Exception):
    """Nothing can be automated at all: no adb, no devices, no workers."""


class Cancelled(Exception):
    """Raised at a suspension point once the owning engine has been told to stop."""


class MissingApiKey(FatalStartupError):
    """No Gemini API key in the environment."""
