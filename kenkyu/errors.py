"""
Error taxonomy for the research engine.
Each error carries the HTTP status the API layer answers with.
"""


class EngineError(Exception):
    """Base class for errors surfaced synchronously to the caller."""
    status_code = 400


class InputError(EngineError, ValueError):
    """Rejected input: bad cron, unknown timezone, missing prompt, bad stock selection."""
    status_code = 400


class NotFoundError(EngineError):
    status_code = 404


class CapacityError(EngineError):
    """The admission ceiling is reached."""
    status_code = 409


class TransitionError(EngineError):
    """The requested operation is not valid from the job's current status."""
    status_code = 409


class SignatureError(EngineError):
    """Webhook signature missing or wrong."""
    status_code = 401
