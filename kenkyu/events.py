"""
Provider result events.

Webhook bodies and polled provider responses are decoded by one pydantic
schema into a small tagged union. Two shapes are accepted:

    {"id": "...", "status": "completed", "output": "...", "usage": {"inputTokens": 1, "outputTokens": 2}}
    {"type": "response.completed", "data": {"id": "..."}}          # OpenAI webhook envelope

and a raw Responses API object (`output` as a list of message items,
`usage.input_tokens`, `error` as an object) decodes the same way.
"""
from dataclasses import dataclass
from typing import Optional, Union

from pydantic import BaseModel, Field, ValidationError, model_validator

from kenkyu.costs import Usage
from kenkyu.errors import InputError

COMPLETED_STATUSES = ("completed",)
FAILED_STATUSES = ("failed", "cancelled", "incomplete")
IN_PROGRESS_STATUSES = ("in_progress", "queued")


class WebhookPayloadError(InputError):
    """Body is not JSON or does not match the payload schema."""


def extract_output_text(output: list) -> str:
    """Concatenate the output_text parts of a Responses API output list."""
    parts = []
    for item in output:
        if not isinstance(item, dict):
            continue
        for content in item.get("content") or []:
            if isinstance(content, dict) and content.get("type") == "output_text":
                parts.append(content.get("text") or "")
    return "\n\n".join(parts)


class WebhookPayload(BaseModel):
    model_config = {"populate_by_name": True}

    id: str = Field(min_length=1)
    status: str = Field(min_length=1)
    output: Optional[str] = None
    usage: Optional[Usage] = None
    error: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)

        event_type = data.get("type")
        inner = data.get("data")
        if isinstance(event_type, str) and event_type.startswith("response.") and isinstance(inner, dict):
            data = dict(inner)
            data["status"] = event_type.split(".", 1)[1]

        output = data.get("output")
        if isinstance(output, list):
            data["output"] = extract_output_text(output)

        error = data.get("error")
        if isinstance(error, dict):
            data["error"] = error.get("message") or error.get("code") or "Unknown error"
        return data


@dataclass(frozen=True)
class CompletedEvent:
    external_id: str
    output: Optional[str] = None
    usage: Optional[Usage] = None


@dataclass(frozen=True)
class FailedEvent:
    external_id: str
    error: str
    status: str = "failed"


@dataclass(frozen=True)
class InProgressEvent:
    external_id: str
    status: str = "in_progress"


@dataclass(frozen=True)
class UnknownEvent:
    external_id: str
    status: str


ProviderEvent = Union[CompletedEvent, FailedEvent, InProgressEvent, UnknownEvent]


def to_event(payload: WebhookPayload) -> ProviderEvent:
    status = payload.status.lower()
    if status in COMPLETED_STATUSES:
        return CompletedEvent(payload.id, payload.output, payload.usage)
    if status in FAILED_STATUSES:
        return FailedEvent(payload.id, payload.error or f"Research {status}", status)
    if status in IN_PROGRESS_STATUSES:
        return InProgressEvent(payload.id, status)
    return UnknownEvent(payload.id, status)


def decode_event(body: Union[bytes, str, dict]) -> ProviderEvent:
    """Decode a raw body or parsed object. Raises WebhookPayloadError."""
    try:
        if isinstance(body, dict):
            payload = WebhookPayload.model_validate(body)
        else:
            payload = WebhookPayload.model_validate_json(body)
    except ValidationError as e:
        raise WebhookPayloadError(f"Invalid webhook payload: {e.error_count()} validation error(s)")
    return to_event(payload)


def is_terminal(event: ProviderEvent) -> bool:
    return isinstance(event, (CompletedEvent, FailedEvent))
