"""Pydantic models for the relay session and its wire protocol."""

from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from agentrelay.errors import ParseError


class AgentState(StrEnum):
    """Whether the agent needs input."""

    WORKING = "working"
    WAITING = "waiting"


class SessionPhase(StrEnum):
    """Lifecycle of the child process."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    EXITED = "exited"


class ClientPhase(StrEnum):
    """Lifecycle of a connected remote client."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class Option(WireModel):
    """A numbered menu entry found in the agent output."""

    number: int = Field(description="Number shown next to the option")
    title: str = Field(description="Option text on the numbered line")
    description: str | None = Field(
        default=None,
        description="Line following the option, if any",
    )
    selected: bool = Field(
        default=False,
        description="Preceded by the selection cursor glyph",
    )


class Question(WireModel):
    """Structured prompt extracted from the classifier window."""

    question: str | None = None
    options: list[Option] | None = None
    raw_text: str = ""


class StateChange(BaseModel):
    """Emitted by the classifier on every state edge."""

    state: AgentState
    question: Question | None = None


# ── server → client ─────────────────────────────────────


class ConnectedMessage(WireModel):
    type: Literal["connected"] = "connected"
    message: str = "Connected to agentrelay server"


class StateMessage(WireModel):
    type: Literal["state"] = "state"
    state: AgentState
    question: str | None = None
    options: list[Option] | None = None
    raw_text: str | None = None

    @classmethod
    def from_change(cls, change: StateChange) -> "StateMessage":
        if change.state == AgentState.WAITING and change.question is not None:
            q = change.question
            return cls(
                state=change.state,
                question=q.question,
                options=q.options,
                raw_text=q.raw_text,
            )
        return cls(state=change.state)


class OutputMessage(WireModel):
    type: Literal["output"] = "output"
    data: str


class ExitMessage(WireModel):
    type: Literal["exit"] = "exit"
    exit_code: int | None = None
    signal: int | None = None


class ErrorMessage(WireModel):
    type: Literal["error"] = "error"
    message: str


ServerMessage = (
    ConnectedMessage | StateMessage | OutputMessage | ExitMessage | ErrorMessage
)

_WAITING_FIELDS = {"question", "options", "raw_text"}


def encode(message: ServerMessage) -> str:
    """Serialize a server message to its JSON text frame.

    A ``working`` state message carries only ``type`` and
    ``state``; a ``waiting`` one always carries the question
    fields, with ``options`` possibly ``null``.
    """
    exclude: set[str] = set()
    if isinstance(message, StateMessage) and message.state != AgentState.WAITING:
        exclude = _WAITING_FIELDS
    return message.model_dump_json(by_alias=True, exclude=exclude)


# ── client → server ─────────────────────────────────────


class InputMessage(WireModel):
    type: Literal["input"] = "input"
    data: str


class ForceStateMessage(WireModel):
    type: Literal["forceState"] = "forceState"
    state: AgentState


ClientMessage = Annotated[
    InputMessage | ForceStateMessage,
    Field(discriminator="type"),
]

_client_message_adapter: TypeAdapter[InputMessage | ForceStateMessage] = TypeAdapter(
    ClientMessage
)


def parse_client_message(text: str | bytes) -> InputMessage | ForceStateMessage:
    """Decode one inbound frame.

    Raises:
        ParseError: Malformed JSON, unknown ``type`` or bad fields.
    """
    try:
        return _client_message_adapter.validate_json(text)
    except ValidationError as exc:
        msg = f"Invalid client message: {exc.error_count()} error(s)"
        raise ParseError(msg) from exc
