"""Core data models for opencode-webui."""

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

PERMISSION_MODES = ("default", "plan", "acceptEdits")


@dataclass
class CommandResult:
    """Buffered outcome of a short-lived CLI invocation."""

    success: bool
    code: int
    stdout: str = ""
    stderr: str = ""


@dataclass
class StreamChunk:
    """A piece of decoded process output."""

    source: str  # "stdout" | "stderr"
    text: str


class ChatRequest(BaseModel):
    """A single submit from the chat UI, parsed from its camelCase JSON body."""

    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(min_length=1)
    request_id: str = Field(alias="requestId", min_length=1)
    session_id: Optional[str] = Field(None, alias="sessionId")
    working_directory: Optional[str] = Field(None, alias="workingDirectory")
    permission_mode: str = Field("default", alias="permissionMode")
    model: Optional[str] = None

    @field_validator("permission_mode", mode="before")
    @classmethod
    def _known_mode(cls, value):
        return value if value in PERMISSION_MODES else "default"

    @field_validator("session_id", "working_directory", "model", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and value.strip():
            return value
        return None


@dataclass
class RequestState:
    """Book-keeping for one in-flight chat request."""

    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    session_id: Optional[str] = None
    working_directory: Optional[str] = None
    kill: Optional[Callable[[], None]] = None


@dataclass
class Project:
    """A directory the UI can open, addressed by its position in the list."""

    path: str
    encoded_name: str  # "project-N"

    def to_dict(self) -> dict:
        return {"path": self.path, "encodedName": self.encoded_name}


@dataclass
class ConversationSummary:
    """One row of a project's history list."""

    session_id: str
    start_time: str
    last_time: str
    message_count: int = 0
    preview: str = ""

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "startTime": self.start_time,
            "lastTime": self.last_time,
            "messageCount": self.message_count,
            "lastMessagePreview": self.preview,
        }
