from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, model_validator


class Message(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    prompt: Optional[str] = None
    system: Optional[str] = None
    messages: Optional[List[Message]] = None
    model: Optional[str] = None

    @model_validator(mode="after")
    def _require_input(self):
        if not self.messages and not (self.prompt and self.prompt.strip()):
            raise ValueError('Field "prompt" (or a non-empty "messages" list) is required')
        return self

    def to_conversation(self) -> List[Dict[str, str]]:
        """Explicit messages win; otherwise system + prompt become a two-turn conversation."""
        if self.messages:
            return [m.model_dump() for m in self.messages]
        turns = []
        if self.system:
            turns.append({"role": "system", "content": self.system})
        turns.append({"role": "user", "content": self.prompt})
        return turns


class ModelInfo(BaseModel):
    id: str
    name: str
    description: str = ""


class ErrorKind(str, Enum):
    SPAWN_FAILURE = "SPAWN_FAILURE"
    CLI_ERROR = "CLI_ERROR"
    TIMEOUT = "TIMEOUT"
    CLIENT_DISCONNECT = "CLIENT_DISCONNECT"


@dataclass(frozen=True)
class GenerationResult:
    ok: bool
    text: str = ""
    error_kind: Optional[ErrorKind] = None
    details: str = ""

    @classmethod
    def success(cls, text: str) -> "GenerationResult":
        return cls(ok=True, text=text)

    @classmethod
    def failure(cls, kind: ErrorKind, details: str = "") -> "GenerationResult":
        return cls(ok=False, error_kind=kind, details=details)


@dataclass(frozen=True)
class HealthResult:
    ok: bool
    version: str = ""
    code: Optional[str] = None
    message: str = ""
