from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


class Control(BaseModel):
    control_id: str
    label: str


class RenderInstruction(BaseModel):
    text: str
    controls: List[List[Control]] = Field(default_factory=list)
    menu: Optional[str] = None
    closed: bool = False


class InteractionRequest(BaseModel):
    actor_id: str = Field(min_length=1)
    conversation_id: str = Field(min_length=1)
    control_id: Optional[str] = None
    command: Optional[str] = None
    text: Optional[str] = None

    @model_validator(mode="after")
    def _exactly_one_input(self) -> "InteractionRequest":
        provided = [v for v in (self.control_id, self.command, self.text) if v is not None]
        if len(provided) != 1:
            raise ValueError("exactly one of control_id, command or text is required")
        return self


ErrorKind = Literal["not_found", "generation", "persistence", "internal"]


class InteractionResult(BaseModel):
    ok: bool = True
    render: RenderInstruction
    error: Optional[ErrorKind] = None
