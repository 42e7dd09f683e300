from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, TypeAlias

from pydantic import BaseModel

# Command responses are plain JSON objects.
JSONValue: TypeAlias = str | int | float | bool | None | list["JSONValue"] | dict[str, "JSONValue"]
JSONObject: TypeAlias = dict[str, JSONValue]


class Level(str, Enum):
    ERROR = "error"
    HELP = "help"
    NOTE = "note"
    WARNING = "warning"
    EMPTY = ""


class Expansion(BaseModel):
    span: Span


class Span(BaseModel):
    file_name: str
    line_start: int
    line_end: int
    column_start: int
    column_end: int
    is_primary: bool
    label: Optional[str] = None
    expansion: Optional[Expansion] = None


class Code(BaseModel):
    code: str
    explanation: Optional[str] = None


class Message(BaseModel):
    message: str
    code: Optional[Code] = None
    level: str = ""
    spans: List[Span] = []
    children: List[Message] = []


class Target(BaseModel):
    src_path: str


class CargoMessage(BaseModel):
    message: Message
    target: Target


class QuantifierInstantiationsPayload(BaseModel):
    method: str
    instantiations: int


class LegacyQuantifierInstantiationsPayload(BaseModel):
    q_name: str
    instantiations: int


class QuantifierChosenTriggersPayload(BaseModel):
    viper_quant: str
    triggers: Any


class ProcDef(BaseModel):
    name: str
    span: Span


class CompilerInfoPayload(BaseModel):
    procedure_defs: List[ProcDef] = []


class VerificationResultPayload(BaseModel):
    item_name: str
    success: bool
    time_ms: Optional[int] = None
    cached: bool = False


class VerificationCommandDTO(BaseModel):
    path: str
    target: str = "file"
    server_address: Optional[str] = None


class DecorationDTO(BaseModel):
    file_name: str
    line: int
    character: int
    style: str
    time_ms: Optional[int] = None
    cached: Optional[bool] = None


class ShowResultsResponseDTO(BaseModel):
    decorations: List[DecorationDTO] = []
    errors: List[str] = []


class VerifyResponseDTO(BaseModel):
    status: str
    text: str
    counts: Dict[str, int] = {}


Expansion.model_rebuild()
Span.model_rebuild()
Message.model_rebuild()
ProcDef.model_rebuild()
CompilerInfoPayload.model_rebuild()
