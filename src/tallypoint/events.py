from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Any, ClassVar, Dict, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictBool, StringConstraints, field_validator

# ----------------------------
# Incoming payloads
# ----------------------------
# Strict types: "true" is not a bool and "12" is not an int.
# Clients send camelCase; snake_case is accepted too.
RequiredStr = Annotated[str, StringConstraints(strict=True, strip_whitespace=True, min_length=1)]
OptionalStr = Optional[Annotated[str, StringConstraints(strict=True)]]
# Counts are stored as signed 64-bit SQLite integers.
MAX_COUNT = 2**63 - 1
Count = Annotated[int, Field(strict=True, ge=0, le=MAX_COUNT)]


class EventIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: RequiredStr = Field(alias="userId")
    app_version: OptionalStr = Field(default=None, alias="appVersion")
    os: OptionalStr = None


class ReplacementIn(EventIn):
    kind: ClassVar[str] = "replacement"

    success: StrictBool
    method: RequiredStr                     # e.g. "Win32DirectReplacer", "TextPatternReplacer"
    target_app: RequiredStr = Field(alias="targetApp")   # e.g. "notepad.exe"
    text_length: Count = Field(default=0, alias="textLength")
    response_time_ms: Optional[Count] = Field(
        default=0,
        validation_alias=AliasChoices("responseTimeMs", "responseTime", "response_time_ms"),
    )
    user_agent: OptionalStr = Field(default=None, alias="userAgent")
    ip_address: OptionalStr = Field(default=None, alias="ipAddress")

    @field_validator("text_length", mode="before")
    @classmethod
    def _missing_length_is_zero(cls, v: Any) -> Any:
        return 0 if v is None else v


class ErrorIn(EventIn):
    kind: ClassVar[str] = "error"

    error_type: RequiredStr = Field(alias="errorType")
    error_message: RequiredStr = Field(alias="errorMessage")
    target_app: OptionalStr = Field(default=None, alias="targetApp")
    stack_trace: OptionalStr = Field(default=None, alias="stackTrace")


class UserActionIn(EventIn):
    kind: ClassVar[str] = "user_action"

    action_type: RequiredStr = Field(alias="actionType")
    target_app: OptionalStr = Field(default=None, alias="targetApp")


EventPayload = Union[ReplacementIn, ErrorIn, UserActionIn]


# ----------------------------
# Stored records
# ----------------------------
@dataclass(frozen=True)
class ReplacementEvent:
    id: int
    timestamp: datetime
    user_id: str
    app_version: Optional[str]
    os: Optional[str]
    success: bool
    method: str
    target_app: str
    text_length: int
    response_time_ms: Optional[int]
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass(frozen=True)
class ErrorEvent:
    id: int
    timestamp: datetime
    user_id: str
    app_version: Optional[str]
    os: Optional[str]
    error_type: str
    error_message: str
    target_app: Optional[str] = None
    stack_trace: Optional[str] = None

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "errorType": self.error_type,
            "errorMessage": self.error_message,
            "targetApp": self.target_app,
            "userId": self.user_id,
            "appVersion": self.app_version,
            "os": self.os,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class UserActionEvent:
    id: int
    timestamp: datetime
    user_id: str
    action_type: str
    target_app: Optional[str] = None
    app_version: Optional[str] = None
    os: Optional[str] = None
