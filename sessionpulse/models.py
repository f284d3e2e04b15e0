"""Pydantic models for session logs, derived status, and hook signals."""
from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

# ── Log records ────────────────────────────────────────────────────


class ContentBlock(BaseModel):
    """One block of a message body (text, tool_use, tool_result, thinking, image...)."""

    model_config = ConfigDict(extra="allow")

    type: str
    text: Optional[str] = None
    id: Optional[str] = None
    name: Optional[str] = None
    input: Any = None
    tool_use_id: Optional[str] = None


class UserMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str = "user"
    content: Union[str, list[ContentBlock]] = ""


class AssistantMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str = "assistant"
    content: list[ContentBlock] = Field(default_factory=list)


class _RecordBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    timestamp: str = ""
    uuid: Optional[str] = None
    sessionId: Optional[str] = None
    cwd: Optional[str] = None
    gitBranch: Optional[str] = None


class UserRecord(_RecordBase):
    type: Literal["user"]
    message: UserMessage
    isMeta: bool = False


class AssistantRecord(_RecordBase):
    type: Literal["assistant"]
    message: AssistantMessage


class SystemRecord(_RecordBase):
    type: Literal["system"]
    subtype: str = ""


LogRecord = Annotated[
    Union[UserRecord, AssistantRecord, SystemRecord],
    Field(discriminator="type"),
]
LOG_RECORD_ADAPTER: TypeAdapter[LogRecord] = TypeAdapter(LogRecord)
RECORD_TYPES = frozenset({"user", "assistant", "system"})


# ── Status machine ─────────────────────────────────────────────────


class StatusEventType(str, Enum):
    USER_PROMPT = "USER_PROMPT"
    TOOL_RESULT = "TOOL_RESULT"
    ASSISTANT_STREAMING = "ASSISTANT_STREAMING"
    ASSISTANT_TOOL_USE = "ASSISTANT_TOOL_USE"
    TURN_END = "TURN_END"
    IDLE_TIMEOUT = "IDLE_TIMEOUT"
    APPROVAL_TIMEOUT = "APPROVAL_TIMEOUT"
    STALE_TIMEOUT = "STALE_TIMEOUT"


class StatusEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: StatusEventType
    timestamp: str = ""
    toolUseIds: tuple[str, ...] = ()


class StatusState(str, Enum):
    IDLE = "idle"
    WORKING = "working"
    WAITING_FOR_APPROVAL = "waiting_for_approval"
    WAITING_FOR_INPUT = "waiting_for_input"


class StatusContext(BaseModel):
    lastActivityAt: str = ""
    messageCount: int = 0
    hasPendingToolUse: bool = False
    pendingToolIds: list[str] = Field(default_factory=list)


class MachineSnapshot(BaseModel):
    """Machine position after the last consumed event, before timeouts."""

    state: StatusState = StatusState.WAITING_FOR_INPUT
    context: StatusContext = Field(default_factory=StatusContext)


SessionStatus = Literal["working", "waiting", "idle"]


class StatusResult(BaseModel):
    status: SessionStatus = "waiting"
    machineState: StatusState = StatusState.WAITING_FOR_INPUT
    hasPendingToolUse: bool = False
    lastActivityAt: str = ""
    messageCount: int = 0


# ── Sessions ───────────────────────────────────────────────────────


class SessionMetadata(BaseModel):
    sessionId: str
    cwd: str
    gitBranch: Optional[str] = None
    originalPrompt: str
    startedAt: str = ""


class RepoInfo(BaseModel):
    repoUrl: Optional[str] = None  # https://github.com/owner/repo
    repoId: Optional[str] = None  # owner/repo
    branch: Optional[str] = None
    isGitRepo: bool = False


class SignalKind(str, Enum):
    WORKING = "working"
    PERMISSION = "permission"
    STOP = "stop"
    ENDED = "ended"


class HookSignal(BaseModel):
    sessionId: str
    kind: SignalKind
    signalledAt: str = ""
    toolName: Optional[str] = None
    toolInput: Optional[dict[str, Any]] = None


class SessionState(BaseModel):
    sessionId: str
    filepath: str
    encodedDir: str
    cwd: str
    gitBranch: Optional[str] = None
    originalPrompt: str = ""
    startedAt: str = ""
    records: list[Any] = Field(default_factory=list)
    bytePosition: int = 0
    machine: MachineSnapshot = Field(default_factory=MachineSnapshot)
    status: StatusResult = Field(default_factory=StatusResult)
    pendingPermission: Optional[HookSignal] = None
    signals: list[SignalKind] = Field(default_factory=list)
    gitRepoUrl: Optional[str] = None
    gitRepoId: Optional[str] = None
    branchChanged: bool = False


class SessionSummary(BaseModel):
    """Read-only projection of a SessionState for API consumers."""

    sessionId: str
    cwd: str
    encodedDir: str
    gitBranch: Optional[str] = None
    gitRepoUrl: Optional[str] = None
    gitRepoId: Optional[str] = None
    originalPrompt: str = ""
    startedAt: str = ""
    status: SessionStatus
    machineState: StatusState
    hasPendingToolUse: bool = False
    lastActivityAt: str = ""
    messageCount: int = 0
    pendingTool: Optional[str] = None
    signals: list[SignalKind] = Field(default_factory=list)

    @classmethod
    def from_state(cls, session: SessionState) -> "SessionSummary":
        return cls(
            sessionId=session.sessionId,
            cwd=session.cwd,
            encodedDir=session.encodedDir,
            gitBranch=session.gitBranch,
            gitRepoUrl=session.gitRepoUrl,
            gitRepoId=session.gitRepoId,
            originalPrompt=session.originalPrompt,
            startedAt=session.startedAt,
            status=session.status.status,
            machineState=session.status.machineState,
            hasPendingToolUse=session.status.hasPendingToolUse,
            lastActivityAt=session.status.lastActivityAt,
            messageCount=session.status.messageCount,
            pendingTool=session.pendingPermission.toolName if session.pendingPermission else None,
            signals=list(session.signals),
        )


class SessionEventType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class SessionEvent(BaseModel):
    type: SessionEventType
    session: SessionState
    previousStatus: Optional[StatusResult] = None
    previousBranch: Optional[str] = None
