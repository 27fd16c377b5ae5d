"""Request and response models shared by the API routes.

Field names are snake_case in Python and camelCase on the wire, matching
what the browser client sends and reads.
"""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from core.interfaces import (
    ChatDelta,
    ChatMessage,
    ChatOptions,
    DeleteResult,
    DownloadProgress,
    ModelRecord,
    ProviderStatus,
)


class CamelModel(BaseModel):
    """Base model serialised with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatMessageBody(CamelModel):
    role: str
    content: str


class ChatRequest(CamelModel):
    """Chat request from the browser."""

    model: str = Field(min_length=1)
    messages: list[ChatMessageBody]
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    stream: bool = True  # Always streamed, kept for client compatibility

    def to_messages(self) -> list[ChatMessage]:
        return [ChatMessage(role=m.role, content=m.content) for m in self.messages]

    def to_options(self) -> ChatOptions:
        return ChatOptions(model=self.model, temperature=self.temperature, max_tokens=self.max_tokens)


class ChatChunk(CamelModel):
    content: str = ""
    done: bool = False
    error: str | None = None

    @classmethod
    def from_delta(cls, delta: ChatDelta) -> "ChatChunk":
        return cls(content=delta.content, done=delta.done, error=delta.error)


class DownloadRequest(CamelModel):
    model_id: str = Field(min_length=1)
    provider: str = "foundry"


class DownloadProgressResponse(CamelModel):
    model_id: str
    status: str
    percent: float | None = None
    total: int | None = None
    completed: int | None = None

    @classmethod
    def from_progress(cls, progress: DownloadProgress) -> "DownloadProgressResponse":
        return cls(
            model_id=progress.model_id,
            status=progress.status,
            percent=progress.percent,
            total=progress.total,
            completed=progress.completed,
        )


class ModelInfo(CamelModel):
    """A model as shown in the model picker and model table."""

    id: str
    name: str
    provider: str
    description: str | None = None
    size: int | None = None
    estimated_ram_mb: float | None = None
    status: str = "available"
    parameter_size: str | None = None
    family: str | None = None

    @classmethod
    def from_record(cls, record: ModelRecord) -> "ModelInfo":
        return cls(
            id=record.id,
            name=record.name,
            provider=record.provider,
            description=record.description,
            size=record.size,
            estimated_ram_mb=record.estimated_ram_mb,
            status=record.status,
            parameter_size=record.parameter_size,
            family=record.family,
        )


class ProviderStatusResponse(CamelModel):
    provider: str
    is_available: bool
    endpoint: str | None = None
    error: str | None = None

    @classmethod
    def from_status(cls, status: ProviderStatus) -> "ProviderStatusResponse":
        return cls(
            provider=status.provider,
            is_available=status.available,
            endpoint=status.endpoint,
            error=status.error,
        )


class DeleteResponse(CamelModel):
    success: bool
    outcome: str
    message: str
    path: str | None = None

    @classmethod
    def from_result(cls, result: DeleteResult) -> "DeleteResponse":
        return cls(
            success=result.success,
            outcome=result.outcome.value,
            message=result.message,
            path=result.path,
        )


class SystemInfo(CamelModel):
    total_ram_mb: float
    total_ram_gb: float
    available_ram_mb: float
