"""IPC command and response models for the taskvoiced daemon."""

import json
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, RootModel

from .models import ModelSize


class StartCommand(BaseModel):
    """Start recording an utterance."""

    command: Literal["start"] = "start"


class StopCommand(BaseModel):
    """Stop recording and process the utterance."""

    command: Literal["stop"] = "stop"


class ToggleCommand(BaseModel):
    command: Literal["toggle"] = "toggle"


class StatusCommand(BaseModel):
    command: Literal["status"] = "status"


class ShutdownCommand(BaseModel):
    command: Literal["shutdown"] = "shutdown"


class SubscribeCommand(BaseModel):
    """Keep the connection open for state, pipeline and download notifications."""

    command: Literal["subscribe"] = "subscribe"


class ListTasksCommand(BaseModel):
    command: Literal["list_tasks"] = "list_tasks"


class EditTaskCommand(BaseModel):
    """Replace the text of an existing task."""

    command: Literal["edit_task"] = "edit_task"
    id: int
    text: str = Field(min_length=1)


class ListModelsCommand(BaseModel):
    command: Literal["list_models"] = "list_models"


class DownloadModelCommand(BaseModel):
    command: Literal["download_model"] = "download_model"
    model: ModelSize


class DeleteModelCommand(BaseModel):
    command: Literal["delete_model"] = "delete_model"
    model: ModelSize


class SelectModelCommand(BaseModel):
    command: Literal["select_model"] = "select_model"
    model: ModelSize


DaemonCommand = Annotated[
    Union[
        StartCommand,
        StopCommand,
        ToggleCommand,
        StatusCommand,
        ShutdownCommand,
        SubscribeCommand,
        ListTasksCommand,
        EditTaskCommand,
        ListModelsCommand,
        DownloadModelCommand,
        DeleteModelCommand,
        SelectModelCommand,
    ],
    Field(discriminator="command"),
]


class CommandWrapper(RootModel[DaemonCommand]):
    """Wrapper model for parsing incoming commands."""

    root: DaemonCommand


class DaemonStateModel(BaseModel):
    state: str
    level: float = 0.0
    model: Optional[str] = None
    last_error: Optional[str] = None


class TaskModel(BaseModel):
    id: int
    text: str
    completed: bool
    created_at: str
    completed_at: Optional[str] = None


class ModelInfoModel(BaseModel):
    name: str
    size_mb: int
    installed: bool
    selected: bool = False


class ActionResultModel(BaseModel):
    """One applied action; ``task`` is None when a removal matched nothing."""

    action: str
    text: str
    task: Optional[TaskModel] = None
    error: Optional[str] = None


class AckResponse(BaseModel):
    response_type: Literal["ack"] = "ack"


class StatusResponse(BaseModel):
    response_type: Literal["status"] = "status"
    status: DaemonStateModel


class ErrorResponse(BaseModel):
    response_type: Literal["error"] = "error"
    message: str


class StateNotification(BaseModel):
    """Broadcast when the daemon state or last error changes."""

    response_type: Literal["state_change"] = "state_change"
    status: DaemonStateModel


class PipelineEventNotification(BaseModel):
    """Broadcast for every event an utterance produces.

    ``event`` is one of transcript_ready, tasks_resolved, failed, finished.
    """

    response_type: Literal["pipeline_event"] = "pipeline_event"
    event: str
    transcript: Optional[str] = None
    kind: Optional[str] = None
    message: Optional[str] = None
    is_error: Optional[bool] = None
    results: List[ActionResultModel] = Field(default_factory=list)


class TasksResponse(BaseModel):
    response_type: Literal["tasks"] = "tasks"
    tasks: List[TaskModel]


class ModelsResponse(BaseModel):
    response_type: Literal["models"] = "models"
    models: List[ModelInfoModel]


class DownloadProgressNotification(BaseModel):
    """Download status; ``state`` is progress, complete or failed."""

    response_type: Literal["download_progress"] = "download_progress"
    model: str
    state: Literal["progress", "complete", "failed"]
    downloaded: int = 0
    total: int = 0
    message: Optional[str] = None


DaemonResponse = Annotated[
    Union[
        AckResponse,
        StatusResponse,
        ErrorResponse,
        StateNotification,
        PipelineEventNotification,
        TasksResponse,
        ModelsResponse,
        DownloadProgressNotification,
    ],
    Field(discriminator="response_type"),
]


class ResponseWrapper(RootModel[DaemonResponse]):
    """Wrapper model for serializing outgoing responses."""

    root: DaemonResponse

    def model_dump_json(self, **kwargs) -> str:
        """Serialize the wrapped response directly."""
        return self.root.model_dump_json(**kwargs)

    @classmethod
    def from_json(cls, json_data: str) -> "ResponseWrapper":
        """Parse a response line as a client would.

        Raises:
            ValueError: If the line isn't JSON or has no known response_type.
        """
        try:
            data = json.loads(json_data)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON: {e}")
        if not isinstance(data, dict) or "response_type" not in data:
            raise ValueError("Missing response_type field")
        return cls.model_validate(data)
