"""IPC server implementation using Unix domain sockets."""

import asyncio
import logging
from pathlib import Path
from typing import Dict, Iterable, Optional, Set

from pydantic import ValidationError

from .errors import PersistenceError
from .ipc_models import (
    AckResponse,
    ActionResultModel,
    CommandWrapper,
    DaemonStateModel,
    DeleteModelCommand,
    DownloadModelCommand,
    DownloadProgressNotification,
    EditTaskCommand,
    ErrorResponse,
    ListModelsCommand,
    ListTasksCommand,
    ModelInfoModel,
    ModelsResponse,
    PipelineEventNotification,
    ResponseWrapper,
    SelectModelCommand,
    ShutdownCommand,
    StartCommand,
    StateNotification,
    StatusCommand,
    StatusResponse,
    StopCommand,
    SubscribeCommand,
    TaskModel,
    TasksResponse,
    ToggleCommand,
)
from .model_downloader import DownloadComplete, DownloadProgress, stream_download
from .models import ModelSize, ModelStore
from .pipeline_manager import PipelineOrchestrator
from .pipelines import Failed, Finished, PipelineEvent, TasksResolved, TranscriptReady
from .state import DaemonStateEnum, DaemonStateManager
from .task_store import TaskRecord, TaskStore

logger = logging.getLogger(__name__)

# Size limit for incoming messages (64KB should be plenty for commands)
MAX_MESSAGE_SIZE = 64 * 1024
MESSAGE_TERMINATOR = b"\n"
CLIENT_READ_TIMEOUT_S = 5.0

# Progress notifications are sent when the fraction moves by at least this much
PROGRESS_STEP = 0.01


def _task_model(record: TaskRecord) -> TaskModel:
    return TaskModel(
        id=record.id,
        text=record.text,
        completed=record.completed,
        created_at=record.created_at,
        completed_at=record.completed_at,
    )


def event_to_notification(event: PipelineEvent) -> PipelineEventNotification:
    """Convert a pipeline event into its wire form."""
    if isinstance(event, TranscriptReady):
        return PipelineEventNotification(event="transcript_ready", transcript=event.text)
    if isinstance(event, TasksResolved):
        results = [
            ActionResultModel(
                action=result.action.kind.value,
                text=result.action.text,
                task=_task_model(result.record) if result.record else None,
                error=result.error,
            )
            for result in event.results
        ]
        return PipelineEventNotification(event="tasks_resolved", results=results)
    if isinstance(event, Failed):
        return PipelineEventNotification(
            event="failed",
            kind=event.kind.value,
            message=event.message,
            is_error=event.is_error,
        )
    if isinstance(event, Finished):
        return PipelineEventNotification(event="finished")
    raise TypeError(f"Unknown pipeline event: {event!r}")


class IPCServer:
    """Handles IPC communication over Unix domain socket."""

    def __init__(
        self,
        socket_path: Path,
        state_manager: DaemonStateManager,
        shutdown_event: asyncio.Event,
        orchestrator: PipelineOrchestrator,
        task_store: TaskStore,
        model_store: ModelStore,
    ):
        """Initialize the IPC server.

        Args:
            socket_path: Path to the Unix domain socket
            state_manager: Daemon state manager instance
            shutdown_event: Event to signal daemon shutdown
            orchestrator: Runs recordings through the pipeline
            task_store: Task list served by list_tasks
            model_store: Installed models served by the model commands
        """
        self.socket_path = socket_path
        self.state_manager = state_manager
        self.shutdown_event = shutdown_event
        self.orchestrator = orchestrator
        self.task_store = task_store
        self.model_store = model_store

        self._server: Optional[asyncio.Server] = None
        self._client_tasks: Set[asyncio.Task] = set()
        self._subscribers: Set[asyncio.StreamWriter] = set()
        self._background: Set[asyncio.Task] = set()
        self._downloads: Dict[ModelSize, asyncio.Task] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self.state_manager.add_observer(self._on_state_change)

    def _status_model(self) -> DaemonStateModel:
        state, error = self.state_manager.get_status()
        return DaemonStateModel(
            state=state,
            level=self.orchestrator.level(),
            model=self.orchestrator.model_size.value,
            last_error=error,
        )

    def _spawn(self, coro) -> asyncio.Task:
        """Run a coroutine in the background, keeping a reference until it's done."""
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _on_state_change(self, new_state: DaemonStateEnum, error: Optional[str]) -> None:
        # Events are polled in a worker thread, so this may run off the loop
        if self._loop is None or not self._subscribers:
            return
        notification = ResponseWrapper(root=StateNotification(status=self._status_model()))
        self._loop.call_soon_threadsafe(
            lambda: self._spawn(self._broadcast_notification(notification))
        )

    async def _broadcast_notification(self, notification: ResponseWrapper) -> None:
        """Broadcast a notification to all subscribers."""
        if not self._subscribers:
            return

        data = notification.model_dump_json().encode("utf-8") + MESSAGE_TERMINATOR

        for writer in list(self._subscribers):
            if writer.is_closing():
                self._subscribers.discard(writer)
                continue
            try:
                writer.write(data)
                await writer.drain()
            except Exception as e:
                logger.warning(f"Error broadcasting to subscriber: {e}")
                self._subscribers.discard(writer)

    async def publish_events(self, events: Iterable[PipelineEvent]) -> None:
        """Broadcast polled pipeline events to subscribers."""
        for event in events:
            await self._broadcast_notification(
                ResponseWrapper(root=event_to_notification(event))
            )

    async def _send_response(
        self, writer: asyncio.StreamWriter, response: ResponseWrapper
    ) -> None:
        try:
            response_json = response.model_dump_json()
            writer.write(response_json.encode("utf-8") + MESSAGE_TERMINATOR)
            await writer.drain()
            logger.debug(f"Sent response: {response_json}")
        except Exception as e:
            logger.error(f"Error sending response: {e}")

    async def _send_error(self, writer: asyncio.StreamWriter, message: str) -> None:
        await self._send_response(writer, ResponseWrapper(root=ErrorResponse(message=message)))

    async def _send_ack(self, writer: asyncio.StreamWriter) -> None:
        await self._send_response(writer, ResponseWrapper(root=AckResponse()))

    async def _flush_events(self) -> None:
        # Gate and device failures are queued synchronously; report them now
        events = await asyncio.to_thread(self.orchestrator.poll_events)
        await self.publish_events(events)

    async def _handle_start_command(self, writer: asyncio.StreamWriter) -> None:
        logger.info("Handling Start command")
        if self.orchestrator.is_recording:
            await self._send_error(writer, "Already recording")
            return
        if self.orchestrator.is_processing:
            await self._send_error(writer, "Still processing the previous recording")
            return

        started = self.orchestrator.start_recording()
        await self._flush_events()
        if started:
            await self._send_ack(writer)
        else:
            error = self.state_manager.last_error or "Failed to start recording"
            await self._send_error(writer, error)

    async def _handle_stop_command(self, writer: asyncio.StreamWriter) -> None:
        logger.info("Handling Stop command")
        if not self.orchestrator.is_recording:
            await self._send_error(writer, "Not recording")
            return

        # A rejected recording is still acknowledged; the failure goes out as an event
        self.orchestrator.stop_recording()
        await self._flush_events()
        await self._send_ack(writer)

    async def _handle_toggle_command(self, writer: asyncio.StreamWriter) -> None:
        if self.orchestrator.is_recording:
            await self._handle_stop_command(writer)
        else:
            await self._handle_start_command(writer)

    async def _handle_status_command(self, writer: asyncio.StreamWriter) -> None:
        logger.debug("Handling Status command")
        response = ResponseWrapper(root=StatusResponse(status=self._status_model()))
        await self._send_response(writer, response)

    async def _handle_shutdown_command(self, writer: asyncio.StreamWriter) -> None:
        logger.info("Handling Shutdown command")
        if self.orchestrator.is_recording:
            self.orchestrator.stop_recording()

        await self._send_ack(writer)
        self.shutdown_event.set()

    async def _handle_subscribe_command(self, writer: asyncio.StreamWriter) -> None:
        logger.info("Handling Subscribe command")
        self._subscribers.add(writer)
        notification = ResponseWrapper(root=StateNotification(status=self._status_model()))
        await self._send_response(writer, notification)

    async def _handle_list_tasks_command(self, writer: asyncio.StreamWriter) -> None:
        try:
            records = await asyncio.to_thread(
                self.task_store.list_active_or_recently_completed
            )
        except PersistenceError as e:
            logger.error(f"Failed to list tasks: {e}")
            await self._send_error(writer, str(e))
            return
        tasks = [_task_model(record) for record in records]
        await self._send_response(writer, ResponseWrapper(root=TasksResponse(tasks=tasks)))

    async def _handle_edit_task_command(
        self, writer: asyncio.StreamWriter, command: EditTaskCommand
    ) -> None:
        text = command.text.strip()
        if not text:
            await self._send_error(writer, "Task text cannot be empty")
            return
        try:
            record = await asyncio.to_thread(self.task_store.update_text, command.id, text)
        except PersistenceError as e:
            logger.error(f"Failed to edit task {command.id}: {e}")
            await self._send_error(writer, str(e))
            return
        logger.info(f"Edited task {record.id}")
        response = TasksResponse(tasks=[_task_model(record)])
        await self._send_response(writer, ResponseWrapper(root=response))

    async def _handle_list_models_command(self, writer: asyncio.StreamWriter) -> None:
        selected = self.orchestrator.model_size.value
        models = [
            ModelInfoModel(
                name=info.name,
                size_mb=info.size_mb,
                installed=info.installed,
                selected=info.name == selected,
            )
            for info in self.model_store.list_models()
        ]
        await self._send_response(writer, ResponseWrapper(root=ModelsResponse(models=models)))

    async def _run_download(self, size: ModelSize) -> None:
        """Drive a download in worker threads, broadcasting its progress."""
        events = stream_download(size, self.model_store)
        last_fraction = -1.0
        try:
            while True:
                event = await asyncio.to_thread(next, events, None)
                if event is None:
                    break

                if isinstance(event, DownloadProgress):
                    if event.fraction - last_fraction < PROGRESS_STEP and event.downloaded:
                        continue
                    last_fraction = event.fraction
                    notification = DownloadProgressNotification(
                        model=size.value,
                        state="progress",
                        downloaded=event.downloaded,
                        total=event.total,
                    )
                elif isinstance(event, DownloadComplete):
                    notification = DownloadProgressNotification(model=size.value, state="complete")
                    if size == self.orchestrator.model_size:
                        self._spawn(asyncio.to_thread(self.orchestrator.preload_model))
                else:
                    notification = DownloadProgressNotification(
                        model=size.value, state="failed", message=event.reason
                    )
                await self._broadcast_notification(ResponseWrapper(root=notification))
        finally:
            self._downloads.pop(size, None)
            try:
                events.close()
            except ValueError:
                # Cancelled while a chunk was being fetched in a worker thread
                logger.warning(f"Download of '{size.value}' abandoned mid-transfer")

    async def _handle_download_model_command(
        self, writer: asyncio.StreamWriter, command: DownloadModelCommand
    ) -> None:
        size = command.model
        logger.info(f"Handling Download command for '{size.value}'")
        if size in self._downloads:
            await self._send_error(writer, f"Model '{size.value}' is already downloading")
            return
        self._downloads[size] = self._spawn(self._run_download(size))
        await self._send_ack(writer)

    async def _handle_delete_model_command(
        self, writer: asyncio.StreamWriter, command: DeleteModelCommand
    ) -> None:
        size = command.model
        logger.info(f"Handling Delete command for '{size.value}'")
        if size in self._downloads:
            await self._send_error(writer, f"Model '{size.value}' is downloading")
            return
        if self.orchestrator.is_processing:
            await self._send_error(writer, "Cannot delete a model while processing")
            return
        try:
            await asyncio.to_thread(self.orchestrator.delete_model, size)
        except OSError as e:
            logger.error(f"Failed to delete model '{size.value}': {e}")
            await self._send_error(writer, f"Failed to delete model: {e}")
            return
        await self._send_ack(writer)

    async def _handle_select_model_command(
        self, writer: asyncio.StreamWriter, command: SelectModelCommand
    ) -> None:
        logger.info(f"Handling Select command for '{command.model.value}'")
        self.orchestrator.select_model(command.model)
        self._spawn(asyncio.to_thread(self.orchestrator.preload_model))
        await self._send_ack(writer)

    async def _handle_command(self, writer: asyncio.StreamWriter, message: str) -> bool:
        """Parse and handle a command message.

        Returns:
            True if connection should be kept alive, False to close it
        """
        try:
            command = CommandWrapper.model_validate_json(message).root
            logger.debug(f"Parsed command: {command.command}")

            if isinstance(command, StartCommand):
                await self._handle_start_command(writer)
            elif isinstance(command, StopCommand):
                await self._handle_stop_command(writer)
            elif isinstance(command, ToggleCommand):
                await self._handle_toggle_command(writer)
            elif isinstance(command, StatusCommand):
                await self._handle_status_command(writer)
            elif isinstance(command, ShutdownCommand):
                await self._handle_shutdown_command(writer)
                return False
            elif isinstance(command, SubscribeCommand):
                await self._handle_subscribe_command(writer)
            elif isinstance(command, ListTasksCommand):
                await self._handle_list_tasks_command(writer)
            elif isinstance(command, EditTaskCommand):
                await self._handle_edit_task_command(writer, command)
            elif isinstance(command, ListModelsCommand):
                await self._handle_list_models_command(writer)
            elif isinstance(command, DownloadModelCommand):
                await self._handle_download_model_command(writer, command)
            elif isinstance(command, DeleteModelCommand):
                await self._handle_delete_model_command(writer, command)
            elif isinstance(command, SelectModelCommand):
                await self._handle_select_model_command(writer, command)
            else:
                logger.error(f"Unhandled command type: {type(command)}")
                await self._send_error(writer, "Internal server error")
            return True

        except ValidationError as e:
            logger.error(f"Invalid command format: {e}")
            await self._send_error(writer, f"Invalid command format: {e}")
            return True

        except Exception as e:
            logger.exception("Error handling command")
            await self._send_error(writer, f"Internal error: {e}")
            return True

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = writer.get_extra_info("peername") or "Unknown"
        logger.info(f"Client connected: {peer}")

        task = asyncio.current_task()
        assert task is not None
        self._client_tasks.add(task)

        try:
            while True:
                try:
                    timeout = None if writer in self._subscribers else CLIENT_READ_TIMEOUT_S
                    data = await asyncio.wait_for(
                        reader.readuntil(MESSAGE_TERMINATOR), timeout=timeout
                    )
                    if len(data) > MAX_MESSAGE_SIZE:
                        await self._send_error(writer, "Message too large")
                        break

                    message = data.rstrip(MESSAGE_TERMINATOR).decode("utf-8")
                    logger.debug(f"Received from {peer}: {message}")

                    if not await self._handle_command(writer, message):
                        break

                except asyncio.TimeoutError:
                    logger.warning(f"Timeout reading from client {peer}")
                    break
                except asyncio.IncompleteReadError:
                    logger.info(f"Client disconnected: {peer}")
                    break
                except asyncio.LimitOverrunError:
                    await self._send_error(writer, "Message too large")
                    break
                except ConnectionError as e:
                    logger.warning(f"Connection error with {peer}: {e}")
                    break
                except asyncio.CancelledError:
                    logger.info(f"Client connection cancelled: {peer}")
                    break
                except Exception as e:
                    logger.exception(f"Error handling client {peer}: {e}")
                    break

        finally:
            self._subscribers.discard(writer)
            if not writer.is_closing():
                writer.close()
                try:
                    await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
                except Exception as e:
                    logger.warning(f"Error during connection cleanup: {e}")

            self._client_tasks.discard(task)
            logger.debug(f"Connection closed: {peer}")

    async def start(self) -> None:
        """Start the IPC server."""
        if self._server:
            logger.warning("Server already started")
            return

        if self.socket_path.exists():
            if not self.socket_path.is_socket():
                raise OSError(f"Path exists but is not a socket: {self.socket_path}")
            logger.info(f"Removing existing socket file: {self.socket_path}")
            self.socket_path.unlink()

        try:
            self._loop = asyncio.get_running_loop()
            self.socket_path.parent.mkdir(parents=True, exist_ok=True)
            self._server = await asyncio.start_unix_server(
                self._handle_client,
                path=str(self.socket_path),
                limit=MAX_MESSAGE_SIZE,
            )
            logger.info(f"IPC server listening on {self.socket_path}")
        except Exception as e:
            logger.error(f"Failed to start IPC server: {e}")
            self.socket_path.unlink(missing_ok=True)
            raise

    async def stop(self) -> None:
        """Stop the IPC server."""
        if not self._server:
            logger.warning("Server not running")
            return

        logger.info("Stopping IPC server...")

        for writer in self._subscribers:
            if not writer.is_closing():
                writer.close()
        self._subscribers.clear()

        if self.orchestrator.is_recording:
            self.orchestrator.stop_recording()

        self._server.close()
        await self._server.wait_closed()
        self._server = None
        self._loop = None

        pending = list(self._client_tasks) + list(self._background)
        for task in pending:
            if not task.done():
                task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._client_tasks.clear()
        self._background.clear()

        try:
            self.socket_path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Error removing socket file: {e}")

        logger.info("IPC server stopped")
