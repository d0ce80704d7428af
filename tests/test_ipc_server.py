"""Tests for IPC server."""

import asyncio
import json
import threading
from pathlib import Path
from unittest.mock import Mock, patch

import pytest
import pytest_asyncio

from taskvoiced.actions import TaskAction
from taskvoiced.ipc_server import IPCServer, event_to_notification
from taskvoiced.model_downloader import DownloadComplete, DownloadFailed, DownloadProgress
from taskvoiced.models import ModelSize, ModelStore
from taskvoiced.pipelines import Failed, FailureKind, Finished, TasksResolved, TranscriptReady
from taskvoiced.reconciler import ReconcileResult
from taskvoiced.state import DaemonStateEnum, DaemonStateManager
from taskvoiced.task_store import TaskStore


@pytest.fixture
def state_manager():
    return DaemonStateManager()


@pytest.fixture
def socket_path(tmp_path):
    return tmp_path / "test.sock"


@pytest.fixture
def shutdown_event():
    return asyncio.Event()


@pytest.fixture
def orchestrator():
    orchestrator = Mock()
    orchestrator.is_recording = False
    orchestrator.is_processing = False
    orchestrator.model_size = ModelSize.BASE
    orchestrator.level.return_value = 0.0
    orchestrator.poll_events.return_value = []
    orchestrator.start_recording.return_value = True
    orchestrator.preload_model.return_value = True
    return orchestrator


@pytest.fixture
def task_store():
    store = TaskStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def model_store(tmp_path):
    return ModelStore(tmp_path / "models")


@pytest_asyncio.fixture
async def ipc_server(
    socket_path, state_manager, shutdown_event, orchestrator, task_store, model_store
):
    server = IPCServer(
        socket_path, state_manager, shutdown_event, orchestrator, task_store, model_store
    )
    try:
        yield server
    finally:
        if server._server:
            await server.stop()


async def read_message(reader: asyncio.StreamReader) -> dict:
    line = await asyncio.wait_for(reader.readline(), timeout=1.0)
    return json.loads(line.decode())


async def send_command_get_response(socket_path: Path, command: dict) -> dict:
    reader, writer = await asyncio.open_unix_connection(str(socket_path))
    try:
        writer.write((json.dumps(command) + "\n").encode())
        await writer.drain()
        return await read_message(reader)
    finally:
        writer.close()
        await writer.wait_closed()


async def subscribe(socket_path: Path):
    reader, writer = await asyncio.open_unix_connection(str(socket_path))
    writer.write(b'{"command": "subscribe"}\n')
    await writer.drain()
    initial = await read_message(reader)
    assert initial["response_type"] == "state_change"
    return reader, writer


@pytest.mark.asyncio
async def test_server_start_and_stop(ipc_server, socket_path):
    await ipc_server.start()
    assert socket_path.is_socket()

    await ipc_server.stop()
    assert ipc_server._server is None
    assert not socket_path.exists()


@pytest.mark.asyncio
async def test_server_refuses_non_socket_path(ipc_server, socket_path):
    socket_path.touch()
    with pytest.raises(OSError, match="not a socket"):
        await ipc_server.start()


@pytest.mark.asyncio
async def test_status_command(ipc_server, socket_path, state_manager):
    await ipc_server.start()
    state_manager.report_error("Audio too quiet")

    response = await send_command_get_response(socket_path, {"command": "status"})

    assert response == {
        "response_type": "status",
        "status": {
            "state": "Idle",
            "level": 0.0,
            "model": "base",
            "last_error": "Audio too quiet",
        },
    }


@pytest.mark.asyncio
async def test_start_command(ipc_server, socket_path, orchestrator):
    await ipc_server.start()
    response = await send_command_get_response(socket_path, {"command": "start"})
    assert response["response_type"] == "ack"
    orchestrator.start_recording.assert_called_once()


@pytest.mark.asyncio
async def test_start_command_device_error(ipc_server, socket_path, orchestrator, state_manager):
    def fail():
        state_manager.report_error("No default input device")
        return False

    orchestrator.start_recording.side_effect = fail
    await ipc_server.start()

    response = await send_command_get_response(socket_path, {"command": "start"})

    assert response == {"response_type": "error", "message": "No default input device"}
    orchestrator.poll_events.assert_called()


@pytest.mark.asyncio
async def test_start_while_processing(ipc_server, socket_path, orchestrator):
    orchestrator.is_processing = True
    await ipc_server.start()

    response = await send_command_get_response(socket_path, {"command": "start"})

    assert response["response_type"] == "error"
    orchestrator.start_recording.assert_not_called()


@pytest.mark.asyncio
async def test_stop_command(ipc_server, socket_path, orchestrator):
    orchestrator.is_recording = True
    await ipc_server.start()

    response = await send_command_get_response(socket_path, {"command": "stop"})

    assert response["response_type"] == "ack"
    orchestrator.stop_recording.assert_called_once()


@pytest.mark.asyncio
async def test_stop_when_not_recording(ipc_server, socket_path, orchestrator):
    await ipc_server.start()
    response = await send_command_get_response(socket_path, {"command": "stop"})
    assert response == {"response_type": "error", "message": "Not recording"}
    orchestrator.stop_recording.assert_not_called()


@pytest.mark.asyncio
async def test_toggle_switches_between_start_and_stop(ipc_server, socket_path, orchestrator):
    await ipc_server.start()

    await send_command_get_response(socket_path, {"command": "toggle"})
    orchestrator.start_recording.assert_called_once()

    orchestrator.is_recording = True
    await send_command_get_response(socket_path, {"command": "toggle"})
    orchestrator.stop_recording.assert_called_once()


@pytest.mark.asyncio
async def test_shutdown_command(ipc_server, socket_path, shutdown_event):
    await ipc_server.start()
    response = await send_command_get_response(socket_path, {"command": "shutdown"})
    assert response["response_type"] == "ack"
    assert shutdown_event.is_set()


@pytest.mark.asyncio
async def test_invalid_command(ipc_server, socket_path):
    await ipc_server.start()
    response = await send_command_get_response(socket_path, {"command": "dance"})
    assert response["response_type"] == "error"
    assert "Invalid command format" in response["message"]


@pytest.mark.asyncio
async def test_invalid_json(ipc_server, socket_path):
    await ipc_server.start()
    reader, writer = await asyncio.open_unix_connection(str(socket_path))
    try:
        writer.write(b"{not json\n")
        await writer.drain()
        response = await read_message(reader)
    finally:
        writer.close()
        await writer.wait_closed()
    assert response["response_type"] == "error"


@pytest.mark.asyncio
async def test_list_tasks(ipc_server, socket_path, task_store):
    task_store.insert("Buy milk")
    done = task_store.insert("Call mom")
    task_store.set_completed(done.id, True)
    await ipc_server.start()

    response = await send_command_get_response(socket_path, {"command": "list_tasks"})

    assert response["response_type"] == "tasks"
    assert [(t["text"], t["completed"]) for t in response["tasks"]] == [
        ("Buy milk", False),
        ("Call mom", True),
    ]


@pytest.mark.asyncio
async def test_edit_task(ipc_server, socket_path, task_store):
    record = task_store.insert("Buy milk")
    await ipc_server.start()

    response = await send_command_get_response(
        socket_path, {"command": "edit_task", "id": record.id, "text": "  Buy oat milk "}
    )

    assert response["response_type"] == "tasks"
    assert [(t["id"], t["text"]) for t in response["tasks"]] == [(record.id, "Buy oat milk")]
    assert task_store.get(record.id).text == "Buy oat milk"


@pytest.mark.asyncio
async def test_edit_missing_task(ipc_server, socket_path):
    await ipc_server.start()
    response = await send_command_get_response(
        socket_path, {"command": "edit_task", "id": 42, "text": "Anything"}
    )
    assert response == {"response_type": "error", "message": "Task 42 not found"}


@pytest.mark.asyncio
async def test_edit_task_rejects_blank_text(ipc_server, socket_path, task_store):
    record = task_store.insert("Buy milk")
    await ipc_server.start()

    response = await send_command_get_response(
        socket_path, {"command": "edit_task", "id": record.id, "text": "   "}
    )

    assert response["response_type"] == "error"
    assert task_store.get(record.id).text == "Buy milk"


@pytest.mark.asyncio
async def test_list_models(ipc_server, socket_path):
    await ipc_server.start()
    response = await send_command_get_response(socket_path, {"command": "list_models"})

    models = {m["name"]: m for m in response["models"]}
    assert set(models) == {"tiny", "base", "small", "medium", "large"}
    assert models["base"]["selected"] is True
    assert not any(m["installed"] for m in models.values())


@pytest.mark.asyncio
async def test_select_model(ipc_server, socket_path, orchestrator):
    await ipc_server.start()
    response = await send_command_get_response(
        socket_path, {"command": "select_model", "model": "small"}
    )
    assert response["response_type"] == "ack"
    orchestrator.select_model.assert_called_once_with(ModelSize.SMALL)


@pytest.mark.asyncio
async def test_select_unknown_model(ipc_server, socket_path, orchestrator):
    await ipc_server.start()
    response = await send_command_get_response(
        socket_path, {"command": "select_model", "model": "huge"}
    )
    assert response["response_type"] == "error"
    orchestrator.select_model.assert_not_called()


@pytest.mark.asyncio
async def test_delete_model(ipc_server, socket_path, orchestrator):
    await ipc_server.start()
    response = await send_command_get_response(
        socket_path, {"command": "delete_model", "model": "base"}
    )
    assert response["response_type"] == "ack"
    orchestrator.delete_model.assert_called_once_with(ModelSize.BASE)


@pytest.mark.asyncio
async def test_download_broadcasts_progress(ipc_server, socket_path, model_store):
    def fake_download(size, store):
        yield DownloadProgress(0, 100)
        yield DownloadProgress(50, 100)
        yield DownloadComplete(store.path_for(size))

    await ipc_server.start()
    reader, writer = await subscribe(socket_path)
    try:
        with patch("taskvoiced.ipc_server.stream_download", side_effect=fake_download):
            response = await send_command_get_response(
                socket_path, {"command": "download_model", "model": "tiny"}
            )
            assert response["response_type"] == "ack"

            messages = [await read_message(reader) for _ in range(3)]
    finally:
        writer.close()
        await writer.wait_closed()

    assert [m["state"] for m in messages] == ["progress", "progress", "complete"]
    assert messages[1]["downloaded"] == 50
    assert all(m["model"] == "tiny" for m in messages)


@pytest.mark.asyncio
async def test_download_failure_is_broadcast(ipc_server, socket_path):
    def fake_download(size, store):
        yield DownloadFailed("Download error: HTTP 404")

    await ipc_server.start()
    reader, writer = await subscribe(socket_path)
    try:
        with patch("taskvoiced.ipc_server.stream_download", side_effect=fake_download):
            await send_command_get_response(
                socket_path, {"command": "download_model", "model": "base"}
            )
            message = await read_message(reader)
    finally:
        writer.close()
        await writer.wait_closed()

    assert message["state"] == "failed"
    assert "404" in message["message"]


@pytest.mark.asyncio
async def test_subscriber_receives_state_and_pipeline_events(
    ipc_server, socket_path, state_manager
):
    await ipc_server.start()
    reader, writer = await subscribe(socket_path)
    try:
        state_manager.set_state(DaemonStateEnum.RECORDING)
        state_change = await read_message(reader)

        await ipc_server.publish_events([TranscriptReady("buy milk"), Finished()])
        transcript = await read_message(reader)
        finished = await read_message(reader)
    finally:
        writer.close()
        await writer.wait_closed()

    assert state_change["status"]["state"] == "Recording"
    assert transcript == {
        "response_type": "pipeline_event",
        "event": "transcript_ready",
        "transcript": "buy milk",
        "kind": None,
        "message": None,
        "is_error": None,
        "results": [],
    }
    assert finished["event"] == "finished"


def test_tasks_resolved_notification(task_store):
    record = task_store.insert("Buy milk")
    event = TasksResolved(
        actions=(TaskAction.add("Buy milk"), TaskAction.remove("Bread")),
        results=(
            ReconcileResult(TaskAction.add("Buy milk"), record=record),
            ReconcileResult(TaskAction.remove("Bread")),
        ),
    )

    notification = event_to_notification(event)

    assert notification.event == "tasks_resolved"
    assert notification.results[0].action == "add"
    assert notification.results[0].task.id == record.id
    assert notification.results[1].task is None


def test_failed_notification():
    notification = event_to_notification(
        Failed(FailureKind.EMPTY_TRANSCRIPT, "No speech detected.")
    )
    assert notification.kind == "empty_transcript"
    assert notification.is_error is False


@pytest.mark.asyncio
async def test_state_change_from_worker_thread_reaches_subscriber(
    ipc_server, socket_path, state_manager
):
    await ipc_server.start()
    reader, writer = await subscribe(socket_path)
    try:
        await asyncio.to_thread(state_manager.set_state, DaemonStateEnum.PROCESSING)
        state_change = await read_message(reader)
    finally:
        writer.close()
        await writer.wait_closed()

    assert state_change["status"]["state"] == "Processing"


@pytest.mark.asyncio
async def test_events_are_polled_off_the_loop(ipc_server, socket_path, orchestrator):
    polled_in = []

    def poll_events():
        polled_in.append(threading.current_thread())
        return []

    orchestrator.poll_events.side_effect = poll_events
    await ipc_server.start()

    await send_command_get_response(socket_path, {"command": "start"})

    assert polled_in and threading.main_thread() not in polled_in
