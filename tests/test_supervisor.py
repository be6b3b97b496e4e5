"""Tests for the recognizer process supervisor."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from speechcmd.config import AppConfig, AudioConfig, WhisperConfig
from speechcmd.supervisor import ProcessSupervisor, build_command


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        audio=AudioConfig(sample_rate=48000, channels=2),
        whisper=WhisperConfig(model_dir=tmp_path, model_file="ggml-tiny.bin"),
    )


def test_build_command_stdin(config, tmp_path):
    """Test the argument list for stdin input."""
    command = build_command(config, "pipe:0")

    assert command[0] == "ffmpeg"
    assert "-nostdin" not in command
    assert command[command.index("-f") + 1] == "s16le"
    assert command[command.index("-ar") + 1] == "48000"
    assert command[command.index("-ac") + 1] == "2"
    assert command[command.index("-i") + 1] == "pipe:0"
    assert "-vn" in command
    assert command[-3:] == ["-f", "null", "-"]

    whisper_filter = command[command.index("-af") + 1]
    assert whisper_filter.startswith("whisper=model=")
    assert "ggml-tiny.bin" in whisper_filter
    assert ":language=en" in whisper_filter
    assert ":queue=3" in whisper_filter
    assert ":destination=-" in whisper_filter
    assert whisper_filter.endswith(":format=json")


def test_build_command_fifo_input(config):
    """Test a FIFO path is passed as the input and stdin is disabled."""
    command = build_command(config, "/run/user/1000/speechcmd/audio.pipe")

    assert "-nostdin" in command
    assert command[command.index("-i") + 1] == "/run/user/1000/speechcmd/audio.pipe"


def test_build_command_escapes_model_path():
    """Test filter separators in the model path are escaped."""
    config = AppConfig(whisper=WhisperConfig(model_dir=Path("C:/models")))
    command = build_command(config, "pipe:0")
    whisper_filter = command[command.index("-af") + 1]

    assert "model=C\\:/models/Whisper/ggml-medium.en.bin" in whisper_filter


@pytest.mark.asyncio
async def test_start_wires_stdout_lines(config, fake_process_factory, eventually):
    """Test stdout lines reach the callback and blank lines are skipped."""
    process = fake_process_factory()
    lines = []
    supervisor = ProcessSupervisor(config, lines.append)

    with patch(
        "speechcmd.supervisor.asyncio.create_subprocess_exec",
        AsyncMock(return_value=process),
    ) as mock_exec:
        handle = await supervisor.start("pipe:0")

    assert handle.pid == 4321
    assert supervisor.is_alive
    args = mock_exec.call_args.args
    assert args[0] == "ffmpeg"
    assert "pipe:0" in args

    process.emit('{"text":"one"}')
    process.emit("")
    process.emit('{"text":"two"}')

    assert await eventually(lambda: len(lines) == 2)
    assert lines == ['{"text":"one"}', '{"text":"two"}']

    await supervisor.stop(grace_period=0.5)


@pytest.mark.asyncio
async def test_stderr_goes_to_its_own_callback(config, fake_process_factory, eventually):
    """Test stderr lines are kept apart from stdout."""
    process = fake_process_factory()
    stdout_lines, stderr_lines = [], []
    supervisor = ProcessSupervisor(config, stdout_lines.append, stderr_lines.append)

    with patch(
        "speechcmd.supervisor.asyncio.create_subprocess_exec",
        AsyncMock(return_value=process),
    ):
        await supervisor.start("pipe:0")

    process.stderr.feed_data(b"[Parsed_whisper_0 @ 0x1] loading model\n")

    assert await eventually(lambda: len(stderr_lines) == 1)
    assert stdout_lines == []

    await supervisor.stop(grace_period=0.5)


@pytest.mark.asyncio
async def test_callback_error_does_not_stop_reader(config, fake_process_factory, eventually):
    """Test a raising callback is logged and later lines still arrive."""
    process = fake_process_factory()
    seen = []

    def callback(line):
        seen.append(line)
        if line == "bad":
            raise ValueError("boom")

    supervisor = ProcessSupervisor(config, callback)
    with patch(
        "speechcmd.supervisor.asyncio.create_subprocess_exec",
        AsyncMock(return_value=process),
    ):
        await supervisor.start("pipe:0")

    process.emit("bad")
    process.emit("good")

    assert await eventually(lambda: seen == ["bad", "good"])
    await supervisor.stop(grace_period=0.5)


@pytest.mark.asyncio
async def test_oversized_line_is_skipped(config, fake_process_factory, eventually):
    """Test a line over the reader limit is dropped and reading continues."""
    process = fake_process_factory()
    lines = []
    supervisor = ProcessSupervisor(config, lines.append)
    with patch(
        "speechcmd.supervisor.asyncio.create_subprocess_exec",
        AsyncMock(return_value=process),
    ):
        await supervisor.start("pipe:0")

    # Past the 64 KiB default StreamReader limit
    process.stdout.feed_data(b"x" * 70000 + b"\n")
    process.emit('{"text":"one"}')

    assert await eventually(lambda: lines == ['{"text":"one"}'])
    await supervisor.stop(grace_period=0.5)


@pytest.mark.asyncio
async def test_start_twice_reuses_live_process(config, fake_process_factory):
    """Test a second start does not spawn another process."""
    process = fake_process_factory()
    supervisor = ProcessSupervisor(config, MagicMock())

    with patch(
        "speechcmd.supervisor.asyncio.create_subprocess_exec",
        AsyncMock(return_value=process),
    ) as mock_exec:
        first = await supervisor.start("pipe:0")
        second = await supervisor.start("pipe:0")

    assert first is second
    assert mock_exec.await_count == 1
    await supervisor.stop(grace_period=0.5)


@pytest.mark.asyncio
async def test_start_missing_binary_raises(config):
    """Test launch errors propagate to the caller."""
    supervisor = ProcessSupervisor(config, MagicMock())

    with patch(
        "speechcmd.supervisor.asyncio.create_subprocess_exec",
        AsyncMock(side_effect=FileNotFoundError("ffmpeg")),
    ):
        with pytest.raises(FileNotFoundError):
            await supervisor.start("pipe:0")

    assert supervisor.handle is None
    assert not supervisor.is_alive


@pytest.mark.asyncio
async def test_exit_is_observed(config, fake_process_factory, eventually):
    """Test the handle is marked not running once the process exits."""
    process = fake_process_factory()
    supervisor = ProcessSupervisor(config, MagicMock())

    with patch(
        "speechcmd.supervisor.asyncio.create_subprocess_exec",
        AsyncMock(return_value=process),
    ):
        handle = await supervisor.start("pipe:0")

    process.exit(1)

    assert await eventually(lambda: not handle.running)
    assert handle.returncode == 1
    assert not supervisor.is_alive
    await supervisor.stop(grace_period=0.5)


@pytest.mark.asyncio
async def test_stop_natural_exit(config, fake_process_factory):
    """Test closing stdin is enough when the process exits on EOF."""
    process = fake_process_factory()
    supervisor = ProcessSupervisor(config, MagicMock())

    with patch(
        "speechcmd.supervisor.asyncio.create_subprocess_exec",
        AsyncMock(return_value=process),
    ):
        handle = await supervisor.start("pipe:0")

    errors = await supervisor.stop(grace_period=0.5)

    assert errors == []
    process.stdin.close.assert_called_once()
    process.terminate.assert_not_called()
    process.kill.assert_not_called()
    assert handle.running is False
    assert handle.returncode == 0
    assert all(task.done() for task in handle.tasks)
    assert supervisor.handle is None


@pytest.mark.asyncio
async def test_stop_escalates_to_kill(config, fake_process_factory):
    """Test terminate then kill when the process ignores EOF and SIGTERM."""
    process = fake_process_factory(exit_on_stdin_close=False)
    supervisor = ProcessSupervisor(config, MagicMock())

    with patch(
        "speechcmd.supervisor.asyncio.create_subprocess_exec",
        AsyncMock(return_value=process),
    ):
        await supervisor.start("pipe:0")

    with patch("speechcmd.supervisor.TERMINATE_TIMEOUT_S", 0.01):
        errors = await supervisor.stop(grace_period=0.01)

    assert errors == []
    process.terminate.assert_called_once()
    process.kill.assert_called_once()
    assert process.returncode == -9


@pytest.mark.asyncio
async def test_stop_terminate_is_enough(config, fake_process_factory):
    """Test kill is skipped when SIGTERM ends the process."""
    process = fake_process_factory(exit_on_stdin_close=False)
    process.terminate.side_effect = lambda: process.exit(-15)
    supervisor = ProcessSupervisor(config, MagicMock())

    with patch(
        "speechcmd.supervisor.asyncio.create_subprocess_exec",
        AsyncMock(return_value=process),
    ):
        await supervisor.start("pipe:0")

    await supervisor.stop(grace_period=0.01)

    process.terminate.assert_called_once()
    process.kill.assert_not_called()


@pytest.mark.asyncio
async def test_stop_collects_step_errors(config, fake_process_factory):
    """Test a failing step is reported and later steps still run."""
    process = fake_process_factory(exit_on_stdin_close=False)
    process.stdin.close.side_effect = RuntimeError("stdin gone")
    process.terminate.side_effect = lambda: process.exit(-15)
    supervisor = ProcessSupervisor(config, MagicMock())

    with patch(
        "speechcmd.supervisor.asyncio.create_subprocess_exec",
        AsyncMock(return_value=process),
    ):
        await supervisor.start("pipe:0")

    errors = await supervisor.stop(grace_period=0.01)

    assert len(errors) == 1
    assert "stdin gone" in errors[0]
    process.terminate.assert_called_once()


@pytest.mark.asyncio
async def test_stop_is_idempotent(config, fake_process_factory):
    """Test stopping twice, and stopping before start, are no-ops."""
    supervisor = ProcessSupervisor(config, MagicMock())
    assert await supervisor.stop(grace_period=0.1) == []

    process = fake_process_factory()
    with patch(
        "speechcmd.supervisor.asyncio.create_subprocess_exec",
        AsyncMock(return_value=process),
    ):
        await supervisor.start("pipe:0")

    await supervisor.stop(grace_period=0.5)
    assert await supervisor.stop(grace_period=0.5) == []
    process.stdin.close.assert_called_once()
