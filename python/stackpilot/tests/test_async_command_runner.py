"""Tests for the subprocess helpers."""

import asyncio

import pytest

from stackpilot.utils.abort_signal import AbortSignal, OperationAborted
from stackpilot.utils.async_command_runner import (
    CommandError,
    run_command,
    stream_command,
)


@pytest.mark.asyncio
async def test_run_command_returns_stdout():
    out = await run_command(["sh", "-c", "echo hello"], retries=1)
    assert out == "hello"


@pytest.mark.asyncio
async def test_run_command_passes_env_and_input(tmp_path):
    out = await run_command(
        ["sh", "-c", 'read line; echo "$GREETING $line"; pwd'],
        env={"GREETING": "hi"},
        input_data="there\n",
        cwd=str(tmp_path),
        retries=1,
    )
    first, second = out.splitlines()
    assert first == "hi there"
    assert second.endswith(tmp_path.name)


@pytest.mark.asyncio
async def test_run_command_hides_details_when_sensitive():
    with pytest.raises(CommandError) as exc_info:
        await run_command(["sh", "-c", "echo secret >&2; exit 3"], retries=1)
    assert exc_info.value.return_code == 3
    assert "secret" not in str(exc_info.value)


@pytest.mark.asyncio
async def test_run_command_shows_details_when_not_sensitive():
    with pytest.raises(CommandError) as exc_info:
        await run_command(
            ["sh", "-c", "echo visible >&2; exit 2"], sensitive=False, retries=1
        )
    assert "visible" in str(exc_info.value)
    assert "return code 2" in str(exc_info.value)


@pytest.mark.asyncio
async def test_error_parser_shortens_the_message():
    def parser(stderr):
        return "quota exceeded" if "429" in stderr else None

    with pytest.raises(CommandError, match="^quota exceeded$"):
        await run_command(
            ["sh", "-c", "echo 'HTTP 429' >&2; exit 1"],
            retries=1,
            error_parser=parser,
        )


@pytest.mark.asyncio
async def test_run_command_retries(tmp_path):
    marker = tmp_path / "attempts"
    script = f'echo x >> "{marker}"; [ $(wc -l < "{marker}") -ge 2 ]'

    await run_command(["sh", "-c", script], retries=3, retry_delay=0)

    assert len(marker.read_text().splitlines()) == 2


@pytest.mark.asyncio
async def test_stream_command_forwards_lines_in_order():
    out, err = [], []
    code = await stream_command(
        ["sh", "-c", "echo one; echo two; echo oops >&2"],
        on_stdout=out.append,
        on_stderr=err.append,
    )
    assert code == 0
    assert out == ["one", "two"]
    assert err == ["oops"]


@pytest.mark.asyncio
async def test_stream_command_accepts_extra_return_codes():
    lines = []
    code = await stream_command(
        ["sh", "-c", "echo partial; exit 2"],
        on_stdout=lines.append,
        successful_return_codes=(0, 2),
    )
    assert code == 2
    assert lines == ["partial"]


@pytest.mark.asyncio
async def test_stream_command_failure_keeps_stderr():
    with pytest.raises(CommandError) as exc_info:
        await stream_command(
            ["sh", "-c", "echo broken >&2; exit 1"], on_stdout=lambda line: None
        )
    assert exc_info.value.return_code == 1
    assert "broken" in str(exc_info.value)


@pytest.mark.asyncio
async def test_abort_kills_a_streaming_process():
    abort_signal = AbortSignal()
    lines = []
    running = asyncio.ensure_future(
        stream_command(
            ["sh", "-c", "echo started; exec sleep 30"],
            on_stdout=lines.append,
            abort_signal=abort_signal,
        )
    )
    await asyncio.sleep(0.2)
    abort_signal.abort("stop now")

    with pytest.raises(OperationAborted, match="stop now"):
        await asyncio.wait_for(running, timeout=5)
    assert lines == ["started"]


@pytest.mark.asyncio
async def test_aborts_are_not_retried(tmp_path):
    abort_signal = AbortSignal()
    abort_signal.abort()
    marker = tmp_path / "ran"

    with pytest.raises(OperationAborted):
        await run_command(
            ["sh", "-c", f'touch "{marker}"'],
            retries=3,
            retry_delay=0,
            abort_signal=abort_signal,
        )
    assert not marker.exists()


@pytest.mark.asyncio
async def test_failing_callback_kills_the_process(tmp_path):
    marker = tmp_path / "late"

    def on_stdout(line):
        raise RuntimeError(f"cannot handle {line}")

    with pytest.raises(RuntimeError, match="cannot handle first"):
        await stream_command(
            ["sh", "-c", f'echo first; sleep 1; echo late > "{marker}"'],
            on_stdout=on_stdout,
            abort_signal=AbortSignal(),
        )

    await asyncio.sleep(1.5)
    assert not marker.exists()


@pytest.mark.asyncio
async def test_failing_callback_kills_the_process_without_a_signal(tmp_path):
    marker = tmp_path / "late"
    seen = []

    def on_stderr(line):
        seen.append(line)
        raise ValueError("bad line")

    with pytest.raises(ValueError):
        await stream_command(
            ["sh", "-c", f'echo oops >&2; sleep 1; echo late > "{marker}"'],
            on_stdout=lambda line: None,
            on_stderr=on_stderr,
        )

    await asyncio.sleep(1.5)
    assert seen == ["oops"]
    assert not marker.exists()
