"""
Lifecycle manager for external assistant invocations.

One inbound question maps to one child process. The manager starts it in the
configured project directory, feeds it the prompt, collects its output either
buffered (one final answer) or streamed (text deltas parsed from JSON lines),
enforces a single overall timeout, kills the process when the caller goes away,
and writes exactly one history entry per invocation (cancellation excepted).

Every terminal path goes through `Invocation.settle`, a first-caller-wins latch:
completion, failure, timeout and cancellation can race, but only one of them
ever responds or persists.
"""
from __future__ import annotations

import asyncio
import codecs
import json
import math
import os
import signal
import sqlite3
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Protocol, Sequence

from .observability import get_logger

logger = get_logger(__name__)

NO_OUTPUT_PLACEHOLDER = "(no output)"
SPAWN_FAILED_SUMMARY = "Failed to start assistant process"
TIMEOUT_SUMMARY = "Assistant call timed out"
TIMEOUT_DETAIL = "The assistant process did not exit within the time limit and was killed"
TIMEOUT_ANSWER = f"{TIMEOUT_SUMMARY}: {TIMEOUT_DETAIL}"
READ_CHUNK_BYTES = 64 * 1024
KILL_GRACE_S = 5.0


class InvocationState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class EmptyQuestionError(ValueError):
    """The question is blank; no process is started and nothing is logged."""


class InvocationError(RuntimeError):
    """Terminal failure of one invocation, carrying the user-facing summary and detail."""

    state = InvocationState.FAILED

    def __init__(self, error: str, detail: str = ""):
        super().__init__(f"{error}: {detail}" if detail else error)
        self.error = error
        self.detail = detail

    def to_payload(self) -> dict[str, str]:
        return {"error": self.error, "detail": self.detail}


class SpawnError(InvocationError):
    pass


class AbnormalExitError(InvocationError):
    pass


class InvocationTimeoutError(InvocationError):
    state = InvocationState.TIMED_OUT


class HistorySink(Protocol):
    def append(self, username: str, question: str, answer: str, duration_seconds: int) -> Any:
        ...


class MetricsSink(Protocol):
    def record_invocation(self, duration_s: float, state: str) -> None:
        ...


@dataclass
class Invocation:
    username: str
    question: str
    prompt: str
    started_at: float = field(default_factory=time.monotonic)
    finished_at: float | None = None
    state: InvocationState = InvocationState.RUNNING
    pid: int | None = None
    exit_code: int | None = None
    signal_name: str | None = None
    stdout: str = ""
    stderr: str = ""
    answer_fragments: list[str] = field(default_factory=list)

    def settle(self, state: InvocationState) -> bool:
        """Moves RUNNING to `state`. Returns False if another path already settled."""
        if state is InvocationState.RUNNING:
            raise ValueError("settle() needs a terminal state")
        if self.state is not InvocationState.RUNNING:
            return False
        self.state = state
        self.finished_at = time.monotonic()
        return True

    @property
    def settled(self) -> bool:
        return self.state is not InvocationState.RUNNING

    @property
    def elapsed_s(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return max(0.0, end - self.started_at)

    @property
    def duration_seconds(self) -> int:
        # Half-up rounding of elapsed wall-clock seconds.
        return int(math.floor(self.elapsed_s + 0.5))

    @property
    def full_answer(self) -> str:
        return "".join(self.answer_fragments)


@dataclass(frozen=True)
class InvocationResult:
    answer: str
    stderr: str
    duration_seconds: int

    def to_payload(self) -> dict[str, str]:
        return {"answer": self.answer, "stderr": self.stderr}


@dataclass(frozen=True)
class StreamEvent:
    kind: str  # "delta", "done" or "error"
    data: dict[str, Any]

    @property
    def terminal(self) -> bool:
        return self.kind in {"done", "error"}

    def to_sse(self) -> str:
        payload = {"type": self.kind, **self.data}
        return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


class _TextBuffer:
    """Accumulates decoded text from a byte stream; split UTF-8 sequences wait for their tail."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._parts: list[str] = []

    def feed(self, chunk: bytes) -> str:
        text = self._decoder.decode(chunk)
        if text:
            self._parts.append(text)
        return text

    def finish(self) -> str:
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._parts.append(tail)
        return tail

    @property
    def text(self) -> str:
        return "".join(self._parts)


class LineAssembler:
    """Splits a byte stream into complete lines, holding back the unterminated tail for the next chunk."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._pending += self._decoder.decode(chunk)
        if "\n" not in self._pending:
            return []
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        """Returns the held-back remainder once the stream has ended."""
        rest = (self._pending + self._decoder.decode(b"", final=True)).rstrip("\r")
        self._pending = ""
        return [rest] if rest.strip() else []


def extract_text_delta(event: Any) -> str | None:
    """Returns the text fragment of a text-delta event, with or without the stream_event envelope."""
    if not isinstance(event, dict):
        return None
    if event.get("type") == "stream_event":
        event = event.get("event")
        if not isinstance(event, dict):
            return None
    if event.get("type") != "content_block_delta":
        return None
    delta = event.get("delta")
    if not isinstance(delta, dict) or delta.get("type") != "text_delta":
        return None
    text = delta.get("text")
    if isinstance(text, str) and text:
        return text
    return None


def _describe_returncode(returncode: int) -> tuple[int | None, str | None]:
    """Maps asyncio's returncode to (exit code, signal name); negative means killed by a signal."""
    if returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, f"SIG{-returncode}"


def _abnormal_exit_error(inv: Invocation) -> AbnormalExitError:
    if inv.signal_name:
        summary = f"Assistant process was terminated by signal {inv.signal_name}"
    else:
        summary = f"Assistant exited with non-zero code: {inv.exit_code}"
    detail = inv.stderr or inv.stdout or f"signal={inv.signal_name}"
    return AbnormalExitError(summary, detail)


class InvocationManager:
    """Runs the external assistant once per question, buffered or streaming."""

    def __init__(
        self,
        command: Sequence[str],
        working_dir: str | Path,
        history: HistorySink,
        *,
        timeout_s: float = 300.0,
        prompt_flag: str = "-p",
        stream_args: Sequence[str] = ("--output-format", "stream-json", "--verbose", "--include-partial-messages"),
        metrics: MetricsSink | None = None,
    ):
        if isinstance(command, str):
            command = (command,)
        if not command:
            raise ValueError("assistant command must not be empty")
        self.command = tuple(str(part) for part in command)
        self.working_dir = Path(working_dir)
        self.history = history
        self.timeout_s = float(timeout_s)
        self.prompt_flag = str(prompt_flag)
        self.stream_args = tuple(str(arg) for arg in stream_args)
        self.metrics = metrics
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Invocation setup
    # ------------------------------------------------------------------

    def open_invocation(self, username: str, question: str, prompt: str | None = None) -> Invocation:
        if not str(question or "").strip():
            raise EmptyQuestionError("Question must not be empty")
        return Invocation(username=str(username), question=str(question), prompt=str(prompt or question))

    def buffered_argv(self) -> list[str]:
        return [*self.command, self.prompt_flag]

    def stream_argv(self, prompt: str) -> list[str]:
        return [*self.command, self.prompt_flag, prompt, *self.stream_args]

    def _environment(self) -> dict[str, str]:
        return {**os.environ, "NO_COLOR": "1"}

    async def _spawn(self, argv: list[str], *, stdin: int) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(self.working_dir),
            env=self._environment(),
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=(os.name == "posix"),
        )

    def _remaining_s(self, inv: Invocation) -> float:
        return self.timeout_s - (time.monotonic() - inv.started_at)

    # ------------------------------------------------------------------
    # Settling and persistence
    # ------------------------------------------------------------------

    async def _conclude(self, inv: Invocation, state: InvocationState, answer: str | None) -> bool:
        """Settles `inv` and persists `answer`; a no-op returning False when already settled."""
        if not inv.settle(state):
            logger.info("invocation_already_settled", pid=inv.pid, state=inv.state.value, attempted=state.value)
            return False
        logger.info(
            "invocation_settled",
            username=inv.username,
            pid=inv.pid,
            state=state.value,
            exit_code=inv.exit_code,
            signal=inv.signal_name,
            duration_seconds=inv.duration_seconds,
        )
        if self.metrics is not None:
            await asyncio.to_thread(self.metrics.record_invocation, inv.elapsed_s, state.value)
        if answer is not None:
            await self._record(inv, answer)
        return True

    async def _record(self, inv: Invocation, answer: str):
        try:
            await asyncio.to_thread(
                self.history.append,
                inv.username,
                inv.question,
                answer,
                inv.duration_seconds,
            )
        except (sqlite3.Error, RuntimeError) as exc:
            logger.error("history_write_failed", username=inv.username, error=str(exc))

    async def _fail_spawn(self, inv: Invocation, exc: OSError) -> SpawnError:
        logger.error("assistant_spawn_failed", username=inv.username, cwd=str(self.working_dir), error=str(exc))
        await self._conclude(inv, InvocationState.FAILED, f"Error: {exc}")
        return SpawnError(SPAWN_FAILED_SUMMARY, str(exc))

    # ------------------------------------------------------------------
    # Process plumbing
    # ------------------------------------------------------------------

    async def _pump(self, stream: asyncio.StreamReader, buffer: _TextBuffer, inv: Invocation, channel: str):
        while True:
            chunk = await stream.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            text = buffer.feed(chunk)
            logger.debug("assistant_output_chunk", pid=inv.pid, channel=channel, text=text)
        buffer.finish()

    async def _feed_stdin(self, proc: asyncio.subprocess.Process, prompt: str):
        if proc.stdin is None:
            return
        try:
            proc.stdin.write((prompt + "\n").encode("utf-8"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning("assistant_stdin_closed_early", pid=proc.pid, error=str(exc))
        finally:
            proc.stdin.close()

    def _force_kill(self, proc: asyncio.subprocess.Process):
        if proc.returncode is not None:
            return
        logger.warning("assistant_process_killed", pid=proc.pid)
        try:
            if os.name == "posix":
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except ProcessLookupError:
            pass

    async def _reap(self, inv: Invocation, proc: asyncio.subprocess.Process, readers: list[asyncio.Task]):
        for task in readers:
            task.cancel()
        await asyncio.gather(*readers, return_exceptions=True)
        try:
            returncode = await asyncio.wait_for(proc.wait(), KILL_GRACE_S)
        except asyncio.TimeoutError:
            logger.warning("assistant_process_not_reaped", pid=proc.pid)
            return
        inv.exit_code, inv.signal_name = _describe_returncode(returncode)

    def _reap_in_background(self, inv: Invocation, proc: asyncio.subprocess.Process, readers: list[asyncio.Task]):
        task = asyncio.ensure_future(self._reap(inv, proc, readers))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _cancel(self, inv: Invocation, proc: asyncio.subprocess.Process, readers: list[asyncio.Task]):
        """Caller went away: kill the process, record nothing."""
        if inv.settled:
            return
        self._force_kill(proc)
        try:
            await self._conclude(inv, InvocationState.CANCELLED, None)
            await self._reap(inv, proc, readers)
        except asyncio.CancelledError:
            self._reap_in_background(inv, proc, readers)
            raise

    # ------------------------------------------------------------------
    # Buffered mode
    # ------------------------------------------------------------------

    async def ask(self, username: str, question: str, prompt: str | None = None) -> InvocationResult:
        return await self.run_buffered(self.open_invocation(username, question, prompt))

    async def run_buffered(self, inv: Invocation) -> InvocationResult:
        """Feeds the prompt over stdin and returns the full answer once the process exits."""
        argv = self.buffered_argv()
        logger.info(
            "invocation_started",
            mode="buffered",
            username=inv.username,
            cwd=str(self.working_dir),
            argv=argv,
            question=inv.question,
        )
        try:
            proc = await self._spawn(argv, stdin=asyncio.subprocess.PIPE)
        except OSError as exc:
            raise await self._fail_spawn(inv, exc) from exc
        inv.pid = proc.pid
        logger.info("assistant_process_started", pid=proc.pid)

        stdout_buf, stderr_buf = _TextBuffer(), _TextBuffer()
        readers = [
            asyncio.create_task(self._pump(proc.stdout, stdout_buf, inv, "stdout")),
            asyncio.create_task(self._pump(proc.stderr, stderr_buf, inv, "stderr")),
        ]

        async def _drive() -> int:
            await self._feed_stdin(proc, inv.prompt)
            await asyncio.gather(*readers)
            return await proc.wait()

        try:
            try:
                returncode = await asyncio.wait_for(_drive(), timeout=max(0.0, self._remaining_s(inv)))
            except asyncio.TimeoutError:
                self._force_kill(proc)
                await self._conclude(inv, InvocationState.TIMED_OUT, TIMEOUT_ANSWER)
                await self._reap(inv, proc, readers)
                inv.stdout, inv.stderr = stdout_buf.text, stderr_buf.text
                raise InvocationTimeoutError(TIMEOUT_SUMMARY, TIMEOUT_DETAIL) from None
        finally:
            if not inv.settled and proc.returncode is None:
                await self._cancel(inv, proc, readers)

        inv.exit_code, inv.signal_name = _describe_returncode(returncode)
        inv.stdout, inv.stderr = stdout_buf.text, stderr_buf.text
        logger.info("assistant_process_closed", pid=proc.pid, exit_code=inv.exit_code, signal=inv.signal_name)

        if returncode != 0:
            error = _abnormal_exit_error(inv)
            logger.error("assistant_abnormal_exit", pid=proc.pid, error=error.error, detail=error.detail)
            await self._conclude(inv, InvocationState.FAILED, f"{error.error}\n{error.detail}")
            raise error

        answer = inv.stdout or NO_OUTPUT_PLACEHOLDER
        await self._conclude(inv, InvocationState.COMPLETED, answer)
        return InvocationResult(answer=answer, stderr=inv.stderr, duration_seconds=inv.duration_seconds)

    # ------------------------------------------------------------------
    # Streaming mode
    # ------------------------------------------------------------------

    def _parse_stream_line(self, inv: Invocation, line: str) -> str | None:
        if not line.strip():
            return None
        try:
            event = json.loads(line)
        except json.JSONDecodeError as exc:
            logger.warning("stream_line_unparseable", pid=inv.pid, error=str(exc), line=line[:200])
            return None
        fragment = extract_text_delta(event)
        if fragment is None:
            event_type = event.get("type") if isinstance(event, dict) else type(event).__name__
            logger.debug("stream_event_ignored", pid=inv.pid, event_type=event_type)
        return fragment

    async def stream(self, inv: Invocation) -> AsyncIterator[StreamEvent]:
        """
        Yields text deltas as the assistant produces them, then exactly one
        terminal "done" or "error" event. Closing the iterator early (client
        disconnect) kills the process and writes no history entry.
        """
        argv = self.stream_argv(inv.prompt)
        logger.info(
            "invocation_started",
            mode="stream",
            username=inv.username,
            cwd=str(self.working_dir),
            argv=[*self.command, self.prompt_flag, "<prompt>", *self.stream_args],
            question=inv.question,
        )
        try:
            proc = await self._spawn(argv, stdin=asyncio.subprocess.DEVNULL)
        except OSError as exc:
            error = await self._fail_spawn(inv, exc)
            yield StreamEvent("error", error.to_payload())
            return
        inv.pid = proc.pid
        logger.info("assistant_process_started", pid=proc.pid)

        stderr_buf = _TextBuffer()
        readers = [asyncio.create_task(self._pump(proc.stderr, stderr_buf, inv, "stderr"))]
        assembler = LineAssembler()
        raw_lines: list[str] = []

        try:
            try:
                while True:
                    remaining = self._remaining_s(inv)
                    if remaining <= 0:
                        raise asyncio.TimeoutError
                    chunk = await asyncio.wait_for(proc.stdout.read(READ_CHUNK_BYTES), remaining)
                    lines = assembler.feed(chunk) if chunk else assembler.flush()
                    for line in lines:
                        raw_lines.append(line)
                        fragment = self._parse_stream_line(inv, line)
                        if fragment is None:
                            continue
                        inv.answer_fragments.append(fragment)
                        yield StreamEvent("delta", {"text": fragment})
                    if not chunk:
                        break

                async def _finish() -> int:
                    await asyncio.gather(*readers)
                    return await proc.wait()

                returncode = await asyncio.wait_for(_finish(), max(0.0, self._remaining_s(inv)))
            except asyncio.TimeoutError:
                self._force_kill(proc)
                settled = await self._conclude(inv, InvocationState.TIMED_OUT, TIMEOUT_ANSWER)
                await self._reap(inv, proc, readers)
                inv.stdout, inv.stderr = "\n".join(raw_lines), stderr_buf.text
                if settled:
                    yield StreamEvent("error", InvocationTimeoutError(TIMEOUT_SUMMARY, TIMEOUT_DETAIL).to_payload())
                return

            inv.exit_code, inv.signal_name = _describe_returncode(returncode)
            inv.stdout, inv.stderr = "\n".join(raw_lines), stderr_buf.text
            logger.info("assistant_process_closed", pid=proc.pid, exit_code=inv.exit_code, signal=inv.signal_name)

            if returncode != 0:
                error = _abnormal_exit_error(inv)
                logger.error("assistant_abnormal_exit", pid=proc.pid, error=error.error, detail=error.detail)
                if await self._conclude(inv, InvocationState.FAILED, f"{error.error}\n{error.detail}"):
                    yield StreamEvent("error", error.to_payload())
                return

            answer = inv.full_answer or NO_OUTPUT_PLACEHOLDER
            if await self._conclude(inv, InvocationState.COMPLETED, answer):
                yield StreamEvent("done", {"duration": inv.duration_seconds})
        finally:
            if not inv.settled:
                await self._cancel(inv, proc, readers)
