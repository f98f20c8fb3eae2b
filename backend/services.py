"""
services.py: Gemini CLI execution pipeline

Pipeline:
1) Flatten the conversation into one prompt and build the CLI argv
2) Wait for a free slot in the admission queue (FIFO)
3) Spawn the CLI under that slot with a watchdog armed
4) Either aggregate stdout/stderr into one result (buffered) or relay stdout
   line by line as SSE frames (streaming)

Notes
- The slot goes back to the queue exactly once, when the process terminates
- Streaming flushes a trailing partial line when the process ends
- stderr is never forwarded to the caller; it goes to the server log
"""
from __future__ import annotations

import asyncio
import codecs
import json
import shlex
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Tuple

from admission import AdmissionQueue
from logging_utils import jlog, jwarn
from models import ErrorKind, GenerationResult, HealthResult
from process import OutputChunk, ProcessHandle, ProcessManager, ProcessState

ROLE_LABELS = {
    "system": "System Instruction",
    "user": "User",
    "assistant": "Model",
}

DisconnectCheck = Callable[[], Awaitable[bool]]

# ----------------------------- SSE helpers -----------------------------

def sse(event: Optional[str], data: str) -> str:
    head = f"event: {event}\n" if event else ""
    return head + f"data: {data}\n\n"

SSE_DONE = sse("done", "[DONE]")
SSE_KEEPALIVE = ": keep-alive\n\n"

def sse_error(message: str) -> str:
    return sse("error", json.dumps({"message": message}, ensure_ascii=False))

# ----------------------------- Argument building -----------------------------

def _field(msg: Any, name: str) -> Any:
    if isinstance(msg, dict):
        return msg.get(name)
    return getattr(msg, name, None)

def build_prompt(messages: Any) -> str:
    if not isinstance(messages, (list, tuple)):
        # legacy callers pass a bare string (or anything printable)
        return str(messages)
    turns = []
    for msg in messages:
        label = ROLE_LABELS.get(_field(msg, "role"), "User")
        turns.append(f"{label}: {_field(msg, 'content')}")
    return "\n\n".join(turns)

def build_args(messages: Any, model: str, stream: bool = False) -> List[str]:
    args = [build_prompt(messages), "-m", model]
    if stream:
        args += ["-o", "stream-json"]
    return args

def split_command(command: str) -> List[str]:
    argv = shlex.split(command)
    if not argv:
        raise ValueError("CLI command is empty")
    return argv

# ----------------------------- Buffered path -----------------------------

async def collect_response(handle: ProcessHandle) -> GenerationResult:
    """Drain a handle and turn its single Termination into a result."""
    if handle.state is ProcessState.SPAWN_FAILED:
        return GenerationResult.failure(ErrorKind.SPAWN_FAILURE, handle.error or "")

    out, err = bytearray(), bytearray()
    term = None
    async for event in handle:
        if isinstance(event, OutputChunk):
            (out if event.stream == "stdout" else err).extend(event.data)
        else:
            term = event

    stderr_text = err.decode("utf-8", errors="replace")
    if term.state is ProcessState.KILLED:
        if term.kill_reason == "timeout":
            return GenerationResult.failure(ErrorKind.TIMEOUT, "Model took too long to respond")
        return GenerationResult.failure(ErrorKind.CLI_ERROR, stderr_text or "process was terminated")
    if term.returncode != 0:
        jwarn("chat.cli_error", pid=handle.pid, returncode=term.returncode, stderr=stderr_text[-2000:])
        return GenerationResult.failure(ErrorKind.CLI_ERROR, stderr_text)
    return GenerationResult.success(out.decode("utf-8", errors="replace").strip())

# ----------------------------- Streaming path -----------------------------

def split_lines(buffer: str) -> Tuple[List[str], str]:
    """Cut complete lines off the buffer; return (stripped non-empty lines, remainder)."""
    lines = []
    boundary = buffer.find("\n")
    while boundary != -1:
        line = buffer[:boundary].strip()
        buffer = buffer[boundary + 1:]
        if line:
            lines.append(line)
        boundary = buffer.find("\n")
    return lines, buffer

async def relay_stream(
    handle: ProcessHandle,
    is_disconnected: Optional[DisconnectCheck] = None,
    keepalive: float = 15.0,
) -> AsyncIterator[str]:
    if handle.state is ProcessState.SPAWN_FAILED:
        yield sse_error(f"Failed to spawn process: {handle.error}")
        return

    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    try:
        while True:
            if is_disconnected is not None and await is_disconnected():
                jlog("stream.client_disconnected", pid=handle.pid)
                return
            try:
                event = await asyncio.wait_for(handle.next_event(), timeout=keepalive)
            except asyncio.TimeoutError:
                yield SSE_KEEPALIVE
                continue

            if isinstance(event, OutputChunk):
                if event.stream == "stderr":
                    jwarn("stream.stderr", pid=handle.pid, text=event.data.decode("utf-8", errors="replace"))
                    continue
                lines, buffer = split_lines(buffer + decoder.decode(event.data))
                for line in lines:
                    yield sse(None, line)
                continue

            # Termination: flush whatever partial line is left, then close
            tail = (buffer + decoder.decode(b"", final=True)).strip()
            if tail:
                yield sse(None, tail)
            jlog("stream.done", pid=handle.pid, state=event.state.value,
                 returncode=event.returncode, kill_reason=event.kill_reason)
            yield SSE_DONE
            return
    finally:
        if handle.kill("client_disconnect"):
            jlog("stream.killed_on_close", pid=handle.pid, error_kind=ErrorKind.CLIENT_DISCONNECT.value)

# ----------------------------- Service -----------------------------

class GeminiService:
    """Admission queue + process manager in front of the Gemini CLI."""

    def __init__(self, cli_command: str, max_concurrent: int, timeout: float,
                 kill_grace: float = 5.0, keepalive: float = 15.0):
        self.command = split_command(cli_command)
        self.timeout = timeout
        self.keepalive = keepalive
        self.queue = AdmissionQueue(max_concurrent)
        self.processes = ProcessManager(self.queue.release, kill_grace=kill_grace)

    async def _start(self, messages: Any, model: str, stream: bool) -> ProcessHandle:
        argv = self.command + build_args(messages, model, stream)
        slot = await self.queue.acquire()
        return await self.processes.spawn(argv, slot, timeout=self.timeout)

    async def run_buffered(self, messages: Any, model: str) -> GenerationResult:
        handle = await self._start(messages, model, stream=False)
        result = await collect_response(handle)
        jlog("chat.finished", pid=handle.pid, ok=result.ok,
             error_kind=result.error_kind.value if result.error_kind else None)
        return result

    async def run_streaming(self, messages: Any, model: str,
                            is_disconnected: Optional[DisconnectCheck] = None) -> AsyncIterator[str]:
        handle = await self._start(messages, model, stream=True)
        relay = relay_stream(handle, is_disconnected, self.keepalive)
        try:
            async for frame in relay:
                yield frame
        finally:
            await relay.aclose()

    async def check_health(self) -> HealthResult:
        """Run `<cli> --version` outside the admission queue."""
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command, "--version",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            jwarn("health.cli_not_found", error=str(e))
            return HealthResult(ok=False, code="CLI_NOT_FOUND", message="Gemini CLI binary is not accessible")
        try:
            out, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return HealthResult(ok=False, code="CLI_ERROR", message="Health check timed out")
        if proc.returncode != 0:
            return HealthResult(ok=False, code="CLI_ERROR",
                                message=f"Health check failed with exit code {proc.returncode}")
        return HealthResult(ok=True, version=out.decode("utf-8", errors="replace").strip())

    async def shutdown(self) -> None:
        await self.processes.shutdown()
