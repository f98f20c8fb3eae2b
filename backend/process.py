"""
Spawning and supervision of CLI child processes.

Every ProcessHandle owns one admission Slot. Termination (exit, kill or spawn
failure) is committed exactly once; the first commit releases the slot, cancels
the watchdog and publishes a Termination message. Later commits are discarded.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Set, Union

from admission import Slot
from logging_utils import jlog, jwarn

READ_CHUNK = 4096


class ProcessState(str, Enum):
    SPAWNED = "spawned"
    RUNNING = "running"
    EXITED = "exited"
    KILLED = "killed"
    SPAWN_FAILED = "spawn-failed"


TERMINAL = {ProcessState.EXITED, ProcessState.KILLED, ProcessState.SPAWN_FAILED}

_TRANSITIONS = {
    ProcessState.SPAWNED: {ProcessState.RUNNING, ProcessState.SPAWN_FAILED},
    ProcessState.RUNNING: {ProcessState.EXITED, ProcessState.KILLED},
}


@dataclass(frozen=True)
class OutputChunk:
    stream: str  # "stdout" | "stderr"
    data: bytes


@dataclass(frozen=True)
class Termination:
    state: ProcessState
    returncode: Optional[int] = None
    error: Optional[str] = None
    kill_reason: Optional[str] = None


ProcessEvent = Union[OutputChunk, Termination]


class Watchdog:
    """Single-shot timer; fires at most once unless cancelled first."""

    def __init__(self, timeout: float, on_fire: Callable[[], None]):
        self.timeout = timeout
        self.fired = False
        self._on_fire = on_fire
        self._timer: Optional[asyncio.TimerHandle] = None

    def start(self) -> None:
        self._timer = asyncio.get_running_loop().call_later(self.timeout, self._fire)

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self) -> None:
        self._timer = None
        if self.fired:
            return
        self.fired = True
        self._on_fire()


class ProcessHandle:
    def __init__(self, argv: List[str], slot: Slot,
                 on_terminated: Callable[["ProcessHandle"], None], kill_grace: float = 5.0):
        self.argv = argv
        self.slot = slot
        self.state = ProcessState.SPAWNED
        self.pid: Optional[int] = None
        self.returncode: Optional[int] = None
        self.error: Optional[str] = None
        self.kill_reason: Optional[str] = None
        self.kill_grace = kill_grace
        self.watchdog: Optional[Watchdog] = None
        self._on_terminated = on_terminated
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._events: "asyncio.Queue[ProcessEvent]" = asyncio.Queue()
        self._done = asyncio.Event()
        self._termination: Optional[Termination] = None
        self._escalation: Optional[asyncio.TimerHandle] = None
        self._supervisor: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"ProcessHandle(pid={self.pid}, state={self.state.value})"

    @property
    def terminated(self) -> bool:
        return self.state in TERMINAL

    @property
    def timed_out(self) -> bool:
        return self.kill_reason == "timeout"

    def _transition(self, new_state: ProcessState) -> None:
        if new_state not in _TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"illegal transition {self.state.value} -> {new_state.value}")
        self.state = new_state

    def _attach(self, proc: asyncio.subprocess.Process) -> None:
        self._transition(ProcessState.RUNNING)
        self._proc = proc
        self.pid = proc.pid

    def _commit(self, state: ProcessState, *, returncode: Optional[int] = None,
                error: Optional[str] = None) -> bool:
        """Record termination. Only the first call has any effect."""
        if self.terminated:
            return False
        self._transition(state)
        self.returncode = returncode
        self.error = error
        if self.watchdog is not None:
            self.watchdog.cancel()
        if self._escalation is not None:
            self._escalation.cancel()
            self._escalation = None
        self._termination = Termination(state, returncode, error, self.kill_reason)
        self._on_terminated(self)
        self._events.put_nowait(self._termination)
        self._done.set()
        return True

    def arm_watchdog(self, timeout: float) -> None:
        self.watchdog = Watchdog(timeout, lambda: self.kill("timeout"))
        self.watchdog.start()

    def kill(self, reason: str = "killed") -> bool:
        """Ask the process to stop. No-op once terminated or already asked."""
        if self.state is not ProcessState.RUNNING or self.kill_reason is not None:
            return False
        self.kill_reason = reason
        jlog("process.kill", pid=self.pid, reason=reason)
        try:
            self._proc.terminate()
        except ProcessLookupError:
            return True
        self._escalation = asyncio.get_running_loop().call_later(self.kill_grace, self._force_kill)
        return True

    def _force_kill(self) -> None:
        self._escalation = None
        if self.terminated or self._proc is None:
            return
        jwarn("process.sigkill", pid=self.pid, reason=self.kill_reason)
        try:
            self._proc.kill()
        except ProcessLookupError:
            pass

    async def _pump(self, stream: asyncio.StreamReader, name: str) -> None:
        while True:
            data = await stream.read(READ_CHUNK)
            if not data:
                return
            self._events.put_nowait(OutputChunk(name, data))

    async def _supervise(self) -> None:
        proc = self._proc
        try:
            await asyncio.gather(self._pump(proc.stdout, "stdout"), self._pump(proc.stderr, "stderr"))
            code = await proc.wait()
        except BaseException as e:
            # cancellation or a pipe/wait error: the process must not outlive its slot
            if not isinstance(e, asyncio.CancelledError):
                jwarn("process.supervise_failed", pid=self.pid, error=repr(e))
            self.kill_reason = self.kill_reason or (
                "cancelled" if isinstance(e, asyncio.CancelledError) else "supervisor_error")
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            self._commit(ProcessState.KILLED, returncode=proc.returncode)
            raise
        if self.kill_reason is not None:
            self._commit(ProcessState.KILLED, returncode=code)
        else:
            self._commit(ProcessState.EXITED, returncode=code)
        jlog("process.finished", pid=self.pid, state=self.state.value,
             returncode=code, kill_reason=self.kill_reason)

    async def next_event(self) -> ProcessEvent:
        return await self._events.get()

    async def wait(self) -> Termination:
        await self._done.wait()
        return self._termination

    async def __aiter__(self):
        """Yield output chunks in arrival order, ending with the Termination."""
        while True:
            event = await self.next_event()
            yield event
            if isinstance(event, Termination):
                return


class ProcessManager:
    """Spawns CLI processes under held slots and gives each slot back exactly once."""

    def __init__(self, release: Callable[[Slot], None], kill_grace: float = 5.0):
        self._release = release
        self.kill_grace = kill_grace
        self.live: Set[ProcessHandle] = set()

    async def spawn(self, argv: List[str], slot: Slot, timeout: Optional[float] = None) -> ProcessHandle:
        handle = ProcessHandle(argv, slot, self._finished, kill_grace=self.kill_grace)
        self.live.add(handle)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            # ValueError: argv the OS cannot take, e.g. an embedded NUL byte
            jwarn("process.spawn_failed", cmd=argv[0], error=str(e))
            handle._commit(ProcessState.SPAWN_FAILED, error=str(e))
            return handle
        except asyncio.CancelledError:
            handle._commit(ProcessState.SPAWN_FAILED, error="spawn cancelled")
            raise

        handle._attach(proc)
        jlog("process.spawned", pid=proc.pid, slot_id=slot.id, timeout=timeout)
        if timeout:
            handle.arm_watchdog(timeout)
        handle._supervisor = asyncio.create_task(handle._supervise())
        return handle

    def kill(self, handle: ProcessHandle, reason: str = "killed") -> bool:
        return handle.kill(reason)

    def _finished(self, handle: ProcessHandle) -> None:
        self.live.discard(handle)
        self._release(handle.slot)

    async def shutdown(self) -> None:
        handles = [h for h in list(self.live) if h.kill("shutdown")]
        if handles:
            jlog("process.shutdown", count=len(handles))
            await asyncio.gather(*(h.wait() for h in handles))
