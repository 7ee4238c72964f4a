"""
supervisor.py - Process Supervisor

Owns the lifecycle of node binaries as child processes.

Responsibilities:
    - spawn(): launch a node from its NodeDescriptor without waiting for readiness
    - kill(): SIGTERM the node's process group, wait a grace period, then SIGKILL
    - wait_exit(): block (cooperatively) until a node exits
    - Output capture: one reader thread per node owns the node's output stream
      and exposes it as a line-buffered OutputChannel
    - Process-wide registry keyed by run id so orphaned processes of a crashed
      scenario are still killed at teardown or interpreter exit

Output capture uses pipes by default. Binaries that only flush when attached
to a terminal can be run under a pseudo-terminal (settings.use_pty, POSIX only).
"""

from __future__ import annotations

import atexit
import os
import re
import shutil
import signal
import socket
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union, IO

from .context import RunContext
from .core import (
    NodeDescriptor, NodeStatus, Role, SpawnError, ScenarioCancelled,
)
from .logs import get_logger

logger = get_logger(__name__)

# Granularity of cooperative waits (cancellation is noticed within this).
_WAIT_SLICE = 0.05

# Lines kept in memory per node; older lines survive only in the log file.
_MAX_BUFFERED_LINES = 20_000

# Seconds to wait for a process to disappear after SIGKILL.
_KILL_WAIT = 5.0


def port_is_free(port: int, host: str = "127.0.0.1") -> bool:
    """Return True if a TCP listener could bind host:port right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


# ============================================================================
# OUTPUT CHANNEL
# ============================================================================

class OutputChannel:
    """
    Line-buffered, non-blocking view of a process's combined output.

    A dedicated reader thread is the only consumer of the underlying stream.
    Readers never block on the stream itself: they inspect the buffer or wait
    on a condition variable that is notified whenever a new line arrives or
    the stream reaches EOF.

    Example:
        match = node.output.wait_for(r"Committed block hash", timeout=30)
        node.output.send_line("y")
        recent = node.output.tail(20)
    """

    def __init__(
        self,
        name: str,
        stream: Union[IO[bytes], int],
        writer: Union[IO[bytes], int, None] = None,
        log_path: Optional[Path] = None,
    ):
        self.name = name
        self._stream = stream
        self._writer = writer
        self._lines: List[str] = []
        self._dropped = 0
        self._cond = threading.Condition()
        self._eof = False
        self._log_file = open(log_path, "a", encoding="utf-8") if log_path else None
        self._thread = threading.Thread(
            target=self._pump, name=f"output-{name}", daemon=True
        )
        self._thread.start()

    # ------------------------------------------------------------------
    # Reader thread
    # ------------------------------------------------------------------

    def _pump(self) -> None:
        try:
            if isinstance(self._stream, int):
                self._pump_fd(self._stream)
            else:
                for raw in iter(self._stream.readline, b""):
                    self._append(raw.decode("utf-8", errors="replace"))
        finally:
            with self._cond:
                self._eof = True
                self._cond.notify_all()
            if self._log_file is not None:
                self._log_file.flush()

    def _pump_fd(self, fd: int) -> None:
        # PTY master: reads raise EIO once the slave side is closed.
        pending = ""
        while True:
            try:
                chunk = os.read(fd, 4096)
            except OSError:
                break
            if not chunk:
                break
            pending += chunk.decode("utf-8", errors="replace").replace("\r\n", "\n")
            *complete, pending = pending.split("\n")
            for line in complete:
                self._append(line + "\n")
        if pending:
            self._append(pending)

    def _append(self, raw_line: str) -> None:
        line = raw_line.rstrip("\r\n")
        if self._log_file is not None:
            self._log_file.write(line + "\n")
            self._log_file.flush()
        with self._cond:
            self._lines.append(line)
            if len(self._lines) > _MAX_BUFFERED_LINES:
                overflow = len(self._lines) - _MAX_BUFFERED_LINES
                del self._lines[:overflow]
                self._dropped += overflow
            self._cond.notify_all()

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    @property
    def eof(self) -> bool:
        with self._cond:
            return self._eof

    @property
    def line_count(self) -> int:
        """Total number of lines received so far (including dropped ones)."""
        with self._cond:
            return self._dropped + len(self._lines)

    def lines(self, since: int = 0) -> List[str]:
        """Return buffered lines with absolute index >= since."""
        return self._snapshot(since)[1]

    def _snapshot(self, since: int) -> Tuple[int, List[str]]:
        # (absolute index of the first returned line, lines)
        with self._cond:
            offset = max(0, since - self._dropped)
            return self._dropped + offset, list(self._lines[offset:])

    def tail(self, count: int = 20) -> List[str]:
        with self._cond:
            return list(self._lines[-count:])

    def wait_for_output(self, timeout: float, since: Optional[int] = None) -> bool:
        """
        Block until a line beyond `since` arrives, EOF is reached, or timeout elapses.

        Args:
            timeout: Maximum seconds to wait
            since: Absolute line count to compare against (default: now)

        Returns:
            True if new output arrived or the stream closed, False on timeout
        """
        deadline = time.monotonic() + max(0.0, timeout)
        with self._cond:
            baseline = self._dropped + len(self._lines) if since is None else since
            while True:
                if self._eof or self._dropped + len(self._lines) > baseline:
                    return True
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)

    def wait_for(
        self,
        pattern: Union[str, re.Pattern],
        timeout: float,
        since: int = 0,
        ctx: Optional[RunContext] = None,
    ) -> re.Match:
        """
        Wait until a line matching pattern appears.

        Args:
            pattern: Regular expression searched in each line
            timeout: Maximum seconds to wait
            since: Only consider lines with absolute index >= since
            ctx: Optional run context whose cancellation aborts the wait

        Returns:
            The match object of the first matching line

        Raises:
            TimeoutError: If no line matched in time
            EOFError: If the stream closed without a match
            ScenarioCancelled: If ctx was cancelled
        """
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        deadline = time.monotonic() + timeout
        cursor = since
        while True:
            start, batch = self._snapshot(cursor)
            for line in batch:
                match = regex.search(line)
                if match:
                    return match
            cursor = start + len(batch)
            if ctx is not None:
                ctx.check_cancelled()
            if self.eof and self.line_count <= cursor:
                raise EOFError(f"{self.name}: output closed before {regex.pattern!r} appeared")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(
                    f"{self.name}: {regex.pattern!r} not seen within {timeout}s "
                    f"(last lines: {self.tail(3)})"
                )
            self.wait_for_output(min(remaining, _WAIT_SLICE * 4), since=cursor)

    # ------------------------------------------------------------------
    # Writer
    # ------------------------------------------------------------------

    def send_line(self, text: str) -> None:
        """Synchronously write one line to the process's input."""
        if self._writer is None:
            raise RuntimeError(f"{self.name}: output channel has no input side")
        data = (text + "\n").encode("utf-8")
        if isinstance(self._writer, int):
            os.write(self._writer, data)
        else:
            self._writer.write(data)
            self._writer.flush()

    def close(self, timeout: float = 2.0) -> None:
        """Wait for the reader thread to drain and release file handles."""
        self._thread.join(timeout)
        for fd in (self._stream, self._writer):
            if isinstance(fd, int):
                try:
                    os.close(fd)
                except OSError:
                    # Already closed (close() called twice).
                    pass
        if isinstance(self._stream, int):
            self._stream = -1
        if isinstance(self._writer, int):
            self._writer = None
        if self._log_file is not None and not self._thread.is_alive():
            self._log_file.close()
            self._log_file = None


# ============================================================================
# RUNNING NODE
# ============================================================================

@dataclass(eq=False)
class RunningNode:
    """
    A NodeDescriptor bound to a live OS process.

    Mutated only by the ProcessSupervisor and the ChainSyncMonitor.

    Attributes:
        descriptor: Static node description
        process: Popen handle of the node process
        output: Output channel owned by the node's reader thread
        run_id: Run that spawned the node
        status: Last observed status
        started_at: time.monotonic() at spawn
        exit_code: Exit status once the process has exited
    """
    descriptor: NodeDescriptor
    process: subprocess.Popen
    output: OutputChannel
    run_id: str
    status: NodeStatus = NodeStatus.STARTING
    started_at: float = field(default_factory=time.monotonic)
    exit_code: Optional[int] = None

    @property
    def node_id(self) -> str:
        return self.descriptor.node_id

    @property
    def role(self) -> Role:
        return self.descriptor.role

    @property
    def pid(self) -> int:
        return self.process.pid

    def poll(self) -> Optional[int]:
        """Refresh and return the exit code (None while running)."""
        code = self.process.poll()
        if code is not None:
            self.exit_code = code
            self.status = NodeStatus.EXITED
        return code

    def is_alive(self) -> bool:
        return self.poll() is None

    def __repr__(self) -> str:
        return f"RunningNode({self.node_id}, pid={self.process.pid}, {self.status.value})"


# ============================================================================
# PROCESS-WIDE REGISTRY
# ============================================================================

_REGISTRY: Dict[str, Dict[str, RunningNode]] = {}
_REGISTRY_LOCK = threading.Lock()


def _register(node: RunningNode) -> None:
    with _REGISTRY_LOCK:
        _REGISTRY.setdefault(node.run_id, {})[node.node_id] = node


def _unregister(node: RunningNode) -> None:
    with _REGISTRY_LOCK:
        nodes = _REGISTRY.get(node.run_id)
        if nodes is not None:
            nodes.pop(node.node_id, None)
            if not nodes:
                del _REGISTRY[node.run_id]


def registered_nodes(run_id: Optional[str] = None) -> List[RunningNode]:
    """Return nodes still registered for run_id (or for all runs)."""
    with _REGISTRY_LOCK:
        if run_id is not None:
            return list(_REGISTRY.get(run_id, {}).values())
        return [n for nodes in _REGISTRY.values() for n in nodes.values()]


def cleanup_run(run_id: str, grace_period: float = 1.0) -> int:
    """
    Kill every process still registered under run_id.

    Returns:
        Number of processes that were terminated
    """
    nodes = registered_nodes(run_id)
    for node in reversed(nodes):
        _terminate(node, grace_period)
    return len(nodes)


def _cleanup_all() -> None:
    with _REGISTRY_LOCK:
        run_ids = list(_REGISTRY)
    for run_id in run_ids:
        cleanup_run(run_id, grace_period=0.5)


atexit.register(_cleanup_all)


def _signal_group(process: subprocess.Popen, sig: int) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, sig)
        elif sig == getattr(signal, "SIGKILL", None):
            process.kill()
        else:
            process.terminate()
    except ProcessLookupError:
        # Group already gone: the process exited between poll() and kill.
        pass


def _terminate(node: RunningNode, grace_period: float) -> Optional[int]:
    """
    SIGTERM, wait grace_period, SIGKILL. Returns the exit code.

    The node leaves the registry even if it survives SIGKILL (exit code None).
    """
    process = node.process
    try:
        if process.poll() is None:
            _signal_group(process, signal.SIGTERM)
            try:
                process.wait(timeout=grace_period)
            except subprocess.TimeoutExpired:
                logger.warning("node_kill_forced", node=node.node_id, run_id=node.run_id,
                               grace_period=grace_period)
                _signal_group(process, getattr(signal, "SIGKILL", signal.SIGTERM))
                try:
                    process.wait(timeout=_KILL_WAIT)
                except subprocess.TimeoutExpired:
                    logger.error("node_kill_timeout", node=node.node_id, run_id=node.run_id,
                                 pid=process.pid, waited=_KILL_WAIT)
        else:
            # Reap any children left in the group by a crashed leader.
            _signal_group(process, getattr(signal, "SIGKILL", signal.SIGTERM))
        node.poll()
        node.output.close()
        if process.stdin is not None:
            process.stdin.close()
        if process.stdout is not None:
            process.stdout.close()
    finally:
        _unregister(node)
    return node.exit_code


# ============================================================================
# SUPERVISOR
# ============================================================================

class ProcessSupervisor:
    """
    Spawns and tears down node processes for one run.

    Every node spawned through a supervisor is registered in the process-wide
    registry under the run id of its RunContext, and the supervisor registers
    a teardown callback with the context so processes never outlive the run.
    """

    def __init__(self, ctx: RunContext):
        self.ctx = ctx
        self.settings = ctx.settings
        self.nodes: Dict[str, RunningNode] = {}
        self._lock = threading.Lock()
        self._cleanup_registered = False
        self.log = ctx.log.bind(component="supervisor")

    def launch_args(self, descriptor: NodeDescriptor) -> Tuple[str, ...]:
        """Derive the argv for a node from its descriptor."""
        if descriptor.role == Role.RELAYER:
            head: Tuple[str, ...] = ("relayer", "run")
        else:
            head = ("ledger", "run")
        return tuple(descriptor.command) + head + (
            "--base-dir", str(descriptor.data_dir),
            "--role", descriptor.role.value,
            "--p2p-address", descriptor.p2p_address,
            "--rpc-address", descriptor.rpc_address,
        )

    def launch_env(self, descriptor: NodeDescriptor, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        env = dict(os.environ)
        env["LEDGER_LOG"] = self.settings.log_level_env
        env["LEDGER_BASE_DIR"] = str(descriptor.data_dir)
        env["PYTHONUNBUFFERED"] = "1"
        if extra:
            env.update(extra)
        return env

    def _check_spawnable(self, descriptor: NodeDescriptor) -> None:
        binary = descriptor.command[0]
        if shutil.which(binary) is None and not Path(binary).is_file():
            raise SpawnError(descriptor.node_id, f"binary not found: {binary}")
        if descriptor.node_id in self.nodes and self.nodes[descriptor.node_id].is_alive():
            raise SpawnError(descriptor.node_id, "already running")
        for port in descriptor.ports:
            if not port_is_free(port, descriptor.host):
                raise SpawnError(descriptor.node_id, f"port {port} already in use")
        descriptor.data_dir.mkdir(parents=True, exist_ok=True)

    def spawn(
        self,
        descriptor: NodeDescriptor,
        env: Optional[Dict[str, str]] = None,
        use_pty: Optional[bool] = None,
    ) -> RunningNode:
        """
        Launch a node process and return immediately.

        Args:
            descriptor: Node to launch
            env: Extra environment variables
            use_pty: Override settings.use_pty for this node

        Returns:
            RunningNode in STARTING status

        Raises:
            SpawnError: Missing binary, port conflict, closed run context or
                OS-level launch failure
            ScenarioCancelled: If the run was cancelled
        """
        self.ctx.check_cancelled()
        self._ensure_teardown(descriptor)
        self._check_spawnable(descriptor)
        argv = self.launch_args(descriptor)
        pty_mode = self.settings.use_pty if use_pty is None else use_pty
        log_path = descriptor.data_dir / "node.log"

        try:
            if pty_mode:
                process, output = self._spawn_pty(descriptor, argv, env, log_path)
            else:
                process = subprocess.Popen(
                    argv,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    cwd=str(descriptor.data_dir),
                    env=self.launch_env(descriptor, env),
                    start_new_session=True,
                )
                output = OutputChannel(descriptor.node_id, process.stdout, process.stdin, log_path)
        except OSError as exc:
            raise SpawnError(descriptor.node_id, str(exc)) from exc

        node = RunningNode(descriptor=descriptor, process=process, output=output, run_id=self.ctx.run_id)
        with self._lock:
            self.nodes[descriptor.node_id] = node
        _register(node)
        if self.ctx.closed:
            # The run closed while the process was starting; its teardown has already run.
            _terminate(node, 0.0)
            raise SpawnError(descriptor.node_id, f"run context {self.ctx.run_id} closed during spawn")
        self.log.info("node_spawned", node=descriptor.node_id, role=descriptor.role.value,
                      pid=process.pid, rpc=descriptor.rpc_address, pty=pty_mode)
        return node

    def _ensure_teardown(self, descriptor: NodeDescriptor) -> None:
        # Registered before the first launch, so a closed context never gets a process.
        with self._lock:
            if self._cleanup_registered:
                if self.ctx.closed:
                    raise SpawnError(descriptor.node_id, f"run context {self.ctx.run_id} is closed")
                return
            try:
                self.ctx.add_cleanup(self.shutdown_all)
            except RuntimeError as exc:
                raise SpawnError(descriptor.node_id, str(exc)) from exc
            self._cleanup_registered = True

    def _spawn_pty(self, descriptor, argv, env, log_path):
        import pty

        master, slave = pty.openpty()
        try:
            process = subprocess.Popen(
                argv,
                stdin=slave,
                stdout=slave,
                stderr=slave,
                cwd=str(descriptor.data_dir),
                env=self.launch_env(descriptor, env),
                start_new_session=True,
            )
        except OSError:
            os.close(master)
            raise
        finally:
            os.close(slave)
        writer = os.dup(master)
        return process, OutputChannel(descriptor.node_id, master, writer, log_path)

    def kill(self, node: RunningNode, grace_period: Optional[float] = None) -> Optional[int]:
        """
        Terminate a node: SIGTERM, wait up to grace_period, then SIGKILL.

        Idempotent: killing an exited node only reaps it.

        Returns:
            The node's exit code
        """
        grace = self.settings.kill_grace_period if grace_period is None else grace_period
        was_alive = node.is_alive()
        code = _terminate(node, grace)
        if was_alive:
            self.log.info("node_killed", node=node.node_id, exit_code=code)
        return code

    def wait_exit(self, node: RunningNode, timeout: Optional[float] = None) -> int:
        """
        Block until the node exits; return immediately if it already has.

        The wait is cooperative: run cancellation aborts it.

        Raises:
            TimeoutError: If timeout elapses first
            ScenarioCancelled: If the run is cancelled while waiting
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            code = node.poll()
            if code is not None:
                return code
            if self.ctx.cancelled:
                raise ScenarioCancelled(f"{node.node_id}: wait_exit cancelled ({self.ctx.cancel_reason})")
            slice_ = _WAIT_SLICE
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError(f"{node.node_id} still running after {timeout}s")
                slice_ = min(slice_, remaining)
            try:
                node.process.wait(timeout=slice_)
            except subprocess.TimeoutExpired:
                continue

    def restart(self, node: RunningNode) -> RunningNode:
        """Kill a node and spawn it again from the same descriptor."""
        self.kill(node)
        return self.spawn(node.descriptor)

    def alive(self) -> List[RunningNode]:
        return [n for n in self.nodes.values() if n.is_alive()]

    def shutdown_all(self) -> None:
        """Kill every node spawned by this supervisor, newest first."""
        with self._lock:
            nodes = list(self.nodes.values())
        for node in reversed(nodes):
            self.kill(node)
        # Anything registered for the run by another supervisor instance.
        cleanup_run(self.ctx.run_id, grace_period=self.settings.kill_grace_period)
