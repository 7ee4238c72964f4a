"""
context.py - Run-scoped resource ownership

A RunContext is the single owner of everything created during one scenario
run: the run directory, every spawned process, the cancellation flag and
the optional scenario deadline. It is threaded explicitly through the
Topology Builder, Process Supervisor, Sync Monitor, CLI Driver and
Scenario Registry instead of any shared global configuration.

Teardown is idempotent and runs cleanup callbacks in reverse registration
order (processes are killed before their directories are removed).
"""

from __future__ import annotations

import shutil
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Callable, List, Optional

from .config import HarnessSettings
from .core import ScenarioCancelled
from .logs import get_logger

logger = get_logger(__name__)


class RunContext:
    """
    Owner of all resources created in one run; the unit of cancellation and teardown.

    Usage:
        with RunContext(settings, name="transfer") as ctx:
            config = TopologyBuilder(ctx).build(4)
            ...
        # processes killed, run directory removed (or kept on failure)
    """

    def __init__(
        self,
        settings: HarnessSettings,
        name: str = "run",
        run_id: Optional[str] = None,
        timeout: Optional[float] = None,
        parent: Optional[RunContext] = None,
    ):
        self.settings = settings
        self.name = name
        self.run_id = run_id or f"{name}-{uuid.uuid4().hex[:8]}"
        self.failed = False
        self._cancel = threading.Event()
        self._cancel_reason = ""
        self._cleanups: List[Callable[[], None]] = []
        self._lock = threading.Lock()
        self._closed = False
        self._base_dir: Optional[Path] = None
        self._parent = parent
        self._children: List[RunContext] = []

        self._timer: Optional[threading.Timer] = None
        limit = timeout if timeout is not None or parent is not None else settings.scenario_timeout
        if limit is not None:
            self._timer = threading.Timer(limit, self.cancel, args=(f"timed out after {limit}s",))
            self._timer.daemon = True
            self._timer.start()

        self.log = logger.bind(run_id=self.run_id)

    # ========================================================================
    # DIRECTORIES
    # ========================================================================

    @property
    def base_dir(self) -> Path:
        """Run directory, created on first access and removed on teardown."""
        if self._base_dir is None:
            parent = self._parent.base_dir if self._parent is not None else self.settings.work_dir
            if parent is not None:
                Path(parent).mkdir(parents=True, exist_ok=True)
            self._base_dir = Path(tempfile.mkdtemp(
                prefix=f"{self.run_id}-", dir=str(parent) if parent else None
            ))
            self.add_cleanup(self._remove_base_dir)
        return self._base_dir

    @property
    def run_dir(self) -> Optional[Path]:
        """Run directory if it has been created, without creating it."""
        return self._base_dir

    def _remove_base_dir(self) -> None:
        if self._base_dir is None or not self._base_dir.exists():
            return
        if self.failed and self.settings.keep_on_failure:
            self.log.warning("run_dir_retained", path=str(self._base_dir))
            return
        shutil.rmtree(self._base_dir, ignore_errors=True)

    # ========================================================================
    # CANCELLATION
    # ========================================================================

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def cancel_reason(self) -> str:
        return self._cancel_reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cooperative cancellation of every wait in this run."""
        if not self._cancel.is_set():
            self._cancel_reason = reason
            self._cancel.set()
            self.log.warning("run_cancelled", reason=reason)
        with self._lock:
            children = list(self._children)
        for child in children:
            child.cancel(reason)

    def child(self, name: str) -> RunContext:
        """
        Create a nested context (e.g. for a replay network).

        The child lives in a subdirectory of this run directory, is cancelled
        with this context and is closed, at the latest, when this context closes.
        """
        # Create the parent directory first so it is removed after the child closes.
        self.base_dir
        child = RunContext(self.settings, name=f"{self.name}-{name}", parent=self)
        with self._lock:
            self._children.append(child)
        self.add_cleanup(child.close)
        if self.cancelled:
            child.cancel(self.cancel_reason)
        return child

    def check_cancelled(self) -> None:
        """Raise ScenarioCancelled if the run has been cancelled."""
        if self._cancel.is_set():
            raise ScenarioCancelled(f"{self.run_id}: {self._cancel_reason}")

    def wait(self, seconds: float) -> bool:
        """
        Sleep up to seconds, waking early on cancellation.

        Returns:
            True if the run was cancelled during the wait
        """
        return self._cancel.wait(max(0.0, seconds))

    # ========================================================================
    # TEARDOWN
    # ========================================================================

    def add_cleanup(self, callback: Callable[[], None]) -> None:
        """Register a teardown callback; callbacks run in reverse order."""
        with self._lock:
            if self._closed:
                raise RuntimeError(f"RunContext {self.run_id} already closed")
            self._cleanups.append(callback)

    def close(self) -> None:
        """
        Release every resource owned by the run.

        Runs all callbacks even if some raise; the first error is re-raised
        after the rest have run.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            callbacks = list(reversed(self._cleanups))
            self._cleanups.clear()

        if self._timer is not None:
            self._timer.cancel()

        first_error: Optional[BaseException] = None
        for callback in callbacks:
            try:
                callback()
            except Exception as exc:
                self.log.error("cleanup_failed", callback=getattr(callback, "__name__", repr(callback)), error=str(exc))
                if first_error is None:
                    first_error = exc
        self.log.debug("run_closed", failed=self.failed)
        if first_error is not None:
            raise first_error

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> RunContext:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.failed = True
            self.cancel(f"aborted by {exc_type.__name__}")
        self.close()

    def __repr__(self) -> str:
        return f"RunContext({self.run_id}, cancelled={self.cancelled}, closed={self._closed})"
