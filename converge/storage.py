"""
Converge - Storage Layer

Handles persistence of workspace state, state locking and run artifacts.
Uses JSON files - can be extended to a remote backend.
"""

from __future__ import annotations
import getpass
import json
import os
import shutil
import socket
import tempfile
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, List, Optional
import logging

from converge.models import (
    LockInfo,
    Plan,
    RunSummary,
    StateSnapshot,
)

logger = logging.getLogger(__name__)


class LockError(Exception):
    """Exception raised for invalid lock usage (stale or foreign token)."""

    def __init__(self, message: str, lock_info: Optional[LockInfo] = None):
        self.message = message
        self.lock_info = lock_info
        super().__init__(self.message)


class LockHeldError(LockError):
    """Exception raised when another run already holds the state lock."""

    def __init__(self, lock_info: LockInfo):
        super().__init__(
            f"State is locked by {lock_info.who} "
            f"(operation={lock_info.operation}, id={lock_info.id}, "
            f"since {lock_info.created_at.isoformat()})",
            lock_info=lock_info,
        )


@dataclass(frozen=True)
class LockToken:
    """Proof of holding the state lock, required for every state write."""
    id: str
    workspace: str
    operation: str


def _default_owner() -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}"


def _write_json_atomic(path: Path, content: Any) -> None:
    """Write JSON to a temp file in the same directory, then rename over."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(content, f, indent=2, default=str)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class StateStore:
    """
    Persists workspace state with exclusive locking.

    Directory structure:
    <state_dir>/
        <workspace>.tfstate.json    - Current state snapshot
        <workspace>.tfstate.lock    - Present while a run holds the lock
    """

    def __init__(self, state_dir: str = "./state", workspace: str = "default"):
        """Initialize state store for a workspace."""
        self.state_dir = Path(state_dir)
        self.workspace = workspace
        self.state_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"State store initialized at: {self.state_path.absolute()}")

    @property
    def state_path(self) -> Path:
        return self.state_dir / f"{self.workspace}.tfstate.json"

    @property
    def lock_path(self) -> Path:
        return self.state_dir / f"{self.workspace}.tfstate.lock"

    # =========================================================================
    # LOCKING
    # =========================================================================

    def acquire(self, operation: str, who: Optional[str] = None) -> LockToken:
        """
        Acquire the exclusive state lock.

        Raises:
            LockHeldError: If another run holds the lock
        """
        info = LockInfo(
            id=uuid.uuid4().hex,
            workspace=self.workspace,
            operation=operation,
            who=who or _default_owner(),
        )
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            holder = self.current_lock()
            if holder is None:
                # Released between our attempt and the read
                return self.acquire(operation, who)
            raise LockHeldError(holder)

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(info.model_dump(mode="json"), f, indent=2)

        logger.info(f"Acquired state lock {info.id} for {operation}")
        return LockToken(id=info.id, workspace=self.workspace, operation=operation)

    def release(self, token: LockToken) -> None:
        """
        Release the lock held by ``token``.

        Raises:
            LockError: If the token does not match the held lock
        """
        self.check_token(token)
        self.lock_path.unlink()
        logger.info(f"Released state lock {token.id}")

    @contextmanager
    def lock(self, operation: str, who: Optional[str] = None) -> Iterator[LockToken]:
        """Hold the state lock for the duration of a ``with`` block."""
        token = self.acquire(operation, who)
        try:
            yield token
        finally:
            self.release(token)

    def current_lock(self) -> Optional[LockInfo]:
        """Return information about the held lock, if any."""
        try:
            with open(self.lock_path, "r", encoding="utf-8") as f:
                content = f.read()
        except FileNotFoundError:
            return None
        if not content.strip():
            # Lock file created but not written yet
            return LockInfo(id="", workspace=self.workspace, operation="unknown", who="unknown")
        return LockInfo(**json.loads(content))

    def check_token(self, token: LockToken) -> None:
        """
        Verify that ``token`` is the currently held lock.

        Raises:
            LockError: If the lock is not held or held by someone else
        """
        holder = self.current_lock()
        if holder is None:
            raise LockError(f"State lock {token.id} is not held")
        if holder.id != token.id:
            raise LockError(
                f"State lock {token.id} is no longer held (held by {holder.id})",
                lock_info=holder,
            )

    def force_unlock(self, lock_id: str) -> None:
        """
        Remove a stale lock.

        Raises:
            LockError: If no lock is held or the id does not match
        """
        holder = self.current_lock()
        if holder is None:
            raise LockError("State is not locked")
        if holder.id != lock_id:
            raise LockError(
                f"Lock id mismatch: held lock is {holder.id}",
                lock_info=holder,
            )
        self.lock_path.unlink()
        logger.warning(f"Force-unlocked state lock {lock_id}")

    # =========================================================================
    # STATE
    # =========================================================================

    def load(self) -> StateSnapshot:
        """Load the current state, or an empty snapshot if none exists."""
        if not self.state_path.exists():
            return StateSnapshot(workspace=self.workspace)
        with open(self.state_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return StateSnapshot(**data)

    def save(self, snapshot: StateSnapshot, token: LockToken) -> None:
        """
        Persist a snapshot, bumping its serial.

        Raises:
            LockError: If ``token`` is not the held lock
        """
        self.check_token(token)
        snapshot.serial += 1
        snapshot.updated_at = datetime.utcnow()
        _write_json_atomic(self.state_path, snapshot.model_dump(mode="json"))
        logger.debug(f"Saved state serial {snapshot.serial} for workspace: {self.workspace}")


class StorageManager:
    """
    Manages storage of run artifacts.

    Directory structure:
    <artifacts_dir>/
        <run_id>/
            plan.json           - Execution plan
            plan.txt            - Human-readable plan
            summary.json        - Final summary
    """

    def __init__(self, base_path: str = "./artifacts"):
        """Initialize storage manager with base path."""
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        logger.info(f"Artifact storage initialized at: {self.base_path.absolute()}")

    def _run_path(self, run_id: str) -> Path:
        """Get path for a specific run."""
        return self.base_path / run_id

    # =========================================================================
    # RUN MANAGEMENT
    # =========================================================================

    def run_exists(self, run_id: str) -> bool:
        """Check if a run exists."""
        return self._run_path(run_id).exists()

    def get_all_runs(self) -> List[str]:
        """Get all run IDs, oldest first."""
        if not self.base_path.exists():
            return []
        return sorted(
            d.name for d in self.base_path.iterdir()
            if d.is_dir() and not d.name.startswith(".")
        )

    def delete_run(self, run_id: str) -> bool:
        """Delete a run and all its artifacts."""
        run_path = self._run_path(run_id)
        if run_path.exists():
            shutil.rmtree(run_path)
            logger.info(f"Deleted run: {run_id}")
            return True
        return False

    # =========================================================================
    # PLAN / SUMMARY
    # =========================================================================

    def save_plan(self, run_id: str, plan: Plan, plan_text: Optional[str] = None) -> str:
        """Save execution plan and return file path."""
        run_path = self._run_path(run_id)
        plan_path = run_path / "plan.json"
        _write_json_atomic(plan_path, plan.model_dump(mode="json"))
        if plan_text is not None:
            (run_path / "plan.txt").write_text(plan_text, encoding="utf-8")
        logger.info(f"Saved execution plan for run: {run_id}")
        return str(plan_path)

    def load_plan(self, run_id: str) -> Optional[Plan]:
        """Load execution plan."""
        plan_path = self._run_path(run_id) / "plan.json"
        if not plan_path.exists():
            return None
        with open(plan_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return Plan(**data)

    def save_summary(self, run_id: str, summary: RunSummary) -> str:
        """Save run summary."""
        summary_path = self._run_path(run_id) / "summary.json"
        _write_json_atomic(summary_path, summary.model_dump(mode="json"))
        logger.debug(f"Saved summary for run: {run_id}")
        return str(summary_path)

    def load_summary(self, run_id: str) -> Optional[RunSummary]:
        """Load run summary."""
        summary_path = self._run_path(run_id) / "summary.json"
        if not summary_path.exists():
            return None
        with open(summary_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return RunSummary(**data)
