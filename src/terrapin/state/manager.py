"""State store: atomic, lock-protected persistence of resource state."""

import fcntl
import json
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from pydantic import ValidationError

from terrapin.declarations.ref import ResourceRef
from terrapin.state.models import ResourceState, ResourceStatus, StateDocument, utcnow
from terrapin.utils.errors import ErrorContext, LockConflict, StateError
from terrapin.utils.logging import get_logger

logger = get_logger(__name__)


class Transaction:
    """Batch of staged puts and deletes committed as a single atomic write."""

    def __init__(self, store: "StateStore"):
        self.store = store
        self.puts: Dict[str, ResourceState] = {}
        self.deletes: Dict[str, ResourceRef] = {}

    def put(self, state: ResourceState) -> None:
        self.deletes.pop(state.key, None)
        self.puts[state.key] = state

    def delete(self, kind: str, name: str) -> None:
        ref = ResourceRef(kind, name)
        self.puts.pop(ref.key, None)
        self.deletes[ref.key] = ref

    def is_empty(self) -> bool:
        return not self.puts and not self.deletes

    def commit(self) -> None:
        if not self.is_empty():
            self.store.commit(list(self.puts.values()), list(self.deletes.values()))
        self.puts.clear()
        self.deletes.clear()


class StateStore:
    """Persists the last-known-applied state of every resource.

    Every mutation goes through commit(), which writes the whole document to a
    temporary file and renames it over the state file, so a crash leaves
    either the previous or the new document on disk. Commits check the on-disk
    serial against the loaded one and fail with LockConflict when another
    writer got there first.
    """

    def __init__(self, state_path: str, backup: bool = True, project: Optional[str] = None):
        """
        Initialize StateStore.

        Args:
            state_path: Path to the state file
            backup: Keep a copy of the previous document next to the state file
            project: Project name recorded in new state documents
        """
        self.state_path = Path(state_path)
        self.lock_path = self.state_path.with_name(self.state_path.name + ".lock")
        self.backup_path = self.state_path.with_name(self.state_path.name + ".backup")
        self.backup = backup
        self.project = project
        self._lock_fd: Optional[int] = None
        self._document: Optional[StateDocument] = None
        self._commit_mutex = threading.RLock()
        self._resource_locks: Dict[str, threading.Lock] = {}
        self._resource_locks_guard = threading.Lock()

    # Loading

    def exists(self) -> bool:
        """Check if state file exists."""
        return self.state_path.exists()

    def initialize(self) -> StateDocument:
        """Write an empty state document if none exists yet.

        Idempotency tokens derive from the lineage, so the lineage has to be
        on disk before the first resource is created.
        """
        with self._commit_mutex:
            if self.exists():
                return self.document
            return self.commit([], [])

    def load(self) -> StateDocument:
        """
        Load state from file, or start an empty document if there is none.

        Returns:
            StateDocument

        Raises:
            StateError: If the state file is corrupted or invalid
        """
        with self._commit_mutex:
            document = self._read_disk()
            if document is None:
                document = StateDocument(project=self.project)
            self._document = document
            return document

    def _read_disk(self) -> Optional[StateDocument]:
        if not self.state_path.exists():
            return None

        try:
            with open(self.state_path, "r") as f:
                data = json.load(f)
            return StateDocument.from_dict(data)
        except json.JSONDecodeError as e:
            raise StateError(f"Failed to parse state file {self.state_path}: {e}", cause=e)
        except ValidationError as e:
            raise StateError(f"Invalid state file {self.state_path}: {e}", cause=e)
        except OSError as e:
            raise StateError(f"Failed to read state file {self.state_path}: {e}", cause=e)

    @property
    def document(self) -> StateDocument:
        """The loaded document, loading it on first access."""
        if self._document is None:
            return self.load()
        return self._document

    @property
    def serial(self) -> int:
        return self.document.serial

    @property
    def lineage(self) -> str:
        return self.document.lineage

    # Reads

    def get(self, kind: str, name: str) -> Optional[ResourceState]:
        """Get the recorded state of a resource, or None if absent."""
        with self._commit_mutex:
            state = self.document.get(ResourceRef(kind, name))
            return state.model_copy(deep=True) if state else None

    def get_ref(self, ref: ResourceRef) -> Optional[ResourceState]:
        return self.get(ref.kind, ref.name)

    def list(self) -> List[ResourceState]:
        """All recorded resources sorted by key."""
        with self._commit_mutex:
            return [state.model_copy(deep=True) for state in self.document.all_resources()]

    # Writes

    def put(self, state: ResourceState) -> None:
        """Record a resource state (single-entry commit)."""
        self.commit([state], [])

    def delete(self, kind: str, name: str) -> None:
        """Remove a resource from state (single-entry commit)."""
        self.commit([], [ResourceRef(kind, name)])

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """Stage several writes and commit them atomically on exit.

        Nothing is written if the block raises.
        """
        txn = Transaction(self)
        yield txn
        txn.commit()

    def commit(
        self,
        puts: List[ResourceState],
        deletes: List[ResourceRef],
        require_lock: bool = False
    ) -> StateDocument:
        """
        Apply puts and deletes as one atomic write.

        Args:
            puts: Resource states to add or replace
            deletes: References to remove
            require_lock: Only write while this process holds the state lock

        Returns:
            The newly committed document

        Raises:
            LockConflict: If the state file changed since it was loaded, or
                require_lock is set and the lock is not held
            StateError: If the state cannot be written
        """
        with self._commit_mutex:
            if require_lock and not self.is_locked():
                raise LockConflict(f"State lock on {self.state_path} is not held by this process")

            current = self.document
            on_disk = self._read_disk()
            disk_serial = on_disk.serial if on_disk else 0
            disk_lineage = on_disk.lineage if on_disk else current.lineage

            if disk_serial != current.serial or disk_lineage != current.lineage:
                raise LockConflict(
                    f"State file was modified by another process "
                    f"(expected serial {current.serial}, found {disk_serial})",
                    suggestions=["Re-run the command to plan against the latest state"]
                )

            new_document = current.model_copy(deep=True)
            for ref in deletes:
                new_document.remove(ref)
            for state in puts:
                new_document.put(state.model_copy(deep=True))
            new_document.serial = current.serial + 1
            new_document.updated_at = utcnow()

            if self.backup and on_disk is not None:
                self._write_atomic(self.backup_path, on_disk)
            self._write_atomic(self.state_path, new_document)

            self._document = new_document
            logger.debug(
                f"Committed state serial {new_document.serial} "
                f"({len(puts)} put, {len(deletes)} delete)"
            )
            return new_document

    def _write_atomic(self, path: Path, document: StateDocument) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")

        try:
            with open(temp_path, "w") as f:
                json.dump(document.to_dict(), f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())

            # Atomic rename
            temp_path.replace(path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise StateError(f"Failed to write state file {path}: {e}", cause=e)

    # Manual reconciliation

    def mark_unknown(
        self,
        ref: ResourceRef,
        operation: str,
        reason: str,
        base: Optional[ResourceState] = None,
        token: Optional[str] = None
    ) -> ResourceState:
        """
        Record that an operation was interrupted and its outcome is unknown.

        Args:
            ref: Resource reference
            operation: Verb of the interrupted operation
            reason: Why the outcome is unknown
            base: Previously recorded state, kept so its identifier is not lost
            token: Idempotency token of the interrupted call
        """
        state = base.model_copy(deep=True) if base else ResourceState(kind=ref.kind, name=ref.name)
        state.status = ResourceStatus.UNKNOWN
        state.metadata.update({
            "interrupted_operation": operation,
            "interrupted_at": utcnow().isoformat(),
            "reason": reason,
        })
        if token:
            state.metadata["token"] = token
        self.put(state)
        logger.warning(f"Recorded {ref} as unknown after interrupted {operation}: {reason}")
        return state

    def resolve(self, ref: ResourceRef, physical_id: str) -> ResourceState:
        """
        Mark an unknown resource as applied with the operator-supplied identifier.

        Raises:
            StateError: If the resource is not recorded
        """
        state = self.get_ref(ref)
        if state is None:
            raise StateError(f"Resource not found in state: {ref}", context=ErrorContext(resource_id=str(ref)))

        state.id = physical_id
        state.status = ResourceStatus.APPLIED
        for key in ("interrupted_operation", "interrupted_at", "reason"):
            state.metadata.pop(key, None)
        state.metadata["resolved_at"] = utcnow().isoformat()
        self.put(state)
        return state

    def forget(self, ref: ResourceRef) -> None:
        """
        Drop a resource from state without touching the provider.

        Raises:
            StateError: If the resource is not recorded
        """
        if self.get_ref(ref) is None:
            raise StateError(f"Resource not found in state: {ref}", context=ErrorContext(resource_id=str(ref)))
        self.delete(ref.kind, ref.name)

    # Locking

    def lock(self) -> None:
        """
        Acquire the advisory process lock on the state file.

        Raises:
            LockConflict: If another process holds the lock
        """
        if self._lock_fd is not None:
            return

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.lock_path), os.O_CREAT | os.O_RDWR)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except (BlockingIOError, PermissionError):
            os.close(fd)
            raise LockConflict(
                f"State is locked by another process: {self.lock_path}",
                suggestions=["Wait for the other run to finish, then re-run"]
            )

        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._lock_fd = fd

    def unlock(self) -> None:
        """Release the process lock once any commit in progress has finished."""
        with self._commit_mutex:
            if self._lock_fd is not None:
                try:
                    fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
                    os.close(self._lock_fd)
                finally:
                    self._lock_fd = None

    def is_locked(self) -> bool:
        return self._lock_fd is not None

    def __enter__(self):
        """Context manager entry - acquire lock and load state."""
        self.lock()
        try:
            self.load()
        except Exception:
            self.unlock()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - release lock."""
        self.unlock()

    @contextmanager
    def resource_lock(self, ref: ResourceRef) -> Iterator[None]:
        """Exclusive per-resource lock held for one provider call plus state write."""
        with self._resource_locks_guard:
            lock = self._resource_locks.setdefault(ref.key, threading.Lock())
        with lock:
            yield
