"""Transactional access to the master workbook.

Every engine operation runs inside exactly one :func:`unit_of_work`. The unit
holds an exclusive lock on the workbook for its whole lifetime, loads a fresh
copy of the workbook once the lock is held, and either replaces the file on
disk in one step (commit) or drops the in-memory copy (rollback). No product
state survives between units, so every read that informs a write happens under
the same lock as the write itself.

Two lock layers are used:

* an in-process :class:`threading.Lock` per data file, so threads of one
  process queue up cheaply;
* an operating-system lock (``fcntl.flock``, ``msvcrt.locking`` on Windows)
  held on an open handle to a ``.lock`` file next to the workbook, so separate
  processes (CLI invocations, a server worker pool) are serialized too. The
  kernel drops that lock when the holder exits or crashes; the ``.lock`` file
  itself is left in place and never deleted.

A lock that cannot be obtained within ``lock_timeout_seconds`` is reported as
:class:`~shop_ledger.exceptions.ConflictError`, which callers may retry.
"""

from __future__ import annotations

import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Dict, Iterator, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .exceptions import ConflictError, InternalError, ShopLedgerError

if os.name == "nt":
    import msvcrt
else:
    import fcntl

LOCK_POLL_INTERVAL_SECONDS = 0.05

_registry_guard = threading.Lock()
_process_locks: Dict[Path, threading.Lock] = {}


@dataclass(frozen=True)
class UnitOfWork:
    """Workbook handle scoped to a single locked operation."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    read_only: bool = False


def lock_path_for(data_file: Path) -> Path:
    """Return the lock file guarding ``data_file``."""

    data_file = Path(data_file).expanduser().resolve()
    return data_file.with_name(f"{data_file.name}.lock")


def _process_lock_for(data_file: Path) -> threading.Lock:
    key = Path(data_file).expanduser().resolve()
    with _registry_guard:
        lock = _process_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _process_locks[key] = lock
        return lock


def file_fingerprint(path: Path) -> Tuple[int, int]:
    """Return ``(mtime_ns, size)`` used to detect writers that skipped the lock."""

    stat = Path(path).stat()
    return stat.st_mtime_ns, stat.st_size


def _try_os_lock(handle: IO[str]) -> bool:
    try:
        if os.name == "nt":
            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        else:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    except PermissionError:
        # msvcrt reports a held region as EACCES
        return False
    return True


def _os_unlock(handle: IO[str]) -> None:
    if os.name == "nt":
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def acquire_file_lock(lock_path: Path, *, deadline: float) -> IO[str]:
    """Take the OS lock on ``lock_path``, waiting until ``deadline``.

    ``deadline`` is a :func:`time.monotonic` value. The returned handle owns
    the lock; pass it to :func:`release_file_lock`. The holder's pid is written
    into the file for diagnostics only.

    Raises:
        ConflictError: If another holder kept the lock past the deadline.
    """

    handle = open(lock_path, "a+", encoding="utf-8")
    try:
        while not _try_os_lock(handle):
            if time.monotonic() >= deadline:
                log.warning("Timed out waiting for workbook lock '%s'", lock_path)
                raise ConflictError(f"Workbook is locked by another operation: {lock_path}")
            time.sleep(LOCK_POLL_INTERVAL_SECONDS)
        try:
            handle.seek(0)
            handle.truncate()
            handle.write(f"{os.getpid()}\n")
            handle.flush()
        except OSError:
            _os_unlock(handle)
            raise
    except BaseException:
        handle.close()
        raise
    log.debug("Acquired workbook lock '%s'", lock_path)
    return handle


def release_file_lock(handle: IO[str]) -> None:
    try:
        _os_unlock(handle)
    finally:
        handle.close()
    log.debug("Released workbook lock '%s'", handle.name)


@contextmanager
def unit_of_work(settings: data_manager.ConfigSettings, *, read_only: bool = False) -> Iterator[UnitOfWork]:
    """Run a block against a freshly loaded, exclusively locked workbook.

    On normal exit the workbook is saved atomically unless ``read_only`` is
    set. If the block raises, nothing is written and the exception propagates:
    engine errors unchanged, anything else wrapped in
    :class:`~shop_ledger.exceptions.InternalError`. Interrupts and other
    ``BaseException`` subclasses roll back the same way and are re-raised
    untouched.

    Args:
        settings (data_manager.ConfigSettings): Settings naming the workbook and
            the lock timings.
        read_only (bool): When ``True`` the unit never writes, even on success.

    Yields:
        UnitOfWork: Handle exposing the locked workbook.

    Raises:
        ConflictError: If the lock could not be obtained in time or the file
            changed underneath the unit before commit.
        InternalError: If loading, the block, or saving failed unexpectedly.
        FileNotFoundError: If the configured workbook does not exist.
    """

    data_file = Path(settings.data_file).expanduser().resolve()
    deadline = time.monotonic() + settings.lock_timeout_seconds
    process_lock = _process_lock_for(data_file)
    if not process_lock.acquire(timeout=settings.lock_timeout_seconds):
        log.warning("Timed out waiting for in-process lock on '%s'", data_file)
        raise ConflictError(f"Workbook is busy: {data_file}")

    try:
        lock_path = lock_path_for(data_file)
        lock_handle = acquire_file_lock(lock_path, deadline=deadline)
        try:
            try:
                fingerprint = file_fingerprint(data_file)
                workbook = data_manager.open_workbook(data_file)
            except FileNotFoundError:
                raise
            except Exception as exc:
                log.exception("Unable to load workbook '%s'", data_file)
                raise InternalError(f"Unable to load workbook: {exc}") from exc

            work = UnitOfWork(settings=settings, workbook=workbook, read_only=read_only)
            try:
                yield work
            except ShopLedgerError:
                log.debug("Rolled back unit of work on '%s'", data_file)
                raise
            except Exception as exc:
                log.exception("Rolled back unit of work on '%s' after unexpected failure", data_file)
                raise InternalError(f"Operation failed and was rolled back: {exc}") from exc
            except BaseException:
                log.warning("Unit of work on '%s' cancelled; rolled back", data_file)
                raise

            if read_only:
                return

            if file_fingerprint(data_file) != fingerprint:
                log.error("Workbook '%s' changed outside the lock; refusing to commit", data_file)
                raise ConflictError(f"Workbook was modified concurrently: {data_file}")

            try:
                data_manager.save_workbook(workbook, data_file)
            except OSError as exc:
                log.exception("Commit of '%s' failed", data_file)
                raise InternalError(f"Unable to save workbook: {exc}") from exc
            log.debug("Committed unit of work on '%s'", data_file)
        finally:
            release_file_lock(lock_handle)
    finally:
        process_lock.release()
