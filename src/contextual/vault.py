"""Encrypted file storage for CONTEXTUAL contexts.

Provides durable persistence of :class:`Context` records, one file per
context, plus timestamped backup snapshots with rotation and a cancellable
background backup thread.  No external server is required.

Directory layout::

    <storage_path>/
        <context_id>.ctx           one envelope (or raw JSON) per context
        vault.key                  generated key, when none is supplied
        vault.salt                 salt, when the key is a passphrase
        backups/
            backup_<millis>.bak    immutable snapshot envelopes

Persistence and crypto failures never propagate out of this module: they
are logged and reported as ``None`` / ``False``.  If the storage directory
cannot be created the vault degrades to memory-only operation.
"""

from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
from typing import Any

from .context import Context
from .encryption import (
    DecryptionError,
    generate_key,
    is_hex_key,
    load_or_create_key,
    load_or_create_salt,
    resolve_key,
    seal,
    unseal,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Default storage location and naming
# ---------------------------------------------------------------------------

_DEFAULT_DIR = os.path.join(os.path.expanduser("~"), ".contextual")

_CONTEXT_SUFFIX = ".ctx"
_BACKUP_DIRNAME = "backups"
_BACKUP_PREFIX = "backup_"
_BACKUP_SUFFIX = ".bak"
_KEY_FILENAME = "vault.key"
_SALT_FILENAME = "vault.salt"

# Millisecond timestamps are zero-padded so name order is time order.
_BACKUP_NAME_RE = re.compile(r"^backup_(\d{13,})\.bak$")
_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9_.-]*$")


def _backup_filename(timestamp: int) -> str:
    return f"{_BACKUP_PREFIX}{timestamp:013d}{_BACKUP_SUFFIX}"


def _is_safe_id(context_id: Any) -> bool:
    """Context ids become file names, so they may not contain separators."""
    return isinstance(context_id, str) and bool(_SAFE_ID_RE.match(context_id))


def _atomic_write(path: str, text: str) -> None:
    """Write *text* to *path* via a temporary file and ``os.replace``."""
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as fh:
        fh.write(text)
    os.replace(tmp_path, path)


class StateVault:
    """Durable, optionally encrypted storage for :class:`Context` records.

    The vault keeps its own in-memory map of contexts, independent of the
    bridge's registry.  Stored contexts are copies, so callers never share
    a mutable reference with the vault.

    Args:
        storage_path: Directory for context files and backups.  Created
            with ``0o700`` permissions.  Defaults to ``~/.contextual``.
        encryption_enabled: Encrypt every persisted payload.
        encryption_key: 64 hex characters or a passphrase.  When ``None``
            a key is generated once and stored in ``vault.key``.
        backup_enabled: Start the periodic backup thread.
        backup_interval: Seconds between automatic backups.
        max_backups: Number of snapshots kept by rotation.
    """

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def __init__(
        self,
        storage_path: str | os.PathLike[str] | None = None,
        encryption_enabled: bool = True,
        encryption_key: str | None = None,
        backup_enabled: bool = True,
        backup_interval: float = 300.0,
        max_backups: int = 10,
    ) -> None:
        raw_path = str(storage_path) if storage_path is not None else _DEFAULT_DIR
        self._path = os.path.realpath(os.path.expanduser(raw_path))
        self._backup_path = os.path.join(self._path, _BACKUP_DIRNAME)
        self.encryption_enabled = encryption_enabled
        self.backup_interval = float(backup_interval)
        self.max_backups = max(1, int(max_backups))
        if self.backup_interval <= 0:
            raise ValueError("backup_interval must be positive.")

        self._contexts: dict[str, Context] = {}
        self._lock = threading.RLock()
        # Held for the duration of a backup; scheduled ticks skip when busy.
        self._backup_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._timer: threading.Thread | None = None
        self._last_backup: int | None = None
        self._closed = False
        self.memory_only = False
        self._key: bytes | None = None

        self._init_storage()
        self._init_key(encryption_key)

        if backup_enabled:
            self.start_auto_backup()

        logger.info(
            "StateVault initialised  path=%r  encrypted=%s  memory_only=%s  auto_backup=%s",
            self._path,
            self.encryption_enabled,
            self.memory_only,
            self.auto_backup_running,
        )

    def _init_storage(self) -> None:
        """Create the storage directories or fall back to memory-only mode."""
        try:
            os.makedirs(self._path, mode=0o700, exist_ok=True)
            os.makedirs(self._backup_path, mode=0o700, exist_ok=True)
            if not os.access(self._path, os.W_OK) or not os.access(self._backup_path, os.W_OK):
                raise PermissionError(f"{self._path!r} is not writable")
        except OSError as exc:
            logger.warning("Failed to initialise file storage, using memory only: %s", exc)
            self.memory_only = True

    def _init_key(self, encryption_key: str | None) -> None:
        if not self.encryption_enabled:
            return
        if self.memory_only:
            # Nothing is written to disk, so an ephemeral salt is enough.
            self._key = resolve_key(encryption_key or generate_key(), os.urandom(16))
            return
        try:
            if encryption_key is None:
                encryption_key = load_or_create_key(os.path.join(self._path, _KEY_FILENAME))
            salt = None
            if not is_hex_key(encryption_key):
                salt = load_or_create_salt(os.path.join(self._path, _SALT_FILENAME))
            self._key = resolve_key(encryption_key, salt)
        except OSError as exc:
            logger.warning("Failed to initialise encryption key, using memory only: %s", exc)
            self.memory_only = True
            self._key = resolve_key(encryption_key or generate_key(), os.urandom(16))

    @property
    def path(self) -> str:
        """The storage directory."""
        return self._path

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def _require_key(self) -> bytes:
        if self._key is None:
            raise RuntimeError("Encryption is enabled but no key has been initialised.")
        return self._key

    def _encode(self, plaintext: str) -> str:
        if self.encryption_enabled:
            return seal(plaintext, self._require_key())
        return plaintext

    def _decode(self, raw: str) -> str:
        if self.encryption_enabled:
            return unseal(raw, self._require_key())
        return raw

    def _context_file(self, context_id: str) -> str:
        return os.path.join(self._path, f"{context_id}{_CONTEXT_SUFFIX}")

    # ------------------------------------------------------------------
    # Contexts
    # ------------------------------------------------------------------

    def save_context(self, context: Context) -> bool:
        """Store a copy of *context* in memory and persist it.

        Args:
            context: The context to save.

        Returns:
            ``True`` if the context was persisted (or the vault is
            memory-only), ``False`` if the durable write failed.

        Raises:
            ValueError: If the context has no id or an id that cannot be
                used as a file name.
        """
        context_id = getattr(context, "id", None)
        if not context_id:
            raise ValueError("Context must have an id.")
        if not _is_safe_id(context_id):
            raise ValueError(f"Context id {context_id!r} contains unsupported characters.")

        snapshot = context.copy()
        with self._lock:
            self._contexts[context_id] = snapshot

        if self.memory_only:
            return True
        return self._persist(snapshot)

    def _persist(self, context: Context) -> bool:
        try:
            _atomic_write(self._context_file(context.id), self._encode(context.to_json()))
        except (OSError, ValueError) as exc:
            logger.error("Failed to persist context %s: %s", context.id, exc)
            return False
        logger.debug("Persisted context %s", context.id)
        return True

    def load_context(self, context_id: str) -> Context | None:
        """Return a copy of the context, checking memory first, then disk.

        Args:
            context_id: The context identifier.

        Returns:
            The :class:`Context`, or ``None`` if it is absent, unreadable,
            or fails decryption.
        """
        with self._lock:
            cached = self._contexts.get(context_id)
        if cached is not None:
            return cached.copy()
        if self.memory_only or not _is_safe_id(context_id):
            return None

        loaded = self._read_context(context_id)
        if loaded is None:
            return None
        with self._lock:
            self._contexts[context_id] = loaded
        return loaded.copy()

    def _read_context(self, context_id: str) -> Context | None:
        path = self._context_file(context_id)
        if not os.path.exists(path):
            return None
        try:
            with open(path, encoding="utf-8") as fh:
                raw = fh.read()
            context = Context.from_json(self._decode(raw))
        except DecryptionError as exc:
            logger.error("Failed to decrypt context %s: %s", context_id, exc)
            return None
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.error("Failed to load context %s: %s", context_id, exc)
            return None
        if context.id != context_id:
            logger.error("Context file %s holds id %s; ignoring", path, context.id)
            return None
        return context

    def delete_context(self, context_id: str) -> bool:
        """Remove a context from memory and disk.

        Returns:
            ``True`` if anything was removed.
        """
        with self._lock:
            removed = self._contexts.pop(context_id, None) is not None

        if not self.memory_only and _is_safe_id(context_id):
            path = self._context_file(context_id)
            try:
                if os.path.exists(path):
                    os.remove(path)
                    removed = True
            except OSError as exc:
                logger.error("Failed to delete context file %s: %s", path, exc)
        return removed

    def get_all_context_ids(self) -> list[str]:
        """Return ids held in memory followed by any only found on disk."""
        with self._lock:
            ids = list(self._contexts)
        if self.memory_only:
            return ids
        seen = set(ids)
        try:
            names = sorted(os.listdir(self._path))
        except OSError as exc:
            logger.error("Failed to list contexts in %s: %s", self._path, exc)
            return ids
        for name in names:
            if name.endswith(_CONTEXT_SUFFIX):
                context_id = name[: -len(_CONTEXT_SUFFIX)]
                if context_id not in seen:
                    ids.append(context_id)
                    seen.add(context_id)
        return ids

    def get_contexts(self) -> list[Context]:
        """Return copies of every context currently held in memory."""
        with self._lock:
            return [c.copy() for c in self._contexts.values()]

    def clear_all(self) -> int:
        """Delete every context from memory and disk (backups are kept).

        Returns:
            The number of contexts that were held in memory.
        """
        with self._lock:
            count = len(self._contexts)
            self._contexts.clear()
        if not self.memory_only:
            try:
                for name in os.listdir(self._path):
                    if name.endswith(_CONTEXT_SUFFIX):
                        os.remove(os.path.join(self._path, name))
            except OSError as exc:
                logger.error("Failed to clear storage: %s", exc)
        logger.info("Cleared %d context(s) from the vault", count)
        return count

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def backup(self) -> int | None:
        """Write a snapshot of all held contexts and rotate old snapshots.

        Waits for any in-flight scheduled backup to finish first, so two
        snapshots are never written concurrently.

        Returns:
            The snapshot timestamp (milliseconds since the epoch), or
            ``None`` if the vault is memory-only or the write failed.
        """
        if self.memory_only:
            logger.debug("Backup skipped: vault is memory-only")
            return None
        with self._backup_lock:
            return self._write_backup()

    def _write_backup(self) -> int | None:
        try:
            timestamp = self._next_timestamp()
            with self._lock:
                contexts = [c.to_dict() for c in self._contexts.values()]
            payload = json.dumps(
                {"timestamp": timestamp, "contexts": contexts}, ensure_ascii=False, default=str
            )
            path = os.path.join(self._backup_path, _backup_filename(timestamp))
            _atomic_write(path, self._encode(payload))
        except (OSError, ValueError) as exc:
            logger.error("Backup failed: %s", exc)
            return None

        self._last_backup = timestamp
        logger.info("Backup %d written (%d context(s))", timestamp, len(contexts))
        self._rotate()
        return timestamp

    def _next_timestamp(self) -> int:
        timestamp = int(time.time() * 1000)
        if self._last_backup is not None and timestamp <= self._last_backup:
            timestamp = self._last_backup + 1
        while os.path.exists(os.path.join(self._backup_path, _backup_filename(timestamp))):
            timestamp += 1
        return timestamp

    def list_backups(self) -> list[int]:
        """Return the timestamps of existing snapshots, oldest first."""
        if self.memory_only:
            return []
        try:
            names = os.listdir(self._backup_path)
        except OSError as exc:
            logger.error("Failed to list backups: %s", exc)
            return []
        stamps = []
        for name in names:
            match = _BACKUP_NAME_RE.match(name)
            if match:
                stamps.append(int(match.group(1)))
        return sorted(stamps)

    def _rotate(self) -> None:
        """Delete the oldest snapshots while more than ``max_backups`` remain."""
        stamps = self.list_backups()
        while len(stamps) > self.max_backups:
            oldest = stamps.pop(0)
            path = os.path.join(self._backup_path, _backup_filename(oldest))
            try:
                os.remove(path)
                logger.debug("Rotated out backup %d", oldest)
            except OSError as exc:
                logger.error("Failed to remove old backup %s: %s", path, exc)

    def restore(self, timestamp: int | None = None) -> bool:
        """Replace the in-memory contexts with the contents of a snapshot.

        Context files on disk are rewritten to match the snapshot, so
        contexts created after it do not come back on the next start-up.

        Args:
            timestamp: The snapshot to load, or ``None`` for the latest.

        Returns:
            ``True`` on success; ``False`` if no matching snapshot exists
            or it cannot be read, decrypted, or parsed.
        """
        if self.memory_only:
            return False

        stamps = self.list_backups()
        if not stamps:
            logger.warning("Restore failed: no backups in %s", self._backup_path)
            return False
        chosen = stamps[-1] if timestamp is None else int(timestamp)
        if chosen not in stamps:
            logger.warning("Restore failed: backup %d does not exist", chosen)
            return False

        path = os.path.join(self._backup_path, _backup_filename(chosen))
        try:
            with open(path, encoding="utf-8") as fh:
                raw = fh.read()
            data = json.loads(self._decode(raw))
            contexts = [Context.from_dict(item) for item in data["contexts"]]
        except DecryptionError as exc:
            logger.error("Restore of backup %d failed decryption: %s", chosen, exc)
            return False
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.error("Restore of backup %d failed: %s", chosen, exc)
            return False

        with self._lock:
            self._contexts = {c.id: c for c in contexts}
        self._sync_disk()
        logger.info("Restored %d context(s) from backup %d", len(contexts), chosen)
        return True

    def _sync_disk(self) -> None:
        """Make the on-disk context files match the in-memory contexts."""
        with self._lock:
            contexts = list(self._contexts.values())
        keep = {c.id for c in contexts}
        try:
            names = os.listdir(self._path)
        except OSError as exc:
            logger.error("Failed to list contexts in %s: %s", self._path, exc)
            names = []
        for name in names:
            if name.endswith(_CONTEXT_SUFFIX) and name[: -len(_CONTEXT_SUFFIX)] not in keep:
                try:
                    os.remove(os.path.join(self._path, name))
                except OSError as exc:
                    logger.error("Failed to remove stale context file %s: %s", name, exc)
        for context in contexts:
            if _is_safe_id(context.id):
                self._persist(context)

    # ------------------------------------------------------------------
    # Automatic backup
    # ------------------------------------------------------------------

    @property
    def auto_backup_running(self) -> bool:
        return self._timer is not None and self._timer.is_alive()

    def start_auto_backup(self) -> bool:
        """Start the periodic backup thread.

        Returns:
            ``True`` if the thread is running, ``False`` if backups are
            unavailable (memory-only or shut down).
        """
        if self.memory_only or self._closed:
            return False
        if self.auto_backup_running:
            return True
        self._stop_event.clear()
        self._timer = threading.Thread(
            target=self._auto_backup_loop,
            name="contextual-vault-backup",
            daemon=True,
        )
        self._timer.start()
        return True

    def _auto_backup_loop(self) -> None:
        while not self._stop_event.wait(self.backup_interval):
            self._backup_tick()

    def _backup_tick(self) -> int | None:
        """Run one scheduled backup unless another backup is in flight."""
        if not self._backup_lock.acquire(blocking=False):
            logger.debug("Scheduled backup skipped: previous backup still running")
            return None
        try:
            return self._write_backup()
        finally:
            self._backup_lock.release()

    def stop_auto_backup(self) -> None:
        """Cancel the backup thread and wait for any running tick to finish."""
        self._stop_event.set()
        timer = self._timer
        if timer is not None and timer is not threading.current_thread():
            timer.join()
        self._timer = None

    def shutdown(self) -> int | None:
        """Stop the backup thread and take one final synchronous backup.

        Safe to call more than once; later calls do nothing.

        Returns:
            The final backup timestamp, or ``None``.
        """
        if self._closed:
            return None
        self.stop_auto_backup()
        timestamp = self.backup()
        self._closed = True
        logger.info("StateVault shut down (final backup %s)", timestamp)
        return timestamp

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            count = len(self._contexts)
        return {
            "context_count": count,
            "encrypted": self.encryption_enabled,
            "memory_only": self.memory_only,
            "auto_backup": self.auto_backup_running,
            "backup_count": len(self.list_backups()),
            "last_backup": self._last_backup,
            "storage_path": self._path,
        }

    # -- Context manager --------------------------------------------------

    def __enter__(self) -> StateVault:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.shutdown()

    def __repr__(self) -> str:  # pragma: no cover
        return f"StateVault(path={self._path!r}, encrypted={self.encryption_enabled})"

