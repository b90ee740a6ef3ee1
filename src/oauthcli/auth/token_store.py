"""File-backed token store shared by several client ids.

All clients live in a single JSON file::

    {
      "tokens": {
        "<client_id>": {
          "access_token": "...",
          "client_id": "<client_id>",
          "expires_at": "2026-10-18T12:00:00Z",
          "refresh_token": "...",
          "token_type": "Bearer"
        }
      }
    }

Writes hold a :class:`~oauthcli.auth.filelock.FileLock` for the whole
read-merge-write cycle, so saving one client never drops another client's
entry written concurrently by a cooperating process. The new content is
written to ``<path>.tmp`` with ``0o600`` permissions, fsynced, and renamed
over the target with ``os.replace``: readers see either the old file or the
new one, never a partial write.

See Also:
    :class:`~oauthcli.auth.flow.AuthFlow` -- decides what to do when
    loading fails.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Callable, Union

from pydantic import ValidationError

from oauthcli.auth.filelock import FileLock
from oauthcli.exceptions import (
    StorageError,
    TokenNotFoundError,
    TokenStoreCorruptError,
)
from oauthcli.models import TokenSet, TokenStoreFile

logger = logging.getLogger(__name__)


class TokenStore:
    """Read/write tokens for any number of client ids in one file.

    Args:
        path: Location of the token file. The lock (``<path>.lock``) and the
            temporary file (``<path>.tmp``) are created next to it.
        lock_factory: Callable building the lock for *path*. Tests swap in a
            lock with shorter timings.

    Example::

        store = TokenStore(".authgate-tokens.json")
        store.save(token_set)
        assert store.load(token_set.client_id) == token_set
    """

    def __init__(
        self,
        path: Union[str, Path],
        lock_factory: Callable[[Path], FileLock] = FileLock,
    ) -> None:
        self._path = Path(path)
        self._lock_factory = lock_factory

    @property
    def path(self) -> Path:
        """The filesystem path to the token file."""
        return self._path

    @property
    def tmp_path(self) -> Path:
        return Path(f"{self._path}.tmp")

    def load(self, client_id: str) -> TokenSet:
        """Load the tokens stored for *client_id*.

        Reads are lock-free: atomic replacement guarantees a complete file.

        Raises:
            TokenNotFoundError: The file does not exist or holds nothing for
                *client_id*.
            TokenStoreCorruptError: The file is not a valid token file.
        """
        data = self._read().tokens
        if client_id not in data:
            raise TokenNotFoundError(f"No tokens found for client_id: {client_id}")
        return data[client_id]

    def client_ids(self) -> list[str]:
        """Return the sorted client ids present in the file (empty if absent)."""
        try:
            return sorted(self._read().tokens)
        except TokenNotFoundError:
            return []

    def save(self, token_set: TokenSet) -> None:
        """Insert or overwrite the entry for ``token_set.client_id``.

        A corrupt existing file is replaced rather than blocking the save:
        losing other clients' unreadable tokens beats losing the fresh ones.

        Raises:
            LockTimeoutError: The file lock stayed busy.
            StorageError: The file could not be written or renamed. The
                previous file is left untouched.
        """
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to create directory for {self._path}: {exc}") from exc

        with self._lock_factory(self._path):
            current = self._read_for_update()
            current.tokens[token_set.client_id] = token_set
            self._write(current)
        logger.debug("Saved tokens for client %s to %s", token_set.client_id, self._path)

    def delete(self, client_id: str) -> bool:
        """Remove the entry for *client_id*. Returns ``False`` if it was absent."""
        with self._lock_factory(self._path):
            current = self._read_for_update()
            if current.tokens.pop(client_id, None) is None:
                return False
            self._write(current)
        return True

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _read(self) -> TokenStoreFile:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise TokenNotFoundError(f"Token file {self._path} does not exist") from None
        except OSError as exc:
            raise StorageError(f"Failed to read token file {self._path}: {exc}") from exc
        try:
            return TokenStoreFile.model_validate(json.loads(text))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise TokenStoreCorruptError(f"Failed to parse token file {self._path}: {exc}") from exc

    def _read_for_update(self) -> TokenStoreFile:
        try:
            return self._read()
        except TokenNotFoundError:
            return TokenStoreFile()
        except TokenStoreCorruptError as exc:
            logger.warning("Replacing unreadable token file: %s", exc)
            return TokenStoreFile()

    def _write(self, contents: TokenStoreFile) -> None:
        text = json.dumps(contents.model_dump(mode="json"), indent=2, sort_keys=True) + "\n"
        tmp_path = self.tmp_path

        try:
            fd = os.open(tmp_path, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(text)
                fh.flush()
                os.fsync(fh.fileno())
        except OSError as exc:
            self._discard_tmp()
            raise StorageError(f"Failed to write temp file {tmp_path}: {exc}") from exc

        try:
            os.replace(tmp_path, self._path)
        except OSError as exc:
            try:
                os.unlink(tmp_path)
            except OSError as remove_exc:
                raise StorageError(
                    f"Failed to rename temp file: {exc}; "
                    f"also failed to remove temp file: {remove_exc}"
                ) from exc
            raise StorageError(f"Failed to rename temp file: {exc}") from exc

    def _discard_tmp(self) -> None:
        try:
            os.unlink(self.tmp_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove temp file %s: %s", self.tmp_path, exc)
