import errno
import os
import logging
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional, Tuple

from .errors import ResourceError
from .storage_api import StorageAPI

logger = logging.getLogger(__name__)

# stat() errors that mean "no such resource" rather than a local failure
_ABSENT_ERRNOS = {errno.ENOENT, errno.ENOTDIR, errno.ENAMETOOLONG, errno.ELOOP}


@dataclass
class PendingFile:
    """A download in progress: bytes go to tmp_path until commit()."""
    final_path: str
    tmp_path: str
    fh: BinaryIO
    bytes_written: int = 0


class FileStorage(StorageAPI):
    """
    Filesystem-backed resources.

    Provider side: names are resolved under resource_root and may not
    escape it. Requester side: downloads land in output_dir as
    <output_prefix><basename>, written through a temporary file so a failed
    transfer never leaves a partial file behind.

    open_handles counts handles that are open right now; it is guarded by a
    lock because the provider may serve connections on worker threads.
    """

    def __init__(
        self,
        resource_root: str = ".",
        output_dir: str = ".",
        output_prefix: str = "received_",
    ):
        self.resource_root = Path(resource_root).resolve()
        self.output_dir = output_dir
        self.output_prefix = output_prefix
        self._lock = threading.Lock()
        self.open_handles = 0

    def _track(self, delta: int) -> None:
        with self._lock:
            self.open_handles += delta

    # ------------------------------------------------------------------
    # Provider side
    # ------------------------------------------------------------------

    def resolve(self, name: str) -> Optional[Path]:
        """Map a requested name to a path inside resource_root, or None."""
        try:
            candidate = (self.resource_root / name).resolve()
        except (OSError, RuntimeError) as e:
            # RuntimeError is how Python < 3.13 reports a symlink loop
            logger.warning("Cannot resolve resource name %r: %s", name, e)
            return None
        if candidate != self.resource_root and self.resource_root not in candidate.parents:
            logger.warning("Rejected resource name outside root: %r", name)
            return None
        return candidate

    def stat(self, name: str) -> Tuple[bool, int]:
        path = self.resolve(name)
        if path is None:
            return False, 0
        try:
            st = path.stat()
        except (FileNotFoundError, NotADirectoryError):
            return False, 0
        except OSError as e:
            if e.errno in _ABSENT_ERRNOS:
                return False, 0
            raise ResourceError(f"cannot stat {name!r}: {e}") from e
        if not path.is_file():
            return False, 0
        return True, st.st_size

    def open_for_read(self, name: str) -> BinaryIO:
        path = self.resolve(name)
        if path is None:
            raise ResourceError(f"resource {name!r} is outside the served root")
        try:
            fh = open(path, "rb")
        except OSError as e:
            raise ResourceError(f"cannot open {name!r}: {e}") from e
        self._track(1)
        return fh

    def read_chunk(self, handle: BinaryIO, max_bytes: int) -> bytes:
        try:
            return handle.read(max_bytes)
        except OSError as e:
            raise ResourceError(f"read failed: {e}") from e

    # ------------------------------------------------------------------
    # Requester side
    # ------------------------------------------------------------------

    def output_path(self, name: str) -> str:
        base = os.path.basename(name.replace("\\", "/").rstrip("/"))
        if not base or base in {".", ".."}:
            raise ResourceError(f"cannot derive an output file name from {name!r}")
        return os.path.join(self.output_dir, f"{self.output_prefix}{base}")

    def open_for_write(self, name: str) -> PendingFile:
        final_path = self.output_path(name)
        try:
            os.makedirs(self.output_dir, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=".segfetch-", suffix=".part", dir=self.output_dir
            )
        except OSError as e:
            raise ResourceError(f"cannot create output for {name!r}: {e}") from e
        self._track(1)
        return PendingFile(final_path=final_path, tmp_path=tmp_path, fh=os.fdopen(fd, "wb"))

    def append(self, handle: PendingFile, data: bytes) -> None:
        try:
            handle.fh.write(data)
        except OSError as e:
            raise ResourceError(f"write to {handle.tmp_path} failed: {e}") from e
        handle.bytes_written += len(data)

    def _close_pending(self, handle: PendingFile) -> None:
        if handle.fh.closed:
            return
        try:
            handle.fh.close()
        finally:
            self._track(-1)

    def commit(self, handle: PendingFile) -> str:
        try:
            self._close_pending(handle)
            os.replace(handle.tmp_path, handle.final_path)
        except OSError as e:
            self.discard(handle)
            raise ResourceError(f"cannot finalize {handle.final_path}: {e}") from e
        logger.debug("Committed %d bytes to %s", handle.bytes_written, handle.final_path)
        return handle.final_path

    def discard(self, handle: PendingFile) -> None:
        try:
            self._close_pending(handle)
        except OSError as e:
            logger.debug("Error closing partial file %s: %s", handle.tmp_path, e)
        try:
            os.unlink(handle.tmp_path)
        except FileNotFoundError:
            pass
        logger.debug("Discarded partial download for %s", handle.final_path)

    def close(self, handle: BinaryIO) -> None:
        if not handle.closed:
            handle.close()
            self._track(-1)
