"""
File backend: byte I/O for the store file.

Blocking file calls run in a worker thread so the event loop only
suspends while the read or write is in flight.
"""
import os
import asyncio
import tempfile
from pathlib import Path
from typing import Optional, Union

from .exceptions import FormatError, StoreIOError


class FileBackend:
    """Reads and atomically replaces a single text file.

    Args:
        path: Location of the store file.
    """

    def __init__(self, path: Union[str, os.PathLike]):
        self.path = Path(path)

    def __repr__(self) -> str:
        return f"<FileBackend path={str(self.path)!r}>"

    def _read(self) -> Optional[str]:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _write(self, text: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fp:
                fp.write(text)
                fp.flush()
                os.fsync(fp.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise

    async def read(self) -> Optional[str]:
        """Return the file content, or None when the file does not exist.

        Raises:
            FormatError: If the file is not UTF-8 text.
            StoreIOError: On any other read failure.
        """
        try:
            return await asyncio.to_thread(self._read)
        except UnicodeDecodeError as err:
            raise FormatError(f"{self.path} is not UTF-8 text") from err
        except OSError as err:
            raise StoreIOError(f"cannot read {self.path}: {err}") from err

    async def write(self, text: str) -> None:
        """Replace the file content with text.

        The write is shielded: cancelling the caller does not interrupt it.

        Raises:
            StoreIOError: If the file cannot be written.
        """
        try:
            await asyncio.shield(asyncio.to_thread(self._write, text))
        except OSError as err:
            raise StoreIOError(f"cannot write {self.path}: {err}") from err
