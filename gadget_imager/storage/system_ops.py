"""System operations used by every build component.

Components never call subprocess, shutil or os directly for work that touches
the host; they receive a ``SystemOps`` instance instead, which tests replace
with a recording fake.
"""

from __future__ import annotations

import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence, Union

from gadget_imager.logging import LoggerFactory, get_logger
from gadget_imager.storage.exceptions import CommandError


log = LoggerFactory.for_system()
output_log = get_logger(source="system", tags=["system", "command-output"])

PathLike = Union[str, Path]

COPY_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class CommandResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str


def _is_zero(block: bytes) -> bool:
    return not block.strip(b"\x00")


class SystemOps:
    """Process execution, filesystem and raw image primitives."""

    def __init__(self, random_source: Callable[[int], bytes] = os.urandom):
        self._random_source = random_source

    # -- processes ---------------------------------------------------------

    def run(
        self,
        argv: Sequence[str],
        *,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[PathLike] = None,
        input_text: Optional[str] = None,
        check: bool = True,
    ) -> CommandResult:
        """Run a command synchronously and capture its output."""
        command = [str(arg) for arg in argv]
        log.debug(f"Running command: {shlex.join(command)}")
        child_env = None
        if env:
            child_env = dict(os.environ)
            child_env.update(env)
        try:
            completed = subprocess.run(
                command,
                input=input_text,
                text=True,
                capture_output=True,
                env=child_env,
                cwd=str(cwd) if cwd is not None else None,
            )
        except OSError as error:
            raise CommandError(command, 127, stderr=str(error)) from error
        if completed.stdout.strip():
            output_log.trace(completed.stdout.rstrip())
        if completed.stderr.strip():
            output_log.trace(completed.stderr.rstrip())
        result = CommandResult(
            argv=command,
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )
        if check and completed.returncode != 0:
            raise CommandError(
                command, completed.returncode, completed.stdout, completed.stderr
            )
        return result

    # -- directories and files ---------------------------------------------

    def cwd(self) -> Path:
        return Path.cwd()

    def makedirs(self, path: PathLike) -> None:
        Path(path).mkdir(parents=True, exist_ok=True)

    def exists(self, path: PathLike) -> bool:
        return os.path.lexists(path)

    def is_dir(self, path: PathLike) -> bool:
        return Path(path).is_dir()

    def list_dir(self, path: PathLike) -> list[str]:
        """Sorted entry names; a missing directory has no entries."""
        try:
            return sorted(os.listdir(path))
        except FileNotFoundError:
            return []

    def copy_into(self, source: PathLike, destination_dir: PathLike) -> None:
        """Copy ``source`` (file, symlink or tree) into ``destination_dir``."""
        source = Path(source)
        target = Path(destination_dir) / source.name
        if source.is_dir() and not source.is_symlink():
            shutil.copytree(source, target, symlinks=True, dirs_exist_ok=True)
        else:
            Path(destination_dir).mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target, follow_symlinks=False)

    def copy_file(self, source: PathLike, destination: PathLike) -> None:
        """Copy a file or a whole tree to exactly ``destination``."""
        Path(destination).parent.mkdir(parents=True, exist_ok=True)
        if Path(source).is_dir():
            shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)
        else:
            shutil.copy2(source, destination)

    def move(self, source: PathLike, destination: PathLike) -> None:
        Path(destination).parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(destination))

    def remove(self, path: PathLike) -> None:
        Path(path).unlink()

    def remove_tree(self, path: PathLike) -> None:
        shutil.rmtree(path)

    def read_text(self, path: PathLike) -> str:
        return Path(path).read_text(encoding="utf-8")

    def write_text(self, path: PathLike, text: str) -> None:
        """Write text atomically by renaming a temporary sibling."""
        path = Path(path)
        temporary = path.with_name(f".{path.name}.tmp")
        temporary.write_text(text, encoding="utf-8")
        os.replace(temporary, path)

    def disk_usage(self, path: PathLike) -> int:
        """Apparent disk usage in bytes, as reported by ``du -s -B1``."""
        result = self.run(["du", "-s", "-B1", str(path)])
        return int(result.stdout.split()[0])

    # -- raw images ----------------------------------------------------------

    def create_sparse(self, path: PathLike, size: int) -> None:
        """Create (or keep) a file and set its length to ``size``."""
        Path(path).touch()
        os.truncate(path, size)

    def zero_fill(self, path: PathLike, size: int) -> None:
        """Create a fresh sparse file of ``size`` zero bytes."""
        with open(path, "wb") as handle:
            handle.truncate(size)

    def copy_blob(
        self,
        source: PathLike,
        destination: PathLike,
        *,
        seek: int = 0,
        block_size: int = 1,
        count: Optional[int] = None,
    ) -> int:
        """Copy ``source`` into ``destination`` at ``seek * block_size``.

        Zero blocks are skipped rather than written and the destination is
        never truncated. At most ``count`` blocks are copied when given.
        Returns the number of bytes consumed from ``source``.
        """
        limit = None if count is None else count * block_size
        copied = 0
        chunk = max(block_size, COPY_CHUNK_SIZE // block_size * block_size)
        with open(source, "rb") as reader, open(destination, "r+b") as writer:
            writer.seek(seek * block_size)
            while limit is None or copied < limit:
                wanted = chunk if limit is None else min(chunk, limit - copied)
                block = reader.read(wanted)
                if not block:
                    break
                if _is_zero(block):
                    writer.seek(len(block), os.SEEK_CUR)
                else:
                    writer.write(block)
                copied += len(block)
            end = writer.tell()
            if end > os.fstat(writer.fileno()).st_size:
                # trailing zeros were skipped, extend so the file covers them
                writer.truncate(end)
        return copied

    def write_at(self, path: PathLike, offset: int, data: bytes) -> None:
        with open(path, "r+b") as handle:
            handle.seek(offset)
            handle.write(data)

    def read_at(self, path: PathLike, offset: int, length: int) -> bytes:
        with open(path, "rb") as handle:
            handle.seek(offset)
            return handle.read(length)

    def file_size(self, path: PathLike) -> int:
        return os.stat(path).st_size

    def random_bytes(self, length: int) -> bytes:
        return self._random_source(length)
