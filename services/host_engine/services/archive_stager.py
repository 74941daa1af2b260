"""
Where: services/host_engine/services/archive_stager.py
What: Unpack an uploaded code archive into a scoped build working directory.
Why: The image builder needs one stable source root (``code/``) per build.
"""

import base64
import binascii
import logging
import shutil
import tempfile
import zipfile
from contextlib import contextmanager
from io import BytesIO
from pathlib import Path, PurePosixPath
from typing import Iterator, Optional

from ..core.exceptions import (
    CorruptArchiveError,
    InvalidArchiveEncodingError,
    MalformedLayoutError,
)

logger = logging.getLogger("host_engine.archive_stager")

SOURCE_DIR_NAME = "code"
WORK_DIR_PREFIX = "fxnhost-build-"

# Metadata folder added by macOS archivers; never part of the source tree.
_IGNORED_TOP_LEVEL = frozenset({"__MACOSX"})


def decode_archive(body: str) -> bytes:
    """
    Decode the base64 text body of a code upload.

    Line breaks and other whitespace inside the body are ignored.
    """
    compact = "".join(body.split())
    if not compact:
        raise InvalidArchiveEncodingError(ValueError("empty body"))
    try:
        return base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidArchiveEncodingError(e) from e


class ArchiveStager:
    """
    Materializes a zip archive as exactly one source tree at ``<workdir>/code``.
    """

    def __init__(self, work_dir_root: Optional[str] = None):
        self.work_dir_root = work_dir_root

    @contextmanager
    def stage(self, archive_bytes: bytes) -> Iterator[Path]:
        """
        Yield a working directory holding the staged source at ``code/``.

        The directory is removed when the block exits, whatever the outcome.

        Raises:
            CorruptArchiveError: the bytes are not a readable zip archive
            MalformedLayoutError: the archive does not hold exactly one folder
        """
        if self.work_dir_root:
            Path(self.work_dir_root).mkdir(parents=True, exist_ok=True)
        workdir = Path(tempfile.mkdtemp(prefix=WORK_DIR_PREFIX, dir=self.work_dir_root))
        logger.debug(f"Created build working directory {workdir}")
        try:
            self._unpack(archive_bytes, workdir)
            yield workdir
        finally:
            shutil.rmtree(workdir, ignore_errors=True)
            logger.debug(f"Removed build working directory {workdir}")

    def _unpack(self, archive_bytes: bytes, workdir: Path) -> None:
        extract_dir = workdir / "unpacked"
        extract_dir.mkdir()

        try:
            with zipfile.ZipFile(BytesIO(archive_bytes)) as archive:
                for info in archive.infolist():
                    _check_member_path(info.filename)
                bad_member = archive.testzip()
                if bad_member is not None:
                    raise CorruptArchiveError(f"checksum mismatch in {bad_member}")
                archive.extractall(extract_dir)
        except (zipfile.BadZipFile, EOFError, NotImplementedError) as e:
            raise CorruptArchiveError(str(e)) from e

        entries = [p for p in extract_dir.iterdir() if p.name not in _IGNORED_TOP_LEVEL]
        if len(entries) != 1:
            raise MalformedLayoutError(len(entries))
        if not entries[0].is_dir():
            raise MalformedLayoutError(1, entries[0].name)

        source_root = entries[0]
        source_root.rename(workdir / SOURCE_DIR_NAME)
        shutil.rmtree(extract_dir)
        logger.info(
            f"Staged source folder '{source_root.name}' as {SOURCE_DIR_NAME}/",
            extra={"workdir": str(workdir)},
        )


def _check_member_path(name: str) -> None:
    path = PurePosixPath(name.replace("\\", "/"))
    if path.is_absolute() or ".." in path.parts:
        raise CorruptArchiveError(f"entry escapes the archive root: {name}")
