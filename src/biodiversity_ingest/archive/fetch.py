"""Download, extract, and open a remote Darwin Core Archive."""

from __future__ import annotations

import logging
import shutil
import tempfile
import zipfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from biodiversity_ingest.archive.batched import DEFAULT_BATCH_SIZE, BatchedArchive
from biodiversity_ingest.archive.joiner import JoinResult, Record, build_joined_records, count_core_rows
from biodiversity_ingest.clients.ipt import IptClient
from biodiversity_ingest.config import DEFAULT_BATCHED_THRESHOLD
from biodiversity_ingest.errors import ArchiveParseError

logger = logging.getLogger(__name__)

ARCHIVE_FILENAME = "archive.zip"


def extract_archive(zip_path: Path, dest: Path) -> Path:
    """Extract a zipped archive, refusing members that escape ``dest``.

    Raises:
        ArchiveParseError: If the file is not a readable zip
    """
    dest.mkdir(parents=True, exist_ok=True)
    root = dest.resolve()
    try:
        with zipfile.ZipFile(zip_path) as zf:
            for member in zf.namelist():
                target = (dest / member).resolve()
                if root not in target.parents and target != root:
                    raise ArchiveParseError(f"Archive member escapes extraction directory: {member}")
            zf.extractall(dest)
    except zipfile.BadZipFile as e:
        raise ArchiveParseError(f"Unreadable archive {zip_path.name}: {e}") from e
    return dest


@contextmanager
def fetch_archive(client: IptClient, url: str, work_dir: Path | None = None) -> Iterator[Path]:
    """Download and extract an archive into a temporary directory.

    The directory and everything in it is removed on exit.

    Yields:
        Path to the extracted archive directory
    """
    tmp = Path(tempfile.mkdtemp(prefix="dwca-", dir=work_dir))
    try:
        zip_path = client.download_archive(url, tmp / ARCHIVE_FILENAME)
        extracted = extract_archive(zip_path, tmp / "extracted")
        zip_path.unlink()
        yield extracted
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@dataclass
class OpenedArchive:
    """A fetched archive ready to be read record by record.

    Attributes:
        total: Number of core rows
        batched: True if records come from the embedded store
        source: The underlying JoinResult or BatchedArchive
    """

    total: int
    batched: bool
    source: JoinResult | BatchedArchive

    def iter_records(self) -> Iterator[tuple[str, Record]]:
        return self.source.iter_records()


@contextmanager
def open_archive(
    client: IptClient,
    url: str,
    batched: bool | None = None,
    batched_threshold: int = DEFAULT_BATCHED_THRESHOLD,
    batch_size: int = DEFAULT_BATCH_SIZE,
    show_progress: bool = False,
) -> Iterator[OpenedArchive]:
    """Fetch an archive and open it with the join suited to its size.

    Args:
        client: IPT client used for the download
        url: Archive URL
        batched: Force the batched (True) or in-memory (False) join; None
            chooses by comparing the core row count to ``batched_threshold``
        batched_threshold: Core row count above which the batched join is used
        batch_size: Records per batch in batched mode
        show_progress: Display tqdm progress bars while loading
    """
    with fetch_archive(client, url) as archive_dir:
        total = count_core_rows(archive_dir)
        use_batched = total > batched_threshold if batched is None else batched
        logger.info(f"Archive {url} has {total} core rows; using {'batched' if use_batched else 'in-memory'} join")
        if use_batched:
            with BatchedArchive(archive_dir, batch_size=batch_size, show_progress=show_progress) as archive:
                yield OpenedArchive(total=len(archive), batched=True, source=archive)
        else:
            result = build_joined_records(archive_dir, show_progress=show_progress)
            yield OpenedArchive(total=len(result), batched=False, source=result)
