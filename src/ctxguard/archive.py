"""Durable, compressed, checksummed storage of event logs before pruning.

Each record is a pair of files in the store directory:

    <archive_id>.log.gz     gzip of the UTF-8 log text
    <archive_id>.meta.json  descriptor (reason, sizes, checksum, tags, ...)

The in-memory index is rebuilt from the descriptors when the store opens.
"""

import gzip
import hashlib
import json
import logging
import os
import re
import uuid
import zlib
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Union
from xml.sax.saxutils import unescape

logger = logging.getLogger(__name__)

BLOB_SUFFIX = ".log.gz"
META_SUFFIX = ".meta.json"
MAX_TAGS = 10

# Lone surrogates from undecodable tool output round-trip through the blob
TEXT_ERRORS = "surrogatepass"

# Substring in the log -> searchable tag
TAG_KEYWORDS = (
    ("error", "error"),
    ("success", "success"),
    ("warning", "warning"),
    ("github", "github"),
    ("deploy", "deployment"),
    ("test", "testing"),
)

_EVENT_TYPE_RE = re.compile(r"""<event\b[^>]*?\btype=(?:"([^"]+)"|'([^']+)')""")
_QUOTE_ENTITIES = {"&quot;": '"', "&apos;": "'"}

SORT_KEYS = {
    "timestamp": lambda r: r.timestamp,
    "size": lambda r: r.original_size,
    "reason": lambda r: r.reason,
}

# Type alias for the store's time source
Clock = Callable[[], datetime]


class ArchiveError(Exception):
    """Raised when an archive cannot be written."""


class ArchiveNotFoundError(ArchiveError):
    """Raised when an archive id is unknown."""


class ArchiveIntegrityError(ArchiveError):
    """Raised when a stored blob is unreadable or fails its checksum."""


@dataclass(frozen=True)
class ArchiveRecord:
    """Descriptor of one archived log."""

    archive_id: str
    timestamp: datetime
    reason: str
    original_size: int  # Bytes of UTF-8 content
    compressed_size: int
    token_count: int
    checksum: str  # SHA-256 hex of the uncompressed content
    tags: tuple[str, ...] = ()
    context_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def compression_ratio(self) -> float:
        if self.original_size == 0:
            return 1.0
        return self.compressed_size / self.original_size

    def to_dict(self) -> dict:
        return {
            "archive_id": self.archive_id,
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
            "original_size": self.original_size,
            "compressed_size": self.compressed_size,
            "token_count": self.token_count,
            "checksum": self.checksum,
            "tags": list(self.tags),
            "context_id": self.context_id,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ArchiveRecord":
        return cls(
            archive_id=data["archive_id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            reason=data["reason"],
            original_size=int(data["original_size"]),
            compressed_size=int(data["compressed_size"]),
            token_count=int(data.get("token_count", 0)),
            checksum=data["checksum"],
            tags=tuple(data.get("tags", ())),
            context_id=data.get("context_id"),
            metadata=data.get("metadata") or {},
        )


@dataclass(frozen=True)
class ArchivedLog:
    """A retrieved log together with its descriptor."""

    content: str
    record: ArchiveRecord


def extract_tags(content: str) -> tuple[str, ...]:
    """Searchable tags: event types present, then keyword hits."""
    tags: list[str] = []
    for double_quoted, single_quoted in _EVENT_TYPE_RE.findall(content):
        event_type = unescape(double_quoted or single_quoted, _QUOTE_ENTITIES)
        if event_type not in tags:
            tags.append(event_type)

    lowered = content.lower()
    for keyword, tag in TAG_KEYWORDS:
        if keyword in lowered and tag not in tags:
            tags.append(tag)

    return tuple(tags[:MAX_TAGS])


def checksum(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8", TEXT_ERRORS)).hexdigest()


class ArchiveStore:
    """Directory-backed archive of serialized event logs.

    Records are immutable once written. The only deletions are explicit
    delete() calls and the retention sweep, which drops records older than
    retention_days and then the oldest records beyond max_records.
    """

    def __init__(
        self,
        directory: Union[str, Path],
        retention_days: int = 30,
        max_records: int = 100,
        clock: Optional[Clock] = None,
    ) -> None:
        if retention_days < 1:
            raise ValueError(f"retention_days must be at least 1, got {retention_days}")
        if max_records < 1:
            raise ValueError(f"max_records must be at least 1, got {max_records}")

        self._dir = Path(directory)
        self._retention = timedelta(days=retention_days)
        self._max_records = max_records
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._records: dict[str, ArchiveRecord] = {}

        self._dir.mkdir(parents=True, exist_ok=True)
        self._load_index()

    @property
    def directory(self) -> Path:
        return self._dir

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, archive_id: str) -> bool:
        return archive_id in self._records

    def _load_index(self) -> None:
        loaded = []
        for meta_path in self._dir.glob(f"*{META_SUFFIX}"):
            try:
                with open(meta_path) as f:
                    loaded.append(ArchiveRecord.from_dict(json.load(f)))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping unreadable archive descriptor {meta_path.name}: {e}")

        for record in sorted(loaded, key=lambda r: r.timestamp):
            self._records[record.archive_id] = record

        if self._records:
            logger.info(f"Loaded {len(self._records)} archive records from {self._dir}")

    def _paths(self, archive_id: str) -> tuple[Path, Path]:
        return self._dir / f"{archive_id}{BLOB_SUFFIX}", self._dir / f"{archive_id}{META_SUFFIX}"

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        tmp = path.with_name(path.name + ".tmp")
        try:
            with open(tmp, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        finally:
            tmp.unlink(missing_ok=True)

    def archive(
        self,
        content: str,
        reason: str,
        *,
        token_count: int = 0,
        context_id: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> str:
        """Persist a log and return its archive id.

        Raises:
            ArchiveError: If either file cannot be written. No partial
                record is left behind.
        """
        now = self._clock()
        archive_id = f"archive_{now.strftime('%Y%m%dT%H%M%S')}_{uuid.uuid4().hex[:8]}"
        raw = content.encode("utf-8", TEXT_ERRORS)
        blob = gzip.compress(raw)

        record = ArchiveRecord(
            archive_id=archive_id,
            timestamp=now,
            reason=reason,
            original_size=len(raw),
            compressed_size=len(blob),
            token_count=token_count,
            checksum=hashlib.sha256(raw).hexdigest(),
            tags=extract_tags(content),
            context_id=context_id,
            metadata=dict(meta or {}),
        )

        blob_path, meta_path = self._paths(archive_id)
        try:
            self._write_atomic(blob_path, blob)
            descriptor = json.dumps(record.to_dict(), indent=2, default=str)
            self._write_atomic(meta_path, descriptor.encode("utf-8"))
        except OSError as e:
            blob_path.unlink(missing_ok=True)
            meta_path.unlink(missing_ok=True)
            raise ArchiveError(f"Failed to write archive {archive_id}: {e}") from e

        self._records[archive_id] = record
        logger.info(
            f"Archived {record.original_size} bytes as {archive_id} "
            f"(reason={reason}, ratio={record.compression_ratio:.2f})"
        )

        self.sweep()
        return archive_id

    def get(self, archive_id: str) -> Optional[ArchiveRecord]:
        return self._records.get(archive_id)

    def retrieve(self, archive_id: str) -> ArchivedLog:
        """Load, decompress and verify an archived log.

        Raises:
            ArchiveNotFoundError: Unknown id.
            ArchiveIntegrityError: Blob missing, undecodable, or checksum mismatch.
        """
        record = self._records.get(archive_id)
        if record is None:
            raise ArchiveNotFoundError(f"Archive not found: {archive_id}")

        blob_path, _ = self._paths(archive_id)
        try:
            content = gzip.decompress(blob_path.read_bytes()).decode("utf-8", TEXT_ERRORS)
        except (OSError, EOFError, zlib.error, UnicodeDecodeError) as e:
            raise ArchiveIntegrityError(f"Archive {archive_id} is unreadable: {e}") from e

        if checksum(content) != record.checksum:
            raise ArchiveIntegrityError(f"Archive {archive_id} failed checksum verification")

        return ArchivedLog(content=content, record=record)

    def delete(self, archive_id: str) -> bool:
        """Remove a record and its files. Returns False for unknown ids."""
        record = self._records.pop(archive_id, None)
        if record is None:
            return False
        for path in self._paths(archive_id):
            path.unlink(missing_ok=True)
        logger.debug(f"Deleted archive {archive_id}")
        return True

    def search(
        self,
        *,
        reason: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        tags: Optional[Iterable[str]] = None,
        context_id: Optional[str] = None,
        min_size: Optional[int] = None,
        max_size: Optional[int] = None,
        sort_by: str = "timestamp",
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> list[ArchiveRecord]:
        """Filter the index.

        reason matches as a substring; tags match when any given tag is
        present; sizes are original (uncompressed) byte counts.
        """
        if sort_by not in SORT_KEYS:
            raise ValueError(f"sort_by must be one of {sorted(SORT_KEYS)}, got {sort_by!r}")

        wanted_tags = set(tags) if tags else None
        results = []
        for record in self._records.values():
            if reason is not None and reason not in record.reason:
                continue
            if since is not None and record.timestamp < since:
                continue
            if until is not None and record.timestamp > until:
                continue
            if wanted_tags and not wanted_tags.intersection(record.tags):
                continue
            if context_id is not None and record.context_id != context_id:
                continue
            if min_size is not None and record.original_size < min_size:
                continue
            if max_size is not None and record.original_size > max_size:
                continue
            results.append(record)

        results.sort(key=SORT_KEYS[sort_by], reverse=descending)
        if limit is not None:
            results = results[:limit]
        return results

    def sweep(self) -> list[str]:
        """Apply retention: age window first, then the record cap, oldest first."""
        cutoff = self._clock() - self._retention
        removed = [r.archive_id for r in self._records.values() if r.timestamp < cutoff]
        for archive_id in removed:
            self.delete(archive_id)

        excess = len(self._records) - self._max_records
        if excess > 0:
            oldest = sorted(self._records.values(), key=lambda r: r.timestamp)[:excess]
            for record in oldest:
                self.delete(record.archive_id)
                removed.append(record.archive_id)

        if removed:
            logger.info(f"Retention sweep removed {len(removed)} archives")
        return removed

    def stats(self) -> dict:
        """Aggregate figures for status output."""
        records = list(self._records.values())
        total = sum(r.original_size for r in records)
        compressed = sum(r.compressed_size for r in records)
        timestamps = [r.timestamp for r in records]
        return {
            "total_archives": len(records),
            "total_size": total,
            "compressed_size": compressed,
            "compression_ratio": compressed / total if total else 1.0,
            "total_tokens": sum(r.token_count for r in records),
            "reason_distribution": dict(Counter(r.reason for r in records)),
            "oldest": min(timestamps).isoformat() if timestamps else None,
            "newest": max(timestamps).isoformat() if timestamps else None,
        }
