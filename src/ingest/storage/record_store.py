"""
Canonical record store - append-only, date-partitioned JSON-lines objects.

Every pipeline stage (raw -> derived -> chunked -> embedded) writes its
output here as immutable batch objects. Objects are never rewritten;
re-derivation under a new run produces new objects whose records supersede
older ones by checksum comparison.

Key layout:
    {stage}/{YYYY}/{MM}/{DD}/shard-{NNNNN}.jsonl
"""

import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Iterable, Iterator, List, Optional, Set, Tuple, Union

from ..core.exceptions import CorruptionError, ObjectExistsError, ValidationError
from ..core.models import CanonicalRecord, Stage
from ..core.object_store import ObjectStore
from ..core.utils import compute_bytes_checksum


logger = logging.getLogger(__name__)

DateRange = Tuple[Optional[date], Optional[date]]
RecordPredicate = Callable[[CanonicalRecord], bool]

STAGE_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
KEY_PATTERN = re.compile(
    r"^(?P<stage>[a-z][a-z0-9_-]*)/(?P<year>\d{4})/(?P<month>\d{2})/(?P<day>\d{2})/"
    r"shard-(?P<seq>\d{5,})\.jsonl$"
)


@dataclass
class WrittenObject:
    """Information about a committed record batch."""
    object_key: str
    checksum: str
    record_count: int
    byte_count: int


def stage_name(stage: Union[Stage, str]) -> str:
    """Normalize and validate a stage name."""
    name = stage.value if isinstance(stage, Stage) else str(stage)
    if not STAGE_PATTERN.match(name):
        raise ValidationError(f"Invalid stage name: {name!r}")
    return name


def partition_prefix(stage: Union[Stage, str], partition_date: date) -> str:
    """Build the ``stage/YYYY/MM/DD/`` prefix for a partition date."""
    return f"{stage_name(stage)}/{partition_date:%Y/%m/%d}/"


def parse_object_key(key: str) -> Optional[Tuple[str, date, int]]:
    """
    Parse a record object key.

    Returns:
        (stage, partition_date, sequence) or None if the key is not a record object
    """
    match = KEY_PATTERN.match(key)
    if not match:
        return None
    try:
        partition_date = date(int(match["year"]), int(match["month"]), int(match["day"]))
    except ValueError:
        return None
    return match["stage"], partition_date, int(match["seq"])


def _in_range(value: date, date_range: Optional[DateRange]) -> bool:
    if not date_range:
        return True
    start, end = date_range
    if start is not None and value < start:
        return False
    if end is not None and value > end:
        return False
    return True


class CanonicalRecordStore:
    """
    Writes and reads canonical records through an object store.

    Example:
        >>> store = CanonicalRecordStore(FileObjectStore("lake"))
        >>> written = store.write(Stage.RAW, date(2024, 5, 1), records)
        >>> written.object_key
        'raw/2024/05/01/shard-00001.jsonl'
        >>> for record in store.read(Stage.RAW, (date(2024, 5, 1), None)):
        ...     print(record.source_id)
    """

    def __init__(self, object_store: ObjectStore, max_sequence_attempts: int = 20):
        """
        Initialize the record store.

        Args:
            object_store: Backing object store
            max_sequence_attempts: How many shard numbers to try when
                concurrent writers race for the same key
        """
        self.object_store = object_store
        self.max_sequence_attempts = max_sequence_attempts

    def write(
        self,
        stage: Union[Stage, str],
        partition_date: Optional[Union[date, datetime]],
        records: Iterable[CanonicalRecord],
    ) -> WrittenObject:
        """
        Serialize a batch as one immutable JSON-lines object.

        The object is committed all-or-nothing; on failure nothing becomes
        visible.

        Args:
            stage: Pipeline stage
            partition_date: Partition date (defaults to today, UTC)
            records: Records to write

        Returns:
            WrittenObject with the object key and checksum

        Raises:
            ValidationError: If the batch is empty
            TransientIOError: On storage failure
        """
        if partition_date is None:
            partition_date = datetime.now(timezone.utc).date()
        elif isinstance(partition_date, datetime):
            partition_date = partition_date.date()

        lines = [
            json.dumps(record.to_dict(), sort_keys=True, ensure_ascii=False, default=str)
            for record in records
        ]
        if not lines:
            raise ValidationError("Cannot write an empty record batch")

        data = ("\n".join(lines) + "\n").encode("utf-8")
        checksum = compute_bytes_checksum(data)
        prefix = partition_prefix(stage, partition_date)

        sequence = self._next_sequence(prefix)
        for _ in range(self.max_sequence_attempts):
            key = f"{prefix}shard-{sequence:05d}.jsonl"
            try:
                self.object_store.put(key, data, overwrite=False)
            except ObjectExistsError:
                # Another writer claimed this number first
                sequence += 1
                continue

            logger.debug(f"Wrote {len(lines)} records to {key} ({len(data)} bytes)")
            return WrittenObject(
                object_key=key,
                checksum=checksum,
                record_count=len(lines),
                byte_count=len(data),
            )

        raise ObjectExistsError(
            f"Could not allocate a shard key under {prefix} after "
            f"{self.max_sequence_attempts} attempts"
        )

    def _next_sequence(self, prefix: str) -> int:
        """Next free shard number under a partition prefix."""
        highest = 0
        for key in self.object_store.list(prefix):
            parsed = parse_object_key(key)
            if parsed:
                highest = max(highest, parsed[2])
        return highest + 1

    def list_objects(
        self,
        stage: Union[Stage, str],
        date_range: Optional[DateRange] = None,
    ) -> List[str]:
        """
        List committed record objects for a stage within a date range.

        Args:
            stage: Pipeline stage
            date_range: Inclusive (start, end); either bound may be None

        Returns:
            Object keys in (date, sequence) order
        """
        name = stage_name(stage)
        keys = []
        for key in self.object_store.list(f"{name}/"):
            parsed = parse_object_key(key)
            if parsed is None or parsed[0] != name:
                continue
            if _in_range(parsed[1], date_range):
                keys.append((parsed[1], parsed[2], key))
        return [key for _, _, key in sorted(keys)]

    def read(
        self,
        stage: Union[Stage, str],
        date_range: Optional[DateRange] = None,
        predicate: Optional[RecordPredicate] = None,
        strict: bool = False,
    ) -> Iterator[CanonicalRecord]:
        """
        Lazily read records for a stage.

        The sequence is finite and restartable: re-issuing the same call
        yields the same records in the same order, with no cursor state held
        anywhere.

        Args:
            stage: Pipeline stage
            date_range: Inclusive (start, end) partition dates
            predicate: Optional record filter
            strict: Raise CorruptionError instead of skipping malformed lines

        Yields:
            CanonicalRecord objects
        """
        for key in self.list_objects(stage, date_range):
            data = self.object_store.get(key)
            for line_no, line in enumerate(data.decode("utf-8", errors="replace").splitlines(), start=1):
                if not line.strip():
                    continue
                try:
                    record = CanonicalRecord.from_dict(json.loads(line))
                    if not record.verify_checksum():
                        raise ValueError("payload checksum mismatch")
                except (ValueError, KeyError, TypeError) as e:
                    message = f"Corrupt record at {key}:{line_no}: {e}"
                    if strict:
                        raise CorruptionError(message) from e
                    logger.warning(message)
                    continue

                if predicate is None or predicate(record):
                    yield record

    def processed_keys(
        self,
        stage: Union[Stage, str],
        date_range: Optional[DateRange] = None,
    ) -> Set[Tuple[str, str, str, str]]:
        """
        Collect the dedupe keys already committed for a stage.

        Consumers use this to skip reprocessing records whose
        (entity_type, source_id, schema_version, checksum) they have already
        handled.
        """
        return {record.dedupe_key for record in self.read(stage, date_range)}
