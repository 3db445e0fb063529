"""
Checkpoint store interface for the resumable ingestion ledger.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from .models import CheckpointRecord


class CheckpointStore(ABC):
    """
    Abstract base class for checkpoint ledgers.

    A checkpoint ledger holds one progress watermark per
    (partition_key, sort_key). Commits are conditional: a watermark may only
    move forward, which is the sole coordination mechanism between
    concurrent ingestion workers.
    """

    @abstractmethod
    def get_checkpoint(self, partition_key: str, sort_key: str) -> Optional[CheckpointRecord]:
        """
        Get the committed checkpoint for a partition.

        Args:
            partition_key: Partition key
            sort_key: Sort key within the partition

        Returns:
            CheckpointRecord if present, None otherwise
        """
        pass

    @abstractmethod
    def commit_checkpoint(
        self,
        partition_key: str,
        sort_key: str,
        proposed: CheckpointRecord,
    ) -> CheckpointRecord:
        """
        Atomically advance the checkpoint for a partition.

        Succeeds if no checkpoint exists yet, or if ``proposed`` does not
        regress the stored offset or last-modified watermark.

        Args:
            partition_key: Partition key
            sort_key: Sort key within the partition
            proposed: Proposed new watermark

        Returns:
            The committed CheckpointRecord (with updated_at set)

        Raises:
            StaleCheckpointError: If a concurrent writer already advanced past
                the proposed watermark
        """
        pass

    @abstractmethod
    def list_checkpoints(self, partition_key: Optional[str] = None) -> List[CheckpointRecord]:
        """
        List committed checkpoints, optionally for a single partition key.

        Returns:
            Checkpoints ordered by (partition_key, sort_key)
        """
        pass

    def close(self) -> None:
        """Close any open resources. Optional."""
        pass
