"""
Orphan cleanup: delete target rows whose key never appeared in the source.
"""

import logging

from utils.tracing import trace_operation

from .endpoints import TargetEndpoint
from .errors import CleanupError, MirrorError
from .rows import canonical_key
from .tracker import ProcessedKeyTracker

logger = logging.getLogger(__name__)


class OrphanCleaner:
    """
    Scans target keys page by page and deletes the ones the tracker lacks.

    Deletes go out in batches of ``batch_size`` keys, each committed on its
    own. Deletes happen while the key scan is still running; the keyset
    predicate of the scan is unaffected because it only looks forward.
    """

    def __init__(
        self,
        endpoint: TargetEndpoint,
        tracker: ProcessedKeyTracker,
        writer,
        page_size: int = 5000,
        batch_size: int = 500,
    ):
        self.endpoint = endpoint
        self.tracker = tracker
        self.writer = writer
        self.page_size = page_size
        self.batch_size = batch_size
        self.keys_scanned = 0
        self.deleted = 0

    def _flush(self, pending: list[tuple]) -> None:
        self.deleted += self.writer.delete_keys(pending)
        pending.clear()

    def run(self) -> int:
        """
        Delete every orphan row.

        Returns:
            Number of rows deleted

        Raises:
            CleanupError: If scanning or deleting fails; earlier batches stay deleted
        """
        self.deleted = 0
        pending: list[tuple] = []
        last_key: tuple | None = None

        with trace_operation("mirror.cleanup", table=self.endpoint.label) as span:
            try:
                while True:
                    keys = self.endpoint.fetch_key_page(last_key, self.page_size)
                    self.keys_scanned += len(keys)
                    # Compared canonically, deleted by the key the target returned.
                    by_identity = {canonical_key(key): key for key in keys}
                    for identity in self.tracker.missing(by_identity):
                        pending.append(by_identity[identity])
                        if len(pending) >= self.batch_size:
                            self._flush(pending)
                    if len(keys) < self.page_size:
                        break
                    last_key = keys[-1]

                if pending:
                    self._flush(pending)
            except CleanupError:
                raise
            except MirrorError as e:
                raise CleanupError(f"Scanning keys of {self.endpoint.label} failed: {e}") from e

            span.set_attribute("rows_deleted", self.deleted)
            span.set_attribute("keys_scanned", self.keys_scanned)

        logger.info(
            f"Cleanup of {self.endpoint.label}: scanned {self.keys_scanned} keys, "
            f"deleted {self.deleted} orphan rows"
        )
        return self.deleted
