"""
List-then-delete of many objects with bounded concurrency.

At most MAX_PARALLEL_DELETES delete requests are in flight at any time.
Without `force`, the first failed delete stops admission of new deletes;
deletes already in flight are allowed to finish.
"""
import asyncio
import logging
import time
from typing import Any, List, Mapping, Optional

from bucketstream.storage.bucket_ops import BucketOperations
from bucketstream.storage.errors import StorageError
from bucketstream.storage.models import (
    BulkDeleteResult,
    BulkDeleteStatus,
    DeleteOutcome,
    ObjectRef,
)
from bucketstream.utils.logging import log_bulk_delete_completed, log_request_failure
from bucketstream.utils.metrics import storage_deletes_in_flight

logger = logging.getLogger(__name__)

MAX_PARALLEL_DELETES = 10


class BulkDeleteCoordinator:
    """Deletes every object of one listing page."""

    def __init__(self, bucket_ops: BucketOperations, max_parallel: int = MAX_PARALLEL_DELETES):
        if max_parallel < 1:
            raise ValueError("max_parallel must be >= 1")
        self._bucket_ops = bucket_ops
        self._max_parallel = max_parallel

    async def delete_matching(
        self,
        bucket: str,
        query: Optional[Mapping[str, Any]] = None,
        force: bool = False
    ) -> BulkDeleteResult:
        """
        List objects matching `query` and delete them.

        Only the first listing page is processed; follow
        `BucketOperations.iter_pages` for larger sets.

        Args:
            bucket: Bucket name
            query: List parameters
            force: Record per-object failures and keep going

        Returns:
            BulkDeleteResult with status success, partial_failure (force and
            some deletes failed) or fatal (listing failed, or a delete failed
            without force). Every listed key appears once in `outcomes`.
        """
        start_time = time.time()

        try:
            page = await self._bucket_ops.list_page(bucket, query)
        except StorageError as e:
            log_request_failure(logger, operation="list", error=str(e), bucket=bucket)
            return BulkDeleteResult(status=BulkDeleteStatus.FATAL, error=e)

        keys = page.names
        outcomes: List[Optional[DeleteOutcome]] = [None] * len(keys)
        pending = iter(enumerate(keys))
        fatal_error: Optional[BaseException] = None

        async def worker() -> None:
            nonlocal fatal_error
            # Workers share one iterator, so each key is taken exactly once
            for index, key in pending:
                if fatal_error is not None:
                    outcomes[index] = DeleteOutcome(key=key, attempted=False)
                    continue

                storage_deletes_in_flight.inc()
                try:
                    await self._bucket_ops.delete(ObjectRef(bucket=bucket, key=key))
                except StorageError as e:
                    outcomes[index] = DeleteOutcome(key=key, error=e)
                    if not force and fatal_error is None:
                        fatal_error = e
                else:
                    outcomes[index] = DeleteOutcome(key=key)
                finally:
                    storage_deletes_in_flight.dec()

        workers = min(self._max_parallel, len(keys))
        await asyncio.gather(*(worker() for _ in range(workers)))

        result_outcomes = [outcome for outcome in outcomes if outcome is not None]
        failed = sum(1 for outcome in result_outcomes if outcome.error is not None)

        if fatal_error is not None:
            result = BulkDeleteResult(
                status=BulkDeleteStatus.FATAL,
                outcomes=result_outcomes,
                error=fatal_error
            )
        elif failed:
            result = BulkDeleteResult(status=BulkDeleteStatus.PARTIAL_FAILURE, outcomes=result_outcomes)
        else:
            result = BulkDeleteResult(status=BulkDeleteStatus.SUCCESS, outcomes=result_outcomes)

        log_bulk_delete_completed(
            logger,
            bucket=bucket,
            status=result.status.value,
            total=len(keys),
            failed=failed,
            duration_ms=(time.time() - start_time) * 1000,
        )
        return result
