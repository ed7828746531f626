"""Chunked bulk posting of results with retry on transient failures."""

from collections.abc import Sequence
from dataclasses import dataclass

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_chain,
    wait_fixed,
    wait_none,
)

from qase_migrate.cancellation import CancellationToken
from qase_migrate.client import QaseClient
from qase_migrate.exceptions import BulkPostError, MigrationCancelledError, is_retryable
from qase_migrate.models import BulkItem

logger = structlog.get_logger(__name__)

DEFAULT_CHUNK_SIZE = 200
DEFAULT_RETRY_DELAYS = (0.2, 1.0, 3.0, 5.0)


@dataclass(slots=True)
class PostSummary:
    """Counts for one run's bulk posts."""

    posted: int = 0
    failed: int = 0
    chunks: int = 0


def chunked(items: Sequence[BulkItem], size: int) -> list[Sequence[BulkItem]]:
    return [items[start : start + size] for start in range(0, len(items), size)]


class BulkPoster:
    """Posts bulk items to a target run in sequential chunks.

    Each chunk is retried on 429, 5xx and transport errors, waiting the
    configured delays in turn. Any other failure, or running out of delays,
    stops the run at that chunk.
    """

    def __init__(
        self,
        client: QaseClient,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        dry_run: bool = False,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self.client = client
        self.chunk_size = chunk_size
        self.retry_delays = tuple(retry_delays)
        self.dry_run = dry_run
        self.cancel_token = cancel_token or CancellationToken()
        self._logger = logger.bind(project=client.project, dry_run=dry_run)

    def _retrying(self, log: structlog.stdlib.BoundLogger) -> AsyncRetrying:
        if self.retry_delays:
            wait = wait_chain(*(wait_fixed(delay) for delay in self.retry_delays))
        else:
            wait = wait_none()

        def log_retry(retry_state: RetryCallState) -> None:
            log.warning(
                "Bulk post failed, will retry",
                attempt=retry_state.attempt_number,
                delay=retry_state.next_action.sleep if retry_state.next_action else None,
                error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
            )

        return AsyncRetrying(
            stop=stop_after_attempt(len(self.retry_delays) + 1),
            wait=wait,
            retry=retry_if_exception(is_retryable),
            sleep=self.cancel_token.sleep,
            before_sleep=log_retry,
            reraise=True,
        )

    async def _post_chunk(
        self, run_id: int, chunk: Sequence[BulkItem], log: structlog.stdlib.BoundLogger
    ) -> list[bool]:
        async for attempt in self._retrying(log):
            with attempt:
                self.cancel_token.raise_if_cancelled()
                return await self.client.create_results_bulk(run_id, list(chunk))
        raise AssertionError("unreachable")

    async def post(
        self,
        run_id: int | None,
        items: Sequence[BulkItem],
        chunk_size: int | None = None,
    ) -> PostSummary:
        """Post every item exactly once, chunk by chunk.

        Raises:
            BulkPostError: When a chunk cannot be posted. Later chunks are
                not attempted.
            MigrationCancelledError: When the cancellation token is set.
            ValueError: When ``run_id`` is None outside dry run.
        """
        size = chunk_size or self.chunk_size
        chunks = chunked(items, size)
        summary = PostSummary(chunks=len(chunks))
        log = self._logger.bind(run_id=run_id, items=len(items), chunks=len(chunks))

        if self.dry_run:
            summary.posted = len(items)
            log.info("Dry run: would post results")
            return summary
        if run_id is None:
            raise ValueError("a target run id is required outside dry run")

        for index, chunk in enumerate(chunks, start=1):
            self.cancel_token.raise_if_cancelled()
            try:
                flags = await self._post_chunk(run_id, chunk, log.bind(chunk=index))
            except MigrationCancelledError:
                raise
            except Exception as e:
                log.error(
                    "Bulk post chunk failed",
                    chunk=index,
                    posted=summary.posted,
                    error=str(e),
                )
                raise BulkPostError(index, len(chunks), summary.posted, e) from e

            rejected = flags.count(False)
            summary.posted += len(flags) - rejected
            summary.failed += rejected
            if rejected:
                log.warning("Service rejected some results", chunk=index, rejected=rejected)
            log.debug("Posted chunk", chunk=index, posted=summary.posted)

        log.info("Posted results", posted=summary.posted, failed=summary.failed)
        return summary
