"""Target run resolution and duplicate filtering for idempotent re-runs."""

import asyncio
from dataclasses import dataclass, field

import structlog

from qase_migrate.cancellation import CancellationToken
from qase_migrate.client import QaseClient
from qase_migrate.exceptions import TruncatedFetchError
from qase_migrate.models import BulkItem, ResolverState, Run, RunGroup, SourceRecord
from qase_migrate.pagination import PaginatedFetcher

logger = structlog.get_logger(__name__)

RUN_PAGE_SIZE = 100
RESULT_PAGE_SIZE = 100


@dataclass(slots=True)
class Resolution:
    """Where a run group should be posted and what is left to post."""

    run: Run | None = None
    items: list[BulkItem] = field(default_factory=list)
    already_present: int = 0
    created: bool = False
    path: list[ResolverState] = field(default_factory=lambda: [ResolverState.START])

    @property
    def state(self) -> ResolverState:
        return self.path[-1]

    def advance(self, state: ResolverState) -> None:
        self.path.append(state)


class RunResolver:
    """Finds or creates the target run for each group.

    Target runs are matched by exact title, first match wins. The run list is
    scanned once per resolver and runs created afterwards are added to the
    index, so groups resolved later in the same process see them. This index
    is the one piece of shared state workers write to after setup; the writes
    happen under a lock so same-title groups share one run instead of racing.
    Two processes migrating the same runs at the same moment can still both
    create a run with the same title.

    Listings that stop at the page ceiling raise TruncatedFetchError: a
    partial run index would create duplicate runs and a partial presence scan
    would repost results.
    """

    def __init__(
        self,
        client: QaseClient,
        fetcher: PaginatedFetcher,
        *,
        dry_run: bool = False,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self.client = client
        self.fetcher = fetcher
        self.dry_run = dry_run
        self.cancel_token = cancel_token or CancellationToken()
        self._runs_by_title: dict[str, Run] | None = None
        self._lock = asyncio.Lock()
        self._logger = logger.bind(project=client.project, dry_run=dry_run)

    async def _load_runs(self) -> dict[str, Run]:
        if self._runs_by_title is None:
            self.cancel_token.raise_if_cancelled()
            fetched = await self.fetcher.fetch(
                self.client.list_runs,
                page_size=RUN_PAGE_SIZE,
                dedup_key=lambda run: run.id,
                label="target_runs",
            )
            if fetched.truncated:
                raise TruncatedFetchError("target runs", fetched.pages, len(fetched.items))
            index: dict[str, Run] = {}
            for run in fetched.items:
                index.setdefault(run.title, run)
            self._runs_by_title = index
            self._logger.info("Indexed target runs", runs=len(fetched.items))
        return self._runs_by_title

    async def create_run(self, title: str, description: str) -> Run:
        """Create a run, or simulate it in dry run."""
        if self.dry_run:
            self._logger.info("Dry run: would create run", title=title)
            return Run(id=None, title=title, description=description)

        self.cancel_token.raise_if_cancelled()
        return await self.client.create_run(title, description)

    async def find_or_create_run(self, title: str, description: str) -> tuple[Run, bool]:
        """Return the first target run titled ``title``, creating it if absent.

        Returns:
            Tuple of (run, created).
        """
        async with self._lock:
            runs = await self._load_runs()
            existing = runs.get(title)
            if existing is not None:
                self._logger.debug("Found existing run", title=title, run_id=existing.id)
                return existing, False

            run = await self.create_run(title, description)
            runs[title] = run
            return run, True

    async def has_any_results(self, run: Run) -> bool:
        """Probe a run with a single-result page."""
        if run.id is None:
            return False
        self.cancel_token.raise_if_cancelled()
        page = await self.client.list_results(1, 0, run_ids=[run.id])
        return bool(page)

    async def filter_already_posted(
        self, run: Run, items: list[BulkItem]
    ) -> tuple[list[BulkItem], int]:
        """Drop items whose case already has a result in ``run``.

        Presence is keyed on the target case id alone, so a second execution
        of the same case in one source run is treated as already posted.

        Returns:
            Tuple of (remaining items, number dropped).
        """
        if run.id is None:
            return list(items), 0

        self.cancel_token.raise_if_cancelled()
        run_id = run.id

        async def fetch_page(offset: int, limit: int) -> list[SourceRecord]:
            self.cancel_token.raise_if_cancelled()
            return await self.client.list_results(limit, offset, run_ids=[run_id])

        existing = await self.fetcher.fetch(
            fetch_page, page_size=RESULT_PAGE_SIZE, label=f"run_{run_id}_results"
        )
        if existing.truncated:
            raise TruncatedFetchError(
                f"results of target run {run_id}", existing.pages, len(existing.items)
            )
        present = {record.case_id for record in existing.items}
        remaining = [item for item in items if item.case_id not in present]
        return remaining, len(items) - len(remaining)

    async def resolve(
        self,
        group: RunGroup,
        items: list[BulkItem],
        *,
        idempotent: bool = True,
        fast_mode: bool = False,
    ) -> Resolution:
        """Decide the target run and the items to post for one group.

        Raises whatever the client raises; the caller records the group as
        failed in that case.
        """
        resolution = Resolution()
        log = self._logger.bind(source_run_id=group.run_id, title=group.title)

        if not idempotent:
            resolution.run = await self.create_run(group.title, group.description)
            resolution.created = True
            resolution.items = list(items)
            resolution.advance(ResolverState.FOUND_OR_CREATED_TARGET_RUN)
            resolution.advance(ResolverState.READY_TO_POST_ALL)
            return resolution

        run, created = await self.find_or_create_run(group.title, group.description)
        resolution.run = run
        resolution.created = created
        resolution.advance(ResolverState.FOUND_OR_CREATED_TARGET_RUN)

        if fast_mode:
            resolution.items = list(items)
            resolution.advance(ResolverState.READY_TO_POST_ALL)
            return resolution

        if created or not await self.has_any_results(run):
            resolution.advance(ResolverState.HAS_NO_PRIOR_RESULTS)
            resolution.items = list(items)
            resolution.advance(ResolverState.READY_TO_POST_ALL)
            return resolution

        resolution.advance(ResolverState.HAS_PRIOR_RESULTS)
        remaining, dropped = await self.filter_already_posted(run, items)
        resolution.advance(ResolverState.FILTERED)
        resolution.items = remaining
        resolution.already_present = dropped
        resolution.advance(ResolverState.READY_TO_POST_SUBSET)

        log.info(
            "Filtered results already in target run",
            target_run_id=run.id,
            already_present=dropped,
            remaining=len(remaining),
        )
        return resolution
