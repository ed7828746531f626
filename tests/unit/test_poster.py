"""Unit tests for the bulk poster."""

from unittest.mock import AsyncMock, patch

import pytest

from qase_migrate.cancellation import CancellationToken
from qase_migrate.exceptions import (
    BulkPostError,
    ClientError,
    MalformedResponseError,
    MigrationCancelledError,
    NetworkError,
    RateLimitError,
    ServerError,
)
from qase_migrate.models import BulkItem
from qase_migrate.poster import BulkPoster, chunked

# Test constants
RUN_ID = 42
CHUNK_SIZE = 200
DELAYS = (0.2, 1.0, 3.0, 5.0)


def make_items(count: int) -> list[BulkItem]:
    return [BulkItem(case_id=i, status="passed") for i in range(count)]


def all_created(run_id, chunk):
    return [True] * len(chunk)


@pytest.fixture
def token():
    """Cancellation token whose backoff sleep is recorded instead of awaited."""
    token = CancellationToken()
    with patch.object(token, "sleep", AsyncMock()):
        yield token


def slept(token) -> list[float]:
    return [call.args[0] for call in token.sleep.await_args_list]


@pytest.mark.asyncio
class TestBulkPoster:
    """Test chunked posting and retry."""

    async def test_chunks_post_each_item_once(self, mock_target_client, token):
        mock_target_client.create_results_bulk.side_effect = all_created
        items = make_items(450)
        poster = BulkPoster(mock_target_client, chunk_size=CHUNK_SIZE, cancel_token=token)

        summary = await poster.post(RUN_ID, items)

        calls = mock_target_client.create_results_bulk.await_args_list
        assert len(calls) == 3
        assert [len(call.args[1]) for call in calls] == [200, 200, 50]
        assert [item for call in calls for item in call.args[1]] == items
        assert summary.posted == 450
        assert summary.chunks == 3

    async def test_chunk_size_override(self, mock_target_client, token):
        mock_target_client.create_results_bulk.side_effect = all_created
        poster = BulkPoster(mock_target_client, cancel_token=token)

        summary = await poster.post(RUN_ID, make_items(10), chunk_size=3)

        assert summary.chunks == 4

    async def test_no_items_no_calls(self, mock_target_client, token):
        poster = BulkPoster(mock_target_client, cancel_token=token)

        summary = await poster.post(RUN_ID, [])

        assert summary.posted == 0
        mock_target_client.create_results_bulk.assert_not_awaited()

    async def test_retries_server_errors_with_fixed_delays(self, mock_target_client, token):
        mock_target_client.create_results_bulk.side_effect = [
            ServerError("unavailable", 503),
            ServerError("unavailable", 503),
            ServerError("unavailable", 503),
            [True] * 5,
        ]
        poster = BulkPoster(mock_target_client, retry_delays=DELAYS, cancel_token=token)

        summary = await poster.post(RUN_ID, make_items(5))

        assert summary.posted == 5
        assert mock_target_client.create_results_bulk.await_count == 4
        assert slept(token) == [0.2, 1.0, 3.0]

    @pytest.mark.parametrize(
        "error",
        [RateLimitError("slow down", 429), NetworkError("reset")],
    )
    async def test_retries_other_transient_errors(self, mock_target_client, token, error):
        mock_target_client.create_results_bulk.side_effect = [error, [True]]
        poster = BulkPoster(mock_target_client, retry_delays=DELAYS, cancel_token=token)

        summary = await poster.post(RUN_ID, make_items(1))

        assert summary.posted == 1
        assert slept(token) == [0.2]

    @pytest.mark.parametrize(
        "error",
        [ClientError("bad request", 400), MalformedResponseError("not json", 200)],
    )
    async def test_permanent_errors_not_retried(self, mock_target_client, token, error):
        mock_target_client.create_results_bulk.side_effect = error
        poster = BulkPoster(mock_target_client, retry_delays=DELAYS, cancel_token=token)

        with pytest.raises(BulkPostError) as exc_info:
            await poster.post(RUN_ID, make_items(5))

        assert exc_info.value.cause is error
        assert exc_info.value.posted == 0
        assert mock_target_client.create_results_bulk.await_count == 1
        assert slept(token) == []

    async def test_exhausted_retries(self, mock_target_client, token):
        mock_target_client.create_results_bulk.side_effect = ServerError("down", 500)
        poster = BulkPoster(mock_target_client, retry_delays=DELAYS, cancel_token=token)

        with pytest.raises(BulkPostError) as exc_info:
            await poster.post(RUN_ID, make_items(5))

        assert isinstance(exc_info.value.cause, ServerError)
        assert mock_target_client.create_results_bulk.await_count == len(DELAYS) + 1
        assert slept(token) == list(DELAYS)

    async def test_failure_stops_remaining_chunks(self, mock_target_client, token):
        mock_target_client.create_results_bulk.side_effect = [
            [True] * 2,
            ClientError("bad request", 400),
        ]
        poster = BulkPoster(mock_target_client, chunk_size=2, cancel_token=token)

        with pytest.raises(BulkPostError) as exc_info:
            await poster.post(RUN_ID, make_items(6))

        assert exc_info.value.chunk_index == 2
        assert exc_info.value.total_chunks == 3
        assert exc_info.value.posted == 2
        assert mock_target_client.create_results_bulk.await_count == 2

    async def test_rejected_items_counted_as_failed(self, mock_target_client, token):
        mock_target_client.create_results_bulk.return_value = [True, False, True]
        poster = BulkPoster(mock_target_client, cancel_token=token)

        summary = await poster.post(RUN_ID, make_items(3))

        assert summary.posted == 2
        assert summary.failed == 1

    async def test_dry_run_sends_nothing(self, mock_target_client, token):
        poster = BulkPoster(mock_target_client, dry_run=True, chunk_size=2, cancel_token=token)

        summary = await poster.post(RUN_ID, make_items(5))

        assert summary.posted == 5
        assert summary.chunks == 3
        mock_target_client.create_results_bulk.assert_not_awaited()

    async def test_live_post_requires_run_id(self, mock_target_client, token):
        poster = BulkPoster(mock_target_client, cancel_token=token)

        with pytest.raises(ValueError, match="run id"):
            await poster.post(None, make_items(2))
        mock_target_client.create_results_bulk.assert_not_awaited()

    async def test_dry_run_accepts_simulated_run(self, mock_target_client, token):
        poster = BulkPoster(mock_target_client, dry_run=True, cancel_token=token)

        summary = await poster.post(None, make_items(2))

        assert summary.posted == 2

    async def test_cancelled_before_first_chunk(self, mock_target_client, token):
        token.cancel("timeout")
        poster = BulkPoster(mock_target_client, cancel_token=token)

        with pytest.raises(MigrationCancelledError):
            await poster.post(RUN_ID, make_items(1))
        mock_target_client.create_results_bulk.assert_not_awaited()

    async def test_cancellation_interrupts_backoff(self, mock_target_client):
        token = CancellationToken()

        async def fail_and_cancel(run_id, chunk):
            token.cancel("timeout")
            raise ServerError("down", 503)

        mock_target_client.create_results_bulk.side_effect = fail_and_cancel
        poster = BulkPoster(mock_target_client, retry_delays=(60.0,), cancel_token=token)

        with pytest.raises(MigrationCancelledError):
            await poster.post(RUN_ID, make_items(1))
        assert mock_target_client.create_results_bulk.await_count == 1


def test_chunked():
    assert [len(chunk) for chunk in chunked(make_items(5), 2)] == [2, 2, 1]
    assert chunked([], 2) == []
