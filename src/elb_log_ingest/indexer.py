# src/elb_log_ingest/indexer.py

"""
Buffered bulk indexing of transformed records.

`BatchingIndexer` accumulates records and sends them to the search cluster
as one bulk request per page. Records are routed to a daily index derived
from their `@timestamp`. Problems with single records (unparseable
timestamps, per-document rejections) are logged and counted; a failure of
the bulk request as a whole raises `BulkIndexError` and is never retried
here.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from opensearchpy import OpenSearch
from opensearchpy.exceptions import OpenSearchException

from .exceptions import BulkIndexError, IndexingTimeoutError
from .stats import FileRunStats
from .transform import TIME_AXIS_FIELD, Record

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10_000
INDEX_TEMPLATE = "logstash-{prefix}-{date}"


class Deadline:
    """
    Remaining-time budget for an invocation.

    `remaining_ms` is typically `LambdaContext.get_remaining_time_in_millis`.
    Work must stop once fewer than `guard_ms` milliseconds remain.
    """

    def __init__(self, remaining_ms: Callable[[], int], guard_ms: int = 0):
        self._remaining_ms = remaining_ms
        self.guard_ms = guard_ms

    @classmethod
    def from_context(cls, context: Any, guard_ms: int) -> "Deadline":
        return cls(context.get_remaining_time_in_millis, guard_ms)

    def budget_ms(self) -> int:
        """Milliseconds that may still be spent; raises once the guard is hit."""
        remaining = self._remaining_ms()
        if remaining < self.guard_ms:
            raise IndexingTimeoutError(remaining_time_ms=remaining)
        return remaining - self.guard_ms


def index_name_for(record: Record, index_prefix: str) -> str | None:
    """Daily index for *record*, or None when its timestamp is unusable."""
    value = record.get(TIME_AXIS_FIELD)
    if not isinstance(value, str):
        return None
    try:
        timestamp = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc)
    return INDEX_TEMPLATE.format(prefix=index_prefix, date=timestamp.strftime("%Y.%m.%d"))


class BatchingIndexer:
    """
    Buffers records and flushes them in pages of at most `page_size`.

    Adding a record to a full buffer flushes the buffer first, so a batch
    never exceeds `page_size`. Call `close()` once input is exhausted to
    flush the remainder.
    """

    def __init__(
        self,
        client: OpenSearch,
        index_prefix: str,
        stats: FileRunStats,
        page_size: int = DEFAULT_PAGE_SIZE,
        document_type: str | None = None,
        request_timeout: float | None = None,
        deadline: Deadline | None = None,
    ):
        if page_size <= 0:
            raise ValueError("page_size must be a positive integer")
        self._client = client
        self.index_prefix = index_prefix
        self.stats = stats
        self.page_size = page_size
        self.document_type = document_type
        self.request_timeout = request_timeout
        self.deadline = deadline
        self._buffer: list[tuple[Record, str | None]] = []

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def add(self, record: Record, doc_id: str | None = None) -> None:
        if len(self._buffer) >= self.page_size:
            self.flush()
        self._buffer.append((record, doc_id))

    def close(self) -> None:
        self.flush()

    def _build_actions(self, batch: list[tuple[Record, str | None]]) -> list[dict]:
        actions: list[dict] = []
        dropped = 0
        for record, doc_id in batch:
            index = index_name_for(record, self.index_prefix)
            if index is None:
                dropped += 1
                continue
            meta: dict[str, Any] = {"_index": index}
            if self.document_type:
                meta["_type"] = self.document_type
            if doc_id:
                meta["_id"] = doc_id
            actions.append({"index": meta})
            actions.append(record)

        if dropped:
            self.stats.dropped_records += dropped
            logger.warning(
                "ESError-Prepare - Records without a usable timestamp were ignored.",
                extra={"dropped": dropped, "batch_size": len(batch)},
            )
        return actions

    def _timeout_seconds(self) -> float | None:
        timeout = self.request_timeout
        if self.deadline is not None:
            budget = self.deadline.budget_ms() / 1000
            timeout = budget if timeout is None else min(timeout, budget)
        return timeout

    def flush(self) -> None:
        """
        Send the buffered records as one bulk request.

        Raises BulkIndexError when the request fails as a whole, and
        IndexingTimeoutError when the deadline leaves no time to send it.
        """
        if not self._buffer:
            return

        # The batch is detached before sending and never touched again.
        batch, self._buffer = self._buffer, []
        actions = self._build_actions(batch)
        count = len(actions) // 2
        if count == 0:
            return

        timeout = self._timeout_seconds()
        logger.info("ESInfo - Sending batch", extra={"documents": count})

        params: dict[str, Any] = {}
        if timeout is not None:
            params["request_timeout"] = timeout
        try:
            response = self._client.bulk(body=actions, **params)
        except OpenSearchException as e:
            logger.error(
                "ESError-Send - Bulk request failed.",
                extra={"documents": count, "error": str(e)},
            )
            raise BulkIndexError(
                str(e),
                context={
                    "documents": count,
                    "status_code": getattr(e, "status_code", None),
                },
            ) from e

        self._check_response(response, count)

    def _check_response(self, response: Any, count: int) -> None:
        if not isinstance(response, dict) or "items" not in response:
            raise BulkIndexError(
                "response carried no item results", context={"documents": count}
            )

        server_error = response.get("error")
        if server_error:
            reason = (
                server_error.get("reason")
                if isinstance(server_error, dict)
                else str(server_error)
            )
            logger.error("ESError-ServerError - %s", reason)
            raise BulkIndexError(str(reason), context={"documents": count})

        item_errors = 0
        if response.get("errors"):
            for item in response["items"]:
                result = next(iter(item.values()), {})
                error = result.get("error")
                if not error:
                    continue
                item_errors += 1
                reason = error.get("reason") if isinstance(error, dict) else error
                logger.warning(
                    "ESError-Response - %s",
                    reason,
                    extra={"index": result.get("_index"), "status": result.get("status")},
                )

        indexed = len(response["items"]) - item_errors
        self.stats.item_errors += item_errors
        self.stats.lines_indexed += indexed
        self.stats.flushes += 1
        logger.info(
            "ESInfo - Sent batch",
            extra={"documents": count, "indexed": indexed, "item_errors": item_errors},
        )
