# src/elb_log_ingest/transform.py

"""Turns one access-log line into the document that gets indexed."""

from typing import Any

from .grok import GrokPattern

TIMESTAMP_FIELD = "timestamp"
TIME_AXIS_FIELD = "@timestamp"
COMPOSITE_FIELD = "urihost"
SOURCE_FIELD = "logbucket"

# Fields never sent to the index.
DENYLIST = frozenset(
    {
        "message",
        "urihost",
        "version",
        "port",
        "httpversion",
        "backendport",
        "backendip",
        "rawrequest",
        "user_agent",
        "inboundport",
        "request",
        "received_bytes",
        "params",
        "clientport",
        "@version",
    }
)

Record = dict[str, Any]


class RecordTransformer:
    """
    Applies the primary pattern to a line, splits the composite host field
    with the secondary pattern, and shapes the result for indexing.
    """

    def __init__(self, primary: GrokPattern, secondary: GrokPattern, source_id: str):
        self.primary = primary
        self.secondary = secondary
        self.source_id = source_id

    def transform(self, line: str) -> Record | None:
        """Return the finished record, or None when the line does not match."""
        captures = self.primary.match(line)
        if captures is None:
            return None

        composite = captures.get(COMPOSITE_FIELD)
        if composite is not None:
            derived = self.secondary.match(str(composite)) or {}
            for name, value in derived.items():
                captures[name] = value.lower() if isinstance(value, str) else value

        record: Record = {}
        for name, value in captures.items():
            if name == TIMESTAMP_FIELD:
                record[TIME_AXIS_FIELD] = value
            elif name not in DENYLIST:
                record[name] = value

        record[SOURCE_FIELD] = self.source_id
        return record
