from dataclasses import asdict, dataclass


@dataclass
class FileRunStats:
    """Counters for one source object, scoped to a single ingest run."""

    bucket: str
    key: str
    bytes_in: int = 0
    lines_seen: int = 0
    lines_indexed: int = 0
    parse_misses: int = 0
    dropped_records: int = 0
    item_errors: int = 0
    flushes: int = 0
    gzip_candidates: int = 0
    gzip_members: int = 0
    gzip_member_failures: int = 0

    @property
    def errors(self) -> int:
        return (
            self.parse_misses
            + self.dropped_records
            + self.item_errors
            + self.gzip_member_failures
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["errors"] = self.errors
        return data
