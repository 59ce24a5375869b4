# src/elb_log_ingest/patterns.py

"""Grok definitions for load balancer access-log lines."""

from .grok import GrokPattern

# Classic Load Balancer: plain-text objects.
CLB_PATTERN = (
    r"%{TIMESTAMP_ISO8601:timestamp} %{NOTSPACE:elb} "
    r"%{IP:clientip}:%{INT:clientport:int} "
    r"(?:(?:%{IP:backendip}:?:%{INT:backendport:int})|-) "
    r"%{NUMBER:request_processing_time:float} "
    r"%{NUMBER:backend_processing_time:float} "
    r"%{NUMBER:response_processing_time:float} "
    r"(?:-|%{INT:elb_status_code:int}) (?:-|%{INT:backend_status_code:int}) "
    r"%{INT:received_bytes:int} %{INT:sent_bytes:int} "
    r'"%{ELB_REQUEST_LINE}" "(?:-|%{DATA:user_agent})" '
    r"(?:-|%{NOTSPACE:ssl_cipher}) (?:-|%{NOTSPACE:ssl_protocol})"
)

# Application Load Balancer: gzip objects, with a leading connection type and
# trailing target group / trace id.
ALB_PATTERN = (
    r"%{NOTSPACE:conn_type} " + CLB_PATTERN + r" %{NOTSPACE:target_group} "
    r'"Root=%{NOTSPACE:trace_id}"'
)

# Splits the `urihost` capture ("host:port") at its first colon.
DOMAIN_PATTERN = r"^%{DATA:domain}:%{GREEDYDATA:inboundport}$"

COMPRESSED_SUFFIX = ".gz"


def is_compressed_key(key: str) -> bool:
    return key.endswith(COMPRESSED_SUFFIX)


class PatternSet:
    """Compiled primary patterns plus the shared host:port splitter."""

    def __init__(self):
        self.clb = GrokPattern(CLB_PATTERN)
        self.alb = GrokPattern(ALB_PATTERN)
        self.domain = GrokPattern(DOMAIN_PATTERN)

    def select(self, key: str) -> GrokPattern:
        """ALB delivers gzip objects; anything else is a Classic ELB log."""
        return self.alb if is_compressed_key(key) else self.clb
