"""Ingests load balancer access logs from S3 into OpenSearch."""

__version__ = "0.1.0"
