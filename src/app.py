# src/app.py          <-- keep it at the top level of the ZIP
# Handler path:  app.handler
#
# Lambda resolves the handler from the ZIP root; the real entry point lives
# in the elb_log_ingest package.

from elb_log_ingest.app import handler  # noqa: F401
