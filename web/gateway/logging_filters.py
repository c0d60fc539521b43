"""Logging filter that stamps records with the current request id.

Attach ``RequestIdFilter`` to a handler (see ``LOGGING`` in settings) so the
JSON formatter can emit ``request_id`` on every record, including the ones
written by the orders engine, which never sees the request object.
"""

from logging import Filter, LogRecord

from .middleware import REQUEST_ID_CTX


class RequestIdFilter(Filter):
    """Set ``record.request_id`` from ``REQUEST_ID_CTX`` ("-" outside requests)."""

    def filter(self, record: LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = REQUEST_ID_CTX.get()
        return True
