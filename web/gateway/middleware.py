"""Middleware that assigns and propagates a request identifier.

Every incoming HTTP request receives a request identifier. It is read from
the incoming ``X-Request-Id`` header when the client (or an upstream proxy)
provides one, or generated server-side otherwise. The id is stored on the
``request`` object and in ``REQUEST_ID_CTX`` so downstream code (the JSON
log filter, the HTTP adapters that call the inventory service) can use it
without passing it around. Responses echo it in ``X-Request-ID``.
"""

import contextvars
import uuid

from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")


class RequestIdMiddleware(MiddlewareMixin):
    """Django middleware that sets and returns a per-request identifier."""

    HEADER = "HTTP_X_REQUEST_ID"       # incoming header as found in request.META
    RESPONSE_HEADER = "X-Request-ID"   # header added to outgoing responses

    def process_request(self, request):
        rid = request.META.get(self.HEADER) or str(uuid.uuid4())
        request.request_id = rid
        request._request_id_token = REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        token = getattr(request, "_request_id_token", None)
        if token is not None:
            # Worker threads are reused; do not leak the id into the next request.
            REQUEST_ID_CTX.reset(token)
            request._request_id_token = None
        return response
