"""HTTP views for the orders app.

This module contains DRF API views used by the orders engine. Views are
kept intentionally small: they validate requests (via Pydantic), call the
``OrderService`` obtained from ``providers.get_order_service()`` and turn
the result, or the engine error, into an HTTP response.

Engine errors carry a stable ``code``; ``STATUS_BY_CODE`` maps it to the
HTTP status and the error body is ``{"detail": code, "message": ...}``.

Concurrency: order responses carry the order ``version`` as an ``ETag``.
Mutating endpoints accept it back in ``If-Match`` and answer 412 when the
order changed in between.

Idempotency: when an ``Idempotency-Key`` header is provided, the create
endpoint stores the first response (success or business error) and
replays it for retries with the same payload, flagged with
``Idempotent-Replay: true``. Reusing the key with a different payload
returns HTTP 409. Retryable failures (503) are not stored, so the client
can retry with the same key.
"""

import json

from django.core.paginator import Paginator
from pydantic import ValidationError as SchemaError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .errors import OrderError, ValidationError
from .idempotency import IdempotencyConflict, finalize, forget, get_or_create_idempotent, is_pending
from .schemas import CancelDTO, CreateOrderDTO, StatusUpdateDTO, ValidateDiscountDTO, order_to_json

STATUS_BY_CODE = {
    "VALIDATION_ERROR": status.HTTP_400_BAD_REQUEST,
    "PRODUCT_UNAVAILABLE": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "INSUFFICIENT_STOCK": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "INVALID_DISCOUNT": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "INVALID_CODE": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "EXPIRED": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "BELOW_MINIMUM": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "USAGE_LIMIT_REACHED": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "INVALID_TRANSITION": status.HTTP_409_CONFLICT,
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "CONFLICTING_UPDATE": status.HTTP_412_PRECONDITION_FAILED,
    "DEPENDENCY_UNAVAILABLE": status.HTTP_503_SERVICE_UNAVAILABLE,
}

MAX_PAGE_SIZE = 100


def error_response(exc: OrderError) -> Response:
    return Response(exc.to_dict(), status=STATUS_BY_CODE.get(exc.code, status.HTTP_400_BAD_REQUEST))


def schema_error_response(exc: SchemaError) -> Response:
    # e.json() keeps validator exceptions serializable
    body = ValidationError("The request payload is invalid.").to_dict()
    body["errors"] = json.loads(exc.json(include_url=False))
    return Response(body, status=status.HTTP_400_BAD_REQUEST)


def order_response(order, status_code=status.HTTP_200_OK) -> Response:
    resp = Response(order_to_json(order), status=status_code)
    resp["ETag"] = f'"{order.version}"'
    return resp


def expected_version(request):
    """Parse ``If-Match`` into an int version, or None when absent or ``*``.

    Raises:
        ValidationError: If the header is not a version ETag.
    """
    raw = request.headers.get("If-Match")
    if not raw or raw.strip() == "*":
        return None
    value = raw.strip()
    if value.startswith("W/"):
        value = value[2:]
    try:
        return int(value.strip('"'))
    except ValueError:
        raise ValidationError("If-Match must carry the order ETag.", field="If-Match")


def _int_param(request, name: str, default: int) -> int:
    try:
        value = int(request.GET.get(name, default))
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer.", field=name)
    if value < 1:
        raise ValidationError(f"{name} must be >= 1.", field=name)
    return value


def _page_params(request) -> tuple:
    return _int_param(request, "page", 1), min(_int_param(request, "page_size", 20), MAX_PAGE_SIZE)


def paginated_response(orders, page: int, page_size: int) -> Response:
    p = Paginator(orders, page_size)
    page_obj = p.get_page(page)
    return Response(
        {
            "count": p.count,
            "page": page_obj.number,
            "page_size": page_size,
            "results": [order_to_json(o) for o in page_obj.object_list],
        },
        status=status.HTTP_200_OK,
    )


class OrdersPingView(APIView):
    """Simple health-check endpoint for the orders module."""

    def get(self, request):
        return Response({"ok": True})


class OrdersCollectionView(APIView):
    """List a buyer's orders (GET) or place a new order (POST)."""

    throttle_classes = [ScopedRateThrottle]

    def get_throttles(self):
        # DRF evaluates throttles in initial(), before get/post
        self.throttle_scope = "orders_list" if self.request.method == "GET" else "orders_create"
        return [throttle() for throttle in self.throttle_classes]

    def get(self, request):
        """List orders of ``buyer_id``, filtered by ``status``, paginated.

        Query params: ``buyer_id`` (required), ``status``, ``sort``
        (recent, oldest, highest, lowest), ``page``, ``page_size``.
        """
        try:
            page, page_size = _page_params(request)
            orders = providers.get_order_service().list_orders(
                request.GET.get("buyer_id", "").strip(),
                status=request.GET.get("status") or None,
                sort=request.GET.get("sort", "recent"),
            )
        except OrderError as e:
            return error_response(e)
        return paginated_response(orders, page, page_size)

    def post(self, request):
        """Create a new order.

        Returns:
            Response: One of the following responses.
            - 201 with the order when it is created.
            - the stored response, with ``Idempotent-Replay: true``, when
              the same idempotency key and payload are retried.
            - 409 with {detail: "IDEMPOTENCY_CONFLICT"} when the key is
              reused with a different payload or is still in progress.
            - 400 for payload validation errors.
            - 422 for unavailable products, insufficient stock and
              rejected discount codes.
            - 503 when the catalog, stock or database is unavailable.
        """
        idem_key = request.headers.get("Idempotency-Key")

        # 1) Pydantic validation
        try:
            dto = CreateOrderDTO.model_validate(request.data)
        except SchemaError as e:
            return schema_error_response(e)

        # 2) Idempotency get-or-create
        rec = None
        if idem_key:
            try:
                existing, rec = get_or_create_idempotent(idem_key, request.data)
            except IdempotencyConflict:
                return Response(
                    {"detail": "IDEMPOTENCY_CONFLICT", "message": "Idempotency-Key reused with a different payload."},
                    status=status.HTTP_409_CONFLICT,
                )
            if existing:
                if is_pending(rec):
                    return Response(
                        {"detail": "IDEMPOTENCY_CONFLICT", "message": "A request with this key is in progress."},
                        status=status.HTTP_409_CONFLICT,
                    )
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        # 3) Domain
        try:
            order = providers.get_order_service().create_order(
                buyer_id=dto.buyer_id,
                items=[(i.product_id, i.quantity) for i in dto.items],
                shipping_address=dto.shipping_address.to_domain(),
                billing_address=dto.billing(),
                payment_method=dto.payment_method.value,
                discount_code=dto.discount_code or None,
            )
        except OrderError as e:
            resp = error_response(e)
            if rec:
                if e.retryable:
                    forget(rec)
                else:
                    finalize(rec, resp.status_code, resp.data)
            return resp
        except Exception:
            if rec:
                forget(rec)
            raise

        # 4) Response
        resp = order_response(order, status.HTTP_201_CREATED)
        if rec:
            finalize(rec, status.HTTP_201_CREATED, resp.data, order_id=order.id)
        return resp


class SellerOrdersView(APIView):
    """Every order in the store for the seller's order screen (GET).

    Query params: ``status``, ``sort`` (recent, oldest, highest, lowest),
    ``page``, ``page_size``.
    """

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_list"

    def get(self, request):
        try:
            page, page_size = _page_params(request)
            orders = providers.get_order_service().list_all_orders(
                status=request.GET.get("status") or None,
                sort=request.GET.get("sort", "recent"),
            )
        except OrderError as e:
            return error_response(e)
        return paginated_response(orders, page, page_size)


class RetrieveOrderView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        try:
            order = providers.get_order_service().get_order(str(oid))
        except OrderError as e:
            return error_response(e)
        return order_response(order)


class CancelOrderView(APIView):
    """Cancel an order that has not shipped yet; stock is released."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_update"

    def post(self, request, oid):
        try:
            dto = CancelDTO.model_validate(request.data)
        except SchemaError as e:
            return schema_error_response(e)
        try:
            order = providers.get_order_service().cancel_order(
                str(oid), dto.reason, expected_version=expected_version(request)
            )
        except OrderError as e:
            return error_response(e)
        return order_response(order)


class OrderStatusView(APIView):
    """Move an order along the status state machine (seller/admin side)."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_update"

    def post(self, request, oid):
        try:
            dto = StatusUpdateDTO.model_validate(request.data)
        except SchemaError as e:
            return schema_error_response(e)
        try:
            order = providers.get_order_service().update_status(
                str(oid), dto.status, reason=dto.reason, expected_version=expected_version(request)
            )
        except OrderError as e:
            return error_response(e)
        return order_response(order)


class ValidateDiscountView(APIView):
    """Checkout preview of a discount code. Does not consume a use."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "discounts"

    def post(self, request):
        try:
            dto = ValidateDiscountDTO.model_validate(request.data)
        except SchemaError as e:
            return schema_error_response(e)
        try:
            applied = providers.get_order_service().validate_discount(dto.code, dto.subtotal)
        except OrderError as e:
            return error_response(e)
        return Response(
            {
                "valid": True,
                "code": applied.code,
                "percent_off": str(applied.percent_off),
                "discount_amount": str(applied.capped_discount_amount),
            },
            status=status.HTTP_200_OK,
        )
