import uuid
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.utils import timezone


class OrderModel(models.Model):
    # UUID PK exposed in the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    class Status(models.TextChoices):
        PENDING = "pending"
        CONFIRMED = "confirmed"
        PROCESSING = "processing"
        SHIPPED = "shipped"
        DELIVERED = "delivered"
        CANCELLED = "cancelled"
        RETURNED = "returned"

    class PaymentMethod(models.TextChoices):
        COD = "cod"
        UPI = "upi"
        CARD = "card"
        NETBANKING = "netbanking"

    buyer_id = models.CharField(max_length=64, db_index=True)
    status = models.CharField(max_length=32, choices=Status.choices, default=Status.PENDING)
    payment_method = models.CharField(max_length=16, choices=PaymentMethod.choices)
    discount_code = models.CharField(max_length=64, null=True, blank=True)
    shipping_address = models.JSONField()
    billing_address = models.JSONField()

    subtotal = models.DecimalField(max_digits=12, decimal_places=2)
    discount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    tax = models.DecimalField(max_digits=12, decimal_places=2)
    total = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default="INR")

    reservation_id = models.CharField(max_length=64, null=True, blank=True)
    # Optimistic concurrency token, returned as ETag
    version = models.PositiveIntegerField(default=1)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]


class OrderLineModel(models.Model):
    order = models.ForeignKey(OrderModel, related_name="lines", on_delete=models.CASCADE)
    position = models.PositiveIntegerField()
    product_id = models.CharField(max_length=64)
    quantity = models.PositiveIntegerField()
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    line_discount = models.DecimalField(max_digits=12, decimal_places=2, default=0)

    class Meta:
        db_table = "order_lines"
        ordering = ["position"]
        constraints = [
            models.UniqueConstraint(fields=["order", "position"], name="ux_order_line_position"),
        ]


class StatusChangeModel(models.Model):
    order = models.ForeignKey(OrderModel, related_name="history", on_delete=models.CASCADE)
    status = models.CharField(max_length=32, choices=OrderModel.Status.choices)
    timestamp = models.DateTimeField()
    reason = models.TextField(null=True, blank=True)

    class Meta:
        db_table = "order_status_history"
        ordering = ["id"]


class DiscountCodeModel(models.Model):
    # Stored upper-cased and trimmed
    code = models.CharField(max_length=64, unique=True)
    percent_off = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        validators=[MinValueValidator(Decimal(0)), MaxValueValidator(Decimal(100))],
    )
    valid_from = models.DateTimeField()
    valid_until = models.DateTimeField()
    min_order_value = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    max_discount_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    usage_limit = models.PositiveIntegerField(null=True, blank=True)
    usage_count = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = "discount_codes"

    def save(self, *args, **kwargs):
        self.code = (self.code or "").strip().upper()
        if not Decimal(0) <= Decimal(self.percent_off) <= Decimal(100):
            raise ValidationError({"percent_off": "Must be between 0 and 100."})
        super().save(*args, **kwargs)


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=200, unique=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order_id = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
