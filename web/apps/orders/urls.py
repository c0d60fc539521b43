from django.urls import path

from .views import (
    CancelOrderView,
    OrdersCollectionView,
    OrdersPingView,
    OrderStatusView,
    RetrieveOrderView,
    SellerOrdersView,
    ValidateDiscountView,
)

app_name = "orders"

urlpatterns = [
    path("ping/", OrdersPingView.as_view(), name="ping"),
    path("", OrdersCollectionView.as_view(), name="orders-collection"),  # GET list / POST create
    path("seller/", SellerOrdersView.as_view(), name="orders-seller"),
    path("<uuid:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("<uuid:oid>/cancel/", CancelOrderView.as_view(), name="orders-cancel"),
    path("<uuid:oid>/status/", OrderStatusView.as_view(), name="orders-status"),
]

discount_urlpatterns = [
    path("validate/", ValidateDiscountView.as_view(), name="discounts-validate"),
]
