from django.urls import include, path

from orders.urls import discount_urlpatterns

urlpatterns = [
    path("api/orders/", include("orders.urls")),
    path("api/discounts/", include((discount_urlpatterns, "discounts"))),
]
