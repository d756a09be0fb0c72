from django.urls import path

from .views import (
    JobCreateView,
    JobDetailView,
    PaymentAllocateView,
    PaymentCreateView,
    PaymentReverseView,
    TenantSaldoView,
)

urlpatterns = [
    path("payments/", PaymentCreateView.as_view(), name="payment_create"),
    path("payments/<int:pk>/allocate/", PaymentAllocateView.as_view(), name="payment_allocate"),
    path("payments/<int:pk>/reverse/", PaymentReverseView.as_view(), name="payment_reverse"),
    path("tenants/<int:pk>/saldo/", TenantSaldoView.as_view(), name="tenant_saldo"),
    path("jobs/", JobCreateView.as_view(), name="job_create"),
    path("jobs/<int:pk>/", JobDetailView.as_view(), name="job_detail"),
]
