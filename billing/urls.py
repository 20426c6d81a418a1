# billing/urls.py
# -*- coding: utf-8 -*-
"""
Rutas del flujo SRI. Se incluyen desde saas/urls.py como:
    path("api/billing/", include("billing.urls", namespace="billing"))
"""

from __future__ import annotations

from rest_framework.routers import DefaultRouter

from billing.views import (
    CreditNoteViewSet,
    DebitNoteViewSet,
    InvoiceViewSet,
    RetentionViewSet,
)

app_name = "billing"

router = DefaultRouter()
router.register(r"invoices", InvoiceViewSet, basename="invoice")
router.register(r"credit-notes", CreditNoteViewSet, basename="credit-note")
router.register(r"debit-notes", DebitNoteViewSet, basename="debit-note")
router.register(r"retentions", RetentionViewSet, basename="retention")

urlpatterns = router.urls
