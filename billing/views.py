# billing/views.py
# -*- coding: utf-8 -*-
"""
API REST del flujo SRI por tipo de comprobante:

    /api/billing/<invoices|credit-notes|debit-notes|retentions>/
    /api/billing/<...>/<id>/generate-xml/           POST
    /api/billing/<...>/<id>/sign/                   POST
    /api/billing/<...>/<id>/submit/                 POST
    /api/billing/<...>/<id>/check-authorization/    POST
    /api/billing/<...>/<id>/prepare-resubmission/   POST
    /api/billing/<...>/<id>/ride/                   POST
    /api/billing/<...>/<id>/status/                 POST
    /api/billing/<...>/<id>/sri-errors/             GET

El tenant sale de la cabecera X-Tenant-ID (ver billing.permissions).
"""

from __future__ import annotations

import logging
from typing import Optional

from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from billing.filters import ElectronicDocumentFilter, SriErrorLogFilter
from billing.models import CreditNote, DebitNote, Invoice, Retention
from billing.pagination import BillingPagination
from billing.permissions import CanOperateSri, HasTenantAccess
from billing.serializers import (
    CreditNoteSerializer,
    DebitNoteSerializer,
    InvoiceSerializer,
    RetentionSerializer,
    SriErrorLogSerializer,
    StatusChangeSerializer,
)
from billing.services.sri.results import ErrorCode, WorkflowResult
from billing.services.sri.workflow import DocumentSubmissionOrchestrator

logger = logging.getLogger(__name__)

HTTP_STATUS_BY_ERROR = {
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.TENANT_CONTEXT_MISSING: status.HTTP_403_FORBIDDEN,
    ErrorCode.REMOTE_SUBMISSION_FAILED: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.UNEXPECTED_FAILURE: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.CANCELLED: status.HTTP_409_CONFLICT,
    ErrorCode.INVALID_STATE_TRANSITION: status.HTTP_409_CONFLICT,
}


def result_response(result: WorkflowResult) -> Response:
    """
    WorkflowResult -> Response. Fallas de validación/precondición son 400.
    """
    if result.ok:
        value = result.value if isinstance(result.value, dict) else {}
        return Response({"detail": result.message, **value}, status=status.HTTP_200_OK)

    http_status = HTTP_STATUS_BY_ERROR.get(result.error, status.HTTP_400_BAD_REQUEST)
    body = {"detail": result.message, "code": result.error.value}
    if result.errors:
        body["errors"] = result.errors
    return Response(body, status=http_status)


class ElectronicDocumentViewSet(viewsets.ReadOnlyModelViewSet):
    """
    Base para los cuatro tipos de comprobante: listado/detalle del estado SRI
    y acciones del flujo. Las subclases fijan `document_model` y el serializer.
    """

    document_model = None
    pagination_class = BillingPagination
    filterset_class = ElectronicDocumentFilter
    permission_classes = [IsAuthenticated, HasTenantAccess, CanOperateSri]
    ordering_fields = ["issue_date", "sequential", "status", "total"]

    orchestrator_class = DocumentSubmissionOrchestrator

    def get_queryset(self):
        context = getattr(self.request, "tenant_context", None)
        if context is None:
            return self.document_model.objects.none()
        return (
            self.document_model.objects.alive()
            .for_tenant(context.tenant_id)
            .select_related("emission_point__establishment")
            .order_by("-issue_date", "-id")
        )

    def get_orchestrator(self) -> DocumentSubmissionOrchestrator:
        return self.orchestrator_class()

    def _run(self, operation: str, pk: Optional[str]) -> Response:
        document_id = self._document_id(pk)
        if document_id is None:
            return Response({"detail": "Comprobante no encontrado."}, status=status.HTTP_404_NOT_FOUND)

        orchestrator = self.get_orchestrator()
        result = getattr(orchestrator, operation)(
            self.request.tenant_context,
            self.document_model.DOCUMENT_TYPE,
            document_id,
        )
        if not result.ok:
            logger.info(
                "%s %s id=%s -> %s: %s",
                operation,
                self.document_model.__name__,
                document_id,
                result.error.value,
                result.message,
            )
        return result_response(result)

    @staticmethod
    def _document_id(pk) -> Optional[int]:
        try:
            return int(pk)
        except (TypeError, ValueError):
            return None

    # -------------------------
    # Acciones del flujo SRI
    # -------------------------

    @action(detail=True, methods=["post"], url_path="generate-xml")
    def generate_xml(self, request, pk: Optional[str] = None):
        return self._run("generate_xml", pk)

    @action(detail=True, methods=["post"], url_path="sign")
    def sign(self, request, pk: Optional[str] = None):
        return self._run("sign_xml", pk)

    @action(detail=True, methods=["post"], url_path="submit")
    def submit(self, request, pk: Optional[str] = None):
        return self._run("submit_to_sri", pk)

    @action(detail=True, methods=["post"], url_path="check-authorization")
    def check_authorization(self, request, pk: Optional[str] = None):
        return self._run("check_authorization", pk)

    @action(detail=True, methods=["post"], url_path="prepare-resubmission")
    def prepare_resubmission(self, request, pk: Optional[str] = None):
        """
        Reconoce el rechazo del SRI y regenera + firma el comprobante.
        Los errores previos quedan en /sri-errors/.
        """
        return self._run("prepare_resubmission", pk)

    @action(detail=True, methods=["post"], url_path="ride")
    def ride(self, request, pk: Optional[str] = None):
        return self._run("generate_ride", pk)

    @action(detail=True, methods=["post"], url_path="status")
    def change_status(self, request, pk: Optional[str] = None):
        serializer = StatusChangeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        document_id = self._document_id(pk)
        if document_id is None:
            return Response({"detail": "Comprobante no encontrado."}, status=status.HTTP_404_NOT_FOUND)

        result = self.get_orchestrator().change_status(
            request.tenant_context,
            self.document_model.DOCUMENT_TYPE,
            document_id,
            serializer.validated_data["status"],
        )
        return result_response(result)

    @action(detail=True, methods=["get"], url_path="sri-errors")
    def sri_errors(self, request, pk: Optional[str] = None):
        document_id = self._document_id(pk)
        if document_id is None:
            return Response({"detail": "Comprobante no encontrado."}, status=status.HTTP_404_NOT_FOUND)

        result = self.get_orchestrator().error_logs(
            request.tenant_context,
            self.document_model.DOCUMENT_TYPE,
            document_id,
        )
        if not result.ok:
            return result_response(result)

        rows = SriErrorLogFilter(request.query_params, queryset=result.value).qs
        page = self.paginate_queryset(rows)
        if page is not None:
            return self.get_paginated_response(SriErrorLogSerializer(page, many=True).data)
        return Response(SriErrorLogSerializer(rows, many=True).data)


class InvoiceViewSet(ElectronicDocumentViewSet):
    document_model = Invoice
    serializer_class = InvoiceSerializer


class CreditNoteViewSet(ElectronicDocumentViewSet):
    document_model = CreditNote
    serializer_class = CreditNoteSerializer


class DebitNoteViewSet(ElectronicDocumentViewSet):
    document_model = DebitNote
    serializer_class = DebitNoteSerializer


class RetentionViewSet(ElectronicDocumentViewSet):
    document_model = Retention
    serializer_class = RetentionSerializer
