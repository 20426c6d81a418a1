# billing/serializers.py
from __future__ import annotations

from rest_framework import serializers

from billing.choices import DocumentStatus
from billing.models import CreditNote, DebitNote, Invoice, Retention, SriErrorLog
from billing.services.sri.status_machine import COMMERCIAL_TRANSITIONS


class ElectronicDocumentSerializer(serializers.ModelSerializer):
    """
    Vista de solo lectura del estado SRI de un comprobante.
    La creación/edición de comprobantes vive en los módulos CRUD.
    """

    numero = serializers.CharField(source="secuencial_display", read_only=True)
    status_display = serializers.CharField(source="get_status_display", read_only=True)

    class Meta:
        fields = [
            "id",
            "numero",
            "sequential",
            "issue_date",
            "status",
            "status_display",
            "environment",
            "access_key",
            "authorization_number",
            "authorization_date",
            "buyer_id_type",
            "buyer_id",
            "buyer_name",
            "subtotal",
            "tax_total",
            "total",
            "ride_path",
            "rejection_acknowledged_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class InvoiceSerializer(ElectronicDocumentSerializer):
    class Meta(ElectronicDocumentSerializer.Meta):
        model = Invoice


class CreditNoteSerializer(ElectronicDocumentSerializer):
    class Meta(ElectronicDocumentSerializer.Meta):
        model = CreditNote
        fields = ElectronicDocumentSerializer.Meta.fields + ["invoice", "reason"]
        read_only_fields = fields


class DebitNoteSerializer(ElectronicDocumentSerializer):
    class Meta(ElectronicDocumentSerializer.Meta):
        model = DebitNote
        fields = ElectronicDocumentSerializer.Meta.fields + ["invoice"]
        read_only_fields = fields


class RetentionSerializer(ElectronicDocumentSerializer):
    class Meta(ElectronicDocumentSerializer.Meta):
        model = Retention
        fields = ElectronicDocumentSerializer.Meta.fields + ["fiscal_period"]
        read_only_fields = fields


class SriErrorLogSerializer(serializers.ModelSerializer):
    class Meta:
        model = SriErrorLog
        fields = [
            "id",
            "operation",
            "error_code",
            "message",
            "additional_data",
            "occurred_at",
        ]
        read_only_fields = fields


COMMERCIAL_TARGETS = sorted(set().union(*COMMERCIAL_TRANSITIONS.values()))


class StatusChangeSerializer(serializers.Serializer):
    status = serializers.ChoiceField(
        choices=[(s, DocumentStatus(s).label) for s in COMMERCIAL_TARGETS]
    )
