# billing/admin.py
from __future__ import annotations

from django.contrib import admin

from billing.forms import SriConfigurationAdminForm
from billing.models import (
    CreditNote,
    DebitNote,
    EmissionPoint,
    Establishment,
    Invoice,
    InvoiceLine,
    Retention,
    SriConfiguration,
    SriErrorLog,
    Tenant,
)


@admin.register(Tenant)
class TenantAdmin(admin.ModelAdmin):
    list_display = ("name", "is_active", "created_at")
    list_filter = ("is_active",)
    search_fields = ("name",)
    filter_horizontal = ("users",)


@admin.register(SriConfiguration)
class SriConfigurationAdmin(admin.ModelAdmin):
    list_display = (
        "ruc",
        "legal_name",
        "tenant",
        "environment",
        "certificate_expires_at",
    )
    list_filter = ("environment",)
    search_fields = ("ruc", "legal_name", "trade_name")
    # El .p12 y su contraseña solo se escriben vía carga (nunca se muestran).
    form = SriConfigurationAdminForm
    exclude = ("certificate", "certificate_password")
    readonly_fields = ("certificate_expires_at", "created_at", "updated_at")
    fieldsets = (
        (
            "Datos generales",
            {
                "fields": (
                    "tenant",
                    "ruc",
                    "legal_name",
                    "trade_name",
                    "main_address",
                    "special_taxpayer_number",
                    "accounting_required",
                    "environment",
                )
            },
        ),
        (
            "Certificado de firma",
            {
                "fields": (
                    "certificate_file",
                    "certificate_password_input",
                    "certificate_expires_at",
                )
            },
        ),
        (
            "Auditoría",
            {"fields": ("created_at", "updated_at")},
        ),
    )


@admin.register(Establishment)
class EstablishmentAdmin(admin.ModelAdmin):
    list_display = ("code", "name", "tenant")
    search_fields = ("code", "name")


@admin.register(EmissionPoint)
class EmissionPointAdmin(admin.ModelAdmin):
    list_display = (
        "__str__",
        "tenant",
        "is_active",
        "invoice_sequence",
        "credit_note_sequence",
        "debit_note_sequence",
        "retention_sequence",
    )
    list_filter = ("is_active",)
    # Los contadores solo se mueven por asignación de secuenciales.
    readonly_fields = (
        "invoice_sequence",
        "credit_note_sequence",
        "debit_note_sequence",
        "retention_sequence",
    )


class InvoiceLineInline(admin.TabularInline):
    model = InvoiceLine
    extra = 0


class ElectronicDocumentAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "secuencial_display",
        "tenant",
        "issue_date",
        "status",
        "buyer_name",
        "total",
    )
    list_filter = ("status", "environment", "issue_date")
    search_fields = ("access_key", "authorization_number", "buyer_id", "buyer_name")
    readonly_fields = (
        "status",
        "sequential",
        "access_key",
        "authorization_number",
        "authorization_date",
        "xml_path",
        "signed_xml_path",
        "ride_path",
        "rejection_acknowledged_at",
        "created_at",
        "updated_at",
    )


@admin.register(Invoice)
class InvoiceAdmin(ElectronicDocumentAdmin):
    inlines = [InvoiceLineInline]


admin.site.register(CreditNote, ElectronicDocumentAdmin)
admin.site.register(DebitNote, ElectronicDocumentAdmin)
admin.site.register(Retention, ElectronicDocumentAdmin)


@admin.register(SriErrorLog)
class SriErrorLogAdmin(admin.ModelAdmin):
    list_display = ("occurred_at", "tenant", "operation", "error_code", "content_type", "object_id")
    list_filter = ("operation", "error_code")
    search_fields = ("message", "error_code")

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
