# billing/models.py
from __future__ import annotations

from datetime import date
from decimal import Decimal

from django.conf import settings
from django.contrib.contenttypes.fields import GenericForeignKey, GenericRelation
from django.contrib.contenttypes.models import ContentType
from django.db import models
from django.utils import timezone

from billing.choices import (
    BuyerIdType,
    DocumentStatus,
    DocumentType,
    SriEnvironment,
)
from billing.services.sri.access_key import AccessKey, InvalidAccessKey
from billing.services.sri.status_machine import (
    InvalidStateTransition,
    ensure_transition,
)


# ==========================
# Tenancy
# ==========================


class TenantScopedQuerySet(models.QuerySet):
    def for_tenant(self, tenant_id):
        return self.filter(tenant_id=tenant_id)


class Tenant(models.Model):
    """
    Empresa cliente del SaaS. Todo dato SRI pertenece a exactamente un tenant.
    """

    name = models.CharField(max_length=255)
    is_active = models.BooleanField(default=True)
    users = models.ManyToManyField(
        settings.AUTH_USER_MODEL,
        related_name="billing_tenants",
        blank=True,
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Tenant"
        verbose_name_plural = "Tenants"

    def __str__(self) -> str:
        return self.name


class SriConfiguration(models.Model):
    """
    Configuración SRI del emisor (una por tenant): RUC, razón social,
    ambiente y certificado de firma electrónica (.p12).
    """

    tenant = models.OneToOneField(
        Tenant,
        related_name="sri_configuration",
        on_delete=models.CASCADE,
    )

    # ----- Datos obligatorios SRI -----
    ruc = models.CharField(max_length=13)
    legal_name = models.CharField(max_length=300)
    trade_name = models.CharField(max_length=300, blank=True)
    main_address = models.CharField(max_length=300, blank=True)
    special_taxpayer_number = models.CharField(
        max_length=13,
        blank=True,
        help_text=(
            "Número de resolución de contribuyente especial. "
            "Si se define se enviará en <contribuyenteEspecial>."
        ),
    )
    accounting_required = models.BooleanField(
        default=False,
        help_text="Se envía como 'SI' / 'NO' en <obligadoContabilidad>.",
    )

    environment = models.CharField(
        max_length=1,
        choices=SriEnvironment.choices,
        default=SriEnvironment.TEST,
        help_text="Ambiente de emisión SRI (1=Pruebas, 2=Producción).",
    )

    # ----- Certificado de firma electrónica -----
    certificate = models.BinaryField(
        null=True,
        blank=True,
        help_text="Contenido binario del archivo .p12/.pfx.",
    )
    certificate_password = models.CharField(max_length=255, blank=True)
    certificate_expires_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = TenantScopedQuerySet.as_manager()

    class Meta:
        verbose_name = "Configuración SRI"
        verbose_name_plural = "Configuraciones SRI"

    def __str__(self) -> str:
        return f"{self.legal_name} ({self.ruc})"

    @property
    def obligado_contabilidad_str(self) -> str:
        return "SI" if self.accounting_required else "NO"

    @property
    def is_certificate_configured(self) -> bool:
        return bool(self.certificate) and bool(self.certificate_password)

    @property
    def is_certificate_valid(self) -> bool:
        """
        True si hay certificado, contraseña y la fecha de expiración es futura.
        Un certificado sin fecha de expiración registrada se considera inválido.
        """
        if not self.is_certificate_configured or self.certificate_expires_at is None:
            return False
        return self.certificate_expires_at > timezone.now()


class Establishment(models.Model):
    """
    Establecimiento SRI (3 dígitos).
    """

    tenant = models.ForeignKey(
        Tenant,
        related_name="establishments",
        on_delete=models.CASCADE,
    )
    code = models.CharField(
        max_length=3,
        help_text="Código de establecimiento SRI (3 dígitos, ej. '001').",
    )
    name = models.CharField(max_length=255, blank=True)
    address = models.CharField(max_length=300, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = TenantScopedQuerySet.as_manager()

    class Meta:
        verbose_name = "Establecimiento"
        verbose_name_plural = "Establecimientos"
        unique_together = (("tenant", "code"),)

    def __str__(self) -> str:
        return f"{self.code} - {self.name or self.address}"


class EmissionPoint(models.Model):
    """
    Punto de emisión SRI (3 dígitos) asociado a un establecimiento.
    Cada contador guarda el último secuencial emitido para su tipo de comprobante.
    """

    tenant = models.ForeignKey(
        Tenant,
        related_name="emission_points",
        on_delete=models.CASCADE,
    )
    establishment = models.ForeignKey(
        Establishment,
        related_name="emission_points",
        on_delete=models.CASCADE,
    )
    code = models.CharField(
        max_length=3,
        help_text="Código de punto de emisión SRI (3 dígitos, ej. '001').",
    )
    name = models.CharField(max_length=255, blank=True)
    is_active = models.BooleanField(default=True)

    # Contadores de secuenciales (último emitido)
    invoice_sequence = models.PositiveIntegerField(default=0)
    credit_note_sequence = models.PositiveIntegerField(default=0)
    debit_note_sequence = models.PositiveIntegerField(default=0)
    retention_sequence = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = TenantScopedQuerySet.as_manager()

    class Meta:
        verbose_name = "Punto de emisión"
        verbose_name_plural = "Puntos de emisión"
        unique_together = (("establishment", "code"),)

    def __str__(self) -> str:
        return f"{self.establishment.code}-{self.code}"


# ==========================
# Comprobantes electrónicos
# ==========================


class ElectronicDocumentQuerySet(TenantScopedQuerySet):
    def alive(self):
        return self.filter(deleted_at__isnull=True)


class ElectronicDocument(models.Model):
    """
    Modelo base abstracto para cualquier comprobante electrónico SRI.

    Las subclases definen DOCUMENT_TYPE; el flujo SRI (XML, firma, envío,
    autorización) se aplica a través de los métodos `apply_*`, que validan
    la transición de estado antes de mutar el registro. Ninguno guarda:
    la persistencia la decide quien orquesta.
    """

    DOCUMENT_TYPE: str = ""

    Status = DocumentStatus

    tenant = models.ForeignKey(
        Tenant,
        related_name="%(class)ss",
        on_delete=models.PROTECT,
    )
    emission_point = models.ForeignKey(
        EmissionPoint,
        related_name="%(class)ss",
        null=True,
        blank=True,
        on_delete=models.PROTECT,
    )
    sequential = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Secuencial SRI; se asigna al generar el XML por primera vez.",
    )
    issue_date = models.DateField(default=timezone.localdate)

    status = models.CharField(
        max_length=32,
        choices=DocumentStatus.choices,
        default=DocumentStatus.DRAFT,
        db_index=True,
    )
    environment = models.CharField(
        max_length=1,
        choices=SriEnvironment.choices,
        default=SriEnvironment.TEST,
    )

    # SRI
    access_key = models.CharField(
        max_length=49,
        unique=True,
        null=True,
        blank=True,
    )
    authorization_number = models.CharField(max_length=49, null=True, blank=True)
    authorization_date = models.DateTimeField(null=True, blank=True)

    # XML / RIDE
    xml_path = models.CharField(max_length=500, blank=True)
    signed_xml_path = models.CharField(max_length=500, blank=True)
    authorized_xml = models.TextField(blank=True)
    ride_path = models.CharField(max_length=500, blank=True)

    # Comprador / sujeto
    buyer_id_type = models.CharField(
        max_length=2,
        choices=BuyerIdType.choices,
        default=BuyerIdType.FINAL_CONSUMER,
    )
    buyer_id = models.CharField(max_length=20, default="9999999999999")
    buyer_name = models.CharField(max_length=300, default="CONSUMIDOR FINAL")
    buyer_address = models.CharField(max_length=300, blank=True)
    buyer_email = models.EmailField(blank=True)

    # Totales
    subtotal = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    tax_total = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    total = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))

    # Auditoría
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    deleted_at = models.DateTimeField(null=True, blank=True)
    rejection_acknowledged_at = models.DateTimeField(null=True, blank=True)

    sri_error_logs = GenericRelation(
        "billing.SriErrorLog",
        content_type_field="content_type",
        object_id_field="object_id",
    )

    objects = ElectronicDocumentQuerySet.as_manager()

    class Meta:
        abstract = True

    @property
    def secuencial_display(self) -> str:
        """
        Representación 'EEE-PPP-#########'.
        """
        if self.emission_point_id is None or self.sequential is None:
            return "---"
        ep = self.emission_point
        return f"{ep.establishment.code}-{ep.code}-{self.sequential:09d}"

    # -------------------------
    # Capacidades del flujo SRI
    # -------------------------

    def access_key_inputs(self) -> dict:
        """
        Datos propios del comprobante que entran en la clave de acceso.
        RUC, establecimiento y punto de emisión los aporta el emisor.
        """
        return {
            "issue_date": self.issue_date,
            "document_type": self.DOCUMENT_TYPE,
            "environment": self.environment,
            "sequential": self.sequential,
        }

    def apply_xml_result(
        self, xml_path: str, access_key: str, *, resubmission: bool = False
    ) -> None:
        """
        Registra el XML generado. En un ciclo de reenvío el estado se queda en
        REJECTED hasta que la firma lo lleve a PENDING_AUTHORIZATION.
        """
        if not AccessKey.is_valid(access_key):
            raise InvalidAccessKey(f"Clave de acceso inválida: {access_key!r}")

        if resubmission:
            if self.status != DocumentStatus.REJECTED:
                raise InvalidStateTransition(self.status, DocumentStatus.PENDING_AUTHORIZATION)
        else:
            # Solo DRAFT / PENDING_SIGNATURE / PENDING_AUTHORIZATION pasan aquí.
            self.status = ensure_transition(self.status, DocumentStatus.PENDING_SIGNATURE)

        self.xml_path = xml_path
        self.access_key = access_key
        # La firma anterior corresponde a otro XML.
        self.signed_xml_path = ""

    def apply_sign_result(self, signed_xml_path: str) -> None:
        self.status = ensure_transition(self.status, DocumentStatus.PENDING_AUTHORIZATION)
        self.signed_xml_path = signed_xml_path

    def apply_authorization_result(self, result) -> bool:
        """
        Aplica el resultado de autorización del SRI.

        Retorna True si el comprobante cambió. Un comprobante ya AUTORIZADO no
        se modifica.
        """
        if self.status == DocumentStatus.AUTHORIZED:
            return False

        if result.is_authorized:
            self.status = ensure_transition(self.status, DocumentStatus.AUTHORIZED)
            self.authorization_number = result.authorization_number or self.access_key
            self.authorization_date = result.authorization_date or timezone.now()
            self.authorized_xml = result.authorized_xml or ""
            return True

        self.status = ensure_transition(self.status, DocumentStatus.REJECTED)
        return True


class Invoice(ElectronicDocument):
    """
    Factura electrónica SRI.
    """

    DOCUMENT_TYPE = DocumentType.INVOICE.value

    payment_method = models.CharField(
        max_length=2,
        default="01",
        help_text="Forma de pago SRI (01 = sin utilización del sistema financiero).",
    )

    class Meta:
        verbose_name = "Factura"
        verbose_name_plural = "Facturas"
        ordering = ("-issue_date", "-id")
        indexes = [
            models.Index(fields=["tenant", "status"], name="inv_tenant_status_idx"),
        ]
        permissions = [
            ("operate_sri", "Puede generar, firmar y enviar comprobantes al SRI"),
        ]

    def __str__(self) -> str:
        return f"Factura {self.secuencial_display} - {self.buyer_name}"


class InvoiceLine(models.Model):
    """
    Línea de detalle de una factura electrónica (un solo impuesto, IVA).
    """

    invoice = models.ForeignKey(
        Invoice,
        related_name="lines",
        on_delete=models.CASCADE,
    )
    main_code = models.CharField(max_length=25)
    description = models.CharField(max_length=300)
    quantity = models.DecimalField(max_digits=14, decimal_places=6)
    unit_price = models.DecimalField(max_digits=14, decimal_places=6)
    discount = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    subtotal = models.DecimalField(max_digits=14, decimal_places=2)

    # Ver catálogos SRI: código=2 (IVA); porcentaje 0=0%, 4=15%
    tax_code = models.CharField(max_length=2, default="2")
    tax_rate_code = models.CharField(max_length=4, default="4")
    tax_rate = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal("15.00"))
    tax_amount = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))

    class Meta:
        verbose_name = "Línea de factura"
        verbose_name_plural = "Líneas de factura"

    def __str__(self) -> str:
        return f"{self.description} x {self.quantity}"


# ==========================
# Notas de crédito / débito
# ==========================


class ModifiedDocumentMixin(models.Model):
    """
    Referencia a la factura modificada (codDocModificado = 01).
    """

    invoice = models.ForeignKey(
        Invoice,
        related_name="%(class)ss",
        on_delete=models.PROTECT,
    )

    class Meta:
        abstract = True

    @property
    def modified_document_number(self) -> str:
        return self.invoice.secuencial_display

    @property
    def modified_document_date(self) -> date:
        return self.invoice.issue_date


class CreditNote(ModifiedDocumentMixin, ElectronicDocument):
    """
    Nota de crédito electrónica SRI.
    """

    DOCUMENT_TYPE = DocumentType.CREDIT_NOTE.value

    reason = models.CharField(max_length=300)

    class Meta:
        verbose_name = "Nota de crédito"
        verbose_name_plural = "Notas de crédito"
        ordering = ("-issue_date", "-id")

    def __str__(self) -> str:
        return f"Nota de crédito {self.secuencial_display} - {self.buyer_name}"


class CreditNoteLine(models.Model):
    credit_note = models.ForeignKey(
        CreditNote,
        related_name="lines",
        on_delete=models.CASCADE,
    )
    main_code = models.CharField(max_length=25)
    description = models.CharField(max_length=300)
    quantity = models.DecimalField(max_digits=14, decimal_places=6)
    unit_price = models.DecimalField(max_digits=14, decimal_places=6)
    discount = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    subtotal = models.DecimalField(max_digits=14, decimal_places=2)
    tax_code = models.CharField(max_length=2, default="2")
    tax_rate_code = models.CharField(max_length=4, default="4")
    tax_rate = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal("15.00"))
    tax_amount = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))

    class Meta:
        verbose_name = "Línea de nota de crédito"
        verbose_name_plural = "Líneas de nota de crédito"

    def __str__(self) -> str:
        return f"{self.description} x {self.quantity}"


class DebitNote(ModifiedDocumentMixin, ElectronicDocument):
    """
    Nota de débito electrónica SRI. Los motivos llevan el valor; el impuesto
    se aplica sobre la suma de motivos.
    """

    DOCUMENT_TYPE = DocumentType.DEBIT_NOTE.value

    tax_code = models.CharField(max_length=2, default="2")
    tax_rate_code = models.CharField(max_length=4, default="4")
    tax_rate = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal("15.00"))

    class Meta:
        verbose_name = "Nota de débito"
        verbose_name_plural = "Notas de débito"
        ordering = ("-issue_date", "-id")

    def __str__(self) -> str:
        return f"Nota de débito {self.secuencial_display} - {self.buyer_name}"


class DebitNoteReason(models.Model):
    debit_note = models.ForeignKey(
        DebitNote,
        related_name="reasons",
        on_delete=models.CASCADE,
    )
    reason = models.CharField(max_length=300)
    amount = models.DecimalField(max_digits=14, decimal_places=2)

    class Meta:
        verbose_name = "Motivo de nota de débito"
        verbose_name_plural = "Motivos de nota de débito"

    def __str__(self) -> str:
        return f"{self.reason}: {self.amount}"


# ==========================
# Retenciones
# ==========================


class Retention(ElectronicDocument):
    """
    Comprobante de retención electrónico SRI (versión 1.0.0).
    """

    DOCUMENT_TYPE = DocumentType.RETENTION.value

    fiscal_period = models.CharField(
        max_length=7,
        help_text="Periodo fiscal 'MM/AAAA'.",
    )

    class Meta:
        verbose_name = "Retención"
        verbose_name_plural = "Retenciones"
        ordering = ("-issue_date", "-id")

    def __str__(self) -> str:
        return f"Retención {self.secuencial_display} - {self.buyer_name}"


class RetentionTax(models.Model):
    """
    Impuesto retenido (renta o IVA) sobre un documento sustento.
    """

    TAX_RENTA = "1"
    TAX_IVA = "2"
    TAX_CHOICES = (
        (TAX_RENTA, "Renta"),
        (TAX_IVA, "IVA"),
    )

    retention = models.ForeignKey(
        Retention,
        related_name="taxes",
        on_delete=models.CASCADE,
    )
    tax_code = models.CharField(max_length=1, choices=TAX_CHOICES)
    retention_code = models.CharField(max_length=5)
    tax_base = models.DecimalField(max_digits=14, decimal_places=2)
    percentage = models.DecimalField(max_digits=5, decimal_places=2)
    amount = models.DecimalField(max_digits=14, decimal_places=2)

    support_document_code = models.CharField(max_length=2, default="01")
    support_document_number = models.CharField(
        max_length=15,
        help_text="Número del documento sustento sin guiones (15 dígitos).",
    )
    support_document_date = models.DateField()

    class Meta:
        verbose_name = "Impuesto retenido"
        verbose_name_plural = "Impuestos retenidos"

    def __str__(self) -> str:
        return f"{self.get_tax_code_display()} {self.retention_code}: {self.amount}"


# ==========================
# Bitácora de errores SRI
# ==========================


class SriErrorLogImmutable(Exception):
    """Los registros de SriErrorLog no se modifican después de creados."""


class SriErrorLogQuerySet(TenantScopedQuerySet):
    def for_document(self, document):
        return self.filter(
            tenant_id=document.tenant_id,
            content_type=ContentType.objects.get_for_model(document),
            object_id=document.pk,
        ).order_by("occurred_at", "id")

    def update(self, **kwargs):
        raise SriErrorLogImmutable("SriErrorLog es de solo inserción.")


class SriErrorLog(models.Model):
    """
    Registro append-only de fallas SRI por comprobante, para auditoría y para
    decidir reenvíos.
    """

    tenant = models.ForeignKey(
        Tenant,
        related_name="sri_error_logs",
        on_delete=models.CASCADE,
    )
    content_type = models.ForeignKey(ContentType, on_delete=models.CASCADE)
    object_id = models.PositiveBigIntegerField()
    document = GenericForeignKey("content_type", "object_id")

    operation = models.CharField(max_length=64)
    error_code = models.CharField(max_length=64, blank=True)
    message = models.TextField()
    stack_trace = models.TextField(blank=True)
    additional_data = models.JSONField(default=dict, blank=True)
    occurred_at = models.DateTimeField(default=timezone.now, db_index=True)

    objects = SriErrorLogQuerySet.as_manager()

    class Meta:
        verbose_name = "Error SRI"
        verbose_name_plural = "Errores SRI"
        ordering = ("-occurred_at", "-id")
        indexes = [
            models.Index(fields=["content_type", "object_id"], name="srierr_document_idx"),
        ]

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.operation}: {self.message[:60]}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise SriErrorLogImmutable("SriErrorLog es de solo inserción.")
        super().save(*args, **kwargs)
