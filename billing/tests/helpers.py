# billing/tests/helpers.py
# -*- coding: utf-8 -*-
"""
Datos mínimos compartidos por los tests del flujo SRI.
"""

from __future__ import annotations

import tempfile
from datetime import date, datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import BestAvailableEncryption, pkcs12
from cryptography.x509.oid import NameOID
from django.test import override_settings
from django.utils import timezone

from billing.choices import SriEnvironment
from billing.models import (
    CreditNote,
    CreditNoteLine,
    DebitNote,
    DebitNoteReason,
    EmissionPoint,
    Establishment,
    Invoice,
    InvoiceLine,
    Retention,
    RetentionTax,
    SriConfiguration,
    Tenant,
)
from billing.services.sri.client import AuthorizationResult, SubmissionResult

RUC = "1790012345001"

P12_PASSWORD = "clave-p12"


def make_pkcs12(valid_days: int = 365, offset_days: int = -1, password: str = P12_PASSWORD):
    """
    PKCS#12 autofirmado para pruebas. Retorna (bytes_p12, certificado).
    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Firma de Pruebas SRI")])
    start = datetime.now(dt_timezone.utc) + timedelta(days=offset_days)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(start)
        .not_valid_after(start + timedelta(days=valid_days))
        .sign(key, hashes.SHA256())
    )
    p12 = pkcs12.serialize_key_and_certificates(
        b"sri", key, cert, None, BestAvailableEncryption(password.encode("utf-8"))
    )
    return p12, cert


class SriTestDataMixin:
    """
    Crea tenant, configuración SRI, establecimiento 001 y punto 002, y
    redirige SRI_DOCUMENTS_DIR a un directorio temporal.
    """

    def setUp(self) -> None:
        super().setUp()
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.documents_dir = Path(tmp.name)

        override = override_settings(SRI_DOCUMENTS_DIR=self.documents_dir)
        override.enable()
        self.addCleanup(override.disable)

        self.tenant = Tenant.objects.create(name="Empresa Demo")
        self.config = self._crear_configuracion(self.tenant)
        self.establishment = Establishment.objects.create(
            tenant=self.tenant,
            code="001",
            name="Matriz",
            address="Av. Amazonas N34-120",
        )
        self.emission_point = EmissionPoint.objects.create(
            tenant=self.tenant,
            establishment=self.establishment,
            code="002",
            name="Caja 2",
        )

    # ===================================================================
    # Helpers
    # ===================================================================

    def _crear_configuracion(self, tenant, **overrides) -> SriConfiguration:
        data = {
            "tenant": tenant,
            "ruc": RUC,
            "legal_name": "EMPRESA DEMO S.A.",
            "trade_name": "Demo",
            "main_address": "Quito - Ecuador",
            "environment": SriEnvironment.TEST,
            "certificate": b"pkcs12-de-prueba",
            "certificate_password": "s3cr3t-p12",
            "certificate_expires_at": timezone.now() + timedelta(days=365),
        }
        data.update(overrides)
        return SriConfiguration.objects.create(**data)

    def _crear_factura(self, tenant=None, emission_point=None, with_lines=True, **overrides) -> Invoice:
        data = {
            "tenant": tenant or self.tenant,
            "emission_point": emission_point or self.emission_point,
            "issue_date": date(2024, 5, 10),
            "buyer_id_type": "05",
            "buyer_id": "1710034065",
            "buyer_name": "Juan Pérez",
            "buyer_email": "juan@example.com",
            "subtotal": Decimal("100.00"),
            "tax_total": Decimal("15.00"),
            "total": Decimal("115.00"),
        }
        data.update(overrides)
        invoice = Invoice.objects.create(**data)
        if with_lines:
            InvoiceLine.objects.create(
                invoice=invoice,
                main_code="PROD-001",
                description="Servicio de mantenimiento",
                quantity=Decimal("2"),
                unit_price=Decimal("50"),
                subtotal=Decimal("100.00"),
                tax_amount=Decimal("15.00"),
            )
        return invoice

    def _crear_nota_credito(self, invoice, **overrides) -> CreditNote:
        data = {
            "tenant": invoice.tenant,
            "emission_point": invoice.emission_point,
            "invoice": invoice,
            "issue_date": date(2024, 5, 12),
            "buyer_id_type": invoice.buyer_id_type,
            "buyer_id": invoice.buyer_id,
            "buyer_name": invoice.buyer_name,
            "reason": "Devolución parcial",
            "subtotal": Decimal("50.00"),
            "tax_total": Decimal("7.50"),
            "total": Decimal("57.50"),
        }
        data.update(overrides)
        credit_note = CreditNote.objects.create(**data)
        CreditNoteLine.objects.create(
            credit_note=credit_note,
            main_code="PROD-001",
            description="Servicio de mantenimiento",
            quantity=Decimal("1"),
            unit_price=Decimal("50"),
            subtotal=Decimal("50.00"),
            tax_amount=Decimal("7.50"),
        )
        return credit_note

    def _crear_nota_debito(self, invoice) -> DebitNote:
        debit_note = DebitNote.objects.create(
            tenant=invoice.tenant,
            emission_point=invoice.emission_point,
            invoice=invoice,
            issue_date=date(2024, 5, 15),
            buyer_id_type=invoice.buyer_id_type,
            buyer_id=invoice.buyer_id,
            buyer_name=invoice.buyer_name,
            subtotal=Decimal("10.00"),
            tax_total=Decimal("1.50"),
            total=Decimal("11.50"),
        )
        DebitNoteReason.objects.create(
            debit_note=debit_note, reason="Interés por mora", amount=Decimal("10.00")
        )
        return debit_note

    def _crear_retencion(self) -> Retention:
        retention = Retention.objects.create(
            tenant=self.tenant,
            emission_point=self.emission_point,
            issue_date=date(2024, 6, 3),
            buyer_id_type="04",
            buyer_id="0990012345001",
            buyer_name="PROVEEDOR S.A.",
            fiscal_period="06/2024",
        )
        RetentionTax.objects.create(
            retention=retention,
            tax_code=RetentionTax.TAX_RENTA,
            retention_code="312",
            tax_base=Decimal("200.00"),
            percentage=Decimal("1.75"),
            amount=Decimal("3.50"),
            support_document_number="001001000000123",
            support_document_date=date(2024, 6, 1),
        )
        return retention


class FakeSigner:
    """Copia el XML como '<nombre>_signed.xml' y registra las llamadas."""

    def __init__(self) -> None:
        self.calls = []

    def sign(self, xml_path, certificate_bytes, password):
        self.calls.append(xml_path)
        source = Path(xml_path)
        target = source.with_name(f"{source.stem}_signed.xml")
        target.write_bytes(source.read_bytes())
        return str(target)


class FakeSriClient:
    """Cliente SRI en memoria: respuestas fijas y registro de llamadas."""

    def __init__(self, submission=None, authorization=None, error=None) -> None:
        self.submission = submission or SubmissionResult(
            is_success=True, message="Comprobante recibido por el SRI."
        )
        self.authorization = authorization
        self.error = error
        self.submitted = []
        self.checked = []

    def __call__(self, environment):
        self.environment = environment
        return self

    def submit_document(self, signed_xml_content, cancel_token=None):
        self.submitted.append(signed_xml_content)
        if self.error is not None:
            raise self.error
        return self.submission

    def check_authorization(self, access_key):
        self.checked.append(access_key)
        if self.error is not None:
            raise self.error
        return self.authorization or AuthorizationResult(
            is_authorized=False, status="EN PROCESAMIENTO"
        )
