# billing/choices.py
"""
Catálogos SRI compartidos por modelos y servicios.

Solo dependen de `django.db.models` para las TextChoices; se pueden importar
desde código puro (clave de acceso, máquina de estados) sin tocar la BD.
"""

from __future__ import annotations

from django.db import models


class DocumentType(models.TextChoices):
    """Código de tipo de comprobante (codDoc) según ficha técnica SRI."""

    INVOICE = "01", "Factura"
    CREDIT_NOTE = "04", "Nota de crédito"
    DEBIT_NOTE = "05", "Nota de débito"
    RETENTION = "07", "Comprobante de retención"


class SriEnvironment(models.TextChoices):
    TEST = "1", "Pruebas"
    PRODUCTION = "2", "Producción"


class EmissionType(models.TextChoices):
    NORMAL = "1", "Emisión normal"


class DocumentStatus(models.TextChoices):
    DRAFT = "DRAFT", "Borrador"
    PENDING_SIGNATURE = "PENDING_SIGNATURE", "Pendiente de firma"
    PENDING_AUTHORIZATION = "PENDING_AUTHORIZATION", "Pendiente de autorización"
    AUTHORIZED = "AUTHORIZED", "Autorizado"
    REJECTED = "REJECTED", "Rechazado"
    SENT = "SENT", "Enviado"
    PAID = "PAID", "Pagado"
    OVERDUE = "OVERDUE", "Vencido"
    CANCELLED = "CANCELLED", "Cancelado"
    VOIDED = "VOIDED", "Anulado"


class BuyerIdType(models.TextChoices):
    """Tipo de identificación del comprador / sujeto retenido."""

    RUC = "04", "RUC"
    CEDULA = "05", "Cédula"
    PASSPORT = "06", "Pasaporte"
    FINAL_CONSUMER = "07", "Consumidor final"
    FOREIGN_ID = "08", "Identificación del exterior"
