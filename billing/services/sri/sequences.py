# billing/services/sri/sequences.py
# -*- coding: utf-8 -*-
"""
Asignación de secuenciales por punto de emisión y tipo de comprobante.

El contador vive en EmissionPoint y guarda el último valor emitido. El
incremento se hace con la fila bloqueada (select_for_update) dentro de una
transacción, así dos solicitudes concurrentes nunca reciben el mismo número.
"""

from __future__ import annotations

import logging

from django.db import transaction
from django.db.models import F

from billing.choices import DocumentType
from billing.models import EmissionPoint
from billing.services.sri.access_key import MAX_SEQUENTIAL, InvalidArgument

logger = logging.getLogger("billing.sri")


SEQUENCE_FIELDS = {
    DocumentType.INVOICE.value: "invoice_sequence",
    DocumentType.CREDIT_NOTE.value: "credit_note_sequence",
    DocumentType.DEBIT_NOTE.value: "debit_note_sequence",
    DocumentType.RETENTION.value: "retention_sequence",
}


class SequenceExhausted(Exception):
    """El contador alcanzó el máximo de 9 dígitos permitido por el SRI."""


def sequence_field(document_type) -> str:
    try:
        return SEQUENCE_FIELDS[str(DocumentType(document_type).value)]
    except (ValueError, KeyError) as exc:
        raise InvalidArgument(
            f"Tipo de comprobante sin secuencial: {document_type!r}"
        ) from exc


def allocate_next(emission_point_id: int, document_type) -> int:
    """
    Incrementa y retorna el siguiente secuencial (incremento + lectura atómicos).
    """
    field_name = sequence_field(document_type)

    with transaction.atomic():
        point = (
            EmissionPoint.objects.select_for_update()
            .only("id", field_name)
            .get(pk=emission_point_id)
        )
        if getattr(point, field_name) >= MAX_SEQUENTIAL:
            raise SequenceExhausted(
                f"Punto de emisión {emission_point_id}: secuencial agotado para {document_type}."
            )

        EmissionPoint.objects.filter(pk=point.pk).update(**{field_name: F(field_name) + 1})
        value = (
            EmissionPoint.objects.filter(pk=point.pk)
            .values_list(field_name, flat=True)
            .get()
        )

    logger.debug(
        "Secuencial asignado: punto=%s tipo=%s valor=%s",
        emission_point_id,
        document_type,
        value,
    )
    return value


def assign_sequential(document) -> int:
    """
    Asigna secuencial al comprobante solo si aún no tiene uno.
    No reutiliza números: un reintento conserva el secuencial ya asignado.
    """
    if document.sequential:
        return document.sequential
    if document.emission_point_id is None:
        raise InvalidArgument("El comprobante no tiene punto de emisión.")

    document.sequential = allocate_next(document.emission_point_id, document.DOCUMENT_TYPE)
    type(document).objects.filter(pk=document.pk).update(sequential=document.sequential)
    return document.sequential
