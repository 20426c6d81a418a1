# billing/tasks.py
from __future__ import annotations

import logging
from typing import Any, Dict

from celery import shared_task

from billing.choices import DocumentStatus
from billing.services.sri.client import TRANSIENT_ERROR_CODES
from billing.services.sri.results import ErrorCode
from billing.services.sri.workflow import (
    DOCUMENT_MODELS,
    DocumentSubmissionOrchestrator,
    TenantContext,
)

logger = logging.getLogger(__name__)

# Errores que vale la pena reintentar desde Celery (el resto son de negocio).
RETRYABLE_ERRORS = {ErrorCode.REMOTE_SUBMISSION_FAILED, ErrorCode.UNEXPECTED_FAILURE}


def _backoff(retries: int) -> int:
    # 1, 2, 4, 8, ... minutos
    return 60 * (2**retries)


def _pending_steps(orchestrator, tenant_id: int, document_type: str, document_id: int):
    """
    Pasos que faltan según el estado guardado del comprobante.

    Un comprobante en PENDING_AUTHORIZATION con XML firmado ya pudo llegar al
    SRI: solo se reenvía, nunca se regenera (la clave de acceso cambiaría para
    el mismo secuencial).
    """
    steps = [
        ("generate_xml", orchestrator.generate_xml),
        ("sign_xml", orchestrator.sign_xml),
        ("submit_to_sri", orchestrator.submit_to_sri),
    ]

    model = DOCUMENT_MODELS.get(str(document_type))
    if model is None:
        return steps
    row = (
        model.objects.alive()
        .for_tenant(tenant_id)
        .filter(pk=document_id)
        .values_list("status", "access_key", "xml_path", "signed_xml_path")
        .first()
    )
    if row is None:
        return steps

    status, access_key, xml_path, signed_xml_path = row
    if status == DocumentStatus.PENDING_AUTHORIZATION and access_key and signed_xml_path:
        return steps[2:]
    if status == DocumentStatus.PENDING_SIGNATURE and access_key and xml_path:
        return steps[1:]
    return steps


# =====================================================
# Tarea: generar + firmar + enviar en background
# =====================================================


@shared_task(bind=True, max_retries=3, default_retry_delay=60)
def submit_document_task(self, tenant_id: int, document_type: str, document_id: int) -> Dict[str, Any]:
    """
    Ejecuta generate_xml -> sign_xml -> submit_to_sri para un comprobante
    y, si el SRI lo recibió, encola la consulta de autorización.

    - Retoma desde el primer paso pendiente (ver _pending_steps).
    - Se detiene en el primer paso que falle.
    - Solo reintenta cuando la falla del envío es remota o inesperada.
    """
    tenant = TenantContext(tenant_id=tenant_id)
    orchestrator = DocumentSubmissionOrchestrator()
    steps = _pending_steps(orchestrator, tenant_id, document_type, document_id)

    logger.info(
        "submit_document_task iniciado: tenant=%s tipo=%s id=%s desde=%s intento=%s",
        tenant_id,
        document_type,
        document_id,
        steps[0][0],
        self.request.retries,
    )

    for name, step in steps:
        result = step(tenant, document_type, document_id)
        if result.ok:
            continue

        logger.warning(
            "submit_document_task: %s falló para tipo=%s id=%s: %s",
            name,
            document_type,
            document_id,
            result.message,
        )
        if (
            name == "submit_to_sri"
            and result.error in RETRYABLE_ERRORS
            and self.request.retries < self.max_retries
        ):
            raise self.retry(countdown=_backoff(self.request.retries))
        return {"ok": False, "step": name, **result.to_dict()}

    check_authorization_task.apply_async(
        args=(tenant_id, document_type, document_id), countdown=5
    )
    return {"ok": True, "step": "submit_to_sri", **result.to_dict()}


# =====================================================
# Tarea: autorización SRI con backoff
# =====================================================


@shared_task(bind=True, max_retries=6, default_retry_delay=60)
def check_authorization_task(self, tenant_id: int, document_type: str, document_id: int) -> Dict[str, Any]:
    """
    Consulta la autorización. Mientras el comprobante siga en
    PENDING_AUTHORIZATION (SRI en procesamiento o respuesta no concluyente)
    se reprograma con backoff exponencial hasta max_retries.
    """
    result = DocumentSubmissionOrchestrator().check_authorization(
        TenantContext(tenant_id=tenant_id), document_type, document_id
    )

    value = result.value if isinstance(result.value, dict) else {}
    if result.ok:
        still_pending = value.get("status") == DocumentStatus.PENDING_AUTHORIZATION.value
    else:
        # Un NO AUTORIZADO trae errores del SRI; los transitorios solo traen códigos locales.
        still_pending = result.error in RETRYABLE_ERRORS and all(
            e.get("code") in TRANSIENT_ERROR_CODES for e in result.errors
        )

    if still_pending and self.request.retries < self.max_retries:
        countdown = _backoff(self.request.retries)
        logger.info(
            "Comprobante tipo=%s id=%s sigue pendiente, nueva consulta en %s segundos.",
            document_type,
            document_id,
            countdown,
        )
        raise self.retry(countdown=countdown)

    if result.ok and value.get("status") == DocumentStatus.AUTHORIZED.value:
        generate_ride_task.delay(tenant_id, document_type, document_id)

    return result.to_dict()


@shared_task(bind=True, max_retries=3, default_retry_delay=120)
def generate_ride_task(self, tenant_id: int, document_type: str, document_id: int) -> Dict[str, Any]:
    result = DocumentSubmissionOrchestrator().generate_ride(
        TenantContext(tenant_id=tenant_id), document_type, document_id
    )
    if not result.ok and result.error == ErrorCode.UNEXPECTED_FAILURE:
        if self.request.retries < self.max_retries:
            raise self.retry(countdown=_backoff(self.request.retries))
    return result.to_dict()


# =====================================================
# Barridos periódicos (CELERY_BEAT_SCHEDULE)
# =====================================================


@shared_task
def check_pending_authorizations_task() -> int:
    """
    Encola check_authorization_task para cada comprobante vivo que siga en
    PENDING_AUTHORIZATION, en todos los tenants activos.
    """
    queued = 0
    for document_type, model in DOCUMENT_MODELS.items():
        pending = (
            model.objects.alive()
            .filter(
                status=DocumentStatus.PENDING_AUTHORIZATION,
                tenant__is_active=True,
            )
            .exclude(access_key__isnull=True)
            .values_list("tenant_id", "pk")
        )
        for tenant_id, document_id in pending:
            check_authorization_task.delay(tenant_id, document_type, document_id)
            queued += 1

    if queued:
        logger.info("check_pending_authorizations_task: %s consultas encoladas.", queued)
    return queued


@shared_task
def generate_missing_rides_task() -> int:
    """Encola el RIDE de los comprobantes autorizados que aún no lo tienen."""
    queued = 0
    for document_type, model in DOCUMENT_MODELS.items():
        missing = (
            model.objects.alive()
            .filter(
                status=DocumentStatus.AUTHORIZED,
                ride_path="",
                tenant__is_active=True,
            )
            .values_list("tenant_id", "pk")
        )
        for tenant_id, document_id in missing:
            generate_ride_task.delay(tenant_id, document_type, document_id)
            queued += 1

    if queued:
        logger.info("generate_missing_rides_task: %s RIDEs encolados.", queued)
    return queued
