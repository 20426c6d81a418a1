# billing/services/sri/workflow.py
# -*- coding: utf-8 -*-
"""
Orquestación del ciclo de vida SRI de un comprobante electrónico:

    generate_xml -> sign_xml -> submit_to_sri -> check_authorization -> generate_ride

y, tras un rechazo, prepare_resubmission (XML y firma nuevos, mismo secuencial).

Cada operación:
- exige un TenantContext explícito y solo ve comprobantes de ese tenant
  (inexistente y ajeno devuelven el mismo NOT_FOUND);
- consulta el CancellationToken antes de cada frontera de I/O;
- guarda el comprobante solo después de que el I/O terminó bien;
- devuelve un WorkflowResult, nunca lanza excepciones hacia el llamador.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Type

from django.conf import settings
from django.utils import timezone

from billing.choices import DocumentStatus, DocumentType
from billing.models import (
    CreditNote,
    DebitNote,
    ElectronicDocument,
    Invoice,
    Retention,
    SriConfiguration,
)
from billing.services.ride import RideRenderer
from billing.services.sri import error_log
from billing.services.sri.access_key import AccessKey, InvalidAccessKey, InvalidArgument
from billing.services.sri.cancellation import (
    CancellationToken,
    OperationCancelled,
    ensure_token,
)
from billing.services.sri.client import SriWebServiceClient
from billing.services.sri.results import ErrorCode, WorkflowResult
from billing.services.sri.sequences import SequenceExhausted, assign_sequential
from billing.services.sri.signer import CertificateError, XmlSignatureService
from billing.services.sri.status_machine import (
    AUTHORIZATION_CHECK_STATUSES,
    COMMERCIAL_TRANSITIONS,
    SIGNABLE_STATUSES,
    XML_GENERATION_STATUSES,
    InvalidStateTransition,
    ensure_transition,
)
from billing.services.sri.xml_builder import XmlBuildError, XmlDocumentBuilder

logger = logging.getLogger("billing.sri")

DOCUMENT_MODELS: Dict[str, Type[ElectronicDocument]] = {
    DocumentType.INVOICE.value: Invoice,
    DocumentType.CREDIT_NOTE.value: CreditNote,
    DocumentType.DEBIT_NOTE.value: DebitNote,
    DocumentType.RETENTION.value: Retention,
}

# Nombres de operación registrados en SriErrorLog.
OP_GENERATE_XML = "GenerateXml"
OP_SIGN = "SignDocument"
OP_SUBMIT = "SubmitToSri"
OP_CHECK_AUTHORIZATION = "CheckAuthorization"
OP_GENERATE_RIDE = "GenerateRide"
OP_PREPARE_RESUBMISSION = "PrepareResubmission"
OP_CHANGE_STATUS = "ChangeStatus"

XML_FIELDS = ["status", "xml_path", "access_key", "signed_xml_path", "environment", "updated_at"]
SIGN_FIELDS = ["status", "signed_xml_path", "updated_at"]
AUTHORIZATION_FIELDS = [
    "status",
    "authorization_number",
    "authorization_date",
    "authorized_xml",
    "updated_at",
]

NOT_FOUND_MESSAGE = "Comprobante no encontrado."
GENERIC_FAILURE_MESSAGE = (
    "Ocurrió un error inesperado al procesar el comprobante. "
    "El detalle quedó registrado para soporte."
)

CERTIFICATE_EXPIRY_WARNING_DAYS = getattr(settings, "SRI_CERTIFICATE_EXPIRY_WARNING_DAYS", 30)


@dataclass(frozen=True)
class TenantContext:
    tenant_id: int


def _statuses(statuses) -> str:
    return ", ".join(sorted(statuses))


def _precondition(message: str) -> WorkflowResult:
    return WorkflowResult.failure(ErrorCode.PRECONDITION_FAILED, message)


def _error_dicts(items) -> List[dict]:
    out = []
    for item in items:
        if hasattr(item, "to_dict"):
            out.append(item.to_dict())
        else:
            out.append({"code": item.error_code, "message": item.message})
    return out


class DocumentSubmissionOrchestrator:
    def __init__(
        self,
        xml_builder: Optional[XmlDocumentBuilder] = None,
        signer: Optional[XmlSignatureService] = None,
        client_factory: Optional[Callable[[str], SriWebServiceClient]] = None,
        ride_renderer: Optional[RideRenderer] = None,
    ):
        self.xml_builder = xml_builder or XmlDocumentBuilder()
        self.signer = signer or XmlSignatureService()
        self.client_factory = client_factory or SriWebServiceClient
        self.ride_renderer = ride_renderer or RideRenderer()

    # ============================================================
    # Operaciones públicas
    # ============================================================

    def generate_xml(self, tenant, document_type, document_id, cancel_token=None) -> WorkflowResult:
        return self._run(OP_GENERATE_XML, tenant, document_type, document_id, cancel_token, self._generate_xml)

    def sign_xml(self, tenant, document_type, document_id, cancel_token=None) -> WorkflowResult:
        return self._run(OP_SIGN, tenant, document_type, document_id, cancel_token, self._sign_xml)

    def submit_to_sri(self, tenant, document_type, document_id, cancel_token=None) -> WorkflowResult:
        return self._run(
            OP_SUBMIT,
            tenant,
            document_type,
            document_id,
            cancel_token,
            self._submit_to_sri,
            exception_code=error_log.SOAP_ERROR,
        )

    def check_authorization(self, tenant, document_type, document_id, cancel_token=None) -> WorkflowResult:
        return self._run(
            OP_CHECK_AUTHORIZATION,
            tenant,
            document_type,
            document_id,
            cancel_token,
            self._check_authorization,
            exception_code=error_log.SOAP_ERROR,
        )

    def generate_ride(self, tenant, document_type, document_id, cancel_token=None) -> WorkflowResult:
        return self._run(OP_GENERATE_RIDE, tenant, document_type, document_id, cancel_token, self._generate_ride)

    def prepare_resubmission(self, tenant, document_type, document_id, cancel_token=None) -> WorkflowResult:
        return self._run(
            OP_PREPARE_RESUBMISSION,
            tenant,
            document_type,
            document_id,
            cancel_token,
            self._prepare_resubmission,
        )

    def change_status(self, tenant, document_type, document_id, new_status, cancel_token=None) -> WorkflowResult:
        return self._run(
            OP_CHANGE_STATUS,
            tenant,
            document_type,
            document_id,
            cancel_token,
            lambda doc, token: self._change_status(doc, token, new_status),
        )

    def error_logs(self, tenant, document_type, document_id) -> WorkflowResult:
        """Filas de SriErrorLog del comprobante, en orden cronológico."""
        return self._run(
            "ListErrors",
            tenant,
            document_type,
            document_id,
            None,
            lambda doc, token: WorkflowResult.success(error_log.logs_for_document(doc)),
        )

    # ============================================================
    # Infraestructura común
    # ============================================================

    def _run(
        self,
        operation: str,
        tenant,
        document_type,
        document_id,
        cancel_token: Optional[CancellationToken],
        body: Callable[[ElectronicDocument, CancellationToken], WorkflowResult],
        *,
        exception_code: str = error_log.UNEXPECTED_ERROR,
    ) -> WorkflowResult:
        if tenant is None or getattr(tenant, "tenant_id", None) is None:
            return WorkflowResult.failure(
                ErrorCode.TENANT_CONTEXT_MISSING,
                "No hay tenant en el contexto de la solicitud.",
            )

        token = ensure_token(cancel_token)
        model = DOCUMENT_MODELS.get(str(document_type))
        if model is None:
            try:
                model = DOCUMENT_MODELS.get(DocumentType(document_type).value)
            except ValueError:
                model = None
        if model is None:
            return WorkflowResult.failure(
                ErrorCode.INVALID_ARGUMENT,
                f"Tipo de comprobante no soportado: {document_type!r}",
            )

        document = None
        try:
            token.raise_if_cancelled()
            document = (
                model.objects.alive()
                .for_tenant(tenant.tenant_id)
                .select_related("emission_point__establishment")
                .filter(pk=document_id)
                .first()
            )
            if document is None:
                return WorkflowResult.failure(ErrorCode.NOT_FOUND, NOT_FOUND_MESSAGE)

            return body(document, token)

        except OperationCancelled:
            logger.info(
                "%s cancelada para %s id=%s", operation, model.__name__, document_id
            )
            return WorkflowResult.failure(ErrorCode.CANCELLED, "Operación cancelada.")

        except InvalidStateTransition as exc:
            return WorkflowResult.failure(ErrorCode.INVALID_STATE_TRANSITION, str(exc))

        except (InvalidArgument, InvalidAccessKey, XmlBuildError, SequenceExhausted, CertificateError) as exc:
            code = {
                InvalidArgument: ErrorCode.INVALID_ARGUMENT,
                InvalidAccessKey: ErrorCode.INVALID_ACCESS_KEY,
            }.get(type(exc), ErrorCode.PRECONDITION_FAILED)
            logger.warning(
                "%s falló para %s id=%s: %s", operation, model.__name__, document_id, exc
            )
            error_log.record_error(document, operation, code.value, str(exc))
            return WorkflowResult.failure(code, str(exc))

        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "Error inesperado en %s para %s id=%s", operation, model.__name__, document_id
            )
            if document is not None:
                error_log.record_error(
                    document,
                    operation,
                    exception_code,
                    str(exc) or exc.__class__.__name__,
                    exc=exc,
                )
            return WorkflowResult.failure(ErrorCode.UNEXPECTED_FAILURE, GENERIC_FAILURE_MESSAGE)

    def _configuration(self, document) -> Optional[SriConfiguration]:
        return SriConfiguration.objects.for_tenant(document.tenant_id).first()

    def _check_certificate(self, config: Optional[SriConfiguration]) -> Optional[WorkflowResult]:
        """
        Valida que haya certificado vigente con contraseña. No abre el PKCS#12.
        """
        if config is None:
            return WorkflowResult.failure(
                ErrorCode.CONFIGURATION_MISSING,
                "No existe configuración SRI para el tenant.",
            )
        if not config.certificate:
            return WorkflowResult.failure(
                ErrorCode.CERTIFICATE_MISSING,
                "La configuración SRI no tiene certificado de firma cargado.",
            )
        if not config.certificate_password:
            return WorkflowResult.failure(
                ErrorCode.CERTIFICATE_MISSING,
                "La configuración SRI no tiene contraseña de certificado.",
            )
        if not config.is_certificate_valid:
            return WorkflowResult.failure(
                ErrorCode.CERTIFICATE_EXPIRED,
                f"El certificado de firma expiró ({config.certificate_expires_at}).",
            )

        remaining = config.certificate_expires_at - timezone.now()
        if remaining <= timedelta(days=CERTIFICATE_EXPIRY_WARNING_DAYS):
            logger.warning(
                "Certificado SRI del tenant %s expira en %s días (%s)",
                config.tenant_id,
                remaining.days,
                config.certificate_expires_at,
            )
        return None

    def _build_xml(self, document, config, token):
        """
        Asigna secuencial si falta y construye el XML. No guarda el comprobante.
        Retorna (xml_path, access_key) o un WorkflowResult de falla.
        """
        emission_point = document.emission_point
        if emission_point is None:
            return _precondition("El comprobante no tiene punto de emisión.")
        if emission_point.tenant_id != document.tenant_id or not emission_point.is_active:
            return _precondition("El punto de emisión no pertenece al tenant o está inactivo.")
        establishment = emission_point.establishment
        if establishment is None or establishment.tenant_id != document.tenant_id:
            return _precondition("El establecimiento del punto de emisión no es válido.")

        token.raise_if_cancelled()
        assign_sequential(document)

        document.environment = config.environment
        token.raise_if_cancelled()
        xml_path, access_key = self.xml_builder.build(document, config, establishment, emission_point)

        if not AccessKey.is_valid(access_key):
            raise InvalidAccessKey(f"El constructor devolvió una clave de acceso inválida: {access_key!r}")

        parsed = AccessKey.from_string(access_key)
        logger.debug(
            "Clave de acceso %s: fecha=%s tipo=%s ruc=%s ambiente=%s serie=%s%s secuencial=%s",
            access_key,
            parsed.issue_date,
            parsed.document_type,
            parsed.ruc,
            parsed.environment,
            parsed.establishment_code,
            parsed.emission_point_code,
            parsed.sequential,
        )
        return xml_path, access_key

    # ============================================================
    # Pasos
    # ============================================================

    def _generate_xml(self, document, token) -> WorkflowResult:
        if document.status not in XML_GENERATION_STATUSES:
            return _precondition(
                f"No se puede generar el XML en estado {document.status}; "
                f"se requiere uno de: {_statuses(XML_GENERATION_STATUSES)}."
            )

        config = self._configuration(document)
        if config is None:
            return WorkflowResult.failure(
                ErrorCode.CONFIGURATION_MISSING,
                "No existe configuración SRI para el tenant.",
            )

        built = self._build_xml(document, config, token)
        if isinstance(built, WorkflowResult):
            return built
        xml_path, access_key = built

        document.apply_xml_result(xml_path, access_key)
        token.raise_if_cancelled()
        document.save(update_fields=XML_FIELDS)

        logger.info(
            "XML generado para %s id=%s, clave=%s",
            type(document).__name__,
            document.pk,
            access_key,
        )
        return WorkflowResult.success(
            {"xml_path": xml_path, "access_key": access_key, "status": document.status},
            message="XML generado.",
        )

    def _sign_xml(self, document, token) -> WorkflowResult:
        if document.status not in SIGNABLE_STATUSES:
            return _precondition(
                f"No se puede firmar en estado {document.status}; "
                f"se requiere uno de: {_statuses(SIGNABLE_STATUSES)}."
            )
        if not document.xml_path:
            return WorkflowResult.failure(
                ErrorCode.FILE_NOT_FOUND, "El comprobante no tiene XML generado."
            )

        token.raise_if_cancelled()
        if not os.path.exists(document.xml_path):
            return WorkflowResult.failure(
                ErrorCode.FILE_NOT_FOUND,
                f"No se encuentra el XML del comprobante: {os.path.basename(document.xml_path)}",
            )

        config = self._configuration(document)
        failure = self._check_certificate(config)
        if failure is not None:
            return failure

        token.raise_if_cancelled()
        signed_path = self.signer.sign(
            document.xml_path, bytes(config.certificate), config.certificate_password
        )

        document.apply_sign_result(signed_path)
        token.raise_if_cancelled()
        document.save(update_fields=SIGN_FIELDS)

        logger.info("XML firmado para %s id=%s", type(document).__name__, document.pk)
        return WorkflowResult.success(
            {"signed_xml_path": signed_path, "status": document.status},
            message="XML firmado.",
        )

    def _submit_to_sri(self, document, token) -> WorkflowResult:
        if document.status == DocumentStatus.REJECTED:
            token.raise_if_cancelled()
            previous = list(error_log.logs_for_document(document))
            message = (
                "El comprobante fue rechazado por el SRI y no se puede reenviar el mismo "
                "XML firmado; prepare un reenvío (XML y firma nuevos)."
            )
            if previous:
                message = f"{message} Errores previos: {error_log.format_errors(previous)}"
            return WorkflowResult.failure(
                ErrorCode.PRECONDITION_FAILED, message, errors=_error_dicts(previous)
            )

        if document.status != DocumentStatus.PENDING_AUTHORIZATION:
            return _precondition(
                f"No se puede enviar al SRI en estado {document.status}; "
                f"se requiere {DocumentStatus.PENDING_AUTHORIZATION.value}."
            )

        if not document.signed_xml_path:
            return WorkflowResult.failure(
                ErrorCode.FILE_NOT_FOUND, "El comprobante no tiene XML firmado."
            )

        token.raise_if_cancelled()
        if not os.path.exists(document.signed_xml_path):
            return WorkflowResult.failure(
                ErrorCode.FILE_NOT_FOUND,
                f"No se encuentra el XML firmado: {os.path.basename(document.signed_xml_path)}",
            )
        with open(document.signed_xml_path, "rb") as fh:
            content = fh.read()

        token.raise_if_cancelled()
        client = self.client_factory(document.environment)
        result = client.submit_document(content, token)

        if result.is_success:
            logger.info(
                "%s id=%s recibido por el SRI (clave=%s)",
                type(document).__name__,
                document.pk,
                document.access_key,
            )
            return WorkflowResult.success({"status": document.status}, message=result.message)

        token.raise_if_cancelled()
        error_log.record_sri_errors(document, OP_SUBMIT, result.errors)
        detail = error_log.format_errors(result.errors)
        logger.warning(
            "%s id=%s devuelto por el SRI: %s", type(document).__name__, document.pk, detail
        )
        return WorkflowResult.failure(
            ErrorCode.REMOTE_SUBMISSION_FAILED,
            f"{result.message} {detail}".strip(),
            errors=_error_dicts(result.errors),
        )

    def _check_authorization(self, document, token) -> WorkflowResult:
        if document.status not in AUTHORIZATION_CHECK_STATUSES:
            return _precondition(
                f"No se puede consultar autorización en estado {document.status}; "
                f"se requiere uno de: {_statuses(AUTHORIZATION_CHECK_STATUSES)}."
            )
        if not document.access_key:
            return _precondition("El comprobante no tiene clave de acceso.")
        if document.status == DocumentStatus.AUTHORIZED:
            return WorkflowResult.success(
                {"status": document.status, "authorization_number": document.authorization_number},
                message="El comprobante ya está autorizado.",
            )

        token.raise_if_cancelled()
        result = self.client_factory(document.environment).check_authorization(document.access_key)

        if result.is_authorized:
            document.apply_authorization_result(result)
            token.raise_if_cancelled()
            document.save(update_fields=AUTHORIZATION_FIELDS)
            logger.info(
                "%s id=%s AUTORIZADO (número=%s)",
                type(document).__name__,
                document.pk,
                document.authorization_number,
            )
            return WorkflowResult.success(
                {"status": document.status, "authorization_number": document.authorization_number},
                message="Comprobante autorizado.",
            )

        if result.is_in_process:
            return WorkflowResult.success(
                {"status": document.status, "sri_status": result.status},
                message="El comprobante sigue en procesamiento en el SRI.",
            )

        if result.is_transient:
            return WorkflowResult.failure(
                ErrorCode.REMOTE_SUBMISSION_FAILED,
                "Respuesta del SRI no concluyente; reintente la consulta. "
                f"{error_log.format_errors(result.errors)}",
                errors=_error_dicts(result.errors),
            )

        if not result.errors and result.status != "NO AUTORIZADO":
            return WorkflowResult.success(
                {"status": document.status, "sri_status": result.status},
                message=f"Estado SRI sin cambios: {result.status}",
            )

        document.apply_authorization_result(result)
        token.raise_if_cancelled()
        document.save(update_fields=["status", "updated_at"])
        error_log.record_sri_errors(document, OP_CHECK_AUTHORIZATION, result.errors)

        detail = error_log.format_errors(result.errors)
        logger.warning(
            "%s id=%s NO AUTORIZADO: %s", type(document).__name__, document.pk, detail
        )
        return WorkflowResult.failure(
            ErrorCode.REMOTE_SUBMISSION_FAILED,
            f"Comprobante no autorizado por el SRI. {detail}".strip(),
            errors=_error_dicts(result.errors),
        )

    def _generate_ride(self, document, token) -> WorkflowResult:
        if document.status != DocumentStatus.AUTHORIZED:
            return _precondition(
                f"El RIDE solo se genera para comprobantes {DocumentStatus.AUTHORIZED.value}; "
                f"estado actual {document.status}."
            )
        if not document.access_key or not document.authorization_number:
            return _precondition("El comprobante no tiene clave de acceso o número de autorización.")

        config = self._configuration(document)
        if config is None:
            return WorkflowResult.failure(
                ErrorCode.CONFIGURATION_MISSING,
                "No existe configuración SRI para el tenant.",
            )

        token.raise_if_cancelled()
        ride_path = self.ride_renderer.render(document, config)

        document.ride_path = ride_path
        token.raise_if_cancelled()
        document.save(update_fields=["ride_path", "updated_at"])
        return WorkflowResult.success({"ride_path": ride_path}, message="RIDE generado.")

    def _prepare_resubmission(self, document, token) -> WorkflowResult:
        """
        Reconoce el rechazo y deja el comprobante listo para reenviar:
        XML nuevo (clave de acceso nueva, mismo secuencial) firmado, en
        PENDING_AUTHORIZATION. Las filas de SriErrorLog se conservan.
        """
        if document.status != DocumentStatus.REJECTED:
            return _precondition(
                f"Solo se prepara un reenvío desde {DocumentStatus.REJECTED.value}; "
                f"estado actual {document.status}."
            )

        config = self._configuration(document)
        failure = self._check_certificate(config)
        if failure is not None:
            return failure

        built = self._build_xml(document, config, token)
        if isinstance(built, WorkflowResult):
            return built
        xml_path, access_key = built
        document.apply_xml_result(xml_path, access_key, resubmission=True)

        token.raise_if_cancelled()
        signed_path = self.signer.sign(
            xml_path, bytes(config.certificate), config.certificate_password
        )
        document.apply_sign_result(signed_path)
        document.rejection_acknowledged_at = timezone.now()

        token.raise_if_cancelled()
        document.save(update_fields=XML_FIELDS + ["rejection_acknowledged_at"])

        logger.info(
            "Reenvío preparado para %s id=%s (clave nueva=%s)",
            type(document).__name__,
            document.pk,
            access_key,
        )
        return WorkflowResult.success(
            {"status": document.status, "access_key": access_key},
            message="Reenvío preparado: XML regenerado y firmado.",
        )

    def _change_status(self, document, token, new_status) -> WorkflowResult:
        """Cambios comerciales manuales (enviado, pagado, vencido, cancelado, anulado)."""
        allowed = COMMERCIAL_TRANSITIONS.get(document.status, frozenset())
        if str(new_status) not in allowed:
            raise InvalidStateTransition(document.status, new_status)

        document.status = ensure_transition(document.status, new_status)
        token.raise_if_cancelled()
        document.save(update_fields=["status", "updated_at"])
        return WorkflowResult.success({"status": document.status}, message="Estado actualizado.")
