# billing/tests/test_workflow.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

from django.db import DatabaseError
from django.test import TestCase
from django.utils import timezone

from billing.choices import DocumentStatus, DocumentType
from billing.models import EmissionPoint, Establishment, SriErrorLog, Tenant
from billing.services.sri.access_key import AccessKey
from billing.services.sri.cancellation import CancellationToken
from billing.services.sri.client import (
    INVALID_RESPONSE,
    AuthorizationResult,
    SriError,
    SriTransportError,
    SubmissionResult,
)
from billing.services.sri.results import ErrorCode
from billing.services.sri.workflow import (
    GENERIC_FAILURE_MESSAGE,
    NOT_FOUND_MESSAGE,
    DocumentSubmissionOrchestrator,
    TenantContext,
)
from billing.services.sri.xml_builder import XmlDocumentBuilder
from billing.tests.helpers import FakeSigner, FakeSriClient, SriTestDataMixin

INVOICE = DocumentType.INVOICE


class WorkflowTestCase(SriTestDataMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.ctx = TenantContext(tenant_id=self.tenant.pk)
        self.signer = FakeSigner()
        self.client = FakeSriClient()
        self.orchestrator = self._orchestrator()

    def _orchestrator(self, **kwargs):
        params = {"signer": self.signer, "client_factory": self.client}
        params.update(kwargs)
        return DocumentSubmissionOrchestrator(**params)

    def _factura_firmada(self):
        invoice = self._crear_factura()
        self.assertTrue(self.orchestrator.generate_xml(self.ctx, INVOICE, invoice.pk).ok)
        self.assertTrue(self.orchestrator.sign_xml(self.ctx, INVOICE, invoice.pk).ok)
        invoice.refresh_from_db()
        return invoice

    def _logs(self, document):
        return list(SriErrorLog.objects.for_document(document))


# ===================================================================
# Contexto y búsqueda
# ===================================================================


class TenantScopeTests(WorkflowTestCase):
    def test_sin_tenant(self):
        invoice = self._crear_factura()

        for ctx in (None, TenantContext(tenant_id=None)):
            result = self.orchestrator.generate_xml(ctx, INVOICE, invoice.pk)
            self.assertFalse(result.ok)
            self.assertEqual(result.error, ErrorCode.TENANT_CONTEXT_MISSING)

    def test_comprobante_de_otro_tenant_es_no_encontrado(self):
        other = Tenant.objects.create(name="Otra Empresa")
        establishment = Establishment.objects.create(tenant=other, code="001")
        point = EmissionPoint.objects.create(tenant=other, establishment=establishment, code="001")
        foreign = self._crear_factura(tenant=other, emission_point=point)

        ajeno = self.orchestrator.generate_xml(self.ctx, INVOICE, foreign.pk)
        inexistente = self.orchestrator.generate_xml(self.ctx, INVOICE, 999_999)

        self.assertEqual(ajeno.error, ErrorCode.NOT_FOUND)
        self.assertEqual(inexistente.error, ErrorCode.NOT_FOUND)
        self.assertEqual(ajeno.message, NOT_FOUND_MESSAGE)
        self.assertEqual(ajeno.message, inexistente.message)

        foreign.refresh_from_db()
        self.assertEqual(foreign.status, DocumentStatus.DRAFT)

    def test_comprobante_eliminado_es_no_encontrado(self):
        invoice = self._crear_factura(deleted_at=timezone.now())

        result = self.orchestrator.generate_xml(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.NOT_FOUND)

    def test_tipo_de_comprobante_desconocido(self):
        result = self.orchestrator.generate_xml(self.ctx, "99", 1)

        self.assertEqual(result.error, ErrorCode.INVALID_ARGUMENT)


# ===================================================================
# generate_xml
# ===================================================================


class GenerateXmlTests(WorkflowTestCase):
    def test_genera_xml_y_asigna_secuencial(self):
        invoice = self._crear_factura()

        result = self.orchestrator.generate_xml(self.ctx, INVOICE, invoice.pk)

        self.assertTrue(result.ok, result.message)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, DocumentStatus.PENDING_SIGNATURE)
        self.assertEqual(invoice.sequential, 1)
        self.assertTrue(AccessKey.is_valid(invoice.access_key))
        self.assertEqual(result.value["access_key"], invoice.access_key)
        self.assertTrue(os.path.exists(invoice.xml_path))

        key = AccessKey.from_string(invoice.access_key)
        self.assertEqual(key.ruc, self.config.ruc)
        self.assertEqual(key.establishment_code, "001")
        self.assertEqual(key.emission_point_code, "002")
        self.assertEqual(key.sequential, 1)

    def test_regenerar_conserva_secuencial_y_borra_firma(self):
        invoice = self._factura_firmada()
        self.assertTrue(invoice.signed_xml_path)

        result = self.orchestrator.generate_xml(self.ctx, INVOICE, invoice.pk)

        self.assertTrue(result.ok)
        invoice.refresh_from_db()
        self.assertEqual(invoice.sequential, 1)
        self.assertEqual(invoice.status, DocumentStatus.PENDING_SIGNATURE)
        self.assertEqual(invoice.signed_xml_path, "")
        self.emission_point.refresh_from_db()
        self.assertEqual(self.emission_point.invoice_sequence, 1)

    def test_dos_comprobantes_reciben_secuenciales_distintos(self):
        first = self._crear_factura()
        second = self._crear_factura()

        self.orchestrator.generate_xml(self.ctx, INVOICE, first.pk)
        self.orchestrator.generate_xml(self.ctx, INVOICE, second.pk)

        first.refresh_from_db()
        second.refresh_from_db()
        self.assertEqual({first.sequential, second.sequential}, {1, 2})

    def test_sin_configuracion_sri(self):
        self.config.delete()
        invoice = self._crear_factura()

        result = self.orchestrator.generate_xml(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.CONFIGURATION_MISSING)

    def test_estado_no_permitido(self):
        invoice = self._crear_factura(status=DocumentStatus.AUTHORIZED)

        result = self.orchestrator.generate_xml(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.PRECONDITION_FAILED)

    def test_sin_punto_de_emision(self):
        invoice = self._crear_factura()
        type(invoice).objects.filter(pk=invoice.pk).update(emission_point=None)

        result = self.orchestrator.generate_xml(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.PRECONDITION_FAILED)

    def test_punto_de_emision_inactivo(self):
        EmissionPoint.objects.filter(pk=self.emission_point.pk).update(is_active=False)
        invoice = self._crear_factura()

        result = self.orchestrator.generate_xml(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.PRECONDITION_FAILED)

    def test_factura_sin_lineas_registra_error(self):
        invoice = self._crear_factura(with_lines=False)

        result = self.orchestrator.generate_xml(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.PRECONDITION_FAILED)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, DocumentStatus.DRAFT)
        logs = self._logs(invoice)
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0].operation, "GenerateXml")

    def test_clave_invalida_del_constructor(self):
        invoice = self._crear_factura()

        with patch.object(XmlDocumentBuilder, "build", return_value=("/tmp/x.xml", "123")):
            result = self.orchestrator.generate_xml(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.INVALID_ACCESS_KEY)
        invoice.refresh_from_db()
        self.assertIsNone(invoice.access_key)

    def test_otros_tipos_de_comprobante(self):
        invoice = self._crear_factura(sequential=5)
        documentos = [
            (DocumentType.CREDIT_NOTE, self._crear_nota_credito(invoice)),
            (DocumentType.DEBIT_NOTE, self._crear_nota_debito(invoice)),
            (DocumentType.RETENTION, self._crear_retencion()),
        ]
        for document_type, document in documentos:
            with self.subTest(document_type=document_type.value):
                result = self.orchestrator.generate_xml(self.ctx, document_type, document.pk)
                self.assertTrue(result.ok, result.message)
                document.refresh_from_db()
                self.assertEqual(document.sequential, 1)
                self.assertEqual(
                    AccessKey.from_string(document.access_key).document_type,
                    document_type.value,
                )


# ===================================================================
# sign_xml
# ===================================================================


class SignXmlTests(WorkflowTestCase):
    def _factura_con_xml(self):
        invoice = self._crear_factura()
        self.orchestrator.generate_xml(self.ctx, INVOICE, invoice.pk)
        invoice.refresh_from_db()
        return invoice

    def test_firma(self):
        invoice = self._factura_con_xml()

        result = self.orchestrator.sign_xml(self.ctx, INVOICE, invoice.pk)

        self.assertTrue(result.ok, result.message)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, DocumentStatus.PENDING_AUTHORIZATION)
        self.assertTrue(invoice.signed_xml_path.endswith("_signed.xml"))
        self.assertTrue(os.path.exists(invoice.signed_xml_path))
        self.assertEqual(self.signer.calls, [invoice.xml_path])

    def test_certificado_vencido_no_llama_al_firmador(self):
        invoice = self._factura_con_xml()
        self.config.certificate_expires_at = timezone.now() - timedelta(days=1)
        self.config.save()

        result = self.orchestrator.sign_xml(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.CERTIFICATE_EXPIRED)
        self.assertEqual(self.signer.calls, [])
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, DocumentStatus.PENDING_SIGNATURE)

    def test_sin_certificado(self):
        invoice = self._factura_con_xml()
        self.config.certificate = None
        self.config.save()

        result = self.orchestrator.sign_xml(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.CERTIFICATE_MISSING)
        self.assertEqual(self.signer.calls, [])

    def test_sin_contrasena(self):
        invoice = self._factura_con_xml()
        self.config.certificate_password = ""
        self.config.save()

        result = self.orchestrator.sign_xml(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.CERTIFICATE_MISSING)

    def test_xml_inexistente_en_disco(self):
        invoice = self._factura_con_xml()
        os.remove(invoice.xml_path)

        result = self.orchestrator.sign_xml(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.FILE_NOT_FOUND)
        self.assertEqual(self.signer.calls, [])

    def test_borrador_no_se_firma(self):
        invoice = self._crear_factura()

        result = self.orchestrator.sign_xml(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.PRECONDITION_FAILED)

    def test_aviso_de_certificado_por_expirar(self):
        invoice = self._factura_con_xml()
        self.config.certificate_expires_at = timezone.now() + timedelta(days=5)
        self.config.save()

        with self.assertLogs("billing.sri", level="WARNING") as logs:
            result = self.orchestrator.sign_xml(self.ctx, INVOICE, invoice.pk)

        self.assertTrue(result.ok)
        self.assertTrue(any("expira" in line for line in logs.output))
        self.assertFalse(any(self.config.certificate_password in line for line in logs.output))


# ===================================================================
# submit_to_sri
# ===================================================================


class SubmitToSriTests(WorkflowTestCase):
    def test_recibido(self):
        invoice = self._factura_firmada()

        result = self.orchestrator.submit_to_sri(self.ctx, INVOICE, invoice.pk)

        self.assertTrue(result.ok, result.message)
        self.assertEqual(len(self.client.submitted), 1)
        self.assertEqual(self.client.submitted[0], Path(invoice.signed_xml_path).read_bytes())
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, DocumentStatus.PENDING_AUTHORIZATION)

    def test_borrador_no_llama_al_sri(self):
        invoice = self._crear_factura()

        result = self.orchestrator.submit_to_sri(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.PRECONDITION_FAILED)
        self.assertIn(DocumentStatus.PENDING_AUTHORIZATION.value, result.message)
        self.assertEqual(self.client.submitted, [])

    def test_devuelto_registra_un_error_por_mensaje(self):
        invoice = self._factura_firmada()
        self.client.submission = SubmissionResult(
            is_success=False,
            message="Comprobante devuelto por el SRI.",
            errors=[
                SriError("35", "ARCHIVO NO CUMPLE ESTRUCTURA XML", "ruc"),
                SriError("39", "FIRMA INVALIDA"),
            ],
        )

        result = self.orchestrator.submit_to_sri(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.REMOTE_SUBMISSION_FAILED)
        self.assertIn("[35] ARCHIVO NO CUMPLE ESTRUCTURA XML", result.message)
        self.assertIn("[39] FIRMA INVALIDA", result.message)
        self.assertEqual([e["code"] for e in result.errors], ["35", "39"])

        logs = self._logs(invoice)
        self.assertEqual([row.error_code for row in logs], ["35", "39"])
        self.assertTrue(all(row.operation == "SubmitToSri" for row in logs))
        self.assertEqual(logs[0].additional_data, {"info": "ruc"})

        invoice.refresh_from_db()
        self.assertEqual(invoice.status, DocumentStatus.PENDING_AUTHORIZATION)

    def test_rechazado_no_reenvia_y_lista_errores_previos(self):
        invoice = self._factura_firmada()
        self.client.authorization = AuthorizationResult(
            is_authorized=False,
            status="NO AUTORIZADO",
            errors=[SriError("56", "ERROR ESTABLECIMIENTO CERRADO")],
        )
        self.orchestrator.check_authorization(self.ctx, INVOICE, invoice.pk)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, DocumentStatus.REJECTED)

        result = self.orchestrator.submit_to_sri(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.PRECONDITION_FAILED)
        self.assertIn("[56] ERROR ESTABLECIMIENTO CERRADO", result.message)
        self.assertEqual(result.errors, [{"code": "56", "message": "ERROR ESTABLECIMIENTO CERRADO"}])
        self.assertEqual(self.client.submitted, [])

    def test_error_de_transporte(self):
        invoice = self._factura_firmada()
        self.client.error = SriTransportError("No fue posible conectarse")

        result = self.orchestrator.submit_to_sri(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.UNEXPECTED_FAILURE)
        self.assertEqual(result.message, GENERIC_FAILURE_MESSAGE)
        logs = self._logs(invoice)
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0].error_code, "SOAP_ERROR")
        self.assertIn("SriTransportError", logs[0].stack_trace)

    def test_falla_de_bitacora_no_oculta_el_error(self):
        invoice = self._factura_firmada()
        self.client.error = SriTransportError("timeout")

        with patch.object(SriErrorLog.objects, "create", side_effect=DatabaseError("sin BD")):
            result = self.orchestrator.submit_to_sri(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.UNEXPECTED_FAILURE)
        self.assertEqual(result.message, GENERIC_FAILURE_MESSAGE)
        self.assertEqual(self._logs(invoice), [])

    def test_xml_firmado_inexistente(self):
        invoice = self._factura_firmada()
        os.remove(invoice.signed_xml_path)

        result = self.orchestrator.submit_to_sri(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.FILE_NOT_FOUND)
        self.assertEqual(self.client.submitted, [])


# ===================================================================
# check_authorization / generate_ride
# ===================================================================


class CheckAuthorizationTests(WorkflowTestCase):
    def test_autorizado(self):
        invoice = self._factura_firmada()
        fecha = timezone.now()
        self.client.authorization = AuthorizationResult(
            is_authorized=True,
            status="AUTORIZADO",
            authorization_number=invoice.access_key,
            authorization_date=fecha,
            authorized_xml="<autorizacion/>",
        )

        result = self.orchestrator.check_authorization(self.ctx, INVOICE, invoice.pk)

        self.assertTrue(result.ok, result.message)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, DocumentStatus.AUTHORIZED)
        self.assertEqual(invoice.authorization_number, invoice.access_key)
        self.assertEqual(invoice.authorization_date, fecha)
        self.assertEqual(invoice.authorized_xml, "<autorizacion/>")
        self.assertEqual(self.client.checked, [invoice.access_key])

    def test_ya_autorizado_no_consulta(self):
        invoice = self._factura_firmada()
        type(invoice).objects.filter(pk=invoice.pk).update(
            status=DocumentStatus.AUTHORIZED, authorization_number=invoice.access_key
        )

        result = self.orchestrator.check_authorization(self.ctx, INVOICE, invoice.pk)

        self.assertTrue(result.ok)
        self.assertEqual(self.client.checked, [])

    def test_en_procesamiento_no_cambia(self):
        invoice = self._factura_firmada()

        result = self.orchestrator.check_authorization(self.ctx, INVOICE, invoice.pk)

        self.assertTrue(result.ok)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, DocumentStatus.PENDING_AUTHORIZATION)

    def test_respuesta_no_concluyente_no_cambia(self):
        invoice = self._factura_firmada()
        self.client.authorization = AuthorizationResult(
            is_authorized=False,
            status=None,
            errors=[SriError(INVALID_RESPONSE, "sin autorizaciones")],
        )

        result = self.orchestrator.check_authorization(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.REMOTE_SUBMISSION_FAILED)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, DocumentStatus.PENDING_AUTHORIZATION)
        self.assertEqual(self._logs(invoice), [])

    def test_no_autorizado(self):
        invoice = self._factura_firmada()
        self.client.authorization = AuthorizationResult(
            is_authorized=False,
            status="NO AUTORIZADO",
            errors=[SriError("56", "ERROR ESTABLECIMIENTO CERRADO")],
        )

        result = self.orchestrator.check_authorization(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.REMOTE_SUBMISSION_FAILED)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, DocumentStatus.REJECTED)
        logs = self._logs(invoice)
        self.assertEqual([(row.operation, row.error_code) for row in logs], [("CheckAuthorization", "56")])


class GenerateRideTests(WorkflowTestCase):
    def test_ride_de_comprobante_autorizado(self):
        invoice = self._factura_firmada()
        self.client.authorization = AuthorizationResult(
            is_authorized=True,
            status="AUTORIZADO",
            authorization_number=invoice.access_key,
        )
        self.orchestrator.check_authorization(self.ctx, INVOICE, invoice.pk)

        result = self.orchestrator.generate_ride(self.ctx, INVOICE, invoice.pk)

        self.assertTrue(result.ok, result.message)
        invoice.refresh_from_db()
        self.assertTrue(invoice.ride_path.endswith(f"{invoice.access_key}.pdf"))
        self.assertTrue(Path(invoice.ride_path).read_bytes().startswith(b"%PDF"))

    def test_no_autorizado_no_genera_ride(self):
        invoice = self._factura_firmada()

        result = self.orchestrator.generate_ride(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.PRECONDITION_FAILED)


# ===================================================================
# prepare_resubmission / change_status / cancelación
# ===================================================================


class PrepareResubmissionTests(WorkflowTestCase):
    def _factura_rechazada(self):
        invoice = self._factura_firmada()
        self.client.authorization = AuthorizationResult(
            is_authorized=False,
            status="NO AUTORIZADO",
            errors=[SriError("65", "FECHA EMISION EXTEMPORANEA")],
        )
        self.orchestrator.check_authorization(self.ctx, INVOICE, invoice.pk)
        invoice.refresh_from_db()
        return invoice

    def test_regenera_y_firma_con_el_mismo_secuencial(self):
        invoice = self._factura_rechazada()
        result = self.orchestrator.prepare_resubmission(self.ctx, INVOICE, invoice.pk)

        self.assertTrue(result.ok, result.message)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, DocumentStatus.PENDING_AUTHORIZATION)
        self.assertEqual(invoice.sequential, 1)
        self.assertTrue(AccessKey.is_valid(invoice.access_key))
        self.assertEqual(AccessKey.from_string(invoice.access_key).sequential, 1)
        self.assertIsNotNone(invoice.rejection_acknowledged_at)
        self.assertTrue(os.path.exists(invoice.signed_xml_path))
        self.assertEqual(len(self.signer.calls), 2)
        # La bitácora del rechazo se conserva.
        self.assertEqual([row.error_code for row in self._logs(invoice)], ["65"])
        self.assertEqual(result.value["access_key"], invoice.access_key)
        self.assertNotEqual(invoice.xml_path, "")

        # Ahora el envío vuelve a estar permitido.
        self.assertTrue(self.orchestrator.submit_to_sri(self.ctx, INVOICE, invoice.pk).ok)

    def test_solo_desde_rechazado(self):
        invoice = self._factura_firmada()

        result = self.orchestrator.prepare_resubmission(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.PRECONDITION_FAILED)

    def test_certificado_vencido(self):
        invoice = self._factura_rechazada()
        self.config.certificate_expires_at = timezone.now() - timedelta(minutes=1)
        self.config.save()

        result = self.orchestrator.prepare_resubmission(self.ctx, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.CERTIFICATE_EXPIRED)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, DocumentStatus.REJECTED)
        self.assertIsNone(invoice.rejection_acknowledged_at)


class ChangeStatusTests(WorkflowTestCase):
    def test_transicion_comercial(self):
        invoice = self._crear_factura()

        result = self.orchestrator.change_status(self.ctx, INVOICE, invoice.pk, DocumentStatus.SENT)

        self.assertTrue(result.ok)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, DocumentStatus.SENT)

    def test_transicion_invalida(self):
        invoice = self._crear_factura()

        result = self.orchestrator.change_status(self.ctx, INVOICE, invoice.pk, DocumentStatus.PAID)

        self.assertEqual(result.error, ErrorCode.INVALID_STATE_TRANSITION)
        self.assertIn("DRAFT", result.message)
        self.assertIn("PAID", result.message)

    def test_no_permite_saltar_el_flujo_sri(self):
        invoice = self._crear_factura()

        result = self.orchestrator.change_status(
            self.ctx, INVOICE, invoice.pk, DocumentStatus.PENDING_SIGNATURE
        )

        self.assertEqual(result.error, ErrorCode.INVALID_STATE_TRANSITION)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, DocumentStatus.DRAFT)


class CancellationTests(WorkflowTestCase):
    def test_token_cancelado_antes_de_empezar(self):
        invoice = self._crear_factura()
        token = CancellationToken()
        self.assertFalse(token.is_cancelled)
        token.cancel()
        self.assertTrue(token.is_cancelled)

        result = self.orchestrator.generate_xml(self.ctx, INVOICE, invoice.pk, token)

        self.assertEqual(result.error, ErrorCode.CANCELLED)
        invoice.refresh_from_db()
        self.assertIsNone(invoice.sequential)

    def test_cancelado_durante_la_construccion_no_persiste(self):
        invoice = self._crear_factura()
        token = CancellationToken()

        class CancellingBuilder(XmlDocumentBuilder):
            def build(self, *args, **kwargs):
                built = super().build(*args, **kwargs)
                token.cancel()
                return built

        orchestrator = self._orchestrator(xml_builder=CancellingBuilder())
        result = orchestrator.generate_xml(self.ctx, INVOICE, invoice.pk, token)

        self.assertEqual(result.error, ErrorCode.CANCELLED)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, DocumentStatus.DRAFT)
        self.assertIsNone(invoice.access_key)
        self.assertEqual(invoice.xml_path, "")
        self.assertEqual(self._logs(invoice), [])

    def test_cancelado_durante_la_firma_no_persiste(self):
        invoice = self._crear_factura()
        self.orchestrator.generate_xml(self.ctx, INVOICE, invoice.pk)
        token = CancellationToken()
        signer = self.signer

        class CancellingSigner:
            def sign(self, *args):
                path = signer.sign(*args)
                token.cancel()
                return path

        orchestrator = self._orchestrator(signer=CancellingSigner())
        result = orchestrator.sign_xml(self.ctx, INVOICE, invoice.pk, token)

        self.assertEqual(result.error, ErrorCode.CANCELLED)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, DocumentStatus.PENDING_SIGNATURE)
        self.assertEqual(invoice.signed_xml_path, "")


class ErrorLogsTests(WorkflowTestCase):
    def test_lista_bitacora_del_comprobante(self):
        invoice = self._factura_firmada()
        self.client.submission = SubmissionResult(
            is_success=False, message="devuelto", errors=[SriError("35", "ESTRUCTURA")]
        )
        self.orchestrator.submit_to_sri(self.ctx, INVOICE, invoice.pk)

        result = self.orchestrator.error_logs(self.ctx, INVOICE, invoice.pk)

        self.assertTrue(result.ok)
        self.assertEqual([row.error_code for row in result.value], ["35"])

    def test_bitacora_de_otro_tenant(self):
        invoice = self._crear_factura()
        other = TenantContext(tenant_id=Tenant.objects.create(name="Otra").pk)

        result = self.orchestrator.error_logs(other, INVOICE, invoice.pk)

        self.assertEqual(result.error, ErrorCode.NOT_FOUND)
