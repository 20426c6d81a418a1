# billing/services/sri/client.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests
from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from zeep import Client
from zeep.exceptions import Fault
from zeep.helpers import serialize_object
from zeep.transports import Transport

from billing.choices import SriEnvironment
from billing.services.sri.cancellation import CancellationToken, ensure_token

logger = logging.getLogger("billing.sri")


# =========================
# Endpoints SRI (sobrescribibles desde settings)
# =========================

WSDL_ENDPOINTS = {
    SriEnvironment.TEST.value: {
        "recepcion": getattr(
            settings,
            "SRI_TEST_RECEPCION_WSDL",
            "https://celcer.sri.gob.ec/comprobantes-electronicos-ws/RecepcionComprobantesOffline?wsdl",
        ),
        "autorizacion": getattr(
            settings,
            "SRI_TEST_AUTORIZACION_WSDL",
            "https://celcer.sri.gob.ec/comprobantes-electronicos-ws/AutorizacionComprobantesOffline?wsdl",
        ),
    },
    SriEnvironment.PRODUCTION.value: {
        "recepcion": getattr(
            settings,
            "SRI_PROD_RECEPCION_WSDL",
            "https://cel.sri.gob.ec/comprobantes-electronicos-ws/RecepcionComprobantesOffline?wsdl",
        ),
        "autorizacion": getattr(
            settings,
            "SRI_PROD_AUTORIZACION_WSDL",
            "https://cel.sri.gob.ec/comprobantes-electronicos-ws/AutorizacionComprobantesOffline?wsdl",
        ),
    },
}

# Parámetros de red / resiliencia
SRI_SSL_VERIFY = getattr(settings, "SRI_SSL_VERIFY", True)
SRI_REQUEST_TIMEOUT = getattr(settings, "SRI_REQUEST_TIMEOUT", 15)  # segundos
SRI_RETRY_MAX = getattr(settings, "SRI_RETRY_MAX", 3)
SRI_RETRY_BACKOFF = getattr(settings, "SRI_RETRY_BACKOFF", 2)

STATUS_RECEIVED = "RECIBIDA"
STATUS_RETURNED = "DEVUELTA"
STATUS_AUTHORIZED = "AUTORIZADO"
STATUS_NOT_AUTHORIZED = "NO AUTORIZADO"
IN_PROCESS_STATUSES = frozenset({"EN PROCESAMIENTO", "EN PROCESO"})

# Identificador SRI 43: "CLAVE ACCESO REGISTRADA".
ALREADY_REGISTERED = "43"

# Códigos locales para respuestas que no se pudieron interpretar; son
# transitorios: el comprobante no cambia de estado.
INVALID_RESPONSE = "INVALID_RESPONSE"
PARSE_ERROR = "PARSE_ERROR"
TRANSIENT_ERROR_CODES = frozenset({INVALID_RESPONSE, PARSE_ERROR})


class SriTransportError(Exception):
    """Falla de red, timeout o SOAP Fault al hablar con el SRI."""


@dataclass
class SriError:
    code: str
    message: str
    info: str = ""

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "info": self.info}


@dataclass
class SubmissionResult:
    is_success: bool
    message: str
    errors: List[SriError] = field(default_factory=list)


@dataclass
class AuthorizationResult:
    is_authorized: bool
    status: Optional[str]
    authorization_number: Optional[str] = None
    authorization_date: Optional[datetime] = None
    errors: List[SriError] = field(default_factory=list)
    authorized_xml: Optional[str] = None

    @property
    def is_in_process(self) -> bool:
        return (self.status or "").upper() in IN_PROCESS_STATUSES

    @property
    def is_transient(self) -> bool:
        """Sin respuesta interpretable: solo errores locales transitorios."""
        return bool(self.errors) and all(e.code in TRANSIENT_ERROR_CODES for e in self.errors)


def _as_list(value) -> list:
    if not value:
        return []
    if isinstance(value, dict):
        return [value]
    return list(value)


def _extract_messages(node: Dict[str, Any]) -> List[SriError]:
    mensajes = (node.get("mensajes") or {}).get("mensaje")
    return [
        SriError(
            code=str(m.get("identificador") or ""),
            message=str(m.get("mensaje") or ""),
            info=str(m.get("informacionAdicional") or ""),
        )
        for m in _as_list(mensajes)
    ]


def _parse_authorization_date(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        value = parse_datetime(value)
        if value is None:
            return None
    if timezone.is_naive(value):
        value = timezone.make_aware(value)
    return value


class SriWebServiceClient:
    """
    Cliente SOAP para los Web Services Offline del SRI:

    - RecepcionComprobantesOffline: validarComprobante(xml)
    - AutorizacionComprobantesOffline: autorizacionComprobante(claveAccesoComprobante)

    Los clientes zeep se crean al primer uso (la carga del WSDL ya es I/O).
    """

    def __init__(
        self,
        environment: str = SriEnvironment.TEST,
        timeout: Optional[int] = None,
        *,
        recepcion_client=None,
        autorizacion_client=None,
    ):
        self.environment = str(SriEnvironment(environment).value)
        self.timeout = timeout or SRI_REQUEST_TIMEOUT
        self._recepcion_client = recepcion_client
        self._autorizacion_client = autorizacion_client
        self._transport = None

    def _build_transport(self) -> Transport:
        session = requests.Session()
        session.verify = SRI_SSL_VERIFY
        session.headers.update({"User-Agent": "SaasSRI/1.0 (Python/Zeep)"})

        retry = Retry(
            total=SRI_RETRY_MAX,
            backoff_factor=SRI_RETRY_BACKOFF,
            status_forcelist=[500, 502, 503, 504],
            allowed_methods=["GET", "POST"],
        )
        adapter = HTTPAdapter(max_retries=retry)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        return Transport(session=session, timeout=self.timeout, operation_timeout=self.timeout)

    def _client(self, service: str) -> Client:
        attr = f"_{service}_client"
        client = getattr(self, attr)
        if client is None:
            if self._transport is None:
                self._transport = self._build_transport()
            wsdl = WSDL_ENDPOINTS[self.environment][service]
            logger.info(
                "Inicializando cliente SRI %s ambiente=%s [WSDL=%s, verify_ssl=%s, "
                "timeout=%s, retries=%s, backoff=%s]",
                service,
                self.environment,
                wsdl,
                SRI_SSL_VERIFY,
                self.timeout,
                SRI_RETRY_MAX,
                SRI_RETRY_BACKOFF,
            )
            try:
                client = Client(wsdl=wsdl, transport=self._transport)
            except requests.RequestException as exc:
                raise SriTransportError(f"No se pudo cargar el WSDL de {service}: {exc}") from exc
            setattr(self, attr, client)
        return client

    def _call(self, service: str, operation: str, **kwargs) -> Dict[str, Any]:
        try:
            respuesta = getattr(self._client(service).service, operation)(**kwargs)
        except Fault as exc:
            logger.warning("SOAP Fault en %s.%s: %s", service, operation, exc)
            raise SriTransportError(f"SOAP Fault del SRI ({operation}): {exc}") from exc
        except requests.RequestException as exc:
            logger.warning("Error de red/timeout en %s.%s: %s", service, operation, exc)
            raise SriTransportError(
                f"No fue posible conectarse al Web Service del SRI ({operation}): {exc}"
            ) from exc

        data = serialize_object(respuesta)
        if not isinstance(data, dict):
            data = {"value": data}
        return data

    # -------------------------
    # Recepción: validarComprobante
    # -------------------------

    def submit_document(
        self,
        signed_xml_content: bytes | str,
        cancel_token: CancellationToken | None = None,
    ) -> SubmissionResult:
        """
        RECIBIDA -> éxito. DEVUELTA -> fallo con los mensajes del SRI tal cual.
        Fallas de transporte lanzan SriTransportError.
        """
        token = ensure_token(cancel_token)
        if isinstance(signed_xml_content, str):
            signed_xml_content = signed_xml_content.encode("utf-8")

        token.raise_if_cancelled()
        data = self._call("recepcion", "validarComprobante", xml=signed_xml_content)

        estado = data.get("estado")
        errors: List[SriError] = []
        for comp in _as_list((data.get("comprobantes") or {}).get("comprobante")):
            errors.extend(_extract_messages(comp))

        logger.info(
            "Respuesta RecepcionComprobantesOffline estado=%s, mensajes=%s",
            estado,
            [e.code for e in errors],
        )

        if estado == STATUS_RECEIVED:
            return SubmissionResult(is_success=True, message="Comprobante recibido por el SRI.")
        if estado == STATUS_RETURNED and errors and all(
            e.code == ALREADY_REGISTERED for e in errors
        ):
            # Un envío anterior ya llegó; falta consultar autorización.
            return SubmissionResult(
                is_success=True,
                message="La clave de acceso ya estaba registrada en el SRI.",
            )
        if estado == STATUS_RETURNED:
            return SubmissionResult(
                is_success=False,
                message="Comprobante devuelto por el SRI.",
                errors=errors,
            )
        return SubmissionResult(
            is_success=False,
            message=f"Respuesta de recepción no reconocida: {estado!r}",
            errors=errors or [SriError(INVALID_RESPONSE, "Respuesta de recepción sin estado.")],
        )

    # -------------------------
    # Autorización: autorizacionComprobante
    # -------------------------

    def check_authorization(self, access_key: str) -> AuthorizationResult:
        data = self._call(
            "autorizacion",
            "autorizacionComprobante",
            claveAccesoComprobante=access_key,
        )

        try:
            autorizaciones = _as_list((data.get("autorizaciones") or {}).get("autorizacion"))
            if not autorizaciones:
                return AuthorizationResult(
                    is_authorized=False,
                    status=None,
                    errors=[
                        SriError(
                            INVALID_RESPONSE,
                            "El SRI no devolvió autorizaciones para la clave de acceso.",
                        )
                    ],
                )

            primera = autorizaciones[0]
            estado = (primera.get("estado") or "").strip().upper()
            result = AuthorizationResult(
                is_authorized=estado == STATUS_AUTHORIZED,
                status=estado or None,
                authorization_number=primera.get("numeroAutorizacion"),
                authorization_date=_parse_authorization_date(primera.get("fechaAutorizacion")),
                errors=_extract_messages(primera),
                authorized_xml=primera.get("comprobante"),
            )
        except (AttributeError, TypeError, ValueError) as exc:
            logger.warning("No se pudo interpretar la respuesta de autorización: %s", exc)
            return AuthorizationResult(
                is_authorized=False,
                status=None,
                errors=[SriError(PARSE_ERROR, f"Respuesta de autorización ilegible: {exc}")],
            )

        logger.info(
            "Respuesta AutorizacionComprobantesOffline estado=%s, mensajes=%s",
            result.status,
            [e.code for e in result.errors],
        )
        return result
