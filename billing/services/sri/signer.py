# billing/services/sri/signer.py
# -*- coding: utf-8 -*-
"""
Firma XAdES-BES (RSA-SHA1, C14N inclusivo) de comprobantes SRI.

El material PKCS#12 (clave privada y contraseña) se carga dentro de la
llamada a `sign()` y no se guarda en la instancia ni se registra en logs.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from pathlib import Path
from typing import List, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.serialization import Encoding, pkcs12
from django.utils import timezone
from lxml import etree

from billing.services.sri.xml_builder import write_atomic

logger = logging.getLogger("billing.sri")

DS_NS = "http://www.w3.org/2000/09/xmldsig#"
XADES_NS = "http://uri.etsi.org/01903/v1.3.2#"

C14N_ALGORITHM = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"
RSA_SHA1 = "http://www.w3.org/2000/09/xmldsig#rsa-sha1"
SHA1 = "http://www.w3.org/2000/09/xmldsig#sha1"
ENVELOPED = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"
SIGNED_PROPERTIES_TYPE = "http://uri.etsi.org/01903#SignedProperties"


class CertificateError(Exception):
    """Errores relacionados con certificado/carga de PKCS12 o con la firma."""


def _ds(tag: str) -> str:
    return f"{{{DS_NS}}}{tag}"


def _xades(tag: str) -> str:
    return f"{{{XADES_NS}}}{tag}"


def _load_pkcs12(
    certificate_bytes: bytes, password: str
) -> Tuple[object, x509.Certificate, List[x509.Certificate]]:
    """
    Retorna (private_key, certificate, additional_certs) y valida vigencia.
    """
    if not certificate_bytes:
        raise CertificateError("No hay certificado .p12 configurado.")
    if not password:
        raise CertificateError("No hay contraseña de certificado configurada.")

    try:
        private_key, cert, additional_certs = pkcs12.load_key_and_certificates(
            bytes(certificate_bytes),
            password.encode("utf-8"),
        )
    except ValueError as exc:
        # No incluir la contraseña ni los bytes en el mensaje.
        raise CertificateError(
            "No se pudo abrir el PKCS12 (contraseña incorrecta o archivo dañado)."
        ) from exc

    if private_key is None or cert is None:
        raise CertificateError(
            "No se pudo extraer clave privada/certificado desde el archivo PKCS12."
        )

    now = timezone.now()
    if now < cert.not_valid_before_utc or now > cert.not_valid_after_utc:
        raise CertificateError(
            f"Certificado fuera de vigencia. Válido desde {cert.not_valid_before_utc} "
            f"hasta {cert.not_valid_after_utc}"
        )

    return private_key, cert, list(additional_certs or [])


def read_certificate(certificate_bytes: bytes, password: str) -> x509.Certificate:
    """
    Abre un .p12 recién subido y retorna su certificado. Lanza
    CertificateError si la contraseña no corresponde o si no está vigente.
    """
    _, cert, _ = _load_pkcs12(certificate_bytes, password)
    return cert


def _canonicalize(element: etree._Element) -> bytes:
    return etree.tostring(element, method="c14n", exclusive=False, with_comments=False)


def _b64_sha1(data: bytes) -> str:
    return base64.b64encode(hashlib.sha1(data).digest()).decode("ascii")


def _cert_b64(cert: x509.Certificate) -> str:
    return base64.b64encode(cert.public_bytes(Encoding.DER)).decode("ascii")


def _signed_properties(cert: x509.Certificate, signature_id: str) -> etree._Element:
    """
    <xades:SignedProperties> con SigningTime y SigningCertificate (digest SHA1 del DER).
    """
    props = etree.Element(
        _xades("SignedProperties"),
        Id=f"{signature_id}-SignedProperties",
        nsmap={"xades": XADES_NS, "ds": DS_NS},
    )
    sig_props = etree.SubElement(props, _xades("SignedSignatureProperties"))
    etree.SubElement(sig_props, _xades("SigningTime")).text = timezone.now().isoformat()

    cert_node = etree.SubElement(
        etree.SubElement(sig_props, _xades("SigningCertificate")), _xades("Cert")
    )
    digest = etree.SubElement(cert_node, _xades("CertDigest"))
    etree.SubElement(digest, _ds("DigestMethod"), Algorithm=SHA1)
    etree.SubElement(digest, _ds("DigestValue")).text = _b64_sha1(
        cert.public_bytes(Encoding.DER)
    )

    issuer_serial = etree.SubElement(cert_node, _xades("IssuerSerial"))
    etree.SubElement(issuer_serial, _ds("X509IssuerName")).text = cert.issuer.rfc4514_string()
    etree.SubElement(issuer_serial, _ds("X509SerialNumber")).text = str(cert.serial_number)
    return props


def sign_xml_bytes(xml_bytes: bytes, certificate_bytes: bytes, password: str) -> bytes:
    """
    Firma enveloped XAdES-BES. Orden de hijos de <ds:Signature>:
    SignedInfo, SignatureValue, KeyInfo, Object.

    El digest de SignedProperties se calcula sobre el nodo ya insertado en el
    documento (serializar y reparsear) para que los namespaces heredados
    coincidan con los que ve el SRI al verificar.
    """
    private_key, cert, additional_certs = _load_pkcs12(certificate_bytes, password)

    try:
        root = etree.fromstring(xml_bytes)
    except etree.XMLSyntaxError as exc:
        raise CertificateError(f"XML mal formado al intentar firmar: {exc}") from exc

    node_id = root.get("id") or "comprobante"
    root.set("id", node_id)
    signature_id = f"Signature-{node_id}"

    # Digest del comprobante antes de insertar la firma.
    root_digest = _b64_sha1(_canonicalize(root))

    signature = etree.Element(
        _ds("Signature"), Id=signature_id, nsmap={"ds": DS_NS, "xades": XADES_NS}
    )
    signed_info = etree.SubElement(signature, _ds("SignedInfo"))
    etree.SubElement(signed_info, _ds("CanonicalizationMethod"), Algorithm=C14N_ALGORITHM)
    etree.SubElement(signed_info, _ds("SignatureMethod"), Algorithm=RSA_SHA1)

    ref_doc = etree.SubElement(signed_info, _ds("Reference"), URI=f"#{node_id}")
    transforms = etree.SubElement(ref_doc, _ds("Transforms"))
    etree.SubElement(transforms, _ds("Transform"), Algorithm=ENVELOPED)
    etree.SubElement(ref_doc, _ds("DigestMethod"), Algorithm=SHA1)
    etree.SubElement(ref_doc, _ds("DigestValue")).text = root_digest

    signature_value = etree.SubElement(signature, _ds("SignatureValue"))

    x509_data = etree.SubElement(etree.SubElement(signature, _ds("KeyInfo")), _ds("X509Data"))
    for item in [cert, *additional_certs]:
        etree.SubElement(x509_data, _ds("X509Certificate")).text = _cert_b64(item)

    qualifying = etree.SubElement(
        etree.SubElement(signature, _ds("Object")),
        _xades("QualifyingProperties"),
        Target=f"#{signature_id}",
    )
    props = _signed_properties(cert, signature_id)
    props_id = props.get("Id")
    qualifying.append(props)
    root.append(signature)

    reparsed = etree.fromstring(etree.tostring(root, encoding="UTF-8"))
    props_in_doc = reparsed.find(f".//{_xades('SignedProperties')}[@Id='{props_id}']")
    if props_in_doc is None:
        raise CertificateError("No se encontró SignedProperties tras reparsear el XML.")

    ref_props = etree.SubElement(
        signed_info, _ds("Reference"), Type=SIGNED_PROPERTIES_TYPE, URI=f"#{props_id}"
    )
    etree.SubElement(ref_props, _ds("DigestMethod"), Algorithm=SHA1)
    etree.SubElement(ref_props, _ds("DigestValue")).text = _b64_sha1(
        _canonicalize(props_in_doc)
    )

    raw_signature = private_key.sign(
        _canonicalize(signed_info), padding.PKCS1v15(), hashes.SHA1()
    )
    signature_value.text = base64.b64encode(raw_signature).decode("ascii")

    return etree.tostring(root, encoding="UTF-8", xml_declaration=True, pretty_print=False)


class XmlSignatureService:
    def sign(self, xml_path: str, certificate_bytes: bytes, password: str) -> str:
        """
        Firma el XML en `xml_path` y escribe '<nombre>_signed.xml' a su lado.
        Retorna la ruta del archivo firmado.
        """
        source = Path(xml_path)
        try:
            xml_bytes = source.read_bytes()
        except OSError as exc:
            raise CertificateError(f"No se pudo leer el XML a firmar: {source}") from exc

        signed = sign_xml_bytes(xml_bytes, certificate_bytes, password)

        target = source.with_name(f"{source.stem}_signed.xml")
        write_atomic(target, signed)
        logger.info("XML firmado con XAdES-BES (RSA-SHA1): %s", target.name)
        return str(target)
