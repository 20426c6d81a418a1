# billing/forms.py
# -*- coding: utf-8 -*-
"""
Formulario de la configuración SRI en el admin.

El certificado .p12 se sube junto con su contraseña. Antes de guardar se abre
el archivo (contraseña correcta, certificado vigente) y se registra la fecha
de expiración que trae el propio certificado.
"""

from __future__ import annotations

import logging

from django import forms

from billing.models import SriConfiguration
from billing.services.sri.signer import CertificateError, read_certificate

logger = logging.getLogger("billing.sri")


class SriConfigurationAdminForm(forms.ModelForm):
    certificate_file = forms.FileField(
        required=False,
        label="Certificado de firma (.p12/.pfx)",
        help_text="Dejar vacío para conservar el certificado actual.",
    )
    certificate_password_input = forms.CharField(
        required=False,
        label="Contraseña del certificado",
        strip=False,
        widget=forms.PasswordInput(render_value=False),
    )

    class Meta:
        model = SriConfiguration
        exclude = ("certificate", "certificate_password", "certificate_expires_at")

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._uploaded_certificate = None

    def clean(self):
        cleaned_data = super().clean()
        upload = cleaned_data.get("certificate_file")
        password = cleaned_data.get("certificate_password_input") or ""

        if upload is None:
            if password:
                self.add_error(
                    "certificate_file",
                    "Suba el archivo .p12 junto con su contraseña.",
                )
            return cleaned_data

        if not password:
            self.add_error(
                "certificate_password_input",
                "Ingrese la contraseña del certificado.",
            )
            return cleaned_data

        content = upload.read()
        try:
            cert = read_certificate(content, password)
        except CertificateError as exc:
            self.add_error("certificate_file", str(exc))
            return cleaned_data

        self._uploaded_certificate = (content, password, cert.not_valid_after_utc)
        return cleaned_data

    def save(self, commit=True):
        instance = super().save(commit=False)
        if self._uploaded_certificate is not None:
            content, password, expires_at = self._uploaded_certificate
            instance.certificate = content
            instance.certificate_password = password
            instance.certificate_expires_at = expires_at
            logger.info(
                "Certificado de firma actualizado para %s (vence %s)",
                instance.ruc,
                expires_at,
            )
        if commit:
            instance.save()
        return instance
