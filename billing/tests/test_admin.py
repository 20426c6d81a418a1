# billing/tests/test_admin.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from django.contrib import admin
from django.contrib.auth import get_user_model
from django.core.files.uploadedfile import SimpleUploadedFile
from django.test import RequestFactory, TestCase

from billing.admin import SriConfigurationAdmin
from billing.models import SriConfiguration
from billing.tests.helpers import P12_PASSWORD, SriTestDataMixin, make_pkcs12


class SriConfigurationCertificateUploadTests(SriTestDataMixin, TestCase):
    """Carga del .p12 desde el admin de configuración SRI."""

    def setUp(self):
        super().setUp()
        user = get_user_model().objects.create_superuser("admin", "admin@example.com", "x")
        self.request = RequestFactory().post("/admin/billing/sriconfiguration/")
        self.request.user = user
        self.model_admin = SriConfigurationAdmin(SriConfiguration, admin.site)
        self.previous_expiry = self.config.certificate_expires_at

    def _form(self, p12=None, password=""):
        form_class = self.model_admin.get_form(self.request, obj=self.config, change=True)
        data = {
            "tenant": self.tenant.pk,
            "ruc": self.config.ruc,
            "legal_name": self.config.legal_name,
            "trade_name": self.config.trade_name,
            "main_address": self.config.main_address,
            "special_taxpayer_number": "",
            "environment": self.config.environment,
            "certificate_password_input": password,
        }
        files = {}
        if p12 is not None:
            files["certificate_file"] = SimpleUploadedFile(
                "firma.p12", p12, content_type="application/x-pkcs12"
            )
        return form_class(data=data, files=files, instance=self.config)

    def test_guarda_certificado_y_fecha_de_expiracion(self):
        p12, cert = make_pkcs12(valid_days=400)

        form = self._form(p12, P12_PASSWORD)
        self.assertTrue(form.is_valid(), form.errors)
        form.save()

        self.config.refresh_from_db()
        self.assertEqual(bytes(self.config.certificate), p12)
        self.assertEqual(self.config.certificate_password, P12_PASSWORD)
        self.assertEqual(self.config.certificate_expires_at, cert.not_valid_after_utc)
        self.assertTrue(self.config.is_certificate_valid)

    def test_contrasena_incorrecta(self):
        p12, _ = make_pkcs12()

        form = self._form(p12, "otra-clave")

        self.assertFalse(form.is_valid())
        self.assertIn("certificate_file", form.errors)
        self.assertNotIn("otra-clave", str(form.errors))
        self.config.refresh_from_db()
        self.assertEqual(bytes(self.config.certificate), b"pkcs12-de-prueba")

    def test_certificado_vencido(self):
        expired, _ = make_pkcs12(valid_days=10, offset_days=-30)

        form = self._form(expired, P12_PASSWORD)

        self.assertFalse(form.is_valid())
        self.assertIn("fuera de vigencia", str(form.errors["certificate_file"]))

    def test_archivo_sin_contrasena(self):
        p12, _ = make_pkcs12()

        form = self._form(p12, "")

        self.assertFalse(form.is_valid())
        self.assertIn("certificate_password_input", form.errors)

    def test_sin_archivo_conserva_el_certificado(self):
        form = self._form()
        self.assertTrue(form.is_valid(), form.errors)
        form.save()

        self.config.refresh_from_db()
        self.assertEqual(bytes(self.config.certificate), b"pkcs12-de-prueba")
        self.assertEqual(self.config.certificate_password, "s3cr3t-p12")
        self.assertEqual(self.config.certificate_expires_at, self.previous_expiry)
