# billing/management/commands/sri_document.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import json
from typing import Any

from django.core.management.base import BaseCommand, CommandError

from billing.choices import DocumentType
from billing.models import Tenant
from billing.services.sri.workflow import DocumentSubmissionOrchestrator, TenantContext

STEPS = {
  "xml": "generate_xml",
  "sign": "sign_xml",
  "submit": "submit_to_sri",
  "check": "check_authorization",
  "ride": "generate_ride",
  "resubmit": "prepare_resubmission",
}
FULL = ["xml", "sign", "submit", "check"]


class Command(BaseCommand):
  help = (
    "Ejecuta pasos del flujo SRI para un comprobante, igual que los endpoints.\n"
    "Ej: manage.py sri_document 3 01 125 --step full"
  )

  def add_arguments(self, parser) -> None:
    parser.add_argument("tenant_id", type=int, help="ID del tenant (billing.Tenant.id)")
    parser.add_argument(
      "document_type",
      choices=[c.value for c in DocumentType],
      help="Código SRI del comprobante (01, 04, 05, 07)",
    )
    parser.add_argument("document_id", type=int, help="ID del comprobante")
    parser.add_argument(
      "--step",
      choices=[*STEPS, "full"],
      default="full",
      help="Paso a ejecutar (por defecto: full = xml, sign, submit, check).",
    )

  def handle(self, *args: Any, **options: Any) -> None:
    tenant_id: int = options["tenant_id"]
    if not Tenant.objects.filter(pk=tenant_id).exists():
      raise CommandError(f"Tenant {tenant_id} no existe.")

    steps = FULL if options["step"] == "full" else [options["step"]]
    orchestrator = DocumentSubmissionOrchestrator()
    ctx = TenantContext(tenant_id=tenant_id)

    for step in steps:
      result = getattr(orchestrator, STEPS[step])(
        ctx, options["document_type"], options["document_id"]
      )
      style = self.style.SUCCESS if result.ok else self.style.ERROR
      self.stdout.write(style(f"[{step}] {result.message}"))
      self.stdout.write(json.dumps(result.to_dict(), indent=2, ensure_ascii=False, default=str))
      if not result.ok:
        raise CommandError(f"El paso '{step}' falló: {result.error.value}")
