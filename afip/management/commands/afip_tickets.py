# afip/management/commands/afip_tickets.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import json
from typing import Any

from django.core.management.base import BaseCommand, CommandError

from afip.services.errors import AfipError
from afip.services.tickets import get_ticket_manager
from afip.services.workflow import consultar_comprobante, puntos_de_venta


class Command(BaseCommand):
  help = (
    "Diagnóstico de tickets WSAA y consultas WSFE.\n"
    "Todas las operaciones pasan por el mismo TicketManager que usa la emisión."
  )

  def add_arguments(self, parser) -> None:
    sub = parser.add_subparsers(dest="action", required=True)

    sub.add_parser("status", help="Estado del ticket por tenant y estadísticas.")

    renew = sub.add_parser("renew", help="Obtiene (o renueva) el ticket de un tenant.")
    renew.add_argument("tenant_id")
    renew.add_argument(
      "--force",
      action="store_true",
      help="Invalida la cache y pide un ticket nuevo aunque el actual esté vigente.",
    )

    pos = sub.add_parser("points-of-sale", help="Puntos de venta habilitados (FEParamGetPtosVenta).")
    pos.add_argument("tenant_id")

    voucher = sub.add_parser("voucher", help="Consulta un comprobante emitido (FECompConsultar).")
    voucher.add_argument("tenant_id")
    voucher.add_argument("sales_point", type=int)
    voucher.add_argument("document_type", type=int)
    voucher.add_argument("number", type=int)

  def handle(self, *args: Any, **options: Any) -> None:
    action = options["action"]
    manager = get_ticket_manager()

    try:
      if action == "status":
        self._status(manager)
      elif action == "renew":
        self._renew(manager, options["tenant_id"], options["force"])
      elif action == "points-of-sale":
        self._points_of_sale(manager, options["tenant_id"])
      elif action == "voucher":
        self._voucher(manager, options)
    except AfipError as exc:
      raise CommandError(f"[{exc.kind}] {exc.message}") from exc

  def _status(self, manager) -> None:
    tenants = manager.credentials.tenant_ids()
    if not tenants:
      self.stdout.write(self.style.WARNING("No hay credenciales AFIP activas."))
    for tenant_id in tenants:
      state = manager.state(tenant_id)
      ticket = manager.tickets.get(tenant_id)
      vence = f"{ticket.expiration_time:%Y-%m-%d %H:%M:%S}" if ticket else "-"
      self.stdout.write(f"{tenant_id:<24} {state.value:<12} vence={vence}")

    stats = manager.ticket_stats()
    self.stdout.write(
      self.style.SUCCESS(
        "Total={total} vigentes={valid} por_vencer={expiring_soon} vencidos={expired}".format(**stats)
      )
    )

  def _renew(self, manager, tenant_id: str, force: bool) -> None:
    ticket = manager.get_ticket(tenant_id, force=force)
    self.stdout.write(
      self.style.SUCCESS(
        f"Ticket de {tenant_id} generado {ticket.generation_time:%Y-%m-%d %H:%M:%S}, "
        f"vence {ticket.expiration_time:%Y-%m-%d %H:%M:%S}"
      )
    )

  def _points_of_sale(self, manager, tenant_id: str) -> None:
    puntos = puntos_de_venta(tenant_id, manager=manager)
    if not puntos:
      self.stdout.write(self.style.WARNING("AFIP no informó puntos de venta para este CUIT."))
      return
    for punto in puntos:
      estado = "BLOQUEADO" if punto["bloqueado"] else "activo"
      self.stdout.write(f"{punto['numero']:05d}  {punto['tipo_emision'] or '-':<20} {estado}")

  def _voucher(self, manager, options) -> None:
    info = consultar_comprobante(
      options["tenant_id"],
      options["sales_point"],
      options["document_type"],
      options["number"],
      manager=manager,
    )
    if info is None:
      self.stdout.write(self.style.WARNING("AFIP no tiene registrado ese comprobante."))
      return
    self.stdout.write(json.dumps(info, indent=2, default=str, ensure_ascii=False))
