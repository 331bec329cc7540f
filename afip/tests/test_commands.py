# afip/tests/test_commands.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from datetime import datetime, timedelta, timezone as dt_timezone
from io import StringIO
from unittest.mock import MagicMock, patch

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import SimpleTestCase

from afip.services.errors import RenewalFailed, TransportFailure
from afip.services.tra import TicketState
from afip.tests.helpers import InMemoryCredentialStore, InMemoryTicketStore, make_ticket

NOW = datetime(2026, 10, 19, 13, 0, 0, tzinfo=dt_timezone.utc)


@patch("afip.management.commands.afip_tickets.get_ticket_manager")
class AfipTicketsCommandTests(SimpleTestCase):
    def _manager(self) -> MagicMock:
        manager = MagicMock()
        manager.credentials = InMemoryCredentialStore("t1")
        manager.tickets = InMemoryTicketStore()
        manager.tickets.upsert("t1", make_ticket(NOW, expires_in=timedelta(hours=2)))
        manager.state.return_value = TicketState.VALID
        manager.ticket_stats.return_value = {"total": 1, "valid": 1, "expiring_soon": 0, "expired": 0}
        return manager

    def test_status(self, mock_get):
        mock_get.return_value = self._manager()
        out = StringIO()

        call_command("afip_tickets", "status", stdout=out)

        self.assertIn("t1", out.getvalue())
        self.assertIn("VALID", out.getvalue())
        self.assertIn("Total=1 vigentes=1", out.getvalue())

    def test_renew_forzado(self, mock_get):
        manager = self._manager()
        manager.get_ticket.return_value = make_ticket(NOW, expires_in=timedelta(hours=12))
        mock_get.return_value = manager
        out = StringIO()

        call_command("afip_tickets", "renew", "t1", "--force", stdout=out)

        manager.get_ticket.assert_called_once_with("t1", force=True)
        self.assertIn("Ticket de t1", out.getvalue())

    def test_renew_fallido_es_command_error(self, mock_get):
        manager = self._manager()
        manager.get_ticket.side_effect = RenewalFailed("sin red", cause=TransportFailure("sin red"))
        mock_get.return_value = manager

        with self.assertRaises(CommandError) as ctx:
            call_command("afip_tickets", "renew", "t1", "--force", stdout=StringIO())
        self.assertIn("RenewalFailed", str(ctx.exception))

    @patch("afip.management.commands.afip_tickets.puntos_de_venta")
    def test_puntos_de_venta(self, mock_puntos, mock_get):
        mock_get.return_value = self._manager()
        mock_puntos.return_value = [
            {"numero": 3, "tipo_emision": "CAE - Ws", "bloqueado": False, "fecha_baja": None},
        ]
        out = StringIO()

        call_command("afip_tickets", "points-of-sale", "t1", stdout=out)

        self.assertIn("00003", out.getvalue())
        self.assertIn("activo", out.getvalue())

    @patch("afip.management.commands.afip_tickets.consultar_comprobante", return_value=None)
    def test_comprobante_inexistente(self, mock_consultar, mock_get):
        mock_get.return_value = self._manager()
        out = StringIO()

        call_command("afip_tickets", "voucher", "t1", "3", "6", "42", stdout=out)

        mock_consultar.assert_called_once_with("t1", 3, 6, 42, manager=mock_get.return_value)
        self.assertIn("no tiene registrado", out.getvalue())
