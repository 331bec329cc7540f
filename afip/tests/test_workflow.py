# afip/tests/test_workflow.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from unittest.mock import MagicMock

from django.test import TestCase

from afip.models import Sale
from afip.services.codes import DOC_CUIT, DOC_DNI, FACTURA_A, FACTURA_B
from afip.services.errors import InvalidInvoice, TransportFailure
from afip.services.invoicing import AuthorizationRequest, VatLine
from afip.services.workflow import consultar_comprobante, emitir_comprobante_sync, preparar_request
from afip.tests.helpers import CUIT, InMemoryCredentialStore, make_ticket

NOW = datetime(2026, 10, 19, 13, 0, 0, tzinfo=dt_timezone.utc)

PAYLOAD = {
    "buyer_doc_type": 99,
    "buyer_doc_number": 0,
    "net": "100.00",
    "vat": "21.00",
    "total": "121.00",
    "vat_lines": [{"rate_id": 5, "base": "100.00", "amount": "21.00"}],
    "issue_date": "2026-10-19",
}


def _approved_response(number: int):
    return {
        "FeCabResp": {"Resultado": "A"},
        "FeDetResp": {
            "FECAEDetResponse": [
                {
                    "Resultado": "A",
                    "CbteDesde": number,
                    "CbteHasta": number,
                    "CAE": "76123456789012",
                    "CAEFchVto": "20261029",
                    "Observaciones": None,
                }
            ]
        },
        "Errors": None,
        "Events": None,
    }


class EmitirComprobanteTests(TestCase):
    def setUp(self) -> None:
        self.sale = Sale.objects.create(
            tenant_id="t1",
            punto_venta=3,
            tipo_comprobante=FACTURA_B,
            importe_total=Decimal("121.00"),
        )
        self.request = AuthorizationRequest(
            sales_point=3,
            document_type=FACTURA_B,
            buyer_doc_type=99,
            buyer_doc_number=0,
            tax_condition=5,
            net=Decimal("100.00"),
            vat=Decimal("21.00"),
            total=Decimal("121.00"),
            vat_lines=(VatLine(rate_id=5, base=Decimal("100.00"), amount=Decimal("21.00")),),
            issue_date=date(2026, 10, 19),
        )
        self.manager = MagicMock()
        self.manager.credentials = InMemoryCredentialStore("t1")
        self.manager.get_ticket.return_value = make_ticket(NOW, expires_in=timedelta(hours=6), token="TK")
        self.wsfe = MagicMock()
        self.wsfe.last_authorized_number.return_value = 41

    def _emitir(self):
        return emitir_comprobante_sync(
            self.sale,
            self.request,
            manager=self.manager,
            wsfe_factory=lambda mode: self.wsfe,
        )

    def test_aprobado_guarda_numero_y_cae(self):
        self.wsfe.request_authorization.return_value = _approved_response(42)

        resultado = self._emitir()

        self.sale.refresh_from_db()
        self.assertTrue(resultado["ok"])
        self.assertEqual(self.sale.estado, Sale.Estado.AUTHORIZED)
        self.assertEqual(self.sale.numero, 42)
        self.assertEqual(self.sale.cae, "76123456789012")
        self.assertEqual(self.sale.cae_vencimiento, date(2026, 10, 29))
        self.assertEqual(resultado["numero"], 42)

    def test_rechazo_guarda_codigos_sin_cae(self):
        self.wsfe.request_authorization.return_value = {
            "FeCabResp": {"Resultado": "R"},
            "FeDetResp": {"FECAEDetResponse": [{"Resultado": "R", "CbteDesde": 42}]},
            "Errors": {"Err": [{"Code": 10016, "Msg": "Numero no correlativo"}]},
        }

        resultado = self._emitir()

        self.sale.refresh_from_db()
        self.assertFalse(resultado["ok"])
        self.assertEqual(self.sale.estado, Sale.Estado.REJECTED)
        self.assertIsNone(self.sale.numero)
        self.assertEqual(self.sale.cae, "")
        self.assertEqual(
            self.sale.mensajes_afip,
            [{"origen": "AFIP_ERROR", "codigo": "10016", "detalle": "Numero no correlativo"}],
        )

    def test_falla_de_transporte_marca_error(self):
        self.wsfe.request_authorization.side_effect = TransportFailure("read timeout")

        resultado = self._emitir()

        self.sale.refresh_from_db()
        self.assertFalse(resultado["ok"])
        self.assertEqual(self.sale.estado, Sale.Estado.ERROR)
        self.assertEqual(self.sale.mensajes_afip[0]["origen"], "TransportFailure")
        self.assertIsNone(self.sale.numero)

    def test_cae_con_vencimiento_ilegible_queda_en_la_venta(self):
        respuesta = _approved_response(42)
        respuesta["FeDetResp"]["FECAEDetResponse"][0]["CAEFchVto"] = ""
        self.wsfe.request_authorization.return_value = respuesta

        resultado = self._emitir()

        self.sale.refresh_from_db()
        self.assertFalse(resultado["ok"])
        self.assertEqual(self.sale.estado, Sale.Estado.ERROR)
        self.assertEqual(self.sale.mensajes_afip[0]["origen"], "ParseFailure")
        self.assertIn(
            {"codigo": "CAE", "mensaje": "76123456789012"},
            self.sale.mensajes_afip[0]["codigos"],
        )

    def test_venta_ya_autorizada_no_se_reenvia(self):
        Sale.objects.filter(pk=self.sale.pk).update(
            estado=Sale.Estado.AUTHORIZED, numero=10, cae="76000000000000"
        )
        self.sale.refresh_from_db()

        resultado = self._emitir()

        self.assertFalse(resultado["ok"])
        self.wsfe.request_authorization.assert_not_called()
        self.manager.get_ticket.assert_not_called()

    def test_mensajes_se_acumulan(self):
        self.wsfe.request_authorization.side_effect = TransportFailure("reset")
        self._emitir()
        self.wsfe.request_authorization.side_effect = None
        self.wsfe.request_authorization.return_value = _approved_response(42)

        self._emitir()

        self.sale.refresh_from_db()
        self.assertEqual(self.sale.estado, Sale.Estado.AUTHORIZED)
        self.assertEqual(len(self.sale.mensajes_afip), 1)
        self.assertEqual(self.sale.mensajes_afip[0]["origen"], "TransportFailure")

    def test_consultar_comprobante(self):
        self.wsfe.voucher_info.return_value = {"CodAutorizacion": "76123456789012"}

        info = consultar_comprobante("t1", 3, FACTURA_B, 42, manager=self.manager, wsfe_factory=lambda mode: self.wsfe)

        self.assertEqual(info["CodAutorizacion"], "76123456789012")
        self.wsfe.voucher_info.assert_called_once_with(
            self.manager.get_ticket.return_value, CUIT, 3, FACTURA_B, 42
        )


class PrepararRequestTests(TestCase):
    def _sale(self, tipo: int) -> Sale:
        return Sale.objects.create(tenant_id="t1", punto_venta=3, tipo_comprobante=tipo)

    def test_factura_b_a_consumidor_final(self):
        request = preparar_request(self._sale(FACTURA_B), PAYLOAD)

        self.assertEqual(request.sales_point, 3)
        self.assertEqual(request.document_type, FACTURA_B)
        self.assertEqual(request.tax_condition, 5)
        self.assertEqual(request.total, Decimal("121.00"))

    def test_factura_a_con_cuit_resuelve_responsable_inscripto(self):
        payload = dict(PAYLOAD, buyer_doc_type=DOC_CUIT, buyer_doc_number="30712345678")

        request = preparar_request(self._sale(FACTURA_A), payload)

        self.assertEqual(request.tax_condition, 1)

    def test_factura_a_a_dni_se_rechaza(self):
        payload = dict(PAYLOAD, buyer_doc_type=DOC_DNI, buyer_doc_number="30111222")

        with self.assertRaises(InvalidInvoice):
            preparar_request(self._sale(FACTURA_A), payload)

    def test_condicion_explicita_tiene_prioridad(self):
        payload = dict(PAYLOAD, buyer_doc_type=DOC_CUIT, buyer_doc_number="30712345678", tax_condition="6")

        request = preparar_request(self._sale(FACTURA_B), payload)

        self.assertEqual(request.tax_condition, 6)

    def test_tipo_de_documento_por_nombre(self):
        payload = dict(PAYLOAD, buyer_doc_type="CUIT", buyer_doc_number="30712345678")

        request = preparar_request(self._sale(FACTURA_A), payload)

        self.assertEqual(request.buyer_doc_type, DOC_CUIT)
        self.assertEqual(request.tax_condition, 1)

    def test_sin_tipo_de_documento(self):
        payload = {k: v for k, v in PAYLOAD.items() if k != "buyer_doc_type"}

        with self.assertRaises(InvalidInvoice):
            preparar_request(self._sale(FACTURA_B), payload)
