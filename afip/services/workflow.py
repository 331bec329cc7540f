# afip/services/workflow.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from afip.models import Sale
from afip.services.client import WSFEClient
from afip.services.codes import resolve_document_type, resolve_tax_condition, validate_invoice_type_for_buyer
from afip.services.errors import AfipError, InvalidInvoice
from afip.services.invoicing import (
    AuthorityVoucherSequencer,
    AuthorizationRequest,
    InvoiceAuthorizationRequester,
    Verdict,
)
from afip.services.stores import CredentialStore, DjangoSaleRecordUpdater, SaleRecordUpdater
from afip.services.tickets import TicketManager, get_ticket_manager

logger = logging.getLogger("afip.workflow")


def _resumen(sale: Sale, ok: bool, mensajes: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "ok": ok,
        "estado": sale.estado,
        "cae": sale.cae or None,
        "numero": sale.numero,
        "mensajes": mensajes,
    }


def ya_autorizada(sale: Sale) -> Optional[Dict[str, Any]]:
    """Resumen de rechazo si la venta ya tiene CAE; None si se puede emitir."""
    if sale.estado != Sale.Estado.AUTHORIZED:
        return None
    logger.warning("Venta %s ya autorizada con CAE %s; no se reenvía.", sale.id, sale.cae)
    return _resumen(
        sale,
        False,
        [{"origen": "WORKFLOW", "detalle": "La venta ya tiene CAE asignado."}],
    )


def preparar_request(sale: Sale, payload: Mapping[str, Any]) -> AuthorizationRequest:
    """
    Arma el AuthorizationRequest de una venta a partir del payload recibido.

    - punto de venta y tipo de comprobante salen de la venta;
    - CondicionIVAReceptorId: explícito, o por estado fiscal, o por DocTipo;
    - valida que la clase del comprobante aplique al receptor (A -> CUIT).
    """
    data = dict(payload)
    data["sales_point"] = sale.punto_venta
    data["document_type"] = sale.tipo_comprobante

    try:
        buyer_doc_type = data["buyer_doc_type"] = resolve_document_type(data["buyer_doc_type"])
        explicit = data.get("tax_condition")
        data["tax_condition"] = resolve_tax_condition(
            explicit_id=int(explicit) if explicit not in (None, "") else None,
            tax_status=data.get("buyer_tax_status"),
            doc_type=buyer_doc_type,
        )
    except KeyError as exc:
        raise InvalidInvoice("Falta el tipo de documento del receptor.") from exc
    except (TypeError, ValueError) as exc:
        raise InvalidInvoice(str(exc)) from exc

    error = validate_invoice_type_for_buyer(
        sale.tipo_comprobante,
        buyer_doc_type=buyer_doc_type,
        tax_condition=data["tax_condition"],
    )
    if error:
        raise InvalidInvoice(error)

    return AuthorizationRequest.from_dict(data)


def emitir_comprobante_sync(
    sale: Sale,
    request: AuthorizationRequest,
    *,
    manager: Optional[TicketManager] = None,
    credentials: Optional[CredentialStore] = None,
    updater: Optional[SaleRecordUpdater] = None,
    wsfe_factory: Callable[[str], WSFEClient] = WSFEClient,
) -> Dict[str, Any]:
    """
    Pide el CAE de una venta y escribe el veredicto:

    - aprobado: número + CAE + vencimiento, estado AUTHORIZED (en una sola transacción);
    - rechazado: estado REJECTED con los códigos de AFIP tal cual;
    - error (red, credenciales, respuesta ilegible, datos inválidos): estado ERROR.

    Nunca se marca una venta como autorizada sin CAE.
    """
    resumen = ya_autorizada(sale)
    if resumen is not None:
        return resumen

    manager = manager or get_ticket_manager()
    credentials = credentials or manager.credentials
    updater = updater or DjangoSaleRecordUpdater()

    try:
        credential = credentials.get(sale.tenant_id)
        ticket = manager.get_ticket(sale.tenant_id)
        wsfe = wsfe_factory(credential.mode)
        requester = InvoiceAuthorizationRequester(
            wsfe,
            AuthorityVoucherSequencer(manager, credentials, wsfe_factory=lambda _mode: wsfe),
        )
        result = requester.request_authorization(sale.tenant_id, ticket, credential.cuit, request)
    except AfipError as exc:
        logger.error(
            "Error emitiendo venta %s (tenant=%s): %s [%s]",
            sale.id,
            sale.tenant_id,
            exc.message,
            exc.kind,
        )
        mensajes = [exc.as_message()]
        updater.update(
            sale.id,
            voucher_number=None,
            auth_code=None,
            auth_code_expiry=None,
            status=Sale.Estado.ERROR,
            messages=mensajes,
        )
        sale.refresh_from_db()
        return _resumen(sale, False, mensajes)

    mensajes = result.as_messages()
    if result.approved:
        updater.update(
            sale.id,
            voucher_number=result.voucher_number,
            auth_code=result.cae,
            auth_code_expiry=result.cae_expiry,
            status=Sale.Estado.AUTHORIZED,
            messages=mensajes,
        )
        if result.verdict is Verdict.APPROVED_WITH_OBSERVATIONS:
            logger.warning(
                "Venta %s autorizada con observaciones: %s",
                sale.id,
                [o.as_dict() for o in result.observations],
            )
    else:
        updater.update(
            sale.id,
            voucher_number=None,
            auth_code=None,
            auth_code_expiry=None,
            status=Sale.Estado.REJECTED,
            messages=mensajes,
        )

    sale.refresh_from_db()
    logger.info(
        "Venta %s procesada: estado=%s numero=%s cae=%s",
        sale.id,
        sale.estado,
        sale.numero,
        sale.cae,
    )
    return _resumen(sale, result.approved, mensajes)


def consultar_comprobante(
    tenant_id: str,
    sales_point: int,
    document_type: int,
    number: int,
    *,
    manager: Optional[TicketManager] = None,
    wsfe_factory: Callable[[str], WSFEClient] = WSFEClient,
) -> Optional[Dict[str, Any]]:
    """
    FECompConsultar de un comprobante. Sirve para confirmar si AFIP llegó a
    otorgar el CAE antes de reintentar una emisión que terminó en ERROR.
    """
    manager = manager or get_ticket_manager()
    credential = manager.credentials.get(tenant_id)
    ticket = manager.get_ticket(tenant_id)
    return wsfe_factory(credential.mode).voucher_info(
        ticket,
        credential.cuit,
        sales_point,
        document_type,
        number,
    )


def puntos_de_venta(
    tenant_id: str,
    *,
    manager: Optional[TicketManager] = None,
    wsfe_factory: Callable[[str], WSFEClient] = WSFEClient,
) -> List[Dict[str, Any]]:
    manager = manager or get_ticket_manager()
    credential = manager.credentials.get(tenant_id)
    ticket = manager.get_ticket(tenant_id)
    return wsfe_factory(credential.mode).points_of_sale(ticket, credential.cuit)
