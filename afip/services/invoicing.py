# afip/services/invoicing.py
# -*- coding: utf-8 -*-
"""
Solicitud de CAE (WSFEv1 FECAESolicitar) para un comprobante individual.

Flujo:
1) validar importes y datos mínimos (sin tocar la red);
2) consultar FECompUltimoAutorizado justo antes de enviar (número = último + 1);
3) enviar FECAESolicitar;
4) interpretar el veredicto: A (con o sin observaciones) / R.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from django.utils import timezone

from afip.services.client import WSFEClient, as_list, extract_messages
from afip.services.codes import CONCEPTS, CONCEPTO_PRODUCTOS, CURRENCY_PESOS, VAT_RATES
from afip.services.errors import AuthorityMessage, InvalidInvoice, ParseFailure
from afip.services.stores import CredentialStore, VoucherSequencer
from afip.services.tra import Ticket

logger = logging.getLogger("afip.wsfe")

CENT = Decimal("0.01")
TOLERANCE = Decimal("0.01")
AFIP_DATE_FORMAT = "%Y%m%d"


def money(value: Any) -> Decimal:
    """Redondeo half-up a 2 decimales (como se informa a AFIP)."""
    try:
        return Decimal(str(value if value is not None else 0)).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise InvalidInvoice(f"Importe inválido: {value!r}") from exc


def exchange_rate(value: Any) -> Decimal:
    """Cotización de la moneda (MonCotiz): positiva, 1 si no viene."""
    try:
        rate = Decimal(str(value or 1))
    except InvalidOperation as exc:
        raise InvalidInvoice(f"Cotización inválida: {value!r}") from exc
    if not rate.is_finite() or rate <= 0:
        raise InvalidInvoice(f"Cotización inválida: {value!r}")
    return rate


def afip_date(value: date) -> str:
    return value.strftime(AFIP_DATE_FORMAT)


def parse_afip_date(value: Any) -> date:
    return datetime.strptime(str(value).strip(), AFIP_DATE_FORMAT).date()


def _optional_date(value: Any) -> Optional[date]:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        if len(text) == 8 and text.isdigit():
            return parse_afip_date(text)
        return date.fromisoformat(text[:10])
    except ValueError as exc:
        raise InvalidInvoice(f"Fecha inválida: {value!r}") from exc


class Verdict(str, Enum):
    APPROVED = "APPROVED"
    APPROVED_WITH_OBSERVATIONS = "APPROVED_WITH_OBSERVATIONS"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class VatLine:
    rate_id: int
    base: Decimal
    amount: Decimal


@dataclass(frozen=True)
class AuthorizationRequest:
    sales_point: int
    document_type: int
    buyer_doc_type: int
    buyer_doc_number: int
    tax_condition: int
    net: Decimal
    vat: Decimal
    total: Decimal
    concept: int = CONCEPTO_PRODUCTOS
    non_taxed: Decimal = Decimal("0")
    exempt: Decimal = Decimal("0")
    other_taxes: Decimal = Decimal("0")
    vat_lines: Tuple[VatLine, ...] = ()
    issue_date: Optional[date] = None
    service_from: Optional[date] = None
    service_to: Optional[date] = None
    payment_due: Optional[date] = None
    currency: str = CURRENCY_PESOS
    exchange_rate: Decimal = Decimal("1")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuthorizationRequest":
        """Construye el request desde un payload JSON (tareas Celery, comando)."""
        try:
            return cls(
                sales_point=int(data["sales_point"]),
                document_type=int(data["document_type"]),
                buyer_doc_type=int(data["buyer_doc_type"]),
                buyer_doc_number=int(data.get("buyer_doc_number") or 0),
                tax_condition=int(data["tax_condition"]),
                net=money(data.get("net")),
                vat=money(data.get("vat")),
                total=money(data.get("total")),
                concept=int(data.get("concept") or CONCEPTO_PRODUCTOS),
                non_taxed=money(data.get("non_taxed")),
                exempt=money(data.get("exempt")),
                other_taxes=money(data.get("other_taxes")),
                vat_lines=tuple(
                    VatLine(
                        rate_id=int(line["rate_id"]),
                        base=money(line["base"]),
                        amount=money(line["amount"]),
                    )
                    for line in data.get("vat_lines") or []
                ),
                issue_date=_optional_date(data.get("issue_date")),
                service_from=_optional_date(data.get("service_from")),
                service_to=_optional_date(data.get("service_to")),
                payment_due=_optional_date(data.get("payment_due")),
                currency=data.get("currency") or CURRENCY_PESOS,
                exchange_rate=exchange_rate(data.get("exchange_rate")),
            )
        except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
            raise InvalidInvoice(f"Datos de comprobante incompletos o inválidos: {exc}") from exc


@dataclass(frozen=True)
class AuthorizationResult:
    verdict: Verdict
    voucher_number: Optional[int] = None
    cae: Optional[str] = None
    cae_expiry: Optional[date] = None
    requested_number: Optional[int] = None
    errors: Tuple[AuthorityMessage, ...] = ()
    observations: Tuple[AuthorityMessage, ...] = ()
    events: Tuple[AuthorityMessage, ...] = ()
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def approved(self) -> bool:
        return self.verdict in (Verdict.APPROVED, Verdict.APPROVED_WITH_OBSERVATIONS)

    def as_messages(self) -> List[Dict[str, Any]]:
        """Mensajes en el formato origen/detalle que se acumula en la venta."""
        mensajes: List[Dict[str, Any]] = []
        for origen, items in (
            ("AFIP_ERROR", self.errors),
            ("AFIP_OBSERVACION", self.observations),
            ("AFIP_EVENTO", self.events),
        ):
            for item in items:
                mensajes.append({"origen": origen, "codigo": item.code, "detalle": item.message})
        return mensajes


def validate_request(request: AuthorizationRequest) -> None:
    """Reglas mínimas antes de transmitir. Levanta InvalidInvoice."""
    if request.sales_point <= 0:
        raise InvalidInvoice("El punto de venta debe ser un entero positivo.")
    if request.concept not in CONCEPTS:
        raise InvalidInvoice(f"Concepto desconocido: {request.concept}")

    net = money(request.net)
    vat = money(request.vat)
    total = money(request.total)
    components = net + money(request.non_taxed) + money(request.exempt) + vat + money(request.other_taxes)

    if abs(total - components) > TOLERANCE:
        raise InvalidInvoice(
            f"El total ({total}) no coincide con neto + no gravado + exento + IVA + tributos ({components})."
        )

    if vat > 0 and not request.vat_lines:
        raise InvalidInvoice("Hay IVA declarado pero no se informó el detalle de alícuotas.")

    for line in request.vat_lines:
        if line.rate_id not in VAT_RATES:
            raise InvalidInvoice(f"Alícuota de IVA desconocida: {line.rate_id}")

    if request.vat_lines:
        lines_total = sum((money(line.amount) for line in request.vat_lines), Decimal("0"))
        if abs(lines_total - vat) > TOLERANCE:
            raise InvalidInvoice(
                f"La suma de alícuotas ({lines_total}) no coincide con el IVA declarado ({vat})."
            )

    if request.concept != CONCEPTO_PRODUCTOS:
        if not (request.service_from and request.service_to and request.payment_due):
            raise InvalidInvoice(
                "Para servicios se requieren fecha desde, fecha hasta y vencimiento de pago."
            )
        if request.service_from > request.service_to:
            raise InvalidInvoice("La fecha desde del servicio es posterior a la fecha hasta.")


def build_fecae_request(
    request: AuthorizationRequest,
    voucher_number: int,
    issue_date: date,
) -> Dict[str, Any]:
    detail: Dict[str, Any] = {
        "Concepto": request.concept,
        "DocTipo": request.buyer_doc_type,
        "DocNro": int(request.buyer_doc_number or 0),
        "CbteDesde": voucher_number,
        "CbteHasta": voucher_number,
        "CbteFch": afip_date(issue_date),
        "ImpTotal": float(money(request.total)),
        "ImpTotConc": float(money(request.non_taxed)),
        "ImpNeto": float(money(request.net)),
        "ImpOpEx": float(money(request.exempt)),
        "ImpIVA": float(money(request.vat)),
        "ImpTrib": float(money(request.other_taxes)),
        "MonId": request.currency,
        "MonCotiz": float(request.exchange_rate),
        "CondicionIVAReceptorId": request.tax_condition,
    }

    if request.concept != CONCEPTO_PRODUCTOS:
        detail["FchServDesde"] = afip_date(request.service_from)
        detail["FchServHasta"] = afip_date(request.service_to)
        detail["FchVtoPago"] = afip_date(request.payment_due)

    if request.vat_lines:
        detail["Iva"] = {
            "AlicIva": [
                {
                    "Id": line.rate_id,
                    "BaseImp": float(money(line.base)),
                    "Importe": float(money(line.amount)),
                }
                for line in request.vat_lines
            ]
        }

    return {
        "FeCabReq": {
            "CantReg": 1,
            "PtoVta": request.sales_point,
            "CbteTipo": request.document_type,
        },
        "FeDetReq": {"FECAEDetRequest": [detail]},
    }


def interpret_response(data: Dict[str, Any], requested_number: int) -> AuthorizationResult:
    """
    Traduce la respuesta de FECAESolicitar. Nunca inventa un éxito: un "A"
    sin CAE o un código desconocido es ParseFailure.
    """
    details = as_list((data.get("FeDetResp") or {}).get("FECAEDetResponse"))
    first: Dict[str, Any] = details[0] if details and isinstance(details[0], dict) else {}

    result = str(first.get("Resultado") or (data.get("FeCabResp") or {}).get("Resultado") or "").strip().upper()
    errors = tuple(extract_messages(data, "Errors", "Err"))
    observations = tuple(extract_messages(first, "Observaciones", "Obs"))
    events = tuple(extract_messages(data, "Events", "Evt"))

    if result == "A":
        cae = str(first.get("CAE") or "").strip()
        if not cae:
            logger.error("FECAESolicitar aprobado sin CAE. Respuesta cruda: %s", data)
            raise ParseFailure("AFIP informó Resultado=A sin CAE.", raw_payload=data)
        try:
            cae_expiry = parse_afip_date(first.get("CAEFchVto"))
        except (TypeError, ValueError) as exc:
            logger.error("CAEFchVto inválido: %r. Respuesta cruda: %s", first.get("CAEFchVto"), data)
            # El CAE ya fue emitido: viaja en los códigos para que quede en la venta.
            raise ParseFailure(
                f"CAEFchVto inválido: {first.get('CAEFchVto')!r}",
                raw_payload=data,
                codes=[
                    AuthorityMessage(code="CAE", message=cae),
                    AuthorityMessage(code="CbteDesde", message=str(first.get("CbteDesde") or requested_number)),
                ],
            ) from exc

        number = int(first.get("CbteDesde") or requested_number)
        return AuthorizationResult(
            verdict=Verdict.APPROVED_WITH_OBSERVATIONS if observations else Verdict.APPROVED,
            voucher_number=number,
            cae=cae,
            cae_expiry=cae_expiry,
            requested_number=requested_number,
            observations=observations,
            events=events,
            raw=data,
        )

    # Errors sin Resultado: AFIP rechazó el pedido completo (token vencido, cabecera inválida, ...).
    if result == "R" or (not result and errors):
        return AuthorizationResult(
            verdict=Verdict.REJECTED,
            requested_number=requested_number,
            errors=errors + observations,
            events=events,
            raw=data,
        )

    logger.error("Resultado desconocido en FECAESolicitar: %r. Respuesta cruda: %s", result, data)
    raise ParseFailure(f"Resultado desconocido en FECAESolicitar: {result!r}", raw_payload=data)


class InvoiceAuthorizationRequester:
    """Pide el CAE de un comprobante; el número lo da el VoucherSequencer."""

    def __init__(
        self,
        wsfe: WSFEClient,
        sequencer: VoucherSequencer,
        *,
        today: Callable[[], date] = timezone.localdate,
    ) -> None:
        self.wsfe = wsfe
        self.sequencer = sequencer
        self._today = today

    def request_authorization(
        self,
        tenant_id: str,
        ticket: Ticket,
        cuit,
        request: AuthorizationRequest,
    ) -> AuthorizationResult:
        validate_request(request)

        # Sin cache: cada envío vuelve a consultar el último autorizado.
        last = self.sequencer.last_authorized_number(
            tenant_id,
            request.sales_point,
            request.document_type,
        )
        number = int(last) + 1
        issue_date = request.issue_date or self._today()

        payload = build_fecae_request(request, number, issue_date)
        logger.info(
            "Solicitando CAE tenant=%s PtoVta=%s CbteTipo=%s numero=%s total=%s",
            tenant_id,
            request.sales_point,
            request.document_type,
            number,
            money(request.total),
        )

        data = self.wsfe.request_authorization(ticket, cuit, {"FeCAEReq": payload})
        result = interpret_response(data, number)

        if result.verdict is Verdict.REJECTED:
            logger.warning(
                "CAE rechazado tenant=%s PtoVta=%s CbteTipo=%s numero=%s errores=%s",
                tenant_id,
                request.sales_point,
                request.document_type,
                number,
                [e.as_dict() for e in result.errors],
            )
        else:
            logger.info(
                "CAE %s otorgado tenant=%s numero=%s vence=%s observaciones=%s",
                result.cae,
                tenant_id,
                result.voucher_number,
                result.cae_expiry,
                len(result.observations),
            )
        return result


class AuthorityVoucherSequencer:
    """VoucherSequencer respaldado por FECompUltimoAutorizado."""

    def __init__(
        self,
        manager,
        credentials: CredentialStore,
        *,
        wsfe_factory: Callable[[str], WSFEClient] = WSFEClient,
    ) -> None:
        self.manager = manager
        self.credentials = credentials
        self._wsfe_factory = wsfe_factory
        self._clients: Dict[str, WSFEClient] = {}
        self._lock = threading.Lock()

    def _client(self, mode: str) -> WSFEClient:
        with self._lock:
            client = self._clients.get(mode)
            if client is None:
                client = self._clients[mode] = self._wsfe_factory(mode)
            return client

    def last_authorized_number(self, tenant_id: str, sales_point: int, document_type: int) -> int:
        credential = self.credentials.get(tenant_id)
        ticket = self.manager.get_ticket(tenant_id)
        number = self._client(credential.mode).last_authorized_number(
            ticket,
            credential.cuit,
            sales_point,
            document_type,
        )
        logger.debug(
            "Último autorizado tenant=%s PtoVta=%s CbteTipo=%s -> %s",
            tenant_id,
            sales_point,
            document_type,
            number,
        )
        return number


__all__ = [
    "Verdict",
    "VatLine",
    "AuthorizationRequest",
    "AuthorizationResult",
    "validate_request",
    "build_fecae_request",
    "interpret_response",
    "InvoiceAuthorizationRequester",
    "AuthorityVoucherSequencer",
    "money",
]
