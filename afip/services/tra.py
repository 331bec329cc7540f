# afip/services/tra.py
# -*- coding: utf-8 -*-
"""
Ticket de Requerimiento de Acceso (TRA) y parseo del Ticket de Acceso (TA).

- build_login_ticket_request: arma el loginTicketRequest que luego se firma.
- parse_login_response: interpreta el loginTicketResponse devuelto por WSAA.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from lxml import etree

from afip.services.errors import ParseFailure

logger = logging.getLogger("afip.wsaa")

# La generación se corre hacia atrás para tolerar desfasajes de reloj con AFIP.
TRA_CLOCK_SKEW = timedelta(seconds=getattr(settings, "AFIP_TRA_CLOCK_SKEW", 10 * 60))
# AFIP entrega TA de hasta 12 horas; pedir más no extiende la vigencia.
TRA_VALIDITY = timedelta(seconds=getattr(settings, "AFIP_TRA_VALIDITY", 12 * 60 * 60))


class TicketState(str, Enum):
    NO_TICKET = "NO_TICKET"
    VALID = "VALID"
    NEAR_EXPIRY = "NEAR_EXPIRY"
    EXPIRED = "EXPIRED"
    RENEWING = "RENEWING"


@dataclass(frozen=True)
class Ticket:
    """Ticket de Acceso (token + sign) emitido por WSAA."""

    token: str
    sign: str
    generation_time: datetime
    expiration_time: datetime
    raw_response: Optional[str] = None

    def is_usable(self, now: datetime, buffer: timedelta) -> bool:
        return now < self.expiration_time - buffer

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expiration_time

    def state(self, now: datetime, buffer: timedelta) -> TicketState:
        if self.is_expired(now):
            return TicketState.EXPIRED
        if self.is_usable(now, buffer):
            return TicketState.VALID
        return TicketState.NEAR_EXPIRY


def ticket_state(ticket: Optional[Ticket], now: datetime, buffer: timedelta) -> TicketState:
    if ticket is None:
        return TicketState.NO_TICKET
    return ticket.state(now, buffer)


@dataclass(frozen=True)
class TicketRequest:
    """loginTicketRequest sin firmar."""

    unique_id: int
    generation_time: datetime
    expiration_time: datetime
    service: str

    def to_xml(self) -> bytes:
        root = etree.Element("loginTicketRequest", version="1.0")
        header = etree.SubElement(root, "header")
        etree.SubElement(header, "uniqueId").text = str(self.unique_id)
        etree.SubElement(header, "generationTime").text = format_afip_datetime(
            self.generation_time
        )
        etree.SubElement(header, "expirationTime").text = format_afip_datetime(
            self.expiration_time
        )
        etree.SubElement(root, "service").text = self.service
        return etree.tostring(root, encoding="UTF-8", xml_declaration=True)


def format_afip_datetime(value: datetime) -> str:
    """
    Formato requerido por WSAA: hora local, precisión de segundos, sin
    fracciones. Ej: 2026-10-19T10:15:00-03:00
    """
    if timezone.is_naive(value):
        value = timezone.make_aware(value)
    local = timezone.localtime(value).replace(microsecond=0)
    return local.isoformat(timespec="seconds")


def build_login_ticket_request(
    service: str,
    now: Optional[datetime] = None,
    *,
    validity: timedelta = TRA_VALIDITY,
    clock_skew: timedelta = TRA_CLOCK_SKEW,
) -> TicketRequest:
    if not service:
        raise ValueError("service no puede ser vacío al construir el TRA.")

    now = now or timezone.now()
    return TicketRequest(
        # uniqueId es un entero de 32 bits en el esquema de WSAA: usamos epoch en segundos.
        unique_id=int(now.timestamp()),
        generation_time=now - clock_skew,
        expiration_time=now + validity,
        service=service,
    )


def _required_text(root: etree._Element, path: str, raw: str) -> str:
    node = root.find(path)
    text = (node.text or "").strip() if node is not None else ""
    if not text:
        logger.error("loginTicketResponse sin %s. Respuesta cruda: %s", path, raw)
        raise ParseFailure(
            f"La respuesta de WSAA no contiene {path}.",
            raw_payload=raw,
        )
    return text


def _parse_timestamp(value: str, field: str, raw: str) -> datetime:
    parsed = parse_datetime(value)
    if parsed is None:
        logger.error("Fecha inválida en %s: %r. Respuesta cruda: %s", field, value, raw)
        raise ParseFailure(f"Fecha inválida en {field}: {value!r}", raw_payload=raw)
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed


def parse_login_response(raw: str | bytes) -> Ticket:
    """
    Parsea el loginTicketResponse. header/generationTime, header/expirationTime,
    credentials/token y credentials/sign son obligatorios.
    """
    if isinstance(raw, bytes):
        raw_text = raw.decode("utf-8", errors="replace")
        raw_bytes = raw
    else:
        raw_text = raw or ""
        raw_bytes = raw_text.encode("utf-8")

    if not raw_text.strip():
        raise ParseFailure("WSAA devolvió una respuesta vacía.", raw_payload=raw_text)

    try:
        root = etree.fromstring(raw_bytes)
    except etree.XMLSyntaxError as exc:
        logger.error("XML de WSAA mal formado: %s. Respuesta cruda: %s", exc, raw_text)
        raise ParseFailure(
            f"XML de WSAA mal formado: {exc}",
            raw_payload=raw_text,
        ) from exc

    if etree.QName(root).localname != "loginTicketResponse":
        raise ParseFailure(
            f"Se esperaba loginTicketResponse y llegó {etree.QName(root).localname}.",
            raw_payload=raw_text,
        )

    generation = _parse_timestamp(
        _required_text(root, "header/generationTime", raw_text),
        "generationTime",
        raw_text,
    )
    expiration = _parse_timestamp(
        _required_text(root, "header/expirationTime", raw_text),
        "expirationTime",
        raw_text,
    )
    token = _required_text(root, "credentials/token", raw_text)
    sign = _required_text(root, "credentials/sign", raw_text)

    if expiration <= generation:
        raise ParseFailure(
            f"Ticket inconsistente: expirationTime ({expiration}) <= generationTime ({generation}).",
            raw_payload=raw_text,
        )

    return Ticket(
        token=token,
        sign=sign,
        generation_time=generation,
        expiration_time=expiration,
        raw_response=raw_text,
    )


__all__ = [
    "Ticket",
    "TicketRequest",
    "TicketState",
    "ticket_state",
    "format_afip_datetime",
    "build_login_ticket_request",
    "parse_login_response",
]
