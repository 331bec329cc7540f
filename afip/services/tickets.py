# afip/services/tickets.py
# -*- coding: utf-8 -*-
"""
Ciclo de vida del Ticket de Acceso (TA) por tenant.

Único punto de entrada para obtener/renovar tickets: lo usan la emisión de
comprobantes, el barrido programado (Celery) y el comando de diagnóstico.

Estados: NO_TICKET -> VALID -> NEAR_EXPIRY -> EXPIRED, más RENEWING mientras
se arma, firma y envía el TRA.
"""
from __future__ import annotations

import functools
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from django.conf import settings
from django.utils import timezone

from afip.services.client import WSAAClient
from afip.services.errors import AfipError, ParseFailure, RenewalFailed
from afip.services.signer import sign_message
from afip.services.stores import (
    CredentialStore,
    DjangoCredentialStore,
    DjangoTicketStore,
    TicketStore,
)
from afip.services.tra import (
    TRA_VALIDITY,
    Ticket,
    TicketState,
    build_login_ticket_request,
    parse_login_response,
    ticket_state,
)

logger = logging.getLogger("afip.tickets")

TICKET_RENEWAL_BUFFER = timedelta(seconds=getattr(settings, "AFIP_TICKET_RENEWAL_BUFFER", 10 * 60))
TICKET_CACHE_TTL = timedelta(seconds=getattr(settings, "AFIP_TICKET_CACHE_TTL", 5 * 60))
TICKET_CACHE_MAX_ENTRIES = getattr(settings, "AFIP_TICKET_CACHE_MAX_ENTRIES", 1024)

Clock = Callable[[], datetime]
Signer = Callable[[bytes, str, str], str]


@dataclass(frozen=True)
class _CacheEntry:
    ticket: Ticket
    fetched_at: datetime


class TicketCache:
    """
    Cache en memoria de tickets por tenant, propiedad de un TicketManager.
    Cada entrada vive a lo sumo `ttl` desde que se cargó, con independencia
    del vencimiento del ticket, y el total de entradas está acotado.
    """

    def __init__(self, ttl: timedelta, clock: Clock, max_entries: int = TICKET_CACHE_MAX_ENTRIES):
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, _CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, tenant_id: str) -> Optional[Ticket]:
        with self._lock:
            entry = self._entries.get(tenant_id)
            if entry is None:
                return None
            if self._clock() - entry.fetched_at >= self.ttl:
                del self._entries[tenant_id]
                return None
            return entry.ticket

    def put(self, tenant_id: str, ticket: Ticket) -> None:
        with self._lock:
            self._entries.pop(tenant_id, None)
            self._entries[tenant_id] = _CacheEntry(ticket=ticket, fetched_at=self._clock())
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, tenant_id: Optional[str] = None) -> None:
        with self._lock:
            if tenant_id is None:
                self._entries.clear()
            else:
                self._entries.pop(tenant_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class TicketManager:
    """
    Obtiene, cachea y renueva el TA de cada tenant.

    - get_ticket(): devuelve el ticket vigente (sin I/O si está en cache y
      fuera del margen de renovación) o lo renueva.
    - get_ticket(force=True): invalida la cache y renueva siempre; si falla
      levanta RenewalFailed.
    - Una sola renovación en curso por tenant; los llamadores concurrentes
      esperan y reciben el ticket de esa renovación.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        tickets: TicketStore,
        *,
        buffer: timedelta = TICKET_RENEWAL_BUFFER,
        cache_ttl: timedelta = TICKET_CACHE_TTL,
        validity: timedelta = TRA_VALIDITY,
        clock: Clock = timezone.now,
        signer: Signer = sign_message,
        wsaa_factory: Callable[[str], WSAAClient] = WSAAClient,
    ) -> None:
        self.credentials = credentials
        self.tickets = tickets
        self.buffer = buffer
        self.validity = validity
        self._clock = clock
        self._signer = signer
        self._wsaa_factory = wsaa_factory
        self._wsaa_clients: Dict[str, WSAAClient] = {}

        self.cache = TicketCache(cache_ttl, clock)

        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._renewing: set[str] = set()

    # -------------------------
    # API pública
    # -------------------------

    def get_ticket(self, tenant_id: str, *, force: bool = False) -> Ticket:
        if force:
            return self._forced_renewal(tenant_id)

        cached = self.cache.get(tenant_id)
        if cached is not None and cached.is_usable(self._clock(), self.buffer):
            return cached

        with self._lock_for(tenant_id):
            # Otro hilo pudo haber renovado mientras esperábamos el lock.
            now = self._clock()
            cached = self.cache.get(tenant_id)
            if cached is not None and cached.is_usable(now, self.buffer):
                return cached

            stored = self.tickets.get(tenant_id)
            if stored is not None and stored.is_usable(now, self.buffer):
                self.cache.put(tenant_id, stored)
                logger.debug("Ticket de tenant=%s tomado del store (vence %s)", tenant_id, stored.expiration_time)
                return stored

            prior = self._latest(cached, stored)
            logger.info(
                "Renovando ticket tenant=%s estado=%s",
                tenant_id,
                ticket_state(prior, now, self.buffer).value,
            )
            try:
                return self._renew(tenant_id)
            except AfipError as exc:
                if prior is not None and not prior.is_expired(self._clock()):
                    logger.warning(
                        "Renovación fallida para tenant=%s (%s: %s); se usa el ticket previo que vence %s",
                        tenant_id,
                        exc.kind,
                        exc.message,
                        prior.expiration_time,
                    )
                    return prior
                logger.error("Renovación fallida para tenant=%s sin ticket previo: %s", tenant_id, exc.message)
                raise

    def state(self, tenant_id: str) -> TicketState:
        with self._guard:
            if tenant_id in self._renewing:
                return TicketState.RENEWING
        ticket = self.cache.get(tenant_id) or self.tickets.get(tenant_id)
        return ticket_state(ticket, self._clock(), self.buffer)

    def invalidate(self, tenant_id: Optional[str] = None) -> None:
        self.cache.invalidate(tenant_id)

    def ticket_stats(self, buffer: Optional[timedelta] = None) -> Dict[str, int]:
        """Conteo de tickets persistidos: vigentes, por vencer y vencidos."""
        buffer = self.buffer if buffer is None else buffer
        now = self._clock()
        stats = {"total": 0, "valid": 0, "expiring_soon": 0, "expired": 0}
        for ticket in self.tickets.all().values():
            stats["total"] += 1
            current = ticket.state(now, buffer)
            if current is TicketState.EXPIRED:
                stats["expired"] += 1
            elif current is TicketState.NEAR_EXPIRY:
                stats["expiring_soon"] += 1
            else:
                stats["valid"] += 1
        return stats

    def tenants_needing_renewal(self, buffer: Optional[timedelta] = None) -> List[str]:
        """Tenants activos sin ticket o con ticket dentro del margen indicado."""
        buffer = self.buffer if buffer is None else buffer
        now = self._clock()
        stored = self.tickets.all()
        return [
            tenant_id
            for tenant_id in self.credentials.tenant_ids()
            if tenant_id not in stored or not stored[tenant_id].is_usable(now, buffer)
        ]

    # -------------------------
    # Internos
    # -------------------------

    def _lock_for(self, tenant_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(tenant_id)
            if lock is None:
                lock = self._locks[tenant_id] = threading.Lock()
            return lock

    @staticmethod
    def _latest(*candidates: Optional[Ticket]) -> Optional[Ticket]:
        present = [t for t in candidates if t is not None]
        if not present:
            return None
        return max(present, key=lambda t: t.expiration_time)

    def _forced_renewal(self, tenant_id: str) -> Ticket:
        # Primero se invalida: ningún lector concurrente debe ver el ticket viejo.
        self.cache.invalidate(tenant_id)
        with self._lock_for(tenant_id):
            # Un lector que tenía el lock pudo volver a cachear el ticket del store.
            self.cache.invalidate(tenant_id)
            logger.info("Renovación forzada de ticket tenant=%s", tenant_id)
            try:
                return self._renew(tenant_id)
            except AfipError as exc:
                logger.error(
                    "Renovación forzada fallida tenant=%s: %s (%s)",
                    tenant_id,
                    exc.message,
                    exc.kind,
                )
                raise RenewalFailed(
                    f"No se pudo renovar el ticket de {tenant_id}: {exc.message}",
                    cause=exc,
                ) from exc

    def _wsaa_client(self, mode: str) -> WSAAClient:
        with self._guard:
            client = self._wsaa_clients.get(mode)
            if client is None:
                client = self._wsaa_clients[mode] = self._wsaa_factory(mode)
            return client

    def _renew(self, tenant_id: str) -> Ticket:
        """Arma, firma, envía y persiste. Debe llamarse con el lock del tenant tomado."""
        with self._guard:
            self._renewing.add(tenant_id)
        try:
            credential = self.credentials.get(tenant_id)
            request = build_login_ticket_request(
                credential.service,
                self._clock(),
                validity=self.validity,
            )
            signed = self._signer(
                request.to_xml(),
                credential.certificate_pem,
                credential.private_key_pem,
            )
            raw = self._wsaa_client(credential.mode).login(signed)
            ticket = parse_login_response(raw)

            if not ticket.is_usable(self._clock(), self.buffer):
                logger.error(
                    "WSAA emitió un ticket que vence %s, dentro del margen de renovación (%s). Respuesta: %s",
                    ticket.expiration_time,
                    self.buffer,
                    raw,
                )
                raise ParseFailure(
                    f"El ticket recibido vence {ticket.expiration_time:%Y-%m-%d %H:%M:%S}, "
                    f"dentro del margen de renovación.",
                    raw_payload=raw,
                )

            self.tickets.upsert(tenant_id, ticket)
            self.cache.put(tenant_id, ticket)
            logger.info("Ticket renovado tenant=%s vence=%s", tenant_id, ticket.expiration_time)
            return ticket
        finally:
            with self._guard:
                self._renewing.discard(tenant_id)


@functools.lru_cache(maxsize=1)
def get_ticket_manager() -> TicketManager:
    """TicketManager del proceso, sobre los stores del ORM."""
    return TicketManager(DjangoCredentialStore(), DjangoTicketStore())


__all__ = [
    "TicketCache",
    "TicketManager",
    "get_ticket_manager",
    "TICKET_RENEWAL_BUFFER",
    "TICKET_CACHE_TTL",
]
