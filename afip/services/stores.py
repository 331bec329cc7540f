# afip/services/stores.py
# -*- coding: utf-8 -*-
"""
Puertos de persistencia que consume la integración AFIP y sus
implementaciones por defecto sobre el ORM de Django.

Los servicios (TicketManager, InvoiceAuthorizationRequester, workflow)
dependen de los Protocol, no de los modelos, para poder probarse con
dobles en memoria.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from django.db import transaction

from afip.services.errors import CredentialNotFound
from afip.services.tra import Ticket

logger = logging.getLogger("afip.tickets")


@dataclass(frozen=True)
class CredentialMaterial:
    """Credencial lista para usar: PEM en claro, modo normalizado."""

    tenant_id: str
    cuit: str
    certificate_pem: str
    private_key_pem: str
    service: str = "wsfe"
    mode: str = "HOMOLOGATION"


@runtime_checkable
class CredentialStore(Protocol):
    def get(self, tenant_id: str) -> CredentialMaterial:
        ...

    def tenant_ids(self) -> List[str]:
        ...


@runtime_checkable
class TicketStore(Protocol):
    def get(self, tenant_id: str) -> Optional[Ticket]:
        ...

    def upsert(self, tenant_id: str, ticket: Ticket) -> None:
        ...

    def all(self) -> Dict[str, Ticket]:
        ...


@runtime_checkable
class VoucherSequencer(Protocol):
    def last_authorized_number(self, tenant_id: str, sales_point: int, document_type: int) -> int:
        ...


@runtime_checkable
class SaleRecordUpdater(Protocol):
    def update(
        self,
        sale_id: int,
        *,
        voucher_number: Optional[int],
        auth_code: Optional[str],
        auth_code_expiry: Optional[date],
        status: str,
        messages: List[Dict[str, Any]],
    ) -> None:
        ...


# =========================
# Implementaciones Django ORM
# =========================


class DjangoCredentialStore:
    def get(self, tenant_id: str) -> CredentialMaterial:
        from afip.models import AfipCredential

        try:
            cred = AfipCredential.objects.get(tenant_id=tenant_id)
        except AfipCredential.DoesNotExist as exc:
            raise CredentialNotFound(
                f"El tenant {tenant_id} no tiene credenciales AFIP configuradas."
            ) from exc

        return CredentialMaterial(
            tenant_id=cred.tenant_id,
            cuit=cred.cuit,
            certificate_pem=cred.certificado_pem,
            private_key_pem=cred.clave_privada_pem,
            service=cred.servicio,
            mode=cred.modo,
        )

    def tenant_ids(self) -> List[str]:
        from afip.models import AfipCredential

        return list(
            AfipCredential.objects.filter(activo=True)
            .order_by("tenant_id")
            .values_list("tenant_id", flat=True)
        )


class DjangoTicketStore:
    def get(self, tenant_id: str) -> Optional[Ticket]:
        from afip.models import AfipTicket

        row = (
            AfipTicket.objects.select_related("credential")
            .filter(credential__tenant_id=tenant_id)
            .first()
        )
        return row.to_ticket() if row else None

    def upsert(self, tenant_id: str, ticket: Ticket) -> None:
        """Un único upsert atómico por credencial; nunca dos filas por tenant."""
        from afip.models import AfipCredential, AfipTicket

        with transaction.atomic():
            try:
                credential = AfipCredential.objects.get(tenant_id=tenant_id)
            except AfipCredential.DoesNotExist as exc:
                raise CredentialNotFound(
                    f"No se puede guardar el ticket: el tenant {tenant_id} no tiene credenciales."
                ) from exc

            AfipTicket.objects.update_or_create(
                credential=credential,
                defaults={
                    "token": ticket.token,
                    "sign": ticket.sign,
                    "fecha_generacion": ticket.generation_time,
                    "fecha_expiracion": ticket.expiration_time,
                    "respuesta_cruda": ticket.raw_response or "",
                },
            )
        logger.info("Ticket persistido para tenant=%s vence=%s", tenant_id, ticket.expiration_time)

    def all(self) -> Dict[str, Ticket]:
        from afip.models import AfipTicket

        return {
            row.credential.tenant_id: row.to_ticket()
            for row in AfipTicket.objects.select_related("credential")
        }


class DjangoSaleRecordUpdater:
    def update(
        self,
        sale_id: int,
        *,
        voucher_number: Optional[int],
        auth_code: Optional[str],
        auth_code_expiry: Optional[date],
        status: str,
        messages: List[Dict[str, Any]],
    ) -> None:
        """
        Escribe el veredicto en una sola transacción: número de comprobante y
        CAE quedan juntos o no quedan.
        """
        from afip.models import Sale

        with transaction.atomic():
            sale = Sale.objects.select_for_update().get(pk=sale_id)
            if sale.estado == Sale.Estado.AUTHORIZED:
                # Número y CAE ya asignados no se pisan ni se degradan.
                logger.warning(
                    "Venta %s ya autorizada con CAE %s; se descarta el estado %s.",
                    sale_id,
                    sale.cae,
                    status,
                )
                return

            update_fields = ["estado", "mensajes_afip", "updated_at"]

            sale.estado = status
            sale.mensajes_afip = list(sale.mensajes_afip or []) + list(messages)

            if auth_code:
                sale.numero = voucher_number
                sale.cae = auth_code
                sale.cae_vencimiento = auth_code_expiry
                update_fields += ["numero", "cae", "cae_vencimiento"]

            sale.save(update_fields=update_fields)


__all__ = [
    "CredentialMaterial",
    "CredentialStore",
    "TicketStore",
    "VoucherSequencer",
    "SaleRecordUpdater",
    "DjangoCredentialStore",
    "DjangoTicketStore",
    "DjangoSaleRecordUpdater",
]
