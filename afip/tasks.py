# afip/tasks.py
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import timedelta
from typing import Any, Dict, Optional

from celery import shared_task

from django.conf import settings
from django.core.cache import cache
from django.db import connections

from afip.models import Sale
from afip.services.errors import AfipError, InvalidInvoice
from afip.services.stores import DjangoSaleRecordUpdater
from afip.services.tickets import TicketManager, get_ticket_manager
from afip.services.workflow import emitir_comprobante_sync, preparar_request, ya_autorizada

logger = logging.getLogger("afip.tasks")

SWEEP_RENEWAL_BUFFER = timedelta(seconds=getattr(settings, "AFIP_SWEEP_RENEWAL_BUFFER", 30 * 60))
SWEEP_MAX_CONCURRENT = getattr(settings, "AFIP_SWEEP_MAX_CONCURRENT", 3)
SWEEP_LOCK_TIMEOUT = getattr(settings, "AFIP_SWEEP_LOCK_TIMEOUT", 10 * 60)
SWEEP_LOCK_KEY = "afip:renovar_tickets:lock"


# =====================================================
# Barrido: renovación anticipada de tickets WSAA
# =====================================================


def _renovar_tenant(manager: TicketManager, tenant_id: str) -> None:
    try:
        manager.get_ticket(tenant_id, force=True)
    finally:
        # Cada hilo del pool abre sus propias conexiones a la base.
        connections.close_all()


def renovar_tickets(
    manager: Optional[TicketManager] = None,
    *,
    buffer: timedelta = SWEEP_RENEWAL_BUFFER,
    max_concurrent: int = SWEEP_MAX_CONCURRENT,
) -> Dict[str, Any]:
    """
    Renueva (forzado) los tickets ausentes o que vencen dentro de `buffer`.
    Un tenant que falla se registra y no corta el barrido.
    """
    manager = manager or get_ticket_manager()
    pendientes = manager.tenants_needing_renewal(buffer)

    resultado: Dict[str, Any] = {
        "ok": True,
        "pendientes": len(pendientes),
        "renovados": 0,
        "fallidos": 0,
        "errores": {},
    }
    if not pendientes:
        logger.info("Barrido WSAA: ningún ticket requiere renovación.")
        return resultado

    logger.info(
        "Barrido WSAA: %s tenants a renovar (concurrencia=%s)",
        len(pendientes),
        max_concurrent,
    )

    with ThreadPoolExecutor(max_workers=max(1, max_concurrent)) as pool:
        futures = {
            pool.submit(_renovar_tenant, manager, tenant_id): tenant_id
            for tenant_id in pendientes
        }
        for future in as_completed(futures):
            tenant_id = futures[future]
            try:
                future.result()
            except AfipError as exc:
                resultado["fallidos"] += 1
                resultado["errores"][tenant_id] = exc.as_message()
                logger.error("Barrido WSAA: tenant=%s falló: %s", tenant_id, exc.message)
            except Exception as exc:  # noqa: BLE001
                resultado["fallidos"] += 1
                resultado["errores"][tenant_id] = {"origen": "UNEXPECTED", "detalle": str(exc)}
                logger.exception("Barrido WSAA: error inesperado en tenant=%s: %s", tenant_id, exc)
            else:
                resultado["renovados"] += 1

    resultado["ok"] = resultado["fallidos"] == 0
    resultado["stats"] = manager.ticket_stats()
    logger.info(
        "Barrido WSAA finalizado: renovados=%s fallidos=%s stats=%s",
        resultado["renovados"],
        resultado["fallidos"],
        resultado["stats"],
    )
    return resultado


@shared_task(bind=True)
def renovar_tickets_task(self) -> Dict[str, Any]:
    """
    Tarea periódica (celery beat). Si la pasada anterior sigue en curso no
    arranca otra: el lock vive en la cache de Django con timeout.
    """
    if not cache.add(SWEEP_LOCK_KEY, self.request.id or "local", timeout=SWEEP_LOCK_TIMEOUT):
        logger.warning("renovar_tickets_task: hay un barrido en curso, se omite esta pasada.")
        return {"ok": True, "omitido": True}

    try:
        return renovar_tickets()
    finally:
        cache.delete(SWEEP_LOCK_KEY)


# =====================================================
# Tarea: emisión de comprobante (FECAESolicitar)
# =====================================================


@shared_task(bind=True, max_retries=0)
def emitir_comprobante_task(self, sale_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Pide el CAE de una venta en background.

    Sin reintentos automáticos: repetir FECAESolicitar tras un timeout puede
    autorizar dos veces. Ante ERROR, verificar con FECompConsultar antes de
    volver a encolar.
    """
    try:
        sale = Sale.objects.get(pk=sale_id)
    except Sale.DoesNotExist:
        logger.error("emitir_comprobante_task: Sale %s no existe.", sale_id)
        return {"ok": False, "error": "SaleDoesNotExist"}

    logger.info("emitir_comprobante_task iniciado para sale_id=%s", sale_id)

    # Antes de validar el payload: una venta con CAE no se toca.
    resumen = ya_autorizada(sale)
    if resumen is not None:
        return resumen

    try:
        request = preparar_request(sale, payload)
    except InvalidInvoice as exc:
        logger.warning("Venta %s con datos inválidos: %s", sale_id, exc.message)
        DjangoSaleRecordUpdater().update(
            sale.id,
            voucher_number=None,
            auth_code=None,
            auth_code_expiry=None,
            status=Sale.Estado.ERROR,
            messages=[exc.as_message()],
        )
        return {"ok": False, "estado": Sale.Estado.ERROR, "mensajes": [exc.as_message()]}

    try:
        resultado = emitir_comprobante_sync(sale, request)
    except Exception as exc:  # noqa: BLE001
        logger.exception(
            "Error inesperado en emitir_comprobante_task para sale %s: %s",
            sale_id,
            exc,
        )
        return {"ok": False, "error": str(exc)}

    logger.info(
        "emitir_comprobante_task finalizado para sale_id=%s, estado=%s",
        sale_id,
        resultado.get("estado"),
    )
    return resultado
