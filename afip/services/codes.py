# afip/services/codes.py
# -*- coding: utf-8 -*-
"""
Códigos oficiales AFIP usados por WSFE y helpers de validación cruzada
(clase de comprobante vs. receptor).
"""
from __future__ import annotations

import re
from typing import Optional


class OperatingMode:
    HOMOLOGATION = "HOMOLOGATION"
    PRODUCTION = "PRODUCTION"

    CHOICES = (
        (HOMOLOGATION, "Homologación"),
        (PRODUCTION, "Producción"),
    )

    @classmethod
    def normalize(cls, value: str) -> str:
        """Acepta también los alias en castellano que usa el panel (HOMOLOGACION / PRODUCCION)."""
        mode = (value or "").strip().upper()
        if mode in (cls.PRODUCTION, "PRODUCCION", "PROD"):
            return cls.PRODUCTION
        if mode in (cls.HOMOLOGATION, "HOMOLOGACION", "HOMO", "TEST"):
            return cls.HOMOLOGATION
        raise ValueError(f"Modo de operación AFIP desconocido: {value!r}")


# Tipo de documento del receptor (DocTipo)
DOC_CUIT = 80
DOC_CUIL = 86
DOC_PASAPORTE = 94
DOC_DNI = 96
DOC_CONSUMIDOR_FINAL = 99

DOCUMENT_TYPES = {
    "CUIT": DOC_CUIT,
    "CUIL": DOC_CUIL,
    "PASSPORT": DOC_PASAPORTE,
    "DNI": DOC_DNI,
    "CF": DOC_CONSUMIDOR_FINAL,
}

# Tipo de comprobante (CbteTipo)
FACTURA_A = 1
NOTA_DEBITO_A = 2
NOTA_CREDITO_A = 3
FACTURA_B = 6
NOTA_DEBITO_B = 7
NOTA_CREDITO_B = 8
FACTURA_C = 11
NOTA_DEBITO_C = 12
NOTA_CREDITO_C = 13

CLASS_A_TYPES = {FACTURA_A, NOTA_DEBITO_A, NOTA_CREDITO_A}
CLASS_C_TYPES = {FACTURA_C, NOTA_DEBITO_C, NOTA_CREDITO_C}

# Concepto
CONCEPTO_PRODUCTOS = 1
CONCEPTO_SERVICIOS = 2
CONCEPTO_PRODUCTOS_Y_SERVICIOS = 3
CONCEPTS = (CONCEPTO_PRODUCTOS, CONCEPTO_SERVICIOS, CONCEPTO_PRODUCTOS_Y_SERVICIOS)

# Condición frente al IVA del receptor (CondicionIVAReceptorId, RG 5616)
TAX_CONDITIONS = {
    "RESPONSABLE_INSCRIPTO": 1,
    "EXENTO": 4,
    "CONSUMIDOR_FINAL": 5,
    "MONOTRIBUTO": 6,
    "NO_CATEGORIZADO": 7,
    "PROVEEDOR_EXTERIOR": 8,
    "CLIENTE_EXTERIOR": 9,
    "LIBERADO_LEY_19640": 10,
    "MONOTRIBUTO_SOCIAL": 13,
    "NO_ALCANZADO": 15,
    "TRABAJADOR_INDEPENDIENTE_PROMOVIDO": 16,
}
TAX_CONDITION_RESPONSABLE_INSCRIPTO = TAX_CONDITIONS["RESPONSABLE_INSCRIPTO"]
TAX_CONDITION_CONSUMIDOR_FINAL = TAX_CONDITIONS["CONSUMIDOR_FINAL"]

# Alícuotas de IVA (AlicIva.Id)
VAT_RATES = {
    3: "0%",
    4: "10.5%",
    5: "21%",
    6: "27%",
    8: "5%",
    9: "2.5%",
}

CURRENCY_PESOS = "PES"

# Errors.Err.Code de WSFE cuando la consulta no devuelve resultados.
WSFE_NO_RESULTS = 602

_NON_DIGITS = re.compile(r"\D")


def normalize_cuit(value) -> int:
    digits = _NON_DIGITS.sub("", str(value or ""))
    if len(digits) != 11:
        raise ValueError(f"CUIT inválido: {value!r}")
    return int(digits)


def resolve_document_type(value) -> int:
    """DocTipo a partir del código numérico o del nombre (CUIT, DNI, CF, ...)."""
    if isinstance(value, str) and not value.strip().isdigit():
        try:
            return DOCUMENT_TYPES[value.strip().upper()]
        except KeyError as exc:
            raise ValueError(f"Tipo de documento desconocido: {value!r}") from exc
    return int(value)


def resolve_tax_condition(
    *,
    explicit_id: Optional[int] = None,
    tax_status: Optional[str] = None,
    doc_type: Optional[int] = None,
) -> int:
    """
    Resuelve CondicionIVAReceptorId:

    1) el id explícito, si viene;
    2) el estado fiscal del cliente mapeado a su código;
    3) heurística por DocTipo: CUIT -> Responsable Inscripto,
       cualquier otro (DNI, CF, ...) -> Consumidor Final.
    """
    if explicit_id:
        if explicit_id not in TAX_CONDITIONS.values():
            raise ValueError(f"CondicionIVAReceptorId desconocido: {explicit_id}")
        return explicit_id

    if tax_status:
        code = TAX_CONDITIONS.get(tax_status.strip().upper())
        if code is not None:
            return code

    if doc_type == DOC_CUIT:
        return TAX_CONDITION_RESPONSABLE_INSCRIPTO
    return TAX_CONDITION_CONSUMIDOR_FINAL


def validate_invoice_type_for_buyer(
    document_type: int,
    *,
    buyer_doc_type: int,
    tax_condition: int,
) -> Optional[str]:
    """Devuelve un mensaje de error si la clase de comprobante no aplica al receptor."""
    if document_type in CLASS_A_TYPES:
        if buyer_doc_type != DOC_CUIT:
            return "Los comprobantes clase A requieren un receptor con CUIT."
        if tax_condition != TAX_CONDITION_RESPONSABLE_INSCRIPTO:
            return "Los comprobantes clase A solo pueden emitirse a Responsables Inscriptos."
    if tax_condition == TAX_CONDITION_RESPONSABLE_INSCRIPTO and buyer_doc_type != DOC_CUIT:
        return "Un Responsable Inscripto debe identificarse con CUIT."
    return None
