"""IVA (Chilean VAT) rules for the quoting entity."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from manito.config import DEFAULT_VAT_RATE_PERCENT
from manito.errors import ValidationError
from manito.money import require_clp, round_clp, to_decimal


class DocumentType(str, enum.Enum):
    BOLETA_HONORARIOS = "boleta_honorarios"
    FACTURA = "factura"
    FACTURA_EXENTA = "factura_exenta"


DOCUMENT_TYPE_LABELS = {
    DocumentType.BOLETA_HONORARIOS: "Boleta de honorarios",
    DocumentType.FACTURA: "Factura",
    DocumentType.FACTURA_EXENTA: "Factura exenta",
}


class AccountType(str, enum.Enum):
    INDIVIDUAL = "individual"
    BUSINESS = "business"


@dataclass(frozen=True)
class TaxProfile:
    """Tax treatment of the quoting entity, fixed for the life of a quote."""

    vat_exempt: bool
    vat_rate_percent: float
    document_type: DocumentType
    business_id: Optional[str] = None

    def __post_init__(self) -> None:
        if to_decimal(self.vat_rate_percent, "vat_rate_percent") < 0:
            raise ValidationError("vat_rate_percent", "must be non-negative")


@dataclass(frozen=True)
class TaxResult:
    subtotal: int
    iva_amount: int
    total_with_tax: int


def resolve_tax_profile(
    account_type: AccountType | str,
    *,
    business_id: Optional[str] = None,
    vat_exempt: bool = False,
    vat_rate_percent: float = DEFAULT_VAT_RATE_PERCENT,
) -> TaxProfile:
    """Return the tax profile for an individual provider or a business.

    Individuals bill with a boleta de honorarios, which carries no IVA.
    Businesses bill with a factura at *vat_rate_percent*, or a factura exenta
    when the business is exempt.
    """

    account = AccountType(account_type)
    if account is AccountType.INDIVIDUAL:
        return TaxProfile(
            vat_exempt=True,
            vat_rate_percent=0.0,
            document_type=DocumentType.BOLETA_HONORARIOS,
        )
    if not business_id:
        raise ValidationError("business_id", "is required when quoting as a business")
    if vat_exempt:
        return TaxProfile(
            vat_exempt=True,
            vat_rate_percent=0.0,
            document_type=DocumentType.FACTURA_EXENTA,
            business_id=business_id,
        )
    return TaxProfile(
        vat_exempt=False,
        vat_rate_percent=vat_rate_percent,
        document_type=DocumentType.FACTURA,
        business_id=business_id,
    )


def apply_tax(subtotal: int, profile: TaxProfile) -> TaxResult:
    """Apply IVA to *subtotal*, rounding half-up to the nearest peso."""

    base = require_clp(subtotal, "subtotal")
    if profile.vat_exempt:
        iva = 0
    else:
        iva = round_clp(base * to_decimal(profile.vat_rate_percent, "vat_rate_percent") / 100)
    return TaxResult(subtotal=base, iva_amount=iva, total_with_tax=base + iva)


def format_document_type(document_type: DocumentType | str) -> str:
    return DOCUMENT_TYPE_LABELS[DocumentType(document_type)]


__all__ = [
    "AccountType",
    "DOCUMENT_TYPE_LABELS",
    "DocumentType",
    "TaxProfile",
    "TaxResult",
    "apply_tax",
    "format_document_type",
    "resolve_tax_profile",
]
