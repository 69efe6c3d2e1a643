"""Pricing & Tax Engine

Pure functions only: the same inputs always produce an identical Quote, so a
stored quote can be compared against a recomputation later. All arithmetic is
done on integer minor units; Decimal only appears at the edges.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List

from domain.entities import Tax
from domain.enums import ResourceKind
from domain.errors import InvalidPricingInput
from domain.value_objects import Quote, TaxLine, to_minor


def _apply_rate(amount_minor: int, rate: Decimal) -> int:
    return int((Decimal(amount_minor) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def applicable_taxes(taxes: Iterable[Tax], item_kind: ResourceKind) -> List[Tax]:
    """Active taxes whose scope covers the item kind, in input order"""
    return [tax for tax in taxes if tax.active and tax.applies_to_kind(item_kind)]


def quote(
    base_price: Decimal,
    quantity: int,
    duration_units: int,
    taxes: Iterable[Tax],
    company_fee_rate: Decimal,
    is_taxable: bool,
    item_kind: ResourceKind = ResourceKind.FACILITY,
    currency: str = "GHS"
) -> Quote:
    """Itemize subtotal, service fee and taxes.

    ``company_fee_rate`` is a fraction (0.02 for a 2% fee). Tax rates are
    percentages and every tax applies to the subtotal, never to another tax.
    """
    taxes = list(taxes)
    base_price = Decimal(base_price)
    company_fee_rate = Decimal(company_fee_rate or 0)

    if base_price < 0:
        raise InvalidPricingInput("Base price cannot be negative")
    if quantity < 1:
        raise InvalidPricingInput("Quantity must be at least 1")
    if duration_units < 1:
        raise InvalidPricingInput("Duration must be at least 1 unit")
    if company_fee_rate < 0:
        raise InvalidPricingInput("Company fee rate cannot be negative")
    for tax in taxes:
        if tax.rate < 0:
            raise InvalidPricingInput(f"Tax {tax.name} has a negative rate")

    unit_price_minor = to_minor(base_price)
    subtotal_minor = unit_price_minor * quantity * duration_units
    service_fee_minor = _apply_rate(subtotal_minor, company_fee_rate)

    breakdown = []
    if is_taxable:
        for tax in applicable_taxes(taxes, item_kind):
            breakdown.append(TaxLine(
                tax_id=str(tax.tax_id),
                name=tax.name,
                rate=tax.rate,
                amount_minor=_apply_rate(subtotal_minor, tax.rate / 100)
            ))
    tax_total_minor = sum(line.amount_minor for line in breakdown)

    return Quote(
        currency=currency,
        unit_price_minor=unit_price_minor,
        quantity=quantity,
        duration_units=duration_units,
        subtotal_minor=subtotal_minor,
        service_fee_rate=company_fee_rate,
        service_fee_minor=service_fee_minor,
        tax_breakdown=tuple(breakdown),
        tax_total_minor=tax_total_minor,
        total_minor=subtotal_minor + service_fee_minor + tax_total_minor
    )
