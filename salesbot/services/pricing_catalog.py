from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml

from salesbot.logging_config import get_logger

_PRICING_PATH = Path(__file__).resolve().parents[1] / "knowledge" / "pricing.yaml"
_DEFAULT_CHECKOUT_HOST = "checkout.empresa.com"
_EARLY_BIRD_CODES = {"EARLYBIRD", "EARLY", "LANCAMENTO"}

logger = get_logger("pricing_catalog")


@dataclass(frozen=True)
class Plan:
    id: str
    product_id: str
    name: str
    price: float
    billing_cycle: str = "monthly"
    description: str = ""
    features: tuple[str, ...] = ()
    checkout_link: str = ""
    popular: bool = False
    is_addon: bool = False


@dataclass(frozen=True)
class PriceQuote:
    base_price: float
    final_price: float
    currency_symbol: str
    billing_cycle: str
    applied_discounts: list[dict[str, Any]] = field(default_factory=list)

    @property
    def formatted(self) -> str:
        return format_money(self.final_price, self.currency_symbol)


def format_money(value: Any, symbol: str = "R$") -> str:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return str(value)
    return f"{symbol} {amount:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")


@lru_cache(maxsize=4)
def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data if isinstance(data, dict) else {}


def _env_price(plan_id: str, default: float) -> float:
    """PRICE_<PLAN_ID>_PRICE overrides the catalog price; invalid values are ignored."""
    var_name = f"PRICE_{plan_id.upper()}_PRICE"
    raw = os.environ.get(var_name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid {var_name} value, using catalog price", extra={"context": {"value": raw}})
        return default
    return max(value, 0.0)


def _build_plan(item: dict, product_id: str, is_addon: bool) -> Plan:
    plan_id = str(item["id"])
    return Plan(
        id=plan_id,
        product_id=product_id,
        name=str(item.get("name") or plan_id),
        price=_env_price(plan_id, float(item.get("price") or 0)),
        billing_cycle=str(item.get("billing_cycle") or "monthly"),
        description=str(item.get("description") or ""),
        features=tuple(str(f) for f in item.get("features") or ()),
        checkout_link=os.environ.get(f"PRICE_{plan_id.upper()}_CHECKOUT_LINK") or str(item.get("checkout_link") or ""),
        popular=bool(item.get("popular", False)),
        is_addon=is_addon,
    )


class PricingCatalog:
    """Plan prices and checkout links read from the pricing manifest."""

    def __init__(self, data: Optional[dict] = None):
        data = _load_yaml(_PRICING_PATH) if data is None else data
        self.currency = str(data.get("currency") or "BRL")
        self.currency_symbol = str(data.get("currency_symbol") or "R$")
        self.discounts = {str(k): float(v) for k, v in (data.get("discounts") or {}).items()}
        self.products = [p for p in data.get("products") or [] if isinstance(p, dict)]
        self._plans: dict[str, Plan] = {}
        for product in self.products:
            product_id = str(product.get("id") or "")
            for item in product.get("plans") or []:
                plan = _build_plan(item, product_id, is_addon=False)
                self._plans[plan.id] = plan
            for item in product.get("addons") or []:
                plan = _build_plan(item, product_id, is_addon=True)
                self._plans[plan.id] = plan

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        return self._plans.get(plan_id)

    def plans(self) -> list[Plan]:
        return list(self._plans.values())

    def price_of(self, plan_id: str) -> float:
        """Price lookup used when an accepted offer is recorded as a purchase. Unknown plans are worth 0."""
        plan = self._plans.get(plan_id)
        return plan.price if plan else 0.0

    def checkout_link(self, plan_id: str) -> Optional[str]:
        """Checkout URL for the plan, or None when missing or still the placeholder."""
        plan = self._plans.get(plan_id)
        if not plan or not plan.checkout_link or _DEFAULT_CHECKOUT_HOST in plan.checkout_link:
            return None
        return plan.checkout_link

    def quote(
        self,
        plan_id: str,
        billing_cycle: str = "monthly",
        discount_codes: tuple[str, ...] = (),
        is_referral: bool = False,
    ) -> Optional[PriceQuote]:
        plan = self._plans.get(plan_id)
        if plan is None:
            return None

        base = plan.price
        final = base
        applied = []
        candidates = (
            ("annual", billing_cycle == "annual", "Desconto de assinatura anual"),
            ("referral", is_referral, "Desconto por indicação"),
            ("early_bird", bool(_EARLY_BIRD_CODES & {c.upper() for c in discount_codes}), "Desconto de early bird"),
        )
        for key, applies, description in candidates:
            rate = self.discounts.get(key)
            if applies and rate:
                amount = base * rate
                final -= amount
                applied.append({"type": key, "description": description, "amount": amount, "percentage": rate * 100})

        return PriceQuote(
            base_price=base,
            final_price=round(final, 2),
            currency_symbol=self.currency_symbol,
            billing_cycle=billing_cycle,
            applied_discounts=applied,
        )

    def validation_issues(self) -> list[str]:
        """Plans still pointing at a placeholder or missing checkout link."""
        return [
            plan.id
            for plan in self._plans.values()
            if not plan.checkout_link or _DEFAULT_CHECKOUT_HOST in plan.checkout_link
        ]

    def describe(self) -> str:
        """Product summary injected into the system prompt."""
        lines = []
        for product in self.products:
            lines.append(f"## {product.get('name', product.get('id'))}")
            if product.get("description"):
                lines.append(str(product["description"]).strip())
            for item in (product.get("plans") or []) + (product.get("addons") or []):
                plan = self._plans.get(str(item.get("id")))
                if plan is None:
                    continue
                suffix = " (mais popular)" if plan.popular else ""
                lines.append(
                    f"- {plan.name} [{plan.id}]: {format_money(plan.price, self.currency_symbol)}"
                    f" / {plan.billing_cycle}{suffix}. {plan.description}"
                )
            lines.append("")
        return "\n".join(lines).strip()
