"""Stripe payment processor integration."""

import logging
from typing import Any

import httpx

from bookkeeper.config import settings
from bookkeeper.errors import PaymentProcessorError

logger = logging.getLogger(__name__)


def _flatten_form(data: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Encode nested dicts/lists the way Stripe expects form bodies.

    ``{"line_items": [{"amount": 5}]}`` -> ``{"line_items[0][amount]": 5}``
    """
    flat: dict[str, Any] = {}
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            flat.update(_flatten_form(value, name))
        elif isinstance(value, list):
            for index, entry in enumerate(value):
                entry_name = f"{name}[{index}]"
                if isinstance(entry, dict):
                    flat.update(_flatten_form(entry, entry_name))
                else:
                    flat[entry_name] = entry
        elif isinstance(value, bool):
            flat[name] = "true" if value else "false"
        else:
            flat[name] = value
    return flat


class StripeGateway:
    """Thin wrapper around the three Stripe endpoints bookkeeping relies on."""

    def __init__(self) -> None:
        self._live_key = settings.stripe_secret_key_live
        self._test_key = settings.stripe_secret_key_test
        self._base_url = settings.stripe_api_base.rstrip("/")
        self._timeout = settings.stripe_timeout_seconds

    def _secret_key(self, livemode: bool) -> str:
        return self._live_key if livemode else self._test_key

    def _headers(self, livemode: bool) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._secret_key(livemode)}",
            "Content-Type": "application/x-www-form-urlencoded",
        }

    def is_configured(self, livemode: bool) -> bool:
        return bool(self._secret_key(livemode))

    def _post(self, path: str, payload: dict[str, Any], livemode: bool) -> dict[str, Any]:
        if not self.is_configured(livemode):
            mode = "live" if livemode else "test"
            raise PaymentProcessorError(f"Stripe is not configured for {mode} mode")
        try:
            with httpx.Client(timeout=self._timeout) as client:
                resp = client.post(
                    f"{self._base_url}{path}",
                    data=_flatten_form(payload),
                    headers=self._headers(livemode),
                )
        except httpx.HTTPError as exc:
            logger.error("Stripe request to %s failed: %s", path, exc)
            raise PaymentProcessorError(f"Stripe request to {path} failed") from exc
        data = resp.json()
        if resp.status_code >= 400:
            message = data.get("error", {}).get("message", "Stripe request failed")
            logger.error("Stripe %s failed (%s): %s", path, resp.status_code, message)
            raise PaymentProcessorError(message, details=data.get("error"))
        result: dict[str, Any] = data
        return result

    # ── Customers ────────────────────────────────────────

    def create_customer(self, email: str, name: str, livemode: bool) -> str:
        """Create a Stripe customer and return its id."""
        data = self._post("/customers", {"email": email, "name": name}, livemode)
        logger.info("Created Stripe customer: %s", data["id"])
        return str(data["id"])

    # ── Tax ──────────────────────────────────────────────

    def create_tax_calculation(
        self,
        *,
        amount: int,
        currency: str,
        billing_address: dict[str, Any],
        reference: str,
        livemode: bool,
    ) -> dict[str, Any]:
        """Ask Stripe Tax for the exclusive tax owed on ``amount``.

        Returns ``{"id": ..., "tax_amount_exclusive": ...}``.
        """
        address = billing_address.get("address", {})
        payload = {
            "currency": currency,
            "line_items": [
                {
                    "amount": amount,
                    "quantity": 1,
                    "reference": reference,
                    "tax_behavior": "exclusive",
                }
            ],
            "customer_details": {
                "address": address,
                "address_source": "billing",
            },
        }
        data = self._post("/tax/calculations", payload, livemode)
        return {
            "id": data["id"],
            "tax_amount_exclusive": int(data.get("tax_amount_exclusive", 0)),
        }

    # ── Payment intents ──────────────────────────────────

    def update_payment_intent(
        self,
        payment_intent_id: str,
        *,
        amount: int,
        application_fee_amount: int | None,
        livemode: bool,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"amount": amount}
        if application_fee_amount is not None:
            payload["application_fee_amount"] = application_fee_amount
        data = self._post(f"/payment_intents/{payment_intent_id}", payload, livemode)
        logger.info(
            "Updated Stripe payment intent %s: amount=%s fee=%s",
            payment_intent_id,
            amount,
            application_fee_amount,
        )
        return data


stripe_gateway = StripeGateway()
