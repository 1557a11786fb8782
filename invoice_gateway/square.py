"""
Thin Square API client.

Every mutating call carries an idempotency key derived from the order number
(`cust-`, `ord-`, `inv-`, `pub-`), so re-running a step for the same order is
a no-op on Square's side instead of a duplicate.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Dict, Optional

import requests

from invoice_gateway import config
from invoice_gateway.errors import SquareAPIError

logger = logging.getLogger(__name__)

CURRENCY = "USD"
PAYMENT_TERM_DAYS = 30


def idempotency_key(prefix: str, order_number: str) -> str:
    return f"{prefix}-{order_number}"


def split_name(name: str) -> tuple[str, str]:
    parts = name.strip().split()
    given = parts[0] if parts else ""
    family = " ".join(parts[1:])
    return given, family


def due_date(today: date) -> str:
    return (today + timedelta(days=PAYMENT_TERM_DAYS)).isoformat()


@dataclass
class CreatedInvoice:
    id: str
    invoice_number: Optional[str]
    version: Optional[int] = None


class SquareClient:
    """
    One requests.Session per process, created at startup and closed at shutdown.
    """

    def __init__(
        self,
        access_token: str,
        location_id: str,
        base_url: str = config.SQUARE_BASE_URL,
        api_version: str = config.SQUARE_API_VERSION,
        timeout: tuple[float, float] = (config.SQUARE_CONNECT_TIMEOUT, config.SQUARE_READ_TIMEOUT),
        session: Optional[requests.Session] = None,
    ):
        self.location_id = location_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Square-Version": api_version,
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        })

    def close(self):
        self.session.close()

    # ---------------- transport ----------------
    def _request(
        self,
        method: str,
        endpoint: str,
        body: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        action: str = "Square request",
    ) -> Dict[str, Any]:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            r = self.session.request(
                method,
                f"{self.base_url}/v2{endpoint}",
                json=body,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise SquareAPIError(f"{action} failed: request timed out") from e
        except requests.RequestException as e:
            raise SquareAPIError(f"{action} failed: {e}") from e

        try:
            data = r.json()
        except ValueError:
            data = {}

        errors = data.get("errors") if isinstance(data, dict) else None
        if errors:
            detail = errors[0].get("detail") or errors[0].get("code") or "unknown error"
            raise SquareAPIError(f"{action} failed: {detail}", status_code=r.status_code)
        if not r.ok:
            raise SquareAPIError(f"{action} failed: HTTP {r.status_code}", status_code=r.status_code)
        return data

    # ---------------- customers ----------------
    def search_customer_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        data = self._request(
            "POST",
            "/customers/search",
            {"query": {"filter": {"email_address": {"exact": email}}}},
            action="Customer search",
        )
        customers = data.get("customers") or []
        return customers[0] if customers else None

    def create_customer(self, name: str, email: str, order_number: str) -> Dict[str, Any]:
        key = idempotency_key("cust", order_number)
        given, family = split_name(name)
        data = self._request(
            "POST",
            "/customers",
            {
                "idempotency_key": key,
                "given_name": given,
                "family_name": family,
                "email_address": email,
            },
            idempotency_key=key,
            action="Customer creation",
        )
        return data["customer"]

    # ---------------- orders ----------------
    def create_order(self, customer_id: str, amount_cents: int, order_number: str) -> str:
        key = idempotency_key("ord", order_number)
        data = self._request(
            "POST",
            "/orders",
            {
                "idempotency_key": key,
                "order": {
                    "location_id": self.location_id,
                    "customer_id": customer_id,
                    "reference_id": order_number,
                    "line_items": [
                        {
                            "name": f"Wholesale Order #{order_number}",
                            "quantity": "1",
                            "base_price_money": {"amount": amount_cents, "currency": CURRENCY},
                        }
                    ],
                },
            },
            idempotency_key=key,
            action="Order creation",
        )
        return data["order"]["id"]

    # ---------------- invoices ----------------
    def create_invoice(self, order_id: str, customer_id: str, order_number: str, today: date) -> CreatedInvoice:
        key = idempotency_key("inv", order_number)
        data = self._request(
            "POST",
            "/invoices",
            {
                "idempotency_key": key,
                "invoice": {
                    "order_id": order_id,
                    "location_id": self.location_id,
                    "primary_recipient": {"customer_id": customer_id},
                    "payment_requests": [
                        {
                            "request_type": "BALANCE",
                            "due_date": due_date(today),
                            "automatic_payment_source": "NONE",
                        }
                    ],
                    "accepted_payment_methods": {
                        "card": True,
                        "square_gift_card": False,
                        "bank_account": True,
                        "buy_now_pay_later": False,
                        "cash_app_pay": False,
                    },
                    "delivery_method": "EMAIL",
                    "title": f"Invoice for Order #{order_number}",
                },
            },
            idempotency_key=key,
            action="Invoice creation",
        )
        invoice = data["invoice"]
        return CreatedInvoice(
            id=invoice["id"],
            invoice_number=invoice.get("invoice_number"),
            version=invoice.get("version"),
        )

    def get_invoice(self, invoice_id: str) -> Dict[str, Any]:
        data = self._request("GET", f"/invoices/{invoice_id}", action="Invoice fetch")
        return data["invoice"]

    def publish_invoice(self, invoice_id: str, order_number: str) -> Dict[str, Any]:
        """Publishing needs the invoice's current version, so fetch it first."""
        version = self.get_invoice(invoice_id).get("version")

        key = idempotency_key("pub", order_number)
        data = self._request(
            "POST",
            f"/invoices/{invoice_id}/publish",
            {"idempotency_key": key, "version": version},
            idempotency_key=key,
            action="Invoice publish",
        )
        return data.get("invoice", {})
