import time
import requests
from typing import Any, Dict, Optional
from requests.exceptions import ConnectionError, Timeout, RequestException

from propertyops.adapters.base import ExportAdapter
from propertyops.errors import AdapterError
from propertyops.logging_config import get_logger

logger = get_logger(__name__)


def _amount(value):
    return float(value) if value is not None else 0.0


def _vat_code(value):
    return getattr(value, "value", value)


class VismaAdapter(ExportAdapter):
    """Shared Visma document shape. Subclasses decide how the document is sent."""

    target_system = "VISMA"

    def build_payload(self, invoice, lines):
        return {
            "invoiceId": invoice.id,
            "customerName": invoice.customer_name,
            "reference1": invoice.reference1,
            "reference2": invoice.reference2,
            "lines": [
                {
                    "description": line.description,
                    "quantity": line.quantity,
                    "unitPrice": _amount(line.unit_price),
                    "vatCode": _vat_code(line.vat_code),
                }
                for line in lines
            ],
            "totals": {
                "subtotal": _amount(invoice.subtotal),
                "vatTotal": _amount(invoice.vat_total),
                "total": _amount(invoice.total),
            },
            "currency": invoice.currency,
        }


class StubVismaAdapter(VismaAdapter):
    """
    Simulated Visma endpoint with deterministic behaviour for testing.

    Fails whenever the customer name contains "FAIL" (any case); otherwise
    succeeds after a short delay with a synthetic reference.
    """

    def __init__(self, delay_seconds: float = 0.1):
        self.delay_seconds = delay_seconds

    def submit(self, payload, idempotency_key=None):
        if self.delay_seconds:
            time.sleep(self.delay_seconds)

        customer_name = payload.get("customerName") or ""
        if "FAIL" in customer_name.upper():
            raise AdapterError('Visma export failed: Customer name contains "FAIL" (test failure)')

        timestamp_ms = int(time.time() * 1000)
        external_ref = f"VISMA-{str(payload['invoiceId'])[:8]}-{timestamp_ms}"
        logger.info("Stub Visma export accepted", invoice_id=payload["invoiceId"], external_ref=external_ref)
        return {"externalRef": external_ref}


class HttpVismaAdapter(VismaAdapter):
    """Visma connection layer utilizing a requests session."""

    def __init__(self, base_url: str, api_token: Optional[str], timeout: float = 30):
        if not base_url:
            raise ValueError("Missing Visma configuration: VISMA_API_BASE_URL")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        # Reusable HTTP session
        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if api_token:
            self.session.headers.update({"Authorization": f"Bearer {api_token}"})

    def submit(self, payload: Dict[str, Any], idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        url = f"{self.base_url}/invoices"
        headers = {}
        if idempotency_key:
            # Same snapshot, same key: Visma drops a resubmission it already accepted
            headers["Idempotency-Key"] = idempotency_key

        try:
            response = self.session.post(url, json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except Timeout as e:
            raise AdapterError(f"Visma request timed out after {self.timeout}s") from e
        except ConnectionError as e:
            raise AdapterError(f"Visma connection error: {e}") from e
        except requests.HTTPError as e:
            body = e.response.text[:300] if e.response is not None else ""
            status = e.response.status_code if e.response is not None else "?"
            raise AdapterError(f"Visma HTTP {status}: {body}") from e
        except RequestException as e:
            raise AdapterError(f"Visma request failed: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise AdapterError("Visma returned a non-JSON response") from e

        external_ref = data.get("externalRef") if isinstance(data, dict) else None
        if not external_ref:
            raise AdapterError("Visma response did not contain an externalRef")

        return {"externalRef": str(external_ref)}
