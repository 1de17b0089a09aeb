from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional

from propertyops.models import Invoice, InvoiceLine


class ExportAdapter(ABC):
    """Boundary to one external accounting system.

    build_payload is a pure reshaping of already computed invoice data; the
    result is stored as the outbox snapshot. submit performs the remote call
    and may be slow or fail; the processor treats every failure as retryable.
    """

    target_system: str = ""

    @abstractmethod
    def build_payload(self, invoice: Invoice, lines: Iterable[InvoiceLine]) -> Dict[str, Any]:
        """Translate an invoice and its lines into the target system's document."""

    @abstractmethod
    def submit(self, payload: Dict[str, Any], idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        """Send the document. Returns {'externalRef': str} or raises AdapterError."""
