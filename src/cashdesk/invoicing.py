"""Seam to the external invoicing (fiscal document) service.

The engine only depends on the :class:`Invoicer` protocol. The bundled
:class:`PlaceholderInvoicer` stands in until a real fiscal backend is wired:
it produces prefixed document numbers and a plain-text data URL instead of a
PDF, and flags nothing as training because the caller decides that.
"""

from __future__ import annotations

import asyncio
import base64
import json
from datetime import UTC, datetime
from typing import Any, Mapping, Optional, Protocol

from . import log
from .constants import DOCUMENT_PREFIXES, SaleType
from .models import FiscalDocument, Settings, generate_id


class InvoicingError(Exception):
    """Raised by an invoicer when the service refuses or cannot issue."""


class Invoicer(Protocol):
    async def issue(
        self,
        sale_type: SaleType,
        payload: Mapping[str, Any],
        settings: Settings,
    ) -> FiscalDocument:
        ...


class PlaceholderInvoicer:
    """Local stand-in for the fiscal document service."""

    def __init__(self, *, latency: float = 0.0, clock: Optional[Any] = None) -> None:
        self.latency = latency
        self._clock = clock or (lambda: datetime.now(UTC))

    async def issue(
        self,
        sale_type: SaleType,
        payload: Mapping[str, Any],
        settings: Settings,
    ) -> FiscalDocument:
        if self.latency:
            await asyncio.sleep(self.latency)
        prefix = DOCUMENT_PREFIXES.get(SaleType(sale_type), "DOC")
        number = generate_id(f"{prefix}-", self._clock())
        body = f"Documento {number}\n\n{json.dumps(dict(payload), indent=2, default=str)}"
        encoded = base64.b64encode(body.encode("utf-8")).decode("ascii")
        log.debug("Placeholder invoicer issued '%s' for %s", number, settings.company_name)
        return FiscalDocument(number=number, pdf_url=f"data:text/plain;base64,{encoded}")
