"""Best-effort mirroring of the checkout to a customer-facing display.

After each transition the orchestration layer hands the new state to
:func:`broadcast`. Nothing is acknowledged and the latest write wins; a sink
that fails only costs a log line. Empty carts and unset payments are left out
of the message so a paused display keeps what it last showed.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Protocol

from . import log
from .constants import ZERO, PaymentMethod
from .ledger import current_customer, current_detail
from .models import LedgerState


class DisplaySink(Protocol):
    def publish(self, message: Mapping[str, Any]) -> None:
        ...


class NullDisplaySink:
    """Sink used when no secondary display is attached."""

    def publish(self, message: Mapping[str, Any]) -> None:
        return None


class JsonFileDisplaySink:
    """Writes the latest message to a JSON file polled by the display."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()

    def publish(self, message: Mapping[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        scratch = self.path.with_suffix(self.path.suffix + ".tmp")
        scratch.write_text(json.dumps(dict(message), indent=2), encoding="utf-8")
        os.replace(scratch, self.path)


def build_display_message(state: LedgerState) -> Dict[str, Any]:
    """Project the checkout fields of ``state`` into a display message."""

    message: Dict[str, Any] = {
        "type": "STATE_UPDATE",
        "discount": str(state.discount),
        "total": str(current_detail(state).total),
    }
    if state.cart:
        message["cart"] = [
            {
                "name": line.product_name,
                "quantity": str(line.quantity),
                "price": str(line.unit_price),
                "discount": str(line.item_discount),
            }
            for line in state.cart
        ]
    customer = current_customer(state)
    if customer is not None:
        message["customer"] = {"id": customer.customer_id, "name": customer.name}
    if state.payment_amount > ZERO or state.payment_method is not PaymentMethod.CASH:
        message["payment_method"] = state.payment_method.value
        message["payment_amount"] = str(state.payment_amount)
    return message


def broadcast(sink: DisplaySink, state: LedgerState) -> bool:
    """Publish ``state`` to ``sink``; returns ``False`` when publishing failed."""

    try:
        sink.publish(build_display_message(state))
    except Exception as exc:
        log.warning("Secondary display update failed: %s", exc)
        return False
    return True
