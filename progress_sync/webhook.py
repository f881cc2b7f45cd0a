"""
Progress Sync — ERP integration webhook

Two payload shapes are understood:

    invoice-like      an invoice_id / invoice_number (top level or under "invoice")
                      → each line item is reconciled against order items
    sales-order-like  a salesorder_id or an embedded "salesorder"
                      → the order and its items are created unless an order
                        with that sales-order reference already exists

Anything else is acknowledged with 200 and a warning so the sender does not
retry forever. Store failures answer 500. Every handled webhook leaves a
sync-log entry.
"""

import asyncio
import json
import logging
import math
from typing import Any

import redis.asyncio as aioredis
from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import commands, queries, sync_log
from .errors import PreconditionFailed
from .events import ExternalEvent
from .reconciler import FAILED, Reconciler

logger = logging.getLogger(__name__)

INVOICE = "invoice"
SALES_ORDER = "salesorder"

_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


# ── Payload parsing ──────────────────────────────

def _decode_json_string(payload: dict) -> dict:
    # form posts may carry the whole document as JSON in one field
    raw = payload.get("JSONString")
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except ValueError:
            return payload
        if isinstance(decoded, dict):
            return decoded
    return payload


def parse_body(body: bytes) -> dict:
    """Parse a JSON or raw-text body; unparsable text is kept under "raw"."""
    text = body.decode("utf-8", errors="replace")
    try:
        payload = json.loads(text) if text.strip() else {}
    except ValueError:
        return {"raw": text}
    if not isinstance(payload, dict):
        return {"raw": payload}
    return _decode_json_string(payload)


async def read_payload(request: Request) -> dict:
    content_type = request.headers.get("content-type", "")
    if any(form_type in content_type for form_type in _FORM_TYPES):
        form = await request.form()
        return _decode_json_string({key: value for key, value in form.items()})
    return parse_body(await request.body())


def detect_shape(payload: dict) -> str | None:
    invoice = payload.get("invoice")
    if payload.get("invoice_id") or payload.get("invoice_number") or isinstance(invoice, dict):
        return INVOICE
    salesorder = payload.get("salesorder")
    if payload.get("salesorder_id") or isinstance(salesorder, dict):
        return SALES_ORDER
    data = payload.get("data")
    if isinstance(data, dict) and data.get("salesorder_id"):
        return SALES_ORDER
    return None


def _quantity(value: Any) -> int | None:
    """Whole-number quantity, or None for missing, fractional or non-finite values."""
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(number) or not number.is_integer():
        return None
    return int(number)


def _lines(document: dict, key: str) -> list:
    value = document.get(key)
    return value if isinstance(value, list) else []


def invoice_document(payload: dict) -> dict:
    invoice = payload.get("invoice")
    return invoice if isinstance(invoice, dict) else payload


def invoice_candidates(invoice: dict) -> list[str]:
    """Reference strings that may identify the order an invoice belongs to."""
    candidates = [
        invoice.get("reference_number"),
        invoice.get("salesorder_number"),
    ]
    for salesorder in _lines(invoice, "salesorders"):
        if isinstance(salesorder, dict):
            candidates.append(salesorder.get("salesorder_number"))
            candidates.append(salesorder.get("reference_number"))
    seen: list[str] = []
    for candidate in candidates:
        if candidate and str(candidate).strip() and str(candidate).strip() not in seen:
            seen.append(str(candidate).strip())
    return seen


def invoice_events(invoice: dict) -> list[ExternalEvent]:
    source = invoice.get("invoice_id") or invoice.get("invoice_number")
    events = []
    for line in _lines(invoice, "line_items"):
        if not isinstance(line, dict):
            continue
        sku = line.get("sku") or line.get("item_code")
        quantity = _quantity(line.get("quantity"))
        if not sku or line.get("quantity") is None:
            logger.info("Skipping invoice line without SKU or quantity: %s", line.get("name"))
            continue
        if quantity is None:
            logger.warning(
                "Skipping invoice line %s: quantity %r is not a whole number",
                sku, line.get("quantity"),
            )
            continue
        events.append(ExternalEvent(
            business_key=str(sku),
            quantity=quantity,
            source_document_id=str(source) if source else None,
        ))
    return events


def salesorder_document(payload: dict) -> dict:
    salesorder = payload.get("salesorder")
    if isinstance(salesorder, dict):
        return salesorder
    data = payload.get("data")
    if isinstance(data, dict) and data.get("salesorder_id"):
        return data
    return payload


# ── Handler ──────────────────────────────────────

class WebhookHandler:
    def __init__(
        self,
        session_factory: sessionmaker,
        redis: aioredis.Redis | None,
        reconciler: Reconciler,
    ) -> None:
        self.session_factory = session_factory
        self.redis = redis
        self.reconciler = reconciler

    async def handle(self, payload: dict) -> tuple[int, dict]:
        """Returns (HTTP status, response body)."""
        shape = detect_shape(payload)
        if shape is None:
            logger.warning("Unrecognized ERP webhook payload: %s", json.dumps(payload, default=str)[:500])
            return 200, {"received": True, "warning": "Unrecognized webhook payload"}

        sync_type = f"{shape}_webhook"
        try:
            if shape == INVOICE:
                body, items_synced, status = await self._handle_invoice(payload)
            else:
                body, items_synced, status = await self._handle_sales_order(payload)
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
            logger.exception("ERP %s webhook failed", shape)
            message = str(e) or type(e).__name__
            await self._log(sync_type, sync_log.FAILED, 0, message)
            return 500, {"error": message}

        await self._log(sync_type, status, items_synced, body.get("warning"))
        return 200, body

    async def _log(
        self, sync_type: str, status: str, items_synced: int, error_message: str | None
    ) -> None:
        try:
            async with self.session_factory() as session:
                await sync_log.append_entry(session, sync_type, status, items_synced, error_message)
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Could not write sync log entry for %s", sync_type)

    async def _handle_invoice(self, payload: dict) -> tuple[dict, int, str]:
        invoice = invoice_document(payload)
        candidates = invoice_candidates(invoice)
        events = invoice_events(invoice)
        if not candidates or not events:
            warning = "Invoice has no order reference" if not candidates else "Invoice has no SKU lines"
            logger.warning("%s: %s", warning, invoice.get("invoice_number"))
            return {"received": True, "warning": warning}, 0, sync_log.WARNING

        result = await self.reconciler.reconcile(candidates, events)
        body = {
            "success": True,
            "matched_by": result.matched_by,
            "items_updated": result.items_updated,
            "outcomes": [o.model_dump() for o in result.outcomes],
        }
        if result.warning:
            body["warning"] = result.warning
            return body, 0, sync_log.WARNING
        if any(o.status == FAILED for o in result.outcomes):
            body["warning"] = "Some orders could not be reconciled"
            return body, result.items_updated, sync_log.WARNING
        return body, result.items_updated, sync_log.COMPLETED

    async def _handle_sales_order(self, payload: dict) -> tuple[dict, int, str]:
        salesorder = salesorder_document(payload)
        salesorder_id = salesorder.get("salesorder_id") or payload.get("salesorder_id")
        so_number = salesorder.get("salesorder_number") or f"SO-{salesorder_id}"
        order_number = salesorder.get("reference_number") or so_number

        async with self.session_factory() as session:
            existing = await queries.find_order_ids_by_reference(session, [so_number])
            if existing:
                logger.info("Order already exists for %s", so_number)
                return (
                    {"success": True, "message": "Order already exists", "order_id": existing[0]},
                    0,
                    sync_log.COMPLETED,
                )

            items = []
            for line in _lines(salesorder, "line_items"):
                if not isinstance(line, dict):
                    continue
                items.append({
                    "name": line.get("name") or line.get("item_name")
                    or line.get("description") or "Unknown Item",
                    "code": line.get("sku") or line.get("item_code"),
                    "quantity": _quantity(line.get("quantity")) or 1,
                })
            if not items:
                warning = f"Sales order {so_number} has no line items"
                logger.warning("%s", warning)
                return {"received": True, "warning": warning}, 0, sync_log.WARNING

            company_id = await commands.match_or_create_company(session, salesorder)
            try:
                agg = await commands.create_order(
                    session, self.redis, order_number, items,
                    reference=so_number, company_id=company_id,
                )
            except PreconditionFailed as e:
                logger.warning("Sales order %s not imported: %s", so_number, e.reason)
                return {"received": True, "warning": e.reason}, 0, sync_log.WARNING

        return (
            {
                "success": True,
                "order_id": agg.id,
                "order_number": agg.order_number,
                "company_id": agg.company_id,
                "items_created": len(agg.items),
            },
            len(agg.items) + 1,
            sync_log.COMPLETED,
        )
