import logging
import math
from functools import partial
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import resend
from flask import render_template

from .errors import EmailDeliveryFailed, EmailServiceUnavailable, ValidationError
from .fanout import failures, settle_all
from .storage import current_millis

DEFAULT_COMPANY_NAME = "Gamma Ortho Instruments"

INQUIRY_REQUIRED_FIELDS = (
    "contact-name",
    "contact-email",
    "contact-message",
    "contact-category",
)


def safe_float(value, default=0.0):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_positive_int(value, default=0):
    try:
        numeric = int(float(value))
    except (TypeError, ValueError):
        return default
    return max(default, numeric)


def build_order_rows(order: Mapping) -> List[Dict[str, object]]:
    rows: List[Dict[str, object]] = []
    for group in order.get("orderItems") or []:
        if not isinstance(group, Mapping):
            continue
        product_name = str(group.get("baseProductName") or "").strip() or "Item"
        for variant in group.get("variants") or []:
            if not isinstance(variant, Mapping):
                continue
            quantity = safe_positive_int(variant.get("quantity"), 1) or 1
            base_price = safe_float(variant.get("basePrice"))
            gst_rate = safe_float(variant.get("gstRate"))
            price_inc_gst = safe_float(
                variant.get("priceIncGst"), base_price * (1 + gst_rate)
            )
            rows.append(
                {
                    "product": product_name,
                    "dimension": str(variant.get("dimension") or ""),
                    "quantity": quantity,
                    "base_price": base_price,
                    "gst_amount": base_price * gst_rate,
                    "gst_percent": gst_rate * 100,
                    "price_inc_gst": price_inc_gst,
                    "subtotal": price_inc_gst * quantity,
                }
            )
    return rows


class EmailSender:
    def __init__(
        self,
        api_key: Optional[str],
        sender_email: Optional[str],
        owner_email: Optional[str],
        company_name: str = DEFAULT_COMPANY_NAME,
        logger: Optional[logging.Logger] = None,
    ):
        self.api_key = (api_key or "").strip()
        self.sender_email = (sender_email or "").strip()
        self.owner_email = (owner_email or "").strip()
        self.company_name = company_name or DEFAULT_COMPANY_NAME
        self.logger = logger or logging.getLogger(__name__)
        if self.api_key:
            resend.api_key = self.api_key

    def is_configured(self) -> bool:
        return bool(self.api_key and self.sender_email and self.owner_email)

    def _require_configuration(self) -> None:
        if not self.is_configured():
            self.logger.error("Email sender is not configured. Cannot send email.")
            raise EmailServiceUnavailable("Email service misconfiguration.")

    def _send(self, payload: Dict[str, object]) -> str:
        response = resend.Emails.send(payload)
        if not isinstance(response, dict) or not response.get("id"):
            raise EmailDeliveryFailed(f"Unexpected response from email provider: {response}")
        return str(response["id"])

    def send_order_confirmation(self, order: Mapping) -> None:
        if (
            not order
            or not order.get("orderItems")
            or not order.get("customerEmail")
            or not order.get("customerName")
        ):
            raise ValidationError("Missing required order data.")
        self._require_configuration()

        order_number = str(current_millis())[-6:]
        rows = build_order_rows(order)
        context = {
            "order": order,
            "rows": rows,
            "order_number": order_number,
            "company_name": self.company_name,
        }

        customer_payload: Dict[str, object] = {
            "from": f"{self.company_name} <{self.sender_email}>",
            "to": [str(order.get("customerEmail")).strip()],
            "subject": f"Your Order Confirmation from {self.company_name} (#{order_number})",
            "html": render_template("emails/order_customer.html", **context),
        }
        owner_payload: Dict[str, object] = {
            "from": f"{self.company_name} Website <{self.sender_email}>",
            "to": [self.owner_email],
            "subject": f"New Order Inquiry - {order.get('customerName')} (#{order_number})",
            "html": render_template("emails/order_owner.html", **context),
        }

        outcomes = settle_all(
            [
                ("customer", partial(self._send, customer_payload)),
                ("owner", partial(self._send, owner_payload)),
            ]
        )
        failed = failures(outcomes)
        if failed:
            for outcome in failed:
                self.logger.error("Order email to %s failed: %s", outcome.label, outcome.error)
            raise EmailDeliveryFailed("Order confirmation emails could not be sent.")

        self.logger.info("Order confirmation mail sent successfully (#%s).", order_number)

    def send_inquiry(
        self,
        inquiry: Mapping,
        attachments: Sequence[Tuple[str, bytes]] = (),
    ) -> None:
        missing = [name for name in INQUIRY_REQUIRED_FIELDS if not str(inquiry.get(name) or "").strip()]
        if missing:
            raise ValidationError(
                "Missing required inquiry data (name, email, category, message).",
                {name: "This field is required." for name in missing},
            )
        self._require_configuration()

        payload: Dict[str, object] = {
            "from": f"{self.company_name} Inquiry <{self.sender_email}>",
            "to": [self.owner_email],
            "subject": f"New Inquiry: {inquiry.get('contact-category')} - {inquiry.get('contact-name')}",
            "html": render_template(
                "emails/inquiry.html",
                inquiry=inquiry,
                attachment_count=len(attachments),
                company_name=self.company_name,
            ),
        }
        if attachments:
            payload["attachments"] = [
                {"filename": filename, "content": list(data)} for filename, data in attachments
            ]

        try:
            self._send(payload)
        except EmailDeliveryFailed:
            raise
        except Exception as exc:
            self.logger.error("Inquiry email failed: %s", exc)
            raise EmailDeliveryFailed("Inquiry email could not be sent.") from exc

        self.logger.info("Inquiry email sent successfully to owner.")
