import pytest

from backend.emails import EmailSender, build_order_rows
from backend.errors import EmailDeliveryFailed, EmailServiceUnavailable, ValidationError

ORDER = {
    "customerName": "Dr. Rao",
    "customerEmail": "rao@clinic.test",
    "orderItems": [
        {
            "baseProductName": "Wire Pin",
            "variants": [
                {"dimension": "2mm", "quantity": 3, "basePrice": 10, "gstRate": 0.12},
                {"dimension": "3mm", "quantity": "2", "basePrice": "12.5", "gstRate": 0.12},
            ],
        }
    ],
}


@pytest.fixture
def sent(monkeypatch):
    payloads = []

    def fake_send(payload):
        payloads.append(payload)
        return {"id": f"email-{len(payloads)}"}

    monkeypatch.setattr("backend.emails.resend.Emails.send", fake_send)
    return payloads


def test_order_rows_compute_gst_inclusive_subtotals():
    rows = build_order_rows(ORDER)

    assert [row["dimension"] for row in rows] == ["2mm", "3mm"]
    assert rows[0]["price_inc_gst"] == pytest.approx(11.2)
    assert rows[0]["subtotal"] == pytest.approx(33.6)
    assert rows[1]["quantity"] == 2
    assert rows[1]["gst_percent"] == pytest.approx(12)


def test_order_rows_skip_malformed_groups():
    assert build_order_rows({"orderItems": ["junk", {"variants": ["junk"]}]}) == []


def test_order_confirmation_sends_customer_and_owner_mail(app, email_sender, sent):
    with app.app_context():
        email_sender.send_order_confirmation(ORDER)

    recipients = sorted(payload["to"][0] for payload in sent)
    assert recipients == ["owner@gammaortho.test", "rao@clinic.test"]
    assert all("Wire Pin" in payload["html"] for payload in sent)


def test_order_confirmation_requires_customer_details(app, email_sender, sent):
    with app.app_context(), pytest.raises(ValidationError):
        email_sender.send_order_confirmation({"customerName": "Dr. Rao"})

    assert sent == []


def test_unconfigured_sender_refuses_to_send(app):
    sender = EmailSender(None, None, None)

    with app.app_context(), pytest.raises(EmailServiceUnavailable):
        sender.send_order_confirmation(ORDER)


def test_provider_failure_is_reported(app, email_sender, monkeypatch):
    def fake_send(payload):
        raise RuntimeError("provider down")

    monkeypatch.setattr("backend.emails.resend.Emails.send", fake_send)

    with app.app_context(), pytest.raises(EmailDeliveryFailed):
        email_sender.send_order_confirmation(ORDER)


def test_inquiry_attaches_files(app, email_sender, sent):
    inquiry = {
        "contact-name": "Dr. Rao",
        "contact-email": "rao@clinic.test",
        "contact-category": "Bulk order",
        "contact-message": "Please quote 100 pins.",
    }

    with app.app_context():
        email_sender.send_inquiry(inquiry, [("spec.pdf", b"%PDF")])

    assert len(sent) == 1
    assert sent[0]["to"] == ["owner@gammaortho.test"]
    assert sent[0]["attachments"] == [{"filename": "spec.pdf", "content": list(b"%PDF")}]
    assert "Bulk order" in sent[0]["subject"]


def test_inquiry_requires_contact_fields(app, email_sender, sent):
    with app.app_context(), pytest.raises(ValidationError) as excinfo:
        email_sender.send_inquiry({"contact-name": "Dr. Rao"})

    assert "contact-email" in excinfo.value.errors
    assert sent == []
