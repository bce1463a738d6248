"""Transactional email dispatch via Resend with database dedupe keys."""

import asyncio
import html
import logging
from dataclasses import dataclass
from typing import Any, Sequence

import resend
from postgrest.exceptions import APIError as PostgrestAPIError
from supabase import Client

from src.core.config import Settings, get_settings
from src.core.supabase import get_supabase_client, is_unique_violation
from src.models.email_log import EmailKind
from src.services.pricing_service import format_minor_units

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailResult:
    """Outcome of a send attempt.

    ``skipped`` means the dedupe key was already taken, so nothing was sent
    by this call.
    """

    ok: bool
    skipped: bool = False
    error: str | None = None
    provider_id: str | None = None


@dataclass(frozen=True)
class EmailAttachment:
    filename: str
    content: bytes


@dataclass(frozen=True)
class DeliveredLicense:
    product_name: str
    key_code: str


def event_dedupe_key(event_id: str, kind: EmailKind) -> str:
    """Dedupe key for an email triggered by a Stripe event."""
    return f"stripe:{event_id}:{kind}"


def _is_french(locale: str | None) -> bool:
    return (locale or "").lower().startswith("fr")


def _layout(title: str, body: str, accent: str = "#667eea") -> str:
    return f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
    <div style="background: {accent}; padding: 30px; text-align: center; border-radius: 10px 10px 0 0;">
        <h1 style="color: white; margin: 0; font-size: 26px;">{title}</h1>
    </div>
    <div style="background: #f9fafb; padding: 30px; border-radius: 0 0 10px 10px;">
        {body}
    </div>
</body>
</html>
"""


class NotificationService:
    """Sends customer and operator emails exactly once per dedupe key."""

    def __init__(self, client: Client | None = None, settings: Settings | None = None) -> None:
        """Initialize email service with Resend API key."""
        self.client = client or get_supabase_client()
        self.settings = settings or get_settings()
        resend.api_key = self.settings.resend_api_key
        self.from_email = self.settings.email_from_address
        self.reply_to = self.settings.email_reply_to_address
        self.timeout = self.settings.email_timeout_seconds

    async def send(
        self,
        dedupe_key: str,
        kind: EmailKind,
        to: str,
        subject: str,
        html_content: str,
        attachments: Sequence[EmailAttachment] = (),
    ) -> EmailResult:
        """Send an email unless its dedupe key has already been used.

        The email_logs insert is the idempotence gate. A failed provider call
        leaves the row in ``failed`` and later calls with the same key skip.

        Args:
            dedupe_key: Unique key for this logical email.
            kind: Email category.
            to: Recipient address.
            subject: Subject line.
            html_content: HTML body.
            attachments: Optional file attachments.

        Returns:
            EmailResult: ok/skipped/error and the provider message id.
        """
        try:
            response = (
                self.client.table("email_logs")
                .insert(
                    {
                        "dedupe_key": dedupe_key,
                        "kind": kind,
                        "to_email": to,
                        "subject": subject,
                        "status": "pending",
                        "provider": "resend",
                    }
                )
                .execute()
            )
        except PostgrestAPIError as e:
            if is_unique_violation(e):
                logger.info("Email %s skipped (dedupe)", dedupe_key)
                return EmailResult(ok=True, skipped=True)
            logger.error("Email log insert failed for %s: %s", dedupe_key, e.message)
            return EmailResult(ok=False, error=f"email log insert failed: {e.message}")
        except Exception as e:
            logger.error("Email log insert failed for %s: %s", dedupe_key, str(e))
            return EmailResult(ok=False, error=f"email log insert failed: {e}")

        log_id = response.data[0]["id"] if response.data else None

        params: dict[str, Any] = {
            "from": self.from_email,
            "to": [to],
            "reply_to": self.reply_to,
            "subject": subject,
            "html": html_content,
        }
        if attachments:
            params["attachments"] = [
                {"filename": attachment.filename, "content": list(attachment.content)}
                for attachment in attachments
            ]

        try:
            sent = await asyncio.wait_for(asyncio.to_thread(resend.Emails.send, params), timeout=self.timeout)
        except asyncio.TimeoutError:
            self._update_log(log_id, {"status": "failed", "error": "timeout"})
            logger.error("Email %s timed out after %.1fs", dedupe_key, self.timeout)
            return EmailResult(ok=False, error="timeout")
        except Exception as e:
            self._update_log(log_id, {"status": "failed", "error": str(e)[:500]})
            logger.error("Email %s failed: %s", dedupe_key, str(e))
            return EmailResult(ok=False, error=str(e))

        provider_id = sent.get("id") if sent else None
        self._update_log(log_id, {"status": "sent", "provider_id": provider_id})
        logger.info("Email %s sent (%s), id: %s", dedupe_key, kind, provider_id)
        return EmailResult(ok=True, provider_id=provider_id)

    def _update_log(self, log_id: str | None, values: dict[str, Any]) -> None:
        if not log_id:
            return
        try:
            self.client.table("email_logs").update(values).eq("id", log_id).execute()
        except Exception as e:
            logger.warning("Could not update email log %s: %s", log_id, str(e))

    async def send_payment_confirmation(
        self,
        to: str,
        order_reference: str,
        event_id: str,
        locale: str | None,
    ) -> EmailResult:
        """First customer email: payment received, keys follow."""
        reference = html.escape(order_reference)
        if _is_french(locale):
            subject = "Votre paiement est validé - AllKeyMasters"
            body = f"""
        <p style="font-size: 16px;">Bonjour,</p>
        <p style="font-size: 16px;">Nous avons bien reçu votre paiement pour la commande <strong>{reference}</strong>. Merci de votre confiance !</p>
        <p>Vous allez recevoir d'ici quelques instants un second email contenant vos clés d'activation.</p>
        <p style="font-size: 14px; color: #6b7280;">Vos licences sont aussi disponibles dans votre <a href="{self.settings.site_url}/account">espace client</a>.</p>
        <p style="font-size: 12px; color: #9ca3af;">Une question ? Écrivez-nous à {self.reply_to}</p>
"""
            title = "Paiement validé"
        else:
            subject = "Your payment is confirmed - AllKeyMasters"
            body = f"""
        <p style="font-size: 16px;">Hello,</p>
        <p style="font-size: 16px;">We have received your payment for order <strong>{reference}</strong>. Thank you for your trust!</p>
        <p>You will receive a second email in a few moments containing your activation keys.</p>
        <p style="font-size: 14px; color: #6b7280;">Your licenses are also available in your <a href="{self.settings.site_url}/account">account area</a>.</p>
        <p style="font-size: 12px; color: #9ca3af;">Questions? Contact us at {self.reply_to}</p>
"""
            title = "Payment confirmed"

        return await self.send(
            dedupe_key=event_dedupe_key(event_id, "payment_confirmation"),
            kind="payment_confirmation",
            to=to,
            subject=subject,
            html_content=_layout(title, body),
        )

    async def send_license_delivery(
        self,
        to: str,
        order_reference: str,
        event_id: str,
        licenses: Sequence[DeliveredLicense],
        locale: str | None,
        proof_of_purchase: bytes | None = None,
    ) -> EmailResult:
        """Second customer email: every active key of the order in one message."""
        if not licenses:
            return EmailResult(ok=False, error="no licenses to deliver")

        reference = html.escape(order_reference)
        keys_html = "".join(
            f"""
        <div style="background: white; border: 2px solid #3b82f6; border-radius: 8px; padding: 16px; margin: 12px 0;">
            <h3 style="margin: 0 0 8px 0;">{html.escape(lic.product_name)}</h3>
            <div style="background: #f3f4f6; padding: 10px; font-family: monospace; font-size: 16px; font-weight: bold;">{html.escape(lic.key_code)}</div>
        </div>"""
            for lic in licenses
        )

        if _is_french(locale):
            subject = f"Vos licences AllKeyMasters - Commande {order_reference}"
            title = "Vos licences sont prêtes !"
            intro = f"Voici vos clés d'activation pour la commande <strong>{reference}</strong> :"
            proof = (
                "Votre preuve d'achat est jointe à cet email."
                if proof_of_purchase
                else "Votre preuve d'achat est disponible dans votre espace client."
            )
            outro = f"Un problème d'activation ? Notre support répond à {self.reply_to}"
        else:
            subject = f"Your AllKeyMasters licenses - Order {order_reference}"
            title = "Your licenses are ready!"
            intro = f"Here are your activation keys for order <strong>{reference}</strong>:"
            proof = (
                "Your proof of purchase is attached to this email."
                if proof_of_purchase
                else "Your proof of purchase is available in your account area."
            )
            outro = f"Activation issues? Our support team is available at {self.reply_to}"

        body = f"""
        <p style="font-size: 16px;">{intro}</p>
        {keys_html}
        <p style="font-size: 14px; color: #5b21b6;">{proof}</p>
        <p style="font-size: 14px; color: #6b7280;">{outro}</p>
"""
        attachments = (
            [EmailAttachment(filename=f"proof-of-purchase-{order_reference}.pdf", content=proof_of_purchase)]
            if proof_of_purchase
            else []
        )
        return await self.send(
            dedupe_key=event_dedupe_key(event_id, "license_delivery"),
            kind="license_delivery",
            to=to,
            subject=subject,
            html_content=_layout(title, body, accent="#3b82f6"),
            attachments=attachments,
        )

    async def send_admin_sale(
        self,
        order: dict[str, Any],
        items: Sequence[dict[str, Any]],
        event_id: str,
    ) -> EmailResult:
        """Internal sale alert to the store operator."""
        amount = format_minor_units(order.get("total_amount", 0), order.get("currency") or self.settings.store_currency)
        rows = "".join(
            f"<tr><td>{html.escape(item['product_name'])}</td>"
            f"<td style=\"text-align: center;\">{item['quantity']}</td>"
            f"<td style=\"text-align: center;\">{html.escape(str(item.get('delivery_format', '')).upper())}</td></tr>"
            for item in items
        )
        shipping = ""
        if order.get("shipping_address"):
            shipping_lines = [
                order.get("shipping_name"),
                order.get("shipping_address"),
                f"{order.get('shipping_zip', '')} {order.get('shipping_city', '')}".strip(),
                order.get("shipping_country"),
                f"{order.get('shipping_phone_prefix', '')} {order.get('shipping_phone_number', '')}".strip(),
            ]
            shipping = (
                "<h3>Adresse de livraison</h3><p>"
                + "<br>".join(html.escape(line) for line in shipping_lines if line)
                + "</p>"
            )

        body = f"""
        <p><strong>Commande :</strong> {html.escape(order.get('reference', order['id']))}</p>
        <p><strong>Montant :</strong> {amount}</p>
        <p><strong>Client :</strong> {html.escape(order.get('customer_email') or '')}</p>
        <table style="width: 100%; border-collapse: collapse;">
            <thead><tr><th style="text-align: left;">Produit</th><th>Quantité</th><th>Type</th></tr></thead>
            <tbody>{rows}</tbody>
        </table>
        {shipping}
"""
        return await self.send(
            dedupe_key=event_dedupe_key(event_id, "admin_sale"),
            kind="admin_sale",
            to=self.settings.admin_email_address,
            subject=f"Nouvelle vente {amount} - {order.get('reference', order['id'])}",
            html_content=_layout("Nouvelle vente AllKeyMasters", body, accent="#10b981"),
        )
