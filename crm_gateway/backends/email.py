"""SendGrid email backend: templated appointment mail and free-form messages."""

import html
import logging
from typing import Optional

import httpx
from pydantic import Field

from ..models import InvocationResult
from .base import BackendAdapter, ToolInput, capability
from .http import make_api_request

logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"
SERVICE_NAME = "SendGrid"


class AppointmentEmailInput(ToolInput):
    to: str = Field(..., description="Recipient email address", min_length=1)
    customer_name: str = Field(..., alias="customerName", description="Customer name", min_length=1)
    appointment_date: str = Field(..., alias="appointmentDate", description="Appointment date", min_length=1)
    appointment_time: str = Field(..., alias="appointmentTime", description="Appointment time", min_length=1)
    scheduling_link: Optional[str] = Field(
        default=None,
        alias="schedulingLink",
        description="Link the customer can use to manage the appointment (optional)",
    )


class CustomEmailInput(ToolInput):
    to: str = Field(..., description="Recipient email address", min_length=1)
    subject: str = Field(..., description="Email subject", min_length=1)
    text: str = Field(..., description="Plain text content", min_length=1)
    html: Optional[str] = Field(default=None, description="HTML content (optional, defaults to the text)")


def render_appointment_email(params: AppointmentEmailInput, lead: str, closing: str):
    """Plain-text and HTML bodies for an appointment email."""
    text = (
        f"Hello {params.customer_name},\n\n"
        f"{lead} {params.appointment_date} at {params.appointment_time}.\n\n"
    )
    if params.scheduling_link:
        text += f"Manage your appointment: {params.scheduling_link}\n\n"
    text += closing

    body = (
        f"<p>Hello {html.escape(params.customer_name)},</p>"
        f"<p>{lead} <strong>{html.escape(params.appointment_date)}</strong>"
        f" at <strong>{html.escape(params.appointment_time)}</strong>.</p>"
    )
    if params.scheduling_link:
        body += f'<p><a href="{html.escape(params.scheduling_link, quote=True)}">Manage your appointment</a></p>'
    body += f"<p>{closing}</p>"
    return text, body


class EmailAdapter(BackendAdapter):
    name = "email"
    title = "SendGrid Email"
    description = "Send appointment confirmations, reminders and custom emails"

    def __init__(
        self,
        api_key: str,
        from_email: str,
        from_name: str = "CRM Support",
        send_url: str = SENDGRID_SEND_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.send_url = send_url
        self._transport = transport

    async def _send(self, to: str, subject: str, text: str, html_body: str) -> None:
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": subject,
            # SendGrid requires text/plain ahead of text/html
            "content": [
                {"type": "text/plain", "value": text},
                {"type": "text/html", "value": html_body},
            ],
        }
        await make_api_request(
            SERVICE_NAME,
            "POST",
            self.send_url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            json_data=payload,
            transport=self._transport,
        )
        logger.info(f"Email '{subject}' sent to {to}")

    @capability(
        "send_appointment_confirmation",
        "Send appointment confirmation email to customer",
        AppointmentEmailInput,
    )
    async def send_appointment_confirmation(self, params: AppointmentEmailInput) -> InvocationResult:
        text, body = render_appointment_email(
            params, "Your appointment has been confirmed for", "Thank you!"
        )
        await self._send(params.to, "Appointment Confirmation", text, body)
        return InvocationResult.of_text(f"Appointment confirmation email sent to {params.to}")

    @capability(
        "send_appointment_reminder",
        "Send appointment reminder email to customer",
        AppointmentEmailInput,
    )
    async def send_appointment_reminder(self, params: AppointmentEmailInput) -> InvocationResult:
        text, body = render_appointment_email(
            params, "This is a reminder that you have an appointment scheduled for", "See you soon!"
        )
        await self._send(params.to, "Appointment Reminder", text, body)
        return InvocationResult.of_text(f"Appointment reminder email sent to {params.to}")

    @capability("send_custom_email", "Send a custom email", CustomEmailInput)
    async def send_custom_email(self, params: CustomEmailInput) -> InvocationResult:
        await self._send(params.to, params.subject, params.text, params.html or params.text)
        return InvocationResult.of_text(f"Email sent to {params.to}")
