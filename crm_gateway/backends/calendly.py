"""
Calendly scheduling backend
===========================
Appointment types, booking links and booked events via the Calendly v2
REST API (bearer token).
"""

import logging
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Literal, Optional
from urllib.parse import urlencode

import httpx
from pydantic import Field

from ..errors import UpstreamError, ValidationError
from ..models import InvocationResult
from .base import BackendAdapter, ToolInput, capability
from .http import make_api_request

logger = logging.getLogger(__name__)

CALENDLY_BASE_URL = "https://api.calendly.com"
SERVICE_NAME = "Calendly"


def resource_id(uri: str) -> str:
    """Last path segment of a Calendly resource URI (or a bare id)."""
    return uri.rstrip("/").split("/")[-1]


def summarize_event_type(event_type: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "uri": event_type.get("uri"),
        "name": event_type.get("name"),
        "slug": event_type.get("slug"),
        "scheduling_url": event_type.get("scheduling_url"),
        "duration": event_type.get("duration"),
        "active": event_type.get("active"),
        "description": event_type.get("description_plain"),
        "kind": event_type.get("kind"),
    }


def summarize_invitee(invitee: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "uri": invitee.get("uri"),
        "email": invitee.get("email"),
        "name": invitee.get("name"),
        "status": invitee.get("status"),
        "questions_and_answers": invitee.get("questions_and_answers"),
        "timezone": invitee.get("timezone"),
        "created_at": invitee.get("created_at"),
    }


def day_window(preferred_date: str) -> tuple:
    try:
        day = date.fromisoformat(preferred_date[:10])
    except ValueError:
        raise ValidationError("preferredDate must be an ISO 8601 date (YYYY-MM-DD)") from None
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    end = datetime.combine(day, time(23, 59, 59), tzinfo=timezone.utc)
    return start.isoformat().replace("+00:00", "Z"), end.isoformat().replace("+00:00", "Z")


# ============================================================================
# ARGUMENT MODELS
# ============================================================================

class EventTypeInput(ToolInput):
    event_type_uri: str = Field(..., alias="eventTypeUri", description="The Calendly event type URI", min_length=1)


class CreateEventInput(ToolInput):
    event_type_uri: str = Field(..., alias="eventTypeUri", description="Event type URI", min_length=1)
    customer_name: str = Field(..., alias="customerName", description="Customer name", min_length=1)
    customer_email: str = Field(..., alias="customerEmail", description="Customer email", min_length=1)
    customer_phone: Optional[str] = Field(default=None, alias="customerPhone", description="Phone number (optional)")
    preferred_date: Optional[str] = Field(default=None, alias="preferredDate", description="ISO date (optional)")
    notes: Optional[str] = Field(default=None, description="Booking notes (optional)")


class AvailabilityInput(ToolInput):
    event_type_uri: str = Field(..., alias="eventTypeUri", description="The Calendly event type URI", min_length=1)
    start_time: str = Field(..., alias="startTime", description="Window start (ISO 8601, must be in the future)", min_length=1)
    end_time: str = Field(..., alias="endTime", description="Window end (ISO 8601, at most 7 days after start)", min_length=1)


class ScheduledEventsInput(ToolInput):
    min_start_time: Optional[str] = Field(default=None, alias="minStartTime", description="Minimum start time (ISO 8601 format)")
    max_start_time: Optional[str] = Field(default=None, alias="maxStartTime", description="Maximum start time (ISO 8601 format)")
    status: Optional[Literal["active", "canceled"]] = Field(default=None, description="Filter by event status")


class InviteeInput(ToolInput):
    invitee_uri: str = Field(
        ...,
        alias="inviteeUri",
        description="The Calendly invitee URI, or a scheduled event URI to list all of its invitees",
        min_length=1,
    )


class CancelEventInput(ToolInput):
    event_uri: str = Field(..., alias="eventUri", description="The Calendly event URI", min_length=1)
    reason: Optional[str] = Field(default=None, description="Reason for cancellation (optional)")


# ============================================================================
# ADAPTER
# ============================================================================

class CalendlyAdapter(BackendAdapter):
    name = "calendly"
    title = "Calendly Appointments"
    description = "Schedule and manage appointments through Calendly"

    def __init__(
        self,
        api_token: str,
        organization_uri: str,
        base_url: str = CALENDLY_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_token = api_token
        self.organization_uri = organization_uri
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    async def _request(self, method: str, path: str, params: Optional[Dict] = None, json_data: Optional[Dict] = None) -> Any:
        headers = {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }
        return await make_api_request(
            SERVICE_NAME,
            method,
            f"{self.base_url}{path}",
            headers=headers,
            json_data=json_data,
            params=params,
            transport=self._transport,
        )

    async def _event_type(self, event_type_uri: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/event_types/{resource_id(event_type_uri)}")
        return data.get("resource", {})

    @capability("list_event_types", "List all available Calendly event types (appointment types)")
    async def list_event_types(self, params: ToolInput) -> InvocationResult:
        data = await self._request("GET", "/event_types", params={"organization": self.organization_uri})
        event_types = [summarize_event_type(item) for item in data.get("collection", [])]
        return InvocationResult.of_data({"count": len(event_types), "event_types": event_types})

    @capability("get_event_type", "Get detailed information about a specific event type", EventTypeInput)
    async def get_event_type(self, params: EventTypeInput) -> InvocationResult:
        event_type = await self._event_type(params.event_type_uri)
        details = summarize_event_type(event_type)
        details["color"] = event_type.get("color")
        return InvocationResult.of_data(details)

    @capability(
        "get_scheduling_link",
        "Get a scheduling link for a specific event type that can be shared with customers",
        EventTypeInput,
    )
    async def get_scheduling_link(self, params: EventTypeInput) -> InvocationResult:
        event_type = await self._event_type(params.event_type_uri)
        return InvocationResult.of_text(
            f"Scheduling link: {event_type.get('scheduling_url')}\n\n"
            f"Share this link with customers to book appointments for: {event_type.get('name')}"
        )

    @capability(
        "create_event",
        "Create appointment booking workflow with a single-use, pre-filled scheduling link",
        CreateEventInput,
    )
    async def create_event(self, params: CreateEventInput) -> InvocationResult:
        event_type = await self._event_type(params.event_type_uri)

        availability = None
        if params.preferred_date:
            start_time, end_time = day_window(params.preferred_date)
            try:
                data = await self._request(
                    "GET",
                    "/event_type_available_times",
                    params={"event_type": params.event_type_uri, "start_time": start_time, "end_time": end_time},
                )
                slots = data.get("collection", [])
                if slots:
                    availability = {
                        "date": params.preferred_date,
                        "slots_available": len(slots),
                        "first_available_slots": [
                            {
                                "start_time": slot.get("start_time"),
                                "status": slot.get("status"),
                                "invitees_remaining": slot.get("invitees_remaining"),
                            }
                            for slot in slots[:5]
                        ],
                    }
                else:
                    availability = {
                        "date": params.preferred_date,
                        "slots_available": 0,
                        "message": "No availability on preferred date",
                    }
            except UpstreamError as e:
                logger.warning(f"Could not fetch availability: {e}")
                availability = {"date": params.preferred_date, "error": "Could not check availability"}

        # Every call mints a new single-use link; earlier links stay valid.
        link = await self._request(
            "POST",
            "/scheduling_links",
            json_data={
                "max_event_count": 1,
                "owner": params.event_type_uri,
                "owner_type": "EventType",
            },
        )
        booking_url = link.get("resource", {}).get("booking_url", "")

        query = {"name": params.customer_name, "email": params.customer_email}
        if params.customer_phone:
            query["a1"] = params.customer_phone
        if params.notes:
            query["a2"] = params.notes
        prefilled_url = f"{booking_url}?{urlencode(query)}"

        response = {
            "success": True,
            "message": "Appointment booking initiated successfully",
            "booking_url": prefilled_url,
            "booking_url_short": booking_url,
            "expires_after": "1 booking",
            "event_details": {
                "name": event_type.get("name"),
                "duration": f"{event_type.get('duration')} minutes",
                "description": event_type.get("description_plain") or "No description",
                "scheduling_url": event_type.get("scheduling_url"),
            },
            "customer": {
                "name": params.customer_name,
                "email": params.customer_email,
                "phone": params.customer_phone or "Not provided",
                "notes": params.notes or "None",
            },
            "workflow": {
                "current_step": "Link generated",
                "status": "Awaiting customer confirmation",
                "next_steps": [
                    "1. Send booking link to customer via email or SMS",
                    "2. Customer clicks link and views available time slots",
                    "3. Customer selects preferred time",
                    "4. Customer confirms booking",
                    "5. Both parties receive confirmation emails",
                    "6. Event added to calendars",
                ],
            },
            "email_template": (
                f"Hi {params.customer_name},\n\nThank you for choosing our service! "
                f"Please use the link below to schedule your appointment:\n\n{prefilled_url}\n\n"
                "You can select a time that works best for you from the available slots.\n\n"
                "Best regards,\nThe Team"
            ),
            "sms_template": f"Hi {params.customer_name}, schedule your appointment here: {prefilled_url}",
        }
        if availability is not None:
            response["availability"] = availability
        return InvocationResult.of_data(response)

    @capability(
        "check_availability",
        "Check open booking slots for an event type within a time window",
        AvailabilityInput,
    )
    async def check_availability(self, params: AvailabilityInput) -> InvocationResult:
        data = await self._request(
            "GET",
            "/event_type_available_times",
            params={"event_type": params.event_type_uri, "start_time": params.start_time, "end_time": params.end_time},
        )
        slots = [
            {
                "start_time": slot.get("start_time"),
                "status": slot.get("status"),
                "invitees_remaining": slot.get("invitees_remaining"),
                "scheduling_url": slot.get("scheduling_url"),
            }
            for slot in data.get("collection", [])
        ]
        return InvocationResult.of_data({"count": len(slots), "slots": slots})

    @capability("list_scheduled_events", "List scheduled events within a date range", ScheduledEventsInput)
    async def list_scheduled_events(self, params: ScheduledEventsInput) -> InvocationResult:
        query = {"organization": self.organization_uri}
        if params.min_start_time:
            query["min_start_time"] = params.min_start_time
        if params.max_start_time:
            query["max_start_time"] = params.max_start_time
        if params.status:
            query["status"] = params.status

        data = await self._request("GET", "/scheduled_events", params=query)
        events = [
            {
                "uri": event.get("uri"),
                "name": event.get("name"),
                "status": event.get("status"),
                "start_time": event.get("start_time"),
                "end_time": event.get("end_time"),
                "event_type": event.get("event_type"),
                "location": event.get("location"),
                "invitees_counter": event.get("invitees_counter"),
            }
            for event in data.get("collection", [])
        ]
        return InvocationResult.of_data({"count": len(events), "events": events})

    @capability("get_event_invitee", "Get information about an event invitee", InviteeInput)
    async def get_event_invitee(self, params: InviteeInput) -> InvocationResult:
        parts = params.invitee_uri.rstrip("/").split("/")
        if "invitees" in parts and parts.index("invitees") >= 1 and parts[-1] != "invitees":
            at = parts.index("invitees")
            data = await self._request("GET", f"/scheduled_events/{parts[at - 1]}/invitees/{parts[-1]}")
            return InvocationResult.of_data(summarize_invitee(data.get("resource", {})))

        event_id = parts[-2] if parts[-1] == "invitees" else parts[-1]
        data = await self._request("GET", f"/scheduled_events/{event_id}/invitees")
        invitees = [summarize_invitee(item) for item in data.get("collection", [])]
        return InvocationResult.of_data({"count": len(invitees), "invitees": invitees})

    @capability("cancel_event", "Cancel a scheduled event", CancelEventInput)
    async def cancel_event(self, params: CancelEventInput) -> InvocationResult:
        reason = params.reason or "Cancelled by admin"
        await self._request(
            "POST",
            f"/scheduled_events/{resource_id(params.event_uri)}/cancellation",
            json_data={"reason": reason},
        )
        return InvocationResult.of_text(f"Event {params.event_uri} cancelled successfully. Reason: {reason}")
