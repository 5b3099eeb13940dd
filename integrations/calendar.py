"""
Google Calendar destination — turns a booking-style submission into an event.

Connection ``settings`` keys (all optional):
  date_field, time_field, duration_minutes, timezone,
  title_template, description_template, attendee_email_field,
  send_notifications
"""

from __future__ import annotations

import hashlib
import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel

from config.settings import config
from core.exceptions import DeliveryError, NoData
from integrations.google_api import CALENDAR_API, GoogleApi
from utils.schemas import (
    Connection,
    DeliveryContext,
    DeliveryOutcome,
    DeliveryResult,
    DestinationKind,
)
from utils.templating import interpolate

logger = logging.getLogger(__name__)

DEFAULT_START = time(9, 0)
DEFAULT_TITLE_TEMPLATE = "{{form_title}}"


class EventWindow(BaseModel):
    start: datetime
    end: datetime
    timezone: str


def _parse_date(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, DEFAULT_START)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in ("%m/%d/%Y", "%d.%m.%Y"):
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def _parse_time(value: Any) -> Optional[time]:
    if isinstance(value, time):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return time.fromisoformat(text)
    except ValueError:
        pass
    for fmt in ("%I:%M %p", "%I %p", "%I:%M%p"):
        try:
            return datetime.strptime(text.upper(), fmt).time()
        except ValueError:
            continue
    return None


def _has_clock(raw: Any) -> bool:
    return isinstance(raw, datetime) or (isinstance(raw, str) and ":" in raw)


def extract_event_window(
    payload: Dict[str, Any],
    settings: Optional[Dict[str, Any]] = None,
) -> Optional[EventWindow]:
    """
    Find the event start in the payload.

    Uses ``settings['date_field']`` / ``settings['time_field']`` when set,
    otherwise the first field whose id contains "date" (resp. "time") and
    parses.  A date without a time starts at 09:00.  Returns None when
    nothing recognisable is present.
    """
    settings = settings or {}
    tz_name = settings.get("timezone") or config.calendar_default_timezone
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r; falling back to UTC", tz_name)
        tz_name, tz = "UTC", ZoneInfo("UTC")

    date_field = settings.get("date_field")
    if date_field:
        candidates = [date_field]
    else:
        candidates = [k for k in payload if "date" in k.lower()]

    start: Optional[datetime] = None
    raw_date: Any = None
    for key in candidates:
        start = _parse_date(payload.get(key))
        if start is not None:
            raw_date = payload.get(key)
            break
    if start is None:
        return None

    if not _has_clock(raw_date):
        time_field = settings.get("time_field")
        time_candidates = [time_field] if time_field else [
            k for k in payload if "time" in k.lower() and "date" not in k.lower()
        ]
        clock = next(
            (t for t in (_parse_time(payload.get(k)) for k in time_candidates) if t is not None),
            DEFAULT_START,
        )
        start = datetime.combine(start.date(), clock)

    if start.tzinfo is None:
        start = start.replace(tzinfo=tz)

    duration = int(settings.get("duration_minutes") or config.calendar_default_duration_minutes)
    return EventWindow(start=start, end=start + timedelta(minutes=duration), timezone=tz_name)


def event_id_for(submission_id: str) -> str:
    """Deterministic event id (base32hex alphabet) so a retried insert conflicts instead of duplicating."""
    return "fs" + hashlib.sha1(submission_id.encode()).hexdigest()


class CalendarClient:
    destination = DestinationKind.CALENDAR

    def __init__(self, api: GoogleApi):
        self._api = api

    async def create_event(
        self,
        connection: Connection,
        title: str,
        when: Optional[EventWindow],
        *,
        description: str = "",
        attendees: Optional[List[str]] = None,
        event_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Insert an event into the connection's calendar.

        Raises ``NoData`` without any API call when ``when`` is None.
        """
        if when is None:
            raise NoData("Submission has no recognisable date/time field")

        body: Dict[str, Any] = {
            "summary": title,
            "description": description,
            "start": {"dateTime": when.start.isoformat(), "timeZone": when.timezone},
            "end": {"dateTime": when.end.isoformat(), "timeZone": when.timezone},
        }
        if attendees:
            body["attendees"] = [{"email": a} for a in attendees]
        if event_id:
            body["id"] = event_id

        send_updates = "all" if connection.settings.get("send_notifications") else "none"
        url = f"{CALENDAR_API}/calendars/{quote(connection.external_id, safe='')}/events"
        credential = await self._api.refresher.acquire(
            connection.owner_user_id, self.destination.credential_provider
        )

        async with self._api.client() as client:
            session = self._api.session(credential, client)

            async def attempt(_number: int) -> Dict[str, Any]:
                try:
                    return await session.json("POST", url, params={"sendUpdates": send_updates}, json=body)
                except DeliveryError as exc:
                    if exc.status_code == 409 and event_id:
                        # An earlier attempt created it.
                        return {"id": event_id, "duplicate": True}
                    raise

            result = await self._api.with_retry(attempt, label=f"calendar insert {connection.external_id}")

        out = dict(result.value)
        out["attempts"] = result.attempts
        return out

    async def list_calendars(self, owner_user_id: str) -> List[Dict[str, Any]]:
        """Calendars the owner can write to, for picking a connection target."""
        credential = await self._api.refresher.acquire(owner_user_id, self.destination.credential_provider)
        async with self._api.client() as client:
            session = self._api.session(credential, client)
            result = await self._api.with_retry(
                lambda _n: session.json(
                    "GET", f"{CALENDAR_API}/users/me/calendarList", params={"minAccessRole": "writer"}
                ),
                label="calendar list",
            )
        return [
            {
                "id": item["id"],
                "name": item.get("summaryOverride") or item.get("summary") or item["id"],
                "primary": bool(item.get("primary")),
                "time_zone": item.get("timeZone"),
            }
            for item in result.value.get("items", [])
        ]

    async def deliver(self, ctx: DeliveryContext) -> DeliveryOutcome:
        connection = ctx.connection
        settings = connection.settings
        payload = ctx.submission.payload

        when = extract_event_window(payload, settings)
        title = interpolate(settings.get("title_template") or DEFAULT_TITLE_TEMPLATE, ctx.form.title, payload)
        description = interpolate(settings.get("description_template") or "", ctx.form.title, payload)

        attendees: List[str] = []
        attendee_field = settings.get("attendee_email_field")
        if attendee_field and isinstance(payload.get(attendee_field), str) and "@" in payload[attendee_field]:
            attendees.append(payload[attendee_field])

        event = await self.create_event(
            connection,
            title,
            when,
            description=description,
            attendees=attendees,
            event_id=event_id_for(ctx.submission.id),
        )
        return DeliveryOutcome(
            submission_id=ctx.submission.id,
            destination=self.destination,
            result=DeliveryResult.DELIVERED,
            detail=f"Event '{title}' at {when.start.isoformat()}",
            attempts=event["attempts"],
            external_ref=event.get("id"),
            links=[{"label": "event", "url": event["htmlLink"]}] if event.get("htmlLink") else [],
        )
