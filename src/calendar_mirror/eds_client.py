"""
Evolution Data Server implementation of the calendar gateway.

Event identifiers have the form ``<calendar uid>::<event uid>``.  Recurring
series are expanded into one occurrence per instance; every instance shares
the series identifier and carries its own ``occurrence_date``.
"""

import logging
import uuid
from datetime import date
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from datetime import tzinfo

import gi

gi.require_version("EDataServer", "1.2")
gi.require_version("ECal", "2.0")
gi.require_version("ICalGLib", "3.0")
gi.require_version("GLib", "2.0")
from gi.repository import ECal
from gi.repository import EDataServer
from gi.repository import GLib
from gi.repository import ICalGLib

from calendar_mirror.models import AVAILABILITY_BUSY
from calendar_mirror.models import AVAILABILITY_FREE
from calendar_mirror.models import RSVP_ACCEPTED
from calendar_mirror.models import RSVP_DECLINED
from calendar_mirror.models import RSVP_PENDING
from calendar_mirror.models import RSVP_TENTATIVE
from calendar_mirror.models import RSVP_UNKNOWN
from calendar_mirror.models import STATUS_CANCELLED
from calendar_mirror.models import STATUS_CONFIRMED
from calendar_mirror.models import STATUS_NONE
from calendar_mirror.models import STATUS_TENTATIVE
from calendar_mirror.models import Attendee
from calendar_mirror.models import CalendarInfo
from calendar_mirror.models import EventFields
from calendar_mirror.models import EventOccurrence
from calendar_mirror.models import ProviderError

logger = logging.getLogger(__name__)

ID_SEPARATOR = "::"

# E_CAL_CLIENT_ERROR_OBJECT_NOT_FOUND = 1  (from e-cal-client-error-quark)
_EDS_NOT_FOUND_CODE = 1
_EDS_CLIENT_ERROR_DOMAIN = "e-cal-client-error-quark"

# The M365 backend embeds the Exchange error name in the message instead of a code.
_M365_ERROR_DOMAIN = "e-m365-error-quark"
_M365_NOT_FOUND_MSG = "ErrorItemNotFound"

_PARTSTAT = {
    "ACCEPTED": RSVP_ACCEPTED,
    "DECLINED": RSVP_DECLINED,
    "TENTATIVE": RSVP_TENTATIVE,
    "NEEDSACTION": RSVP_PENDING,
    "NEEDS-ACTION": RSVP_PENDING,
}


def is_not_found_error(e: Exception) -> bool:
    """Return True when EDS reports that a calendar object does not exist."""
    if isinstance(e, GLib.Error):
        domain = e.domain or ""
        if e.code == _EDS_NOT_FOUND_CODE and _EDS_CLIENT_ERROR_DOMAIN in domain:
            return True
        if _M365_ERROR_DOMAIN in domain and _M365_NOT_FOUND_MSG in (e.message or ""):
            return True
    return "object not found" in str(e).lower()


def split_identifier(identifier: str) -> tuple[str, str]:
    calendar_uid, sep, event_uid = identifier.partition(ID_SEPARATOR)
    if not sep or not calendar_uid or not event_uid:
        raise ProviderError(f"Malformed event identifier {identifier!r}")
    return calendar_uid, event_uid


def _utc_stamp(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


class EDSCalendarGateway:
    """CalendarGateway backed by the local Evolution Data Server."""

    def __init__(self, tz: tzinfo, account_email: str | None = None, timeout: int = 10):
        self.tz = tz
        self.account_email = (account_email or "").lower()
        self.timeout = timeout
        self._registry: EDataServer.SourceRegistry | None = None
        self._clients: dict[str, ECal.Client] = {}

    # ------------------------------------------------------------------ #
    # Connection helpers                                                  #
    # ------------------------------------------------------------------ #

    @property
    def registry(self) -> EDataServer.SourceRegistry:
        if self._registry is None:
            try:
                self._registry = EDataServer.SourceRegistry.new_sync(None)
            except GLib.Error as e:
                raise ProviderError(f"EDS registry unreachable: {e.message}") from e
        return self._registry

    def _client(self, calendar_uid: str) -> ECal.Client:
        client = self._clients.get(calendar_uid)
        if client is not None:
            return client
        source = self.registry.ref_source(calendar_uid)
        if not source:
            raise ProviderError(f"Calendar with UID '{calendar_uid}' not found in EDS")
        try:
            client = ECal.Client.connect_sync(
                source, ECal.ClientSourceType.EVENTS, self.timeout, None
            )
        except GLib.Error as e:
            raise ProviderError(
                f"Failed to connect to calendar {calendar_uid}: {e.message}"
            ) from e
        self._clients[calendar_uid] = client
        return client

    def _parent_display_name(self, source) -> str:
        parent_uid = source.get_parent()
        if not parent_uid:
            return ""
        parent = self.registry.ref_source(parent_uid)
        if not parent:
            return ""
        return parent.get_display_name() or ""

    # ------------------------------------------------------------------ #
    # CalendarGateway interface                                           #
    # ------------------------------------------------------------------ #

    def has_read_access(self) -> bool:
        try:
            self.registry
        except ProviderError as e:
            logger.error(f"{e}")
            return False
        return True

    def has_write_access(self) -> bool:
        # EDS has no global write permission; per-calendar writability is in resolve_calendar.
        return self.has_read_access()

    def list_calendars(self) -> list[CalendarInfo]:
        calendars = []
        for source in self.registry.list_sources(EDataServer.SOURCE_EXTENSION_CALENDAR):
            if not source.get_enabled():
                continue
            info = self._calendar_info(source)
            if info is not None:
                calendars.append(info)
        calendars.sort(key=lambda c: (c.account, c.title))
        return calendars

    def resolve_calendar(self, calendar_id: str) -> CalendarInfo | None:
        source = self.registry.ref_source(calendar_id)
        if not source:
            return None
        return self._calendar_info(source)

    def _calendar_info(self, source) -> CalendarInfo | None:
        uid = source.get_uid()
        try:
            writable = not self._client(uid).is_readonly()
        except ProviderError as e:
            logger.warning(f"Skipping calendar {uid}: {e}")
            return None
        return CalendarInfo(
            calendar_id=uid,
            title=source.get_display_name() or "Unnamed Calendar",
            writable=writable,
            account=self._parent_display_name(source),
        )

    def list_events(self, calendar_id: str, start: datetime, end: datetime):
        client = self._client(calendar_id)
        occurrences: list[EventOccurrence] = []

        def _collect(icomp, instance_start, instance_end, *_args):
            occurrences.append(
                self._to_occurrence(calendar_id, icomp, instance_start, instance_end)
            )
            return True

        try:
            client.generate_instances_sync(
                int(start.timestamp()), int(end.timestamp()), None, _collect, None
            )
        except GLib.Error as e:
            raise ProviderError(f"Failed to fetch events from {calendar_id}: {e.message}") from e
        logger.debug(f"EDS: {len(occurrences)} occurrence(s) in {calendar_id}")
        return occurrences

    def create_event(self, calendar_id: str, fields: EventFields) -> str:
        client = self._client(calendar_id)
        comp = ICalGLib.Component.new_vevent()
        comp.set_uid(str(uuid.uuid4()))
        self._apply_fields(comp, fields)
        try:
            success, out_uid = client.create_object_sync(comp, ECal.OperationFlags.NONE, None)
        except GLib.Error as e:
            raise ProviderError(f"Failed to create event: {e.message}") from e
        if not success:
            raise ProviderError("Failed to create event")
        return f"{calendar_id}{ID_SEPARATOR}{out_uid or comp.get_uid()}"

    def update_event(self, identifier: str, fields: EventFields) -> str | None:
        calendar_id, event_uid = split_identifier(identifier)
        client = self._client(calendar_id)
        try:
            _, comp = client.get_object_sync(event_uid, None, None)
            if isinstance(comp, str):
                comp = ICalGLib.Component.new_from_string(comp)
            self._apply_fields(comp, fields)
            success = client.modify_object_sync(
                comp, ECal.ObjModType.THIS, ECal.OperationFlags.NONE, None
            )
        except GLib.Error as e:
            raise ProviderError(f"Failed to modify event {identifier}: {e.message}") from e
        if not success:
            raise ProviderError(f"Failed to modify event {identifier}")
        return None

    def delete_event(self, identifier: str) -> None:
        calendar_id, event_uid = split_identifier(identifier)
        client = self._client(calendar_id)
        try:
            client.remove_object_sync(
                event_uid, None, ECal.ObjModType.ALL, ECal.OperationFlags.NONE, None
            )
        except GLib.Error as e:
            if is_not_found_error(e):
                logger.debug(f"Event {identifier} already gone")
                return
            raise ProviderError(f"Failed to remove event {identifier}: {e.message}") from e

    def read_event(self, identifier: str) -> EventOccurrence | None:
        calendar_id, event_uid = split_identifier(identifier)
        client = self._client(calendar_id)
        try:
            success, comp = client.get_object_sync(event_uid, None, None)
        except GLib.Error as e:
            if is_not_found_error(e):
                return None
            raise ProviderError(f"Failed to read event {identifier}: {e.message}") from e
        if not success or not comp:
            return None
        if isinstance(comp, str):
            comp = ICalGLib.Component.new_from_string(comp)
        return self._to_occurrence(calendar_id, comp, comp.get_dtstart(), comp.get_dtend())

    # ------------------------------------------------------------------ #
    # iCal conversion                                                     #
    # ------------------------------------------------------------------ #

    def _to_datetime(self, t: ICalGLib.Time) -> datetime:
        if t.is_date():
            return datetime(t.get_year(), t.get_month(), t.get_day(), tzinfo=self.tz)
        if t.is_utc():
            return datetime.fromtimestamp(t.as_timet(), timezone.utc)
        zone = t.get_timezone()
        if zone is not None:
            return datetime.fromtimestamp(t.as_timet_with_zone(zone), timezone.utc)
        # Floating time: wall clock in the configured zone.
        return datetime(
            t.get_year(),
            t.get_month(),
            t.get_day(),
            t.get_hour(),
            t.get_minute(),
            t.get_second(),
            tzinfo=self.tz,
        )

    def _to_occurrence(self, calendar_id, comp, instance_start, instance_end) -> EventOccurrence:
        start = self._to_datetime(instance_start)
        if instance_end is None or instance_end.is_null_time():
            end = start + (timedelta(days=1) if instance_start.is_date() else timedelta(0))
        else:
            end = self._to_datetime(instance_end)

        is_recurring = bool(
            comp.get_first_property(ICalGLib.PropertyKind.RRULE_PROPERTY)
            or comp.get_first_property(ICalGLib.PropertyKind.RECURRENCEID_PROPERTY)
        )
        occurrence_date = None
        if is_recurring:
            rid = comp.get_recurrenceid()
            occurrence_date = start if rid is None or rid.is_null_time() else self._to_datetime(rid)

        url_prop = comp.get_first_property(ICalGLib.PropertyKind.URL_PROPERTY)
        return EventOccurrence(
            identifier=f"{calendar_id}{ID_SEPARATOR}{comp.get_uid()}",
            calendar_id=calendar_id,
            title=comp.get_summary() or "",
            start=start,
            end=end,
            all_day=instance_start.is_date(),
            location=comp.get_location(),
            notes=comp.get_description(),
            url=url_prop.get_url() if url_prop else None,
            organizer=self._organizer(comp),
            attendees=self._attendees(comp),
            availability=self._availability(comp),
            status=self._status(comp),
            is_recurring=is_recurring,
            occurrence_date=occurrence_date,
        )

    @staticmethod
    def _organizer(comp) -> str | None:
        prop = comp.get_first_property(ICalGLib.PropertyKind.ORGANIZER_PROPERTY)
        if not prop:
            return None
        cn = prop.get_first_parameter(ICalGLib.ParameterKind.CN_PARAMETER)
        if cn and cn.get_cn():
            return cn.get_cn()
        return (prop.get_organizer() or "").removeprefix("mailto:").removeprefix("MAILTO:")

    def _attendees(self, comp) -> list[Attendee]:
        attendees = []
        prop = comp.get_first_property(ICalGLib.PropertyKind.ATTENDEE_PROPERTY)
        while prop:
            email = (prop.get_attendee() or "").removeprefix("mailto:").removeprefix("MAILTO:")
            cn = prop.get_first_parameter(ICalGLib.ParameterKind.CN_PARAMETER)
            partstat = prop.get_first_parameter(ICalGLib.ParameterKind.PARTSTAT_PARAMETER)
            rsvp = RSVP_UNKNOWN
            if partstat:
                raw = (partstat.as_ical_string() or "").split("=")[-1].strip().upper()
                rsvp = _PARTSTAT.get(raw, RSVP_UNKNOWN)
            attendees.append(
                Attendee(
                    name=cn.get_cn() if cn else "",
                    email=email,
                    rsvp=rsvp,
                    is_current_user=bool(self.account_email)
                    and email.lower() == self.account_email,
                )
            )
            prop = comp.get_next_property(ICalGLib.PropertyKind.ATTENDEE_PROPERTY)
        return attendees

    @staticmethod
    def _availability(comp) -> str:
        prop = comp.get_first_property(ICalGLib.PropertyKind.TRANSP_PROPERTY)
        if not prop:
            return AVAILABILITY_BUSY  # iCal default is OPAQUE
        val = (prop.get_value_as_string() or "").strip().upper()
        return AVAILABILITY_FREE if val == "TRANSPARENT" else AVAILABILITY_BUSY

    @staticmethod
    def _status(comp) -> str:
        prop = comp.get_first_property(ICalGLib.PropertyKind.STATUS_PROPERTY)
        if not prop:
            return STATUS_NONE
        val = (prop.get_value_as_string() or "").strip().upper()
        return {
            "CONFIRMED": STATUS_CONFIRMED,
            "TENTATIVE": STATUS_TENTATIVE,
            "CANCELLED": STATUS_CANCELLED,
        }.get(val, STATUS_NONE)

    @staticmethod
    def _remove_all(comp, kind):
        prop = comp.get_first_property(kind)
        while prop:
            comp.remove_property(prop)
            prop = comp.get_first_property(kind)

    def _ical_time(self, dt: datetime, all_day: bool) -> ICalGLib.Time:
        if all_day:
            day: date = dt.astimezone(self.tz).date() if dt.tzinfo else dt.date()
            return ICalGLib.Time.new_from_string(day.strftime("%Y%m%d"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return ICalGLib.Time.new_from_string(_utc_stamp(dt))

    def _apply_fields(self, comp, fields: EventFields):
        comp.set_summary(fields.title)
        comp.set_dtstart(self._ical_time(fields.start, fields.all_day))
        comp.set_dtend(self._ical_time(fields.end, fields.all_day))

        for kind in (
            ICalGLib.PropertyKind.LOCATION_PROPERTY,
            ICalGLib.PropertyKind.DESCRIPTION_PROPERTY,
            ICalGLib.PropertyKind.URL_PROPERTY,
            ICalGLib.PropertyKind.TRANSP_PROPERTY,
        ):
            self._remove_all(comp, kind)
        if fields.location:
            comp.set_location(fields.location)
        if fields.notes:
            comp.set_description(fields.notes)
        if fields.url:
            comp.add_property(ICalGLib.Property.new_url(fields.url))
        transp = (
            ICalGLib.PropertyTransp.TRANSPARENT
            if fields.availability == AVAILABILITY_FREE
            else ICalGLib.PropertyTransp.OPAQUE
        )
        comp.add_property(ICalGLib.Property.new_transp(transp))
