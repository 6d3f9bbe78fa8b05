from __future__ import annotations

import re
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any

import caldav
from caldav.lib.error import NotFoundError
from icalendar import Alarm as ICAlarm
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent
from icalendar import Todo as ICTodo

from agendasync.errors import AdapterError
from agendasync.models import CalDAVConfig, CalendarInfo, Priority, ProposedItem, SchedulingConfig

PRODID = "-//AgendaSync//Reconciler//EN"
UID_DOMAIN = "agendasync"
MAX_EVENT_TITLE_CHARS = 120
MAX_TASK_TITLE_CHARS = 200
MAX_NOTES_CHARS = 8000

REMINDER_MINUTES = {
    Priority.HIGH: (1440, 120, 30),
    Priority.MEDIUM: (180, 30),
    Priority.LOW: (30,),
}


def _normalize_calendar_id(value: str) -> str:
    return str(value or "").strip().rstrip("/")


def _normalize_calendar_name(value: str) -> str:
    collapsed = re.sub(r"\s+", " ", str(value or "").strip())
    return collapsed.casefold()


def _new_uid() -> str:
    return f"{uuid.uuid4().hex}@{UID_DOMAIN}"


def _ical_value(value: date | datetime) -> date | datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return value


def event_window(item: ProposedItem, default_duration_minutes: int) -> tuple[date | datetime, date | datetime]:
    """DTSTART/DTEND values for an event item; the caller guarantees a start."""
    start = item.start
    if start is None:
        raise ValueError("event item has no start")
    if item.all_day:
        start_day = start.date()
        end_day = item.end.date() if item.end is not None else start_day
        if end_day <= start_day:
            end_day = start_day + timedelta(days=1)
        return start_day, end_day
    duration = timedelta(minutes=max(1, int(default_duration_minutes)))
    end = item.end if item.end is not None and item.end > start else start + duration
    return start, end


NOTES_SEPARATOR = "-" * 11


def build_notes(item: ProposedItem) -> str:
    """DESCRIPTION text: body, then the planner memo, then the source record."""
    sections = [item.body.strip()]
    if item.memo:
        sections.append(f"Memo:\n{item.memo.strip()}")
    if item.provenance:
        sections.append(f"{NOTES_SEPARATOR}\n{item.provenance}")
    return "\n\n".join(section for section in sections if section)[:MAX_NOTES_CHARS]


class CalDAVService:
    def __init__(self, config: CalDAVConfig) -> None:
        self.config = config
        self._client: Any = None
        self._principal: Any = None
        self._calendar_cache: dict[str, Any] = {}

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.is_configured():
            raise RuntimeError("CalDAV config is incomplete.")
        self._client = caldav.DAVClient(
            url=self.config.base_url,
            username=self.config.username,
            password=self.config.password,
        )
        self._principal = self._client.principal()

    def list_calendars(self) -> list[CalendarInfo]:
        self._connect()
        self._calendar_cache = {}
        calendars: list[CalendarInfo] = []
        for calendar in self._principal.calendars():
            calendar_id = str(calendar.url)
            name = getattr(calendar, "name", "") or calendar_id
            self._calendar_cache[calendar_id] = calendar
            calendars.append(CalendarInfo(calendar_id=calendar_id, name=name, url=calendar_id))
        return calendars

    def get_calendar(self, calendar_id: str) -> Any:
        self._connect()
        if calendar_id in self._calendar_cache:
            return self._calendar_cache[calendar_id]
        for calendar in self._principal.calendars():
            cid = str(calendar.url)
            self._calendar_cache[cid] = calendar
        if calendar_id not in self._calendar_cache:
            raise RuntimeError(f"Calendar not found: {calendar_id}")
        return self._calendar_cache[calendar_id]

    def ensure_calendar(self, calendar_id: str, name: str, component: str = "VEVENT") -> CalendarInfo:
        """Find a collection by id, then by name, creating it if neither matches."""
        calendars = self.list_calendars()
        calendar_id_norm = _normalize_calendar_id(calendar_id)
        if calendar_id_norm:
            for info in calendars:
                if _normalize_calendar_id(info.calendar_id) == calendar_id_norm:
                    return info
        name_norm = _normalize_calendar_name(name)
        if name_norm:
            same_name = [info for info in calendars if _normalize_calendar_name(info.name) == name_norm]
            if same_name:
                same_name.sort(key=lambda item: item.calendar_id)
                return same_name[0]

        calendar = self._principal.make_calendar(name=name, supported_calendar_component_set=[component])
        created_id = str(calendar.url)
        self._calendar_cache[created_id] = calendar
        return CalendarInfo(
            calendar_id=created_id,
            name=getattr(calendar, "name", name) or name,
            url=created_id,
        )

    def find_resource(self, calendar: Any, uid: str, component: str = "VEVENT") -> Any:
        if not uid:
            return None
        lookup = calendar.todo_by_uid if component == "VTODO" else calendar.event_by_uid
        try:
            resource = lookup(uid)
        except NotFoundError:
            return None
        if isinstance(resource, list):
            resource = resource[0] if resource else None
        return resource


class _CalDAVAdapter:
    component = "VEVENT"

    def __init__(self, service: CalDAVService, calendar_id: str, scheduling: SchedulingConfig) -> None:
        self.service = service
        self.calendar_id = calendar_id
        self.scheduling = scheduling

    def _build_component(self, uid: str, item: ProposedItem) -> Any:
        raise NotImplementedError

    def _save(self, calendar: Any, raw_ical: str) -> Any:
        raise NotImplementedError

    def _to_ical(self, uid: str, item: ProposedItem) -> str:
        calendar_obj = ICalendar()
        calendar_obj.add("PRODID", PRODID)
        calendar_obj.add("VERSION", "2.0")
        calendar_obj.add_component(self._build_component(uid, item))
        return calendar_obj.to_ical().decode("utf-8")

    def create(self, item: ProposedItem) -> str:
        uid = _new_uid()
        try:
            calendar = self.service.get_calendar(self.calendar_id)
            self._save(calendar, self._to_ical(uid, item))
        except Exception as exc:
            raise AdapterError(f"create {self.component} failed: {type(exc).__name__}: {exc}") from exc
        return uid

    def update(self, ref: str, item: ProposedItem) -> bool:
        try:
            calendar = self.service.get_calendar(self.calendar_id)
            resource = self.service.find_resource(calendar, ref, self.component)
            if resource is None:
                return False
            resource.data = self._to_ical(ref, item)
            resource.save()
        except Exception as exc:
            raise AdapterError(f"update {self.component} {ref} failed: {type(exc).__name__}: {exc}") from exc
        return True

    def delete(self, ref: str) -> bool:
        try:
            calendar = self.service.get_calendar(self.calendar_id)
            resource = self.service.find_resource(calendar, ref, self.component)
            if resource is None:
                return False
            resource.delete()
        except Exception as exc:
            raise AdapterError(f"delete {self.component} {ref} failed: {type(exc).__name__}: {exc}") from exc
        return True


class CalendarAdapter(_CalDAVAdapter):
    """Scheduled events as VEVENTs in one CalDAV calendar."""

    component = "VEVENT"

    def _build_component(self, uid: str, item: ProposedItem) -> ICEvent:
        start, end = event_window(item, self.scheduling.default_event_duration_minutes)
        prefix = self.scheduling.calendar_title_prefix
        title = f"{prefix} {item.title}" if prefix else item.title
        vevent = ICEvent()
        vevent.add("UID", uid)
        vevent.add("SUMMARY", title[:MAX_EVENT_TITLE_CHARS])
        vevent.add("DESCRIPTION", build_notes(item))
        if item.location:
            vevent.add("LOCATION", item.location)
        vevent.add("DTSTART", _ical_value(start))
        vevent.add("DTEND", _ical_value(end))
        if self.scheduling.add_reminders:
            for minutes in REMINDER_MINUTES.get(item.priority, REMINDER_MINUTES[Priority.MEDIUM]):
                alarm = ICAlarm()
                alarm.add("ACTION", "DISPLAY")
                alarm.add("DESCRIPTION", title[:MAX_EVENT_TITLE_CHARS])
                alarm.add("TRIGGER", timedelta(minutes=-minutes))
                vevent.add_component(alarm)
        return vevent

    def _save(self, calendar: Any, raw_ical: str) -> Any:
        return calendar.save_event(raw_ical)


class TaskAdapter(_CalDAVAdapter):
    """Deadline tasks as VTODOs in one CalDAV task list."""

    component = "VTODO"

    def _build_component(self, uid: str, item: ProposedItem) -> ICTodo:
        vtodo = ICTodo()
        vtodo.add("UID", uid)
        vtodo.add("SUMMARY", item.title[:MAX_TASK_TITLE_CHARS])
        vtodo.add("DESCRIPTION", build_notes(item))
        vtodo.add("STATUS", "NEEDS-ACTION")
        if item.location:
            vtodo.add("LOCATION", item.location)
        due = item.deadline or item.start
        if due is not None:
            vtodo.add("DUE", _ical_value(due))
        return vtodo

    def _save(self, calendar: Any, raw_ical: str) -> Any:
        return calendar.save_todo(raw_ical)

