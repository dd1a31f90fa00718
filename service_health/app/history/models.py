"""
History, event, status and user records exchanged with the health backend.

Records arrive as wire JSON with an encrypted payload (``encrypted_key`` +
``encrypted_blob``). ``from_json`` only decodes the clear fields; the record
codec decrypts the payload and attaches it as ``blob``. A record whose payload
could not be decrypted keeps ``blob=None``.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, tzinfo
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from shared.logging import get_logger
from .dates import (
    health_datetime_from_string, health_datetime_to_string, midnight_local,
    today_local, tomorrow_local, utc_now
)

logger = get_logger("health.history")

# (localization key, default text) -> display text
Localizer = Callable[[str, str], str]


def default_localizer(key: str, default: str) -> str:
    return default


def _string_value(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _int_value(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    return value if isinstance(value, int) else None


def _bool_value(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


class HistoryType(str, Enum):
    """History entry kinds, valued by their wire names."""
    TEST = "received_test"
    MANUAL_TEST_VERIFIED = "verified_manual_test"
    MANUAL_TEST_NOT_VERIFIED = "unverified_manual_test"
    SYMPTOMS = "symptoms"
    CONTACT_TRACE = "trace"
    ACTION = "action"


def history_type_from_string(value: Any) -> Optional[HistoryType]:
    try:
        return HistoryType(value)
    except ValueError:
        return None


def history_type_to_string(value: Optional[HistoryType]) -> Optional[str]:
    return value.value if value is not None else None


@dataclass(frozen=True)
class Symptom:
    id: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def from_json(cls, json: Any) -> Optional["Symptom"]:
        if not isinstance(json, dict):
            return None
        return cls(id=_string_value(json.get("id")), name=_string_value(json.get("name")))

    def to_json(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name}

    @staticmethod
    def list_from_json(json: Any) -> Optional[List["Symptom"]]:
        if not isinstance(json, list):
            return None
        symptoms = []
        for entry in json:
            symptom = Symptom.from_json(entry)
            if symptom is not None:
                symptoms.append(symptom)
        return symptoms


@dataclass(frozen=True)
class HistoryBlob:
    """Decrypted payload of a history entry; which fields are set depends on the kind."""
    provider: Optional[str] = None
    provider_id: Optional[str] = None
    location: Optional[str] = None
    location_id: Optional[str] = None
    county_id: Optional[str] = None
    test_type: Optional[str] = None
    test_result: Optional[str] = None

    symptoms: Optional[List[Symptom]] = None

    trace_duration: Optional[int] = None
    trace_tek: Optional[str] = None

    action_type: Optional[str] = None
    action_text: Optional[str] = None

    @classmethod
    def from_json(cls, json: Any) -> Optional["HistoryBlob"]:
        if not isinstance(json, dict):
            return None
        return cls(
            provider=_string_value(json.get("provider")),
            provider_id=_string_value(json.get("provider_id")),
            location=_string_value(json.get("location")),
            location_id=_string_value(json.get("location_id")),
            county_id=_string_value(json.get("county_id")),
            test_type=_string_value(json.get("test_type")),
            test_result=_string_value(json.get("result")),
            symptoms=Symptom.list_from_json(json.get("symptoms")),
            trace_duration=_int_value(json.get("trace_duration")),
            trace_tek=_string_value(json.get("trace_tek")),
            action_type=_string_value(json.get("action_type")),
            action_text=_string_value(json.get("action_text")),
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "provider_id": self.provider_id,
            "location": self.location,
            "location_id": self.location_id,
            "county_id": self.county_id,
            "test_type": self.test_type,
            "result": self.test_result,
            "symptoms": [s.to_json() for s in self.symptoms] if self.symptoms is not None else None,
            "trace_duration": self.trace_duration,
            "trace_tek": self.trace_tek,
            "action_type": self.action_type,
            "action_text": self.action_text,
        }

    @property
    def is_test(self) -> bool:
        return any(v is not None for v in (self.provider_id, self.location_id, self.test_type, self.test_result))

    @property
    def is_symptoms(self) -> bool:
        return self.symptoms is not None

    @property
    def is_contact_trace(self) -> bool:
        return self.trace_duration is not None

    @property
    def is_action(self) -> bool:
        return self.action_type is not None

    @property
    def symptoms_ids(self) -> Optional[Set[str]]:
        if self.symptoms is None:
            return None
        return {s.id for s in self.symptoms if s.id is not None}

    @property
    def symptoms_display_string(self) -> str:
        return ", ".join(s.name or "" for s in (self.symptoms or []))

    @property
    def trace_duration_in_minutes(self) -> Optional[int]:
        if self.trace_duration is None:
            return None
        # halves round up: 870000 ms is 15 minutes
        return (self.trace_duration + 30000) // 60000

    @property
    def trace_duration_display_string(self) -> Optional[str]:
        if self.trace_duration is None:
            return None
        seconds = self.trace_duration // 1000
        if seconds < 60:
            return f"{seconds} second" + ("s" if seconds != 1 else "")
        minutes = seconds // 60
        if minutes < 60:
            return f"{minutes} minute" + ("s" if minutes != 1 else "")
        hours = minutes // 60
        return f"{hours} hour" + ("s" if hours != 1 else "")

    @property
    def action_display_string(self) -> Optional[str]:
        return self.action_text or self.action_type


@dataclass(frozen=True)
class HistoryEntry:
    """One entry of a user's health history (Covid19History on the wire)."""
    id: Optional[str] = None
    user_id: Optional[str] = None
    date_utc: Optional[datetime] = None
    type: Optional[HistoryType] = None

    encrypted_key: Optional[str] = None
    encrypted_blob: Optional[str] = None

    location_id: Optional[str] = None
    county_id: Optional[str] = None
    encrypted_image_key: Optional[str] = None
    encrypted_image_blob: Optional[str] = None

    blob: Optional[HistoryBlob] = None

    @classmethod
    def from_json(cls, json: Any) -> Optional["HistoryEntry"]:
        if not isinstance(json, dict):
            return None
        return cls(
            id=_string_value(json.get("id")),
            user_id=_string_value(json.get("user_id")),
            date_utc=health_datetime_from_string(json.get("date")),
            type=history_type_from_string(json.get("type")),
            encrypted_key=_string_value(json.get("encrypted_key")),
            encrypted_blob=_string_value(json.get("encrypted_blob")),
            location_id=_string_value(json.get("location_id")),
            county_id=_string_value(json.get("county_id")),
            encrypted_image_key=_string_value(json.get("encrypted_image_key")),
            encrypted_image_blob=_string_value(json.get("encrypted_image_blob")),
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "date": health_datetime_to_string(self.date_utc),
            "type": history_type_to_string(self.type),
            "encrypted_key": self.encrypted_key,
            "encrypted_blob": self.encrypted_blob,
            "location_id": self.location_id,
            "county_id": self.county_id,
            "encrypted_image_key": self.encrypted_image_key,
            "encrypted_image_blob": self.encrypted_image_blob,
        }

    def with_blob(self, blob: Optional[HistoryBlob]) -> "HistoryEntry":
        return replace(self, blob=blob)

    @property
    def is_test(self) -> bool:
        return self.type in (HistoryType.TEST, HistoryType.MANUAL_TEST_NOT_VERIFIED, HistoryType.MANUAL_TEST_VERIFIED)

    @property
    def is_manual_test(self) -> bool:
        return self.type in (HistoryType.MANUAL_TEST_NOT_VERIFIED, HistoryType.MANUAL_TEST_VERIFIED)

    @property
    def is_test_verified(self) -> bool:
        return self.type in (HistoryType.TEST, HistoryType.MANUAL_TEST_VERIFIED)

    @property
    def can_test_update_status(self) -> bool:
        # Unverified manual tests are recorded but never move the status
        return self.type in (HistoryType.TEST, HistoryType.MANUAL_TEST_VERIFIED)

    @property
    def is_symptoms(self) -> bool:
        return self.type == HistoryType.SYMPTOMS

    @property
    def is_contact_trace(self) -> bool:
        return self.type == HistoryType.CONTACT_TRACE

    @property
    def is_action(self) -> bool:
        return self.type == HistoryType.ACTION

    def date_midnight_local(self, tz: Optional[tzinfo] = None) -> Optional[date]:
        return midnight_local(self.date_utc, tz)

    def match_event(self, event: "Event") -> bool:
        """True when the event has already been ingested as this entry."""
        event_blob = event.blob
        if event.is_test:
            return (self.is_test and
                    self.date_utc == event_blob.date_utc and
                    self._blob_field("provider") == event.provider and
                    self._blob_field("provider_id") == event.provider_id and
                    self._blob_field("test_type") == event_blob.test_type and
                    self._blob_field("test_result") == event_blob.test_result)
        elif event.is_action:
            return (self.is_action and
                    self.date_utc == event_blob.date_utc and
                    self._blob_field("action_type") == event_blob.action_type and
                    self._blob_field("action_text") == event_blob.action_text)
        return False

    def _blob_field(self, name: str) -> Optional[str]:
        return getattr(self.blob, name) if self.blob is not None else None


def sort_newest_first(histories: Sequence[HistoryEntry]) -> List[HistoryEntry]:
    """Stable newest-first order; undated entries go last."""
    dated = [h for h in histories if h.date_utc is not None]
    undated = [h for h in histories if h.date_utc is None]
    return sorted(dated, key=lambda h: h.date_utc, reverse=True) + undated


def most_recent(histories: Optional[Sequence[HistoryEntry]], now: Optional[datetime] = None) -> Optional[HistoryEntry]:
    if histories:
        now = now or utc_now()
        for history in histories:
            if history.date_utc is not None and history.date_utc <= now:
                return history
    return None


def most_recent_test(histories: Optional[Sequence[HistoryEntry]], now: Optional[datetime] = None) -> Optional[HistoryEntry]:
    if histories:
        now = now or utc_now()
        for history in histories:
            if history.is_test_verified and history.date_utc is not None and history.date_utc <= now:
                return history
    return None


def past_list(histories: Optional[Sequence[HistoryEntry]], now: Optional[datetime] = None) -> Optional[List[HistoryEntry]]:
    if histories is None:
        return None
    now = now or utc_now()
    return [h for h in histories if h.date_utc is not None and h.date_utc <= now]


def most_recent_contact_trace(histories: Optional[Sequence[HistoryEntry]],
                              min_date_utc: Optional[datetime] = None,
                              max_date_utc: Optional[datetime] = None) -> Optional[HistoryEntry]:
    """First contact trace strictly inside (min_date_utc, max_date_utc); both bounds optional."""
    for history in histories or []:
        if not history.is_contact_trace:
            continue
        if min_date_utc is not None and (history.date_utc is None or not history.date_utc > min_date_utc):
            continue
        if max_date_utc is not None and (history.date_utc is None or not history.date_utc < max_date_utc):
            continue
        return history
    return None


def trace_in_list(histories: Optional[Sequence[HistoryEntry]], tek: Optional[str]) -> Optional[HistoryEntry]:
    if histories and tek is not None:
        for history in histories:
            if history.type == HistoryType.CONTACT_TRACE and history.blob is not None and history.blob.trace_tek == tek:
                return history
    return None


def list_contains_event(histories: Optional[Sequence[HistoryEntry]], event: Optional["Event"]) -> bool:
    if histories and event is not None:
        return any(history.match_event(event) for history in histories)
    return False


@dataclass(frozen=True)
class EventBlob:
    """Decrypted payload of a provider event; wire keys are capitalized."""
    date_utc: Optional[datetime] = None
    test_type: Optional[str] = None
    test_result: Optional[str] = None
    action_type: Optional[str] = None
    action_text: Optional[str] = None

    @classmethod
    def from_json(cls, json: Any) -> Optional["EventBlob"]:
        if not isinstance(json, dict):
            return None
        return cls(
            date_utc=health_datetime_from_string(_string_value(json.get("Date"))),
            test_type=_string_value(json.get("TestName")),
            test_result=_string_value(json.get("Result")),
            action_type=_string_value(json.get("ActionType")),
            action_text=_string_value(json.get("ActionText")),
        )

    def to_json(self) -> Dict[str, Any]:
        json: Dict[str, Any] = {"Date": health_datetime_to_string(self.date_utc)}
        if self.test_type is not None or self.test_result is not None:
            json["TestName"] = self.test_type
            json["Result"] = self.test_result
        elif self.action_type is not None or self.action_text is not None:
            json["ActionType"] = self.action_type
            json["ActionText"] = self.action_text
        return json

    @property
    def is_test(self) -> bool:
        return bool(self.test_type) and bool(self.test_result)

    @property
    def is_action(self) -> bool:
        return bool(self.action_type)


@dataclass(frozen=True)
class Event:
    """Provider-originated event waiting to be ingested into the history (Covid19Event)."""
    id: Optional[str] = None
    provider: Optional[str] = None
    provider_id: Optional[str] = None
    user_id: Optional[str] = None
    encrypted_key: Optional[str] = None
    encrypted_blob: Optional[str] = None
    processed: Optional[bool] = None
    date_created: Optional[datetime] = None
    date_updated: Optional[datetime] = None

    blob: Optional[EventBlob] = None

    @classmethod
    def from_json(cls, json: Any) -> Optional["Event"]:
        if not isinstance(json, dict):
            return None
        return cls(
            id=_string_value(json.get("id")),
            provider=_string_value(json.get("provider")),
            provider_id=_string_value(json.get("provider_id")),
            user_id=_string_value(json.get("user_id")),
            encrypted_key=_string_value(json.get("encrypted_key")),
            encrypted_blob=_string_value(json.get("encrypted_blob")),
            processed=_bool_value(json.get("processed")),
            date_created=health_datetime_from_string(_string_value(json.get("date_created"))),
            date_updated=health_datetime_from_string(_string_value(json.get("date_updated"))),
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider,
            "provider_id": self.provider_id,
            "user_id": self.user_id,
            "encrypted_key": self.encrypted_key,
            "encrypted_blob": self.encrypted_blob,
            "processed": self.processed,
            "date_created": health_datetime_to_string(self.date_created),
            "date_updated": health_datetime_to_string(self.date_updated),
        }

    def with_blob(self, blob: Optional[EventBlob]) -> "Event":
        return replace(self, blob=blob)

    @property
    def is_test(self) -> bool:
        return self.blob is not None and self.blob.is_test and self.provider_id is not None

    @property
    def is_action(self) -> bool:
        return self.blob is not None and self.blob.is_action


NEXT_STEP_DATE_MACRO = "{next_step_date}"


@dataclass(frozen=True)
class StatusBlob:
    """The status currently announced to the user."""
    health_status: Optional[str] = None
    priority: Optional[int] = None

    next_step: Optional[str] = None
    next_step_html: Optional[str] = None
    next_step_date_utc: Optional[datetime] = None

    event_explanation: Optional[str] = None
    event_explanation_html: Optional[str] = None

    reason: Optional[str] = None
    warning: Optional[str] = None

    history_blob: Optional[HistoryBlob] = None

    @classmethod
    def from_json(cls, json: Any) -> Optional["StatusBlob"]:
        if not isinstance(json, dict):
            return None
        return cls(
            health_status=_string_value(json.get("health_status")),
            priority=_int_value(json.get("priority")),
            next_step=_string_value(json.get("next_step")),
            next_step_html=_string_value(json.get("next_step_html")),
            next_step_date_utc=health_datetime_from_string(json.get("next_step_date")),
            event_explanation=_string_value(json.get("event_explanation")),
            event_explanation_html=_string_value(json.get("event_explanation_html")),
            reason=_string_value(json.get("reason")),
            warning=_string_value(json.get("warning")),
            history_blob=HistoryBlob.from_json(json.get("history_blob")),
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "health_status": self.health_status,
            "priority": self.priority,
            "next_step": self.next_step,
            "next_step_html": self.next_step_html,
            "next_step_date": health_datetime_to_string(self.next_step_date_utc),
            "event_explanation": self.event_explanation,
            "event_explanation_html": self.event_explanation_html,
            "reason": self.reason,
            "warning": self.warning,
            "history_blob": self.history_blob.to_json() if self.history_blob is not None else None,
        }

    def display_next_step_date(self, localizer: Localizer = default_localizer,
                               tz: Optional[tzinfo] = None) -> Optional[str]:
        if self.next_step_date_utc is None:
            return None
        next_step_date = midnight_local(self.next_step_date_utc, tz)
        if next_step_date == today_local(tz):
            return localizer("model.explore.time.today", "Today").lower()
        if next_step_date == tomorrow_local(tz):
            return localizer("model.explore.time.tomorrow", "Tomorrow").lower()
        return f"{next_step_date:%A, %b} {next_step_date.day}"

    def process_macros(self, value: Optional[str], localizer: Localizer = default_localizer,
                       tz: Optional[tzinfo] = None) -> Optional[str]:
        if value is not None and self.next_step_date_utc is not None and NEXT_STEP_DATE_MACRO in value:
            return value.replace(NEXT_STEP_DATE_MACRO, self.display_next_step_date(localizer, tz) or "")
        return value

    def display_next_step(self, localizer: Localizer = default_localizer, tz: Optional[tzinfo] = None) -> Optional[str]:
        return self.process_macros(self.next_step, localizer, tz)

    def display_next_step_html(self, localizer: Localizer = default_localizer, tz: Optional[tzinfo] = None) -> Optional[str]:
        return self.process_macros(self.next_step_html, localizer, tz)

    def display_event_explanation(self, localizer: Localizer = default_localizer, tz: Optional[tzinfo] = None) -> Optional[str]:
        return self.process_macros(self.event_explanation, localizer, tz)

    def display_event_explanation_html(self, localizer: Localizer = default_localizer, tz: Optional[tzinfo] = None) -> Optional[str]:
        return self.process_macros(self.event_explanation_html, localizer, tz)

    def display_reason(self, localizer: Localizer = default_localizer, tz: Optional[tzinfo] = None) -> Optional[str]:
        return self.process_macros(self.reason, localizer, tz)

    def display_warning(self, localizer: Localizer = default_localizer, tz: Optional[tzinfo] = None) -> Optional[str]:
        return self.process_macros(self.warning, localizer, tz)

    @property
    def requires_test(self) -> bool:
        return "test" in (self.next_step or "").lower() or "test" in (self.next_step_html or "").lower()

    def localization_keys(self) -> Dict[str, str]:
        """Keys the presentation layer resolves for the status code."""
        key = (self.health_status or "").lower()
        return {
            "long": f"com.illinois.covid19.status.long.{key}",
            "type": f"com.illinois.covid19.status.type.{key}",
            "description": f"com.illinois.covid19.status.description.{key}",
        }


@dataclass(frozen=True)
class StatusRecord:
    """Encrypted status record as stored by the backend (Covid19Status)."""
    id: Optional[str] = None
    user_id: Optional[str] = None
    date_utc: Optional[datetime] = None
    encrypted_key: Optional[str] = None
    encrypted_blob: Optional[str] = None

    blob: Optional[StatusBlob] = None

    @classmethod
    def from_json(cls, json: Any) -> Optional["StatusRecord"]:
        if not isinstance(json, dict):
            return None
        return cls(
            id=_string_value(json.get("id")),
            user_id=_string_value(json.get("user_id")),
            date_utc=health_datetime_from_string(json.get("date")),
            encrypted_key=_string_value(json.get("encrypted_key")),
            encrypted_blob=_string_value(json.get("encrypted_blob")),
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "date": health_datetime_to_string(self.date_utc),
            "encrypted_key": self.encrypted_key,
            "encrypted_blob": self.encrypted_blob,
        }

    def with_blob(self, blob: Optional[StatusBlob]) -> "StatusRecord":
        return replace(self, blob=blob)


@dataclass(frozen=True)
class UserBlob:
    info: Optional[str] = None

    @classmethod
    def from_json(cls, json: Any) -> Optional["UserBlob"]:
        if not isinstance(json, dict):
            return None
        return cls(info=_string_value(json.get("info")))

    def to_json(self) -> Dict[str, Any]:
        return {"info": self.info}


@dataclass(frozen=True)
class HealthUser:
    """Health profile of a user; the public key is kept as PEM text."""
    uuid: Optional[str] = None
    public_key_pem: Optional[str] = None
    consent: Optional[bool] = None
    exposure_notification: Optional[bool] = None
    repost: Optional[bool] = None
    encrypted_key: Optional[str] = None
    encrypted_blob: Optional[str] = None

    blob: Optional[UserBlob] = field(default=None, compare=False)

    @classmethod
    def from_json(cls, json: Any) -> Optional["HealthUser"]:
        if not isinstance(json, dict):
            return None
        return cls(
            uuid=_string_value(json.get("uuid")),
            public_key_pem=_string_value(json.get("public_key")),
            consent=_bool_value(json.get("consent")),
            exposure_notification=_bool_value(json.get("exposure_notification")),
            repost=_bool_value(json.get("re_post")),
            encrypted_key=_string_value(json.get("encrypted_key")),
            encrypted_blob=_string_value(json.get("encrypted_blob")),
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "uuid": self.uuid,
            "public_key": self.public_key_pem,
            "consent": self.consent,
            "exposure_notification": self.exposure_notification,
            "re_post": self.repost,
            "encrypted_key": self.encrypted_key,
            "encrypted_blob": self.encrypted_blob,
        }
