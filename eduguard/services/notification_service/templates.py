"""Guardian message templates.

Templates exist per language with an SMS body, an email subject and an
email body. Placeholders are ``{name}``. Rendering is strict: a
placeholder without a value is an error, never literal text in a
message sent to a parent.

Missing languages fall back to English, then to any language the
template has, and the fallback is logged.
"""
import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from .exceptions import TemplateNotFoundError, TemplateRenderError
from .models import Channel

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "EN"

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


@dataclass(frozen=True)
class TemplateEntry:
    sms: str
    email_subject: str
    email_body: str


@dataclass(frozen=True)
class RenderedTemplate:
    content: str
    subject: Optional[str]
    language: str
    fallback_used: bool = False


BUILTIN_TEMPLATES: Dict[str, Dict[str, TemplateEntry]] = {
    "absenceAlert": {
        "EN": TemplateEntry(
            sms=(
                "Dear {guardianName}, {studentName} was absent from {schoolName} on {date}. "
                "Please contact us if this continues. {contactInfo}"
            ),
            email_subject="Absence Alert for {studentName}",
            email_body=(
                "Dear {guardianName},\n\n"
                "We noticed that {studentName} was absent from {schoolName} on {date}.\n\n"
                "If there are any concerns, please contact us.\n\n"
                "Best regards,\n{schoolName}"
            ),
        ),
        "RW": TemplateEntry(
            sms=(
                "Ndabagira {guardianName}, {studentName} ntiyaje ku ishuri {schoolName} "
                "ku itariki {date}. Tuhamagare niba ibi bikomeje. {contactInfo}"
            ),
            email_subject="Ubutumwa bwo kutaja kwa {studentName}",
            email_body=(
                "Ndabagira {guardianName},\n\n"
                "Twabonye ko {studentName} ataje ku ishuri {schoolName} ku itariki {date}.\n\n"
                "Niba hari ikibazo, tuhamagare.\n\n"
                "Murakoze,\n{schoolName}"
            ),
        ),
    },
    "performanceAlert": {
        "EN": TemplateEntry(
            sms=(
                "Dear {guardianName}, {studentName}'s performance in {subject} has dropped "
                "to {score}. Please discuss with your child. {contactInfo}"
            ),
            email_subject="Performance Alert for {studentName}",
            email_body=(
                "Dear {guardianName},\n\n"
                "We want to inform you that {studentName}'s performance in {subject} "
                "has declined to {score}.\n\n"
                "We recommend discussing this with your child and contacting their teacher.\n\n"
                "Best regards,\n{schoolName}"
            ),
        ),
        "RW": TemplateEntry(
            sms=(
                "Ndabagira {guardianName}, amanota ya {studentName} mu {subject} yagabanutse "
                "kugeza kuri {score}. Muganire n'umwana. {contactInfo}"
            ),
            email_subject="Ubutumwa bwo kugabanuka kw'amanota ya {studentName}",
            email_body=(
                "Ndabagira {guardianName},\n\n"
                "Twifuza kubamenyesha ko amanota ya {studentName} mu {subject} "
                "yagabanutse kugeza kuri {score}.\n\n"
                "Tubasaba kuganira n'umwana wanyu no guhamagara umwarimu.\n\n"
                "Murakoze,\n{schoolName}"
            ),
        ),
    },
    "meetingRequest": {
        "EN": TemplateEntry(
            sms=(
                "Dear {guardianName}, we request a meeting about {studentName} on {date} "
                "at {time}. Please confirm. {contactInfo}"
            ),
            email_subject="Meeting Request for {studentName}",
            email_body=(
                "Dear {guardianName},\n\n"
                "We would like to schedule a meeting to discuss {studentName}'s progress.\n\n"
                "Date: {date}\nTime: {time}\nLocation: {location}\n\n"
                "Please confirm your attendance.\n\n"
                "Best regards,\n{schoolName}"
            ),
        ),
        "RW": TemplateEntry(
            sms=(
                "Ndabagira {guardianName}, twifuza guhuza inama ku bijyanye na {studentName} "
                "ku itariki {date} ku isaha {time}. Emeza. {contactInfo}"
            ),
            email_subject="Guhuza inama ku bijyanye na {studentName}",
            email_body=(
                "Ndabagira {guardianName},\n\n"
                "Twifuza guhuza inama kugira ngo tuganire ku bijyanye n'iterambere "
                "rya {studentName}.\n\n"
                "Itariki: {date}\nIgihe: {time}\nAho: {location}\n\n"
                "Emeza ko uzaza.\n\n"
                "Murakoze,\n{schoolName}"
            ),
        ),
    },
    "riskAlert": {
        "EN": TemplateEntry(
            sms=(
                "EduGuard Alert: {studentName} has been flagged as {riskLevel} risk "
                "({riskDomain}) at {schoolName}. Please contact the school for details."
            ),
            email_subject="Risk Alert for {studentName}",
            email_body=(
                "Dear {guardianName},\n\n"
                "{studentName} has been flagged as {riskLevel} risk ({riskDomain}) "
                "at {schoolName}.\n\n"
                "{riskDescription}\n\n"
                "Please contact the school to discuss how we can support {studentName}.\n\n"
                "Best regards,\n{schoolName}"
            ),
        ),
        "RW": TemplateEntry(
            sms=(
                "EduGuard: {studentName} yagaragaye ko afite ibyago biri ku rwego rwa "
                "{riskLevel} ({riskDomain}) ku ishuri {schoolName}. Muhamagare ishuri."
            ),
            email_subject="Ubutumwa bw'ibyago kuri {studentName}",
            email_body=(
                "Ndabagira {guardianName},\n\n"
                "{studentName} yagaragaye ko afite ibyago biri ku rwego rwa {riskLevel} "
                "({riskDomain}) ku ishuri {schoolName}.\n\n"
                "{riskDescription}\n\n"
                "Tubasaba guhamagara ishuri kugira ngo tuganire uko twafasha {studentName}.\n\n"
                "Murakoze,\n{schoolName}"
            ),
        ),
    },
}


def substitute(template_id: str, text: str, variables: Mapping[str, Any]) -> str:
    """Replace every ``{name}`` in ``text``.

    Raises:
        TemplateRenderError: Listing every placeholder without a value
    """
    missing = [
        name for name in _PLACEHOLDER.findall(text)
        if variables.get(name) is None
    ]
    if missing:
        raise TemplateRenderError(template_id, missing)
    return _PLACEHOLDER.sub(lambda m: str(variables[m.group(1)]), text)


class TemplateEngine:
    """Renders templates by id, language and channel.

    Thread-safe; bulk sends render from worker threads.
    """

    def __init__(
        self,
        templates: Optional[Mapping[str, Mapping[str, TemplateEntry]]] = None,
        default_language: str = DEFAULT_LANGUAGE,
    ):
        self.default_language = default_language.upper()
        self._templates: Dict[str, Dict[str, TemplateEntry]] = {}
        self._lock = threading.Lock()

        source = BUILTIN_TEMPLATES if templates is None else templates
        for template_id, entries in source.items():
            for language, entry in entries.items():
                self.register(template_id, language, entry)

    def register(self, template_id: str, language: str, entry: TemplateEntry) -> None:
        with self._lock:
            self._templates.setdefault(template_id, {})[language.upper()] = entry

    def has_template(self, template_id: str) -> bool:
        with self._lock:
            return bool(self._templates.get(template_id))

    def _select(self, template_id: str, language: str) -> Tuple[TemplateEntry, str, bool]:
        with self._lock:
            entries = dict(self._templates.get(template_id, {}))

        if not entries:
            raise TemplateNotFoundError(template_id)

        requested = (language or "").upper()
        if requested in entries:
            return entries[requested], requested, False

        used = self.default_language if self.default_language in entries else sorted(entries)[0]
        logger.warning(
            "TEMPLATE_LANGUAGE_FALLBACK",
            extra={
                "template_id": template_id,
                "requested_language": requested,
                "used_language": used,
            }
        )
        return entries[used], used, True

    def render(
        self,
        template_id: str,
        language: str,
        variables: Mapping[str, Any],
        channel: Channel = Channel.SMS,
    ) -> RenderedTemplate:
        """Render a template for one concrete channel.

        Raises:
            TemplateNotFoundError: No language has this template
            TemplateRenderError: A placeholder has no value
        """
        entry, used, fallback = self._select(template_id, language)

        if channel is Channel.EMAIL:
            content = substitute(template_id, entry.email_body, variables)
            subject = substitute(template_id, entry.email_subject, variables)
        else:
            content = substitute(template_id, entry.sms, variables)
            subject = None

        return RenderedTemplate(content=content, subject=subject, language=used, fallback_used=fallback)
