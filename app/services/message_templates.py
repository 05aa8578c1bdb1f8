"""
WhatsApp message templates for reminders and followups.

Reminders with only a body are sent as-is; reminders carrying a title or
description are wrapped in a type-specific template. Followup texts vary
by reminder type and followup stage.
"""
from typing import Optional

from jinja2 import Environment, StrictUndefined

from app.models.reminder_model import FollowupType, ReminderType

_env = Environment(
    autoescape=False,
    trim_blocks=True,
    lstrip_blocks=True,
    undefined=StrictUndefined,
    keep_trailing_newline=False,
)

SIGNATURE = "💙 Tim PRIMA"

REMINDER_HEADINGS = {
    ReminderType.MEDICATION.value: "💊 *Pengingat Minum Obat*",
    ReminderType.APPOINTMENT.value: "📅 *Pengingat Janji Temu*",
    ReminderType.GENERAL.value: "⏰ *Pengingat*",
}

REMINDER_TEMPLATE = _env.from_string(
    """{{ heading }}

Halo {{ patient_name }},

{% if title %}
*{{ title }}*
{% endif %}
{% if description %}
{{ description }}
{% endif %}
{% if title or description %}

{% endif %}
{{ message }}

{{ signature }}"""
)

FOLLOWUP_HEADINGS = {
    ReminderType.MEDICATION.value: "⏰ *Follow-up: Pengingat Obat*",
    ReminderType.APPOINTMENT.value: "⏰ *Follow-up: Janji Temu*",
    ReminderType.GENERAL.value: "⏰ *Follow-up: Pengingat*",
}

FOLLOWUP_ELAPSED = {
    FollowupType.REMINDER_15MIN.value: "15 menit",
    FollowupType.REMINDER_2H.value: "2 jam",
    FollowupType.REMINDER_24H.value: "24 jam",
}

FOLLOWUP_QUESTIONS = {
    FollowupType.REMINDER_15MIN.value: {
        ReminderType.MEDICATION.value: 'Apakah sudah diminum? Balas "SUDAH" atau "BELUM".',
        ReminderType.APPOINTMENT.value: 'Apakah sudah hadir? Balas "HADIR" atau "TERLAMBAT".',
        ReminderType.GENERAL.value: 'Apakah sudah dilakukan? Balas "SELESAI" atau "BELUM".',
    },
    FollowupType.REMINDER_2H.value: {
        ReminderType.MEDICATION.value: "Bagaimana kondisinya? Apakah sudah diminum?",
        ReminderType.APPOINTMENT.value: "Bagaimana kondisinya? Apakah sudah hadir?",
        ReminderType.GENERAL.value: "Bagaimana kondisinya? Apakah sudah dilakukan?",
    },
    FollowupType.REMINDER_24H.value: {
        ReminderType.MEDICATION.value: "Mohon konfirmasi apakah sudah sesuai jadwal.",
        ReminderType.APPOINTMENT.value: "Mohon konfirmasi kehadiran Anda.",
        ReminderType.GENERAL.value: "Mohon konfirmasi status kegiatan Anda.",
    },
}

FOLLOWUP_TEMPLATE = _env.from_string(
    """{{ heading }}

Halo {{ patient_name }}!

{{ elapsed }} yang lalu kami mengirim pengingat untuk {{ reminder_title }}.

{{ question }}

{{ signature }}"""
)

FALLBACK_FOLLOWUP_TEMPLATE = _env.from_string(
    """⏰ *Follow-up: Konfirmasi*

Halo {{ patient_name }}!

Apakah Anda menerima pengingat kesehatan kami?

{{ signature }}"""
)


def _normalise_type(reminder_type: Optional[str]) -> str:
    if reminder_type in REMINDER_HEADINGS:
        return reminder_type
    return ReminderType.GENERAL.value


def render_reminder_message(
    reminder_type: Optional[str],
    patient_name: str,
    message: str,
    title: Optional[str] = None,
    description: Optional[str] = None,
) -> str:
    """Plain body when there is no title/description, templated otherwise."""
    if not title and not description:
        return message

    reminder_type = _normalise_type(reminder_type)
    return REMINDER_TEMPLATE.render(
        heading=REMINDER_HEADINGS[reminder_type],
        patient_name=patient_name,
        title=title,
        description=description,
        message=message,
        signature=SIGNATURE,
    )


def render_followup_message(
    followup_type: str,
    reminder_type: Optional[str],
    patient_name: str,
    reminder_title: Optional[str] = None,
) -> str:
    if followup_type not in FOLLOWUP_QUESTIONS:
        return FALLBACK_FOLLOWUP_TEMPLATE.render(
            patient_name=patient_name, signature=SIGNATURE
        )

    reminder_type = _normalise_type(reminder_type)
    return FOLLOWUP_TEMPLATE.render(
        heading=FOLLOWUP_HEADINGS[reminder_type],
        patient_name=patient_name,
        elapsed=FOLLOWUP_ELAPSED[followup_type],
        reminder_title=reminder_title or "pengingat",
        question=FOLLOWUP_QUESTIONS[followup_type][reminder_type],
        signature=SIGNATURE,
    )
