"""
Message composer.

Builds the SMS alert body once per dispatch (with a contact-name placeholder
filled in per recipient at send time) and the local notification content for
each escalation event.
"""

from datetime import datetime

from petwatch.watch.schemas import CareSnapshot, EscalationEvent, EventKind, LocalAlert

CONTACT_NAME_PLACEHOLDER = "{contactName}"


def _care_lines(care: CareSnapshot) -> list[str]:
    """Human-readable care summary; empty sections are left out."""
    lines: list[str] = []

    food = " - ".join(part for part in (care.food_type, care.food_amount) if part)
    if food:
        lines.append(f"Food: {food}")
    if care.feeding_times:
        lines.append(f"Feeding times: {', '.join(care.feeding_times)}")
    if care.feeding_notes:
        lines.append(f"Feeding notes: {care.feeding_notes}")

    for med in care.medications:
        details = ", ".join(part for part in (med.dosage, med.timing, med.instructions) if part)
        lines.append(f"Medication: {med.name}" + (f" ({details})" if details else ""))

    vet = ", ".join(part for part in (care.vet_name, care.vet_phone, care.vet_address) if part)
    if vet:
        lines.append(f"Vet: {vet}")
    if care.general_instructions:
        lines.append(f"Instructions: {care.general_instructions}")
    if care.emergency_notes:
        lines.append(f"Emergency notes: {care.emergency_notes}")
    return lines


def compose_alert_template(pet_name: str, care: CareSnapshot, now: datetime) -> str:
    """
    Compose the SMS alert body shared by every recipient.

    The result still contains CONTACT_NAME_PLACEHOLDER; use render_for()
    to produce each recipient's copy.
    """
    parts = [
        "\U0001f6a8 PET SAFETY ALERT \U0001f6a8",
        (
            f"Hi {CONTACT_NAME_PLACEHOLDER}, this is an automated emergency alert. "
            f"{pet_name}'s safety timer has expired and the owner has not checked in."
        ),
        "Please check on the pet immediately and contact the owner directly.",
    ]

    care_lines = _care_lines(care)
    if care_lines:
        parts.append("Care instructions:\n" + "\n".join(care_lines))

    parts.append(f"Time: {now.strftime('%Y-%m-%d %H:%M %Z').strip()}")
    parts.append("This alert was sent automatically by PetWatch.")
    return "\n\n".join(parts)


def render_for(template: str, contact_name: str) -> str:
    """Substitute a recipient's name into the template."""
    return template.replace(CONTACT_NAME_PLACEHOLDER, contact_name or "there")


def compose_local_alert(event: EscalationEvent, pet_name: str) -> LocalAlert:
    """Local notification text for a planned event, escalating with overdue time."""
    if event.kind == EventKind.REMINDER:
        return LocalAlert(
            title="⚠️ Pet Safety Timer - 5 Minutes Left",
            body=(
                f"Your pet safety timer for {pet_name} expires in 5 minutes. "
                "Don't forget to check in!"
            ),
            urgent=False,
        )
    if event.kind == EventKind.MAIN_EXPIRY:
        return LocalAlert(
            title="\U0001f6a8 PET ALERT - TIMER EXPIRED! \U0001f6a8",
            body=(
                f"URGENT: Check in now! Your emergency contacts are being notified "
                f"about {pet_name}."
            ),
            urgent=True,
        )
    return LocalAlert(
        title=f"\U0001f6a8 PET ALERT - {event.minutes_overdue} MINUTES OVERDUE! \U0001f6a8",
        body=(
            f"CRITICAL: Still no check-in for {pet_name}! Emergency contacts are being "
            f"notified. Respond immediately!"
        ),
        urgent=True,
    )
