"""Schema annotations that drive generated event hooks."""

from __future__ import annotations

from dataclasses import dataclass

EVENTS_HOOK_ANNOTATION_NAME = "INFRA9_EVENTHOOKS"


@dataclass
class EventsHookAnnotation:
    """Event-hook settings for a schema type or field.

    Build these with the helper functions rather than directly.
    """

    subject_name: str = ""
    additional_subject_relation: str = ""
    is_additional_subject_field: bool = False

    def name(self) -> str:
        """Return the annotation's name."""
        return EVENTS_HOOK_ANNOTATION_NAME


def events_hook_additional_subject(relation: str) -> EventsHookAnnotation:
    """Mark a field as an additional subject with the given relation."""
    return EventsHookAnnotation(additional_subject_relation=relation)


def events_hook_additional_subject_field() -> EventsHookAnnotation:
    """Mark a field as an additional subject in change events."""
    return EventsHookAnnotation(is_additional_subject_field=True)


def events_hook_subject_name(subject: str) -> EventsHookAnnotation:
    """Set the subject name messages for this object are sent to."""
    return EventsHookAnnotation(subject_name=subject)