"""Injection state machine.

A workload's state is derived from its annotations alone:

    UNANNOTATED        no ``heimdall-repository``            -> ignored
    PENDING_INJECTION  repository set, no ``heimdall-injected`` -> inject
    INJECTED           ``heimdall-injected`` present          -> no-op

The only transition the controller performs is PENDING_INJECTION ->
INJECTED.  An injected workload stays pinned to the configuration it was
injected with, even if its repository or path annotation changes later;
removing the ``heimdall-injected`` annotation makes it pending again.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from heimdall.errors import HeimdallError
from heimdall.models.configuration import Configuration
from heimdall.models.workload import (
    ANNOTATION_CONFIG_VERSION,
    ANNOTATION_INJECTED,
    ANNOTATION_NAME,
    ANNOTATION_REPOSITORY,
    annotations_of,
)


class InjectionState(StrEnum):
    UNANNOTATED = "unannotated"
    PENDING_INJECTION = "pending_injection"
    INJECTED = "injected"


_ALLOWED_TRANSITIONS = frozenset({(InjectionState.PENDING_INJECTION, InjectionState.INJECTED)})


class InvalidTransition(HeimdallError):
    """Raised when code attempts a transition the state machine forbids."""

    def __init__(self, current: InjectionState, target: InjectionState) -> None:
        super().__init__(f"invalid injection state transition {current} -> {target}")
        self.current = current
        self.target = target


def classify(annotations: dict[str, str]) -> InjectionState:
    if ANNOTATION_REPOSITORY not in annotations:
        return InjectionState.UNANNOTATED
    if ANNOTATION_INJECTED in annotations:
        return InjectionState.INJECTED
    return InjectionState.PENDING_INJECTION


def state_of(workload: dict[str, Any]) -> InjectionState:
    return classify(annotations_of(workload))


def validate_transition(current: InjectionState, target: InjectionState) -> None:
    if (current, target) not in _ALLOWED_TRANSITIONS:
        raise InvalidTransition(current, target)


def mark_injected(annotations: dict[str, str], configuration: Configuration) -> dict[str, str]:
    """Return a copy of *annotations* in the INJECTED state.

    Unrecognized annotations are carried over untouched.
    """
    validate_transition(classify(annotations), InjectionState.INJECTED)
    updated = dict(annotations)
    updated[ANNOTATION_INJECTED] = "true"
    updated[ANNOTATION_NAME] = configuration.metadata.name
    updated[ANNOTATION_CONFIG_VERSION] = configuration.config_version
    return updated


def injected_marker_changed(old: dict[str, Any], new: dict[str, Any]) -> bool:
    """True when the ``heimdall-injected`` value differs between two versions."""
    return annotations_of(old).get(ANNOTATION_INJECTED) != annotations_of(new).get(ANNOTATION_INJECTED)
