import datetime as dt
import logging

from .models.v1alpha1 import (
    Condition,
    ConditionStatus,
    LastOperation,
    ManifestState,
)

logger = logging.getLogger(__name__)


#: Condition reflecting whether the rendered resources have been applied
CONDITION_RESOURCES = "Resources"
#: Condition reflecting whether the applied resources are ready
CONDITION_INSTALLATION = "Installation"


def _now():
    return dt.datetime.now(dt.timezone.utc)


def find_condition(manifest, type):
    """
    Returns the condition of the given type, or None if it is not present.
    """
    return next((c for c in manifest.status.conditions if c.type == type), None)


def condition_is_true(manifest, type):
    """
    Returns true if the condition of the given type is present and true.
    """
    condition = find_condition(manifest, type)
    return condition is not None and condition.status == ConditionStatus.TRUE


def set_condition(manifest, type, status, reason = None, message = None):
    """
    Inserts or updates the condition of the given type, preserving the order of
    existing conditions.

    The transition time only changes when the status of the condition flips.
    Returns true if the status flipped.
    """
    status = ConditionStatus(status)
    existing = find_condition(manifest, type)
    if existing is None:
        manifest.status.conditions.append(
            Condition(
                type = type,
                status = status,
                reason = reason,
                message = message,
                observed_generation = manifest.generation,
                last_transition_time = _now()
            )
        )
        return True
    flipped = existing.status != status
    existing.status = status
    existing.reason = reason
    existing.message = message
    existing.observed_generation = manifest.generation
    if flipped or existing.last_transition_time is None:
        existing.last_transition_time = _now()
    return flipped


def seed_conditions(manifest):
    """
    Adds the default conditions that are not already present.
    """
    for type in (CONDITION_RESOURCES, CONDITION_INSTALLATION):
        if find_condition(manifest, type) is None:
            set_condition(
                manifest,
                type,
                ConditionStatus.FALSE,
                "Initialized",
                "condition has not been evaluated yet"
            )


def set_operation(manifest, message):
    """
    Records the last operation for the manifest.
    """
    manifest.status.last_operation = LastOperation(
        operation = message,
        last_update_time = _now()
    )


def set_state(manifest, state, message = None):
    """
    Sets the state of the manifest, optionally recording an operation message.
    """
    state = ManifestState(state)
    current = ManifestState(manifest.status.state)
    if current != state:
        logger.info(
            "manifest %s/%s moving from %r to %r",
            manifest.namespace,
            manifest.name,
            current.value,
            state.value
        )
    manifest.status.state = state
    if message:
        set_operation(manifest, message)


def set_error(manifest, message):
    """
    Moves the manifest into the error state with the given message.
    """
    set_state(manifest, ManifestState.ERROR, message)


def set_synced(manifest, resources):
    """
    Records the resources that were applied for the manifest.
    """
    manifest.status.synced = list(resources)


def finalise(manifest):
    """
    Stamps the observed generation onto the status before it is saved.
    """
    manifest.status.observed_generation = manifest.generation


def generation_changed(manifest):
    """
    Returns true if the spec has changed since the status was last saved.
    """
    return manifest.status.observed_generation != manifest.generation
