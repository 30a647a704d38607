"""Power state rules shared by the actuator, detector and reconciliation loop.

The backend vocabulary is the flat PowerState enum. There are no
transitional "waking" or "suspending" states: an actuation either leaves the
node in a concrete post-action state or, for wake, in UNKNOWN until the next
detection pass confirms reality.

Lifecycle:
    off/suspended/unknown --wake--> unknown --detect--> on
    on/unknown --suspend--> suspended
    on/unknown --shutdown--> off (guest) | suspended (physical host)
    on/unknown/suspended --stop--> off (guest only)
    unknown --probe fails--> init_failed --probe succeeds--> unknown
"""

from __future__ import annotations

from typing import Optional

from fleetpower.state import PowerState


class PowerStateMachine:
    """Centralized eligibility and post-action logic for node power states."""

    # States from which suspend and graceful shutdown are accepted. UNKNOWN is
    # included because a node that was just woken sits in UNKNOWN until the
    # next detection pass.
    SUSPENDABLE_STATES: set[PowerState] = {
        PowerState.ON,
        PowerState.UNKNOWN,
    }

    STOPPABLE_STATES: set[PowerState] = {
        PowerState.ON,
        PowerState.UNKNOWN,
        PowerState.SUSPENDED,
    }

    # States that trigger a wake when the operator wants the node on
    WAKEABLE_STATES: set[PowerState] = {
        PowerState.OFF,
        PowerState.SUSPENDED,
        PowerState.UNKNOWN,
        PowerState.INIT_FAILED,
    }

    # Which cumulative counter accrues time spent in a state
    DURATION_BUCKETS: dict[PowerState, str] = {
        PowerState.ON: "on",
        PowerState.SUSPENDED: "suspended",
        PowerState.OFF: "off",
        PowerState.INIT_FAILED: "off",
    }

    @classmethod
    def duration_bucket(cls, state: PowerState) -> Optional[str]:
        """Counter name for time spent in ``state``; None when not accounted."""
        return cls.DURATION_BUCKETS.get(state)

    @classmethod
    def after_wake(cls) -> PowerState:
        """State recorded after a wake attempt left the controller.

        A wake packet or start call has no acknowledgment of the node coming
        up, so the node is UNKNOWN until detection observes it.
        """
        return PowerState.UNKNOWN

    @classmethod
    def after_suspend(cls) -> PowerState:
        return PowerState.SUSPENDED

    @classmethod
    def after_shutdown(cls, is_guest: bool) -> PowerState:
        """Physical hosts reuse the suspend path for shutdown."""
        if is_guest:
            return PowerState.OFF
        return PowerState.SUSPENDED

    @classmethod
    def after_stop(cls) -> PowerState:
        return PowerState.OFF

    @classmethod
    def can_suspend(cls, current: PowerState) -> bool:
        return current in cls.SUSPENDABLE_STATES

    @classmethod
    def can_shutdown(cls, current: PowerState) -> bool:
        return current in cls.SUSPENDABLE_STATES

    @classmethod
    def can_stop(cls, current: PowerState) -> bool:
        return current in cls.STOPPABLE_STATES

    @classmethod
    def needs_wake(cls, current: PowerState) -> bool:
        return current in cls.WAKEABLE_STATES

    @classmethod
    def get_reconcile_action(
        cls,
        current: PowerState,
        desired: PowerState,
        is_guest: bool,
    ) -> Optional[str]:
        """Determine what actuation moves ``current`` toward ``desired``.

        Returns:
            "wake", "suspend", "shutdown", or None when nothing should be done.
        """
        if desired == PowerState.ON and cls.needs_wake(current):
            return "wake"
        if desired == PowerState.SUSPENDED and current == PowerState.ON:
            return "suspend"
        # Physical shutdown is a suspend in disguise; only guests are driven off
        if desired == PowerState.OFF and current == PowerState.ON and is_guest:
            return "shutdown"
        return None
