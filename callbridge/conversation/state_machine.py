"""
Finite state machine for the per-chat report workflow.

Defines the workflow steps and the explicit transitions between them.
Every chat follows a deterministic path through the step graph; a
handler that asks for a transition the table does not list is rejected
with a clear error instead of silently corrupting the session.

The machine is rebuilt from the persisted session on every event, so
``None`` stands for "no session stored" (before /start, after /logout).

Usage:
    sm = ConversationStateMachine(None)
    sm.transition(TransitionTrigger.START_WITHOUT_CREDENTIAL)
    assert sm.current_state == Step.AWAIT_EMAIL
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from callbridge.errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class Step(str, Enum):
    """All workflow positions a chat session can be in."""
    AWAIT_EMAIL = "await_email"
    AWAIT_PASSWORD = "await_password"
    AWAIT_MODE_CHOICE = "await_mode_choice"
    AWAIT_SHEET_URL = "await_sheet_url"
    AWAIT_OAUTH = "await_oauth"
    READY = "ready"
    AWAIT_DATE = "await_date"
    AWAIT_TEAM = "await_team"
    AWAIT_WRITE_MODE = "await_write_mode"
    AWAIT_AGENT = "await_agent"


class TransitionTrigger(str, Enum):
    """Events that cause step transitions."""
    START_WITH_CREDENTIAL = "start_with_credential"
    START_WITHOUT_CREDENTIAL = "start_without_credential"
    EMAIL_ENTERED = "email_entered"
    LOGIN_SUCCEEDED = "login_succeeded"
    LOGIN_FAILED = "login_failed"
    LOGIN_ATTEMPTS_EXHAUSTED = "login_attempts_exhausted"
    SHEET_MODE_CHOSEN = "sheet_mode_chosen"
    CHAT_MODE_CHOSEN = "chat_mode_chosen"
    SHEET_LINKED = "sheet_linked"
    SHEET_NEEDS_CONSENT = "sheet_needs_consent"
    CONSENT_GRANTED = "consent_granted"
    FETCH_REQUESTED = "fetch_requested"
    REPORT_LOADED = "report_loaded"
    FETCH_FAILED = "fetch_failed"
    TEAM_CHOSEN_FOR_EXPORT = "team_chosen_for_export"
    TEAM_CHOSEN_FOR_BROWSE = "team_chosen_for_browse"
    TEAM_MENU_REQUESTED = "team_menu_requested"
    SHEET_WRITTEN = "sheet_written"
    SHEET_WRITE_FAILED = "sheet_write_failed"
    AGENT_MENU_REQUESTED = "agent_menu_requested"
    AGENT_CHOSEN = "agent_chosen"
    # Valid from any step, including "no session".
    SESSION_RESTARTED = "session_restarted"
    MODE_MENU_REQUESTED = "mode_menu_requested"
    MODE_SWITCHED = "mode_switched"
    CREDENTIALS_REJECTED = "credentials_rejected"
    HANDLER_FAILED = "handler_failed"
    LOGOUT = "logout"


@dataclass
class Transition:
    """A single valid step transition."""
    from_state: Optional[Step]
    to_state: Optional[Step]
    trigger: TransitionTrigger


@dataclass
class StateEntry:
    """Recorded history entry for a step visit."""
    state: Optional[Step]
    entered_at: datetime
    trigger: Optional[TransitionTrigger] = None


_BROWSING_STEPS = (Step.AWAIT_DATE, Step.AWAIT_TEAM, Step.AWAIT_WRITE_MODE, Step.AWAIT_AGENT)


class ConversationStateMachine:
    """
    Deterministic step machine for one chat.

    Every transition must be explicitly defined. A handler that tries to
    move the session along an edge the table does not declare gets an
    InvalidTransitionError naming the triggers that are allowed.
    """

    TRANSITIONS: list[Transition] = [
        # --- Portal credentials ---
        Transition(Step.AWAIT_EMAIL, Step.AWAIT_PASSWORD, TransitionTrigger.EMAIL_ENTERED),
        Transition(Step.AWAIT_PASSWORD, Step.AWAIT_MODE_CHOICE,
                   TransitionTrigger.LOGIN_SUCCEEDED),
        Transition(Step.AWAIT_PASSWORD, Step.AWAIT_EMAIL, TransitionTrigger.LOGIN_FAILED),
        Transition(Step.AWAIT_PASSWORD, None, TransitionTrigger.LOGIN_ATTEMPTS_EXHAUSTED),

        # --- Mode choice ---
        Transition(Step.AWAIT_MODE_CHOICE, Step.AWAIT_SHEET_URL,
                   TransitionTrigger.SHEET_MODE_CHOSEN),
        Transition(Step.AWAIT_MODE_CHOICE, Step.READY, TransitionTrigger.CHAT_MODE_CHOSEN),

        # --- Sheet linking ---
        Transition(Step.AWAIT_SHEET_URL, Step.READY, TransitionTrigger.SHEET_LINKED),
        Transition(Step.AWAIT_SHEET_URL, Step.AWAIT_OAUTH, TransitionTrigger.SHEET_NEEDS_CONSENT),
        Transition(Step.AWAIT_OAUTH, Step.READY, TransitionTrigger.SHEET_LINKED),
        Transition(Step.AWAIT_OAUTH, Step.AWAIT_OAUTH, TransitionTrigger.SHEET_NEEDS_CONSENT),
        Transition(Step.READY, Step.READY, TransitionTrigger.SHEET_LINKED),
        Transition(Step.READY, Step.AWAIT_OAUTH, TransitionTrigger.SHEET_NEEDS_CONSENT),
        Transition(Step.AWAIT_OAUTH, Step.READY, TransitionTrigger.CONSENT_GRANTED),

        # --- Fetch ---
        Transition(Step.READY, Step.AWAIT_DATE, TransitionTrigger.FETCH_REQUESTED),
        *[Transition(s, Step.AWAIT_DATE, TransitionTrigger.FETCH_REQUESTED)
          for s in _BROWSING_STEPS],
        Transition(Step.AWAIT_DATE, Step.AWAIT_TEAM, TransitionTrigger.REPORT_LOADED),
        Transition(Step.AWAIT_DATE, Step.READY, TransitionTrigger.FETCH_FAILED),

        # --- Sheet export ---
        Transition(Step.AWAIT_TEAM, Step.AWAIT_WRITE_MODE,
                   TransitionTrigger.TEAM_CHOSEN_FOR_EXPORT),
        Transition(Step.AWAIT_WRITE_MODE, Step.READY, TransitionTrigger.SHEET_WRITTEN),
        Transition(Step.AWAIT_WRITE_MODE, Step.READY, TransitionTrigger.SHEET_WRITE_FAILED),
        Transition(Step.AWAIT_WRITE_MODE, Step.AWAIT_OAUTH,
                   TransitionTrigger.SHEET_NEEDS_CONSENT),

        # --- Chat browsing ---
        Transition(Step.AWAIT_TEAM, Step.AWAIT_AGENT, TransitionTrigger.TEAM_CHOSEN_FOR_BROWSE),
        Transition(Step.READY, Step.AWAIT_TEAM, TransitionTrigger.TEAM_MENU_REQUESTED),
        Transition(Step.AWAIT_TEAM, Step.AWAIT_TEAM, TransitionTrigger.TEAM_MENU_REQUESTED),
        Transition(Step.AWAIT_AGENT, Step.AWAIT_TEAM, TransitionTrigger.TEAM_MENU_REQUESTED),
        Transition(Step.READY, Step.AWAIT_AGENT, TransitionTrigger.AGENT_MENU_REQUESTED),
        Transition(Step.AWAIT_AGENT, Step.AWAIT_AGENT, TransitionTrigger.AGENT_MENU_REQUESTED),
        Transition(Step.AWAIT_AGENT, Step.READY, TransitionTrigger.AGENT_CHOSEN),
        Transition(Step.READY, Step.READY, TransitionTrigger.AGENT_CHOSEN),
    ]

    # Triggers accepted from every step, including "no session".
    GLOBAL_TRANSITIONS: dict[TransitionTrigger, Optional[Step]] = {
        TransitionTrigger.START_WITH_CREDENTIAL: Step.AWAIT_MODE_CHOICE,
        TransitionTrigger.START_WITHOUT_CREDENTIAL: Step.AWAIT_EMAIL,
        TransitionTrigger.SESSION_RESTARTED: Step.AWAIT_MODE_CHOICE,
        TransitionTrigger.MODE_MENU_REQUESTED: Step.AWAIT_MODE_CHOICE,
        TransitionTrigger.MODE_SWITCHED: Step.READY,
        TransitionTrigger.CREDENTIALS_REJECTED: Step.AWAIT_EMAIL,
        TransitionTrigger.HANDLER_FAILED: Step.READY,
        TransitionTrigger.LOGOUT: None,
    }

    RESTING_STATES: frozenset[Step] = frozenset({Step.READY})

    def __init__(self, initial: Optional[Step] = None) -> None:
        self._current_state = initial
        self._history: list[StateEntry] = [
            StateEntry(state=initial, entered_at=datetime.now(timezone.utc))
        ]

    @property
    def current_state(self) -> Optional[Step]:
        return self._current_state

    def transition(self, trigger: TransitionTrigger) -> Optional[Step]:
        """
        Execute a step transition.

        Args:
            trigger: The event triggering the transition.

        Returns:
            The new step, or None when the session should be removed.

        Raises:
            InvalidTransitionError: If no valid transition exists.
        """
        target = self._resolve(trigger)
        old_state = self._current_state
        self._current_state = target
        self._history.append(StateEntry(
            state=target,
            entered_at=datetime.now(timezone.utc),
            trigger=trigger,
        ))
        logger.debug(
            "Step transition: %s -> %s (trigger: %s)",
            _name(old_state), _name(target), trigger.value,
        )
        return target

    def can_transition(self, trigger: TransitionTrigger) -> bool:
        return trigger in self.get_valid_triggers()

    def _resolve(self, trigger: TransitionTrigger) -> Optional[Step]:
        for t in self.TRANSITIONS:
            if t.from_state == self._current_state and t.trigger == trigger:
                return t.to_state
        if trigger in self.GLOBAL_TRANSITIONS:
            return self.GLOBAL_TRANSITIONS[trigger]

        valid = [t.value for t in self.get_valid_triggers()]
        raise InvalidTransitionError(
            f"No valid transition from '{_name(self._current_state)}' "
            f"with trigger '{trigger.value}'. Valid triggers: {valid}"
        )

    def get_valid_triggers(self) -> list[TransitionTrigger]:
        """Return all triggers valid from the current step."""
        local = [t.trigger for t in self.TRANSITIONS if t.from_state == self._current_state]
        return local + [t for t in self.GLOBAL_TRANSITIONS if t not in local]

    def get_history(self) -> list[StateEntry]:
        """Return the full transition history for this event."""
        return list(self._history)

    def get_state_trace(self) -> list[str]:
        """Return ordered list of step names visited."""
        return [_name(entry.state) for entry in self._history]

    def is_resting(self) -> bool:
        """Check if the chat sits in a resting step awaiting a new command."""
        return self._current_state in self.RESTING_STATES


def _name(step: Optional[Step]) -> str:
    return step.value if step is not None else "none"
