"""Declarative transition tables for the onboarding tracks."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple, Type

from .models import InputKind


class NarrativeError(RuntimeError):
    """Base class for narrative interpreter errors."""


class TrackDefinitionError(NarrativeError):
    """Raised when a transition table references something that does not exist."""


class NewUserState(str, Enum):
    BEGIN = "begin"
    WAITING_REPLY = "waiting_reply"
    TUTORIAL_TOPIC = "tutorial_topic"
    TUTORIAL_ONEBOX = "tutorial_onebox"
    TUTORIAL_IMAGES = "tutorial_images"
    TUTORIAL_FORMATTING = "tutorial_formatting"
    TUTORIAL_QUOTE = "tutorial_quote"
    TUTORIAL_EMOJI = "tutorial_emoji"
    TUTORIAL_MENTION = "tutorial_mention"
    TUTORIAL_LINK = "tutorial_link"
    TUTORIAL_PM = "tutorial_pm"
    END = "end"


class AdvancedUserState(str, Enum):
    BEGIN = "begin"
    TUTORIAL_EDIT = "tutorial_edit"
    TUTORIAL_DELETE = "tutorial_delete"
    TUTORIAL_RECOVER = "tutorial_recover"
    TUTORIAL_POLL = "tutorial_poll"
    TUTORIAL_DETAILS = "tutorial_details"
    END = "end"


@dataclass(frozen=True)
class Transition:
    action: str
    next_state: str
    next_instructions_key: Optional[str] = None


@dataclass(frozen=True)
class TrackDefinition:
    """Immutable ``(state, input) -> Transition`` map for one track."""

    name: str
    i18n_prefix: str
    states: Type[Enum]
    transitions: Mapping[Tuple[str, InputKind], Transition]
    reset_trigger: str
    state_hooks: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    initial_state: str = "begin"
    terminal_state: str = "end"

    def lookup(self, state: str, input_kind: InputKind | str) -> Optional[Transition]:
        try:
            kind = InputKind(input_kind)
        except ValueError:
            return None
        return self.transitions.get((state, kind))

    def is_declared(self, state: str) -> bool:
        return state in {member.value for member in self.states}

    def is_terminal(self, state: str) -> bool:
        return state == self.terminal_state

    def skippable(self, state: str) -> bool:
        return (state, InputKind.SKIP) in self.transitions

    def inputs_for(self, state: str) -> Tuple[InputKind, ...]:
        return tuple(kind for (source, kind) in self.transitions if source == state)

    def instruction_keys(self) -> Tuple[str, ...]:
        keys = {
            rule.next_instructions_key
            for rule in self.transitions.values()
            if rule.next_instructions_key
        }
        return tuple(sorted(keys))

    def validate(self, owner: object) -> None:
        """Check every referenced state and action once, at engine construction."""

        declared = {member.value for member in self.states}
        for name in (self.initial_state, self.terminal_state):
            if name not in declared:
                raise TrackDefinitionError(f"{self.name}: undeclared state '{name}'")
        for (state, kind), rule in self.transitions.items():
            if state not in declared:
                raise TrackDefinitionError(f"{self.name}: undeclared source state '{state}'")
            if rule.next_state not in declared:
                raise TrackDefinitionError(
                    f"{self.name}: ({state}, {kind.value}) targets undeclared state '{rule.next_state}'"
                )
            if not callable(getattr(owner, rule.action, None)):
                raise TrackDefinitionError(
                    f"{self.name}: ({state}, {kind.value}) references missing action '{rule.action}'"
                )
        for state, hook in self.state_hooks.items():
            if state not in declared:
                raise TrackDefinitionError(f"{self.name}: hook on undeclared state '{state}'")
            if not callable(getattr(owner, hook, None)):
                raise TrackDefinitionError(f"{self.name}: missing state hook '{hook}'")


def _freeze(
    steps: Iterable[Tuple[Enum, InputKind, str, Enum, Optional[str]]],
    skippable: Iterable[Enum] = (),
) -> Mapping[Tuple[str, InputKind], Transition]:
    table: Dict[Tuple[str, InputKind], Transition] = {}
    for state, kind, action, next_state, instructions in steps:
        table[(state.value, kind)] = Transition(action, next_state.value, instructions)
    for state in skippable:
        forward = [
            rule
            for (source, _), rule in table.items()
            if source == state.value and rule.next_state != state.value
        ]
        rule = forward[0]
        table[(state.value, InputKind.SKIP)] = Transition(
            "skip_step", rule.next_state, rule.next_instructions_key
        )
    return MappingProxyType(table)


_N = NewUserState

NEW_USER_TRACK = TrackDefinition(
    name="new_user",
    i18n_prefix="new_user_narrative",
    states=NewUserState,
    reset_trigger="start new user",
    transitions=_freeze(
        [
            (_N.BEGIN, InputKind.INIT, "say_hello", _N.WAITING_REPLY, None),
            (_N.BEGIN, InputKind.REPLY, "say_hello", _N.WAITING_REPLY, None),
            (_N.WAITING_REPLY, InputKind.REPLY, "quote_user_reply", _N.TUTORIAL_TOPIC, None),
            (_N.TUTORIAL_TOPIC, InputKind.REPLY, "reply_to_topic", _N.TUTORIAL_ONEBOX, "onebox.instructions"),
            (_N.TUTORIAL_ONEBOX, InputKind.REPLY, "reply_to_onebox", _N.TUTORIAL_IMAGES, "images.instructions"),
            (_N.TUTORIAL_IMAGES, InputKind.REPLY, "reply_to_image", _N.TUTORIAL_FORMATTING, "formatting.instructions"),
            (_N.TUTORIAL_FORMATTING, InputKind.REPLY, "reply_to_formatting", _N.TUTORIAL_QUOTE, "quoting.instructions"),
            (_N.TUTORIAL_QUOTE, InputKind.REPLY, "reply_to_quote", _N.TUTORIAL_EMOJI, "emoji.instructions"),
            (_N.TUTORIAL_EMOJI, InputKind.REPLY, "reply_to_emoji", _N.TUTORIAL_MENTION, "mention.instructions"),
            (_N.TUTORIAL_MENTION, InputKind.REPLY, "reply_to_mention", _N.TUTORIAL_LINK, "link.instructions"),
            (_N.TUTORIAL_LINK, InputKind.REPLY, "reply_to_link", _N.TUTORIAL_PM, "pm.instructions"),
            (_N.TUTORIAL_PM, InputKind.REPLY, "reply_to_pm", _N.END, None),
        ],
        skippable=[
            _N.TUTORIAL_ONEBOX,
            _N.TUTORIAL_IMAGES,
            _N.TUTORIAL_FORMATTING,
            _N.TUTORIAL_QUOTE,
            _N.TUTORIAL_EMOJI,
            _N.TUTORIAL_MENTION,
            _N.TUTORIAL_LINK,
            _N.TUTORIAL_PM,
        ],
    ),
)

_A = AdvancedUserState

ADVANCED_USER_TRACK = TrackDefinition(
    name="advanced_user",
    i18n_prefix="advanced_user_narrative",
    states=AdvancedUserState,
    reset_trigger="start advanced user",
    transitions=_freeze(
        [
            (_A.BEGIN, InputKind.INIT, "start_advanced_track", _A.TUTORIAL_EDIT, "edit.instructions"),
            (_A.TUTORIAL_EDIT, InputKind.EDIT, "reply_to_edit", _A.TUTORIAL_DELETE, "delete.instructions"),
            (_A.TUTORIAL_EDIT, InputKind.REPLY, "missing_edit", _A.TUTORIAL_EDIT, None),
            (_A.TUTORIAL_DELETE, InputKind.DELETE, "reply_to_delete", _A.TUTORIAL_RECOVER, "recover.instructions"),
            (_A.TUTORIAL_DELETE, InputKind.REPLY, "missing_delete", _A.TUTORIAL_DELETE, None),
            (_A.TUTORIAL_RECOVER, InputKind.RECOVER, "reply_to_recover", _A.TUTORIAL_POLL, "poll.instructions"),
            (_A.TUTORIAL_RECOVER, InputKind.REPLY, "missing_recover", _A.TUTORIAL_RECOVER, None),
            (_A.TUTORIAL_POLL, InputKind.REPLY, "reply_to_poll", _A.TUTORIAL_DETAILS, "details.instructions"),
            (_A.TUTORIAL_DETAILS, InputKind.REPLY, "reply_to_details", _A.END, None),
        ],
        skippable=[
            _A.TUTORIAL_EDIT,
            _A.TUTORIAL_DELETE,
            _A.TUTORIAL_RECOVER,
            _A.TUTORIAL_POLL,
            _A.TUTORIAL_DETAILS,
        ],
    ),
    state_hooks=MappingProxyType(
        {
            _A.TUTORIAL_EDIT.value: "init_tutorial_edit",
            _A.TUTORIAL_RECOVER.value: "init_tutorial_recover",
        }
    ),
)

TRACKS: Mapping[str, TrackDefinition] = MappingProxyType(
    {track.name: track for track in (NEW_USER_TRACK, ADVANCED_USER_TRACK)}
)


__all__ = [
    "ADVANCED_USER_TRACK",
    "AdvancedUserState",
    "NEW_USER_TRACK",
    "NarrativeError",
    "NewUserState",
    "TRACKS",
    "TrackDefinition",
    "TrackDefinitionError",
    "Transition",
]
