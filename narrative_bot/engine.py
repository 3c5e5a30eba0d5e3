"""Generic interpreter shared by every onboarding track.

A concrete narrative subclasses :class:`NarrativeEngine`, points ``track`` at
its :class:`~narrative_bot.tracks.TrackDefinition` and implements the actions
the table names. The engine owns the session: it loads it, runs the guard
chain, looks up the transition, hands the action a working copy and writes
that copy back only once the action has returned.
"""
from __future__ import annotations

import logging
import random
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from .config import Settings
from .dice import Dice
from .dispatcher import ReplyDispatcher
from .inspector import bot_mentioned, inspect
from .models import InputKind, InspectionResult, Post, Session, User
from .scheduler import TimeoutScheduler
from .store import SessionStore
from .strings import StringLibrary
from .telemetry import TelemetryCollector, get_telemetry
from .tracks import NarrativeError, TrackDefinition, Transition

logger = logging.getLogger(__name__)

_DICE_PATTERN = re.compile(r"roll dice (\d+)d(\d+)", re.IGNORECASE)
_QUOTE_PATTERN = re.compile(r"show me a quote", re.IGNORECASE)

SHARED_STRING_KEYS: Tuple[str, ...] = (
    "timeout.message",
    "do_not_understand.first_response",
    "do_not_understand.second_response",
    "random_mention.message",
    "random_mention.dice",
    "random_mention.quote",
    "quotes",
    "track_selector.cannot_start_advanced",
)


class InvalidTransitionError(NarrativeError):
    """Raised when no table entry exists for the session state and input."""

    def __init__(self, state: str, input_kind: InputKind | str) -> None:
        kind = input_kind.value if isinstance(input_kind, InputKind) else str(input_kind)
        super().__init__(f"No transition from state '{state}' for input '{kind}'")
        self.state = state
        self.input_kind = kind


class GuardOutcome(str, Enum):
    PROCEED = "proceed"
    RESET = "reset"
    RECLASSIFY = "reclassify"
    REJECT = "reject"


class Reclassification(str, Enum):
    """Out-of-band handling chosen by the guard chain."""

    MENTION = "mention"
    CONFUSED = "confused"


@dataclass(frozen=True)
class GuardResult:
    outcome: GuardOutcome
    kind: Optional[Reclassification] = None
    reason: str = ""

    @classmethod
    def proceed(cls) -> "GuardResult":
        return cls(GuardOutcome.PROCEED)

    @classmethod
    def reset(cls) -> "GuardResult":
        return cls(GuardOutcome.RESET)

    @classmethod
    def reclassify(cls, kind: Reclassification) -> "GuardResult":
        return cls(GuardOutcome.RECLASSIFY, kind=kind)

    @classmethod
    def reject(cls, reason: str) -> "GuardResult":
        return cls(GuardOutcome.REJECT, reason=reason)


class ActionOutcome(str, Enum):
    ADVANCED = "advanced"
    CONTENT_MISSING = "content_missing"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ActionResult:
    """What an action reports back to the engine.

    ``advanced`` carries the post the bot created (or ``None`` when the step
    was passed without a reply); ``content_missing`` means the expected
    feature was absent and at most one nudge went out; ``ignored`` means
    the event did not concern this step and nothing is written.
    """

    outcome: ActionOutcome
    post: Optional[Post] = None

    @classmethod
    def advanced(cls, post: Optional[Post] = None) -> "ActionResult":
        return cls(ActionOutcome.ADVANCED, post)

    @classmethod
    def content_missing(cls) -> "ActionResult":
        return cls(ActionOutcome.CONTENT_MISSING)

    @classmethod
    def ignored(cls) -> "ActionResult":
        return cls(ActionOutcome.IGNORED)


@dataclass
class EventContext:
    """Everything one action invocation may look at or change."""

    user: User
    post: Optional[Post]
    input_kind: InputKind
    session: Session
    transition: Transition


class _LockEntry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        # threads holding or waiting for ``lock``
        self.holders = 0


class UserLocks:
    """Serialises event handling per user id; a no-op when disabled.

    A user's lock only exists while some thread holds or waits for it.
    """

    def __init__(self, enabled: bool = True) -> None:
        self._enabled = enabled
        self._locks: Dict[int, _LockEntry] = {}
        self._registry = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def __len__(self) -> int:
        with self._registry:
            return len(self._locks)

    def _acquire_entry(self, user_id: int) -> _LockEntry:
        with self._registry:
            entry = self._locks.get(user_id)
            if entry is None:
                entry = self._locks[user_id] = _LockEntry()
            entry.holders += 1
            return entry

    def _release_entry(self, user_id: int, entry: _LockEntry) -> None:
        with self._registry:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[user_id]

    @contextmanager
    def synchronize(self, user_id: int) -> Iterator[None]:
        if not self._enabled:
            yield
            return
        user_id = int(user_id)
        entry = self._acquire_entry(user_id)
        try:
            with entry.lock:
                yield
        finally:
            self._release_entry(user_id, entry)


class NarrativeEngine:
    """Drives one track's transition table for any number of users."""

    track: TrackDefinition
    # Track that has to be completed before this one may start.
    requires: Optional[str] = None
    # Track-relative string keys the actions translate, besides instructions.
    string_keys: Tuple[str, ...] = ()

    def __init__(
        self,
        settings: Settings,
        *,
        store: SessionStore,
        strings: StringLibrary,
        dispatcher: ReplyDispatcher,
        scheduler: TimeoutScheduler,
        telemetry: Optional[TelemetryCollector] = None,
        locks: Optional[UserLocks] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.track.validate(self)
        self.settings = settings
        self.store = store
        self.strings = strings
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.telemetry = telemetry or get_telemetry()
        self.locks = locks or UserLocks(enabled=not settings.fast_mode)
        self._rng = rng
        self._actions: Dict[str, Callable[[EventContext], ActionResult]] = {
            rule.action: getattr(self, rule.action) for rule in self.track.transitions.values()
        }
        self._hooks: Dict[str, Callable[[EventContext], Any]] = {
            state: getattr(self, hook) for state, hook in self.track.state_hooks.items()
        }

    @property
    def name(self) -> str:
        return self.track.name

    @property
    def bot_username(self) -> str:
        return self.dispatcher.bot_user.username

    @property
    def hub_topic_id(self) -> Optional[int]:
        return self.settings.welcome_topic_id

    # Public surface -----------------------------------------------------

    def process(
        self, input_kind: InputKind | str, user: User, post: Optional[Post] = None
    ) -> Optional[Session]:
        """Handle one classified event; return the committed session, if any."""

        kind = InputKind(input_kind)
        with self.locks.synchronize(user.id):
            session = self.load_session(user.id)
            try:
                return self._dispatch(kind, user, post, session)
            except InvalidTransitionError as exc:
                logger.warning("User %s: %s", user.id, exc)
                self.telemetry.track_error(type(exc).__name__, self.name, user.id, str(exc))
                raise
            except Exception as exc:
                logger.exception("Failed to process %s for user %s", kind.value, user.id)
                self.telemetry.track_error(type(exc).__name__, self.name, user.id, str(exc))
                raise

    def notify_timeout(self, user: User) -> Optional[Post]:
        """Post the inactivity reminder under the session's last bot post."""

        with self.locks.synchronize(user.id):
            data = self.store.get(user.id)
            session = Session.from_dict(user.id, data) if data else None
            if (
                session is None
                or session.track != self.name
                or self.track.is_terminal(session.state)
            ):
                logger.info("Dropping stale %s timeout for user %s", self.name, user.id)
                self.telemetry.track_timeout(self.name, user.id, delivered=False)
                return None

            post = self.dispatcher.find(session.last_post_id)
            if post is None:
                logger.warning(
                    "Timeout for user %s references missing post %s",
                    user.id,
                    session.last_post_id,
                )
                self.telemetry.track_timeout(self.name, user.id, delivered=False)
                return None

            raw = self.strings.translate(
                "timeout.message",
                username=user.username,
                bot_username=self.bot_username,
                reset_trigger=self.track.reset_trigger,
            )
            reply = self.dispatcher.reply(
                raw, topic_id=post.topic_id, reply_to=post, dedupe=False
            )
            logger.info("Sent %s timeout reminder to user %s", self.name, user.id)
            self.telemetry.track_timeout(self.name, user.id, delivered=True)
            return reply

    def initialize(self, user: User) -> Optional[Session]:
        """Run a scheduled INIT unless the user has moved on since it was queued."""

        with self.locks.synchronize(user.id):
            data = self.store.get(user.id)
            owner = data.get("track") if data else None
            state = data.get("state") if data else None
            if owner and (owner != self.name or state != self.track.initial_state):
                logger.info(
                    "Dropping stale %s init for user %s (session is %s/%s)",
                    self.name,
                    user.id,
                    owner,
                    state,
                )
                return None
            return self.process(InputKind.INIT, user)

    def can_start(self, user: User) -> bool:
        if self.requires is None:
            return True
        data = self.store.get(user.id) or {}
        return self.requires in (data.get("completed") or [])

    def reset(self, user: User, post: Optional[Post] = None) -> Optional[Session]:
        """Clear the user's progress and schedule the track to start again."""

        with self.locks.synchronize(user.id):
            return self._reset(user, post, self.load_session(user.id))

    def load_session(self, user_id: int) -> Session:
        data = self.store.get(user_id)
        if not data:
            return Session.fresh(user_id, self.name)
        session = Session.from_dict(user_id, data)
        if session.track != self.name:
            return Session.fresh(user_id, self.name, session.completed)
        if not self.track.is_declared(session.state):
            raise NarrativeError(
                f"Stored session for user {user_id} has undeclared state '{session.state}'"
            )
        return session

    def evaluate_guards(
        self, kind: InputKind, user: User, post: Optional[Post], session: Session
    ) -> GuardResult:
        if post is None:
            if kind is InputKind.INIT:
                return GuardResult.proceed()
            return GuardResult.reject(f"{kind.value} event without a post")
        if post.user_id == self.settings.bot_user_id:
            return GuardResult.reject("post authored by the bot")
        owner = self._stored_track(user.id)
        if owner is not None and owner != self.name:
            return GuardResult.reject(f"session belongs to the {owner} track")
        if (
            kind in (InputKind.REPLY, InputKind.SKIP)
            and session.last_user_post_id is not None
            and post.id == session.last_user_post_id
        ):
            return GuardResult.reject(f"post {post.id} was already consumed")

        bound = session.topic_id is not None and post.topic_id == session.topic_id
        in_hub = self.hub_topic_id is not None and post.topic_id == self.hub_topic_id
        mentioned = bot_mentioned(post, self.bot_username)

        if (
            kind is InputKind.REPLY
            and mentioned
            and (bound or in_hub)
            and self.track.reset_trigger.lower() in (post.raw or "").lower()
        ):
            return GuardResult.reset()
        if not bound and not in_hub:
            if mentioned:
                return GuardResult.reclassify(Reclassification.MENTION)
            if post.reply_to_user_id == self.settings.bot_user_id:
                return GuardResult.reclassify(Reclassification.CONFUSED)
        elif bound and self.track.is_terminal(session.state) and kind is InputKind.REPLY:
            return GuardResult.reclassify(Reclassification.CONFUSED)
        return GuardResult.proceed()

    # Dispatch -----------------------------------------------------------

    def _dispatch(
        self, kind: InputKind, user: User, post: Optional[Post], session: Session
    ) -> Optional[Session]:
        guard = self.evaluate_guards(kind, user, post, session)
        if guard.outcome is GuardOutcome.REJECT:
            logger.debug("Ignoring %s from user %s: %s", kind.value, user.id, guard.reason)
            return None
        if guard.outcome is GuardOutcome.RESET:
            return self._reset(user, post, session)
        if guard.outcome is GuardOutcome.RECLASSIFY:
            logger.debug("Reclassified %s from user %s as %s", kind.value, user.id, guard.kind.value)
            self.telemetry.track_reclassification(self.name, guard.kind.value, user.id)
            if guard.kind is Reclassification.MENTION:
                self.mention_replies(post)
                return None
            return self.generic_replies(post, session)

        transition = self.track.lookup(session.state, kind)
        if transition is None:
            raise InvalidTransitionError(session.state, kind)
        return self._run(transition, kind, user, post, session)

    def _run(
        self,
        transition: Transition,
        kind: InputKind,
        user: User,
        post: Optional[Post],
        session: Session,
    ) -> Optional[Session]:
        working = session.copy()
        context = EventContext(user, post, kind, working, transition)
        result = self._actions[transition.action](context)

        if result.outcome is ActionOutcome.IGNORED:
            logger.debug("%s ignored %s from user %s", transition.action, kind.value, user.id)
            return None

        if result.outcome is ActionOutcome.CONTENT_MISSING:
            self.telemetry.track_nudge(self.name, session.state, user.id, sent=not session.attempted)
            working.attempted = True
            self._commit(working)
            self.scheduler.arm(user, self.name)
            return working

        working.state = transition.next_state
        working.attempted = False
        if result.post is not None:
            working.last_post_id = result.post.id
        if post is not None:
            working.last_user_post_id = post.id
        self.telemetry.track_transition(
            self.name, session.state, working.state, user.id, kind.value
        )
        logger.info(
            "User %s moved %s -> %s on %s track", user.id, session.state, working.state, self.name
        )

        if self.track.is_terminal(working.state):
            return self._finish(context, working)

        hook = self._hooks.get(working.state)
        if hook is not None:
            hook(context)
        self._commit(working)
        self.scheduler.arm(user, self.name)
        return working

    def _finish(self, context: EventContext, working: Session) -> Session:
        completed = list(working.completed)
        if self.name not in completed:
            completed.append(self.name)
        finished = Session(
            user_id=working.user_id,
            track=self.name,
            state=self.track.terminal_state,
            topic_id=working.topic_id,
            last_post_id=working.last_post_id,
            last_user_post_id=working.last_user_post_id,
            do_not_understand_count=working.do_not_understand_count,
            completed=completed,
        )
        context.session = finished
        self._commit(finished)
        self.end_reply(context)
        self.scheduler.cancel(working.user_id)
        self.telemetry.track_completion(self.name, working.user_id)
        logger.info("User %s completed the %s track", working.user_id, self.name)
        return finished

    def _reset(self, user: User, post: Optional[Post], session: Session) -> Optional[Session]:
        replacement = self.reset_session(user, post, session)
        self.store.set(user.id, replacement.to_dict() if replacement is not None else None)
        self.scheduler.cancel(user.id)
        self.telemetry.track_reset(self.name, user.id)
        logger.info("Reset %s track for user %s", self.name, user.id)
        if post is not None:
            self.acknowledge_reset(user, post, session)
        self.scheduler.schedule_init(user, self.name)
        return replacement

    def _stored_track(self, user_id: int) -> Optional[str]:
        data = self.store.get(user_id)
        return (data.get("track") or None) if data else None

    def _commit(self, session: Session) -> None:
        self.store.set(session.user_id, session.to_dict())

    # Track hooks with default behaviour ---------------------------------

    def reset_session(
        self, user: User, post: Optional[Post], session: Session
    ) -> Optional[Session]:
        """Session to keep after a reset; ``None`` clears it entirely."""

        return None

    def acknowledge_reset(self, user: User, post: Post, session: Session) -> None:
        pass

    def end_reply(self, context: EventContext) -> Optional[Post]:
        raise NotImplementedError

    # Out-of-band replies ------------------------------------------------

    def generic_replies(self, post: Post, session: Session) -> Session:
        working = session.copy()
        count = working.do_not_understand_count
        key = {0: "first_response", 1: "second_response"}.get(count)
        if key is not None:
            self.dispatcher.pace()
            self.dispatcher.reply(
                self.strings.translate(f"do_not_understand.{key}"),
                topic_id=post.topic_id,
                reply_to=post,
            )
        working.do_not_understand_count = count + 1
        self._commit(working)
        return working

    def mention_replies(self, post: Post) -> Post:
        raw = post.raw or ""
        dice = _DICE_PATTERN.search(raw)
        if dice:
            rolls = Dice(int(dice.group(1)), int(dice.group(2)), rng=self._rng).roll()
            text = self.strings.translate(
                "random_mention.dice", results=", ".join(str(roll) for roll in rolls)
            )
        elif _QUOTE_PATTERN.search(raw):
            quote, author = self.random_quote()
            text = self.strings.translate("random_mention.quote", quote=quote, author=author)
        else:
            text = self.strings.translate("random_mention.message", bot_username=self.bot_username)

        self.dispatcher.like(post)
        self.dispatcher.pace()
        return self.dispatcher.reply(text, topic_id=post.topic_id, reply_to=post)

    def random_quote(self) -> Tuple[str, str]:
        entry = self.strings.choose("quotes", rng=self._rng)
        quote, _, author = entry.partition("|")
        return quote.strip(), author.strip()

    # Helpers for actions ------------------------------------------------

    def key(self, suffix: str) -> str:
        return f"{self.track.i18n_prefix}.{suffix}"

    def translate(self, suffix: str, **named_args: Any) -> str:
        return self.strings.translate(self.key(suffix), **named_args)

    def template_args(self, user: User) -> Dict[str, Any]:
        """Placeholders every track string may use."""

        return {
            "username": user.username,
            "bot_username": self.bot_username,
            "title": self.settings.site_title,
            "category_slug": self.settings.category_slug,
            "topic_id": self.hub_topic_id,
        }

    def instructions(self, context: EventContext) -> str:
        key = context.transition.next_instructions_key
        if not key:
            return ""
        return self.translate(key, **self.template_args(context.user))

    @staticmethod
    def compose(*parts: str) -> str:
        return "\n\n".join(part for part in parts if part)

    def inspect(self, context: EventContext) -> InspectionResult:
        return inspect(context.post, self.bot_username)

    @staticmethod
    def in_bound_topic(context: EventContext) -> bool:
        return (
            context.post is not None
            and context.session.topic_id is not None
            and context.post.topic_id == context.session.topic_id
        )

    def reply_to(self, context: EventContext, raw: str, **options: Any) -> Post:
        post = context.post
        self.dispatcher.pace()
        return self.dispatcher.reply(raw, topic_id=post.topic_id, reply_to=post, **options)

    def like(self, context: EventContext) -> None:
        if context.post is not None:
            self.dispatcher.like(context.post)

    def nudge(self, context: EventContext, raw: str) -> ActionResult:
        """Reply with ``raw`` once per step; later misses only re-arm the timer."""

        if not context.session.attempted:
            self.reply_to(context, raw)
        return ActionResult.content_missing()

    def feature_step(
        self,
        context: EventContext,
        step: str,
        present: Callable[[InspectionResult], bool],
        *,
        like: bool = True,
    ) -> ActionResult:
        """Advance when the reply shows the feature ``step`` teaches."""

        if not self.in_bound_topic(context):
            return ActionResult.ignored()
        args = self.template_args(context.user)
        if not present(self.inspect(context)):
            return self.nudge(context, self.translate(f"{step}.not_found", **args))
        if like:
            self.like(context)
        raw = self.compose(self.translate(f"{step}.reply", **args), self.instructions(context))
        return ActionResult.advanced(self.reply_to(context, raw))

    def skip_step(self, context: EventContext) -> ActionResult:
        if not self.in_bound_topic(context):
            return ActionResult.ignored()
        instructions = self.instructions(context)
        if not instructions:
            return ActionResult.advanced()
        return ActionResult.advanced(self.reply_to(context, instructions))


__all__ = [
    "ActionOutcome",
    "ActionResult",
    "EventContext",
    "GuardOutcome",
    "GuardResult",
    "InvalidTransitionError",
    "NarrativeEngine",
    "Reclassification",
    "SHARED_STRING_KEYS",
    "UserLocks",
]
