"""Tests for the engine's guard chain, error handling and locking."""
from __future__ import annotations

import pytest

from narrative_bot.engine import (
    GuardOutcome,
    InvalidTransitionError,
    NarrativeEngine,
    Reclassification,
    UserLocks,
)
from narrative_bot.models import InputKind, Session
from narrative_bot.telemetry import MetricType
from narrative_bot.tracks import NEW_USER_TRACK, TrackDefinitionError

MENTION = '<a class="mention" href="/u/discobot">@discobot</a>'


def _session(state: str = "tutorial_onebox", topic_id=77, **fields) -> Session:
    return Session(user_id=42, track="new_user", state=state, topic_id=topic_id, **fields)


def test_init_without_post_proceeds(new_user, user):
    guard = new_user.evaluate_guards(InputKind.INIT, user, None, _session("begin", None))
    assert guard.outcome is GuardOutcome.PROCEED


def test_reply_without_post_is_rejected(new_user, user):
    guard = new_user.evaluate_guards(InputKind.REPLY, user, None, _session())
    assert guard.outcome is GuardOutcome.REJECT


def test_bot_authored_posts_are_rejected(new_user, user, make_post):
    post = make_post(77, "I am the bot", user_id=-2)
    guard = new_user.evaluate_guards(InputKind.REPLY, user, post, _session())
    assert guard.outcome is GuardOutcome.REJECT


def test_reset_trigger_needs_mention_and_known_topic(new_user, user, make_post):
    raw = "@discobot Start New User please"
    in_topic = make_post(77, raw, cooked=f"<p>{MENTION} Start New User please</p>")
    in_hub = make_post(1, raw, cooked=f"<p>{MENTION} Start New User please</p>")
    unmentioned = make_post(77, "start new user")
    elsewhere = make_post(555, raw, cooked=f"<p>{MENTION} Start New User please</p>")

    check = lambda post: new_user.evaluate_guards(InputKind.REPLY, user, post, _session())
    assert check(in_topic).outcome is GuardOutcome.RESET
    assert check(in_hub).outcome is GuardOutcome.RESET
    assert check(unmentioned).outcome is GuardOutcome.PROCEED
    assert check(elsewhere).kind is Reclassification.MENTION


def test_off_topic_reply_to_bot_is_confused(new_user, user, make_post):
    post = make_post(555, "what?", reply_to_user_id=-2)
    guard = new_user.evaluate_guards(InputKind.REPLY, user, post, _session())
    assert guard.outcome is GuardOutcome.RECLASSIFY
    assert guard.kind is Reclassification.CONFUSED


def test_hub_topic_is_exempt_from_reclassification(new_user, user, make_post):
    post = make_post(1, "@discobot hi", cooked=f"<p>{MENTION} hi</p>", reply_to_user_id=-2)
    guard = new_user.evaluate_guards(InputKind.REPLY, user, post, _session())
    assert guard.outcome is GuardOutcome.PROCEED


def test_terminal_state_replies_are_confused(new_user, user, make_post):
    post = make_post(77, "thanks!")
    session = _session("end")
    assert new_user.evaluate_guards(InputKind.REPLY, user, post, session).kind is Reclassification.CONFUSED
    assert new_user.evaluate_guards(InputKind.EDIT, user, post, session).outcome is GuardOutcome.PROCEED


def test_invalid_transition_leaves_session_untouched(new_user, user, make_post, store, telemetry):
    stored = {"track": "new_user", "state": "tutorial_onebox", "topic_id": 77}
    store.set(user.id, stored)

    with pytest.raises(InvalidTransitionError) as excinfo:
        new_user.process(InputKind.EDIT, user, make_post(77, "edited"))

    assert str(excinfo.value) == "No transition from state 'tutorial_onebox' for input 'edit'"
    assert store.get(user.id) == stored
    assert telemetry.summary(MetricType.ERROR_RATE) == {"InvalidTransitionError": 1.0}


def test_post_service_failure_writes_nothing(new_user, user, make_post, store, posts, scheduler):
    stored = {"track": "new_user", "state": "tutorial_images", "topic_id": 77}
    store.set(user.id, stored)

    def broken(*args, **kwargs):
        raise RuntimeError("forum unavailable")

    posts.create_post = broken
    with pytest.raises(RuntimeError):
        new_user.process("reply", user, make_post(77, "cat", cooked='<p><img src="/cat.png"></p>'))

    assert store.get(user.id) == stored
    assert not scheduler.is_armed(user.id)


def test_undeclared_stored_state_is_an_error(new_user, user, store):
    store.set(user.id, {"track": "new_user", "state": "tutorial_dance", "topic_id": 77})
    with pytest.raises(Exception, match="undeclared state"):
        new_user.load_session(user.id)


def test_session_of_other_track_starts_fresh(advanced_user, user, store):
    store.set(user.id, {"track": "new_user", "state": "end", "topic_id": 77, "completed": ["new_user"]})
    session = advanced_user.load_session(user.id)
    assert session.track == "advanced_user"
    assert session.state == "begin"
    assert session.topic_id is None
    assert session.completed == ["new_user"]


def test_engine_validates_its_table(settings, collaborators):
    class Broken(NarrativeEngine):
        track = NEW_USER_TRACK

    with pytest.raises(TrackDefinitionError):
        Broken(settings, **collaborators)


def test_user_locks_are_reentrant_and_released():
    locks = UserLocks()
    with locks.synchronize(1):
        with locks.synchronize(1):
            assert len(locks) == 1
        with locks.synchronize(2):
            assert len(locks) == 2
        assert len(locks) == 1
    assert len(locks) == 0

    disabled = UserLocks(enabled=False)
    with disabled.synchronize(1):
        assert len(disabled) == 0


def test_user_lock_released_after_error():
    locks = UserLocks()
    with pytest.raises(RuntimeError):
        with locks.synchronize(1):
            raise RuntimeError("boom")
    assert len(locks) == 0


def test_events_for_another_tracks_session_are_rejected(new_user, user, make_post, store, posts):
    stored = {
        "track": "advanced_user",
        "state": "tutorial_edit",
        "topic_id": 900,
        "completed": ["new_user"],
        "step_data": {"tutorial_edit": {"post_id": 321}},
    }
    store.set(user.id, stored)
    reply_to_bot = make_post(77, "thanks", reply_to_user_id=-2)

    guard = new_user.evaluate_guards(InputKind.REPLY, user, reply_to_bot, new_user.load_session(user.id))
    assert guard.outcome is GuardOutcome.REJECT

    assert new_user.process("reply", user, reply_to_bot) is None
    assert store.get(user.id) == stored
    assert posts.created == []


def test_consumed_post_is_rejected(new_user, user, make_post):
    post = make_post(77, "again")
    session = _session("tutorial_images", last_user_post_id=post.id)

    assert new_user.evaluate_guards(InputKind.REPLY, user, post, session).outcome is GuardOutcome.REJECT
    assert new_user.evaluate_guards(InputKind.SKIP, user, post, session).outcome is GuardOutcome.REJECT
    fresh = make_post(77, "new one")
    assert new_user.evaluate_guards(InputKind.REPLY, user, fresh, session).outcome is GuardOutcome.PROCEED
