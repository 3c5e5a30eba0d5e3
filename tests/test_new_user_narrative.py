"""Scenario tests for the new user track."""
from __future__ import annotations

from narrative_bot.models import Archetype, InputKind
from narrative_bot.scheduler import TimeoutScheduler

MENTION = '<a class="mention" href="/u/discobot">@discobot</a>'
ONEBOX = '<aside class="onebox"><a href="https://en.wikipedia.org/wiki/Bot">Bot</a></aside>'


def _seed(store, user, state, topic_id=77, **fields):
    store.set(user.id, {"track": "new_user", "state": state, "topic_id": topic_id, **fields})


def test_init_greets_in_welcome_topic(new_user, user, posts, strings, store):
    session = new_user.process(InputKind.INIT, user)

    assert session.state == "waiting_reply"
    hello = posts.bot_posts()[-1]
    assert hello.topic_id == 1
    assert hello.raw in strings.variants(
        "new_user_narrative.hello.messages",
        username="alice",
        title="Test Forum",
        bot_username="discobot",
    )
    assert store.get(user.id)["last_post_id"] == hello.id


def test_reply_in_begin_needs_a_mention(new_user, user, make_post, posts, store):
    assert new_user.process("reply", user, make_post(1, "hello there")) is None
    assert posts.created == []
    assert store.get(user.id) is None

    mentioned = make_post(1, "@discobot hello", cooked=f"<p>{MENTION} hello</p>")
    assert new_user.process("reply", user, mentioned).state == "waiting_reply"
    assert posts.likes == [(-2, mentioned.id)]


def test_quote_user_reply_only_in_welcome_topic(new_user, user, make_post, store, posts):
    _seed(store, user, "waiting_reply", topic_id=None)

    assert new_user.process("reply", user, make_post(300, "hi")) is None
    session = new_user.process("reply", user, make_post(1, "Nice to meet you too"))

    assert session.state == "tutorial_topic"
    assert "> Nice to meet you too" in posts.bot_raws()[-1]


def test_new_topic_binds_topic_and_answers_keyword(new_user, user, make_post, store, posts, strings):
    _seed(store, user, "tutorial_topic", topic_id=None)

    wrong_category = make_post(300, "I love bacon", category_id=9, is_first_post=True)
    assert new_user.process("reply", user, wrong_category) is None

    post = make_post(301, "Honestly, BACON wins", category_id=5, is_first_post=True)
    session = new_user.process("reply", user, post)

    assert session.state == "tutorial_onebox"
    assert session.topic_id == 301
    reply = posts.bot_raws()[-1]
    assert reply.startswith(strings.translate("new_user_narrative.bacon"))
    assert strings.translate("new_user_narrative.onebox.instructions") in reply


def test_onebox_reply_advances_and_rearms_timer(new_user, user, make_post, store, posts, scheduler, strings):
    _seed(store, user, "tutorial_onebox")
    post = make_post(77, "https://en.wikipedia.org/wiki/Bot", cooked=ONEBOX)

    session = new_user.process("reply", user, post)

    assert session.state == "tutorial_images"
    stored = store.get(user.id)
    assert stored["state"] == "tutorial_images"
    assert stored["last_post_id"] == posts.bot_posts()[-1].id
    assert scheduler.is_armed(user.id)
    assert strings.translate("new_user_narrative.images.instructions") in posts.bot_raws()[-1]


def test_missing_content_nudges_once(new_user, user, make_post, store, posts, scheduler, strings):
    _seed(store, user, "tutorial_formatting")

    first = new_user.process("reply", user, make_post(77, "plain"))
    scheduler.cancel(user.id)
    second = new_user.process("reply", user, make_post(77, "still plain"))

    assert first.state == second.state == "tutorial_formatting"
    assert posts.bot_raws() == [strings.translate("new_user_narrative.formatting.not_found")]
    assert store.get(user.id)["attempted"] is True
    assert scheduler.is_armed(user.id)


def test_replayed_event_does_not_repeat_the_transition(new_user, user, make_post, store, posts):
    _seed(store, user, "tutorial_onebox")
    post = make_post(77, "https://en.wikipedia.org/wiki/Bot", cooked=ONEBOX)

    new_user.process("reply", user, post)
    assert new_user.process("reply", user, post) is None

    assert store.get(user.id)["state"] == "tutorial_images"
    assert store.get(user.id)["last_user_post_id"] == post.id
    assert len(posts.bot_posts()) == 1


def test_replayed_post_with_next_feature_does_not_advance_twice(new_user, user, make_post, store, posts):
    _seed(store, user, "tutorial_onebox")
    post = make_post(77, "look", cooked=ONEBOX + '<p><img src="/uploads/cat.png"></p>')

    assert new_user.process("reply", user, post).state == "tutorial_images"
    assert new_user.process("reply", user, post) is None

    assert store.get(user.id)["state"] == "tutorial_images"
    assert len(posts.bot_posts()) == 1


def test_off_topic_mention_gets_playful_reply(new_user, user, make_post, store, posts):
    _seed(store, user, "tutorial_onebox")
    dice = make_post(555, "@discobot roll dice 2d6", cooked=f"<p>{MENTION} roll dice 2d6</p>")
    quote = make_post(556, "@discobot show me a quote", cooked=f"<p>{MENTION} show me a quote</p>")
    other = make_post(557, "@discobot hello", cooked=f"<p>{MENTION} hello</p>")

    assert new_user.process("reply", user, dice) is None
    assert new_user.process("reply", user, quote) is None
    assert new_user.process("reply", user, other) is None

    dice_reply, quote_reply, generic = posts.bot_raws()
    assert dice_reply.startswith(":game_die:")
    assert len(dice_reply.split(":game_die:")[1].split(",")) == 2
    assert quote_reply.startswith(">")
    assert "roll dice 2d6" in generic
    assert store.get(user.id)["state"] == "tutorial_onebox"
    assert {post_id for _, post_id in posts.likes} == {dice.id, quote.id, other.id}


def test_terminal_state_confused_replies(new_user, user, make_post, store, posts, strings):
    _seed(store, user, "end", completed=["new_user"])

    for text in ("thanks", "what next?", "hello?"):
        new_user.process("reply", user, make_post(77, text))

    assert posts.bot_raws() == [
        strings.translate("do_not_understand.first_response"),
        strings.translate("do_not_understand.second_response"),
    ]
    assert store.get(user.id)["do_not_understand_count"] == 3


def test_private_message_completes_the_track(new_user, user, make_post, store, posts, scheduler, strings):
    _seed(store, user, "tutorial_pm", last_post_id=1234, attempted=True)
    scheduler.arm(user, "new_user")
    pm = make_post(600, "psst", archetype=Archetype.PRIVATE_MESSAGE, allowed_user_ids=(42, -2))

    session = new_user.process("reply", user, pm)

    pm_reply, closing = posts.bot_posts()
    assert store.get(user.id) == {
        "track": "new_user",
        "state": "end",
        "topic_id": 77,
        "last_post_id": pm_reply.id,
        "last_user_post_id": pm.id,
        "completed": ["new_user"],
    }
    assert session.state == "end"
    assert pm_reply.topic_id == 600
    assert closing.topic_id == 77
    assert closing.raw == strings.translate(
        "new_user_narrative.end.message",
        username="alice",
        category_slug="bot-tutorial",
        bot_username="discobot",
    )
    assert not scheduler.is_armed(user.id)


def test_private_message_without_bot_is_ignored(new_user, user, make_post, store):
    _seed(store, user, "tutorial_pm")
    pm = make_post(600, "psst", archetype=Archetype.PRIVATE_MESSAGE, allowed_user_ids=(42, 7))
    assert new_user.process("reply", user, pm) is None
    assert store.get(user.id)["state"] == "tutorial_pm"


def test_skipping_to_the_end(new_user, user, make_post, store, posts):
    _seed(store, user, "tutorial_onebox")

    state = "tutorial_onebox"
    while state != "end":
        state = new_user.process(InputKind.SKIP, user, make_post(77, "@discobot skip")).state

    assert store.get(user.id)["completed"] == ["new_user"]
    # one instructions post per skipped step except the last, then the closing reply
    assert len(posts.bot_posts()) == 8


def test_reset_in_bound_topic_clears_and_reinitialises(new_user, user, make_post, store, posts, queue, scheduler, strings):
    _seed(store, user, "tutorial_images", completed=["advanced_user"])
    scheduler.arm(user, "new_user")
    scheduler.on_init = lambda who, track: new_user.process(InputKind.INIT, who)
    trigger = make_post(77, "@discobot start new user", cooked=f"<p>{MENTION} start new user</p>")

    assert new_user.process("reply", user, trigger) is None

    assert store.get(user.id) is None
    assert not scheduler.is_armed(user.id)
    assert posts.bot_raws() == [strings.translate("new_user_narrative.reset.message", topic_id=1)]
    assert queue.get(TimeoutScheduler.init_key(user.id)) is not None

    queue.fire(TimeoutScheduler.init_key(user.id))
    assert store.get(user.id)["state"] == "waiting_reply"
    assert posts.bot_posts()[-1].topic_id == 1


def test_reset_in_welcome_topic_uses_welcome_message(new_user, user, make_post, store, posts, strings):
    _seed(store, user, "tutorial_images")
    trigger = make_post(1, "@discobot start new user", cooked=f"<p>{MENTION} start new user</p>")

    new_user.process("reply", user, trigger)

    assert posts.bot_raws() == [strings.translate("new_user_narrative.reset.welcome_topic_message")]


def test_timeout_reminder_replies_to_last_post(new_user, user, make_post, store, posts, dispatcher):
    last = dispatcher.reply("Now add an image", topic_id=77)
    _seed(store, user, "tutorial_images", last_post_id=last.id)

    reminder = new_user.notify_timeout(user)
    again = new_user.notify_timeout(user)

    assert reminder is not again
    assert reminder.topic_id == 77
    assert "start new user" in reminder.raw
    assert posts.create_calls[-1]["reply_to_post_number"] == last.post_number
    assert store.get(user.id) == {
        "track": "new_user",
        "state": "tutorial_images",
        "topic_id": 77,
        "last_post_id": last.id,
    }


def test_timeout_tolerates_stale_references(new_user, user, store, posts):
    _seed(store, user, "tutorial_images", last_post_id=999999)
    assert new_user.notify_timeout(user) is None

    _seed(store, user, "end")
    assert new_user.notify_timeout(user) is None
    assert posts.created == []
