"""Base onboarding track: hello, first topic and the posting basics."""
from __future__ import annotations

import logging
import re
from typing import Optional

from ..engine import ActionResult, EventContext, NarrativeEngine
from ..models import InputKind, Post, Session, User
from ..tracks import NEW_USER_TRACK

logger = logging.getLogger(__name__)

_TOPIC_KEYWORDS = re.compile(r"(unicorn|bacon|ninja|monkey)", re.IGNORECASE)


class NewUserNarrative(NarrativeEngine):
    """Walks a newcomer from the welcome topic to their first private message."""

    track = NEW_USER_TRACK
    string_keys = (
        "hello.messages",
        "quote_user_reply",
        "unicorn",
        "bacon",
        "ninja",
        "monkey",
        "onebox.reply",
        "onebox.not_found",
        "images.reply",
        "images.not_found",
        "formatting.reply",
        "formatting.not_found",
        "quoting.reply",
        "quoting.not_found",
        "emoji.reply",
        "emoji.not_found",
        "mention.reply",
        "mention.not_found",
        "link.reply",
        "link.not_found",
        "pm.message",
        "end.message",
        "reset.message",
        "reset.welcome_topic_message",
    )

    def say_hello(self, context: EventContext) -> ActionResult:
        raw = self.strings.choose(
            self.key("hello.messages"), rng=self._rng, **self.template_args(context.user)
        )
        if context.input_kind is InputKind.INIT:
            if self.hub_topic_id is None:
                logger.warning("No welcome topic configured; cannot greet user %s", context.user.id)
                return ActionResult.ignored()
            return ActionResult.advanced(self.dispatcher.reply(raw, topic_id=self.hub_topic_id))

        if not self.inspect(context).bot_mentioned:
            return ActionResult.ignored()
        self.like(context)
        return ActionResult.advanced(self.reply_to(context, raw))

    def quote_user_reply(self, context: EventContext) -> ActionResult:
        post = context.post
        if post.topic_id != self.hub_topic_id:
            return ActionResult.ignored()
        raw = self.translate(
            "quote_user_reply",
            username=context.user.username,
            post_raw=post.raw,
            category_slug=self.settings.category_slug,
            topic_id=post.topic_id,
            post_id=post.id,
        )
        self.like(context)
        return ActionResult.advanced(self.reply_to(context, raw))

    def reply_to_topic(self, context: EventContext) -> ActionResult:
        post = context.post
        if post.category_id != self.settings.category_id or not post.is_first_post:
            return ActionResult.ignored()
        context.session.topic_id = post.topic_id

        match = _TOPIC_KEYWORDS.search(post.raw or "")
        if match is None:
            return ActionResult.ignored()
        raw = self.compose(self.translate(match.group(1).lower()), self.instructions(context))
        self.like(context)
        return ActionResult.advanced(self.reply_to(context, raw))

    def reply_to_onebox(self, context: EventContext) -> ActionResult:
        return self.feature_step(context, "onebox", lambda found: found.has_onebox)

    def reply_to_image(self, context: EventContext) -> ActionResult:
        return self.feature_step(context, "images", lambda found: found.image_count > 0)

    def reply_to_formatting(self, context: EventContext) -> ActionResult:
        return self.feature_step(context, "formatting", lambda found: found.has_formatting)

    def reply_to_quote(self, context: EventContext) -> ActionResult:
        return self.feature_step(context, "quoting", lambda found: found.has_quote)

    def reply_to_emoji(self, context: EventContext) -> ActionResult:
        return self.feature_step(context, "emoji", lambda found: found.has_emoji)

    def reply_to_mention(self, context: EventContext) -> ActionResult:
        return self.feature_step(context, "mention", lambda found: found.bot_mentioned)

    def reply_to_link(self, context: EventContext) -> ActionResult:
        return self.feature_step(context, "link", lambda found: found.link_count > 0)

    def reply_to_pm(self, context: EventContext) -> ActionResult:
        post = context.post
        if not post.is_private_message or self.settings.bot_user_id not in post.allowed_user_ids:
            return ActionResult.ignored()
        self.like(context)
        return ActionResult.advanced(self.reply_to(context, self.translate("pm.message")))

    def end_reply(self, context: EventContext) -> Optional[Post]:
        self.dispatcher.pace()
        return self.dispatcher.reply(
            self.translate("end.message", **self.template_args(context.user)),
            topic_id=context.session.topic_id,
        )

    def acknowledge_reset(self, user: User, post: Post, session: Session) -> None:
        if post.topic_id == self.hub_topic_id and post.topic_id != session.topic_id:
            raw = self.translate("reset.welcome_topic_message")
        else:
            raw = self.translate("reset.message", topic_id=self.hub_topic_id)
        self.dispatcher.pace()
        self.dispatcher.reply(raw, topic_id=post.topic_id, reply_to=post)


__all__ = ["NewUserNarrative"]
