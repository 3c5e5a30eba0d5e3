"""Advanced track run in a private message: edit, delete, recover, poll, details."""
from __future__ import annotations

import logging
from typing import Optional

from ..engine import ActionResult, EventContext, NarrativeEngine
from ..models import Archetype, Post, Session, User
from ..tracks import ADVANCED_USER_TRACK, NEW_USER_TRACK

logger = logging.getLogger(__name__)


class AdvancedUserNarrative(NarrativeEngine):
    track = ADVANCED_USER_TRACK
    requires = NEW_USER_TRACK.name
    string_keys = (
        "title",
        "start_message",
        "edit.bot_created_post_raw",
        "edit.reply",
        "edit.not_found",
        "delete.reply",
        "delete.not_found",
        "recover.deleted_post_raw",
        "recover.reply",
        "recover.not_found",
        "poll.reply",
        "poll.not_found",
        "details.reply",
        "details.not_found",
        "end.message",
    )

    def reset_session(
        self, user: User, post: Optional[Post], session: Session
    ) -> Optional[Session]:
        fresh = Session.fresh(user.id, self.name, session.completed)
        if post is not None and self._private_with_bot(post):
            fresh.topic_id = post.topic_id
        return fresh

    def _private_with_bot(self, post: Post) -> bool:
        return post.is_private_message and self.settings.bot_user_id in post.allowed_user_ids

    # State hooks --------------------------------------------------------

    def init_tutorial_edit(self, context: EventContext) -> Post:
        self.dispatcher.pace()
        practice = self.dispatcher.create_as(
            context.user,
            self.translate("edit.bot_created_post_raw", bot_username=self.bot_username),
            topic_id=context.session.topic_id,
        )
        context.session.set_step_data("post_id", practice.id)
        return practice

    def init_tutorial_recover(self, context: EventContext) -> Post:
        practice = self.dispatcher.create_as(
            context.user,
            self.translate("recover.deleted_post_raw", bot_username=self.bot_username),
            topic_id=context.session.topic_id,
        )
        context.session.set_step_data("post_id", practice.id)
        self.dispatcher.destroy(practice, actor=context.user)
        return practice

    # Actions ------------------------------------------------------------

    def start_advanced_track(self, context: EventContext) -> ActionResult:
        user = context.user
        raw = self.compose(
            self.translate("start_message", username=user.username), self.instructions(context)
        )
        topic_id = context.session.topic_id
        post = context.post
        if (
            topic_id is None
            and post is not None
            and post.is_private_message
            and user.id in post.allowed_user_ids
        ):
            topic_id = post.topic_id

        self.dispatcher.pace()
        if topic_id is None:
            reply = self.dispatcher.reply(
                raw,
                topic_id=None,
                title=self.translate("title"),
                archetype=Archetype.PRIVATE_MESSAGE,
                target_usernames=(user.username,),
            )
        else:
            reply = self.dispatcher.reply(raw, topic_id=topic_id, reply_to=post)
        context.session.topic_id = reply.topic_id
        return ActionResult.advanced(reply)

    def reply_to_edit(self, context: EventContext) -> ActionResult:
        if not self.in_bound_topic(context):
            return ActionResult.ignored()
        raw = self.compose(self.translate("edit.reply"), self.instructions(context))
        return ActionResult.advanced(self.reply_to(context, raw))

    def missing_edit(self, context: EventContext) -> ActionResult:
        post_id = context.session.get_step_data("post_id")
        if not self.in_bound_topic(context) or post_id == context.post.id:
            return ActionResult.ignored()
        practice = self.dispatcher.find(post_id)
        url = practice.url if practice is not None else f"/t/{context.session.topic_id}"
        return self.nudge(context, self.translate("edit.not_found", url=url))

    def reply_to_delete(self, context: EventContext) -> ActionResult:
        if not self.in_bound_topic(context):
            return ActionResult.ignored()
        raw = self.compose(self.translate("delete.reply"), self.instructions(context))
        self.dispatcher.pace()
        # The deleted post cannot be replied to, so answer in the topic.
        return ActionResult.advanced(self.dispatcher.reply(raw, topic_id=context.post.topic_id))

    def missing_delete(self, context: EventContext) -> ActionResult:
        if not self.in_bound_topic(context):
            return ActionResult.ignored()
        return self.nudge(context, self.translate("delete.not_found"))

    def reply_to_recover(self, context: EventContext) -> ActionResult:
        if not self.in_bound_topic(context):
            return ActionResult.ignored()
        raw = self.compose(self.translate("recover.reply"), self.instructions(context))
        self.dispatcher.pace()
        return ActionResult.advanced(self.dispatcher.reply(raw, topic_id=context.post.topic_id))

    def missing_recover(self, context: EventContext) -> ActionResult:
        post_id = context.session.get_step_data("post_id")
        if not self.in_bound_topic(context) or post_id is None or post_id == context.post.id:
            return ActionResult.ignored()
        return self.nudge(context, self.translate("recover.not_found"))

    def reply_to_poll(self, context: EventContext) -> ActionResult:
        return self.feature_step(context, "poll", lambda found: found.has_poll, like=False)

    def reply_to_details(self, context: EventContext) -> ActionResult:
        return self.feature_step(context, "details", lambda found: found.has_details, like=False)

    def end_reply(self, context: EventContext) -> Optional[Post]:
        raw = self.translate("end.message")
        if context.post is None:
            self.dispatcher.pace()
            return self.dispatcher.reply(raw, topic_id=context.session.topic_id)
        return self.reply_to(context, raw)


__all__ = ["AdvancedUserNarrative"]
