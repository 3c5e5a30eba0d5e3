"""Structural classification of rendered posts.

The inspector never renders markup itself. It reads the HTML the content
service already produced (``Post.cooked``) and, for the count-based
features, prefers the counts cached on the post by the upstream analysis.
"""

from __future__ import annotations

from html.parser import HTMLParser
from typing import Dict, List, Optional, Tuple

from .models import InspectionResult, Post

_VOID_TAGS = {"area", "base", "br", "col", "embed", "hr", "img", "input", "link", "meta", "source", "wbr"}
_FORMATTING_TAGS = {"b", "strong", "em", "i"}
_IGNORED_IMAGE_CLASSES = {"emoji", "avatar", "site-icon", "thumbnail"}
_IGNORED_LINK_CLASSES = {"mention", "mention-group", "hashtag", "lightbox", "onebox"}


class _RenderedPostParser(HTMLParser):
    """Single pass over a rendered fragment collecting the nodes we care about."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._stack: List[Tuple[str, frozenset]] = []
        self._mention_depth: Optional[int] = None
        self._mention_buffer: List[str] = []
        self.mentions: List[str] = []
        self.counts: Dict[str, int] = {
            "onebox": 0,
            "image": 0,
            "link": 0,
            "formatting": 0,
            "quote": 0,
            "emoji": 0,
            "poll": 0,
            "details": 0,
        }

    def _inside(self, css_class: str) -> bool:
        return any(css_class in classes for _, classes in self._stack)

    def handle_starttag(self, tag, attrs):
        attributes = dict(attrs)
        classes = frozenset((attributes.get("class") or "").split())

        if "onebox" in classes and not self._inside("onebox"):
            self.counts["onebox"] += 1
        if "quote" in classes:
            self.counts["quote"] += 1
        if "poll" in classes:
            self.counts["poll"] += 1
        if tag == "details":
            self.counts["details"] += 1
        if tag in _FORMATTING_TAGS:
            self.counts["formatting"] += 1
        if tag == "img":
            if "emoji" in classes:
                self.counts["emoji"] += 1
            elif not (classes & _IGNORED_IMAGE_CLASSES) and not self._inside("onebox"):
                self.counts["image"] += 1
        if tag == "a" and attributes.get("href") and not (classes & _IGNORED_LINK_CLASSES):
            if not self._inside("onebox"):
                self.counts["link"] += 1

        if tag in _VOID_TAGS:
            return
        self._stack.append((tag, classes))
        if "mention" in classes and self._mention_depth is None:
            self._mention_depth = len(self._stack)
            self._mention_buffer = []

    def handle_startendtag(self, tag, attrs):
        self.handle_starttag(tag, attrs)
        if tag not in _VOID_TAGS:
            self.handle_endtag(tag)

    def handle_endtag(self, tag):
        for index in range(len(self._stack) - 1, -1, -1):
            if self._stack[index][0] != tag:
                continue
            if self._mention_depth is not None and index + 1 <= self._mention_depth:
                self.mentions.append("".join(self._mention_buffer).strip())
                self._mention_depth = None
            del self._stack[index:]
            return

    def handle_data(self, data):
        if self._mention_depth is not None:
            self._mention_buffer.append(data)


def _parse(cooked: str) -> _RenderedPostParser:
    parser = _RenderedPostParser()
    parser.feed(cooked or "")
    parser.close()
    return parser


def mentioned_handles(cooked: str) -> List[str]:
    """Return the rendered text of every mention node, e.g. ``["@discobot"]``."""

    return _parse(cooked).mentions


def bot_mentioned(post: Optional[Post], bot_username: str) -> bool:
    if post is None:
        return False
    handle = f"@{bot_username}"
    return any(text == handle for text in mentioned_handles(post.cooked))


def inspect(post: Post, bot_username: str) -> InspectionResult:
    """Classify ``post`` into the features the tutorial steps look for."""

    parser = _parse(post.cooked)
    counts = parser.counts
    onebox_count = post.onebox_count if post.onebox_count is not None else counts["onebox"]
    image_count = post.image_count if post.image_count is not None else counts["image"]
    link_count = post.link_count if post.link_count is not None else counts["link"]
    handle = f"@{bot_username}"
    return InspectionResult(
        bot_mentioned=any(text == handle for text in parser.mentions),
        has_onebox=onebox_count > 0,
        image_count=image_count,
        link_count=link_count,
        has_formatting=counts["formatting"] > 0,
        has_quote=counts["quote"] > 0,
        has_emoji=counts["emoji"] > 0,
        has_poll=counts["poll"] > 0,
        has_details=counts["details"] > 0,
        is_wiki=bool(post.wiki),
    )


__all__ = ["bot_mentioned", "inspect", "mentioned_handles"]
