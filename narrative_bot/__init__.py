"""Scripted onboarding narratives driven by a discussion-forum bot."""

__version__ = "0.1.0"
