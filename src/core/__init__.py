"""Core domain package for krisha-bot.

Core contains scan orchestration, deduplication and the conversation state
machine without any Telegram, Redis or HTTP specific code, keeping the
business logic portable.
"""
