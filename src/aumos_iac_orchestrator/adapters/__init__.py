"""Adapters: external integrations for the orchestration engine.

Contains:
- notifier.py : WebhookNotifier (httpx) and LoggingNotifier
"""

__all__: list[str] = []
