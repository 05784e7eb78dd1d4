"""Post-rebalance notifiers."""

from rebalancer.notify.notifier import LogNotifier, Notifier, WebhookNotifier

__all__ = ["LogNotifier", "Notifier", "WebhookNotifier"]
