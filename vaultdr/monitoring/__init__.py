"""Notifications for vaultdr."""

from .alerts import Notifier

__all__ = ["Notifier"]
