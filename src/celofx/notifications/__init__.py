"""Ops notifications (webhook and Telegram)."""

from celofx.notifications.dispatcher import BackgroundDispatcher, OpsNotifier
from celofx.notifications.telegram import TelegramNotifier

__all__ = ["BackgroundDispatcher", "OpsNotifier", "TelegramNotifier"]
