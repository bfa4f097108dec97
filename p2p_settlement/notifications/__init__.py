from p2p_settlement.notifications.notifier import LoggingNotifier, Notifier, TelegramNotifier

__all__ = ["Notifier", "TelegramNotifier", "LoggingNotifier"]
