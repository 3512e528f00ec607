"""cron-weather: scheduled weather alert delivery to Telegram chats."""

__version__ = "0.1.0"
