"""Bot hosting: deploy and supervise WhatsApp bots on Heroku from Telegram."""

__version__ = "1.0.0"
