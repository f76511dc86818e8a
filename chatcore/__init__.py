"""Real-time messaging core: sessions, presence, ordered delivery, receipts and typing."""

__version__ = "0.1.0"
