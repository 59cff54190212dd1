"""waswarm: run many WhatsApp accounts from one process."""

__version__ = "0.1.0"
