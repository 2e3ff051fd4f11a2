"""BookMail: daily book lessons by email."""

__version__ = "0.1.0"
