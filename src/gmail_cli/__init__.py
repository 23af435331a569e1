"""gmail-cli - Gmail from the terminal with managed OAuth sessions."""

__version__ = "0.1.0"
