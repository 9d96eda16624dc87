"""mailgate: an email assistant that pauses for human approval before side effects."""

__version__ = "0.1.0"
