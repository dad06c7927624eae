class ConsultationError(Exception):
    """Raised when a live consultation operation cannot proceed."""


class InsightParseError(Exception):
    """Raised when the AI response cannot be turned into an insight snapshot."""
