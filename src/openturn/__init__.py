"""OpenTurn: streaming chat-completion turn aggregation with retries."""

__version__ = "0.1.0"
