"""boxoffice: order and payment orchestration for event ticketing."""

__version__ = "0.1.0"
