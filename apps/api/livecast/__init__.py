"""Room signaling relay and peer connection orchestration for live broadcasts."""

__version__ = "0.1.0"
