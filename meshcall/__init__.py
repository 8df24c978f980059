"""meshcall: multi-party mesh WebRTC video chat client."""

__version__ = "0.1.0"
