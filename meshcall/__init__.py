"""meshcall: full-mesh WebRTC calls bootstrapped by a signaling relay."""

__version__ = "0.1.0"
