"""ICE transport building blocks: STUN/TURN URLs, STUN messages and UDP/TCP muxing by ufrag."""

__version__ = "0.1.0"