"""
WebRTC negotiation helpers.
"""

from __future__ import annotations

from .media import LocalMedia
from .negotiation import NegotiationState, PeerNegotiation, PeerNegotiationManager, Role

__all__ = ["LocalMedia", "NegotiationState", "PeerNegotiation", "PeerNegotiationManager", "Role"]
