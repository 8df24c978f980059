"""Peer connection registry and negotiation."""
