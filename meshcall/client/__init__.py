"""Signaling channel, room session and chat."""
