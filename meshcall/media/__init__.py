"""Local capture and screen sharing."""
