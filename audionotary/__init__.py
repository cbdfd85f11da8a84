"""Audio notarization service: register audio works by content hash and verify them later."""

__version__ = "0.1.0"
