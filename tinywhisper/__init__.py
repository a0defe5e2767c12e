"""Whisper-style speech recognition components: log-mel features, NumPy model, dump loading, conversion and beam search."""

__version__ = "0.1.0"
__all__ = ["audio", "beam", "convert", "helper", "load", "model"]