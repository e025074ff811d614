"""Decoders for map variant (MVAR) documents and replay film telemetry."""

__version__ = "0.1.0"
