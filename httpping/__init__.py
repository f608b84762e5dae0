"""httpping -- HTTP(S) latency measurement with per-phase timing breakdown."""

__version__ = "0.1.0"
