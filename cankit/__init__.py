"""CAN bus utilities: frame lengths, bus load, BCM text protocol and full-duplex frame testing."""

__version__ = "0.1.0"