"""Portfolio P&L reconstruction for Blend lending, borrowing and backstop positions."""

__version__ = "0.1.0"
