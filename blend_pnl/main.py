#!/usr/bin/env python3
"""
Blend P&L engine
Entry point for ``python -m blend_pnl.main``
"""
from .cli import main

if __name__ == "__main__":
    main()
