#!/usr/bin/env python3
"""
devicetracker CLI entrypoint (dt.py)

Shared equipment inventory tracking from the command line.

This file delegates to the devicetracker CLI layer.
"""
from devicetracker.cli.dt_cli import main

if __name__ == "__main__":
    main()
