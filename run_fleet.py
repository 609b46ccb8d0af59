#!/usr/bin/env python3
"""
Fleet Orchestrator

Runs the worker fleet orchestrator until SIGTERM/SIGINT.

Usage:
    python run_fleet.py
"""

from fleet_orchestrator.orchestrator import main

if __name__ == "__main__":
    main()
