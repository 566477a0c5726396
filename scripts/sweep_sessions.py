#!/usr/bin/env python3
"""Deactivate sessions whose expiry has passed. Safe to run from cron.

Usage:
    DATABASE_URL=postgresql://... python scripts/sweep_sessions.py
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main():
    parser = argparse.ArgumentParser(description="Sweep expired totpgate sessions")
    parser.parse_args()

    from totpgate.logging import get_logger, set_correlation_id
    from totpgate.service.runtime import get_runtime

    set_correlation_id()
    logger = get_logger("sweep_sessions")
    try:
        swept = get_runtime().sessions.sweep_expired()
    except Exception as exc:
        logger.error("session_sweep_failed", error_type=type(exc).__name__, error=str(exc))
        sys.exit(1)
    print(f"Deactivated {swept} expired session(s)")


if __name__ == "__main__":
    main()
