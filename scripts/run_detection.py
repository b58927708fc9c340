#!/usr/bin/env python3
"""
Run detection — convenience CLI wrapper for the promotion detection job.

Calls autopromote.pipeline.run_detection_job() to classify every operation
in the store, rank promotion candidates and record a gatekeeper decision for
each one meeting confidence.

Usage:
    python scripts/run_detection.py
    # Or after pip install -e .:
    autopromote-detect

Environment variables:
    AUTOPROMOTE_STORE_DIR  — directory holding the category .jsonl files (default: data/promotion)
    LOG_LEVEL              — structlog level (default: info)
    LOG_PRETTY             — "true" for console output instead of JSON
"""

from __future__ import annotations

from autopromote.pipeline import main

if __name__ == "__main__":
    main()
