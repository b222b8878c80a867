#!/usr/bin/env python3
"""ScalpCore CLI runner.

Usage:
    python run.py                                # Simulation with v1-default profile
    python run.py --profile v1-aggressive        # Time-weighted chase, 15 steps
    python run.py --strategy spread-adaptive     # Override the profile's strategy
    python run.py --grace 3 --max-chase 30 --retries 3

Options:
    --profile       Trading-version profile (default: v1-default)
    --strategy      Chase strategy override
    --grace         Seconds unfilled before chasing starts
    --max-chase     Seconds before an unfilled chase is cancelled
    --retries       Consecutive submission failures before cancel
    --watchlist     Comma-separated symbols for the synthetic quote feed
    --port          Port (default: 8000)
    --reload        Enable hot reload
"""

import argparse
import os
import sys

import uvicorn

PROFILES = ("v1-default", "v1-aggressive")
STRATEGIES = (
    "aggressive-linear",
    "time-weighted",
    "spread-adaptive",
    "conservative-bounded",
    "delta-weighted",
    "hybrid-time-delta",
)


def main():
    parser = argparse.ArgumentParser(
        description="ScalpCore execution server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python run.py --grace 3 --max-chase 30 --retries 3
    python run.py --profile v1-aggressive --watchlist SPX,NDX
        """,
    )
    parser.add_argument(
        "--profile",
        choices=PROFILES,
        help="Trading-version profile (default: v1-default)",
    )
    parser.add_argument(
        "--strategy",
        choices=STRATEGIES,
        help="Chase strategy override",
    )
    parser.add_argument(
        "--grace",
        type=float,
        help="Seconds unfilled before chasing starts (CHASE_GRACE_SECONDS)",
    )
    parser.add_argument(
        "--max-chase",
        type=float,
        help="Chase wall-clock ceiling in seconds (CHASE_MAX_SECONDS)",
    )
    parser.add_argument(
        "--retries",
        type=int,
        help="Submission retry cap (ORDER_MAX_RETRIES)",
    )
    parser.add_argument(
        "--watchlist",
        help="Comma-separated symbols for the synthetic quote feed",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port (default: 8000)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable hot reload",
    )

    args = parser.parse_args()

    overrides = {
        "CHASE_PROFILE": args.profile,
        "CHASE_STRATEGY": args.strategy,
        "CHASE_GRACE_SECONDS": args.grace,
        "CHASE_MAX_SECONDS": args.max_chase,
        "ORDER_MAX_RETRIES": args.retries,
        "WATCHLIST": args.watchlist,
    }
    for key, value in overrides.items():
        if value is not None:
            os.environ[key] = str(value)

    missing = [
        key for key in ("CHASE_GRACE_SECONDS", "CHASE_MAX_SECONDS", "ORDER_MAX_RETRIES")
        if not os.environ.get(key)
    ]
    if missing and not os.path.exists(".env"):
        print(f"Missing required settings: {', '.join(missing)}")
        print("Pass --grace/--max-chase/--retries or set them in .env")
        sys.exit(1)

    print("=" * 60)
    print("ScalpCore - SIMULATION MODE")
    print("=" * 60)
    print(f"  PROFILE:       {os.environ.get('CHASE_PROFILE', 'v1-default')}")
    print(f"  STRATEGY:      {os.environ.get('CHASE_STRATEGY', '(profile)')}")
    print(f"  GRACE:         {os.environ.get('CHASE_GRACE_SECONDS', '(.env)')}")
    print(f"  MAX CHASE:     {os.environ.get('CHASE_MAX_SECONDS', '(.env)')}")
    print(f"  RETRIES:       {os.environ.get('ORDER_MAX_RETRIES', '(.env)')}")
    print(f"  API:           http://localhost:{args.port}/docs")
    print("=" * 60)

    uvicorn.run(
        "scalpcore.main:app",
        host="0.0.0.0",
        port=args.port,
        reload=args.reload,
    )


if __name__ == "__main__":
    main()
