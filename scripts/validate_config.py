#!/usr/bin/env python3
"""Validate bridge.yaml (and any alternates) before a tuning session."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Iterable, List

REPO_ROOT = Path(__file__).resolve().parents[1]
SOFTWARE_DIR = REPO_ROOT / "software"
if str(SOFTWARE_DIR) not in sys.path:
    sys.path.insert(0, str(SOFTWARE_DIR))

from gain_bridge import config_validation as cv

DEFAULT_CONFIG = REPO_ROOT / "config" / "bridge.yaml"


def validate(paths: Iterable[Path], *, verbose: bool = False) -> List[Path]:
    failures: List[Path] = []
    for path in paths:
        path = path.resolve()
        if verbose:
            print(f"[validate] config → {path}")
        try:
            cv.validate_file(path)
        except cv.ValidationError as exc:
            failures.append(path)
            for line in exc.errors:
                print(f"[validate] ✖ {line}")
        except OSError as exc:
            failures.append(path)
            print(f"[validate] ✖ {path.name}: {exc}")
    if failures:
        raise cv.ValidationError([f"{len(failures)} config file(s) failed validation"])
    if verbose:
        print("[validate] all clear.")
    return failures


def main(argv: Iterable[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Sanity-check gain bridge configs")
    ap.add_argument(
        "configs",
        nargs="*",
        type=Path,
        default=[DEFAULT_CONFIG],
        help="Config files to check (default: config/bridge.yaml)",
    )
    ap.add_argument("--quiet", action="store_true", help="Suppress success chatter")
    args = ap.parse_args(list(argv) if argv is not None else None)

    try:
        validate(args.configs, verbose=not args.quiet)
    except cv.ValidationError as exc:
        if not args.quiet:
            print("[validate] config errors detected")
        for line in exc.errors:
            print(f"[validate] ✖ {line}")
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
