"""Command that checks every rate limit config file in a directory."""

from __future__ import annotations

import argparse
import os
import sys
from typing import Sequence

from quotaguard.config import (
    RateLimitConfig,
    RateLimitConfigError,
    RateLimitConfigToLoad,
    config_file_content_to_yaml,
)
from quotaguard.stats import StatsManager, StatsStore


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Check rate limit config files.")
    parser.add_argument(
        "-config_dir",
        "--config_dir",
        default="",
        help="path to directory containing rate limit configs",
    )
    parser.add_argument(
        "-merge_domain_configs",
        "--merge_domain_configs",
        action="store_true",
        help="whether to merge configurations, referencing the same domain",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Load all configs in the directory; return 0 if they are valid, 1 otherwise."""
    args = _parse_args(argv)
    config_dir = args.config_dir
    print("checking rate limit configs...")
    print(f"loading config directory: {config_dir}")

    try:
        names = sorted(os.listdir(config_dir or "."))
    except OSError as exc:
        print(f"error opening directory {config_dir}: {exc.strerror or exc}")
        return 1

    configs = []
    try:
        for name in names:
            path = os.path.join(config_dir, name)
            print(f"opening config file: {path}")
            try:
                with open(path, encoding="utf-8") as handle:
                    content = handle.read()
            except OSError as exc:
                print(f"error reading file {path}: {exc.strerror or exc}")
                return 1
            configs.append(RateLimitConfigToLoad(path, config_file_content_to_yaml(path, content)))

        RateLimitConfig(configs, StatsManager(StatsStore()), args.merge_domain_configs)
    except RateLimitConfigError as exc:
        print(f"error loading rate limit configs: {exc}")
        return 1

    print("all rate limit configs ok")
    return 0


if __name__ == "__main__":
    sys.exit(main())