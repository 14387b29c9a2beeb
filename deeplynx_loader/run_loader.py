#!/usr/bin/env python3
"""
Loader Runner
=============

CLI script to run the DeepLynx loader.

Usage:
    deeplynx-loader load --config configs/loader_settings.json
    deeplynx-loader send exports/readings.csv --data-source 12 --config configs/loader_settings.json
"""

import argparse
import json
import sys
from typing import List, Optional

from .errors import LoaderError
from .loader import Loader


def run_load(config_path: str) -> bool:
    """Execute one synchronization pass."""
    print("=" * 60)
    print("DEEPLYNX LOAD")
    print("=" * 60)

    try:
        loader = Loader.from_file(config_path)
    except LoaderError as e:
        print(f"\n✗ Configuration failed: {e}")
        return False

    try:
        results = loader.load_data()
    except LoaderError as e:
        print(f"\n✗ Load failed: {e}")
        return False
    finally:
        loader.close()

    print("\n" + "=" * 60)
    print("RESULTS SUMMARY")
    print("=" * 60)
    for result in results:
        print(f"\n✓ data source {result['data_source_id']} -> {result['table']}")
        print(f"    Mode: {result['mode']}")
        print(f"    Start cursor: {result.get('start_cursor') or 'beginning'}")
        print(f"    Rows loaded: {result['rows_loaded']:,}")
        print(f"    Rows removed: {result['rows_deleted']:,}")

    return True


def run_send(config_path: str, file_path: str, data_source_id: Optional[int], container_id: Optional[int]) -> bool:
    """Push a file to DeepLynx."""
    try:
        loader = Loader.from_file(config_path)
    except LoaderError as e:
        print(f"✗ Configuration failed: {e}")
        return False

    try:
        value = loader.send_file(file_path, data_source_id=data_source_id, container_id=container_id)
    except LoaderError as e:
        print(f"✗ Send failed: {e}")
        return False
    finally:
        loader.close()

    print(f"✓ Sent {file_path}")
    if value is not None:
        print(json.dumps(value, indent=2, default=str))
    return True


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="DeepLynx to DuckDB loader")
    parser.add_argument(
        "--config",
        type=str,
        default="configs/loader_settings.json",
        help="Path to the loader settings file"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("load", help="Run one synchronization pass")

    send_parser = subparsers.add_parser("send", help="Push a file to a data source")
    send_parser.add_argument("file", help="File to push")
    send_parser.add_argument("--data-source", type=int, default=None, help="Target data source id")
    send_parser.add_argument("--container", type=int, default=None, help="Target container id")

    args = parser.parse_args(argv)

    if args.command == "load":
        success = run_load(args.config)
    else:
        success = run_send(args.config, args.file, args.data_source, args.container)

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
