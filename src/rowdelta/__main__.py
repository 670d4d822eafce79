"""
Inspect a rowdelta table from the command line.

    python -m rowdelta snapshots TABLE
    python -m rowdelta files TABLE [--snapshot ID]
    python -m rowdelta scan TABLE [--snapshot ID] [--columns a,b] [--limit N]
"""

import argparse
import json
import sys
from typing import Any, List, Optional

from .errors import RowDeltaError
from .table import load_table


def _print_snapshots(table_path: str) -> None:
    table = load_table(table_path)
    current = table.metadata().current_snapshot_id
    for info in table.snapshots():
        marker = "*" if info["snapshot_id"] == current else " "
        print(
            f"{marker} {info['snapshot_id']}  seq={info['sequence_number']}  "
            f"parent={info['parent_id']}  {info['operation']}  "
            f"{info['timestamp'].isoformat(timespec='seconds')}"
        )


def _print_files(table_path: str, snapshot_id: Optional[int]) -> None:
    table = load_table(table_path)
    for task in table.scan_plan(snapshot_id):
        data_file = task.data_file
        print(
            f"{data_file.file_path}  seq={data_file.sequence_number}  "
            f"rows={data_file.record_count}  partition={data_file.partition_values}"
        )
        for delete_file in task.delete_files:
            kind = "position" if delete_file.is_positional else "equality"
            print(f"    {kind} {delete_file.file_path}  seq={delete_file.sequence_number}")


def _print_scan(
    table_path: str, snapshot_id: Optional[int], columns: Optional[List[str]], limit: Optional[int]
) -> None:
    table = load_table(table_path)
    records = table.scan(snapshot_id).to_records(columns)
    for record in records[:limit] if limit is not None else records:
        print(json.dumps(record, default=str))


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point when module is executed directly"""
    parser = argparse.ArgumentParser(prog="rowdelta", description="Inspect a rowdelta table")
    subparsers = parser.add_subparsers(dest="command", required=True)

    snapshots_parser = subparsers.add_parser("snapshots", help="list snapshots, oldest first")
    snapshots_parser.add_argument("table")

    files_parser = subparsers.add_parser("files", help="live data files and applicable deletes")
    files_parser.add_argument("table")
    files_parser.add_argument("--snapshot", type=int, default=None)

    scan_parser = subparsers.add_parser("scan", help="rows with deletes applied, as JSON lines")
    scan_parser.add_argument("table")
    scan_parser.add_argument("--snapshot", type=int, default=None)
    scan_parser.add_argument("--columns", default=None, help="comma-separated column names")
    scan_parser.add_argument("--limit", type=int, default=None)

    args: Any = parser.parse_args(argv)
    try:
        if args.command == "snapshots":
            _print_snapshots(args.table)
        elif args.command == "files":
            _print_files(args.table, args.snapshot)
        else:
            columns = args.columns.split(",") if args.columns else None
            _print_scan(args.table, args.snapshot, columns, args.limit)
    except (RowDeltaError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
