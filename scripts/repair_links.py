#!/usr/bin/env python3
import argparse
import csv
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from backend.links import find_link_asymmetries, repair_link_symmetry  # noqa: E402
from backend.store import Store  # noqa: E402


def parse_args():
    parser = argparse.ArgumentParser(
        description="Check and repair one-sided or legacy panophoto links"
    )
    parser.add_argument(
        "--db",
        default="data/app.db",
        help="Path to SQLite DB (default: data/app.db)",
    )
    parser.add_argument(
        "--project",
        action="append",
        default=[],
        help="Project id to check (repeatable; default: all projects)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report problems, do not write",
    )
    parser.add_argument(
        "--csv",
        action="store_true",
        help="Print CSV instead of table",
    )
    return parser.parse_args()


def print_table(rows):
    if not rows:
        print("No link problems found.")
        return
    headers = ["project_id", "photo_id", "target_id", "problem"]
    widths = {h: len(h) for h in headers}
    for r in rows:
        for h in headers:
            widths[h] = max(widths[h], len(str(r[h])))

    header_line = " | ".join(h.ljust(widths[h]) for h in headers)
    separator = "-+-".join("-" * widths[h] for h in headers)
    print(header_line)
    print(separator)
    for r in rows:
        print(" | ".join(str(r[h]).ljust(widths[h]) for h in headers))
    print(f"\nTotal: {len(rows)}")


def print_csv(rows):
    writer = csv.writer(sys.stdout)
    writer.writerow(["project_id", "photo_id", "target_id", "problem"])
    for r in rows:
        writer.writerow([r["project_id"], r["photo_id"], r["target_id"], r["problem"]])


def main():
    args = parse_args()
    db_path = Path(args.db).expanduser().resolve()
    if not db_path.exists():
        print(f"DB not found: {db_path}", file=sys.stderr)
        return 1
    store = Store.connect(str(db_path))
    try:
        project_ids = args.project or [p["id"] for p in store.list_projects()]
        rows = []
        for project_id in project_ids:
            for problem in find_link_asymmetries(store, project_id):
                rows.append({"project_id": project_id, **problem})
        if args.csv:
            print_csv(rows)
        else:
            print_table(rows)
        if args.dry_run or not rows:
            return 0
        failed = 0
        for project_id in project_ids:
            stats = repair_link_symmetry(store, project_id)
            failed += len(stats["warnings"])
            print(
                f"{project_id}: upgraded={stats['upgraded']} reverse_added={stats['reverse_added']} "
                f"dangling_removed={stats['dangling_removed']} warnings={len(stats['warnings'])}"
            )
        return 1 if failed else 0
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
