"""
Match a local attendance file against a directory CSV.

Runs the same pipeline as the API (parse, detect columns, match, summarize)
with an in-memory record store, and prints or exports the results.

Usage:
    python scripts/match_file.py attendance.csv --directory roster.csv

    # Pattern stage only, custom threshold, export to Excel
    python scripts/match_file.py attendance.xlsx --directory roster.csv \
        --no-oracle --threshold 0.8 --output results.xlsx
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

import pandas as pd

# Allow imports from the project root when running as a script
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from exceptions import AppError
from models.feedback import ThresholdSnapshot
from models.processing import JobState
from services.directory_service import InMemoryDirectory
from services.matching_oracle import NullMatchingOracle, get_matching_oracle
from services.processing_service import ProcessingService
from services.record_store import InMemoryRecordStore


def results_frame(results: list) -> pd.DataFrame:
    """One output row per input row."""
    records = []
    for r in results:
        records.append({
            "row": r.row,
            "original_name": r.original_name,
            "status": r.status,
            "entry_id": getattr(r, "entry_id", None),
            "confidence": getattr(r, "confidence", None),
            "method": r.method.value if r.status == "matched" else None,
            "verified": getattr(r, "verified", False),
            "reason": r.reason.value if r.status == "unmatched" else None,
            "suggestions": ", ".join(
                f"{s.entry_id} ({s.confidence:.2f})" for s in getattr(r, "suggestions", [])
            ),
            "attendance_status": r.attendance_status.value if r.attendance_status else None,
        })
    return pd.DataFrame(records)


def run(args: argparse.Namespace) -> int:
    path = Path(args.file)
    store = InMemoryRecordStore()
    directory = InMemoryDirectory.from_csv(args.directory)
    oracle = NullMatchingOracle() if args.no_oracle else get_matching_oracle()

    if args.threshold is not None:
        store.save_threshold(ThresholdSnapshot(
            organization_id=args.organization,
            value=args.threshold,
            version=0,
        ))

    service = ProcessingService(store=store, directory=directory, oracle=oracle)
    submitted = service.submit(
        content=path.read_bytes(),
        filename=path.name,
        organization_id=args.organization,
    )
    job = asyncio.run(service.run_job(submitted.job_id))

    if job.state != JobState.COMPLETED:
        print(f"FAILED: {job.error.kind}: {job.error.message}")
        return 1

    summary = job.summary
    print("")
    print("=" * 60)
    print(f"{path.name}: {summary.total_rows} rows")
    print("=" * 60)
    print(f"  Matched:    {summary.matched} ({summary.verified} verified)")
    print(f"  Unmatched:  {summary.unmatched}")
    print(f"  Methods:    {summary.by_method or '-'}")
    print(f"  Reasons:    {summary.by_reason or '-'}")
    print(f"  Confidence: {summary.overall_confidence:.2f} ({summary.overall_method})")
    print(f"  Threshold:  {summary.threshold:.2f}")
    print(f"  Oracle:     {'on' if summary.oracle_available else 'off'}")
    if job.row_errors:
        print(f"  Row errors: {len(job.row_errors)}")

    df = results_frame(job.results)
    if args.output:
        out = Path(args.output)
        if out.suffix.lower() == ".xlsx":
            df.to_excel(out, index=False)
        else:
            df.to_csv(out, index=False)
        print(f"\nResults written to {out}")
    else:
        print("")
        print(df.to_string(index=False))

    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Match an attendance file against a directory CSV."
    )
    parser.add_argument("file", help="Attendance file (.csv, .tsv, .txt, .xlsx)")
    parser.add_argument(
        "--directory",
        required=True,
        help="Directory CSV with columns id, full_name[, email, external_id, organization_id]",
    )
    parser.add_argument(
        "--organization",
        default="local",
        help="Organization id used for directory scoping (default: local)",
    )
    parser.add_argument(
        "--threshold",
        type=float,
        default=None,
        help="Acceptance threshold override (0-1)",
    )
    parser.add_argument(
        "--no-oracle",
        action="store_true",
        help="Skip the AI stage even if an API key is configured",
    )
    parser.add_argument(
        "--output",
        default="",
        help="Write results to .csv or .xlsx instead of printing",
    )

    args = parser.parse_args()

    if args.threshold is not None and not 0 <= args.threshold <= 1:
        print(f"ERROR: Invalid threshold '{args.threshold}'. Use a value between 0 and 1.")
        sys.exit(1)

    try:
        sys.exit(run(args))
    except AppError as e:
        print(f"ERROR: {e.code}: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
