#!/usr/bin/env python
from __future__ import annotations

import argparse
from datetime import date, timedelta
from pathlib import Path

from openpyxl import Workbook

REGIONS = ["North", "South", "East", "West"]


def main() -> None:
    parser = argparse.ArgumentParser(description="Build a multi-sheet sample workbook for manual analysis runs")
    parser.add_argument("--output", required=True, help="output file path (.xlsx)")
    parser.add_argument("--rows", type=int, default=30, help="number of rows on the Sales sheet")
    parser.add_argument("--start", default="2024-01-01", help="first sale date, YYYY-MM-DD")
    args = parser.parse_args()

    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)
    start = date.fromisoformat(args.start)

    workbook = Workbook()
    sales = workbook.active
    sales.title = "Sales"
    sales.append(["Date", "Region", "Amount", "Paid"])
    for index in range(args.rows):
        sales.append([
            start + timedelta(days=index),
            REGIONS[index % len(REGIONS)],
            round(100 + index * 12.5, 2),
            index % 3 != 0,
        ])

    workbook.create_sheet("Empty")

    headerless = workbook.create_sheet("Headerless")
    for index in range(5):
        headerless.append([index + 1, (index + 1) * 10, f"item-{index + 1}"])

    workbook.save(output)
    print(f"sample workbook written: {output}")


if __name__ == "__main__":
    main()
