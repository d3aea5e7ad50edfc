"""
Import or export the plan catalog workbook without going through the API.

Usage (from backend/):
  python -m scripts.import_plans --file plans.xlsx
  python -m scripts.import_plans --export plans.xlsx
"""
import asyncio
import argparse
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from config import get_settings
from database import database
from errors import SpreadsheetImportError
from services.container import build_services
from services.plan_spreadsheet import export_plans


async def run(import_path: str = None, export_path: str = None) -> bool:
    services = build_services(database.get_db(), get_settings())
    if export_path:
        plans = await services.catalog.list_plans()
        Path(export_path).write_bytes(export_plans(plans))
        print(f"Exported {len(plans)} plan(s) to {export_path}")
        return True

    try:
        report = await services.importer.import_workbook(Path(import_path).read_bytes())
    except SpreadsheetImportError as e:
        print(f"Import failed: {e}")
        return False
    print(json.dumps(report.to_dict(), indent=2))
    return not report.errors


def main():
    parser = argparse.ArgumentParser(description="Import/export the snapshot plan workbook")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--file", help="Workbook (.xlsx) to import")
    group.add_argument("--export", help="Write the current catalog to this path")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    async def _():
        await database.connect()
        try:
            return await run(import_path=args.file, export_path=args.export)
        finally:
            await database.close()

    ok = asyncio.run(_())
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
