#!/usr/bin/env python
"""Script to bulk-load serial/PIN units from a CSV file.

Usage:
    python scripts/import_units.py <product_id> <units.csv>

The CSV needs a ``serial_number`` column and may have a ``secret`` column.
Rows are added in batches; a batch containing a serial number that already
exists is rejected as a whole and reported, and the remaining batches are
still attempted.
"""

import asyncio
import csv
import logging
import sys
from pathlib import Path

# Add the project root to the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.api.middleware.error_handler import ValidationError
from src.services.catalog_service import CatalogService
from src.services.unit_pool_service import UnitPoolService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

BATCH_SIZE = 500


def read_units(path: Path) -> list[dict[str, str | None]]:
    """Read serial/secret rows from a CSV file, skipping blank serials."""
    with path.open(newline="", encoding="utf-8") as f:
        reader = csv.DictReader(f)
        if not reader.fieldnames or "serial_number" not in reader.fieldnames:
            raise ValueError(f"{path} has no serial_number column")
        return [
            {"serial_number": row["serial_number"].strip(), "secret": (row.get("secret") or "").strip() or None}
            for row in reader
            if (row.get("serial_number") or "").strip()
        ]


async def main(product_id: str, csv_path: Path) -> None:
    """Load every unit in the CSV into the product's pool."""
    product = await CatalogService().get_product(product_id)
    if not product:
        logger.error("Product %s not found", product_id)
        sys.exit(1)

    units = read_units(csv_path)
    logger.info("Importing %d units into %s (%s)", len(units), product["name"], product_id)

    pool = UnitPoolService()
    added = 0
    rejected = 0
    for start in range(0, len(units), BATCH_SIZE):
        batch = units[start : start + BATCH_SIZE]
        try:
            added += len(await pool.add_units(product_id, batch))
        except ValidationError as e:
            rejected += len(batch)
            logger.error("Batch starting at row %d rejected: %s", start + 1, e.message)
            for detail in e.details or []:
                logger.error("  %s", detail["msg"])

    summary = await pool.stock_summary(product_id)
    logger.info("Import complete: %d added, %d rejected", added, rejected)
    logger.info("Available now: %d of %d", summary["available"], summary["total"])

    if rejected:
        sys.exit(1)


if __name__ == "__main__":
    if len(sys.argv) != 3:
        print(__doc__)
        sys.exit(2)
    asyncio.run(main(sys.argv[1], Path(sys.argv[2])))
