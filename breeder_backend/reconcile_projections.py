#!/usr/bin/env python3
"""
Nightly Projection Reconciliation Script
Runs a dry-run reconciliation, logs what drifted, then repairs it
"""

import requests
import logging
import sys
from datetime import datetime
import os

# Configuration
API_BASE_URL = os.getenv("BREEDER_API_URL", "http://localhost:8000")
ADMIN_SECRET = os.getenv("ADMIN_SECRET", "")
LOG_FILE = os.getenv("RECONCILE_LOG_FILE", "")
REQUEST_TIMEOUT = int(os.getenv("RECONCILE_TIMEOUT", "300"))

logger = logging.getLogger("reconcile_projections")


def _setup_logging():
    handlers = [logging.StreamHandler()]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


def _reconcile(dry_run: bool):
    response = requests.post(
        f"{API_BASE_URL}/admin/reconcile",
        params={"dry_run": str(dry_run).lower()},
        headers={"X-Admin-Secret": ADMIN_SECRET},
        timeout=REQUEST_TIMEOUT,
    )
    if response.status_code != 200:
        logger.error(f"Reconcile (dry_run={dry_run}) failed: {response.status_code} - {response.text}")
        return None
    return response.json()


def run_reconciliation() -> bool:
    """Report drift, then repair it if there is any"""
    start_time = datetime.now()
    logger.info(f"Starting projection reconciliation at {start_time}")

    try:
        report = _reconcile(dry_run=True)
        if report is None:
            return False

        counts = report["counts"]
        logger.info(f"Drift found: {counts}")
        if not any(counts.values()):
            logger.info("Nothing to repair")
            return True

        for category, items in report["items"].items():
            for item in items:
                logger.warning(f"  - {category}: {item}")

        result = _reconcile(dry_run=False)
        if result is None:
            return False

        duration = (datetime.now() - start_time).total_seconds()
        logger.info(f"Reconciliation completed in {duration:.2f} seconds: {result['counts']}")
        return True

    except requests.RequestException as e:
        logger.error(f"Reconciliation process failed: {e}")
        return False


def main():
    _setup_logging()
    if not ADMIN_SECRET:
        logger.error("ADMIN_SECRET is not set")
        sys.exit(2)
    sys.exit(0 if run_reconciliation() else 1)


if __name__ == "__main__":
    main()
