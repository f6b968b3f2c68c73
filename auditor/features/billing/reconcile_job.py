"""
Scheduled reconciliation job.

Finds records still marked active after their paid period ended (a missed
webhook) and pulls the live subscription for each one.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from auditor.core.errors import AppError, ConflictError
from auditor.features.billing.provider import BillingProvider
from auditor.features.billing.webhooks import reconcile_user
from auditor.features.entitlements import store


logger = logging.getLogger(__name__)


def run_reconcile_job(
    provider: BillingProvider,
    now: Optional[datetime] = None,
    limit: int = 100,
) -> Dict[str, Any]:
    ts = now or datetime.now(timezone.utc)
    candidates = store.list_stale_active(ts, limit=limit)

    reconciled = 0
    skipped = 0
    errors = 0
    for record in candidates:
        try:
            result = reconcile_user(record.user_id, provider, now=ts, owner="system_job")
        except ConflictError:
            skipped += 1
            continue
        except AppError as e:
            errors += 1
            logger.error(
                "[reconcile] user failed",
                extra={"user_id": record.user_id, "error_code": e.code},
            )
            continue
        if result.outcome == "processed":
            reconciled += 1
        else:
            skipped += 1

    stats = {
        "checked": len(candidates),
        "reconciled": reconciled,
        "skipped": skipped,
        "errors": errors,
        "timestamp": ts.isoformat(),
    }
    logger.info("[reconcile] job finished", extra={k: v for k, v in stats.items() if k != "timestamp"})
    return stats
