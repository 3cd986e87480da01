"""Regenerate gaps for the latest completed audit, or for the audit ids given."""
from __future__ import annotations

import logging
import sys

from sqlalchemy.orm import Session

from cvpa import services
from cvpa.db import init_db, session_scope
from cvpa.models import Audit
from cvpa.store import AuditStore

log = logging.getLogger(__name__)

USAGE = """\
Usage: cvpa-generate-gaps [AUDIT_ID ...]

Recomputes gap analysis for already scored audits. Without arguments, the
most recently completed audit is used.

Environment variables:
  CVPA_DB_PATH   SQLite database file (default: cvpa/data/cvpa.db)
"""


def regenerate_for_audits(session: Session, audit_ids: list[int]) -> dict[int, int]:
    """Return ``{audit_id: gaps_count}`` for every audit that exists."""
    if not audit_ids:
        latest = services.latest_completed_audit(session)
        if latest is None:
            log.info("No completed audits found")
            return {}
        audit_ids = [latest.id]

    store = AuditStore(session)
    counts: dict[int, int] = {}
    for audit_id in audit_ids:
        audit = services.get_entity(session, Audit, audit_id)
        if audit is None:
            log.warning("Audit %s not found", audit_id)
            continue
        log.info("Generating gaps for audit %s, company %s", audit.id, audit.company_id)
        counts[audit.id] = len(services.regenerate_gaps(store, audit.company_id, audit.id))
    return counts


def main() -> None:
    args = sys.argv[1:]
    if "--help" in args or "-h" in args:
        print(USAGE)
        sys.exit(0)
    try:
        audit_ids = [int(a) for a in args]
    except ValueError:
        print(USAGE)
        sys.exit(2)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    init_db()
    with session_scope() as session:
        counts = regenerate_for_audits(session, audit_ids)
    for audit_id, count in counts.items():
        print(f"Audit {audit_id}: generated {count} gaps")
    sys.exit(0 if counts else 1)


if __name__ == "__main__":
    main()
